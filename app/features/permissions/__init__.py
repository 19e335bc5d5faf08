"""
Permission management feature module.

Resolves effective capabilities from roles, groups and per-user overrides,
and gates modules and features for marketplace users.
"""
