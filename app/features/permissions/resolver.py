"""
Effective-permission resolution for marketplace principals.

Decides "can principal P perform action A on capability C" from already-loaded
grant data, in four stages:

1. Grant sources (loaded through an AccessStore): roles, groups, overrides
2. Precedence merge: role CRUD flags are OR-ed across roles, a group effect
   replaces the role record, an override replaces both
3. Module gate: platform-wide switch plus an optional required role
4. Feature gate: SHOW / HIDE / RESTRICTED on profile completion

Missing data never grants access. Every call recomputes from the store.
"""
import enum
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Protocol

from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# Enumerations
# ============================================================================

class Action(str, enum.Enum):
    """CRUD sub-rights a role grant can carry."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: "Action | str") -> "Action":
        """
        Coerce a string to an Action, accepting the UI vocabulary ("view", "edit").

        Raises:
            ValueError: if the value names no known action
        """
        if isinstance(value, Action):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown action: {value!r}")
        normalized = value.strip().lower()
        return cls(_ACTION_ALIASES.get(normalized, normalized))


_ACTION_ALIASES = {"view": "read", "edit": "update", "add": "create", "remove": "delete"}


class Effect(str, enum.Enum):
    """Coarse effect used by group grants and user overrides."""
    ALLOW = "ALLOW"
    DENY = "DENY"


class Visibility(str, enum.Enum):
    """Feature visibility modes."""
    SHOW = "SHOW"
    HIDE = "HIDE"
    RESTRICTED = "RESTRICTED"


class GrantSource(str, enum.Enum):
    """Tier that produced an effective permission record."""
    ROLE = "role"
    GROUP = "group"
    OVERRIDE = "override"


class Decision(str, enum.Enum):
    """
    Outcome of a gate.

    UNRESOLVABLE means the data needed to decide is absent (unknown
    capability, module, or principal); callers treat it as denied.
    """
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"
    UNRESOLVABLE = "UNRESOLVABLE"

    @property
    def is_allowed(self) -> bool:
        return self is Decision.ALLOWED

    @classmethod
    def from_bool(cls, allowed: bool) -> "Decision":
        return cls.ALLOWED if allowed else cls.DENIED


# ============================================================================
# Grant data
# ============================================================================

@dataclass(frozen=True)
class CrudFlags:
    """Four independent sub-rights of a role-derived grant."""
    create: bool = False
    read: bool = False
    update: bool = False
    delete: bool = False

    def union(self, other: "CrudFlags") -> "CrudFlags":
        return CrudFlags(
            create=self.create or other.create,
            read=self.read or other.read,
            update=self.update or other.update,
            delete=self.delete or other.delete,
        )

    def any(self) -> bool:
        return self.create or self.read or self.update or self.delete

    def permits(self, action: Action) -> bool:
        return getattr(self, action.value)


@dataclass(frozen=True)
class RoleGrant:
    """One role -> capability row."""
    role_code: str
    capability_code: str
    flags: CrudFlags


@dataclass(frozen=True)
class GrantSources:
    """The three independent grant sources of one principal."""
    role_codes: frozenset[str] = frozenset()
    role_grants: tuple[RoleGrant, ...] = ()
    group_effects: Mapping[str, Effect] = field(default_factory=dict)
    overrides: Mapping[str, Effect] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.role_codes or self.role_grants or self.group_effects or self.overrides)


@dataclass(frozen=True)
class EffectivePermission:
    """
    Merged permission for one capability.

    Only role-sourced records carry CRUD detail. Group and override records
    collapse to the single ``allowed`` boolean for every action.
    """
    capability_code: str
    source: GrantSource
    allowed: bool
    crud: Optional[CrudFlags] = None

    def permits(self, action: Action) -> bool:
        if self.source is GrantSource.ROLE and self.crud is not None:
            return self.crud.permits(action)
        return self.allowed


def combine_group_effects(effects: Iterable[tuple[str, Effect]]) -> dict[str, Effect]:
    """
    Fold (capability_code, effect) pairs from several groups into one effect per capability.

    DENY from any group wins over ALLOW from another.
    """
    combined: dict[str, Effect] = {}
    for capability_code, effect in effects:
        if combined.get(capability_code) is Effect.DENY:
            continue
        combined[capability_code] = Effect(effect)
    return combined


def merge_grants(sources: GrantSources) -> dict[str, EffectivePermission]:
    """
    Merge role, group and override grants into one record per capability code.

    Args:
        sources: Grant sources of a single principal

    Returns:
        Mapping of capability code to its effective record. A capability with
        no grant from any source is absent.
    """
    role_flags: dict[str, CrudFlags] = {}
    for grant in sources.role_grants:
        existing = role_flags.get(grant.capability_code)
        role_flags[grant.capability_code] = grant.flags if existing is None else existing.union(grant.flags)

    merged: dict[str, EffectivePermission] = {
        code: EffectivePermission(code, GrantSource.ROLE, allowed=flags.any(), crud=flags)
        for code, flags in role_flags.items()
    }

    # Group effect replaces the role-derived CRUD breakdown entirely
    for code, effect in sources.group_effects.items():
        merged[code] = EffectivePermission(code, GrantSource.GROUP, allowed=Effect(effect) is Effect.ALLOW)

    for code, effect in sources.overrides.items():
        merged[code] = EffectivePermission(code, GrantSource.OVERRIDE, allowed=Effect(effect) is Effect.ALLOW)

    return merged


# ============================================================================
# Feature and module gates
# ============================================================================

@dataclass(frozen=True)
class FeatureRule:
    """Stored visibility of a feature."""
    feature_code: str
    visibility: Visibility
    required_profile_percent: Optional[int] = None


@dataclass(frozen=True)
class FeatureDecision:
    feature_code: str
    visibility: Visibility
    allowed: bool
    required_profile_percent: Optional[int] = None

    @property
    def decision(self) -> Decision:
        return Decision.from_bool(self.allowed)


def evaluate_feature(
    feature_code: str,
    rule: Optional[FeatureRule],
    completion_percent: Optional[int],
) -> FeatureDecision:
    """
    Evaluate a feature visibility rule against a principal's profile completion.

    Args:
        feature_code: Feature being checked
        rule: Applicable rule, or None when the feature has no rule
        completion_percent: Profile completion (None for an unknown principal, read as 0)

    Returns:
        SHOW/allowed without a rule, HIDE/denied for hidden features, and for
        RESTRICTED features allowed only when completion meets the threshold.
        A RESTRICTED rule without a usable threshold denies.
    """
    if rule is None or rule.visibility is Visibility.SHOW:
        return FeatureDecision(feature_code, Visibility.SHOW, allowed=True)

    if rule.visibility is Visibility.HIDE:
        return FeatureDecision(feature_code, Visibility.HIDE, allowed=False)

    threshold = rule.required_profile_percent
    if threshold is None or threshold < 0:
        log.warning(f"Feature {feature_code} is RESTRICTED with invalid threshold {threshold!r}; denying")
        return FeatureDecision(feature_code, Visibility.RESTRICTED, allowed=False, required_profile_percent=threshold)

    percent = completion_percent or 0
    return FeatureDecision(
        feature_code,
        Visibility.RESTRICTED,
        allowed=percent >= threshold,
        required_profile_percent=threshold,
    )


@dataclass(frozen=True)
class ModuleRule:
    """Stored module switch."""
    module_key: str
    is_enabled: bool
    required_role: Optional[str] = None


def evaluate_module(module: Optional[ModuleRule], role_codes: Iterable[str]) -> Decision:
    """
    Evaluate coarse module access against raw role membership.

    Unknown modules are unresolvable. Disabled modules deny everybody.
    """
    if module is None:
        return Decision.UNRESOLVABLE
    if not module.is_enabled:
        return Decision.DENIED
    if not module.required_role:
        return Decision.ALLOWED
    return Decision.from_bool(module.required_role in set(role_codes))


# ============================================================================
# Data access contract
# ============================================================================

class AccessStore(Protocol):
    """
    Read side of the permission data.

    Implementations return empty/None for unknown ids and ignore dangling
    references. They raise only when storage itself fails.
    """

    async def load_grant_sources(self, principal_id: str) -> GrantSources:
        ...

    async def get_completion_percent(self, principal_id: str) -> Optional[int]:
        ...

    async def get_feature_rule(self, principal_id: str, feature_code: str) -> Optional[FeatureRule]:
        ...

    async def get_module(self, module_key: str) -> Optional[ModuleRule]:
        ...


# ============================================================================
# Resolver
# ============================================================================

@dataclass(frozen=True)
class AccessCheckResult:
    """
    Outcome of a combined capability/module/feature check.

    ``denied_by`` names the first stage that refused: "capability", "module" or "feature".
    """
    decision: Decision
    capability_code: str
    action: Action
    source: Optional[GrantSource] = None
    denied_by: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision.is_allowed


@dataclass
class PermissionSnapshot:
    principal_id: str
    roles: list[str]
    permissions: list[str]
    effective: dict[str, EffectivePermission]
    features: dict[str, FeatureDecision]


class AccessResolver:
    """
    Composes grant loading, precedence merge, and the module and feature gates.

    Usage:
        resolver = AccessResolver(SqlAccessStore(db))
        if await resolver.has_permission(user_id, "orders", "create"):
            ...
    """

    def __init__(self, store: AccessStore):
        self.store = store

    async def effective_permissions(self, principal_id: str) -> dict[str, EffectivePermission]:
        """Merged record per capability code for a principal."""
        sources = await self.store.load_grant_sources(principal_id)
        return merge_grants(sources)

    async def permission_decision(
        self,
        principal_id: str,
        capability_code: str,
        action: Action | str = Action.READ,
    ) -> tuple[Decision, Optional[EffectivePermission]]:
        """Decision for one capability action plus the record that produced it."""
        try:
            parsed = Action.parse(action)
        except ValueError:
            log.warning(f"Unknown action {action!r} for capability {capability_code}; denying")
            return Decision.DENIED, None

        effective = await self.effective_permissions(principal_id)
        record = effective.get(capability_code)
        if record is None:
            log.debug(f"Principal {principal_id} has no grant for {capability_code}")
            return Decision.UNRESOLVABLE, None

        decision = Decision.from_bool(record.permits(parsed))
        log.debug(
            f"Principal {principal_id} {decision.value} {parsed.value} on {capability_code} "
            f"via {record.source.value}"
        )
        return decision, record

    async def has_permission(
        self,
        principal_id: str,
        capability_code: str,
        action: Action | str = Action.READ,
    ) -> bool:
        """Check if a principal may perform an action on a capability."""
        decision, _ = await self.permission_decision(principal_id, capability_code, action)
        return decision.is_allowed

    async def module_decision(self, principal_id: str, module_key: str) -> Decision:
        module = await self.store.get_module(module_key)
        if module is None:
            log.debug(f"Module {module_key} is not configured")
            return Decision.UNRESOLVABLE
        if not module.is_enabled:
            return Decision.DENIED
        role_codes: frozenset[str] = frozenset()
        if module.required_role:
            sources = await self.store.load_grant_sources(principal_id)
            role_codes = sources.role_codes
        return evaluate_module(module, role_codes)

    async def can_access_module(self, principal_id: str, module_key: str) -> bool:
        """Check coarse module access (enablement plus optional required role)."""
        return (await self.module_decision(principal_id, module_key)).is_allowed

    async def check_feature(self, principal_id: str, feature_code: str) -> FeatureDecision:
        """Evaluate feature visibility for a principal."""
        rule = await self.store.get_feature_rule(principal_id, feature_code)
        percent = None
        if rule is not None and rule.visibility is Visibility.RESTRICTED:
            percent = await self.store.get_completion_percent(principal_id)
        return evaluate_feature(feature_code, rule, percent)

    async def check(
        self,
        principal_id: str,
        capability_code: str,
        action: Action | str = Action.READ,
        feature_code: Optional[str] = None,
        module_key: Optional[str] = None,
    ) -> AccessCheckResult:
        """
        Run the capability check, then the module gate, then the feature gate.

        Each later stage can only narrow the result.
        """
        try:
            parsed = Action.parse(action)
        except ValueError:
            log.warning(f"Unknown action {action!r} for capability {capability_code}; denying")
            return AccessCheckResult(Decision.DENIED, capability_code, Action.READ, denied_by="capability")

        decision, record = await self.permission_decision(principal_id, capability_code, parsed)
        source = record.source if record else None
        if not decision.is_allowed:
            return AccessCheckResult(decision, capability_code, parsed, source, denied_by="capability")

        if module_key is not None:
            module = await self.module_decision(principal_id, module_key)
            if not module.is_allowed:
                return AccessCheckResult(module, capability_code, parsed, source, denied_by="module")

        if feature_code is not None:
            feature = await self.check_feature(principal_id, feature_code)
            if not feature.allowed:
                return AccessCheckResult(Decision.DENIED, capability_code, parsed, source, denied_by="feature")

        return AccessCheckResult(Decision.ALLOWED, capability_code, parsed, source)

    async def snapshot(self, principal_id: str, feature_codes: Iterable[str]) -> PermissionSnapshot:
        """Roles, allowed capability codes, merged records and feature decisions of a principal."""
        sources = await self.store.load_grant_sources(principal_id)
        effective = merge_grants(sources)
        features = {}
        for code in feature_codes:
            features[code] = await self.check_feature(principal_id, code)
        return PermissionSnapshot(
            principal_id=principal_id,
            roles=sorted(sources.role_codes),
            permissions=sorted(code for code, record in effective.items() if record.allowed),
            effective=effective,
            features=features,
        )
