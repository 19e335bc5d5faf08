"""
Seed script to populate default capabilities, roles, groups and modules.

Run this script after database initialization to create:
- Default capabilities
- System roles with their CRUD grants
- System default permission groups with their effects
- Module switches

Existing rows are left untouched, so the script can be re-run safely.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.permissions.models import (
    Capability,
    Role,
    RoleCapability,
    PermissionGroup,
    GroupCapability,
    ModuleAccess,
)
from app.features.permissions.resolver import Effect
from app.utils import get_logger


log = get_logger(__name__)


# (code, name, module, category)
DEFAULT_CAPABILITIES = [
    # Catalogue and trading
    ("products", "Products", "products", "PRODUCTS"),
    ("orders", "Orders", "orders", "ORDERS"),
    ("quotes", "Quote Requests", "quotes", "ORDERS"),
    ("installments", "Installments", "installments", "ORDERS"),

    # Directory
    ("customers", "Customers", "customers", "CUSTOMERS"),
    ("suppliers", "Suppliers", "suppliers", "SUPPLIERS"),

    # Back office
    ("reports", "Reports", "reports", "REPORTS"),
    ("settings", "Settings", "settings", "SETTINGS"),
    ("users", "Users", "admin", "ADMIN"),
    ("MANAGE_PERMISSIONS", "Manage Permissions", "admin", "ADMIN"),

    # Portal features
    ("VIEW_TRADER_TOOLS", "View Trader Tools", "tools", "CUSTOMER_PORTAL"),
    ("USE_TRADER_TOOLS", "Use Trader Tools", "tools", "CUSTOMER_PORTAL"),
    ("VIEW_INTERNATIONAL_PURCHASES", "View International Purchases", "international", "CUSTOMER_PORTAL"),
    ("USE_AI_ASSISTANT", "Use AI Assistant", "ai", "CUSTOMER_PORTAL"),
    ("VIEW_SUPPLIER_PORTAL", "View Supplier Portal", "supplier_portal", "SUPPLIER_PORTAL"),
    ("MANAGE_SUPPLIER_PRODUCTS", "Manage Supplier Products", "supplier_portal", "SUPPLIER_PORTAL"),
    ("EXPORT_SUPPLIER_REPORTS", "Export Supplier Reports", "supplier_portal", "SUPPLIER_PORTAL"),
]

FULL = "crud"
READ = "r"

DEFAULT_ROLES = {
    "SUPER_ADMIN": {
        "name": "Super Admin",
        "description": "Full system access",
        "grants": "ALL"  # Special case - full CRUD on every capability
    },
    "ADMIN": {
        "name": "Admin",
        "description": "Administrative access",
        "grants": {
            "products": FULL, "orders": FULL, "quotes": FULL, "installments": FULL,
            "customers": FULL, "suppliers": FULL, "reports": FULL,
            "settings": "ru", "users": "cru", "MANAGE_PERMISSIONS": "ru",
        }
    },
    "STAFF": {
        "name": "Staff",
        "description": "Marketplace staff member",
        "grants": {
            "products": "cru", "orders": "cru", "quotes": "cru",
            "customers": "ru", "suppliers": READ, "reports": READ,
        }
    },
    "BRANCH_MANAGER": {
        "name": "Branch Manager",
        "description": "Manages orders and customers of a branch",
        "grants": {
            "orders": "cru", "quotes": "cru", "customers": "cru",
            "installments": "ru", "reports": READ,
        }
    },
    "CUSTOMER": {
        "name": "Customer",
        "description": "B2B customer account",
        "grants": {
            "products": READ, "orders": "cr", "quotes": "cr", "installments": "cr",
        }
    },
    "SUPPLIER": {
        "name": "Supplier",
        "description": "Supplier account",
        "grants": {
            "products": FULL, "quotes": "ru", "orders": READ,
        }
    },
    "VIEWER": {
        "name": "Viewer",
        "description": "Read-only access",
        "grants": {
            "products": READ, "orders": READ, "quotes": READ, "reports": READ,
        }
    },
}

DEFAULT_GROUPS = {
    "DEFAULT_ADMIN": {
        "name": "Default Admin",
        "description": "Full administrative access",
        "effects": {"users": Effect.ALLOW, "MANAGE_PERMISSIONS": Effect.ALLOW, "settings": Effect.ALLOW},
    },
    "SUPPORT_STAFF": {
        "name": "Support Staff",
        "description": "Customer support permissions",
        "effects": {"customers": Effect.ALLOW, "orders": Effect.ALLOW},
    },
    "BASIC_CUSTOMER": {
        "name": "Basic Customer",
        "description": "Basic customer portal access",
        "effects": {"VIEW_TRADER_TOOLS": Effect.ALLOW},
    },
    "VIP_CUSTOMER": {
        "name": "VIP Customer",
        "description": "Full customer features including trader tools",
        "effects": {
            "VIEW_TRADER_TOOLS": Effect.ALLOW,
            "USE_TRADER_TOOLS": Effect.ALLOW,
            "VIEW_INTERNATIONAL_PURCHASES": Effect.ALLOW,
            "USE_AI_ASSISTANT": Effect.ALLOW,
        },
    },
    "POWER_SUPPLIER": {
        "name": "Power Supplier",
        "description": "Full supplier portal access",
        "effects": {
            "VIEW_SUPPLIER_PORTAL": Effect.ALLOW,
            "MANAGE_SUPPLIER_PRODUCTS": Effect.ALLOW,
            "EXPORT_SUPPLIER_REPORTS": Effect.ALLOW,
        },
    },
    "BASIC_SUPPLIER": {
        "name": "Basic Supplier",
        "description": "Limited supplier access",
        "effects": {
            "VIEW_SUPPLIER_PORTAL": Effect.ALLOW,
            "EXPORT_SUPPLIER_REPORTS": Effect.DENY,
        },
    },
}

# (module_key, name, required_role)
DEFAULT_MODULES = [
    ("products", "Products", None),
    ("orders", "Orders", None),
    ("quotes", "Quote Requests", None),
    ("suppliers", "Suppliers", None),
    ("customers", "Customers", None),
    ("installments", "Installments", None),
    ("tools", "Trader Tools", None),
    ("reports", "Reports", None),
    ("settings", "Settings", None),
]


def crud_flags(letters: str) -> dict[str, bool]:
    """Turn a flag string such as "cru" into RoleCapability column values."""
    return {
        "can_create": "c" in letters,
        "can_read": "r" in letters,
        "can_update": "u" in letters,
        "can_delete": "d" in letters,
    }


async def seed_capabilities(db: AsyncSession) -> dict[str, Capability]:
    """
    Create default capabilities.

    Returns:
        Dictionary mapping capability codes to Capability objects
    """
    log.info("Creating default capabilities...")
    capabilities_map = {}

    for sort_order, (code, name, module, category) in enumerate(DEFAULT_CAPABILITIES):
        stmt = select(Capability).where(Capability.code == code)
        result = await db.execute(stmt)
        existing = result.scalars().first()

        if existing:
            log.debug(f"Capability '{code}' already exists, skipping")
            capabilities_map[code] = existing
            continue

        capability = Capability(code=code, name=name, module=module, category=category, sort_order=sort_order)
        db.add(capability)
        capabilities_map[code] = capability
        log.info(f"Created capability: {code}")

    await db.commit()

    for capability in capabilities_map.values():
        await db.refresh(capability)

    log.info(f"Seeded {len(capabilities_map)} capabilities")
    return capabilities_map


async def seed_roles(db: AsyncSession, capabilities_map: dict[str, Capability]):
    """
    Create system roles and their CRUD grants.

    Args:
        db: Database session
        capabilities_map: Dictionary of capability code -> Capability object
    """
    log.info("Creating default roles...")

    for sort_order, (role_code, role_config) in enumerate(DEFAULT_ROLES.items()):
        stmt = select(Role).where(Role.code == role_code)
        result = await db.execute(stmt)
        if result.scalars().first():
            log.debug(f"Role '{role_code}' already exists, skipping")
            continue

        role = Role(
            code=role_code,
            name=role_config["name"],
            description=role_config["description"],
            is_system=True,
            sort_order=sort_order
        )

        if role_config["grants"] == "ALL":
            grants = {code: FULL for code in capabilities_map}
        else:
            grants = role_config["grants"]

        for capability_code, flags in grants.items():
            capability = capabilities_map.get(capability_code)
            if capability is None:
                log.warning(f"Capability '{capability_code}' not found for role '{role_code}'")
                continue
            role.grants.append(RoleCapability(capability_id=capability.id, **crud_flags(flags)))

        db.add(role)
        log.info(f"Created role '{role_code}' with {len(role.grants)} grants")

    await db.commit()


async def seed_groups(db: AsyncSession, capabilities_map: dict[str, Capability]):
    """Create system default permission groups and their effects."""
    log.info("Creating default permission groups...")

    for sort_order, (group_code, group_config) in enumerate(DEFAULT_GROUPS.items()):
        stmt = select(PermissionGroup).where(PermissionGroup.code == group_code)
        result = await db.execute(stmt)
        if result.scalars().first():
            log.debug(f"Group '{group_code}' already exists, skipping")
            continue

        group = PermissionGroup(
            code=group_code,
            name=group_config["name"],
            description=group_config["description"],
            is_system_default=True,
            sort_order=sort_order
        )
        for capability_code, effect in group_config["effects"].items():
            capability = capabilities_map.get(capability_code)
            if capability is None:
                log.warning(f"Capability '{capability_code}' not found for group '{group_code}'")
                continue
            group.grants.append(GroupCapability(capability_id=capability.id, effect=effect))

        db.add(group)
        log.info(f"Created group '{group_code}'")

    await db.commit()


async def seed_modules(db: AsyncSession):
    """Register modules, all enabled."""
    log.info("Creating default modules...")

    for sort_order, (module_key, name, required_role) in enumerate(DEFAULT_MODULES):
        stmt = select(ModuleAccess).where(ModuleAccess.module_key == module_key)
        result = await db.execute(stmt)
        if result.scalars().first():
            log.debug(f"Module '{module_key}' already exists, skipping")
            continue

        db.add(ModuleAccess(module_key=module_key, name=name, required_role=required_role, sort_order=sort_order))
        log.info(f"Created module: {module_key}")

    await db.commit()


async def main():
    """Main function to seed the permission data."""
    log.info("Starting permission seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        try:
            capabilities_map = await seed_capabilities(db)
            await seed_roles(db, capabilities_map)
            await seed_groups(db, capabilities_map)
            await seed_modules(db)

            log.info("Permission seeding completed successfully!")
            log.info("")
            log.info("Default roles created:")
            for role_code, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {role_code}: {role_config['description']}")

        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
