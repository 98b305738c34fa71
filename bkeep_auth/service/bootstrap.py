from __future__ import annotations

from typing import Dict, List, Optional

from bkeep_auth.logging import get_logger
from bkeep_auth.service.auth import hash_password
from bkeep_auth.storage.models import Role, User

logger = get_logger(__name__)

ROLES = [
    ("superadmin", "Super Admin", "Full access across every tenant"),
    ("admin", "Admin", "Manages users and settings of a tenant"),
    ("accountant", "Accountant", "Reviews and posts the books"),
    ("bookkeeper", "Bookkeeper", "Records day-to-day transactions"),
    ("viewer", "Viewer", "Read-only access"),
]

PERMISSIONS = [
    ("dashboard.view", "View Dashboard"),
    ("users.view", "View Users"),
    ("users.create", "Create Users"),
    ("users.update", "Update Users"),
    ("users.delete", "Delete Users"),
    ("roles.view", "View Roles"),
    ("tenants.view", "View Tenants"),
    ("tenants.create", "Create Tenants"),
    ("invitations.manage", "Manage Invitations"),
]

ALL = "*"
ROLE_PERMISSIONS: Dict[str, List[str] | str] = {
    "superadmin": ALL,
    "admin": ALL,
    "accountant": ["dashboard.view", "users.view", "roles.view"],
    "bookkeeper": ["dashboard.view"],
    "viewer": ["dashboard.view"],
}


def seed_roles_and_permissions(store) -> Dict[str, Role]:
    """Create the built-in roles and permissions; existing rows are left alone."""

    permissions = {}
    for name, display_name in PERMISSIONS:
        permissions[name] = store.get_permission_by_name(name) or store.create_permission(
            name, display_name
        )

    roles: Dict[str, Role] = {}
    for name, display_name, description in ROLES:
        role = store.get_role_by_name(name)
        if not role:
            role = store.create_role(name, display_name, description=description)
            granted = ROLE_PERMISSIONS.get(name, [])
            names = [p for p, _ in PERMISSIONS] if granted == ALL else granted
            for perm_name in names:
                permission = permissions.get(perm_name)
                if permission:
                    store.grant_permission(role.id, permission.id)
        roles[name] = role
    logger.info("roles_seeded", roles=sorted(roles))
    return roles


def ensure_superadmin(
    store,
    email: str,
    password: str,
    *,
    name: str = "Super Admin",
    tenant_name: str = "BKeep",
    schema_name: str = "tenant_bkeep",
    roles: Optional[Dict[str, Role]] = None,
) -> User:
    roles = roles or seed_roles_and_permissions(store)
    superadmin = roles["superadmin"]
    with store.transaction():
        tenant = store.get_tenant_by_schema(schema_name) or store.create_tenant(
            tenant_name, schema_name
        )
        user = store.get_user_by_email(email)
        if user:
            user = store.update_user(
                user.id, password_hash=hash_password(password), is_active=True
            )
        else:
            user = store.create_user(
                email,
                name,
                password_hash=hash_password(password),
                is_verified=True,
                is_active=True,
            )
        if not store.get_membership(user.id, tenant.id):
            store.add_membership(user.id, tenant.id, is_primary=not store.list_memberships(user.id))
        store.sync_user_roles(user.id, tenant.id, [superadmin.id])
    logger.info("superadmin_ensured", user_id=user.id, tenant_id=tenant.id)
    return user
