from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from bkeep_auth.logging import get_logger
from bkeep_auth.service.errors import ForbiddenError, NotFoundError, ServerError
from bkeep_auth.storage.models import Permission, Role, TenantMembership, User

logger = get_logger(__name__)

SUPERADMIN_ROLE = "superadmin"


@dataclass
class ResolvedUser:
    """A user bound to one tenant with the role and permissions held there."""

    user: User
    role: Role
    permissions: List[Permission]
    tenants: List[TenantMembership]
    selected_tenant_id: str
    roles: List[Role] = field(default_factory=list)

    @property
    def permission_names(self) -> List[str]:
        return [p.name for p in self.permissions]

    def token_payload(self) -> Dict[str, Any]:
        return {
            "id": self.user.id,
            "name": self.user.name,
            "email": self.user.email,
            "role": self.role.name,
            "permissions": self.permission_names,
            "selectedTenantId": self.selected_tenant_id,
        }

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.user.id,
            "email": self.user.email,
            "name": self.user.name,
            "role": {
                "id": self.role.id,
                "name": self.role.name,
                "displayName": self.role.display_name,
            },
            "permissions": [
                {"id": p.id, "name": p.name, "displayName": p.display_name}
                for p in self.permissions
            ],
            "tenants": [
                {"id": m.tenant.id, "name": m.tenant.name, "isPrimary": m.is_primary}
                for m in self.tenants
            ],
            "selectedTenantId": self.selected_tenant_id,
        }


class AuthorizationResolver:
    def __init__(self, store) -> None:
        self.store = store

    def resolve(self, user_id: str, tenant_id: Optional[str] = None) -> ResolvedUser:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        memberships = self.store.list_memberships(user_id)
        if not memberships:
            raise ServerError("user has no tenant")
        if tenant_id:
            selected = next((m for m in memberships if m.tenant.id == tenant_id), None)
            if selected is None:
                raise ForbiddenError("user does not belong to tenant")
        else:
            selected = next((m for m in memberships if m.is_primary), memberships[0])

        grants = self.store.user_roles_in_tenant(user_id, selected.tenant.id)
        if not grants:
            raise ServerError("user has no role")
        # Ordered dedup by name; the first grant that lists a permission wins
        merged: Dict[str, Permission] = {}
        for grant in grants:
            for permission in grant.permissions:
                if not permission.is_active or permission.deleted_at is not None:
                    continue
                merged.setdefault(permission.name, permission)
        return ResolvedUser(
            user=user,
            role=grants[0].role,
            permissions=list(merged.values()),
            tenants=memberships,
            selected_tenant_id=selected.tenant.id,
            roles=[grant.role for grant in grants],
        )


def check_access(
    user: Dict[str, Any],
    roles: Optional[Iterable[str]] = None,
    permissions: Optional[Iterable[str]] = None,
    *,
    require_all_permissions: bool = False,
    require_both: bool = False,
) -> None:
    """Raise ``ForbiddenError`` unless ``user`` satisfies the constraints.

    ``user`` is the decoded access-token payload. With no constraints every
    authenticated user passes. With one constraint that check decides alone.
    With both, ``require_both`` selects AND, otherwise either check suffices.
    """

    role_set = set(roles or ())
    needed = list(permissions or ())
    if not role_set and not needed:
        return

    held = set(user.get("permissions") or [])
    role_ok = user.get("role") in role_set if role_set else None
    if needed:
        if require_all_permissions:
            perm_ok: Optional[bool] = all(p in held for p in needed)
        else:
            perm_ok = any(p in held for p in needed)
    else:
        perm_ok = None

    if role_ok is not None and perm_ok is not None:
        allowed = (role_ok and perm_ok) if require_both else (role_ok or perm_ok)
    else:
        allowed = bool(role_ok if role_ok is not None else perm_ok)

    if not allowed:
        logger.info(
            "access_denied",
            user_id=user.get("id"),
            role=user.get("role"),
            required_roles=sorted(role_set),
            required_permissions=needed,
        )
        raise ForbiddenError("unauthorized access")
