from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from bkeep_auth.logging import get_logger
from bkeep_auth.service.audit import AuditTrail, RequestContext
from bkeep_auth.service.auth import AuthenticationFlow, SessionResult
from bkeep_auth.service.authorization import SUPERADMIN_ROLE, AuthorizationResolver
from bkeep_auth.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from bkeep_auth.storage.errors import ConstraintViolation
from bkeep_auth.storage.models import Tenant

logger = get_logger(__name__)

SCHEMA_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")
MAX_SCHEMA_NAME_LENGTH = 63


def tenant_to_dict(tenant: Tenant) -> Dict[str, Any]:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "schemaName": tenant.schema_name,
        "isActive": tenant.is_active,
        "createdAt": tenant.created_at.isoformat(),
    }


class TenantService:
    def __init__(
        self,
        store,
        resolver: AuthorizationResolver,
        auth: AuthenticationFlow,
        audit: AuditTrail,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.auth = auth
        self.audit = audit

    @staticmethod
    def validate_schema_name(schema_name: str) -> None:
        if (
            not schema_name
            or len(schema_name) > MAX_SCHEMA_NAME_LENGTH
            or not SCHEMA_NAME_RE.match(schema_name)
        ):
            raise BadRequestError(
                "invalid schema name",
                errors=[
                    {
                        "field": "schemaName",
                        "message": "must start with a lowercase letter and contain only "
                        "lowercase letters, digits and underscores (max 63)",
                    }
                ],
            )

    def onboard(
        self,
        name: str,
        schema_name: str,
        *,
        actor: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> Tenant:
        """Create a tenant and give every superadmin membership plus the role there."""

        cleaned = (name or "").strip()
        if not cleaned:
            raise BadRequestError(
                "tenant name is required",
                errors=[{"field": "name", "message": "tenant name is required"}],
            )
        self.validate_schema_name(schema_name)
        if self.store.get_tenant_by_schema(schema_name):
            raise ConflictError("tenant schema already exists")

        superadmin = self.store.get_role_by_name(SUPERADMIN_ROLE)
        try:
            with self.store.transaction():
                tenant = self.store.create_tenant(cleaned, schema_name)
                if superadmin:
                    for user_id in self.store.users_with_role(superadmin.id):
                        if not self.store.get_membership(user_id, tenant.id):
                            self.store.add_membership(user_id, tenant.id, is_primary=False)
                        self.store.sync_user_roles(user_id, tenant.id, [superadmin.id])
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

        logger.info("tenant_onboarded", tenant_id=tenant.id, schema_name=schema_name)
        if actor:
            self.audit.record_safely(
                "tenant.created",
                actor,
                [{"type": "tenant", "id": tenant.id, "name": tenant.name}],
                tenant_id=tenant.id,
                context=context,
            )
        return tenant

    async def switch(
        self,
        user: Dict[str, Any],
        tenant_id: str,
        *,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
        session_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> SessionResult:
        record = self.store.get_user(user["id"])
        if not record:
            raise NotFoundError("user not found")
        if not self.store.get_membership(record.id, tenant_id):
            raise ForbiddenError("user does not belong to tenant")
        tenant = self.store.get_tenant(tenant_id)
        if not tenant or not tenant.is_active:
            raise ForbiddenError("tenant is not active")
        self.store.set_primary_tenant(record.id, tenant_id)
        result = await self.auth.rebind_session(
            record,
            tenant_id,
            refresh_token=refresh_token,
            access_token=access_token,
            session_id=session_id,
            context=context,
        )
        self.audit.record_safely(
            "tenant.switched",
            {"type": "user", "id": record.id, "email": record.email, "name": record.name},
            [{"type": "tenant", "id": tenant.id, "name": tenant.name}],
            tenant_id=tenant.id,
            context=context,
            metadata={"previousTenantId": user.get("selectedTenantId")},
        )
        return result

    def update_user_roles(
        self,
        user_id: str,
        tenant_id: str,
        role_ids: List[str],
        *,
        actor: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Replace the role ``user_id`` holds in ``tenant_id``, the caller's selected tenant."""

        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        if not self.store.get_membership(user_id, tenant_id):
            raise ForbiddenError("user does not belong to tenant")
        unique_ids = list(dict.fromkeys(role_ids or []))
        if not unique_ids:
            raise BadRequestError("at least one role is required")
        if len(unique_ids) > 1:
            raise BadRequestError("a user can hold only one role per tenant")
        for role_id in unique_ids:
            role = self.store.get_role(role_id)
            if not role or not role.is_active:
                raise BadRequestError("invalid role id")
            if role.name == SUPERADMIN_ROLE:
                raise ForbiddenError("superadmin role cannot be assigned")
        self.store.sync_user_roles(user_id, tenant_id, unique_ids)
        logger.info("user_roles_updated", user_id=user_id, tenant_id=tenant_id)
        if actor:
            self.audit.record_safely(
                "user.roles_updated",
                actor,
                [{"type": "user", "id": user_id}],
                tenant_id=tenant_id,
                context=context,
                metadata={"roleIds": unique_ids},
            )
        return self.resolver.resolve(user_id, tenant_id).to_response()
