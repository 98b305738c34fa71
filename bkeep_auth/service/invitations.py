from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bkeep_auth.config import Settings
from bkeep_auth.logging import get_logger
from bkeep_auth.service.auth import hash_password, sha256_hex, unusable_password_hash
from bkeep_auth.service.authorization import SUPERADMIN_ROLE
from bkeep_auth.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from bkeep_auth.service.notifications import NotificationService
from bkeep_auth.storage.errors import ConstraintViolation
from bkeep_auth.storage.models import Tenant, User, UserInvitation, utcnow

logger = get_logger(__name__)

INVALID_INVITATION = "invalid or expired invitation token"


@dataclass
class IssuedInvitation:
    invitation: UserInvitation
    token: str


def user_summary(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "isVerified": user.is_verified,
        "isActive": user.is_active,
        "mfaEnabled": user.mfa_enabled,
    }


class InvitationWorkflow:
    """Created -> Accepted | Revoked. Resending swaps the token in place."""

    def __init__(self, store, settings: Settings, notifications: NotificationService) -> None:
        self.store = store
        self.settings = settings
        self.notifications = notifications

    def _is_expired(self, invitation: UserInvitation) -> bool:
        lifetime = timedelta(minutes=self.settings.invitation_expiry_minutes)
        return invitation.updated_at + lifetime <= utcnow()

    def _live_by_token(self, token: str) -> UserInvitation:
        invitation = self.store.get_invitation_by_token_hash(sha256_hex(token or ""))
        if not invitation or self._is_expired(invitation):
            raise BadRequestError(INVALID_INVITATION)
        return invitation

    async def _send(self, invitation: UserInvitation, token: str, user: User, tenant: Tenant, inviter: Optional[User]) -> None:
        await self.notifications.notify(
            "invitation",
            user.email,
            {
                "acceptUrl": f"{self.settings.frontend_url}/accept-invitation?token={token}",
                "userName": user.name,
                "tenantName": tenant.name,
                "senderName": inviter.name if inviter else None,
                "expiryDays": self.settings.invitation_expiry_minutes // (60 * 24),
            },
        )

    async def create(
        self,
        inviter_id: str,
        tenant_id: str,
        email: str,
        name: str,
        role_id: str,
    ) -> IssuedInvitation:
        inviter = self.store.get_user(inviter_id)
        if not inviter:
            raise NotFoundError("inviter not found")
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            raise NotFoundError("tenant not found")
        role = self.store.get_role(role_id)
        if not role or not role.is_active:
            raise BadRequestError("invalid role id")
        if role.name == SUPERADMIN_ROLE:
            raise ForbiddenError("superadmin role cannot be assigned by invitation")

        user = self.store.get_user_by_email(email)
        if user and self.store.get_membership(user.id, tenant_id):
            raise ConflictError("user already belongs to this tenant")
        if user and self.store.get_live_invitation(user.id, tenant_id):
            raise ConflictError("invitation already sent")

        token = secrets.token_hex(32)
        try:
            with self.store.transaction():
                if not user:
                    user = self.store.create_user(
                        email,
                        name,
                        password_hash=unusable_password_hash(),
                        is_verified=False,
                        is_active=True,
                        mfa_enabled=True,
                    )
                invitation = self.store.create_invitation(
                    user.id, tenant_id, inviter_id, role_id, sha256_hex(token)
                )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

        logger.info("invitation_created", invitation_id=invitation.id, tenant_id=tenant_id)
        await self._send(invitation, token, user, tenant, inviter)
        return IssuedInvitation(invitation=invitation, token=token)

    def verify(self, token: str) -> Dict[str, Any]:
        invitation = self._live_by_token(token)
        user = self.store.get_user(invitation.user_id)
        tenant = self.store.get_tenant(invitation.tenant_id)
        if not user or not tenant:
            raise BadRequestError(INVALID_INVITATION)
        return {
            "requiresPassword": not user.is_verified,
            "email": user.email,
            "name": user.name,
            "tenantName": tenant.name,
        }

    async def accept(self, token: str, password: Optional[str] = None) -> Dict[str, Any]:
        invitation = self._live_by_token(token)
        user = self.store.get_user(invitation.user_id)
        tenant = self.store.get_tenant(invitation.tenant_id)
        if not user or not tenant:
            raise BadRequestError(INVALID_INVITATION)
        new_user = not user.is_verified
        if new_user and not password:
            raise BadRequestError(
                "password is required",
                errors=[{"field": "password", "message": "password is required"}],
            )
        if not new_user and password:
            raise BadRequestError("password is not accepted for existing users")
        role = self.store.get_role(invitation.role_id)
        if not role or not role.is_active:
            raise BadRequestError("invited role is no longer available")

        now = utcnow()
        with self.store.transaction():
            if new_user:
                user = self.store.update_user(
                    user.id,
                    password_hash=hash_password(password),
                    is_verified=True,
                    verified_at=now,
                )
            if not self.store.get_membership(user.id, tenant.id):
                first_tenant = not self.store.list_memberships(user.id)
                self.store.add_membership(user.id, tenant.id, is_primary=first_tenant)
            self.store.sync_user_roles(user.id, tenant.id, [invitation.role_id])
            self.store.update_invitation(invitation.id, deleted_at=now)

        logger.info("invitation_accepted", invitation_id=invitation.id, user_id=user.id)
        await self.notifications.notify(
            "welcome",
            user.email,
            {
                "userName": user.name,
                "tenantName": tenant.name,
                "loginUrl": f"{self.settings.frontend_url}/login",
            },
        )
        return {"user": user_summary(user)}

    def revoke(self, invitation_id: str, tenant_id: str) -> None:
        invitation = self.store.get_invitation(invitation_id, include_deleted=True)
        if not invitation:
            raise NotFoundError("invitation not found")
        if invitation.tenant_id != tenant_id:
            raise ForbiddenError("invitation belongs to another tenant")
        if invitation.deleted_at is not None:
            raise BadRequestError("invitation already revoked")
        self.store.update_invitation(invitation.id, deleted_at=utcnow())
        logger.info("invitation_revoked", invitation_id=invitation.id)

    async def resend(self, invitation_id: str, tenant_id: str) -> IssuedInvitation:
        invitation = self.store.get_invitation(invitation_id)
        if not invitation:
            raise NotFoundError("invitation not found")
        if invitation.tenant_id != tenant_id:
            raise ForbiddenError("invitation belongs to another tenant")
        user = self.store.get_user(invitation.user_id)
        tenant = self.store.get_tenant(invitation.tenant_id)
        if not user or not tenant:
            raise NotFoundError("invitation not found")
        token = secrets.token_hex(32)
        invitation = self.store.update_invitation(invitation.id, token_hash=sha256_hex(token))
        logger.info("invitation_resent", invitation_id=invitation.id)
        await self._send(
            invitation, token, user, tenant, self.store.get_user(invitation.invited_by)
        )
        return IssuedInvitation(invitation=invitation, token=token)

    def describe(self, invitation: UserInvitation) -> Dict[str, Any]:
        user = self.store.get_user(invitation.user_id)
        role = self.store.get_role(invitation.role_id)
        inviter = self.store.get_user(invitation.invited_by)
        return {
            "id": invitation.id,
            "email": user.email if user else None,
            "name": user.name if user else None,
            "role": {"id": role.id, "name": role.name, "displayName": role.display_name}
            if role
            else None,
            "invitedBy": {"id": inviter.id, "name": inviter.name} if inviter else None,
            "tenantId": invitation.tenant_id,
            "createdAt": invitation.created_at.isoformat(),
            "updatedAt": invitation.updated_at.isoformat(),
        }

    def list_for_tenant(self, tenant_id: str) -> List[Dict[str, Any]]:
        return [self.describe(i) for i in self.store.list_tenant_invitations(tenant_id)]
