from __future__ import annotations

import base64
import copy
import dataclasses
import hashlib
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken

from bkeep_auth.logging import get_logger
from bkeep_auth.storage import filters as f
from bkeep_auth.storage.errors import ConstraintViolation
from bkeep_auth.storage.models import (
    AuditLog,
    MfaEmailOtp,
    PasswordResetToken,
    Permission,
    RefreshToken,
    Role,
    RoleGrant,
    SessionRecord,
    Tenant,
    TenantMembership,
    User,
    UserAuthenticator,
    UserInvitation,
    UserPasskey,
    UserRole,
    UserTenant,
    new_id,
    utcnow,
)

USER_FIELDS = {
    "name",
    "password_hash",
    "is_verified",
    "verified_at",
    "is_active",
    "mfa_enabled",
    "last_logged_in_at",
}
AUTHENTICATOR_FIELDS = {"is_active", "verified_at", "backup_codes", "last_used_at"}
PASSKEY_FIELDS = {"counter", "last_used_at", "name", "is_active"}
INVITATION_FIELDS = {"token_hash", "deleted_at", "role_id"}

# Tables copied for transaction rollback
_TABLES = (
    "users",
    "refresh_tokens",
    "mfa_otps",
    "authenticators",
    "passkeys",
    "tenants",
    "user_tenants",
    "roles",
    "permissions",
    "role_permissions",
    "user_roles",
    "invitations",
    "password_resets",
    "audit_logs",
    "sessions",
)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: str) -> Fernet:
    if not key_material:
        raise RuntimeError("MFA cipher requires key material")
    try:
        return Fernet(derive_cipher_key(key_material))
    except ValueError as exc:
        raise RuntimeError("Unable to initialize MFA cipher") from exc


class MemoryStore:
    """In-process credential store used for tests and local development.

    Every read applies the not-deleted boundary from ``storage.filters``.
    ``transaction()`` snapshots all tables and restores them if the block
    raises, giving all-or-nothing visibility for multi-row operations.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.mfa_otps: Dict[str, MfaEmailOtp] = {}
        self.authenticators: Dict[str, UserAuthenticator] = {}
        self.passkeys: Dict[str, UserPasskey] = {}
        self.tenants: Dict[str, Tenant] = {}
        self.user_tenants: List[UserTenant] = []
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: List[tuple[str, str]] = []
        self.user_roles: List[UserRole] = []
        self.invitations: Dict[str, UserInvitation] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self.audit_logs: List[AuditLog] = []
        self.sessions: Dict[str, SessionRecord] = {}
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)

    # transactions
    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            outermost = self._tx_depth == 0
            snapshot = (
                {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
                if outermost
                else None
            )
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    for name, value in snapshot.items():
                        setattr(self, name, value)
                    self.logger.info("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        is_verified: bool = False,
        is_active: bool = True,
        mfa_enabled: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if f.first(self.users.values(), f.live(f.where(email=normalized))):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=new_id(),
                email=normalized,
                name=name.strip(),
                password_hash=password_hash,
                is_verified=is_verified,
                verified_at=now if is_verified else None,
                is_active=is_active,
                mfa_enabled=mfa_enabled,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user if user and user.deleted_at is None else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            return f.first(self.users.values(), f.live(f.where(email=normalized)))

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return user

    def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return False
            user.deleted_at = utcnow()
            return True

    def restore_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is None:
                return False
            user.deleted_at = None
            return True

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if not self.get_user(user_id):
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = RefreshToken(
                id=new_id(),
                user_id=user_id,
                token=token,
                expires_at=expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.refresh_tokens[record.id] = record
            return record

    def get_valid_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return f.first(
                self.refresh_tokens.values(),
                f.live(f.where(token=token), f.unexpired(utcnow())),
            )

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return f.select(
                self.refresh_tokens.values(),
                f.live(f.where(user_id=user_id), f.unexpired(utcnow())),
            )

    def revoke_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            record = f.first(self.refresh_tokens.values(), f.live(f.where(token=token)))
            if not record:
                return False
            record.deleted_at = utcnow()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            rows = f.select(self.refresh_tokens.values(), f.live(f.where(user_id=user_id)))
            now = utcnow()
            for row in rows:
                row.deleted_at = now
            return len(rows)

    def purge_expired_refresh_tokens(self) -> int:
        with self._data_lock:
            now = utcnow()
            rows = [
                row
                for row in self.refresh_tokens.values()
                if row.deleted_at is None and row.expires_at <= now
            ]
            for row in rows:
                row.deleted_at = now
            return len(rows)

    # email otp
    def create_mfa_otp(
        self,
        user_id: str,
        code: str,
        expiry_minutes: int = 5,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> MfaEmailOtp:
        with self._data_lock:
            now = utcnow()
            for prior in f.select(self.mfa_otps.values(), f.live(f.where(user_id=user_id))):
                prior.deleted_at = now
            otp = MfaEmailOtp.new(
                user_id,
                code,
                expiry_minutes,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.mfa_otps[otp.id] = otp
            return otp

    def find_mfa_otp(self, user_id: str, code: str) -> Optional[MfaEmailOtp]:
        with self._data_lock:
            return f.first(
                self.mfa_otps.values(), f.live(f.where(user_id=user_id, code=code))
            )

    def active_mfa_otps(self, user_id: str) -> List[MfaEmailOtp]:
        with self._data_lock:
            return f.select(
                self.mfa_otps.values(),
                f.live(f.where(user_id=user_id), f.unexpired(utcnow())),
            )

    def consume_mfa_otp(self, otp_id: str) -> bool:
        with self._data_lock:
            otp = self.mfa_otps.get(otp_id)
            if not otp or otp.deleted_at is not None:
                return False
            otp.deleted_at = utcnow()
            return True

    # totp authenticators
    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return secret

    def _decrypted(self, row: Optional[UserAuthenticator]) -> Optional[UserAuthenticator]:
        if row is None:
            return None
        return dataclasses.replace(row, secret=self._decrypt_mfa_secret(row.secret))

    def create_authenticator(
        self,
        user_id: str,
        secret: str,
        backup_codes: str,
        *,
        type: str = "totp",
    ) -> UserAuthenticator:
        with self._data_lock:
            if not self.get_user(user_id):
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            for prior in f.select(
                self.authenticators.values(), f.live(f.where(user_id=user_id, type=type))
            ):
                prior.is_active = False
            row = UserAuthenticator(
                id=new_id(),
                user_id=user_id,
                type=type,
                secret=self._encrypt_mfa_secret(secret),
                backup_codes=backup_codes,
                is_active=False,
            )
            self.authenticators[row.id] = row
            return self._decrypted(row)

    def get_active_authenticator(
        self, user_id: str, type: str = "totp"
    ) -> Optional[UserAuthenticator]:
        with self._data_lock:
            for row in f.select(
                self.authenticators.values(),
                f.live(f.where(user_id=user_id, type=type), f.active()),
            ):
                if row.verified_at is not None:
                    return self._decrypted(row)
            return None

    def get_unverified_authenticator(
        self, user_id: str, type: str = "totp"
    ) -> Optional[UserAuthenticator]:
        with self._data_lock:
            rows = [
                row
                for row in f.select(
                    self.authenticators.values(), f.live(f.where(user_id=user_id, type=type))
                )
                if row.verified_at is None
            ]
            rows.sort(key=lambda row: row.created_at, reverse=True)
            return self._decrypted(rows[0]) if rows else None

    def update_authenticator(self, authenticator_id: str, **fields) -> Optional[UserAuthenticator]:
        unknown = set(fields) - AUTHENTICATOR_FIELDS
        if unknown:
            raise ValueError(f"unsupported authenticator fields: {sorted(unknown)}")
        with self._data_lock:
            row = self.authenticators.get(authenticator_id)
            if not row or row.deleted_at is not None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            return self._decrypted(row)

    def delete_user_authenticators(self, user_id: str, type: str = "totp") -> int:
        with self._data_lock:
            rows = f.select(
                self.authenticators.values(), f.live(f.where(user_id=user_id, type=type))
            )
            now = utcnow()
            for row in rows:
                row.is_active = False
                row.deleted_at = now
            return len(rows)

    # passkeys
    def create_passkey(
        self,
        user_id: str,
        credential_id: str,
        public_key: str,
        *,
        counter: int = 0,
        name: str = "Passkey",
        credential_type: str = "platform",
        transports: Optional[Sequence[str]] = None,
        backup_eligible: bool = False,
        backup_state: bool = False,
        aaguid: Optional[str] = None,
    ) -> UserPasskey:
        with self._data_lock:
            if any(p.credential_id == credential_id for p in self.passkeys.values()):
                raise ConstraintViolation(
                    "passkey already registered", {"field": "credentialId"}
                )
            passkey = UserPasskey(
                id=new_id(),
                user_id=user_id,
                credential_id=credential_id,
                public_key=public_key,
                counter=counter,
                name=name,
                credential_type=credential_type,
                transports=list(transports or []),
                backup_eligible=backup_eligible,
                backup_state=backup_state,
                aaguid=aaguid,
            )
            self.passkeys[passkey.id] = passkey
            return passkey

    def get_passkey_by_credential_id(
        self, credential_id: str, *, active_only: bool = True
    ) -> Optional[UserPasskey]:
        predicate = f.live(f.where(credential_id=credential_id))
        if active_only:
            predicate = predicate & f.active()
        with self._data_lock:
            return f.first(self.passkeys.values(), predicate)

    def get_passkey(self, passkey_id: str) -> Optional[UserPasskey]:
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            return passkey if passkey and passkey.deleted_at is None else None

    def list_user_passkeys(
        self, user_id: str, *, active_only: bool = False
    ) -> List[UserPasskey]:
        predicate = f.live(f.where(user_id=user_id))
        if active_only:
            predicate = predicate & f.active()
        with self._data_lock:
            rows = f.select(self.passkeys.values(), predicate)
            return sorted(rows, key=lambda p: p.created_at, reverse=True)

    def update_passkey(self, passkey_id: str, **fields) -> Optional[UserPasskey]:
        unknown = set(fields) - PASSKEY_FIELDS
        if unknown:
            raise ValueError(f"unsupported passkey fields: {sorted(unknown)}")
        with self._data_lock:
            passkey = self.get_passkey(passkey_id)
            if not passkey:
                return None
            for key, value in fields.items():
                setattr(passkey, key, value)
            passkey.updated_at = utcnow()
            return passkey

    def soft_delete_passkey(self, passkey_id: str) -> bool:
        with self._data_lock:
            passkey = self.get_passkey(passkey_id)
            if not passkey:
                return False
            passkey.deleted_at = utcnow()
            passkey.is_active = False
            return True

    def count_active_passkeys(self, user_id: str) -> int:
        return len(self.list_user_passkeys(user_id, active_only=True))

    # tenants and memberships
    def create_tenant(self, name: str, schema_name: str, *, is_active: bool = True) -> Tenant:
        with self._data_lock:
            if any(t.schema_name == schema_name for t in self.tenants.values()):
                raise ConstraintViolation(
                    "tenant schema already exists", {"field": "schemaName"}
                )
            tenant = Tenant(id=new_id(), name=name, schema_name=schema_name, is_active=is_active)
            self.tenants[tenant.id] = tenant
            return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return tenant if tenant and tenant.deleted_at is None else None

    def get_tenant_by_schema(self, schema_name: str) -> Optional[Tenant]:
        with self._data_lock:
            return f.first(self.tenants.values(), f.live(f.where(schema_name=schema_name)))

    def add_membership(
        self, user_id: str, tenant_id: str, *, is_primary: bool = False
    ) -> UserTenant:
        with self._data_lock:
            if self.get_membership(user_id, tenant_id):
                raise ConstraintViolation(
                    "user already belongs to tenant",
                    {"user_id": user_id, "tenant_id": tenant_id},
                )
            if is_primary:
                for row in self.user_tenants:
                    if row.user_id == user_id:
                        row.is_primary = False
            membership = UserTenant(user_id=user_id, tenant_id=tenant_id, is_primary=is_primary)
            self.user_tenants.append(membership)
            return membership

    def get_membership(self, user_id: str, tenant_id: str) -> Optional[UserTenant]:
        with self._data_lock:
            return f.first(self.user_tenants, f.where(user_id=user_id, tenant_id=tenant_id))

    def list_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._data_lock:
            rows = sorted(
                f.select(self.user_tenants, f.where(user_id=user_id)),
                key=lambda row: row.created_at,
            )
            memberships = []
            for row in rows:
                tenant = self.get_tenant(row.tenant_id)
                if tenant:
                    memberships.append(TenantMembership(tenant=tenant, is_primary=row.is_primary))
            return memberships

    def set_primary_tenant(self, user_id: str, tenant_id: str) -> bool:
        with self.transaction():
            target = self.get_membership(user_id, tenant_id)
            if not target:
                return False
            for row in self.user_tenants:
                if row.user_id == user_id:
                    row.is_primary = False
            target.is_primary = True
            return True

    # roles and permissions
    def create_role(
        self,
        name: str,
        display_name: str,
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Role:
        with self._data_lock:
            if f.first(self.roles.values(), f.live(f.where(name=name))):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(
                id=new_id(),
                name=name,
                display_name=display_name,
                description=description,
                is_active=is_active,
            )
            self.roles[role.id] = role
            return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return role if role and role.deleted_at is None else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return f.first(self.roles.values(), f.live(f.where(name=name)))

    def create_permission(
        self, name: str, display_name: str, *, is_active: bool = True
    ) -> Permission:
        with self._data_lock:
            if f.first(self.permissions.values(), f.live(f.where(name=name))):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            permission = Permission(
                id=new_id(), name=name, display_name=display_name, is_active=is_active
            )
            self.permissions[permission.id] = permission
            return permission

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            return f.first(self.permissions.values(), f.live(f.where(name=name)))

    def update_permission(self, permission_id: str, **fields) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(permission_id)
            if not permission:
                return None
            for key in ("is_active", "deleted_at", "display_name"):
                if key in fields:
                    setattr(permission, key, fields[key])
            return permission

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        with self._data_lock:
            pair = (role_id, permission_id)
            if pair not in self.role_permissions:
                self.role_permissions.append(pair)

    def role_permissions_for(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            return [
                self.permissions[pid]
                for rid, pid in self.role_permissions
                if rid == role_id and pid in self.permissions
            ]

    def user_roles_in_tenant(self, user_id: str, tenant_id: str) -> List[RoleGrant]:
        with self._data_lock:
            grants = []
            for row in f.select(self.user_roles, f.where(user_id=user_id, tenant_id=tenant_id)):
                role = self.get_role(row.role_id)
                if role and role.is_active:
                    grants.append(RoleGrant(role=role, permissions=self.role_permissions_for(role.id)))
            return grants

    def sync_user_roles(self, user_id: str, tenant_id: str, role_ids: Sequence[str]) -> None:
        """Replace every role the user holds in ``tenant_id`` with ``role_ids``."""

        with self.transaction():
            self.user_roles = [
                row
                for row in self.user_roles
                if not (row.user_id == user_id and row.tenant_id == tenant_id)
            ]
            for role_id in dict.fromkeys(role_ids):
                if not self.get_role(role_id):
                    raise ConstraintViolation("role not found", {"role_id": role_id})
                self.user_roles.append(
                    UserRole(user_id=user_id, role_id=role_id, tenant_id=tenant_id)
                )

    def users_with_role(self, role_id: str) -> List[str]:
        with self._data_lock:
            return list(
                dict.fromkeys(row.user_id for row in self.user_roles if row.role_id == role_id)
            )

    # invitations
    def create_invitation(
        self,
        user_id: str,
        tenant_id: str,
        invited_by: str,
        role_id: str,
        token_hash: str,
    ) -> UserInvitation:
        with self._data_lock:
            if self.get_live_invitation(user_id, tenant_id):
                raise ConstraintViolation(
                    "invitation already exists",
                    {"user_id": user_id, "tenant_id": tenant_id},
                )
            invitation = UserInvitation(
                id=new_id(),
                user_id=user_id,
                tenant_id=tenant_id,
                invited_by=invited_by,
                role_id=role_id,
                token_hash=token_hash,
            )
            self.invitations[invitation.id] = invitation
            return invitation

    def get_invitation(
        self, invitation_id: str, *, include_deleted: bool = False
    ) -> Optional[UserInvitation]:
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                return None
            if invitation.deleted_at is not None and not include_deleted:
                return None
            return invitation

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[UserInvitation]:
        with self._data_lock:
            return f.first(self.invitations.values(), f.live(f.where(token_hash=token_hash)))

    def get_live_invitation(self, user_id: str, tenant_id: str) -> Optional[UserInvitation]:
        with self._data_lock:
            return f.first(
                self.invitations.values(),
                f.live(f.where(user_id=user_id, tenant_id=tenant_id)),
            )

    def update_invitation(self, invitation_id: str, **fields) -> Optional[UserInvitation]:
        unknown = set(fields) - INVITATION_FIELDS
        if unknown:
            raise ValueError(f"unsupported invitation fields: {sorted(unknown)}")
        with self._data_lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                return None
            for key, value in fields.items():
                setattr(invitation, key, value)
            invitation.updated_at = utcnow()
            return invitation

    def list_tenant_invitations(self, tenant_id: str) -> List[UserInvitation]:
        with self._data_lock:
            rows = f.select(self.invitations.values(), f.live(f.where(tenant_id=tenant_id)))
            return sorted(rows, key=lambda row: row.created_at, reverse=True)

    # password resets
    def create_password_reset(
        self, email: str, token_hash: str, expiry_minutes: int = 60
    ) -> PasswordResetToken:
        normalized = email.strip().lower()
        with self._data_lock:
            now = utcnow()
            for prior in f.select(self.password_resets.values(), f.live(f.where(email=normalized))):
                prior.deleted_at = now
            record = PasswordResetToken(
                id=new_id(),
                email=normalized,
                token_hash=token_hash,
                expires_at=now + timedelta(minutes=expiry_minutes),
                created_at=now,
            )
            self.password_resets[record.id] = record
            return record

    def get_password_reset(self, email: str) -> Optional[PasswordResetToken]:
        normalized = email.strip().lower()
        with self._data_lock:
            return f.first(self.password_resets.values(), f.live(f.where(email=normalized)))

    def revoke_password_reset(self, reset_id: str) -> bool:
        with self._data_lock:
            record = self.password_resets.get(reset_id)
            if not record or record.deleted_at is not None:
                return False
            record.deleted_at = utcnow()
            return True

    # audit
    def record_audit(self, entry: AuditLog) -> AuditLog:
        with self._data_lock:
            self.audit_logs.append(entry)
            return entry

    def list_audit(self, action: Optional[str] = None, limit: int = 100) -> List[AuditLog]:
        with self._data_lock:
            rows = [row for row in self.audit_logs if action is None or row.action == action]
            return list(reversed(rows))[:limit]

    # sessions
    def save_session(
        self,
        user_id: str,
        data: Dict,
        *,
        session_id: Optional[str] = None,
        ttl_seconds: int = 900,
    ) -> SessionRecord:
        with self._data_lock:
            record = SessionRecord(
                id=session_id or new_id(),
                user_id=user_id,
                data=dict(data),
                expires_at=utcnow() + timedelta(seconds=ttl_seconds),
            )
            self.sessions[record.id] = record
            return record

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(session_id)
            if record and record.expires_at <= utcnow():
                self.sessions.pop(session_id, None)
                return None
            return record

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None
