from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    is_verified: bool = False
    verified_at: Optional[datetime] = None
    is_active: bool = True
    mfa_enabled: bool = False
    last_logged_in_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.deleted_at is None and self.expires_at > (now or utcnow())


@dataclass
class MfaEmailOtp:
    id: str
    user_id: str
    code: str
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        code: str,
        expiry_minutes: int = 5,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "MfaEmailOtp":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            code=code,
            expires_at=now + timedelta(minutes=expiry_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
        )


@dataclass
class UserAuthenticator:
    id: str
    user_id: str
    secret: str
    backup_codes: Optional[str] = None
    type: str = "totp"
    is_active: bool = False
    verified_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def is_active_and_verified(self) -> bool:
        return self.is_active and self.verified_at is not None and self.deleted_at is None


@dataclass
class UserPasskey:
    id: str
    user_id: str
    credential_id: str
    public_key: str
    counter: int = 0
    name: str = "Passkey"
    credential_type: str = "platform"
    transports: List[str] = field(default_factory=list)
    backup_eligible: bool = False
    backup_state: bool = False
    aaguid: Optional[str] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Tenant:
    id: str
    name: str
    schema_name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class UserTenant:
    user_id: str
    tenant_id: str
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Role:
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Permission:
    id: str
    name: str
    display_name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class UserRole:
    user_id: str
    role_id: str
    tenant_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserInvitation:
    id: str
    user_id: str
    tenant_id: str
    invited_by: str
    role_id: str
    token_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class PasswordResetToken:
    id: str
    email: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class AuditLog:
    id: str
    action: str
    actor: Dict
    targets: List[Dict] = field(default_factory=list)
    tenant_id: Optional[str] = None
    context: Dict = field(default_factory=dict)
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SessionRecord:
    id: str
    user_id: str
    data: Dict
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TenantMembership:
    """A tenant joined with the user's pivot row."""

    tenant: Tenant
    is_primary: bool


@dataclass
class RoleGrant:
    """A role joined with its permissions, as loaded for authorization."""

    role: Role
    permissions: List[Permission] = field(default_factory=list)
