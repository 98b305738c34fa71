from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bkeep_auth.config import Settings
from bkeep_auth.logging import get_logger
from bkeep_auth.service.audit import AuditTrail, RequestContext, actor_for
from bkeep_auth.service.authorization import AuthorizationResolver, ResolvedUser
from bkeep_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
)
from bkeep_auth.service.mfa import (
    INVALID_BACKUP_CODE,
    INVALID_OTP_CODE,
    INVALID_TOTP_CODE,
    MFA_TYPE_EMAIL,
    MFA_TYPE_TOTP,
    MfaEngine,
)
from bkeep_auth.service.notifications import NotificationService
from bkeep_auth.service.passkeys import PasskeyService
from bkeep_auth.service.tokens import TokenPair, TokenService
from bkeep_auth.storage.models import User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with this email, a password reset link has been sent"
)

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(password_hash: Optional[str], password: str) -> bool:
    if not password_hash:
        return False
    try:
        return _pwd_hasher.verify(password_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def unusable_password_hash() -> str:
    """Hash of a random secret nobody knows, for users created by invitation."""
    return hash_password(secrets.token_urlsafe(32))


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


@dataclass
class LoginChallenge:
    """CredentialsVerified, but a second factor is still owed."""

    mfa_type: str
    email: str

    def to_response(self) -> Dict[str, Any]:
        return {"requiresMfa": True, "mfaType": self.mfa_type, "email": self.email}


@dataclass
class SessionResult:
    access_token: str
    refresh_token: str
    user: ResolvedUser
    session_id: str


class AuthenticationFlow:
    """Login state machine from credentials through MFA to an issued session."""

    def __init__(
        self,
        store,
        settings: Settings,
        tokens: TokenService,
        resolver: AuthorizationResolver,
        mfa: MfaEngine,
        passkeys: PasskeyService,
        notifications: NotificationService,
        audit: AuditTrail,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.resolver = resolver
        self.mfa = mfa
        self.passkeys = passkeys
        self.notifications = notifications
        self.audit = audit

    # helpers
    def _persist_refresh(self, user_id: str, pair: TokenPair, context: Optional[RequestContext]) -> None:
        payload = self.tokens.verify_refresh(pair.refresh_token)
        self.store.create_refresh_token(
            user_id,
            pair.refresh_token,
            self.tokens.expiry_of(payload),
            user_agent=context.user_agent if context else None,
            ip_address=context.ip if context else None,
        )

    def _user_by_email_or_404(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("user not found")
        return user

    def _mfa_candidate(self, email: str, failure: str) -> User:
        # unknown accounts fail exactly like a wrong code
        user = self.store.get_user_by_email(email)
        if not user or not user.mfa_enabled:
            raise AuthenticationError(failure)
        return user

    @staticmethod
    def _ensure_can_sign_in(user: User) -> None:
        if not user.is_verified:
            raise AuthenticationError("email not verified")
        if not user.is_active:
            raise ForbiddenError("account deactivated")

    # login
    async def login(
        self, email: str, password: str, context: Optional[RequestContext] = None
    ) -> LoginChallenge | SessionResult:
        user = self.store.get_user_by_email(email)
        if not user:
            raise AuthenticationError(INVALID_CREDENTIALS)
        self._ensure_can_sign_in(user)
        if not verify_password(user.password_hash, password):
            logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.store.update_user(user.id, last_logged_in_at=utcnow())

        if self.mfa.active_authenticator(user.id):
            return LoginChallenge(mfa_type=MFA_TYPE_TOTP, email=user.email)
        if user.mfa_enabled:
            otp = self.mfa.issue_email_otp(
                user,
                context.user_agent if context else None,
                context.ip if context else None,
            )
            await self.notifications.notify(
                "mfa-otp",
                user.email,
                {
                    "otpCode": otp.code,
                    "userName": user.name,
                    "expiryMinutes": self.settings.mfa_otp_expiry_minutes,
                },
            )
            return LoginChallenge(mfa_type=MFA_TYPE_EMAIL, email=user.email)
        return await self.establish_session(user, context)

    async def establish_session(
        self,
        user: User,
        context: Optional[RequestContext] = None,
        *,
        tenant_id: Optional[str] = None,
    ) -> SessionResult:
        resolved = self.resolver.resolve(user.id, tenant_id)
        payload = resolved.token_payload()
        pair = self.tokens.issue_pair(payload)
        self._persist_refresh(user.id, pair, context)
        session = self.store.save_session(
            user.id, payload, ttl_seconds=self.settings.session_max_age_seconds
        )
        self.audit.record_safely(
            "user.logged_in",
            actor_for(user),
            [{"type": "user", "id": user.id, "name": user.name}],
            tenant_id=resolved.selected_tenant_id,
            context=context,
        )
        logger.info("session_established", user_id=user.id, tenant_id=resolved.selected_tenant_id)
        return SessionResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=resolved,
            session_id=session.id,
        )

    async def rebind_session(
        self,
        user: User,
        tenant_id: str,
        *,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
        session_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> SessionResult:
        """Re-issue the token pair bound to ``tenant_id``, retiring the presented pair."""

        resolved = self.resolver.resolve(user.id, tenant_id)
        payload = resolved.token_payload()
        pair = self.tokens.issue_pair(payload)
        with self.store.transaction():
            if refresh_token:
                self.store.revoke_refresh_token(refresh_token)
            self._persist_refresh(user.id, pair, context)
        await self.tokens.forget(access_token)
        session = self.store.get_session(session_id) if session_id else None
        saved = self.store.save_session(
            user.id,
            payload,
            session_id=session.id if session and session.user_id == user.id else None,
            ttl_seconds=self.settings.session_max_age_seconds,
        )
        return SessionResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=resolved,
            session_id=saved.id,
        )

    async def verify_email_mfa(
        self, email: str, code: str, context: Optional[RequestContext] = None
    ) -> SessionResult:
        user = self._mfa_candidate(email, INVALID_OTP_CODE)
        self.mfa.verify_email_otp(user.id, code)
        self._ensure_can_sign_in(user)
        return await self.establish_session(user, context)

    async def verify_totp_login(
        self,
        email: str,
        code: str,
        is_backup_code: bool = False,
        context: Optional[RequestContext] = None,
    ) -> SessionResult:
        failure = INVALID_BACKUP_CODE if is_backup_code else INVALID_TOTP_CODE
        user = self._mfa_candidate(email, failure)
        if not self.mfa.active_authenticator(user.id):
            raise AuthenticationError(failure)
        if is_backup_code:
            self.mfa.verify_backup_code(user, code)
        else:
            self.mfa.check_totp_code(user, code)
        self._ensure_can_sign_in(user)
        return await self.establish_session(user, context)

    async def verify_passkey_login(
        self, credential: Dict[str, Any], context: Optional[RequestContext] = None
    ) -> SessionResult:
        user = await self.passkeys.verify_authentication(credential)
        self.store.update_user(user.id, last_logged_in_at=utcnow())
        return await self.establish_session(user, context)

    # token lifecycle
    async def refresh(
        self,
        token: Optional[str],
        context: Optional[RequestContext] = None,
        *,
        session_id: Optional[str] = None,
    ) -> SessionResult:
        """Rotate a refresh token; the presented token never validates again."""

        if not token:
            raise AuthenticationError("refresh token required")
        payload = self.tokens.verify_refresh(token)
        record = self.store.get_valid_refresh_token(token)
        if not record or record.user_id != payload["id"]:
            raise AuthenticationError("invalid token")
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            raise AuthenticationError("invalid token")

        session = self.store.get_session(session_id) if session_id else None
        tenant_id = None
        if session and session.user_id == user.id:
            hinted = session.data.get("selectedTenantId")
            if hinted and self.store.get_membership(user.id, hinted):
                tenant_id = hinted
        resolved = self.resolver.resolve(user.id, tenant_id)
        new_payload = resolved.token_payload()
        pair = self.tokens.issue_pair(new_payload)
        with self.store.transaction():
            if not self.store.revoke_refresh_token(token):
                raise AuthenticationError("invalid token")
            self._persist_refresh(user.id, pair, context)
        saved = self.store.save_session(
            user.id,
            new_payload,
            session_id=session.id if session else None,
            ttl_seconds=self.settings.session_max_age_seconds,
        )
        logger.info("refresh_token_rotated", user_id=user.id)
        return SessionResult(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            user=resolved,
            session_id=saved.id,
        )

    async def logout(
        self,
        user: Dict[str, Any],
        *,
        access_token: Optional[str] = None,
        session_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        user_id = user["id"]
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        await self.tokens.forget(access_token)
        if session_id:
            self.store.delete_session(session_id)
        self.audit.record_safely(
            "user.logged_out",
            {"type": "user", "id": user_id, "email": user.get("email"), "name": user.get("name")},
            [{"type": "user", "id": user_id}],
            tenant_id=user.get("selectedTenantId"),
            context=context,
        )
        logger.info("user_logged_out", user_id=user_id, revoked_tokens=revoked)

    async def _revoke_everywhere(self, user_id: str) -> None:
        self.store.revoke_user_refresh_tokens(user_id)
        await self.tokens.forget_user(user_id)

    # passwords
    async def forgot_password(self, email: str) -> str:
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            logger.info("password_reset_unknown_email")
            return FORGOT_PASSWORD_MESSAGE
        token = secrets.token_hex(32)
        self.store.create_password_reset(
            user.email, sha256_hex(token), self.settings.password_reset_expiry_minutes
        )
        reset_url = (
            f"{self.settings.frontend_url}/reset-password?"
            + urlencode({"token": token, "email": user.email})
        )
        await self.notifications.notify(
            "password-reset",
            user.email,
            {
                "resetUrl": reset_url,
                "userName": user.name,
                "expiryMinutes": self.settings.password_reset_expiry_minutes,
            },
        )
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(self, email: str, token: str, password: str) -> None:
        user = self._user_by_email_or_404(email)
        record = self.store.get_password_reset(user.email)
        if (
            not record
            or record.expires_at <= utcnow()
            or not hmac.compare_digest(record.token_hash, sha256_hex(token or ""))
        ):
            raise BadRequestError("invalid or expired reset token")
        with self.store.transaction():
            self.store.update_user(user.id, password_hash=hash_password(password))
            self.store.revoke_password_reset(record.id)
        await self._revoke_everywhere(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        await self.notifications.notify(
            "password-reset-success", user.email, {"userName": user.name}
        )

    async def change_password(self, user_id: str, current: str, new: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if not verify_password(user.password_hash, current):
            raise BadRequestError(INVALID_CREDENTIALS)
        self.store.update_user(user.id, password_hash=hash_password(new))
        await self._revoke_everywhere(user.id)
        logger.info("password_changed", user_id=user.id)
        await self.notifications.notify(
            "password-reset-success", user.email, {"userName": user.name}
        )

    # profile
    def get_profile(self, user: Dict[str, Any]) -> Dict[str, Any]:
        tenant_id = user.get("selectedTenantId")
        if tenant_id and not self.store.get_membership(user["id"], tenant_id):
            tenant_id = None
        return self.resolver.resolve(user["id"], tenant_id).to_response()

    def update_profile(self, user: Dict[str, Any], name: str) -> Dict[str, Any]:
        cleaned = (name or "").strip()
        if not cleaned:
            raise BadRequestError("name is required", errors=[{"field": "name", "message": "name is required"}])
        if not self.store.update_user(user["id"], name=cleaned):
            raise NotFoundError("user not found")
        return self.get_profile(user)

    # email mfa
    def _load(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def enable_email_mfa(self, user_id: str) -> Dict[str, Any]:
        self._load(user_id)
        self.store.update_user(user_id, mfa_enabled=True)
        return {"mfaEnabled": True}

    def disable_email_mfa(self, user_id: str) -> Dict[str, Any]:
        self._load(user_id)
        self.store.update_user(user_id, mfa_enabled=False)
        return {"mfaEnabled": False}

    def email_mfa_status(self, user_id: str) -> Dict[str, Any]:
        return {"mfaEnabled": self._load(user_id).mfa_enabled}
