from __future__ import annotations

import base64
import hashlib
import hmac
import io
import json
import secrets
import time
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import quote, urlencode

import qrcode

from bkeep_auth.logging import get_logger
from bkeep_auth.service.errors import AuthenticationError, BadRequestError
from bkeep_auth.service.notifications import NotificationService
from bkeep_auth.storage.models import MfaEmailOtp, User, UserAuthenticator, utcnow

logger = get_logger(__name__)

TOTP_ISSUER = "BKeep"
TOTP_STEP = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
BACKUP_CODES_COUNT = 10
BACKUP_CODES_FILENAME = "bkeep-backup-codes.txt"

MFA_TYPE_EMAIL = "email"
MFA_TYPE_TOTP = "totp"

INVALID_OTP_CODE = "invalid or expired OTP code"
INVALID_TOTP_CODE = "invalid TOTP code"
INVALID_BACKUP_CODE = "invalid backup code"


def generate_totp_secret() -> str:
    # 160-bit secret encodes to 32 base32 chars without padding
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_totp(secret: str, at: Optional[float] = None, *, interval: int = TOTP_STEP) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, True)
    counter = int((at if at is not None else time.time()) // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**TOTP_DIGITS)
    return str(code).zfill(TOTP_DIGITS)


def verify_totp(secret: str, code: str, at: Optional[float] = None, *, window: int = TOTP_WINDOW) -> bool:
    """Constant-time check of ``code`` against the steps within ``window``."""
    candidate = (code or "").strip()
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    now = at if at is not None else time.time()
    matched = False
    for offset in range(-window, window + 1):
        expected = generate_totp(secret, now + offset * TOTP_STEP)
        if hmac.compare_digest(expected, candidate):
            matched = True
    return matched


def totp_uri(secret: str, email: str) -> str:
    label = quote(f"{TOTP_ISSUER}:{email}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": TOTP_ISSUER,
            "algorithm": "SHA1",
            "digits": TOTP_DIGITS,
            "period": TOTP_STEP,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def qr_code_data_url(payload: str) -> str:
    image = qrcode.make(payload)
    buf = io.BytesIO()
    image.save(buf)
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def generate_backup_codes(count: int = BACKUP_CODES_COUNT) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def encode_backup_codes(codes: List[str]) -> str:
    return json.dumps(codes)


def decode_backup_codes(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        codes = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("backup_codes_decode_failed")
        return []
    return [str(code) for code in codes] if isinstance(codes, list) else []


def generate_otp_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class MfaEngine:
    """Second-factor state for email OTP, TOTP and backup codes."""

    def __init__(
        self,
        store,
        notifications: NotificationService,
        *,
        otp_expiry_minutes: int = 5,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.otp_expiry_minutes = otp_expiry_minutes

    # email otp
    def issue_email_otp(
        self,
        user: User,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> MfaEmailOtp:
        return self.store.create_mfa_otp(
            user.id,
            generate_otp_code(),
            self.otp_expiry_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    async def send_email_otp(
        self,
        user: User,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> MfaEmailOtp:
        otp = self.issue_email_otp(user, user_agent, ip_address)
        await self.notifications.notify(
            "mfa-otp",
            user.email,
            {
                "otpCode": otp.code,
                "userName": user.name,
                "expiryMinutes": self.otp_expiry_minutes,
            },
        )
        return otp

    def verify_email_otp(self, user_id: str, code: str) -> None:
        otp = self.store.find_mfa_otp(user_id, (code or "").strip())
        if not otp or otp.expires_at <= utcnow():
            raise AuthenticationError(INVALID_OTP_CODE)
        self.store.consume_mfa_otp(otp.id)

    # totp
    def active_authenticator(self, user_id: str) -> Optional[UserAuthenticator]:
        authenticator = self.store.get_active_authenticator(user_id, MFA_TYPE_TOTP)
        if authenticator and authenticator.is_active_and_verified():
            return authenticator
        return None

    def _require_active(self, user: User) -> UserAuthenticator:
        authenticator = self.active_authenticator(user.id)
        if not authenticator:
            raise BadRequestError("TOTP is not enabled")
        return authenticator

    def setup_totp(self, user: User) -> dict[str, Any]:
        if self.active_authenticator(user.id):
            raise BadRequestError("TOTP is already enabled")
        secret = generate_totp_secret()
        codes = generate_backup_codes()
        self.store.create_authenticator(
            user.id, secret, encode_backup_codes(codes), type=MFA_TYPE_TOTP
        )
        logger.info("totp_setup_started", user_id=user.id)
        return {
            "secret": secret,
            "qrCode": qr_code_data_url(totp_uri(secret, user.email)),
            "backupCodes": codes,
        }

    async def verify_and_enable_totp(self, user: User, code: str) -> dict[str, Any]:
        pending = self.store.get_unverified_authenticator(user.id, MFA_TYPE_TOTP)
        if not pending:
            raise BadRequestError("TOTP setup required")
        if not verify_totp(pending.secret, code):
            raise AuthenticationError(INVALID_TOTP_CODE)
        now = utcnow()
        with self.store.transaction():
            self.store.update_authenticator(
                pending.id, is_active=True, verified_at=now, last_used_at=now
            )
            self.store.update_user(user.id, mfa_enabled=True)
        user.mfa_enabled = True
        logger.info("totp_enabled", user_id=user.id)
        await self.notifications.notify("totp-setup", user.email, {"userName": user.name})
        return {"mfaEnabled": True, "mfaType": MFA_TYPE_TOTP}

    def check_totp_code(self, user: User, code: str) -> None:
        authenticator = self._require_active(user)
        if not verify_totp(authenticator.secret, code):
            raise AuthenticationError(INVALID_TOTP_CODE)
        self.store.update_authenticator(authenticator.id, last_used_at=utcnow())

    def disable_totp(self, user: User) -> dict[str, Any]:
        self._require_active(user)
        with self.store.transaction():
            self.store.delete_user_authenticators(user.id, MFA_TYPE_TOTP)
            self.store.update_user(user.id, mfa_enabled=False)
        user.mfa_enabled = False
        logger.info("totp_disabled", user_id=user.id)
        return {"mfaEnabled": False}

    def totp_status(self, user: User) -> dict[str, Any]:
        totp_enabled = self.active_authenticator(user.id) is not None
        if totp_enabled:
            mfa_type = MFA_TYPE_TOTP
        elif user.mfa_enabled:
            mfa_type = MFA_TYPE_EMAIL
        else:
            mfa_type = None
        return {"totpEnabled": totp_enabled, "mfaEnabled": user.mfa_enabled, "mfaType": mfa_type}

    # backup codes
    def verify_backup_code(self, user: User, code: str) -> None:
        authenticator = self._require_active(user)
        candidate = "".join((code or "").split()).upper()
        remaining = decode_backup_codes(authenticator.backup_codes)
        match = next((c for c in remaining if hmac.compare_digest(c, candidate)), None)
        if not candidate or match is None:
            raise AuthenticationError(INVALID_BACKUP_CODE)
        remaining.remove(match)
        self.store.update_authenticator(
            authenticator.id,
            backup_codes=encode_backup_codes(remaining),
            last_used_at=utcnow(),
        )
        logger.info("backup_code_used", user_id=user.id, remaining=len(remaining))

    def regenerate_backup_codes(self, user: User) -> List[str]:
        authenticator = self._require_active(user)
        codes = generate_backup_codes()
        self.store.update_authenticator(authenticator.id, backup_codes=encode_backup_codes(codes))
        return codes

    def remaining_backup_codes(self, user: User) -> List[str]:
        authenticator = self._require_active(user)
        codes = decode_backup_codes(authenticator.backup_codes)
        if not codes:
            raise BadRequestError("no backup codes available")
        return codes

    def backup_codes_text(self, user: User, codes: List[str], *, generated_at: Optional[datetime] = None) -> str:
        stamp = (generated_at or utcnow()).isoformat()
        lines = [
            f"{TOTP_ISSUER} - Backup Codes",
            "",
            "These are your backup codes for two-factor authentication.",
            "Each code can only be used once.",
            "",
            "IMPORTANT: Store these codes in a safe place. If you lose access to your "
            "authenticator app, you can use these codes to sign in.",
            "",
            "Backup Codes:",
            *[f"{index}. {code}" for index, code in enumerate(codes, start=1)],
            "",
            f"Generated: {stamp}",
            f"Email: {user.email}",
            "",
            "Keep these codes secure and do not share them with anyone.",
        ]
        return "\n".join(lines)
