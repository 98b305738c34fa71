from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url, parse_client_data_json
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    CredentialDeviceType,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from bkeep_auth.config import Settings
from bkeep_auth.logging import get_logger
from bkeep_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    NotFoundError,
)
from bkeep_auth.storage.errors import ConstraintViolation
from bkeep_auth.storage.models import User, UserPasskey, utcnow
from bkeep_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CREDENTIAL_TYPE_PLATFORM = "platform"
CREDENTIAL_TYPE_ROAMING = "roaming"
CHALLENGE_SWEEP_INTERVAL_SECONDS = 5 * 60

TYPE_NAMES = {
    CREDENTIAL_TYPE_PLATFORM: "Platform Authenticator (Face ID, Touch ID, Windows Hello)",
    CREDENTIAL_TYPE_ROAMING: "Security Key (USB, NFC, Bluetooth)",
}

_WEBAUTHN_FAILURES = (
    WebAuthnException,
    ValueError,
    KeyError,
    TypeError,
)


class ChallengeCache(Protocol):
    async def put(self, key: str, challenge: str) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def sweep(self) -> int: ...


class InMemoryChallengeCache:
    """Lock-protected challenge map; entries older than ``ttl_seconds`` are dead."""

    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    async def put(self, key: str, challenge: str) -> None:
        with self._lock:
            self._entries[key] = (challenge, time.time())

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            challenge, created = entry
            if time.time() - created > self.ttl_seconds:
                self._entries.pop(key, None)
                return None
            return challenge

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def sweep(self) -> int:
        cutoff = time.time() - self.ttl_seconds
        with self._lock:
            stale = [key for key, (_, created) in self._entries.items() if created < cutoff]
            for key in stale:
                self._entries.pop(key, None)
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisChallengeCache:
    def __init__(self, redis: RedisCache, ttl_seconds: int = 300) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def put(self, key: str, challenge: str) -> None:
        await self.redis.set_challenge(key, challenge, self.ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get_challenge(key)

    async def delete(self, key: str) -> None:
        await self.redis.delete_challenge(key)

    async def sweep(self) -> int:
        # Redis expires keys on its own
        return 0


def _transports(values: Optional[List[str]]) -> List[AuthenticatorTransport]:
    parsed = []
    for value in values or []:
        try:
            parsed.append(AuthenticatorTransport(value))
        except ValueError:
            logger.debug("passkey_unknown_transport", transport=value)
    return parsed


def passkey_to_dict(passkey: UserPasskey) -> Dict[str, Any]:
    return {
        "id": passkey.id,
        "name": passkey.name,
        "credentialId": passkey.credential_id,
        "credentialType": passkey.credential_type,
        "typeName": TYPE_NAMES.get(passkey.credential_type, TYPE_NAMES[CREDENTIAL_TYPE_ROAMING]),
        "transports": list(passkey.transports),
        "backupEligible": passkey.backup_eligible,
        "backupState": passkey.backup_state,
        "isActive": passkey.is_active,
        "lastUsedAt": passkey.last_used_at.isoformat() if passkey.last_used_at else None,
        "createdAt": passkey.created_at.isoformat(),
    }


class PasskeyService:
    """WebAuthn registration and assertion ceremonies plus passkey management."""

    def __init__(self, store, challenges: ChallengeCache, settings: Settings) -> None:
        self.store = store
        self.challenges = challenges
        self.rp_id = settings.webauthn_rp_id
        self.rp_name = settings.webauthn_rp_name
        self.origin = settings.frontend_url
        self.timeout_ms = settings.webauthn_timeout_ms

    # registration ceremony
    async def registration_options(self, user: User) -> Dict[str, Any]:
        existing = self.store.list_user_passkeys(user.id)
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user.id.encode(),
            user_name=user.email,
            user_display_name=user.name,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                user_verification=UserVerificationRequirement.PREFERRED,
                resident_key=ResidentKeyRequirement.PREFERRED,
                require_resident_key=False,
            ),
            exclude_credentials=[
                PublicKeyCredentialDescriptor(
                    id=base64url_to_bytes(p.credential_id),
                    transports=_transports(p.transports),
                )
                for p in existing
            ],
            supported_pub_key_algs=[
                COSEAlgorithmIdentifier.ECDSA_SHA_256,
                COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
            ],
        )
        await self.challenges.put(f"reg-{user.id}", bytes_to_base64url(options.challenge))
        return json.loads(options_to_json(options))

    async def verify_registration(
        self, user: User, credential: Dict[str, Any], name: Optional[str] = None
    ) -> UserPasskey:
        key = f"reg-{user.id}"
        expected = await self.challenges.get(key)
        if not expected:
            raise BadRequestError("challenge expired or not found")
        try:
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(expected),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=False,
            )
        except _WEBAUTHN_FAILURES as exc:
            logger.warning("passkey_registration_failed", user_id=user.id, error=str(exc))
            raise BadRequestError("passkey registration failed") from exc

        credential_type = (
            CREDENTIAL_TYPE_PLATFORM
            if verification.credential_device_type == CredentialDeviceType.SINGLE_DEVICE
            else CREDENTIAL_TYPE_ROAMING
        )
        response = credential.get("response") or {}
        try:
            passkey = self.store.create_passkey(
                user.id,
                bytes_to_base64url(verification.credential_id),
                bytes_to_base64url(verification.credential_public_key),
                counter=verification.sign_count,
                name=(name or "").strip() or "Passkey",
                credential_type=credential_type,
                transports=response.get("transports") or [],
                backup_eligible=verification.credential_device_type
                == CredentialDeviceType.MULTI_DEVICE,
                backup_state=bool(verification.credential_backed_up),
                aaguid=verification.aaguid,
            )
        except ConstraintViolation as exc:
            raise BadRequestError("passkey already registered") from exc
        await self.challenges.delete(key)
        logger.info("passkey_registered", user_id=user.id, credential_type=credential_type)
        return passkey

    # authentication ceremony
    async def authentication_options(self, email: Optional[str] = None) -> Dict[str, Any]:
        allowed: List[PublicKeyCredentialDescriptor] = []
        user = self.store.get_user_by_email(email) if email else None
        if user:
            allowed = [
                PublicKeyCredentialDescriptor(
                    id=base64url_to_bytes(p.credential_id),
                    transports=_transports(p.transports),
                )
                for p in self.store.list_user_passkeys(user.id, active_only=True)
            ]
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=allowed,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        challenge = bytes_to_base64url(options.challenge)
        # Usernameless flows are keyed by the challenge itself
        key = f"auth-{user.email}" if user else f"auth-{challenge}"
        await self.challenges.put(key, challenge)
        return json.loads(options_to_json(options))

    async def _expected_challenge(self, user: User, credential: Dict[str, Any]) -> Tuple[str, str]:
        key = f"auth-{user.email}"
        challenge = await self.challenges.get(key)
        if challenge:
            return key, challenge
        try:
            client_data = parse_client_data_json(
                base64url_to_bytes(credential["response"]["clientDataJSON"])
            )
        except _WEBAUTHN_FAILURES as exc:
            raise BadRequestError("challenge expired or not found") from exc
        key = f"auth-{bytes_to_base64url(client_data.challenge)}"
        challenge = await self.challenges.get(key)
        if not challenge:
            raise BadRequestError("challenge expired or not found")
        return key, challenge

    async def verify_authentication(self, credential: Dict[str, Any]) -> User:
        """Run the assertion ceremony and return the authenticated user.

        The stored counter must strictly increase on every assertion; a
        non-increasing counter signals a cloned authenticator or a replay.
        """

        credential_id = credential.get("id") or credential.get("rawId")
        passkey = (
            self.store.get_passkey_by_credential_id(credential_id) if credential_id else None
        )
        if not passkey:
            raise AuthenticationError("passkey not found")
        user = self.store.get_user(passkey.user_id)
        if not user:
            raise NotFoundError("user not found")
        key, expected = await self._expected_challenge(user, credential)
        try:
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(expected),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(passkey.public_key),
                credential_current_sign_count=passkey.counter,
                require_user_verification=False,
            )
        except _WEBAUTHN_FAILURES as exc:
            logger.warning("passkey_authentication_failed", passkey_id=passkey.id, error=str(exc))
            raise AuthenticationError("passkey authentication failed") from exc
        if verification.new_sign_count <= passkey.counter:
            logger.warning(
                "passkey_counter_not_increased",
                passkey_id=passkey.id,
                stored=passkey.counter,
                presented=verification.new_sign_count,
            )
            raise AuthenticationError("passkey authentication failed")
        if not user.is_active:
            raise ForbiddenError("account deactivated")
        with self.store.transaction():
            self.store.update_passkey(
                passkey.id, counter=verification.new_sign_count, last_used_at=utcnow()
            )
        await self.challenges.delete(key)
        return user

    async def sweep_challenges(self) -> int:
        purged = await self.challenges.sweep()
        if purged:
            logger.info("webauthn_challenges_swept", purged=purged)
        return purged

    # management
    def _owned(self, user: User, passkey_id: str) -> UserPasskey:
        passkey = self.store.get_passkey(passkey_id)
        if not passkey:
            raise NotFoundError("passkey not found")
        if passkey.user_id != user.id:
            raise ForbiddenError("passkey belongs to another user")
        return passkey

    def list_passkeys(self, user: User) -> Dict[str, Any]:
        passkeys = [passkey_to_dict(p) for p in self.store.list_user_passkeys(user.id)]
        return {"passkeys": passkeys, "total": len(passkeys)}

    def get_passkey(self, user: User, passkey_id: str) -> Dict[str, Any]:
        return passkey_to_dict(self._owned(user, passkey_id))

    def rename_passkey(self, user: User, passkey_id: str, name: str) -> Dict[str, Any]:
        self._owned(user, passkey_id)
        cleaned = (name or "").strip()
        if not cleaned:
            raise BadRequestError("passkey name is required")
        return passkey_to_dict(self.store.update_passkey(passkey_id, name=cleaned))

    def delete_passkey(self, user: User, passkey_id: str) -> None:
        self._owned(user, passkey_id)
        self.store.soft_delete_passkey(passkey_id)

    def enable_passkey(self, user: User, passkey_id: str) -> Dict[str, Any]:
        self._owned(user, passkey_id)
        return passkey_to_dict(self.store.update_passkey(passkey_id, is_active=True))

    def disable_passkey(self, user: User, passkey_id: str) -> Dict[str, Any]:
        self._owned(user, passkey_id)
        return passkey_to_dict(self.store.update_passkey(passkey_id, is_active=False))

    def passkey_stats(self, user: User) -> Dict[str, Any]:
        passkeys = self.store.list_user_passkeys(user.id)
        used = [p.last_used_at for p in passkeys if p.last_used_at]
        return {
            "total": len(passkeys),
            "active": sum(1 for p in passkeys if p.is_active),
            "platform": sum(1 for p in passkeys if p.credential_type == CREDENTIAL_TYPE_PLATFORM),
            "roaming": sum(1 for p in passkeys if p.credential_type == CREDENTIAL_TYPE_ROAMING),
            "lastUsed": max(used).isoformat() if used else None,
        }
