from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from bkeep_auth.config import Settings
from bkeep_auth.logging import get_logger
from bkeep_auth.service.errors import AuthenticationError
from bkeep_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ACCESS_CLAIMS = ("id", "name", "email", "role", "permissions", "selectedTenantId")


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


class TokenCache(Protocol):
    """Process-wide map of verified access tokens to their decoded claims."""

    async def get(self, token: str) -> Optional[tuple[dict, int]]: ...

    async def put(self, token: str, user: dict, exp: int) -> None: ...

    async def evict(self, token: str) -> None: ...

    async def evict_user(self, user_id: str) -> int: ...

    async def clear(self) -> None: ...


class InMemoryTokenCache:
    """Lock-protected dict cache. Eviction is lazy and happens on lookup."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[dict, int]] = {}
        self._lock = threading.Lock()

    async def get(self, token: str) -> Optional[tuple[dict, int]]:
        with self._lock:
            return self._entries.get(token)

    async def put(self, token: str, user: dict, exp: int) -> None:
        with self._lock:
            self._entries[token] = (user, exp)

    async def evict(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)

    async def evict_user(self, user_id: str) -> int:
        with self._lock:
            stale = [tok for tok, (user, _) in self._entries.items() if user.get("id") == user_id]
            for tok in stale:
                self._entries.pop(tok, None)
            return len(stale)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisTokenCache:
    """Shared cache for multi-instance deployments, keyed by token digest."""

    def __init__(self, redis: RedisCache) -> None:
        self.redis = redis

    async def get(self, token: str) -> Optional[tuple[dict, int]]:
        cached = await self.redis.get_cached_token(token)
        if not cached:
            return None
        return cached.get("user") or {}, int(cached.get("exp") or 0)

    async def put(self, token: str, user: dict, exp: int) -> None:
        ttl = int(exp - time.time())
        await self.redis.cache_token(token, str(user.get("id")), user, exp, ttl)

    async def evict(self, token: str) -> None:
        await self.redis.evict_token(token)

    async def evict_user(self, user_id: str) -> int:
        return await self.redis.evict_user_tokens(user_id)

    async def clear(self) -> None:
        # Entries expire on their own TTL
        return None


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{_encode_segment(signature)}"


def decode_jwt(token: str, secret: str, *, now: Optional[float] = None) -> Optional[dict[str, Any]]:
    """Return the payload if signature, algorithm and expiry all check out."""

    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except (ValueError, AttributeError):
        return None

    # Pin the algorithm to prevent algorithm confusion
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError):
        logger.warning("jwt_header_decode_failed")
        return None
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.warning("jwt_invalid_algorithm")
        return None

    signing_input = f"{header_b64}.{payload_b64}"
    expected_sig = _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )
    if not hmac.compare_digest(expected_sig, sig_b64):
        return None
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        return None
    if not isinstance(payload, dict):
        return None
    try:
        exp_ts = float(payload.get("exp"))
    except (TypeError, ValueError):
        return None
    if exp_ts <= (now if now is not None else time.time()):
        return None
    return payload


class TokenService:
    """Issues and verifies the access/refresh pair and fronts the token cache."""

    def __init__(self, settings: Settings, cache: TokenCache) -> None:
        self.settings = settings
        self.cache = cache

    @property
    def access_secret(self) -> str:
        return self.settings.access_token_secret

    @property
    def refresh_secret(self) -> str:
        return self.settings.refresh_token_secret

    def _sign(self, claims: dict[str, Any], secret: str, ttl_seconds: int) -> str:
        now = int(time.time())
        payload = {**claims, "iat": now, "exp": now + ttl_seconds, "jti": str(uuid.uuid4())}
        return encode_jwt(payload, secret)

    def issue_pair(self, payload: dict[str, Any]) -> TokenPair:
        access_claims = {key: payload.get(key) for key in ACCESS_CLAIMS}
        access = self._sign(
            access_claims, self.access_secret, self.settings.access_token_ttl_seconds
        )
        # Refresh tokens stay lightweight; claims are re-resolved on rotation
        refresh = self._sign(
            {"id": payload["id"]},
            self.refresh_secret,
            self.settings.refresh_token_ttl_seconds,
        )
        return TokenPair(access_token=access, refresh_token=refresh)

    def verify(self, token: str, secret: str) -> dict[str, Any]:
        payload = decode_jwt(token, secret)
        if payload is None or not payload.get("id"):
            raise AuthenticationError("invalid token")
        return payload

    def verify_refresh(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.refresh_secret)

    @staticmethod
    def expiry_of(payload: dict[str, Any]) -> datetime:
        return datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)

    async def verify_access(self, token: str) -> dict[str, Any]:
        """Cache-first verification of an access token.

        A cached entry whose ``exp`` has passed is evicted and the token goes
        through full signature verification instead.
        """

        cached = await self.cache.get(token)
        if cached is not None:
            user, exp = cached
            if exp > time.time():
                return user
            await self.cache.evict(token)
            logger.debug("token_cache_stale_evicted")
        payload = self.verify(token, self.access_secret)
        user = {key: payload.get(key) for key in ACCESS_CLAIMS}
        await self.cache.put(token, user, int(payload["exp"]))
        return user

    async def forget(self, token: Optional[str]) -> None:
        if token:
            await self.cache.evict(token)

    async def forget_user(self, user_id: str) -> int:
        return await self.cache.evict_user(user_id)
