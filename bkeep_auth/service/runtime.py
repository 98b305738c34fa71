from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from bkeep_auth.config import get_settings, reset_settings_cache
from bkeep_auth.logging import get_logger
from bkeep_auth.service.audit import AuditTrail
from bkeep_auth.service.auth import AuthenticationFlow
from bkeep_auth.service.authorization import AuthorizationResolver
from bkeep_auth.service.bootstrap import seed_roles_and_permissions
from bkeep_auth.service.invitations import InvitationWorkflow
from bkeep_auth.service.mfa import MfaEngine
from bkeep_auth.service.notifications import NotificationService
from bkeep_auth.service.passkeys import (
    InMemoryChallengeCache,
    PasskeyService,
    RedisChallengeCache,
)
from bkeep_auth.service.tenants import TenantService
from bkeep_auth.service.tokens import InMemoryTokenCache, RedisTokenCache, TokenService
from bkeep_auth.storage.memory import MemoryStore
from bkeep_auth.storage.postgres import PostgresStore
from bkeep_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        store_type = "memory" if use_memory else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(mfa_encryption_key=self.settings.mfa_secret_key)
                if use_memory
                else PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for the shared token and challenge caches; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; verified tokens and "
                    "WebAuthn challenges are cached in-process only."
                ),
                mode=fallback_mode,
            )

        if self.cache:
            token_cache = RedisTokenCache(self.cache)
            challenges = RedisChallengeCache(self.cache, self.settings.challenge_ttl_seconds)
        else:
            token_cache = InMemoryTokenCache()
            challenges = InMemoryChallengeCache(self.settings.challenge_ttl_seconds)

        if use_memory:
            seed_roles_and_permissions(self.store)

        self.notifications = NotificationService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.audit = AuditTrail(self.store)
        self.tokens = TokenService(self.settings, token_cache)
        self.resolver = AuthorizationResolver(self.store)
        self.mfa = MfaEngine(
            self.store,
            self.notifications,
            otp_expiry_minutes=self.settings.mfa_otp_expiry_minutes,
        )
        self.passkeys = PasskeyService(self.store, challenges, self.settings)
        self.auth = AuthenticationFlow(
            self.store,
            self.settings,
            self.tokens,
            self.resolver,
            self.mfa,
            self.passkeys,
            self.notifications,
            self.audit,
        )
        self.invitations = InvitationWorkflow(self.store, self.settings, self.notifications)
        self.tenants = TenantService(self.store, self.resolver, self.auth, self.audit)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.notifications.is_configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building competing runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
