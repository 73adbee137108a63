from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from loginguard.config import Settings, get_settings, reset_settings_cache
from loginguard.logging import get_logger
from loginguard.service.blacklist import TokenBlacklistService
from loginguard.service.credentials import CredentialGate
from loginguard.service.keys import RSAKeyProvider
from loginguard.service.login import LoginService
from loginguard.service.messaging import (
    EmailMessagingService,
    HttpGatewayMessagingService,
    LoggingMessagingService,
    MessagingService,
    MessagingServiceProvider,
    MessagingType,
)
from loginguard.service.otp import OtpService
from loginguard.service.tokens import TokenService
from loginguard.storage.memory import MemoryStore
from loginguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_messaging_provider(settings: Settings) -> MessagingServiceProvider:
    services: Dict[MessagingType, MessagingService] = {
        MessagingType.EMAIL: EmailMessagingService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
    }
    for channel in (MessagingType.SMS, MessagingType.WHATSAPP, MessagingType.PUSH_NOTIFICATION):
        if settings.messaging_gateway_url:
            services[channel] = HttpGatewayMessagingService(
                channel,
                settings.messaging_gateway_url,
                api_token=settings.messaging_gateway_token,
                timeout=settings.messaging_gateway_timeout,
            )
        else:
            services[channel] = LoggingMessagingService(channel)
    return MessagingServiceProvider(services)


def _connect_cache(settings: Settings) -> Optional[RedisCache]:
    """Return a verified Redis cache, or None where the in-memory blacklist is allowed."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "token blacklist needs Redis; set REDIS_URL, or TEST_MODE / "
            "ALLOW_REDIS_FALLBACK_DEV to run with an in-memory blacklist"
        ) from failure
    logger.warning(
        "blacklist_in_memory",
        redis_url=_mask_url_password(settings.redis_url),
        reason=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(
            self.settings.state_dir,
            key_encryption_secret=self.settings.key_encryption_secret,
        )

        self.cache = _connect_cache(self.settings)

        token_ttl = timedelta(milliseconds=self.settings.access_token_ttl_ms)
        self.blacklist = TokenBlacklistService(self.cache)
        self.messaging = build_messaging_provider(self.settings)
        self.otp = OtpService(
            self.store,
            self.messaging,
            ttl_seconds=self.settings.otp_ttl_seconds,
            code_length=self.settings.otp_code_length,
            test_addresses=self.settings.otp_test_addresses,
            default_locale=self.settings.default_locale,
        )
        self.credentials = CredentialGate(self.store)
        self.keys = RSAKeyProvider(
            self.store,
            key_bits=self.settings.signing_key_bits,
            rotation_days=self.settings.signing_key_rotation_days,
            token_ttl=token_ttl,
        )
        self.tokens = TokenService(
            self.keys,
            issuer=self.settings.jwt_issuer,
            ttl_ms=self.settings.access_token_ttl_ms,
        )
        self.login = LoginService(
            self.store,
            self.credentials,
            self.otp,
            self.tokens,
            self.blacklist,
            session_ttl_ms=self.settings.access_token_ttl_ms,
            worker_concurrency=self.settings.revocation_worker_concurrency,
            worker_queue_size=self.settings.revocation_queue_size,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            gateway_configured=bool(self.settings.messaging_gateway_url),
            state_dir=self.settings.state_dir,
        )

    async def close(self) -> None:
        await self.login.revocation_worker.stop()
        await self.messaging.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
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
        runtime = Runtime(settings)
        return runtime
