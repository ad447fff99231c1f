from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from harbinger.config import Settings, get_settings
from harbinger.logging import get_logger
from harbinger.service.auth import SessionLifecycle, UserStore
from harbinger.service.gate import AuthGate
from harbinger.service.profile import ProfileCache
from harbinger.service.tokens import TokenCodec
from harbinger.storage.memory import MemoryStore
from harbinger.storage.postgres import PostgresStore
from harbinger.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

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


class Runtime:
    """Wires settings, stores and services for one application instance.

    Everything is passed in explicitly; tests hand in their own store, cache
    or codec and get a fully assembled graph around them.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[UserStore] = None,
        cache: Optional[RedisCache] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()
        self.codec = codec or TokenCodec(
            issuer=self.settings.jwt_issuer,
            ttl=timedelta(hours=self.settings.token_ttl_hours),
        )
        timeout = self.settings.redis_operation_timeout
        self.gate = AuthGate(self.codec, self.cache, self.settings.jwt_secret)
        self.sessions = SessionLifecycle(
            self.store,
            self.cache,
            self.codec,
            self.settings.jwt_secret,
            blacklist_floor=timedelta(seconds=self.settings.blacklist_floor_seconds),
            store_timeout=timeout,
        )
        self.profiles = ProfileCache(
            self.store,
            self.cache,
            ttl_seconds=self.settings.profile_cache_ttl_seconds,
            store_timeout=timeout,
        )
        logger.info("runtime_init_completed", store_type=type(self.store).__name__)

    def _build_store(self) -> UserStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                return MemoryStore()
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self) -> RedisCache:
        options = dict(
            operation_timeout=self.settings.redis_operation_timeout,
            scan_count=self.settings.session_scan_count,
        )
        if self.settings.test_mode:
            logger.warning("runtime_cache_in_memory", reason="test_mode")
            return RedisCache.in_memory(**options)
        cache = RedisCache(self.settings.redis_url, **options)
        try:
            cache.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_redis_unavailable",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
            )
            raise RuntimeError(
                "Redis is required for token revocation; start Redis or set TEST_MODE=true"
            ) from exc
        logger.info(
            "runtime_cache_connected", redis_url=_mask_url_password(self.settings.redis_url)
        )
        return cache

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")
