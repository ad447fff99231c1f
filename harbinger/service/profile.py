from __future__ import annotations

import json
from typing import Tuple

from harbinger.logging import get_logger
from harbinger.service.auth import DEFAULT_STORE_TIMEOUT, UserStore, call_store
from harbinger.service.errors import NotFoundError, StoreUnavailableError
from harbinger.storage.models import Profile
from harbinger.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_PROFILE_TTL_SECONDS = 300


class ProfileCache:
    """Cache-aside reads of user profiles.

    The cached copy lives under ``user:<id>`` for ``ttl_seconds`` and is only
    ever refreshed by expiry. Cache trouble degrades to a store read.
    """

    def __init__(
        self,
        store: UserStore,
        cache: RedisCache,
        *,
        ttl_seconds: int = DEFAULT_PROFILE_TTL_SECONDS,
        store_timeout: float = DEFAULT_STORE_TIMEOUT,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.store_timeout = store_timeout

    async def get(self, user_id: int) -> Profile:
        profile, _ = await self.lookup(user_id)
        return profile

    async def lookup(self, user_id: int) -> Tuple[Profile, str]:
        """Return the profile and where it came from (``cache`` or ``store``)."""
        cached = await self._read_cached(user_id)
        if cached is not None:
            return cached, "cache"

        user = await call_store(self.store.get_user, user_id, timeout=self.store_timeout)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        profile = user.to_profile()
        await self._write_cached(profile)
        return profile, "store"

    async def _read_cached(self, user_id: int) -> Profile | None:
        try:
            raw = await self.cache.get_profile(user_id)
        except StoreUnavailableError:
            logger.warning("profile_cache_read_unavailable", user_id=user_id)
            return None
        if not raw:
            return None
        try:
            return Profile.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            # Corrupted cache entry - treat as cache miss
            logger.warning("profile_cache_entry_corrupt", user_id=user_id)
            return None

    async def _write_cached(self, profile: Profile) -> None:
        try:
            await self.cache.set_profile(
                profile.id, json.dumps(profile.to_dict()), self.ttl_seconds
            )
        except StoreUnavailableError:
            logger.warning("profile_cache_write_failed", user_id=profile.id)
