from __future__ import annotations

import asyncio
import fnmatch
import threading
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from harbinger.logging import get_logger
from harbinger.service.errors import SessionPurgeError, StoreUnavailableError

logger = get_logger(__name__)

BLACKLIST_MARKER = "blacklisted"
SESSION_MARKER = "active"


def format_user_id(user_id: int) -> str:
    """Exact decimal form of a user id for cache keys.

    Floats and other numeric types are refused: a float round trip aliases
    distinct ids above 2**53.
    """
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise TypeError(f"user id must be an int, got {type(user_id).__name__}")
    return str(user_id)


def session_key(user_id: int, session_id: str) -> str:
    return f"Session:{format_user_id(user_id)}:{session_id}"


def session_pattern(user_id: int) -> str:
    return f"Session:{format_user_id(user_id)}:*"


def profile_key(user_id: int) -> str:
    return f"user:{format_user_id(user_id)}"


class RedisCache:
    """Redis access for token revocation, session markers and profile copies.

    Every command runs under a bounded timeout. Connection failures and
    timeouts surface as ``StoreUnavailableError`` so callers can decide
    whether to fail closed (admission) or degrade (profile reads).
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    DEFAULT_SCAN_COUNT = 100

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client=None,
        socket_timeout: float = 5.0,
        operation_timeout: Optional[float] = None,
        scan_count: Optional[int] = None,
    ):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client
        self.operation_timeout = operation_timeout or self.DEFAULT_OPERATION_TIMEOUT
        self.scan_count = scan_count or self.DEFAULT_SCAN_COUNT

    @classmethod
    def in_memory(
        cls, *, clock: Optional[Callable[[], float]] = None, **kwargs
    ) -> "RedisCache":
        """Build a cache over an in-process client (tests and TEST_MODE)."""
        return cls(client=MemoryRedisClient(clock=clock), **kwargs)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        if not self.redis_url:
            return
        # Short-lived sync client so the async one is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def deadline_after(seconds: float) -> float:
        """Absolute event-loop deadline ``seconds`` from now."""
        return asyncio.get_running_loop().time() + seconds

    @staticmethod
    def time_left(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - asyncio.get_running_loop().time()

    async def _run(
        self, operation: str, awaitable: Awaitable, *, timeout: Optional[float] = None
    ):
        limit = self.operation_timeout
        if timeout is not None:
            limit = min(limit, timeout)
        if limit <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StoreUnavailableError(
                f"cache {operation} skipped: deadline exceeded",
                detail={"operation": operation},
            )
        try:
            return await asyncio.wait_for(awaitable, limit)
        except asyncio.TimeoutError as exc:
            logger.warning("cache_operation_timeout", operation=operation, timeout=limit)
            raise StoreUnavailableError(
                f"cache {operation} timed out", detail={"operation": operation}
            ) from exc
        except (RedisError, OSError) as exc:
            logger.warning(
                "cache_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError(
                f"cache {operation} failed", detail={"operation": operation}
            ) from exc

    async def ping(self, *, timeout: Optional[float] = None) -> bool:
        return bool(await self._run("ping", self.client.ping(), timeout=timeout))

    # =========================================================================
    # Token blacklist
    # =========================================================================

    async def blacklist_token(
        self, token: str, ttl_seconds: int, *, timeout: Optional[float] = None
    ) -> None:
        """Mark ``token`` as revoked for ``ttl_seconds``. Safe to repeat."""
        ttl = max(1, int(ttl_seconds))
        await self._run(
            "blacklist",
            self.client.set(token, BLACKLIST_MARKER, ex=ttl),
            timeout=timeout,
        )

    async def is_token_blacklisted(
        self, token: str, *, timeout: Optional[float] = None
    ) -> bool:
        """Point lookup. Raises ``StoreUnavailableError`` rather than guessing."""
        return bool(await self._run("exists", self.client.exists(token), timeout=timeout))

    # =========================================================================
    # Advisory session markers
    # =========================================================================

    async def mark_session(
        self,
        user_id: int,
        session_id: str,
        ttl_seconds: int,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        await self._run(
            "mark_session",
            self.client.set(
                session_key(user_id, session_id), SESSION_MARKER, ex=max(1, int(ttl_seconds))
            ),
            timeout=timeout,
        )

    async def iter_session_batches(
        self, user_id: int, *, deadline: Optional[float] = None
    ) -> AsyncIterator[List[str]]:
        """Yield batches of session-marker keys for ``user_id``.

        One SCAN round trip per batch; stops when the cursor wraps to 0.
        Empty batches are skipped but still cost a round trip.
        """
        pattern = session_pattern(user_id)
        cursor = 0
        while True:
            cursor, keys = await self._run(
                "scan",
                self.client.scan(cursor=cursor, match=pattern, count=self.scan_count),
                timeout=self.time_left(deadline),
            )
            if keys:
                yield list(keys)
            if int(cursor) == 0:
                break

    async def purge_user_sessions(
        self, user_id: int, *, deadline: Optional[float] = None
    ) -> int:
        """Delete every session marker of ``user_id``; returns the count.

        A failure part way raises ``SessionPurgeError`` with the number of
        markers already removed. Nothing is rolled back.
        """
        deleted = 0
        batches = self.iter_session_batches(user_id, deadline=deadline)
        try:
            async for keys in batches:
                removed = await self._run(
                    "delete",
                    self.client.delete(*keys),
                    timeout=self.time_left(deadline),
                )
                deleted += int(removed)
        except StoreUnavailableError as exc:
            raise SessionPurgeError(
                "session purge interrupted",
                deleted=deleted,
                detail={"user_id": user_id, "deleted": deleted},
            ) from exc
        finally:
            await batches.aclose()
        return deleted

    # =========================================================================
    # Profile copies
    # =========================================================================

    async def get_profile(
        self, user_id: int, *, timeout: Optional[float] = None
    ) -> Optional[str]:
        return await self._run("get_profile", self.client.get(profile_key(user_id)), timeout=timeout)

    async def set_profile(
        self,
        user_id: int,
        payload: str,
        ttl_seconds: int,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        await self._run(
            "set_profile",
            self.client.set(profile_key(user_id), payload, ex=max(1, int(ttl_seconds))),
            timeout=timeout,
        )

    async def close(self) -> None:
        await self.client.aclose()


class MemoryRedisClient:
    """In-process stand-in for the subset of the async Redis API used above.

    Keys expire lazily against ``clock``; SCAN walks keys in sorted order and
    tolerates deletion of already-returned keys between calls.
    At most ``MAX_OPEN_CURSORS`` unfinished scans are remembered; resuming an
    evicted cursor starts the walk over from the first key.
    """

    MAX_OPEN_CURSORS = 1024

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._cursors: Dict[int, str] = {}
        self._next_cursor = 1
        self._lock = threading.Lock()

    def _alive(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return False
        return True

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            if not self._alive(key):
                return None
            return self._data[key][0]

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> Optional[bool]:
        with self._lock:
            if nx and self._alive(key):
                return None
            expires_at = self._clock() + ex if ex is not None else None
            self._data[key] = (str(value), expires_at)
            return True

    async def exists(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._alive(key))

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._alive(key):
                    del self._data[key]
                    removed += 1
            return removed

    async def ttl(self, key: str) -> int:
        with self._lock:
            if not self._alive(key):
                return -2
            expires_at = self._data[key][1]
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))

    async def scan(
        self, cursor: int = 0, match: Optional[str] = None, count: Optional[int] = None
    ) -> Tuple[int, List[str]]:
        with self._lock:
            after = self._cursors.pop(int(cursor), None) if cursor else None
            candidates = sorted(
                key for key in list(self._data) if after is None or key > after
            )
            window = candidates[: count or 10]
            found = [
                key
                for key in window
                if self._alive(key) and (match is None or fnmatch.fnmatchcase(key, match))
            ]
            if len(window) == len(candidates):
                return 0, found
            next_cursor = self._next_cursor
            self._next_cursor += 1
            while len(self._cursors) >= self.MAX_OPEN_CURSORS:
                del self._cursors[next(iter(self._cursors))]
            self._cursors[next_cursor] = window[-1]
            return next_cursor, found

    async def aclose(self) -> None:
        with self._lock:
            self._data.clear()
            self._cursors.clear()
