from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from harbinger.logging import get_logger
from harbinger.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    StoreUnavailableError,
)
from harbinger.service.tokens import Claims, Secret, TokenCodec
from harbinger.storage.errors import ConstraintViolation
from harbinger.storage.models import User
from harbinger.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_BLACKLIST_FLOOR = timedelta(minutes=5)
DEFAULT_STORE_TIMEOUT = 5.0


class UserStore(Protocol):
    def create_user(self, username: str, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_username_or_email(self, value: str) -> Optional[User]: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


async def call_store(
    fn: Callable[..., Any], *args: Any, timeout: float = DEFAULT_STORE_TIMEOUT
) -> Any:
    """Run a blocking store call off the event loop under a deadline."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("store_call_timeout", call=getattr(fn, "__name__", "store"))
        raise StoreUnavailableError("user store timed out") from exc


@dataclass(frozen=True)
class LogoutResult:
    blacklist_ttl: int
    sessions_purged: int
    purge_complete: bool


class SessionLifecycle:
    """Login, logout and registration on top of the token codec and cache."""

    def __init__(
        self,
        store: UserStore,
        cache: RedisCache,
        codec: TokenCodec,
        secret: Secret,
        *,
        blacklist_floor: timedelta = DEFAULT_BLACKLIST_FLOOR,
        store_timeout: float = DEFAULT_STORE_TIMEOUT,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self._secret = secret
        self.blacklist_floor = blacklist_floor
        self.store_timeout = store_timeout
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # Verified against when the username is unknown so both failure
        # paths cost one argon2 verification.
        self._dummy_hash = self._pwd_hasher.hash("harbinger-timing-equalizer")

    def __repr__(self) -> str:
        return f"SessionLifecycle(store={type(self.store).__name__})"

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, digest: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(digest, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def register(self, username: str, email: str, password: str) -> User:
        digest = await asyncio.to_thread(self.hash_password, password)
        try:
            user = await call_store(
                self.store.create_user,
                username,
                email,
                digest,
                timeout=self.store_timeout,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, username: str, password: str) -> str:
        """Check credentials and issue a token.

        Unknown user and wrong password are indistinguishable to the caller,
        in both message and cost. No session marker is written.
        """
        user = await call_store(
            self.store.get_user_by_username_or_email,
            username,
            timeout=self.store_timeout,
        )
        if user is None:
            await asyncio.to_thread(self.verify_password, self._dummy_hash, password)
            logger.info("login_failed")
            raise InvalidCredentialsError("invalid credentials")
        ok = await asyncio.to_thread(self.verify_password, user.password_hash, password)
        if not ok:
            logger.info("login_failed", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials")
        token = self.codec.issue(user.id, user.username, self._secret)
        logger.info("login_succeeded", user_id=user.id)
        return token

    def blacklist_ttl(self, claims: Claims) -> int:
        remaining = claims.remaining(self.codec.now()).total_seconds()
        floor = self.blacklist_floor.total_seconds()
        return int(math.ceil(max(floor, remaining)))

    async def logout(
        self, token: str, claims: Claims, *, deadline: Optional[float] = None
    ) -> LogoutResult:
        """Blacklist ``token`` for its remaining life, then sweep session markers.

        The blacklist write must succeed or the logout fails. The sweep is
        best effort and only logged when it fails. ``deadline`` (an event-loop
        time from ``RedisCache.deadline_after``) bounds both steps together.
        """
        ttl = self.blacklist_ttl(claims)
        try:
            await self.cache.blacklist_token(
                token, ttl, timeout=self.cache.time_left(deadline)
            )
        except StoreUnavailableError:
            logger.error("logout_blacklist_failed", user_id=claims.subject_id)
            raise

        purged = 0
        complete = True
        try:
            purged = await self.cache.purge_user_sessions(
                claims.subject_id, deadline=deadline
            )
        except StoreUnavailableError as exc:
            purged = getattr(exc, "deleted", 0)
            complete = False
            logger.warning(
                "session_purge_failed",
                user_id=claims.subject_id,
                deleted=purged,
                error=exc.message,
            )
        logger.info(
            "logout_completed",
            user_id=claims.subject_id,
            blacklist_ttl=ttl,
            sessions_purged=purged,
        )
        return LogoutResult(blacklist_ttl=ttl, sessions_purged=purged, purge_complete=complete)
