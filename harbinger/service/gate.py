from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from harbinger.logging import get_logger, log_security_event
from harbinger.service.errors import (
    MissingTokenError,
    SignatureInvalidError,
    StoreUnavailableError,
    TokenRevokedError,
)
from harbinger.service.tokens import Claims, Secret, TokenCodec
from harbinger.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Verified identity attached to an admitted request."""

    claims: Claims
    token: str

    @property
    def user_id(self) -> int:
        return self.claims.subject_id


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from ``Bearer <token>``.

    Exactly two whitespace-separated parts are required and the scheme is
    matched case-insensitively.
    """
    if not header:
        raise MissingTokenError("no token provided")
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise MissingTokenError("authorization header must be 'Bearer <token>'")
    return parts[1]


class AuthGate:
    """Per-request admission: signature, expiry, then the revocation list.

    Holds no per-request state, so one instance serves concurrent requests.
    """

    def __init__(self, codec: TokenCodec, cache: RedisCache, secret: Secret) -> None:
        self.codec = codec
        self.cache = cache
        self._secret = secret

    def __repr__(self) -> str:
        return f"AuthGate(issuer={self.codec.issuer!r})"

    async def admit(
        self, authorization: Optional[str], *, timeout: Optional[float] = None
    ) -> AuthContext:
        token = extract_bearer(authorization)
        try:
            claims = self.codec.verify(token, self._secret)
        except SignatureInvalidError:
            log_security_event("token_signature_invalid", logger)
            raise

        try:
            revoked = await self.cache.is_token_blacklisted(token, timeout=timeout)
        except StoreUnavailableError:
            # Fail closed: an unreachable blacklist must not admit a revoked token
            logger.error("revocation_check_unavailable", user_id=claims.subject_id)
            raise
        if revoked:
            logger.info("revoked_token_rejected", user_id=claims.subject_id)
            raise TokenRevokedError("token has been revoked")
        return AuthContext(claims=claims, token=token)
