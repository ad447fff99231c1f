from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from harbinger.config import MIN_SECRET_LENGTH
from harbinger.logging import get_logger
from harbinger.service.errors import (
    MalformedTokenError,
    SignatureInvalidError,
    TokenExpiredError,
)

logger = get_logger(__name__)

DEFAULT_ISSUER = "Project Harbinger"
DEFAULT_TOKEN_TTL = timedelta(hours=24)

Secret = Union[str, bytes]


@dataclass(frozen=True)
class Claims:
    subject_id: int
    username: str
    issued_at: datetime
    expires_at: datetime
    issuer: str

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """HS256 compact tokens: ``base64url(header).base64url(claims).base64url(sig)``.

    Pure and stateless apart from configuration; revocation is checked by
    the caller, not here.
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        *,
        issuer: str = DEFAULT_ISSUER,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.issuer = issuer
        self.ttl = ttl
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _key(secret: Secret) -> bytes:
        key = secret.encode() if isinstance(secret, str) else bytes(secret)
        if len(key) < MIN_SECRET_LENGTH:
            raise ValueError(f"signing secret must be at least {MIN_SECRET_LENGTH} bytes")
        return key

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode((segment + padding).encode("ascii"))

    def _sign(self, signing_input: str, key: bytes) -> str:
        digest = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, subject_id: int, username: str, secret: Secret) -> str:
        if isinstance(subject_id, bool) or not isinstance(subject_id, int):
            raise TypeError("subject_id must be an int")
        key = self._key(secret)
        now = self.now()
        payload = {
            "sub": subject_id,
            "username": username,
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
            "iss": self.issuer,
        }
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def verify(self, token: str, secret: Secret) -> Claims:
        """Check structure, signature, then expiry; return the claims.

        A byte changed into a segment separator (".") changes the structure
        before the signature is looked at, so such tampering surfaces as
        ``MalformedTokenError`` rather than ``SignatureInvalidError``. Either
        way the token is refused.

        Raises:
            MalformedTokenError: anything structurally wrong
            SignatureInvalidError: signature does not match ``secret``
            TokenExpiredError: ``now >= exp``
        """
        key = self._key(secret)
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = token.split(".")
        if not header_b64 or not payload_b64 or not sig_b64:
            raise MalformedTokenError("token has an empty segment")

        header = self._load_json(header_b64, "header")
        # Reject anything but HS256 to rule out algorithm confusion
        if header.get("alg") != self.ALGORITHM:
            logger.warning("token_invalid_algorithm", alg=str(header.get("alg")))
            raise MalformedTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise SignatureInvalidError("token signature mismatch")

        payload = self._load_json(payload_b64, "payload")
        claims = self._claims_from_payload(payload)
        if self.now() >= claims.expires_at:
            raise TokenExpiredError("token expired")
        return claims

    def _load_json(self, segment: str, part: str) -> dict[str, Any]:
        try:
            decoded = json.loads(self._decode_segment(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("token_segment_decode_failed", part=part)
            raise MalformedTokenError(f"token {part} is not valid base64url JSON") from exc
        if not isinstance(decoded, dict):
            raise MalformedTokenError(f"token {part} must be a JSON object")
        return decoded

    def _claims_from_payload(self, payload: dict[str, Any]) -> Claims:
        sub = payload.get("sub")
        username = payload.get("username")
        iat = payload.get("iat")
        exp = payload.get("exp")
        iss = payload.get("iss")
        if isinstance(sub, bool) or not isinstance(sub, int):
            raise MalformedTokenError("token subject must be an integer")
        if not isinstance(username, str) or not username:
            raise MalformedTokenError("token username missing")
        for name, value in (("iat", iat), ("exp", exp)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise MalformedTokenError(f"token {name} must be numeric")
        if iss != self.issuer:
            raise MalformedTokenError("token issuer not recognised")
        try:
            issued_at = datetime.fromtimestamp(iat, tz=timezone.utc)
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedTokenError("token timestamps out of range") from exc
        return Claims(
            subject_id=sub,
            username=username,
            issued_at=issued_at,
            expires_at=expires_at,
            issuer=iss,
        )
