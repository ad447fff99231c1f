"""Error envelope format and the error hierarchy behind it.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from harbinger.api.error_handling import _error_code_for_status, _error_response
from harbinger.api.schemas import Envelope, ErrorBody
from harbinger.logging import _redact_pii
from harbinger.service import errors


class TestErrorBody:
    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


@pytest.mark.parametrize(
    "cls, status, code",
    [
        (errors.MissingTokenError, 401, "missing_token"),
        (errors.MalformedTokenError, 401, "malformed_token"),
        (errors.TokenExpiredError, 401, "token_expired"),
        (errors.SignatureInvalidError, 401, "signature_invalid"),
        (errors.TokenRevokedError, 401, "token_revoked"),
        (errors.InvalidCredentialsError, 401, "invalid_credentials"),
        (errors.StoreUnavailableError, 503, "store_unavailable"),
        (errors.NotFoundError, 404, "not_found"),
        (errors.ConflictError, 409, "conflict"),
    ],
)
def test_error_classes_carry_status_and_code(cls, status, code):
    exc = cls("boom")
    assert exc.status_code == status
    assert exc.error_code == code
    # Every code must be accepted by the envelope
    ErrorBody(code=exc.error_code, message=exc.message)


def test_session_purge_error_is_a_store_outage():
    exc = errors.SessionPurgeError("partial", deleted=3)
    assert isinstance(exc, errors.StoreUnavailableError)
    assert exc.deleted == 3


def test_error_response_shape():
    resp = _error_response(401, "nope", code="token_revoked")
    body = json.loads(resp.body)
    assert resp.status_code == 401
    assert body["status"] == "error"
    assert body["error"] == {"code": "token_revoked", "message": "nope", "details": None}
    assert body["request_id"]


def test_status_fallback_codes():
    assert _error_code_for_status(503) == "store_unavailable"
    assert _error_code_for_status(418) == "server_error"


def test_redaction_masks_credentials():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "x",
            "password": "hunter22",
            "authorization": "Bearer abc.def",
            "jwt_secret": "x" * 40,
            "user_id": 7,
        },
    )
    assert event["password"] == "***"
    assert event["authorization"] == "***"
    assert event["jwt_secret"] == "***"
    assert event["user_id"] == 7
    assert event["event"] == "x"


def test_redaction_keeps_edges_of_personal_fields():
    event = _redact_pii(None, "info", {"event": "x", "email": "alice@example.com", "user_email": "a@b"})
    assert event["email"] == "al***om"
    assert event["user_email"] == "***"


def test_security_events_are_flagged():
    from structlog.testing import capture_logs

    from harbinger.logging import log_security_event

    with capture_logs() as logs:
        log_security_event("token_signature_invalid", user_id=7)
    assert logs == [
        {
            "event": "token_signature_invalid",
            "log_level": "warning",
            "security_event": True,
            "user_id": 7,
        }
    ]
