"""Unit tests for the gateway error taxonomy."""

from __future__ import annotations

from src.errors import (
    ClosedBeforeData,
    GatewayError,
    InvalidRequest,
    KeyNotFound,
    RateLimited,
    SessionFailed,
    TextTooLong,
    Unauthorized,
    UnsupportedCapability,
)


class TestUnauthorized:
    """Reasons map to distinct codes and statuses."""

    def test_missing_key(self) -> None:
        exc = Unauthorized("missing")
        assert exc.code == "API_KEY_REQUIRED"
        assert exc.status_code == 401

    def test_inactive_key_is_forbidden_status(self) -> None:
        exc = Unauthorized("inactive")
        assert exc.code == "API_KEY_INACTIVE"
        assert exc.status_code == 403

    def test_expired_key(self) -> None:
        assert Unauthorized("expired").code == "API_KEY_EXPIRED"

    def test_unknown_reason_falls_back_to_invalid(self) -> None:
        exc = Unauthorized("something-else")
        assert exc.code == "UNAUTHORIZED"
        assert exc.message == "Invalid API key"


class TestErrorPayloads:
    def test_to_dict_shape(self) -> None:
        exc = UnsupportedCapability("espeak", "timestamps")
        body = exc.to_dict()
        assert body["error"]["code"] == "UNSUPPORTED_CAPABILITY"
        assert "espeak" in body["error"]["message"]

    def test_rate_limited_carries_retry_after(self) -> None:
        exc = RateLimited(limit=10, retry_after=42, reset_at=1_700_000_000)
        assert exc.status_code == 429
        assert exc.to_dict()["error"]["retry_after"] == 42

    def test_text_too_long_is_invalid_request(self) -> None:
        exc = TextTooLong(600, 500)
        assert isinstance(exc, InvalidRequest)
        assert exc.code == "TEXT_TOO_LONG"
        assert exc.status_code == 400

    def test_key_not_found(self) -> None:
        exc = KeyNotFound("abc")
        assert exc.status_code == 404
        assert exc.key_id == "abc"

    def test_code_override(self) -> None:
        exc = GatewayError("boom", code="CUSTOM", status_code=418)
        assert (exc.code, exc.status_code) == ("CUSTOM", 418)


class TestSessionErrors:
    def test_closed_before_data_is_session_failure(self) -> None:
        exc = ClosedBeforeData()
        assert isinstance(exc, SessionFailed)
        assert exc.code == "CLOSED_BEFORE_DATA"

    def test_server_code_kept(self) -> None:
        exc = SessionFailed("engine down", server_code="ENGINE_NOT_AVAILABLE")
        assert exc.server_code == "ENGINE_NOT_AVAILABLE"
