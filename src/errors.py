"""Gateway error taxonomy.

Every failure the gateway reports to a caller is a ``GatewayError``
subclass carrying a machine-readable ``code`` and the HTTP status used by
the REST surface. The WebSocket surface reuses ``code`` in its error frames.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for all errors surfaced to gateway callers."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message}}


# --- Admission ---


class Unauthorized(GatewayError):
    """Missing, unknown, inactive or expired API key."""

    code = "UNAUTHORIZED"
    status_code = 401

    _REASONS = {
        "missing": ("API_KEY_REQUIRED", 401, "API key required"),
        "invalid": ("UNAUTHORIZED", 401, "Invalid API key"),
        "inactive": ("API_KEY_INACTIVE", 403, "API key is inactive"),
        "expired": ("API_KEY_EXPIRED", 403, "API key has expired"),
    }

    def __init__(self, reason: str = "invalid") -> None:
        code, status, message = self._REASONS.get(reason, self._REASONS["invalid"])
        self.reason = reason
        super().__init__(message, code=code, status_code=status)


class Forbidden(GatewayError):
    code = "FORBIDDEN"
    status_code = 403


class RateLimited(GatewayError):
    """Per-key window exhausted; recoverable after ``retry_after`` seconds."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, limit: int, retry_after: int, reset_at: int) -> None:
        self.limit = limit
        self.retry_after = retry_after
        self.reset_at = reset_at
        super().__init__(f"Rate limit exceeded. Retry after {retry_after} seconds")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["error"]["retry_after"] = self.retry_after
        return data


# --- Engines ---


class MissingCredentials(GatewayError):
    code = "ENGINE_CREDENTIALS_MISSING"
    status_code = 503

    def __init__(self, engine_id: str) -> None:
        self.engine_id = engine_id
        super().__init__(f"Credentials for engine {engine_id} are not configured")


class VendorUnreachable(GatewayError):
    code = "VENDOR_UNREACHABLE"
    status_code = 502

    def __init__(self, engine_id: str, detail: str) -> None:
        self.engine_id = engine_id
        super().__init__(f"{engine_id}: {detail}")


class EngineNotAvailable(GatewayError):
    code = "ENGINE_NOT_AVAILABLE"
    status_code = 503

    def __init__(self, engine_id: str, detail: str = "") -> None:
        self.engine_id = engine_id
        message = f"Engine {engine_id} is not available"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnsupportedCapability(GatewayError):
    code = "UNSUPPORTED_CAPABILITY"
    status_code = 400

    def __init__(self, engine_id: str, capability: str) -> None:
        self.engine_id = engine_id
        self.capability = capability
        super().__init__(f"Engine {engine_id} does not support {capability}")


class UnsupportedFormat(GatewayError):
    code = "UNSUPPORTED_FORMAT"
    status_code = 400

    def __init__(self, engine_id: str, audio_format: str) -> None:
        self.engine_id = engine_id
        self.audio_format = audio_format
        super().__init__(f"Engine {engine_id} cannot produce {audio_format} audio")


class VoiceNotFound(GatewayError):
    code = "VOICE_NOT_FOUND"
    status_code = 404

    def __init__(self, voice_id: str) -> None:
        self.voice_id = voice_id
        super().__init__(f"Voice not found: {voice_id}")


class SpeechGenerationError(GatewayError):
    code = "SPEECH_GENERATION_FAILED"
    status_code = 500

    def __init__(self, engine_id: str, detail: str) -> None:
        self.engine_id = engine_id
        super().__init__(f"Speech generation failed ({engine_id}): {detail}")


class RequestTimeout(GatewayError):
    code = "REQUEST_TIMEOUT"
    status_code = 504


# --- Requests ---


class InvalidRequest(GatewayError):
    code = "VALIDATION_ERROR"
    status_code = 400


class TextTooLong(InvalidRequest):
    code = "TEXT_TOO_LONG"

    def __init__(self, length: int, max_length: int) -> None:
        self.length = length
        self.max_length = max_length
        super().__init__(f"Text exceeds maximum length of {max_length} characters (got {length})")


# --- Storage ---


class KeyNotFound(GatewayError):
    code = "KEY_NOT_FOUND"
    status_code = 404

    def __init__(self, key_id: str) -> None:
        self.key_id = key_id
        super().__init__(f"API key not found: {key_id}")


class RepositoryUnavailable(GatewayError):
    """Backing store unreachable; distinct from "not found"."""

    code = "REPOSITORY_UNAVAILABLE"
    status_code = 503


# --- Streaming protocol ---


class SessionFailed(GatewayError):
    """Exchange terminated by a server error frame."""

    code = "SESSION_FAILED"
    status_code = 502

    def __init__(self, message: str, *, server_code: str | None = None) -> None:
        self.server_code = server_code
        super().__init__(message)


class ClosedBeforeData(SessionFailed):
    code = "CLOSED_BEFORE_DATA"

    def __init__(self) -> None:
        super().__init__("WebSocket closed before receiving audio")


class SessionTimeout(SessionFailed):
    code = "SESSION_TIMEOUT"

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"No complete response within {timeout:.1f}s")
