"""Error taxonomy shared by the client, the algorithms and the dispatcher."""

from __future__ import annotations

from enum import Enum
import re

MAX_ERROR_MESSAGE_LENGTH = 200


class ErrorCode(str, Enum):
    """Codes persisted on SyncState rows and job payloads."""

    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UNAUTHORIZED = "UNAUTHORIZED"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"
    CREDENTIAL_MISSING = "CREDENTIAL_MISSING"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    CONFIGURATION = "CONFIGURATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SyncError(Exception):
    """Base class for classified synchronisation failures."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class RateLimitedError(SyncError):
    """The upstream asked us to slow down; never fatal."""

    code = ErrorCode.RATE_LIMITED
    retryable = True

    def __init__(self, message: str, *, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(0.0, float(retry_after_seconds))


class RetryableError(SyncError):
    """Transient failure eligible for exponential backoff (timeouts, 5xx)."""

    code = ErrorCode.UPSTREAM_UNAVAILABLE
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class UnauthorizedError(RetryableError):
    code = ErrorCode.UNAUTHORIZED

    def __init__(self, message: str = "access credential rejected") -> None:
        super().__init__(message, status_code=401)


class FatalError(SyncError):
    """Terminal failure; the job is failed without further attempts."""

    code = ErrorCode.UPSTREAM_REJECTED

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class CredentialError(FatalError):
    code = ErrorCode.CREDENTIAL_MISSING


class InvalidPayloadError(FatalError):
    code = ErrorCode.INVALID_PAYLOAD


class ConfigurationError(Exception):
    """Startup configuration fault; aborts the process."""


_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]+"), r"\1 [redacted]"),
    (
        re.compile(
            r"(?i)([\"']?(?:access_token|refresh_token|client_secret|code)[\"']?\s*[:=]\s*[\"']?)"
            r"[^\"'&,\s}]+"
        ),
        r"\1[redacted]",
    ),
)


def sanitize_error_message(message: object, *, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    """Redact credentials from ``message`` and cap its length."""

    text = str(message or "").strip()
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, SyncError):
        return exc.code.value
    return ErrorCode.INTERNAL_ERROR.value


__all__ = [
    "ConfigurationError",
    "CredentialError",
    "ErrorCode",
    "FatalError",
    "InvalidPayloadError",
    "RateLimitedError",
    "RetryableError",
    "SyncError",
    "UnauthorizedError",
    "error_code_for",
    "sanitize_error_message",
]
