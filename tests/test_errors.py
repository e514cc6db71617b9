from librarysync.errors import (
    CredentialError,
    FatalError,
    RateLimitedError,
    RetryableError,
    UnauthorizedError,
    error_code_for,
    sanitize_error_message,
)


def test_sanitize_redacts_credentials() -> None:
    message = (
        "Authorization: Bearer abc.def-123 failed; "
        'body={"refresh_token": "r-secret", "access_token":"a-secret"} code=xyz'
    )

    sanitized = sanitize_error_message(message)

    assert "abc.def-123" not in sanitized
    assert "r-secret" not in sanitized
    assert "a-secret" not in sanitized
    assert "xyz" not in sanitized
    assert "Bearer [redacted]" in sanitized


def test_sanitize_truncates_and_collapses_whitespace() -> None:
    sanitized = sanitize_error_message("word \n\t " * 100)

    assert len(sanitized) <= 200
    assert sanitized.endswith("...")
    assert "\n" not in sanitized


def test_error_codes_and_retryability() -> None:
    assert error_code_for(RateLimitedError("slow", retry_after_seconds=3)) == "RATE_LIMITED"
    assert error_code_for(UnauthorizedError()) == "UNAUTHORIZED"
    assert error_code_for(CredentialError("gone")) == "CREDENTIAL_MISSING"
    assert error_code_for(ValueError("boom")) == "INTERNAL_ERROR"
    assert UnauthorizedError().retryable
    assert isinstance(UnauthorizedError(), RetryableError)
    assert not FatalError("no").retryable
    assert RateLimitedError("slow", retry_after_seconds=-1).retry_after_seconds == 0.0
