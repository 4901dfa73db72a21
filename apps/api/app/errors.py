"""Application exception types."""

from app.schemas.error import ErrorResponse


class ApiError(Exception):
    """Structured API error that maps directly to contract error payloads."""

    def __init__(self, status_code: int, code: str, message: str, details: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = ErrorResponse(code=code, message=message, details=details)
        super().__init__(message)


def not_found() -> ApiError:
    return ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")


def provider_unavailable(message: str, *, reason: str) -> ApiError:
    """502 for provider calls that failed; the caller has already undone its own side effects."""
    return ApiError(
        status_code=502,
        code="PROVIDER_UNAVAILABLE",
        message=message,
        details={"retryable": True, "reason": reason},
    )


__all__ = ["ApiError", "not_found", "provider_unavailable"]
