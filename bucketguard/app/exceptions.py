"""Custom exceptions for the rate limiter."""


class RateLimiterError(Exception):
    """Base class for rate limiter exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(RateLimiterError):
    """Raised when limiter or batch arguments are invalid.

    Always detected before Redis is contacted and never retried.
    Maps to HTTP 400 Bad Request.
    """
    status_code = 400


class OperationFailure(RateLimiterError):
    """Raised when Redis cannot complete a bucket operation.

    Covers unreachable Redis, script errors and malformed replies. The
    message carries the underlying error text; the limiter never turns
    this into an allowed or denied result on its own.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        self.detail = detail or "Unknown error"
        super().__init__(f"Failed to {operation}: {self.detail}")

    def to_response(self) -> dict:
        """Convert to API response format."""
        return {
            "error": "rate_limiter_unavailable",
            "message": self.message,
        }
