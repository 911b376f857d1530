"""
Service layer exceptions.

Classification drives everything downstream:
- TransientUpstreamError: retried, counted by the circuit breaker
- PermanentRequestError: caller mistake, never retried or counted
- NotFoundError: absent record, never retried or counted
- CircuitOpenError: synthetic, raised without touching the upstream
- ConfigurationError: fatal at startup
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    retryable: bool = False

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        self.attempts = 1
        super().__init__(message)


class TransientUpstreamError(ServiceError):
    """Upstream failed in a way that may succeed on retry (5xx, timeout, 429)."""

    retryable = True

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message, service_id=service_id)


class RateLimitError(TransientUpstreamError):
    """Rate limit exceeded."""

    def __init__(self, service_id: str | None = None, retry_after: float | None = None):
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, service_id=service_id, status_code=429, retry_after=retry_after)


class UpstreamTimeoutError(TransientUpstreamError):
    """Request timed out."""

    def __init__(
        self,
        service_id: str | None,
        timeout: float,
        retryable: bool = True,
    ):
        self.timeout = timeout
        self.retryable = retryable
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class PermanentRequestError(ServiceError):
    """Malformed query, validation failure or a 4xx other than 429."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class NotFoundError(ServiceError):
    """Requested record does not exist upstream."""

    pass


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class ConfigurationError(ServiceError):
    """Provider configuration is missing or invalid."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)


def is_transient(error: BaseException) -> bool:
    """True for failures that say something about upstream health."""
    return isinstance(error, TransientUpstreamError)


def is_unavailable(error: BaseException) -> bool:
    """Transient failure or open circuit - both warrant a fallback."""
    return isinstance(error, (TransientUpstreamError, CircuitOpenError))


def classify_status(
    status_code: int,
    message: str,
    service_id: str | None = None,
    retry_after: float | None = None,
) -> ServiceError:
    """Map an upstream HTTP status to the error taxonomy."""
    if status_code == 429:
        return RateLimitError(service_id, retry_after=retry_after)
    if status_code == 404:
        return NotFoundError(message, service_id=service_id)
    if status_code == 408 or status_code >= 500:
        return TransientUpstreamError(
            message, service_id=service_id, status_code=status_code
        )
    return PermanentRequestError(message, service_id=service_id, status_code=status_code)
