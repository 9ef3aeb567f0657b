"""Error kinds surfaced by the resilience layer.

User-visible failure is always either a value (possibly the fallback) or
one of these errors, never a raw transport traceback.
"""

from typing import Optional


class ApiStashError(Exception):
    """Base class for every error raised by apistash."""


class ConfigurationError(ApiStashError):
    """Invalid component configuration (unknown backend, negative limits, ...)."""


class RateLimitExceeded(ApiStashError):
    """Admission denied by the rate limiter."""

    def __init__(self, message: str = "Rate limit exceeded. Please wait before making more requests.",
                 retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class StorageError(ApiStashError):
    """Cache write, read or serialization failure."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)


class TransportError(ApiStashError):
    """One HTTP exchange failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PayloadError(TransportError):
    """The transport returned a body that does not match the expected format."""


class ExhaustedRetries(ApiStashError):
    """All attempts failed and no fallback value is configured."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f" Last error: {type(last_error).__name__}: {last_error}" if last_error else ""
        super().__init__(f"All {attempts} attempt(s) failed.{detail}")


class DeadlineExceeded(ExhaustedRetries):
    """The per-call deadline elapsed before the call resolved."""

    def __init__(self, deadline_seconds: float, attempts: int = 0,
                 last_error: Optional[BaseException] = None):
        self.deadline_seconds = deadline_seconds
        super().__init__(attempts, last_error)
        self.args = (f"Call did not complete within {deadline_seconds:.2f}s deadline.",)
