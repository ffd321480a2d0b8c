"""Error taxonomy for the admission and retry control plane."""

from __future__ import annotations


class AutopilotError(Exception):
    """Base class for every error raised by the control plane."""


class AdmissionDenied(AutopilotError):
    """A gate refused to let work run right now.

    Not a failure of the work itself: callers reschedule after
    ``wait_seconds`` or drop the work.
    """

    code = "admission_denied"

    def __init__(self, reason: str, wait_seconds: float = 0.0) -> None:
        self.reason = reason
        self.wait_seconds = max(0.0, float(wait_seconds))
        super().__init__(reason)


class CircuitOpenError(AdmissionDenied):
    code = "circuit_open"

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = max(0.0, retry_after)
        seconds = int(-(-self.retry_after // 1))
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. Next attempt in {seconds} seconds",
            self.retry_after,
        )


class RateLimitExceeded(AdmissionDenied):
    code = "rate_limited"

    def __init__(self, endpoint: str, wait_seconds: float) -> None:
        self.endpoint = endpoint
        super().__init__(f"Rate limit exceeded for {endpoint}", wait_seconds)


class TransientError(AutopilotError):
    """Network or upstream failure during an admitted operation."""


class EndpointError(TransientError):
    def __init__(self, url: str, status: int, body: str = "") -> None:
        self.url = url
        self.status = status
        self.body = body
        super().__init__(f"Request to {url} failed: {status}")


class XApiError(TransientError):
    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"X API error: {status} - {body}")


class ConfigurationError(AutopilotError):
    """Missing credentials or an invalid request. Fails fast, never retried."""


class UnknownEndpointError(ConfigurationError):
    pass


class UnknownBreakerError(ConfigurationError):
    pass


class UnknownTaskError(ConfigurationError):
    pass


class InvalidReplyError(ConfigurationError):
    pass


class XAuthError(ConfigurationError):
    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"X API authentication failed: {status} - {body}")
