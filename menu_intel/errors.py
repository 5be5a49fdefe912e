"""
Exception taxonomy for the menu intelligence pipeline
"""

from typing import List, Optional, Tuple


class MenuIntelError(Exception):
    """Base exception for all pipeline errors"""
    pass


class ConfigurationError(MenuIntelError):
    """Missing or invalid configuration"""
    pass


class ApiError(MenuIntelError):
    """Error returned by (or while reaching) an external API"""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retryable: Optional[bool] = None):
        super().__init__(message)
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable


class InvalidRequest(ApiError):
    """Caller error (4xx other than 429). Never retried."""
    pass


class RateLimited(ApiError):
    """Upstream answered 429, or the local request budget was unavailable"""

    retryable = True


class TransientUpstream(ApiError):
    """5xx, timeout or connection failure"""

    retryable = True


class MalformedOutput(MenuIntelError):
    """Provider or taste-graph output failed structural validation"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class GenerationFailed(MenuIntelError):
    """All configured content providers were exhausted"""

    def __init__(self, capability: str, attempts: List[Tuple[str, str]]):
        summary = '; '.join(f"{provider}: {reason}" for provider, reason in attempts)
        super().__init__(f"All providers failed for {capability}: {summary or 'no providers configured'}")
        self.capability = capability
        self.attempts = attempts


class InvalidTransition(MenuIntelError):
    """Review state machine misuse, e.g. approving an already-reviewed record"""

    def __init__(self, record_id: str, current_status: str, requested_status: str):
        super().__init__(
            f"Cannot move {record_id} from {current_status} to {requested_status}"
        )
        self.record_id = record_id
        self.current_status = current_status
        self.requested_status = requested_status


class NotFound(MenuIntelError):
    """Missing entity or item"""
    pass
