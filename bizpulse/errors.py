"""
Error taxonomy shared by connectors, stores and jobs.

Connectors raise these; the orchestrator and job runner catch them and fold
them into result objects so a single failure never aborts a batch.
"""
from typing import Optional


class BizPulseError(Exception):
    """Base class for platform errors"""

    kind = "internal"

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.platform = platform


class CredentialError(BizPulseError):
    """Access token rejected and could not be refreshed; user must reauthorize"""

    kind = "credential"


class TransientRemoteError(BizPulseError):
    """Timeout, 5xx or rate limiting; safe to retry"""

    kind = "transient"

    def __init__(self, message: str, platform: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, platform)
        self.status_code = status_code


class RateLimitedError(TransientRemoteError):
    """HTTP 429, optionally carrying the server's Retry-After hint"""

    def __init__(self, message: str, platform: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, platform, status_code=429)
        self.retry_after = retry_after


class RemoteRequestError(BizPulseError):
    """Non-retryable 4xx response"""

    kind = "remote"

    def __init__(self, message: str, platform: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, platform)
        self.status_code = status_code


class DataShapeError(BizPulseError):
    """Remote record is missing required fields or has an unexpected shape"""

    kind = "data"


class UnknownPlatformError(BizPulseError):
    """No connector registered for the platform"""

    kind = "config"


def error_kind(error: BaseException) -> str:
    """Classify any exception into the taxonomy used in results"""
    if isinstance(error, BizPulseError):
        return error.kind
    if isinstance(error, (TimeoutError, ConnectionError)):
        return "transient"
    return "internal"
