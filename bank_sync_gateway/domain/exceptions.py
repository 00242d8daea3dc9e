"""Domain-specific exceptions

Every exception carries a `retryable` flag that the task worker consults
before rescheduling a failed run.
"""

from typing import Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    retryable = True


class ProviderError(DomainException):
    """Aggregation provider returned an error or an unusable response"""

    def __init__(self, message: str, error_code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code


class AuthError(ProviderError):
    """Access token expired, consent revoked, or credentials rejected"""

    retryable = False


class RateLimited(ProviderError):
    """Provider throttled the request (HTTP 429)"""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class TransientError(ProviderError):
    """Timeouts, network failures and provider 5xx responses"""

    pass


class ConnectionNotFoundError(DomainException):
    """Bank connection does not exist (or was already deleted)"""

    retryable = False


class SyncInProgressError(DomainException):
    """Another sync currently holds the connection"""

    pass


class InvalidTransactionDataError(DomainException):
    """Transaction data is malformed or invalid"""

    retryable = False


class TaskPayloadError(DomainException):
    """Task payload failed schema validation"""

    retryable = False


class TaskTimeoutError(DomainException):
    """Task exceeded its wall-clock budget"""

    pass
