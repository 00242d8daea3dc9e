"""Retry policy for queued tasks"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Delay before attempt n+1 (after n failed attempts):
        min(min_timeout_ms * factor^(n-1), max_timeout_ms)

    Example (defaults):
        500ms, 900ms, 1.62s, 2.92s, ... capped at 30s
    """

    max_attempts: int = 3
    factor: float = 1.8
    min_timeout_ms: int = 500
    max_timeout_ms: int = 30_000

    def delay_seconds(self, attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt"""
        if attempt < 1:
            attempt = 1
        delay_ms = self.min_timeout_ms * (self.factor ** (attempt - 1))
        return min(delay_ms, self.max_timeout_ms) / 1000

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts
