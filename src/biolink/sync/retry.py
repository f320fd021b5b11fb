"""Retry ceiling and backoff policy shared by every queue drain."""

from dataclasses import dataclass

from .config import SyncConfig


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed retry ceiling with exponential backoff between attempts.

    An item whose ``retry_count`` exceeds ``max_retries`` is dropped, so a
    mutation is attempted at most ``max_retries + 1`` times.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: SyncConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay_seconds,
            multiplier=config.retry_backoff_multiplier,
            max_delay=config.retry_max_delay_seconds,
        )

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count > self.max_retries

    def delay_for(self, retry_count: int) -> float:
        """Backoff before the attempt following the ``retry_count``-th failure."""
        if retry_count <= 0 or self.base_delay <= 0:
            return 0.0
        delay = self.base_delay * (self.multiplier ** (retry_count - 1))
        return min(delay, self.max_delay)
