"""
Connection recovery policy for serial port drivers.

- Exponential backoff between reconnection attempts
- Transient vs permanent failure classification
- Bounded retry count

A driver consults its RetryPolicy after every failed open attempt; the policy
itself holds no connection state.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator

logger = logging.getLogger(__name__)


class RecoveryDecision(Enum):
    """What to do after a failed open attempt."""
    RETRY = auto()        # Transient failure, attempts left
    GIVE_UP = auto()      # Transient failure, attempts exhausted
    FAIL = auto()         # Permanent failure, never retried


@dataclass
class RetryPolicy:
    """Reconnection behaviour of a port driver."""
    max_attempts: int = 10             # 0 = never retry
    initial_delay: float = 1.0         # seconds
    max_delay: float = 30.0            # seconds
    backoff_multiplier: float = 2.0    # Exponential backoff factor

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the given retry.

        Args:
            attempt: 1-based retry number

        Returns:
            min(initial_delay * multiplier ** (attempt - 1), max_delay)
        """
        if attempt < 1:
            raise ValueError(f"Retry attempts are 1-based, got {attempt}")
        return min(
            self.initial_delay * self.backoff_multiplier ** (attempt - 1),
            self.max_delay,
        )

    def delays(self) -> Iterator[float]:
        """All retry delays in order."""
        for attempt in range(1, self.max_attempts + 1):
            yield self.delay_for(attempt)

    def is_transient(self, error: Exception) -> bool:
        """Errors opt in to retries with a truthy `transient` attribute."""
        return bool(getattr(error, "transient", False))

    def decide(self, error: Exception, attempts_made: int) -> RecoveryDecision:
        """
        Decide whether to retry after a failure.

        Args:
            error: Error from the failed attempt
            attempts_made: Retries already performed (0 after the first open)
        """
        if not self.is_transient(error):
            return RecoveryDecision.FAIL
        if attempts_made >= self.max_attempts:
            return RecoveryDecision.GIVE_UP
        return RecoveryDecision.RETRY

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        """Policy for one-shot opens (e.g. discovery probes)."""
        return cls(max_attempts=0)
