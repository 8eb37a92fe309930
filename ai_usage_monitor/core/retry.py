"""
Retry backoff scheduling.

Per-account exponential backoff used to space out polling after failures.
"""

from datetime import timedelta

BASE_DELAY = timedelta(seconds=60)
MAX_DELAY = timedelta(seconds=600)
BACKOFF_FACTOR = 2

# Counter saturates here; the delay has long since hit MAX_DELAY.
MAX_TRACKED_FAILURES = 10_000


class RetryScheduler:
    """Exponential backoff state for one account.

    The delay is a pure function of the consecutive failure count:
    base_delay at zero failures, else min(base_delay * factor**(n-1), max_delay).
    """

    def __init__(
        self,
        base_delay: timedelta = BASE_DELAY,
        max_delay: timedelta = MAX_DELAY,
        factor: int = BACKOFF_FACTOR,
    ):
        """Initialize scheduler with no recorded failures.

        Args:
            base_delay: Polling interval when healthy
            max_delay: Upper bound on the backoff delay
            factor: Multiplier applied per additional failure

        Raises:
            ValueError: If delays are not positive or max_delay < base_delay
        """
        if base_delay <= timedelta(0):
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if factor < 1:
            raise ValueError("factor must be >= 1")

        self.base_delay = base_delay
        self.max_delay = max_delay
        self.factor = factor
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def record_success(self) -> None:
        """Reset the failure counter."""
        self._consecutive_failures = 0

    def record_failure(self) -> None:
        """Count one more consecutive failure (saturating)."""
        self._consecutive_failures = min(
            self._consecutive_failures + 1, MAX_TRACKED_FAILURES
        )

    def is_in_backoff(self) -> bool:
        return self._consecutive_failures > 0

    def current_delay(self) -> timedelta:
        """Delay to wait since the last fetch before trying again."""
        if self._consecutive_failures == 0:
            return self.base_delay

        # Stop multiplying once past the cap to keep the exponent bounded.
        delay = self.base_delay
        for _ in range(self._consecutive_failures - 1):
            delay = delay * self.factor
            if delay >= self.max_delay:
                return self.max_delay
        return min(delay, self.max_delay)
