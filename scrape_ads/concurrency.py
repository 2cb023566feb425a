"""
Adaptive batch concurrency.

AIMD control of how many items a worker processes at once: a run of
consecutive failures (blocked or no counter) at or above the high-water
mark halves the batch size, a run of consecutive successes at or above
the low-water mark grows it by one. Both streaks restart whenever the
size changes.
"""

from typing import Iterable, Optional

from runner.logging_setup import get_logger

logger = get_logger("ads_concurrency")


class ConcurrencyDecision:
    """Result of observing a batch."""

    DECREASE = "decrease"
    INCREASE = "increase"
    HOLD = "hold"


class AdaptiveConcurrencyController:
    """Tracks outcome streaks for one worker and sizes the next batch."""

    def __init__(
        self,
        initial: int,
        minimum: int = 1,
        maximum: Optional[int] = None,
        fail_high_water: int = 8,
        success_low_water: int = 5,
        decrease_factor: float = 0.5,
        increase_step: int = 1,
    ):
        """
        Args:
            initial: Starting batch size
            minimum: Floor for the batch size
            maximum: Ceiling for the batch size (default: initial)
            fail_high_water: Consecutive failures that trigger a decrease
            success_low_water: Consecutive successes that trigger an increase
            decrease_factor: Multiplier applied on decrease
            increase_step: Amount added on increase
        """
        maximum = initial if maximum is None else maximum
        if minimum < 1 or minimum > maximum:
            raise ValueError(f"Invalid concurrency bounds [{minimum}, {maximum}]")
        if not 0 < decrease_factor < 1:
            raise ValueError("decrease_factor must be between 0 and 1")

        self.minimum = minimum
        self.maximum = maximum
        self.fail_high_water = fail_high_water
        self.success_low_water = success_low_water
        self.decrease_factor = decrease_factor
        self.increase_step = increase_step

        self._current = max(minimum, min(initial, maximum))
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.decreases = 0
        self.increases = 0

    @property
    def current(self) -> int:
        return self._current

    def record(self, success: bool):
        """Record one item outcome."""
        if success:
            self.consecutive_successes += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            self.consecutive_successes = 0

    def observe_batch(self, outcomes: Iterable[bool]) -> str:
        """
        Record a batch of outcomes and adjust the batch size.

        Args:
            outcomes: True for success, False for failure, in completion order

        Returns:
            ConcurrencyDecision value
        """
        for success in outcomes:
            self.record(success)
        return self.adjust()

    def adjust(self) -> str:
        """Apply the AIMD rule to the current streaks."""
        if self.consecutive_failures >= self.fail_high_water:
            new_size = max(self.minimum, int(self._current * self.decrease_factor))
            self._reset_streaks()
            if new_size < self._current:
                logger.warning(f"Lowering concurrency {self._current} -> {new_size} "
                               f"after {self.fail_high_water}+ consecutive failures")
                self._current = new_size
                self.decreases += 1
            return ConcurrencyDecision.DECREASE

        if self.consecutive_successes >= self.success_low_water:
            new_size = min(self.maximum, self._current + self.increase_step)
            if new_size > self._current:
                logger.info(f"Raising concurrency {self._current} -> {new_size}")
                self._current = new_size
                self.increases += 1
                self._reset_streaks()
                return ConcurrencyDecision.INCREASE

        return ConcurrencyDecision.HOLD

    def _reset_streaks(self):
        self.consecutive_failures = 0
        self.consecutive_successes = 0

    def stats(self) -> dict:
        return {
            "current": self._current,
            "minimum": self.minimum,
            "maximum": self.maximum,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "decreases": self.decreases,
            "increases": self.increases,
        }
