"""Per-second rates derived from cumulative counter samples."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


NEAR_ZERO_EPSILON = 0.01


@dataclass(frozen=True, slots=True)
class RateState:
    """Baseline and latest derived rate for a single metric key.

    ``current_rate`` is ``None`` until two samples have been observed, and
    again right after a counter reset.
    """

    previous_raw_value: float
    previous_timestamp: float
    current_rate: Optional[float] = None


def advance(state: Optional[RateState], raw_value: float, timestamp: float) -> RateState:
    """Fold one sample into ``state`` and return the resulting state.

    Timestamps are milliseconds.  A sample that is not newer than the baseline
    returns ``state`` unchanged (same object).  A decreasing raw value is a
    counter reset: the sample becomes the new baseline and the rate is unknown.
    """

    if state is None:
        return RateState(previous_raw_value=raw_value, previous_timestamp=timestamp)

    if timestamp <= state.previous_timestamp:
        return state

    if raw_value < state.previous_raw_value:
        return RateState(previous_raw_value=raw_value, previous_timestamp=timestamp)

    elapsed_seconds = (timestamp - state.previous_timestamp) / 1000
    rate = (raw_value - state.previous_raw_value) / elapsed_seconds
    return RateState(
        previous_raw_value=raw_value,
        previous_timestamp=timestamp,
        current_rate=rate,
    )


def is_near_zero(rate: Optional[float], epsilon: float = NEAR_ZERO_EPSILON) -> bool:
    """True for a known, non-zero rate too small to report precisely."""

    return rate is not None and 0 < abs(rate) < epsilon


class RateCalculator:
    """Track the rate of one counter key across successive samples."""

    def __init__(self, *, epsilon: float = NEAR_ZERO_EPSILON) -> None:
        if epsilon < 0:
            raise ValueError("epsilon must be non-negative")
        self._state: Optional[RateState] = None
        self._epsilon = epsilon
        self.resets = 0

    @property
    def state(self) -> Optional[RateState]:
        return self._state

    @property
    def rate(self) -> Optional[float]:
        return None if self._state is None else self._state.current_rate

    @property
    def near_zero(self) -> bool:
        return is_near_zero(self.rate, self._epsilon)

    def accepts(self, timestamp: float) -> bool:
        return self._state is None or timestamp > self._state.previous_timestamp

    def observe(self, raw_value: float, timestamp: float) -> Optional[float]:
        """Record a sample and return the current rate (``None`` if unknown)."""

        previous = self._state
        self._state = advance(previous, raw_value, timestamp)
        if (
            previous is not None
            and self._state is not previous
            and raw_value < previous.previous_raw_value
        ):
            self.resets += 1
        return self._state.current_rate
