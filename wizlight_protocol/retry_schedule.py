#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
RetrySchedule -- the progressive backoff used to retransmit a command datagram.

The first datagram is sent immediately. The gap before each following retransmission
starts at first_interval and doubles each time, but never exceeds max_interval. The
exchange gives up at timeout seconds after the first send, which must be strictly later
than the last scheduled send.

With the defaults, datagrams are sent at 0, 0.75, 2.25, 5.25, 8.25 and 11.25 seconds
and the exchange times out at 13 seconds.
"""

from __future__ import annotations

from wizlight_protocol.internal_types import *
from .constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_FIRST_INTERVAL,
    DEFAULT_MAX_INTERVAL,
    DEFAULT_TIMEOUT,
    COMMIT_MAX_ATTEMPTS,
    COMMIT_FIRST_INTERVAL,
    COMMIT_MAX_INTERVAL,
    COMMIT_TIMEOUT,
)

class RetrySchedule:
    max_attempts: int
    """The total number of times the datagram will be transmitted, including the first."""

    first_interval: float
    """The delay (in seconds) between the first and second transmissions."""

    max_interval: float
    """The maximum delay (in seconds) between consecutive transmissions."""

    timeout: float
    """The time (in seconds) after the first transmission at which the exchange fails."""

    def __init__(
            self,
            max_attempts: int=DEFAULT_MAX_ATTEMPTS,
            first_interval: float=DEFAULT_FIRST_INTERVAL,
            max_interval: float=DEFAULT_MAX_INTERVAL,
            timeout: float=DEFAULT_TIMEOUT,
          ):
        if max_attempts < 1:
            raise ValueError(f"RetrySchedule requires at least one attempt, got {max_attempts}")
        if first_interval <= 0.0 or max_interval <= 0.0:
            raise ValueError(f"RetrySchedule intervals must be positive, got first={first_interval}, max={max_interval}")
        self.max_attempts = max_attempts
        self.first_interval = first_interval
        self.max_interval = max_interval
        self.timeout = timeout
        last_offset = self.offsets[-1]
        if not timeout > last_offset:
            raise ValueError(f"RetrySchedule timeout {timeout} must be later than the last send at {last_offset}")

    @property
    def intervals(self) -> List[float]:
        """The gaps (in seconds) between consecutive transmissions. Has max_attempts - 1 entries."""
        result: List[float] = []
        interval = self.first_interval
        for _ in range(self.max_attempts - 1):
            result.append(min(interval, self.max_interval))
            interval *= 2
        return result

    @property
    def offsets(self) -> List[float]:
        """The times (in seconds, relative to the first send) of every transmission. Starts with 0.0."""
        result = [0.0]
        for interval in self.intervals:
            result.append(result[-1] + interval)
        return result

    @classmethod
    def from_json_data(cls, data: Mapping[str, Jsonable]) -> RetrySchedule:
        """Creates a schedule from a configuration object; missing keys take the command defaults."""
        max_attempts = data.get("max_attempts", DEFAULT_MAX_ATTEMPTS)
        first_interval = data.get("first_interval", DEFAULT_FIRST_INTERVAL)
        max_interval = data.get("max_interval", DEFAULT_MAX_INTERVAL)
        timeout = data.get("timeout", DEFAULT_TIMEOUT)
        if not isinstance(max_attempts, int):
            raise TypeError(f"RetrySchedule: Expected max_attempts to be int, got {type(max_attempts)}")
        for name, value in (("first_interval", first_interval), ("max_interval", max_interval), ("timeout", timeout)):
            if not isinstance(value, (int, float)):
                raise TypeError(f"RetrySchedule: Expected {name} to be a number, got {type(value)}")
        return cls(
            max_attempts=max_attempts,
            first_interval=float(cast(float, first_interval)),
            max_interval=float(cast(float, max_interval)),
            timeout=float(cast(float, timeout)),
          )

    def to_json_data(self) -> JsonableDict:
        return {
            "max_attempts": self.max_attempts,
            "first_interval": self.first_interval,
            "max_interval": self.max_interval,
            "timeout": self.timeout,
          }

    def __str__(self) -> str:
        return f"RetrySchedule(offsets={self.offsets}, timeout={self.timeout})"

    def __repr__(self) -> str:
        return str(self)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, RetrySchedule):
            return False
        return (self.max_attempts == other.max_attempts and
                self.first_interval == other.first_interval and
                self.max_interval == other.max_interval and
                self.timeout == other.timeout)

    def __hash__(self) -> int:
        return hash((self.max_attempts, self.first_interval, self.max_interval, self.timeout))

DEFAULT_RETRY_SCHEDULE = RetrySchedule()
"""The schedule used for ordinary commands: 6 sends, 13 second deadline."""

COMMIT_RETRY_SCHEDULE = RetrySchedule(
    max_attempts=COMMIT_MAX_ATTEMPTS,
    first_interval=COMMIT_FIRST_INTERVAL,
    max_interval=COMMIT_MAX_INTERVAL,
    timeout=COMMIT_TIMEOUT,
  )
"""A shorter schedule for latency-sensitive writes, where long retries would cause visible flicker."""
