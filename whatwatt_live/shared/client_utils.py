import time
from typing import Callable, Optional

from whatwatt_live.shared.errors import ExhaustionError


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    Keys: events_received, frames_dropped, reconnect_count,
          bytes_received, last_event_at, connected_at.
    """
    return {
        "events_received": 0,
        "frames_dropped": 0,
        "reconnect_count": 0,
        "bytes_received": 0,
        "last_event_at": None,
        "connected_at": None,
    }


class ReconnectPolicy:
    """
    Bounded linear backoff.

    Attempt n waits min(n, max_multiplier) * base_delay_s. Once `attempts`
    reaches `max_attempts` the policy is exhausted and stays that way until
    `reset()`.
    """

    def __init__(self, base_delay_s: float, max_attempts: int, max_multiplier: int = 5):
        self.base_delay_s = base_delay_s
        self.max_attempts = max_attempts
        self.max_multiplier = max_multiplier
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_s * min(attempt, self.max_multiplier)

    def next_delay(self) -> float:
        if self.exhausted:
            raise ExhaustionError(self.max_attempts)
        self.attempts += 1
        return self.delay_for(self.attempts)

    def reset(self) -> None:
        self.attempts = 0


class HeartbeatMonitor:
    """Infers liveness from data recency. Only armed while connected."""

    def __init__(self, timeout_s: float, interval_s: float, clock: Callable[[], float] = time.monotonic):
        self.timeout_s = timeout_s
        self.interval_s = interval_s
        self._clock = clock
        self.last_data_at: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self.last_data_at is not None

    def start(self) -> None:
        self.last_data_at = self._clock()

    def beat(self) -> None:
        self.last_data_at = self._clock()

    def stop(self) -> None:
        self.last_data_at = None

    def elapsed(self) -> float:
        if self.last_data_at is None:
            return 0.0
        return self._clock() - self.last_data_at

    def is_expired(self) -> bool:
        return self.armed and self.elapsed() > self.timeout_s
