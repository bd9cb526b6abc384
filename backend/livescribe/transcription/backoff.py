from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class ReconnectPolicy:
    """
    Retry bookkeeping for one provider connection.
    delay(attempt) = base * 2**attempt, capped at max_delay.
    """
    base_delay_sec: float = 1.0
    max_delay_sec: float = 30.0
    max_attempts: int = 5
    attempts: int = 0

    def delay_for(self, attempt: int) -> float:
        raw = float(self.base_delay_sec) * (2 ** max(0, int(attempt)))
        return min(float(self.max_delay_sec), raw)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> Optional[float]:
        """Reserve the next attempt and return its delay, or None when out of attempts."""
        if self.exhausted:
            return None
        delay = self.delay_for(self.attempts)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
