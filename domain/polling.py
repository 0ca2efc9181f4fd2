"""
Domain: client polling policy for the completion-status endpoint.

Bounded exponential backoff; after `max_attempts` the client stops polling
and sends the buyer to support with the payment reference.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List


@dataclass(frozen=True, slots=True)
class PollingPolicy:
    initial_delay_seconds: float = 1.0
    factor: float = 1.5
    max_delay_seconds: float = 8.0
    max_attempts: int = 12

    def __post_init__(self) -> None:
        if self.initial_delay_seconds <= 0:
            raise ValueError("initial_delay_seconds must be > 0")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay before poll number `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        delay = self.initial_delay_seconds * (self.factor ** (attempt - 1))
        return min(delay, self.max_delay_seconds)

    def delays(self) -> List[float]:
        return [self.delay_for(n) for n in range(1, self.max_attempts + 1)]

    def should_escalate(self, attempts_made: int) -> bool:
        return attempts_made >= self.max_attempts


DEFAULT_POLLING_POLICY = PollingPolicy()

__all__ = ["DEFAULT_POLLING_POLICY", "PollingPolicy"]
