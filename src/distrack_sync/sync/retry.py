"""Backoff delays for link polling."""

import random
from dataclasses import dataclass

__all__ = ["BackoffConfig"]


@dataclass
class BackoffConfig:
    """Exponential backoff with a ceiling and optional jitter."""

    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True  # spread retries by up to a quarter either way

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt` (0 for the first retry).

        The delay grows as base_delay * exponential_base ** attempt and
        stops growing at max_delay; jitter is applied after the cap.
        """
        delay = min(self.base_delay * self.exponential_base ** attempt, self.max_delay)
        if self.jitter:
            spread = delay / 4
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)
