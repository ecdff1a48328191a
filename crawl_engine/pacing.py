"""
Human-pacing delays.

Delays are drawn uniformly from a (min, max) range and slept through an
injectable sleep function, so tests can zero them out or record them.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class DelayPolicy:
    min_s: float = 0.0
    max_s: float = 0.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.min_s < 0 or self.max_s < 0 or self.min_s > self.max_s:
            raise ValueError(f"Invalid delay range: {self.min_s}..{self.max_s}")

    def draw(self) -> float:
        if self.max_s <= 0:
            return 0.0
        return self.rng.uniform(self.min_s, self.max_s)

    def pause(self) -> float:
        """Sleep for a randomized delay and return it"""
        delay = self.draw()
        if delay > 0:
            self.sleep(delay)
        return delay


@dataclass
class Pacing:
    """The delay policies used across one crawl"""

    between_tasks: DelayPolicy = field(default_factory=lambda: DelayPolicy(5.0, 10.0))
    keystroke_ms: DelayPolicy = field(default_factory=lambda: DelayPolicy(100.0, 200.0))
    between_fields: DelayPolicy = field(default_factory=lambda: DelayPolicy(0.5, 1.5))
    settle: DelayPolicy = field(default_factory=lambda: DelayPolicy(2.0, 4.0))
    warmup_dwell: DelayPolicy = field(default_factory=lambda: DelayPolicy(3.0, 5.0))

    @classmethod
    def from_config(cls, config: Any, sleep: Callable[[float], None] = time.sleep) -> "Pacing":
        def _policy(name: str, low: float, high: float) -> DelayPolicy:
            min_s, max_s = config.get_pacing_range(name, low, high)
            return DelayPolicy(min_s, max_s, sleep=sleep)

        return cls(
            between_tasks=_policy("between_tasks", 5.0, 10.0),
            keystroke_ms=_policy("keystroke_ms", 100.0, 200.0),
            between_fields=_policy("between_fields", 0.5, 1.5),
            settle=_policy("settle", 2.0, 4.0),
            warmup_dwell=_policy("warmup_dwell", 3.0, 5.0),
        )

    @classmethod
    def disabled(cls) -> "Pacing":
        """No delays at all (deterministic runs)"""
        return cls(
            between_tasks=DelayPolicy(),
            keystroke_ms=DelayPolicy(),
            between_fields=DelayPolicy(),
            settle=DelayPolicy(),
            warmup_dwell=DelayPolicy(),
        )
