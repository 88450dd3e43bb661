"""
Exponential backoff for insert retries.

Delays come from google-api-core's ``exponential_sleep_generator``, the same
jittered exponential schedule ``google.api_core.retry.Retry`` uses: the delay
ceiling starts at ``initial``, grows by ``multiplier`` per retry and is capped
at ``maximum``.

    initial=0.25, multiplier=2: up to 0.25s, 0.5s, 1s, 2s, 4s ...
"""

from dataclasses import dataclass, field
from typing import Callable, Iterator

from google.api_core import retry

SleepGenerator = Callable[[float, float, float], Iterator[float]]


@dataclass
class BackoffState:
    """Attempt counter and delay schedule for one batch insert."""
    attempt: int = 1
    max_attempts: int = 10
    delays: Iterator[float] = field(default_factory=lambda: iter(()), repr=False)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def advance(self) -> float:
        """Move to the next attempt and return the delay to wait before it."""
        self.attempt += 1
        return next(self.delays)


class ExponentialBackoff:
    def __init__(
        self,
        initial_delay: float = 0.25,
        max_delay: float = 32.0,
        multiplier: float = 2.0,
        max_attempts: int = 10,
        sleep_generator: SleepGenerator = retry.exponential_sleep_generator,
    ):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.max_attempts = max_attempts
        self.sleep_generator = sleep_generator

    def new_state(self) -> BackoffState:
        return BackoffState(
            attempt=1,
            max_attempts=self.max_attempts,
            delays=self.sleep_generator(self.initial_delay, self.max_delay, self.multiplier),
        )
