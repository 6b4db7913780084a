"""Retry policies and backoff strategies for step execution."""

import random
from abc import ABC, abstractmethod
from enum import Enum

from pydantic import BaseModel, Field


class BackoffKind(str, Enum):
    """Backoff strategy types."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class BackoffStrategy(ABC):
    """Abstract base class for backoff strategies."""

    def __init__(self, max_delay: float = 300.0):
        self.max_delay = max_delay

    @abstractmethod
    def calculate_delay(self, attempt: int, base_delay: float) -> float:
        """Calculate the delay after failed attempt number ``attempt``."""
        pass


class FixedBackoffStrategy(BackoffStrategy):
    """Constant delay between attempts."""

    def calculate_delay(self, attempt: int, base_delay: float) -> float:
        return min(base_delay, self.max_delay)


class LinearBackoffStrategy(BackoffStrategy):
    """Delay grows linearly with the attempt number."""

    def calculate_delay(self, attempt: int, base_delay: float) -> float:
        return min(base_delay * attempt, self.max_delay)


class ExponentialBackoffStrategy(BackoffStrategy):
    """Exponential backoff with optional jitter."""

    def __init__(self, max_delay: float = 300.0, jitter_ratio: float = 0.1):
        super().__init__(max_delay=max_delay)
        self.jitter_ratio = jitter_ratio

    def calculate_delay(self, attempt: int, base_delay: float) -> float:
        delay = base_delay * (2 ** (attempt - 1))

        # Jitter keeps concurrent retries from firing in lockstep
        if self.jitter_ratio:
            jitter_range = delay * self.jitter_ratio
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, min(delay, self.max_delay))


class RetryPolicy(BaseModel):
    """Retry policy applied to every computed step of a workflow."""

    max_attempts: int = Field(
        default=3, ge=1, le=20, description="Maximum attempts per step, first run included"
    )
    backoff: BackoffKind = Field(
        default=BackoffKind.EXPONENTIAL, description="Backoff strategy"
    )
    base_delay_seconds: float = Field(
        default=1.0, ge=0.0, description="Base delay between attempts"
    )
    max_delay_seconds: float = Field(
        default=300.0, ge=0.0, description="Upper bound for any single delay"
    )
    jitter_ratio: float = Field(
        default=0.1,
        ge=0.0,
        le=0.5,
        description="Relative jitter applied to exponential delays",
    )

    def create_backoff_strategy(self) -> BackoffStrategy:
        """Create the backoff strategy for this policy."""
        if self.backoff == BackoffKind.FIXED:
            return FixedBackoffStrategy(max_delay=self.max_delay_seconds)
        if self.backoff == BackoffKind.LINEAR:
            return LinearBackoffStrategy(max_delay=self.max_delay_seconds)
        return ExponentialBackoffStrategy(
            max_delay=self.max_delay_seconds, jitter_ratio=self.jitter_ratio
        )

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` failed."""
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt ``attempt``."""
        return self.create_backoff_strategy().calculate_delay(
            attempt, self.base_delay_seconds
        )
