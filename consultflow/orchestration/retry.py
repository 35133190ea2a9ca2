from __future__ import annotations

from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..core.config import ExecutionSettings
from ..core.errors import ConsultationError


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int
    base_backoff_seconds: float
    max_backoff_seconds: float

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_attempts,
            base_backoff_seconds=settings.base_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    def retrying(self, budget: "RetryBudget") -> AsyncRetrying:
        """Tenacity controller bounded by both this policy and the remaining item budget."""
        attempts = max(1, min(self.max_attempts, budget.remaining))
        return AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(multiplier=self.base_backoff_seconds, max=self.max_backoff_seconds),
            retry=retry_if_exception_type(ConsultationError),
            reraise=True,
        )


@dataclass(slots=True)
class RetryBudget:
    """Total consultant invocations allowed for one work item across tiers and alternatives."""

    limit: int
    used: int = 0

    @classmethod
    def from_settings(cls, settings: ExecutionSettings) -> "RetryBudget":
        return cls(limit=settings.max_total_attempts)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def consume(self) -> None:
        if self.exhausted:
            raise ConsultationError(
                f"Retry budget of {self.limit} consultant invocations exhausted",
                details={"limit": self.limit},
            )
        self.used += 1


__all__ = ["RetryPolicy", "RetryBudget"]
