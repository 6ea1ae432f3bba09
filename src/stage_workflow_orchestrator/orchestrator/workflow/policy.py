from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from stage_workflow_orchestrator.orchestrator.errors import TransientInfraError


def is_transient(exc: BaseException) -> bool:
    """Default retryable-error predicate.

    Infrastructure hiccups are retried; validation and state errors are not.
    """

    return isinstance(exc, (TransientInfraError, ConnectionError, TimeoutError))


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for activities.

    Attempt ``n`` (1-based) that fails with a retryable error waits
    ``min(initial_interval * backoff_coefficient ** (n - 1), maximum_interval)``
    seconds before attempt ``n + 1``.
    """

    max_attempts: int = 3
    initial_interval: float = 10.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 60.0
    retryable: Callable[[BaseException], bool] = field(default=is_transient)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_interval < 0 or self.maximum_interval < 0:
            raise ValueError("intervals must not be negative")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")

    def backoff(self, attempt: int) -> float:
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)

    def is_retryable(self, exc: BaseException) -> bool:
        return self.retryable(exc)

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and self.is_retryable(exc)


NO_RETRY = RetryPolicy(max_attempts=1, initial_interval=0.0, maximum_interval=0.0)
