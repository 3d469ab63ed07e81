from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import random
from threading import Event

from aam_agent.config import RetryConfig
from aam_agent.errors import InvalidCursorError, StopRequested, TransientError, ValidationError
from aam_agent.observability import log_event
from aam_agent.transport import Fatal, Retryable, Success, TransportOutcome


LOGGER = logging.getLogger("aam_agent.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter, applied to retryable outcomes only.

    Fatal outcomes are surfaced after exactly one attempt; 4xx responses are
    never retried because write-back calls are not idempotent.
    """

    max_attempts: int = 4
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_min: float = 0.7
    jitter_max: float = 1.3

    @classmethod
    def from_config(cls, config: RetryConfig, *, for_writes: bool = False) -> RetryPolicy:
        max_attempts = config.max_attempts
        if for_writes and config.write_max_attempts is not None:
            max_attempts = config.write_max_attempts
        return cls(
            max_attempts=max_attempts,
            initial_delay_seconds=config.initial_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
        )

    def backoff_delay(self, attempt: int) -> float:
        base = min(self.initial_delay_seconds * (2**attempt), self.max_delay_seconds)
        return base * random.uniform(self.jitter_min, self.jitter_max)

    def execute(
        self,
        call: Callable[[], TransportOutcome],
        *,
        operation: str,
        stop_event: Event | None = None,
    ) -> Success:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        last: Retryable | None = None
        for attempt in range(self.max_attempts):
            if stop_event is not None and stop_event.is_set():
                raise StopRequested(f"Stop requested before {operation}", attempts=attempt)
            outcome = call()
            if isinstance(outcome, Success):
                if attempt > 0:
                    log_event(LOGGER, "retry_recovered", operation=operation, attempts=attempt + 1)
                return outcome
            if isinstance(outcome, Fatal):
                raise _fatal_error(outcome, operation=operation)

            last = outcome
            if attempt + 1 >= self.max_attempts:
                break
            delay = self.backoff_delay(attempt)
            log_event(
                LOGGER,
                "retry_scheduled",
                operation=operation,
                attempt=attempt + 1,
                max_attempts=self.max_attempts,
                delay_seconds=round(delay, 3),
                reason=outcome.reason,
            )
            if _interruptible_wait(delay, stop_event):
                raise StopRequested(
                    f"Stop requested while backing off {operation}", attempts=attempt + 1
                )

        assert last is not None
        log_event(
            LOGGER,
            "retry_exhausted",
            level=logging.WARNING,
            operation=operation,
            attempts=self.max_attempts,
            reason=last.reason,
            status=last.status,
        )
        raise TransientError(
            f"{operation} failed after {self.max_attempts} attempt(s): {last.reason}",
            attempts=self.max_attempts,
            status=last.status,
        )


def _fatal_error(outcome: Fatal, *, operation: str) -> ValidationError:
    detail = f": {outcome.message}" if outcome.message else ""
    status = f" (HTTP {outcome.status})" if outcome.status is not None else ""
    message = f"{operation} rejected{status}: {outcome.reason}{detail}"
    if outcome.invalid_cursor:
        return InvalidCursorError(message, status=outcome.status)
    return ValidationError(message, status=outcome.status)


def _interruptible_wait(delay: float, stop_event: Event | None) -> bool:
    """Wait up to `delay` seconds; return True if the stop event fired."""
    if stop_event is None:
        stop_event = Event()
    if delay <= 0:
        return stop_event.is_set()
    return stop_event.wait(delay)
