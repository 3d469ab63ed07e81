from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
import logging
import threading

from aam_agent.config import HandlerErrorPolicy
from aam_agent.errors import HandlerError, StopRequested
from aam_agent.models import Activity, Page
from aam_agent.observability import log_event
from aam_agent.state import ProcessedOutcome, StateStore


LOGGER = logging.getLogger("aam_agent.processor")
FALLBACK_HANDLER_KEY = "*"

ActivityHandler = Callable[[Activity], None]


class SeenSet:
    """Bounded set of activity ids; the oldest ids are evicted past `capacity`."""

    def __init__(self, capacity: int, initial: Iterable[str] = ()) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()
        for activity_id in initial:
            self.add(activity_id)

    def __contains__(self, activity_id: object) -> bool:
        return activity_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, activity_id: str) -> None:
        self._ids[activity_id] = None
        self._ids.move_to_end(activity_id)
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)


@dataclass(frozen=True)
class PageReport:
    handled: int
    skipped: int
    failed: int
    aborted: bool
    last_processed: Activity | None


class ActivityProcessor:
    def __init__(
        self,
        handlers: Mapping[str, ActivityHandler],
        *,
        seen: SeenSet,
        state: StateStore | None = None,
        on_handler_error: HandlerErrorPolicy = "continue",
        skip_agent_authored: bool = False,
    ) -> None:
        self._handlers = dict(handlers)
        self._seen = seen
        self._state = state
        self._on_handler_error = on_handler_error
        self._skip_agent_authored = skip_agent_authored
        self._lock = threading.Lock()

    @property
    def seen(self) -> SeenSet:
        return self._seen

    def process(self, activity: Activity) -> bool:
        """Dispatch `activity` unless its id was already seen.

        Returns False for duplicates. A handler failure raises HandlerError
        after the outcome has been recorded according to the error policy.
        StopRequested from a handler propagates and leaves the activity unseen.
        """
        with self._lock:
            if activity.id in self._seen:
                log_event(LOGGER, "activity_duplicate_skipped", activity_id=activity.id)
                return False

            if self._skip_agent_authored and activity.actor_type == "AGENT":
                self._mark(activity, outcome="ignored")
                return True

            handler = self._handlers.get(activity.kind) or self._handlers.get(
                FALLBACK_HANDLER_KEY
            )
            if handler is None:
                self._mark(activity, outcome="ignored")
                return True

            try:
                handler(activity)
            except StopRequested:
                log_event(
                    LOGGER,
                    "activity_interrupted",
                    level=logging.WARNING,
                    activity_id=activity.id,
                    kind=activity.kind,
                )
                raise
            except Exception as exc:  # noqa: BLE001
                error = HandlerError(activity_id=activity.id, kind=activity.kind, cause=exc)
                if self._on_handler_error == "continue":
                    self._mark(activity, outcome="failed", error=str(exc))
                raise error from exc

            self._mark(activity, outcome="handled")
            return True

    def process_page(self, page: Page) -> PageReport:
        handled = 0
        skipped = 0
        failed = 0
        last_processed: Activity | None = None
        for activity in page.activities:
            try:
                if self.process(activity):
                    handled += 1
                else:
                    skipped += 1
            except HandlerError as exc:
                failed += 1
                log_event(
                    LOGGER,
                    "activity_handler_failed",
                    level=logging.ERROR,
                    activity_id=activity.id,
                    kind=activity.kind,
                    issue_id=activity.issue_id,
                    policy=self._on_handler_error,
                    error_type=type(exc.cause).__name__,
                    error=str(exc.cause),
                )
                if self._on_handler_error == "abort":
                    return PageReport(
                        handled=handled,
                        skipped=skipped,
                        failed=failed,
                        aborted=True,
                        last_processed=last_processed,
                    )
            last_processed = activity
        return PageReport(
            handled=handled,
            skipped=skipped,
            failed=failed,
            aborted=False,
            last_processed=last_processed,
        )

    def _mark(
        self, activity: Activity, *, outcome: ProcessedOutcome, error: str | None = None
    ) -> None:
        self._seen.add(activity.id)
        if self._state is not None:
            self._state.record_processed(activity, outcome=outcome, error=error)
        log_event(
            LOGGER,
            "activity_processed",
            activity_id=activity.id,
            kind=activity.kind,
            issue_id=activity.issue_id,
            outcome=outcome,
        )
