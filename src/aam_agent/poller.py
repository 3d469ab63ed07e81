from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from threading import Event

from aam_agent.cursor_store import CursorStore
from aam_agent.errors import InvalidCursorError, StopRequested, TransientError
from aam_agent.gateway import AamGateway
from aam_agent.guard import guard_project_scope
from aam_agent.models import Cursor, Page, Project
from aam_agent.observability import log_event
from aam_agent.processor import ActivityProcessor, PageReport
from aam_agent.state import StateStore


LOGGER = logging.getLogger("aam_agent.poller")


class PollerState(Enum):
    INIT = "init"
    GUARDED = "guarded"
    POLLING = "polling"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class PollingContext:
    """Everything the polling loop reads or mutates, owned by one poller."""

    gateway: AamGateway
    cursor_store: CursorStore
    processor: ActivityProcessor
    api_key: str
    state: StateStore | None = None
    expected_project_id: str | None = None
    strict_key_format: bool = False
    page_limit: int = 50
    poll_interval_seconds: float = 30.0
    max_pages_per_cycle: int = 20
    stop_event: Event = field(default_factory=Event)
    project: Project | None = None
    poller_state: PollerState = PollerState.INIT


@dataclass(frozen=True)
class CycleReport:
    pages: int
    handled: int
    skipped: int
    failed: int
    aborted: bool
    cursor: Cursor | None


class ActivityPoller:
    def __init__(self, context: PollingContext) -> None:
        self.context = context

    @property
    def state(self) -> PollerState:
        return self.context.poller_state

    def guard(self) -> Project:
        ctx = self.context
        if ctx.project is not None:
            return ctx.project
        project = guard_project_scope(
            ctx.gateway,
            api_key=ctx.api_key,
            expected_project_id=ctx.expected_project_id,
            strict_key_format=ctx.strict_key_format,
        )
        if ctx.state is not None:
            ctx.state.bind_project(project)
        ctx.project = project
        ctx.poller_state = PollerState.GUARDED
        return project

    def run(self, *, once: bool = False) -> None:
        """Guard, then poll until the stop event fires (or a single cycle with `once`).

        Transient failures back off for one poll interval. Validation and auth
        failures propagate and end the run.
        """
        ctx = self.context
        self.guard()
        log_event(
            LOGGER,
            "poller_started",
            project_id=ctx.project.id if ctx.project else None,
            poll_interval_seconds=ctx.poll_interval_seconds,
            page_limit=ctx.page_limit,
            once=once,
        )
        try:
            while not ctx.stop_event.is_set():
                try:
                    self.poll_once()
                except TransientError as exc:
                    if once:
                        raise
                    ctx.poller_state = PollerState.BACKOFF
                    log_event(
                        LOGGER,
                        "poll_cycle_backoff",
                        level=logging.WARNING,
                        error=str(exc),
                        sleep_seconds=ctx.poll_interval_seconds,
                    )
                if once:
                    return
                if ctx.stop_event.wait(ctx.poll_interval_seconds):
                    return
        except StopRequested:
            return
        finally:
            ctx.poller_state = PollerState.STOPPED
            log_event(LOGGER, "poller_stopped")

    def poll_once(self) -> CycleReport:
        """Fetch and process pages until the stream end, an abort, or the page budget.

        StopRequested propagates without checkpointing the page in progress.
        """
        ctx = self.context
        if ctx.project is None:
            raise RuntimeError("poll_once called before the project guard passed")
        ctx.poller_state = PollerState.POLLING

        pages = handled = skipped = failed = 0
        aborted = False
        cursor = ctx.cursor_store.load()
        while pages < ctx.max_pages_per_cycle and not ctx.stop_event.is_set():
            page, cursor = self._fetch_page(cursor)
            pages += 1
            report = ctx.processor.process_page(page)
            handled += report.handled
            skipped += report.skipped
            failed += report.failed
            if report.aborted:
                aborted = True
                break
            cursor = self._checkpoint(cursor, page, report)
            if page.next_cursor is None or not page.activities:
                break

        log_event(
            LOGGER,
            "poll_cycle_completed",
            pages=pages,
            handled=handled,
            skipped=skipped,
            failed=failed,
            aborted=aborted,
            cursor_kind=cursor.kind if cursor else None,
        )
        return CycleReport(
            pages=pages,
            handled=handled,
            skipped=skipped,
            failed=failed,
            aborted=aborted,
            cursor=cursor,
        )

    def _fetch_page(self, cursor: Cursor | None) -> tuple[Page, Cursor | None]:
        ctx = self.context
        try:
            return ctx.gateway.list_activities(cursor=cursor, limit=ctx.page_limit), cursor
        except InvalidCursorError:
            if cursor is None:
                raise
            fallback = ctx.cursor_store.reset_to_fallback()
            # A second invalid-cursor response propagates as fatal.
            return ctx.gateway.list_activities(cursor=fallback, limit=ctx.page_limit), fallback

    def _checkpoint(self, cursor: Cursor | None, page: Page, report: PageReport) -> Cursor | None:
        last = report.last_processed
        last_activity_at = last.timestamp if last is not None and last.timestamp else None
        if page.next_cursor is not None:
            next_cursor: Cursor | None = page.next_cursor
        elif last_activity_at is not None:
            next_cursor = Cursor.from_since(last_activity_at)
        else:
            next_cursor = None

        if next_cursor is None or next_cursor == cursor:
            return cursor
        self.context.cursor_store.save(next_cursor, last_activity_at=last_activity_at)
        return next_cursor
