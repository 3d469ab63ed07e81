from __future__ import annotations

from datetime import datetime, timezone
import logging

from aam_agent.models import Cursor
from aam_agent.observability import log_event
from aam_agent.state import StateStore


LOGGER = logging.getLogger("aam_agent.cursor_store")


class CursorStore:
    """Durable stream position.

    `save` returns only after the sqlite commit, so a crash between processing a
    page and saving its cursor re-delivers that page instead of skipping it.
    """

    def __init__(self, state: StateStore, *, fallback_since: str | None = None) -> None:
        self._state = state
        self._fallback_since = fallback_since

    def load(self) -> Cursor | None:
        record = self._state.load_cursor()
        return record.cursor if record is not None else None

    def save(self, cursor: Cursor, *, last_activity_at: str | None = None) -> None:
        self._state.save_cursor(cursor, last_activity_at=last_activity_at)
        log_event(
            LOGGER,
            "cursor_saved",
            cursor_kind=cursor.kind,
            last_activity_at=last_activity_at,
        )

    def reset_to_fallback(self, *, now: datetime | None = None) -> Cursor:
        """Replace a stale token with a `since` cursor.

        Preference order: configured fallback, last successfully processed
        activity instant, then the current time.
        """
        record = self._state.load_cursor()
        since = self._fallback_since
        source = "configured"
        if since is None and record is not None and record.last_activity_at:
            since = record.last_activity_at
            source = "last_known_good"
        if since is None:
            since = _iso8601(now or datetime.now(timezone.utc))
            source = "now"
        cursor = Cursor.from_since(since)
        self._state.save_cursor(cursor)
        log_event(
            LOGGER,
            "cursor_reset_to_fallback",
            level=logging.WARNING,
            previous_kind=record.cursor.kind if record else None,
            since=since,
            source=source,
        )
        return cursor


def _iso8601(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
