from __future__ import annotations

from collections.abc import Callable
import json
import threading
from typing import TextIO

from aam_agent.models import Activity, Issue
from aam_agent.processor import FALLBACK_HANDLER_KEY, ActivityHandler
from aam_agent.resources import ResourceFetcher


ISSUE_DETAIL_KINDS: frozenset[str] = frozenset({"ITEM_CREATED", "ITEM_UPDATED", "STATUS_CHANGE"})


def activity_record(activity: Activity, *, issue: Issue | None = None) -> dict[str, object]:
    record: dict[str, object] = {
        "type": "activity",
        "id": activity.id,
        "kind": activity.kind,
        "issueId": activity.issue_id,
        "timestamp": activity.timestamp,
        "actorType": activity.actor_type,
        "message": activity.message,
        "metadata": activity.metadata,
    }
    if issue is not None:
        record["issue"] = {
            "id": issue.id,
            "status": issue.status,
            "title": issue.title,
            "description": issue.description,
            "type": issue.type,
            "priority": issue.priority,
            "tags": list(issue.tags),
            "images": [
                {"id": image.id, "filename": image.filename, "mimeType": image.mime_type}
                for image in issue.images
            ],
        }
    return record


class JsonLinesRelay:
    """Relays each activity downstream as one JSON object per line.

    Issue-shaped activities are enriched with the current issue detail when a
    fetcher is available; nothing is stored locally.
    """

    def __init__(
        self,
        sink: TextIO,
        *,
        fetcher: ResourceFetcher | None = None,
        detail_kinds: frozenset[str] = ISSUE_DETAIL_KINDS,
    ) -> None:
        self._sink = sink
        self._fetcher = fetcher
        self._detail_kinds = detail_kinds
        self._write_lock = threading.Lock()

    def __call__(self, activity: Activity) -> None:
        issue: Issue | None = None
        if self._fetcher is not None and activity.kind in self._detail_kinds and activity.issue_id:
            issue = self._fetcher.issue(activity.issue_id)
        line = json.dumps(activity_record(activity, issue=issue), sort_keys=True)
        with self._write_lock:
            self._sink.write(f"{line}\n")
            self._sink.flush()


def build_relay_handlers(
    relay: Callable[[Activity], None],
    *,
    extra: dict[str, ActivityHandler] | None = None,
) -> dict[str, ActivityHandler]:
    handlers: dict[str, ActivityHandler] = {FALLBACK_HANDLER_KEY: relay}
    if extra:
        handlers.update(extra)
    return handlers
