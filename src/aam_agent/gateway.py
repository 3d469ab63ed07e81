from __future__ import annotations

from dataclasses import dataclass, field
import logging
from threading import Event
from typing import cast
from urllib.parse import quote

from aam_agent.errors import ValidationError
from aam_agent.models import (
    KNOWN_ACTIVITY_KINDS,
    Activity,
    Cursor,
    Issue,
    IssueImage,
    Page,
    Project,
    PromptContext,
    ResolutionRequest,
)
from aam_agent.observability import log_event
from aam_agent.retry import RetryPolicy
from aam_agent.transport import Expect, Success, Transport


LOGGER = logging.getLogger("aam_agent.gateway")
_API_PREFIX = "/agent/v1"


@dataclass(frozen=True)
class AamGateway:
    """Typed access to the agent API; every call goes through the retry policy."""

    transport: Transport
    retry: RetryPolicy
    write_retry: RetryPolicy | None = None
    stop_event: Event = field(default_factory=Event)

    def get_project(self) -> Project:
        payload = self._get_json("/project", operation="project_identity")
        project_obj = _as_object_dict(payload.get("project")) or payload
        project_id = _as_string(project_obj.get("id")).strip()
        if not project_id:
            raise ValidationError("Unable to read project.id from /agent/v1/project response")
        return Project(id=project_id, name=_as_string(project_obj.get("name")))

    def list_activities(self, *, cursor: Cursor | None, limit: int) -> Page:
        params = {"limit": str(limit)}
        if cursor is not None:
            params.update(cursor.query_params())
        payload = self._get_json("/activities", operation="activity_page", params=params)
        activities = _parse_activity_list(payload.get("activities"), where="activities")
        page_obj = _as_object_dict(payload.get("page")) or {}
        next_cursor_raw = page_obj.get("nextCursor")
        next_cursor = (
            Cursor.from_token(next_cursor_raw)
            if isinstance(next_cursor_raw, str) and next_cursor_raw
            else None
        )
        log_event(
            LOGGER,
            "activity_page_fetched",
            cursor_kind=cursor.kind if cursor else None,
            count=len(activities),
            has_next_cursor=next_cursor is not None,
        )
        return Page(activities=activities, next_cursor=next_cursor)

    def get_issue(self, issue_id: str) -> Issue:
        payload = self._get_json(f"/issues/{_segment(issue_id)}", operation="issue_detail")
        issue_obj = (
            _as_object_dict(payload.get("issue")) or _as_object_dict(payload.get("item")) or payload
        )
        return _parse_issue(issue_obj)

    def list_issue_activities(self, issue_id: str) -> tuple[Activity, ...]:
        payload = self._get_json(
            f"/issues/{_segment(issue_id)}/activities", operation="issue_activities"
        )
        return _parse_activity_list(payload.get("activities"), where="activities")

    def get_issue_prompt(self, issue_id: str) -> PromptContext:
        payload = self._get_json(f"/issues/{_segment(issue_id)}/prompt", operation="issue_prompt")
        prompt_obj = _as_object_dict(payload.get("prompt")) or payload
        text = prompt_obj.get("text")
        if not isinstance(text, str):
            raise ValidationError("Unexpected prompt response: missing text")
        return PromptContext(text=text, yaml=_as_object_dict(prompt_obj.get("yaml")))

    def get_issue_image(self, issue_id: str, image_id: str) -> bytes:
        outcome = self._call(
            "GET",
            f"/issues/{_segment(issue_id)}/images/{_segment(image_id)}",
            operation="issue_image",
            expect="bytes",
        )
        return cast(bytes, outcome.payload)

    def resolve_issue(self, issue_id: str, request: ResolutionRequest) -> dict[str, object]:
        outcome = self._call(
            "POST",
            f"/issues/{_segment(issue_id)}/resolve",
            operation="resolve_issue",
            json_body=request.to_payload(),
            policy=self.write_retry or self.retry,
        )
        return cast(dict[str, object], outcome.payload)

    def _get_json(
        self, path: str, *, operation: str, params: dict[str, str] | None = None
    ) -> dict[str, object]:
        outcome = self._call("GET", path, operation=operation, params=params)
        return cast(dict[str, object], outcome.payload)

    def _call(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, object] | None = None,
        expect: Expect = "json",
        policy: RetryPolicy | None = None,
    ) -> Success:
        full_path = f"{_API_PREFIX}{path}"
        return (policy or self.retry).execute(
            lambda: self.transport.request(
                method, full_path, params=params, json_body=json_body, expect=expect
            ),
            operation=operation,
            stop_event=self.stop_event,
        )


def parse_activity(value: object) -> Activity:
    obj = _as_object_dict(value)
    if obj is None:
        raise ValidationError("Unexpected activity entry: expected object")
    activity_id = _as_string(obj.get("id")).strip()
    if not activity_id:
        raise ValidationError("Unexpected activity entry: missing id")
    issue_id = _as_string(obj.get("issueId") or obj.get("itemId"))
    if not issue_id:
        item_obj = _as_object_dict(obj.get("item"))
        issue_id = _as_string(item_obj.get("id")) if item_obj else ""
    kind = _as_string(obj.get("type") or obj.get("kind")) or "UNKNOWN"
    if kind not in KNOWN_ACTIVITY_KINDS:
        log_event(LOGGER, "activity_kind_unrecognized", activity_id=activity_id, kind=kind)
    return Activity(
        id=activity_id,
        timestamp=_as_string(obj.get("createdAt") or obj.get("timestamp")),
        kind=kind,
        issue_id=issue_id,
        actor_type=_as_string(obj.get("actorType")).upper() or "USER",
        message=_as_string(obj.get("message")),
        metadata=_as_object_dict(obj.get("metadata")),
    )


def _parse_activity_list(value: object, *, where: str) -> tuple[Activity, ...]:
    if not isinstance(value, list):
        raise ValidationError(f"Unexpected activity response: expected list at {where}")
    return tuple(parse_activity(entry) for entry in value)


def _parse_issue(obj: dict[str, object]) -> Issue:
    issue_id = _as_string(obj.get("id")).strip()
    if not issue_id:
        raise ValidationError("Unexpected issue response: missing id")
    tags_raw = obj.get("tags")
    tags = tuple(str(tag) for tag in tags_raw) if isinstance(tags_raw, list) else ()
    images: list[IssueImage] = []
    images_raw = obj.get("images")
    if isinstance(images_raw, list):
        for entry in images_raw:
            image_obj = _as_object_dict(entry)
            if image_obj is None:
                continue
            size = image_obj.get("sizeBytes")
            images.append(
                IssueImage(
                    id=_as_string(image_obj.get("id")),
                    filename=_as_string(image_obj.get("filename")),
                    mime_type=_as_string(image_obj.get("mimeType")),
                    size_bytes=size if isinstance(size, int) and not isinstance(size, bool) else 0,
                )
            )
    return Issue(
        id=issue_id,
        status=_as_string(obj.get("status")),
        title=_as_string(obj.get("title")),
        description=_as_string(obj.get("description")),
        type=_as_string(obj.get("type")),
        priority=_as_string(obj.get("priority")),
        tags=tags,
        images=tuple(images),
        raw=dict(obj),
    )


def _segment(value: str) -> str:
    if not value or not value.strip():
        raise ValidationError("Resource identifier must be non-empty")
    return quote(value, safe="")


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)
