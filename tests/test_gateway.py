from __future__ import annotations

from collections.abc import Callable
import json
import logging

import httpx
import pytest

from aam_agent.errors import InvalidCursorError, TransientError, ValidationError
from aam_agent.gateway import AamGateway, parse_activity
from aam_agent.models import Activity, Cursor, ResolutionRequest
from aam_agent.retry import RetryPolicy
from aam_agent.transport import Transport


Handler = Callable[[httpx.Request], httpx.Response]


def _gateway(handler: Handler, *, max_attempts: int = 3) -> AamGateway:
    client = httpx.Client(
        base_url="https://aam.example.com", transport=httpx.MockTransport(handler)
    )
    transport = Transport(
        base_url="https://aam.example.com",
        api_key="aam_pk_k1_secret",
        timeout_seconds=5.0,
        client=client,
    )
    return AamGateway(
        transport=transport,
        retry=RetryPolicy(
            max_attempts=max_attempts, initial_delay_seconds=0.0, max_delay_seconds=0.0
        ),
    )


def test_get_project_reads_nested_and_bare_shapes() -> None:
    def nested(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/agent/v1/project"
        return httpx.Response(200, json={"project": {"id": "p1", "name": "Checkout"}})

    project = _gateway(nested).get_project()
    assert project.id == "p1"
    assert project.name == "Checkout"

    bare = _gateway(lambda request: httpx.Response(200, json={"id": "p2", "name": "Web"}))
    assert bare.get_project().id == "p2"


def test_get_project_without_id_is_validation_error() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json={"project": {"name": "x"}}))
    with pytest.raises(ValidationError, match="project.id"):
        gateway.get_project()


def test_list_activities_passes_cursor_and_parses_page() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "activities": [
                    {
                        "id": "a1",
                        "itemId": "i1",
                        "type": "ITEM_CREATED",
                        "actorType": "user",
                        "message": "created",
                        "metadata": {"source": "widget"},
                        "createdAt": "2024-05-01T10:00:00.000Z",
                    }
                ],
                "page": {"limit": 50, "nextCursor": "c2"},
            },
        )

    page = _gateway(handler).list_activities(cursor=Cursor.from_token("c1"), limit=50)

    assert requests[0].url.path == "/agent/v1/activities"
    assert requests[0].url.params["cursor"] == "c1"
    assert requests[0].url.params["limit"] == "50"
    assert page.next_cursor == Cursor.from_token("c2")
    assert page.activities == (
        Activity(
            id="a1",
            timestamp="2024-05-01T10:00:00.000Z",
            kind="ITEM_CREATED",
            issue_id="i1",
            actor_type="USER",
            message="created",
            metadata={"source": "widget"},
        ),
    )


def test_list_activities_with_since_cursor_and_end_of_stream() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"activities": [], "page": {"nextCursor": None}})

    page = _gateway(handler).list_activities(
        cursor=Cursor.from_since("2024-01-01T00:00:00Z"), limit=10
    )

    assert requests[0].url.params["since"] == "2024-01-01T00:00:00Z"
    assert "cursor" not in requests[0].url.params
    assert page.activities == ()
    assert page.next_cursor is None


def test_list_activities_without_cursor_sends_only_limit() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"activities": []})

    _gateway(handler).list_activities(cursor=None, limit=1)
    assert dict(requests[0].url.params) == {"limit": "1"}


def test_list_activities_rejects_non_list_payload() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json={"activities": {"id": "a"}}))
    with pytest.raises(ValidationError, match="expected list"):
        gateway.list_activities(cursor=None, limit=5)


def test_retryable_failures_then_success() -> None:
    statuses = iter([503, 503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        if status != 200:
            return httpx.Response(status)
        return httpx.Response(200, json={"activities": [], "page": {}})

    page = _gateway(handler, max_attempts=4).list_activities(cursor=None, limit=5)
    assert page.activities == ()


def test_retry_exhaustion_is_transient_error() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(503)

    with pytest.raises(TransientError):
        _gateway(handler, max_attempts=2).list_activities(cursor=None, limit=5)
    assert len(calls) == 2


def test_invalid_cursor_response_raises_invalid_cursor_error() -> None:
    gateway = _gateway(
        lambda request: httpx.Response(400, json={"code": "invalid_cursor", "message": "expired"})
    )
    with pytest.raises(InvalidCursorError):
        gateway.list_activities(cursor=Cursor.from_token("stale"), limit=5)


def test_get_issue_parses_detail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.raw_path == b"/agent/v1/issues/i%201"
        return httpx.Response(
            200,
            json={
                "issue": {
                    "id": "i 1",
                    "status": "open",
                    "title": "Broken button",
                    "description": "Nothing happens",
                    "type": "bug",
                    "priority": "high",
                    "tags": ["ui", "checkout"],
                    "images": [
                        {
                            "id": "img1",
                            "filename": "shot.png",
                            "mimeType": "image/png",
                            "sizeBytes": 1024,
                        },
                        "skip-me",
                    ],
                }
            },
        )

    issue = _gateway(handler).get_issue("i 1")
    assert issue.id == "i 1"
    assert issue.title == "Broken button"
    assert issue.tags == ("ui", "checkout")
    assert len(issue.images) == 1
    assert issue.images[0].mime_type == "image/png"
    assert issue.images[0].size_bytes == 1024
    assert issue.raw["priority"] == "high"


def test_issue_activities_prompt_and_image() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/activities"):
            return httpx.Response(
                200,
                json={"activities": [{"id": "a9", "item": {"id": "i1"}, "type": "STATUS_CHANGE"}]},
            )
        if path.endswith("/prompt"):
            return httpx.Response(
                200, json={"prompt": {"text": "Fix it", "yaml": {"title": "Broken"}}}
            )
        if path.endswith("/images/img1"):
            return httpx.Response(200, content=b"PNGDATA")
        return httpx.Response(404)

    gateway = _gateway(handler)
    activities = gateway.list_issue_activities("i1")
    assert activities[0].issue_id == "i1"
    assert activities[0].kind == "STATUS_CHANGE"

    prompt = gateway.get_issue_prompt("i1")
    assert prompt.text == "Fix it"
    assert prompt.yaml == {"title": "Broken"}

    assert gateway.get_issue_image("i1", "img1") == b"PNGDATA"


def test_prompt_without_text_is_validation_error() -> None:
    gateway = _gateway(lambda request: httpx.Response(200, json={"prompt": {"yaml": {}}}))
    with pytest.raises(ValidationError, match="missing text"):
        gateway.get_issue_prompt("i1")


def test_empty_identifier_is_rejected_without_request() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(200, json={})

    with pytest.raises(ValidationError, match="non-empty"):
        _gateway(handler).get_issue("  ")
    assert calls == []


def test_resolve_issue_posts_payload() -> None:
    bodies: list[object] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/agent/v1/issues/i1/resolve"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"issue": {"id": "i1", "status": "resolved"}})

    response = _gateway(handler).resolve_issue(
        "i1", ResolutionRequest(status="resolved", resolution_note=" done ")
    )
    assert bodies == [{"status": "resolved", "resolutionNote": "done"}]
    assert response == {"issue": {"id": "i1", "status": "resolved"}}


def test_parse_activity_defaults_and_errors() -> None:
    activity = parse_activity({"id": "a1", "issueId": "i1", "timestamp": "t"})
    assert activity.kind == "UNKNOWN"
    assert activity.actor_type == "USER"
    assert activity.metadata is None
    assert activity.timestamp == "t"

    with pytest.raises(ValidationError, match="missing id"):
        parse_activity({"issueId": "i1"})
    with pytest.raises(ValidationError, match="expected object"):
        parse_activity(["a1"])


def test_unrecognized_activity_kind_is_logged_and_kept(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="aam_agent.gateway"):
        activity = parse_activity({"id": "a1", "issueId": "i1", "type": "COMMENT_PINNED"})
    assert activity.kind == "COMMENT_PINNED"
    assert any(
        "event=activity_kind_unrecognized" in record.getMessage() for record in caplog.records
    )
