from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from textual.widgets import DataTable

from aam_agent import observability_tui as tui
from aam_agent.models import Activity, Cursor, Project
from aam_agent.state import OverviewStats, StateStore


def _seed(db_path: Path) -> None:
    state = StateStore(db_path)
    state.bind_project(Project(id="p1", name="Checkout"))
    state.save_cursor(Cursor.from_token("c1"))
    state.record_processed(
        Activity(id="a1", timestamp="t1", kind="ITEM_CREATED", issue_id="i1"), outcome="handled"
    )
    state.record_processed(
        Activity(id="a2", timestamp="t2", kind="STATUS_CHANGE", issue_id="i1"),
        outcome="failed",
        error="relay sink closed",
    )
    state.record_resolution(
        issue_id="i1", status="resolved", resolution_note="fixed", outcome="confirmed"
    )


def test_observability_tui_helper_functions() -> None:
    summary = tui._summary_text(
        OverviewStats(
            project_id="p1",
            project_name="Checkout",
            cursor_kind="token",
            cursor_updated_at="2024-05-01T00:00:00.000Z",
            handled=3,
            failed=1,
            ignored=2,
            resolutions=4,
        )
    )
    assert "project=Checkout (p1)" in summary
    assert "cursor=token@2024-05-01T00:00:00.000Z" in summary
    assert "handled=3" in summary
    assert "resolutions=4" in summary

    empty = tui._summary_text(
        OverviewStats(
            project_id=None,
            project_name=None,
            cursor_kind=None,
            cursor_updated_at=None,
            handled=0,
            failed=0,
            ignored=0,
            resolutions=0,
        )
    )
    assert "project=<unbound>" in empty
    assert "cursor=<none>" in empty

    assert tui._truncate("short", 10) == "short"
    assert tui._truncate("a  b\nc", 10) == "a b c"
    assert tui._truncate("x" * 20, 10) == "xxxxxxx..."


def test_run_observability_tui_runs_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    called: dict[str, object] = {}

    class FakeApp:
        def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
            called["kwargs"] = kwargs

        def run(self) -> None:
            called["ran"] = True

    monkeypatch.setattr(tui, "ObservabilityApp", FakeApp)
    tui.run_observability_tui(db_path=tmp_path / "state.db", refresh_seconds=0)

    assert called["ran"] is True
    assert called["kwargs"] == {"db_path": tmp_path / "state.db", "refresh_seconds": 1}


def test_observability_app_refresh_and_detail(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    _seed(db_path)
    app = tui.ObservabilityApp(db_path=db_path, refresh_seconds=60)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            activities = app.query_one("#activities-table", DataTable)
            resolutions = app.query_one("#resolutions-table", DataTable)
            assert activities.row_count == 2
            assert resolutions.row_count == 1

            StateStore(db_path).record_processed(
                Activity(id="a3", timestamp="t3", kind="ITEM_UPDATED", issue_id="i2"),
                outcome="ignored",
            )
            app.action_refresh()
            assert activities.row_count == 3

            activities.focus()
            activities.move_cursor(row=0, column=0, animate=False)
            app.action_show_detail()
            await pilot.pause()
            assert isinstance(app.screen, tui._DetailModal)
            await pilot.press("escape")
            await pilot.pause()
            assert not isinstance(app.screen, tui._DetailModal)

            resolutions.focus()
            app.action_show_detail()
            await pilot.pause()
            assert isinstance(app.screen, tui._DetailModal)
            await pilot.press("q")
            await pilot.pause()

            app.action_cycle_focus()

    asyncio.run(run_app())


def test_detail_text_helpers(tmp_path: Path) -> None:
    db_path = tmp_path / "state.db"
    _seed(db_path)
    state = StateStore(db_path)

    failed = next(row for row in state.list_recent_activities() if row.outcome == "failed")
    detail = tui._activity_detail(failed)
    assert "kind: STATUS_CHANGE" in detail
    assert "error: relay sink closed" in detail

    resolution = state.list_resolutions()[0]
    text = tui._resolution_detail(resolution)
    assert "status: resolved" in text
    assert "detail: <none>" in text
    assert text.endswith("fixed")
