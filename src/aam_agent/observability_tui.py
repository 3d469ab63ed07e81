from __future__ import annotations

from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Static

from aam_agent.state import OverviewStats, ProcessedActivityRow, ResolutionRow, StateStore


_ROW_LIMIT = 200
_ERROR_PREVIEW_CHARS = 48


class _DetailModal(ModalScreen[None]):
    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("q", "close", "Close"),
    ]
    CSS = """
    #detail-dialog {
        width: 80%;
        height: 60%;
        border: round $accent;
        background: $surface;
        padding: 1 2;
    }
    #detail-title {
        text-style: bold;
        margin-bottom: 1;
    }
    """

    def __init__(self, *, title: str, body: str) -> None:
        super().__init__()
        self._title = title
        self._body = body

    def compose(self) -> ComposeResult:
        with Vertical(id="detail-dialog"):
            yield Static(self._title, id="detail-title")
            with VerticalScroll():
                yield Static(self._body, id="detail-body")
            yield Static("Press Esc or q to close.")

    def action_close(self) -> None:
        self.dismiss(None)


class ObservabilityApp(App[None]):
    """Read-only view of the agent state DB: cursor, processed activities, resolutions."""

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("tab", "cycle_focus", "Focus"),
        Binding("enter", "show_detail", "Details"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(self, *, db_path: Path, refresh_seconds: int = 2) -> None:
        super().__init__()
        self._db_path = db_path
        self._refresh_seconds = refresh_seconds
        self._activity_rows: tuple[ProcessedActivityRow, ...] = ()
        self._resolution_rows: tuple[ResolutionRow, ...] = ()

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Processed Activities", classes="panel-title")
            yield DataTable(id="activities-table", cursor_type="row")
            yield Static("Resolutions", classes="panel-title")
            yield DataTable(id="resolutions-table", cursor_type="row")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#activities-table", DataTable).add_columns(
            "Processed", "Activity", "Kind", "Issue", "Outcome", "Error"
        )
        self.query_one("#resolutions-table", DataTable).add_columns(
            "Created", "Issue", "Status", "Outcome", "Note"
        )
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_focus(self) -> None:
        self.screen.focus_next()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        _ = event
        self.action_show_detail()

    def action_show_detail(self) -> None:
        focused = self.focused
        if not isinstance(focused, DataTable):
            return
        row_index = focused.cursor_row
        if focused.id == "activities-table" and 0 <= row_index < len(self._activity_rows):
            activity = self._activity_rows[row_index]
            self.push_screen(
                _DetailModal(
                    title=f"Activity {activity.activity_id}",
                    body=_activity_detail(activity),
                )
            )
        elif focused.id == "resolutions-table" and 0 <= row_index < len(self._resolution_rows):
            resolution = self._resolution_rows[row_index]
            self.push_screen(
                _DetailModal(
                    title=f"Resolution of issue {resolution.issue_id}",
                    body=_resolution_detail(resolution),
                )
            )

    def refresh_data(self) -> None:
        state = StateStore(self._db_path)
        overview = state.load_overview()
        self._activity_rows = state.list_recent_activities(limit=_ROW_LIMIT)
        self._resolution_rows = state.list_resolutions(limit=_ROW_LIMIT)
        self.screen_stack[0].query_one("#summary", Static).update(_summary_text(overview))

        activities = self.screen_stack[0].query_one("#activities-table", DataTable)
        activities.clear(columns=False)
        for row in self._activity_rows:
            activities.add_row(
                row.processed_at,
                row.activity_id,
                row.kind,
                row.issue_id,
                row.outcome,
                _truncate(row.error or "", _ERROR_PREVIEW_CHARS),
            )

        resolutions = self.screen_stack[0].query_one("#resolutions-table", DataTable)
        resolutions.clear(columns=False)
        for resolution in self._resolution_rows:
            resolutions.add_row(
                resolution.created_at,
                resolution.issue_id,
                resolution.status,
                resolution.outcome,
                _truncate(resolution.resolution_note, _ERROR_PREVIEW_CHARS),
            )


def run_observability_tui(*, db_path: Path, refresh_seconds: int = 2) -> None:
    app = ObservabilityApp(db_path=db_path, refresh_seconds=max(1, refresh_seconds))
    app.run()


def _summary_text(overview: OverviewStats) -> str:
    project = (
        f"{overview.project_name} ({overview.project_id})" if overview.project_id else "<unbound>"
    )
    cursor = (
        f"{overview.cursor_kind}@{overview.cursor_updated_at}"
        if overview.cursor_kind
        else "<none>"
    )
    return (
        " | ".join(
            [
                f"project={project}",
                f"cursor={cursor}",
                f"handled={overview.handled}",
                f"failed={overview.failed}",
                f"ignored={overview.ignored}",
                f"resolutions={overview.resolutions}",
            ]
        )
        + "\nKeys: r refresh | tab focus | enter details | q quit"
    )


def _activity_detail(row: ProcessedActivityRow) -> str:
    return "\n".join(
        [
            f"kind: {row.kind}",
            f"issue: {row.issue_id}",
            f"activity_at: {row.activity_at}",
            f"processed_at: {row.processed_at}",
            f"outcome: {row.outcome}",
            f"error: {row.error or '<none>'}",
        ]
    )


def _resolution_detail(row: ResolutionRow) -> str:
    return "\n".join(
        [
            f"status: {row.status}",
            f"outcome: {row.outcome}",
            f"created_at: {row.created_at}",
            f"detail: {row.detail or '<none>'}",
            "",
            row.resolution_note,
        ]
    )


def _truncate(text: str, limit: int) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return f"{compact[: limit - 3]}..."
