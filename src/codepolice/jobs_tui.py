from __future__ import annotations

from collections import Counter
from pathlib import Path

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from codepolice.models import JOB_STATUSES, Job, JobStatus, JobTransitionRecord
from codepolice.state import StateStore


_ERROR_MAX_CHARS = 60


class JobsApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
        Binding("s", "cycle_status_filter", "Status Filter"),
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

    def __init__(
        self,
        *,
        db_path: Path,
        refresh_seconds: int = 2,
        row_limit: int = 200,
        status_filter: JobStatus | None = None,
    ) -> None:
        super().__init__()
        self._db_path = db_path
        self._refresh_seconds = refresh_seconds
        self._row_limit = row_limit
        self._status_filter = status_filter
        self._jobs: tuple[Job, ...] = ()
        self._selected_job_id: str | None = None
        self.summary_text = ""

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Jobs", classes="panel-title")
            yield DataTable(id="jobs-table")
            yield Static("Transitions", classes="panel-title")
            yield DataTable(id="transitions-table")
        yield Footer()

    def on_mount(self) -> None:
        jobs_table = self.query_one("#jobs-table", DataTable)
        jobs_table.cursor_type = "row"
        jobs_table.add_columns("Job", "Repo", "Branch", "Status", "Retries", "Created", "Error")
        self.query_one("#transitions-table", DataTable).add_columns(
            "Changed", "From", "To", "Detail"
        )
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def action_cycle_status_filter(self) -> None:
        self._status_filter = _next_status_filter(self._status_filter)
        self.refresh_data()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "jobs-table":
            return
        if 0 <= event.cursor_row < len(self._jobs):
            self._selected_job_id = self._jobs[event.cursor_row].id
            self._refresh_transitions()

    def refresh_data(self) -> None:
        state = StateStore(self._db_path)
        self._jobs = state.list_jobs(status=self._status_filter, limit=self._row_limit)
        all_jobs = state.list_jobs(limit=self._row_limit)
        self.summary_text = _summary_text(all_jobs, status_filter=self._status_filter)
        self.query_one("#summary", Static).update(self.summary_text)

        table = self.query_one("#jobs-table", DataTable)
        table.clear(columns=False)
        _fill_jobs(table, self._jobs)
        if self._selected_job_id is None and self._jobs:
            self._selected_job_id = self._jobs[0].id
        self._refresh_transitions()

    def _refresh_transitions(self) -> None:
        table = self.query_one("#transitions-table", DataTable)
        table.clear(columns=False)
        if self._selected_job_id is None:
            return
        _fill_transitions(table, StateStore(self._db_path).list_transitions(self._selected_job_id))


def run_jobs_tui(
    *, db_path: Path, refresh_seconds: int, status_filter: JobStatus | None = None
) -> None:
    JobsApp(db_path=db_path, refresh_seconds=refresh_seconds, status_filter=status_filter).run()


def _fill_jobs(table: DataTable, jobs: tuple[Job, ...]) -> None:
    for job in jobs:
        table.add_row(
            job.id,
            job.repository_id,
            job.branch,
            job.status,
            str(job.retry_count),
            job.created_at,
            _truncate(job.error_message or job.warning or "-"),
        )


def _fill_transitions(table: DataTable, rows: tuple[JobTransitionRecord, ...]) -> None:
    if not rows:
        table.add_row("-", "-", "-", "No transitions recorded")
        return
    for row in rows:
        table.add_row(row.changed_at, row.from_status or "-", row.to_status, row.detail or "-")


def _summary_text(jobs: tuple[Job, ...], *, status_filter: JobStatus | None) -> str:
    counts = Counter(job.status for job in jobs)
    parts = [f"filter={status_filter or 'all'}"]
    parts.extend(f"{status}={counts[status]}" for status in JOB_STATUSES if counts[status])
    return " | ".join(parts) + "\nKeys: r refresh | s status filter | q quit"


def _next_status_filter(current: JobStatus | None) -> JobStatus | None:
    options: tuple[JobStatus | None, ...] = (None, *JOB_STATUSES)
    if current not in options:
        return None
    return options[(options.index(current) + 1) % len(options)]


def _truncate(text: str) -> str:
    first_line = text.strip().splitlines()[0] if text.strip() else "-"
    if len(first_line) <= _ERROR_MAX_CHARS:
        return first_line
    return f"{first_line[: _ERROR_MAX_CHARS - 3]}..."
