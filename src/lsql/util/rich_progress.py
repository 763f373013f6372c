from __future__ import annotations

from typing import Any, List, Optional, Sequence

try:
    from rich.console import Console
    from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
    from rich.table import Table
except Exception:  # pragma: no cover - fallback when rich isn't available
    Console = None  # type: ignore[assignment]
    Progress = None  # type: ignore[assignment]
    BarColumn = None  # type: ignore[assignment]
    MofNCompleteColumn = None  # type: ignore[assignment]
    TextColumn = None  # type: ignore[assignment]
    TimeElapsedColumn = None  # type: ignore[assignment]
    Table = None  # type: ignore[assignment]


def stderr_console(*, no_color: bool = False) -> Optional[Any]:
    if Console is None:
        return None
    return Console(stderr=True, no_color=no_color)


class RunProgress:
    """Transient per-environment progress bar drawn on stderr."""

    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._enabled = bool(enabled and Console and Progress)
        self._console = console or (Console(stderr=True) if Console else None)
        self._progress = None
        self._task: Optional[int] = None
        self._started = False
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TextColumn("{task.fields[current]}", justify="left"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> RunProgress:
        if self._enabled and self._progress and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._enabled and self._progress and self._started:
            self._progress.stop()
            self._started = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_environments(self, total: int) -> None:
        if not self._enabled or not self._progress:
            return
        self._task = self._progress.add_task("Environments", total=total, current="")

    def set_current(self, env: str) -> None:
        if not self._enabled or not self._progress or self._task is None:
            return
        self._progress.update(self._task, current=env)

    def set_completed(self, completed: int) -> None:
        if not self._enabled or not self._progress or self._task is None:
            return
        self._progress.update(self._task, completed=completed)


def summary_lines(results: Sequence[Any]) -> List[str]:
    """Plain-text execution summary; failures are listed with their error."""
    ok = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    lines = ["", "=" * 50, "EXECUTION SUMMARY", "=" * 50, f"✓ Successful: {len(ok)}"]
    if failed:
        lines.append(f"✗ Failed: {len(failed)}")
        for r in failed:
            lines.append(f"  - {r.environment}: {r.error or 'unknown error'}")
    lines.append(f"Total environments processed: {len(results)}")
    return lines


def render_execution_summary_table(
    results: Sequence[Any],
    *,
    enabled: bool,
    console: Optional[Console] = None,
) -> bool:
    """Print the summary as a rich table. Returns False when rich output is unavailable."""
    if not enabled or not Table or not Console:
        return False
    failed = sum(1 for r in results if not r.success)
    table = Table(title="Execution Summary", show_header=True, header_style="bold")
    table.add_column("Environment", style="cyan")
    table.add_column("Status")
    table.add_column("Error", style="white")
    for r in results:
        status = "[green]✓ ok[/green]" if r.success else "[red]✗ failed[/red]"
        table.add_row(r.environment, status, r.error or "")
    table.caption = f"{len(results) - failed} succeeded, {failed} failed, {len(results)} total"
    (console or Console(stderr=True)).print(table)
    return True
