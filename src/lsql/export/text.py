from __future__ import annotations

from typing import Dict, List

from ..aggregate import ENV_COLUMN, AggregatedReport

STATUS_COLUMN = "status"


def _column_widths(report: AggregatedReport) -> Dict[str, int]:
    # Per-environment separator widths disagree once merged; measure the values instead.
    widths = {col: len(col) for col in report.columns}
    for env in report.environments:
        for row in report.rows_for(env):
            for col in report.columns:
                widths[col] = max(widths[col], len(row.get(col, "")))
    return widths


def render_text(report: AggregatedReport) -> str:
    """
    Aligned text with a leading env column:

        env  | id | name
        -----+----+------
        dev  | 1  | foo
        prod | (no data returned)
    """
    if not report.environments:
        return ""
    env_width = max([len(ENV_COLUMN)] + [len(env) for env in report.environments])
    columns = report.columns or [STATUS_COLUMN]
    widths = _column_widths(report) if report.columns else {STATUS_COLUMN: len(STATUS_COLUMN)}

    lines: List[str] = []
    header = [ENV_COLUMN.ljust(env_width)] + [col.ljust(widths[col]) for col in columns]
    lines.append(" | ".join(header).rstrip())
    lines.append("-+-".join(["-" * env_width] + ["-" * widths[col] for col in columns]))

    for env in report.environments:
        rows = report.rows_for(env)
        if not rows:
            lines.append(f"{env.ljust(env_width)} | {report.status_for(env)}")
            continue
        for row in rows:
            cells = [env.ljust(env_width)] + [row.get(col, "").ljust(widths[col]) for col in columns]
            lines.append(" | ".join(cells).rstrip())
    return "\n".join(lines) + "\n"
