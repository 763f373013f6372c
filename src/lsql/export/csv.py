from __future__ import annotations

import csv
import io
from typing import List

from ..aggregate import ENV_COLUMN, AggregatedReport


def render_delimited(report: AggregatedReport, *, delimiter: str = ",") -> str:
    """
    Flatten to one line per (environment, row) with a leading env field.
    Environments without rows contribute nothing; missing columns render empty.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, lineterminator="\n")
    writer.writerow([ENV_COLUMN] + report.columns)
    for env in report.environments:
        for rec in report.rows_for(env):
            row: List[str] = [env]
            for column in report.columns:
                row.append(rec.get(column, ""))
            writer.writerow(row)
    return buf.getvalue()
