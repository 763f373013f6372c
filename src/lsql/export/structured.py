from __future__ import annotations

import json
from typing import Dict, List

import yaml

from ..aggregate import AggregatedReport
from ..parse.table import Row


def _by_environment(report: AggregatedReport) -> Dict[str, List[Row]]:
    # Rows are self-describing; no column union is applied here.
    return {env: [dict(row) for row in report.rows_for(env)] for env in report.environments}


def render_json(report: AggregatedReport) -> str:
    return json.dumps(_by_environment(report), indent=2, ensure_ascii=False) + "\n"


def render_yaml(report: AggregatedReport) -> str:
    return yaml.safe_dump(
        _by_environment(report),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
