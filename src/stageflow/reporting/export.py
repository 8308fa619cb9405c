from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

from stageflow.core.io.csv import write_csv
from stageflow.core.io.json import dump_json
from stageflow.engine.report import RunReport

STAGE_COLS = [
    "stage",
    "task",
    "status",
    "mode",
    "started_at",
    "finished_at",
    "duration_s",
    "error_kind",
    "error_detail",
    "skip_reason",
]


def stage_rows(report: RunReport) -> List[Dict[str, Any]]:
    """One row per stage, followed by one row per task of that stage."""
    rows: List[Dict[str, Any]] = []
    for st in report.stages:
        rows.append(
            {
                "stage": st.name,
                "task": "",
                "status": st.status.value,
                "mode": st.mode.value,
                "started_at": st.started_at,
                "finished_at": st.finished_at,
                "duration_s": round(st.duration_s, 3),
                "error_kind": st.error.kind.value if st.error else "",
                "error_detail": st.error.detail if st.error else "",
                "skip_reason": st.skip_reason or "",
            }
        )
        for t in st.tasks:
            rows.append(
                {
                    "stage": st.name,
                    "task": t.name,
                    "status": t.status.value,
                    "mode": st.mode.value,
                    "started_at": t.started_at,
                    "finished_at": t.finished_at,
                    "duration_s": round(t.duration_s, 3),
                    "error_kind": t.error.kind.value if t.error else "",
                    "error_detail": t.error.detail if t.error else "",
                    "skip_reason": "",
                }
            )
    return rows


def export_report(report: RunReport, out_dir: str | Path) -> Dict[str, Path]:
    """Write ``report.json`` and ``stages.csv`` into ``out_dir``."""
    out = Path(out_dir)
    return {
        "report": dump_json(out / "report.json", report.to_dict()),
        "stages": write_csv(out / "stages.csv", stage_rows(report), STAGE_COLS),
    }
