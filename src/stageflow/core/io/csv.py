from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict, List


def write_csv(path: str | Path, rows: List[Dict[str, Any]], cols: List[str]) -> Path:
    """Write rows to a CSV file using the provided column order."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    with p.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=cols, extrasaction="ignore")
        w.writeheader()
        for r in rows:
            w.writerow({c: r.get(c, "") for c in cols})
    return p
