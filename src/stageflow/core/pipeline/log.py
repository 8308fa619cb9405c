from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

# Signature shared by every event logger: log(event, payload).
LogFn = Callable[[str, Dict[str, Any]], None]


def now_iso() -> str:
    """Return current UTC time as an ISO string."""
    return datetime.now(timezone.utc).isoformat()


def noop_log(event: str, payload: Dict[str, Any]) -> None:
    return None


@dataclass
class JsonlLogger:
    """Append structured events to a JSONL file and stdout.

    Parallel stages log from worker threads, so writes are serialized.
    """
    path: Optional[Path] = None
    echo: bool = True
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        rec = {"t": now_iso(), "event": event, **payload}
        line = json.dumps(rec, ensure_ascii=False, default=str)
        with self._lock:
            if self.echo:
                print(line, flush=True)
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")


@dataclass
class MemoryLogger:
    """Keeps events in memory; handy for tests and embedding."""
    events: list = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event, dict(payload)))

    def names(self) -> list:
        return [e for e, _ in self.events]
