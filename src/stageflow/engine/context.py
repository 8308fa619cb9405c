from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from stageflow.core.pipeline.log import LogFn, noop_log
from stageflow.core.types import RunResult
from stageflow.credentials.providers import Credential
from stageflow.engine.state import StateView


@dataclass
class TaskContext:
    """Working context passed to a task alongside its environment.

    ``view`` is the committed run state as of stage start; ``stage_artifacts``
    holds artifacts produced by earlier tasks of the same sequential stage.
    """
    stage: str
    task: str
    view: StateView
    stage_artifacts: Mapping[str, Any] = field(default_factory=dict)
    credentials: Mapping[str, Credential] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    log: LogFn = noop_log

    @property
    def current_result(self) -> RunResult:
        return self.view.current_result

    @property
    def artifacts(self) -> Dict[str, Any]:
        merged = dict(self.view.artifacts)
        merged.update(self.stage_artifacts)
        return merged

    @property
    def cancelled(self) -> bool:
        """True once the stage's advisory timeout has expired."""
        return self.cancel_event.is_set()

    def credential(self, name: str) -> Credential:
        return self.credentials[name]
