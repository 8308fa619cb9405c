"""Run state: the single shared mutable record of one pipeline execution.

All writes go through ``commit``/``add_artifact`` under one boundary lock and
happen at stage boundaries only; tasks and guards see frozen ``StateView``
snapshots.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from stageflow.core.errors import InvalidTransition
from stageflow.core.types import RunResult, StageStatus
from stageflow.engine.report import StageOutcome

VALID_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.SKIPPED, StageStatus.RUNNING},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED},
    StageStatus.SKIPPED: set(),
    StageStatus.SUCCEEDED: set(),
    StageStatus.FAILED: set(),
}

# Results only ever move to a higher rank.
_RANK = {RunResult.UNKNOWN: 0, RunResult.SUCCESS: 1, RunResult.FAILURE: 2}


def is_valid_transition(src: StageStatus, dst: StageStatus) -> bool:
    return dst in VALID_TRANSITIONS.get(src, set())


@dataclass(frozen=True)
class StateView:
    """Read-only snapshot handed to guards and tasks."""
    current_result: RunResult
    artifacts: Mapping[str, Any]
    history: Tuple[StageOutcome, ...]
    environment: Mapping[str, str]

    def stage_status(self, name: str) -> Optional[StageStatus]:
        for st in self.history:
            if st.name == name:
                return st.status
        return None


class RunState:
    """Mutable progress record of a single run."""

    def __init__(self, stage_names: Iterable[str], environment: Optional[Mapping[str, str]] = None):
        self._lock = threading.Lock()
        self._result = RunResult.UNKNOWN
        self._artifacts: Dict[str, Any] = {}
        self._history: List[StageOutcome] = []
        self._status: Dict[str, StageStatus] = {n: StageStatus.PENDING for n in stage_names}
        self.environment: Mapping[str, str] = MappingProxyType(dict(environment or {}))

    @property
    def current_result(self) -> RunResult:
        return self._result

    @property
    def artifacts(self) -> Mapping[str, Any]:
        with self._lock:
            return MappingProxyType(dict(self._artifacts))

    @property
    def history(self) -> Tuple[StageOutcome, ...]:
        with self._lock:
            return tuple(self._history)

    def status(self, stage: str) -> StageStatus:
        return self._status[stage]

    def statuses(self) -> Dict[str, StageStatus]:
        with self._lock:
            return dict(self._status)

    def view(self) -> StateView:
        with self._lock:
            return StateView(
                current_result=self._result,
                artifacts=MappingProxyType(dict(self._artifacts)),
                history=tuple(self._history),
                environment=self.environment,
            )

    def mark(self, stage: str, status: StageStatus) -> None:
        with self._lock:
            self._transition(stage, status)

    def _transition(self, stage: str, status: StageStatus) -> None:
        src = self._status[stage]
        if not is_valid_transition(src, status):
            raise InvalidTransition(stage, src, status)
        self._status[stage] = status

    def _worsen(self, result: RunResult) -> None:
        if _RANK[result] > _RANK[self._result]:
            self._result = result

    def worsen(self, result: RunResult) -> None:
        with self._lock:
            self._worsen(result)

    def _add_artifact(self, name: str, ref: Any) -> bool:
        if name in self._artifacts:
            return False
        self._artifacts[name] = ref
        return True

    def add_artifact(self, name: str, ref: Any) -> bool:
        """Append an artifact; returns False if the name is already taken (first writer wins)."""
        with self._lock:
            return self._add_artifact(name, ref)

    def commit(self, outcome: StageOutcome, artifacts: Optional[Mapping[str, Any]] = None) -> List[str]:
        """Record a resolved stage. Returns artifact names rejected as duplicates."""
        rejected: List[str] = []
        with self._lock:
            self._transition(outcome.name, outcome.status)
            for name, ref in (artifacts or {}).items():
                if not self._add_artifact(name, ref):
                    rejected.append(name)
            self._history.append(outcome)
            if outcome.status == StageStatus.SUCCEEDED:
                self._worsen(RunResult.SUCCESS)
            elif outcome.status == StageStatus.FAILED and not outcome.allow_failure:
                self._worsen(RunResult.FAILURE)
        return rejected

    def finalize(self) -> RunResult:
        """Close the run: a result nobody set (nothing failed) counts as success."""
        with self._lock:
            self._worsen(RunResult.SUCCESS)
            return self._result
