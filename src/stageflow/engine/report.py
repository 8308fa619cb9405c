"""Per-stage outcomes and the immutable run report."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from stageflow.core.types import ErrorInfo, HookTrigger, RunResult, StageMode, StageStatus, TaskStatus


@dataclass(frozen=True)
class TaskOutcome:
    """Record of one task invocation."""
    name: str
    status: TaskStatus
    started_at: str
    finished_at: str
    duration_s: float
    error: Optional[ErrorInfo] = None
    logs: str = ""
    artifacts: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    def to_dict(self, *, timestamps: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "error": self.error.to_dict() if self.error else None,
            "logs": self.logs,
            "artifacts": dict(self.artifacts),
        }
        if timestamps:
            d.update(started_at=self.started_at, finished_at=self.finished_at, duration_s=self.duration_s)
        return d


@dataclass(frozen=True)
class StageOutcome:
    """Record of one stage: skipped, or executed with its task outcomes."""
    name: str
    status: StageStatus
    mode: StageMode
    started_at: str
    finished_at: str
    duration_s: float = 0.0
    tasks: Tuple[TaskOutcome, ...] = ()
    error: Optional[ErrorInfo] = None
    skip_reason: Optional[str] = None
    allow_failure: bool = False

    @property
    def failed_tasks(self) -> List[TaskOutcome]:
        return [t for t in self.tasks if not t.ok]

    def to_dict(self, *, timestamps: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "mode": self.mode.value,
            "error": self.error.to_dict() if self.error else None,
            "skip_reason": self.skip_reason,
            "allow_failure": self.allow_failure,
            "tasks": [t.to_dict(timestamps=timestamps) for t in self.tasks],
        }
        if timestamps:
            d.update(started_at=self.started_at, finished_at=self.finished_at, duration_s=self.duration_s)
        return d


@dataclass(frozen=True)
class HookError:
    """A fault captured while running a hook."""
    hook: str
    trigger: HookTrigger
    error: ErrorInfo

    def to_dict(self) -> Dict[str, Any]:
        return {"hook": self.hook, "trigger": self.trigger.value, **self.error.to_dict()}


@dataclass(frozen=True)
class RunReport:
    """Finalized summary of a run; enough to render pass/fail without re-running."""
    pipeline: str
    result: RunResult
    started_at: str
    finished_at: str
    duration_s: float
    stages: Tuple[StageOutcome, ...]
    artifacts: Mapping[str, Any] = field(default_factory=dict)
    hook_errors: Tuple[HookError, ...] = ()
    engine_error: Optional[ErrorInfo] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "hook_errors", tuple(self.hook_errors))
        object.__setattr__(self, "artifacts", MappingProxyType(dict(self.artifacts)))

    @property
    def succeeded(self) -> bool:
        return self.result == RunResult.SUCCESS

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def stage(self, name: str) -> StageOutcome:
        for st in self.stages:
            if st.name == name:
                return st
        raise KeyError(name)

    def statuses(self) -> Dict[str, str]:
        return {st.name: st.status.value for st in self.stages}

    def to_dict(self, *, timestamps: bool = True) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "pipeline": self.pipeline,
            "result": self.result.value,
            "exit_code": self.exit_code,
            "stages": [st.to_dict(timestamps=timestamps) for st in self.stages],
            "artifacts": dict(self.artifacts),
            "hook_errors": [h.to_dict() for h in self.hook_errors],
            "engine_error": self.engine_error.to_dict() if self.engine_error else None,
        }
        if timestamps:
            d.update(started_at=self.started_at, finished_at=self.finished_at, duration_s=self.duration_s)
        return d

    def summary_lines(self) -> List[str]:
        """Human-readable pass/fail summary, one line per stage and failure."""
        lines = [f"Pipeline {self.pipeline}: {self.result.value.upper()}"]
        for st in self.stages:
            line = f"  {st.name:24s} {st.status.value:9s} {st.duration_s:8.2f}s"
            if st.skip_reason:
                line += f"  ({st.skip_reason})"
            elif st.error is not None:
                line += f"  [{st.error.kind.value}] {st.error.detail}"
            lines.append(line)
            for t in st.failed_tasks:
                kind = t.error.kind.value if t.error else "task_failed"
                detail = t.error.detail if t.error else ""
                lines.append(f"    - {t.name}: [{kind}] {detail}")
        for h in self.hook_errors:
            lines.append(f"  hook {h.hook} ({h.trigger.value}) faulted: {h.error.detail}")
        if self.engine_error is not None:
            lines.append(f"  engine error: {self.engine_error.detail}")
        return lines
