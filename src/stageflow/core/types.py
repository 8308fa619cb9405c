"""Shared enums and small data containers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class StageMode(str, Enum):
    """How a stage runs its tasks."""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class StageStatus(str, Enum):
    """Lifecycle of a stage within one run."""
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_resolved(self) -> bool:
        return self in (StageStatus.SKIPPED, StageStatus.SUCCEEDED, StageStatus.FAILED)


class TaskStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunResult(str, Enum):
    """Aggregate result of a run so far."""
    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILURE = "failure"


class HookTrigger(str, Enum):
    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"
    CLEANUP = "cleanup"


class ErrorKind(str, Enum):
    """Stable error kinds reported per failed stage, task or hook."""
    GUARD_FAULTED = "guard_faulted"
    TASK_FAILED = "task_failed"
    TASK_FAULTED = "task_faulted"
    TIMEOUT = "timeout"
    CREDENTIAL_MISSING = "credential_missing"
    HOOK_FAULTED = "hook_faulted"
    TRANSPORT = "transport"
    AUTH = "auth"
    LAUNCH = "launch"
    ENGINE_ERROR = "engine_error"


@dataclass(frozen=True)
class ErrorInfo:
    """Stable error kind plus free-text diagnostic detail."""
    kind: ErrorKind
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind.value, "detail": self.detail}
        if self.data:
            out["data"] = dict(self.data)
        return out


@dataclass(frozen=True)
class TaskResult:
    """What a task hands back to the engine."""
    status: TaskStatus = TaskStatus.SUCCEEDED
    artifacts: Dict[str, Any] = field(default_factory=dict)
    logs: str = ""
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    @staticmethod
    def success(artifacts: Optional[Dict[str, Any]] = None, logs: str = "") -> "TaskResult":
        return TaskResult(TaskStatus.SUCCEEDED, dict(artifacts or {}), logs)

    @staticmethod
    def failure(
        detail: str,
        *,
        kind: ErrorKind = ErrorKind.TASK_FAILED,
        logs: str = "",
        artifacts: Optional[Dict[str, Any]] = None,
    ) -> "TaskResult":
        return TaskResult(
            TaskStatus.FAILED,
            dict(artifacts or {}),
            logs,
            ErrorInfo(kind=kind, detail=detail),
        )
