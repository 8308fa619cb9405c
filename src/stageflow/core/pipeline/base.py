"""Pipeline definition objects: Task, Stage, Hook, Pipeline.

Definitions are built once and never mutated; per-run state lives in
``stageflow.engine.state.RunState``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Tuple

from stageflow.core.errors import PipelineDefinitionError
from stageflow.core.types import HookTrigger, StageMode, TaskResult
from stageflow.engine.guards import Guard, always

if TYPE_CHECKING:
    from stageflow.engine.context import TaskContext
    from stageflow.engine.state import RunState

TaskFn = Callable[[Dict[str, str], "TaskContext"], Optional[TaskResult]]
HookFn = Callable[["RunState"], Any]


def _freeze_env(env: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (env or {}).items()}


def _noop_run(env: Dict[str, str], ctx: "TaskContext") -> TaskResult:
    return TaskResult.success()


@dataclass(frozen=True)
class Task:
    """Opaque unit of work.

    ``run`` receives a private copy of the effective environment and a
    ``TaskContext``; returning ``None`` counts as success.
    ``outputs`` lists the artifact names the task may attach (empty = any).
    """
    name: str
    run: TaskFn = _noop_run
    outputs: Tuple[str, ...] = ()
    environment: Dict[str, str] = field(default_factory=dict)
    credentials: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise PipelineDefinitionError("Task name must not be empty")
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "credentials", tuple(self.credentials))
        object.__setattr__(self, "environment", _freeze_env(self.environment))

    @staticmethod
    def noop(name: str) -> "Task":
        """Placeholder task that always succeeds trivially."""
        return Task(name=name)


@dataclass(frozen=True)
class Stage:
    """Named phase of the pipeline gated by ``guard``."""
    name: str
    tasks: Tuple[Task, ...]
    mode: StageMode = StageMode.SEQUENTIAL
    guard: Guard = always
    environment: Dict[str, str] = field(default_factory=dict)
    timeout_s: Optional[float] = None
    allow_failure: bool = False
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise PipelineDefinitionError("Stage name must not be empty")
        tasks = tuple(self.tasks)
        if not tasks:
            raise PipelineDefinitionError(f"Stage {self.name!r} has no tasks")
        seen = set()
        for t in tasks:
            if t.name in seen:
                raise PipelineDefinitionError(f"Duplicate task {t.name!r} in stage {self.name!r}")
            seen.add(t.name)
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise PipelineDefinitionError(f"Stage {self.name!r}: timeout_s must be positive")
        object.__setattr__(self, "tasks", tasks)
        object.__setattr__(self, "mode", StageMode(self.mode))
        object.__setattr__(self, "environment", _freeze_env(self.environment))

    @property
    def parallel(self) -> bool:
        return self.mode == StageMode.PARALLEL


@dataclass(frozen=True)
class Hook:
    """Completion-time callback keyed by trigger."""
    trigger: HookTrigger
    action: HookFn
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "trigger", HookTrigger(self.trigger))
        if not self.name:
            object.__setattr__(self, "name", getattr(self.action, "__name__", "hook"))


@dataclass(frozen=True)
class Pipeline:
    """Ordered stages plus lifecycle hooks."""
    name: str
    stages: Tuple[Stage, ...]
    hooks: Tuple[Hook, ...] = ()
    environment: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        stages = tuple(self.stages)
        if not stages:
            raise PipelineDefinitionError(f"Pipeline {self.name!r} has no stages")
        seen = set()
        for st in stages:
            if st.name in seen:
                raise PipelineDefinitionError(f"Duplicate stage {st.name!r} in pipeline {self.name!r}")
            seen.add(st.name)
        object.__setattr__(self, "stages", stages)
        object.__setattr__(self, "hooks", tuple(self.hooks))
        object.__setattr__(self, "environment", _freeze_env(self.environment))
