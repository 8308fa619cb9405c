"""Stage dispatcher: runs one stage's tasks sequentially or as a parallel group."""

from __future__ import annotations

import threading
import time
import traceback
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from stageflow.core.errors import CredentialError, StageflowError
from stageflow.core.pipeline.base import Stage, Task
from stageflow.core.pipeline.log import LogFn, noop_log, now_iso
from stageflow.core.types import ErrorInfo, ErrorKind, StageStatus, TaskResult, TaskStatus
from stageflow.credentials.providers import (
    Credential,
    CredentialProvider,
    NullCredentialProvider,
    redact,
    secret_values,
)
from stageflow.engine.context import TaskContext
from stageflow.engine.env import EnvironmentScope
from stageflow.engine.report import TaskOutcome
from stageflow.engine.state import StateView


@dataclass
class StageExecution:
    """Everything a stage produced; committed to RunState by the orchestrator."""
    status: StageStatus
    tasks: List[TaskOutcome]
    started_at: str
    finished_at: str
    duration_s: float
    artifacts: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorInfo] = None


def _fault_kind(exc: BaseException) -> ErrorKind:
    kind = getattr(exc, "kind", None)
    if isinstance(exc, StageflowError) and isinstance(kind, ErrorKind) and kind != ErrorKind.ENGINE_ERROR:
        return kind
    return ErrorKind.TASK_FAULTED


class StageDispatcher:
    """Executes a single stage per its mode.

    Each task runs on a dedicated worker thread. Outcomes are collected and
    handed back in declared order; nothing is written to the run state here.
    """

    def __init__(
        self,
        credentials: Optional[CredentialProvider] = None,
        log: LogFn = noop_log,
        max_workers: Optional[int] = None,
    ):
        self.credentials = credentials or NullCredentialProvider()
        self.log = log
        self.max_workers = max_workers

    def dispatch(self, stage: Stage, scope: EnvironmentScope, view: StateView) -> StageExecution:
        started_at = now_iso()
        t0 = time.monotonic()
        cancel = threading.Event()

        if stage.parallel:
            outcomes, timed_out = self._run_parallel(stage, scope, view, cancel, t0)
        else:
            outcomes, timed_out = self._run_sequential(stage, scope, view, cancel, t0)

        artifacts: Dict[str, Any] = {}
        for o in outcomes:
            for name, ref in o.artifacts.items():
                artifacts.setdefault(name, ref)

        failed = [o for o in outcomes if not o.ok]
        error: Optional[ErrorInfo] = None
        if timed_out:
            error = ErrorInfo(
                ErrorKind.TIMEOUT,
                f"stage exceeded timeout of {stage.timeout_s}s",
                {"timeout_s": stage.timeout_s},
            )
        elif failed:
            error = self._stage_error(failed)

        return StageExecution(
            status=StageStatus.FAILED if (failed or timed_out) else StageStatus.SUCCEEDED,
            tasks=outcomes,
            started_at=started_at,
            finished_at=now_iso(),
            duration_s=time.monotonic() - t0,
            artifacts=artifacts,
            error=error,
        )

    @staticmethod
    def _stage_error(failed: List[TaskOutcome]) -> ErrorInfo:
        kinds = {o.error.kind for o in failed if o.error is not None}
        kind = kinds.pop() if len(kinds) == 1 else ErrorKind.TASK_FAILED
        names = [o.name for o in failed]
        if len(failed) == 1 and failed[0].error is not None:
            detail = f"task {names[0]} failed: {failed[0].error.detail}"
        else:
            detail = f"{len(failed)} tasks failed: {', '.join(names)}"
        return ErrorInfo(kind, detail, {"failed_tasks": names})

    def _remaining(self, stage: Stage, t0: float) -> Optional[float]:
        if stage.timeout_s is None:
            return None
        return max(0.0, stage.timeout_s - (time.monotonic() - t0))

    def _run_sequential(self, stage, scope, view, cancel, t0):
        outcomes: List[TaskOutcome] = []
        produced: Dict[str, Any] = {}
        timed_out = False
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage.name}") as pool:
            for task in stage.tasks:
                env = scope.resolve(task.environment)
                fut = pool.submit(self.run_task, stage, task, env, view, dict(produced), cancel)
                timed_out = self._await(fut, stage, t0, cancel) or timed_out
                outcome = fut.result()
                outcomes.append(outcome)
                for name, ref in outcome.artifacts.items():
                    produced.setdefault(name, ref)
                if not outcome.ok or timed_out:
                    break
        return outcomes, timed_out

    def _run_parallel(self, stage, scope, view, cancel, t0):
        workers = stage.max_workers or self.max_workers or len(stage.tasks)
        futures: List[Future] = []
        timed_out = False
        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix=f"stage-{stage.name}") as pool:
            for task in stage.tasks:
                env = scope.resolve(task.environment)
                futures.append(pool.submit(self.run_task, stage, task, env, view, {}, cancel))

            pending = set(futures)
            while pending:
                remaining = self._remaining(stage, t0)
                if remaining is not None and remaining <= 0 and not timed_out:
                    timed_out = self._expire(stage, cancel)
                _, pending = wait(
                    pending,
                    timeout=None if timed_out else remaining,
                    return_when=FIRST_COMPLETED,
                )
        if not timed_out and self._remaining(stage, t0) == 0:
            timed_out = self._expire(stage, cancel)
        # Declared order, not completion order.
        return [f.result() for f in futures], timed_out

    def _await(self, fut: Future, stage: Stage, t0: float, cancel: threading.Event) -> bool:
        remaining = self._remaining(stage, t0)
        done, _ = wait([fut], timeout=remaining)
        if done:
            return remaining is not None and self._remaining(stage, t0) <= 0 and self._expire(stage, cancel)
        timed_out = self._expire(stage, cancel)
        # No forced termination: wait for the task to come back on its own.
        wait([fut])
        return timed_out

    def _expire(self, stage: Stage, cancel: threading.Event) -> bool:
        if not cancel.is_set():
            cancel.set()
            self.log("stage_timeout", {"stage": stage.name, "timeout_s": stage.timeout_s})
        return True

    def _resolve_credentials(self, task: Task) -> Dict[str, Credential]:
        return {name: self.credentials.get(name) for name in task.credentials}

    def run_task(
        self,
        stage: Stage,
        task: Task,
        env: Dict[str, str],
        view: StateView,
        stage_artifacts: Mapping[str, Any],
        cancel: threading.Event,
    ) -> TaskOutcome:
        """Invoke one task in isolation; never raises."""
        started_at = now_iso()
        t0 = time.monotonic()
        self.log("task_start", {"stage": stage.name, "task": task.name})

        creds: Dict[str, Credential] = {}
        try:
            creds = self._resolve_credentials(task)
            ctx = TaskContext(
                stage=stage.name,
                task=task.name,
                view=view,
                stage_artifacts=dict(stage_artifacts),
                credentials=creds,
                cancel_event=cancel,
                log=self.log,
            )
            result = task.run(env, ctx)
            if result is None:
                result = TaskResult.success()
            if not isinstance(result, TaskResult):
                raise TypeError(f"task {task.name!r} returned {type(result).__name__}, expected TaskResult")
        except CredentialError as e:
            result = TaskResult.failure(str(e), kind=ErrorKind.CREDENTIAL_MISSING)
        except BaseException as e:  # includes SystemExit from wrapped CLI entry points
            kind = _fault_kind(e)
            result = TaskResult(
                status=TaskStatus.FAILED,
                error=ErrorInfo(
                    kind,
                    f"{type(e).__name__}: {e}",
                    {"exception": type(e).__name__, "traceback": traceback.format_exc()},
                ),
            )

        artifacts = self._filter_outputs(stage, task, result.artifacts)
        error = result.error
        if result.status == TaskStatus.FAILED and error is None:
            error = ErrorInfo(ErrorKind.TASK_FAILED, "task reported failure")

        secrets = secret_values(creds)
        if secrets and error is not None:
            data = {k: redact(v, secrets) if isinstance(v, str) else v for k, v in error.data.items()}
            error = ErrorInfo(error.kind, redact(error.detail, secrets), data)

        outcome = TaskOutcome(
            name=task.name,
            status=result.status,
            started_at=started_at,
            finished_at=now_iso(),
            duration_s=time.monotonic() - t0,
            error=error,
            logs=redact(result.logs, secrets),
            artifacts=artifacts,
        )
        self.log(
            "task_done",
            {
                "stage": stage.name,
                "task": task.name,
                "status": outcome.status.value,
                "duration_s": round(outcome.duration_s, 3),
                "error_kind": error.kind.value if error else None,
            },
        )
        return outcome

    def _filter_outputs(self, stage: Stage, task: Task, artifacts: Mapping[str, Any]) -> Dict[str, Any]:
        if not task.outputs:
            return dict(artifacts)
        kept: Dict[str, Any] = {}
        for name, ref in artifacts.items():
            if name in task.outputs:
                kept[name] = ref
            else:
                self.log("artifact_undeclared", {"stage": stage.name, "task": task.name, "artifact": name})
        return kept
