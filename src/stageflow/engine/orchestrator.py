"""Orchestrator: drives a pipeline run from first guard to last hook."""

from __future__ import annotations

import time
import traceback
from typing import Mapping, Optional

from stageflow.core.pipeline.base import Pipeline, Stage
from stageflow.core.pipeline.log import LogFn, noop_log, now_iso
from stageflow.core.types import ErrorInfo, ErrorKind, RunResult, StageStatus
from stageflow.credentials.providers import CredentialProvider
from stageflow.engine.dispatch import StageDispatcher
from stageflow.engine.env import EnvironmentScope
from stageflow.engine.hooks import HookDispatcher
from stageflow.engine.report import RunReport, StageOutcome
from stageflow.engine.state import RunState


def _guard_name(stage: Stage) -> str:
    return getattr(stage.guard, "__name__", "guard")


class Orchestrator:
    """Sequences stages on the calling thread, fans out parallel stages, runs hooks.

    A failed stage never aborts the run: every later stage still evaluates its
    guard against the updated state. Hooks run exactly once per run, including
    after an unexpected engine error; a KeyboardInterrupt is re-raised once the
    hooks are done.
    """

    def __init__(
        self,
        *,
        credentials: Optional[CredentialProvider] = None,
        log: LogFn = noop_log,
        max_workers: Optional[int] = None,
    ):
        self.log = log
        self.dispatcher = StageDispatcher(credentials=credentials, log=log, max_workers=max_workers)
        self.hook_dispatcher = HookDispatcher(log=log)

    def execute(self, pipeline: Pipeline, environment: Optional[Mapping[str, str]] = None) -> RunReport:
        base_env = {str(k): str(v) for k, v in (environment or {}).items()}
        state = RunState([st.name for st in pipeline.stages], {**base_env, **pipeline.environment})
        scope = EnvironmentScope(base_env)
        started_at = now_iso()
        t0 = time.monotonic()
        engine_error: Optional[ErrorInfo] = None
        interrupted: Optional[KeyboardInterrupt] = None

        self.log("run_start", {"pipeline": pipeline.name, "stages": [st.name for st in pipeline.stages]})

        try:
            with scope.overlay(pipeline.environment):
                for stage in pipeline.stages:
                    self._run_stage(stage, state, scope)
        except BaseException as e:
            if isinstance(e, KeyboardInterrupt):
                interrupted = e
            engine_error = ErrorInfo(
                ErrorKind.ENGINE_ERROR,
                f"{type(e).__name__}: {e}",
                {"traceback": traceback.format_exc()},
            )
            self.log("engine_error", {"pipeline": pipeline.name, "error": engine_error.detail})
            self._abort_running(pipeline, state, engine_error)
            state.worsen(RunResult.FAILURE)

        result = state.finalize()
        hook_errors = self.hook_dispatcher.dispatch(pipeline.hooks, state, result)

        report = RunReport(
            pipeline=pipeline.name,
            result=result,
            started_at=started_at,
            finished_at=now_iso(),
            duration_s=time.monotonic() - t0,
            stages=self._stage_outcomes(pipeline, state),
            artifacts=state.artifacts,
            hook_errors=hook_errors,
            engine_error=engine_error,
        )
        self.log(
            "run_done",
            {
                "pipeline": pipeline.name,
                "result": result.value,
                "duration_s": round(report.duration_s, 3),
                "stages": report.statuses(),
                "hook_errors": len(hook_errors),
            },
        )
        if interrupted is not None:
            # Hooks have run; let the abort reach the caller.
            raise interrupted
        return report

    def _run_stage(self, stage: Stage, state: RunState, scope: EnvironmentScope) -> None:
        view = state.view()
        try:
            allowed = bool(stage.guard(view))
        except Exception as e:
            ts = now_iso()
            state.mark(stage.name, StageStatus.RUNNING)
            outcome = StageOutcome(
                name=stage.name,
                status=StageStatus.FAILED,
                mode=stage.mode,
                started_at=ts,
                finished_at=ts,
                error=ErrorInfo(ErrorKind.GUARD_FAULTED, f"{type(e).__name__}: {e}"),
                allow_failure=stage.allow_failure,
            )
            state.commit(outcome)
            self.log("stage_done", {"stage": stage.name, "status": outcome.status.value, "error_kind": ErrorKind.GUARD_FAULTED.value})
            return

        if not allowed:
            ts = now_iso()
            reason = f"guard {_guard_name(stage)} is false"
            state.commit(
                StageOutcome(
                    name=stage.name,
                    status=StageStatus.SKIPPED,
                    mode=stage.mode,
                    started_at=ts,
                    finished_at=ts,
                    skip_reason=reason,
                    allow_failure=stage.allow_failure,
                )
            )
            self.log("stage_skipped", {"stage": stage.name, "reason": reason})
            return

        state.mark(stage.name, StageStatus.RUNNING)
        self.log("stage_start", {"stage": stage.name, "mode": stage.mode.value, "tasks": [t.name for t in stage.tasks]})

        with scope.overlay(stage.environment):
            execution = self.dispatcher.dispatch(stage, scope, view)

        outcome = StageOutcome(
            name=stage.name,
            status=execution.status,
            mode=stage.mode,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
            duration_s=execution.duration_s,
            tasks=tuple(execution.tasks),
            error=execution.error,
            allow_failure=stage.allow_failure,
        )
        for name in state.commit(outcome, execution.artifacts):
            self.log("artifact_conflict", {"stage": stage.name, "artifact": name})

        self.log(
            "stage_done",
            {
                "stage": stage.name,
                "status": outcome.status.value,
                "duration_s": round(outcome.duration_s, 3),
                "error_kind": outcome.error.kind.value if outcome.error else None,
                "result": state.current_result.value,
            },
        )

    @staticmethod
    def _abort_running(pipeline: Pipeline, state: RunState, error: ErrorInfo) -> None:
        statuses = state.statuses()
        for stage in pipeline.stages:
            if statuses[stage.name] != StageStatus.RUNNING:
                continue
            ts = now_iso()
            state.commit(
                StageOutcome(
                    name=stage.name,
                    status=StageStatus.FAILED,
                    mode=stage.mode,
                    started_at=ts,
                    finished_at=ts,
                    error=error,
                )
            )

    @staticmethod
    def _stage_outcomes(pipeline: Pipeline, state: RunState):
        recorded = {o.name: o for o in state.history}
        out = []
        for stage in pipeline.stages:
            if stage.name in recorded:
                out.append(recorded[stage.name])
                continue
            # Never reached (engine error).
            ts = ""
            out.append(StageOutcome(name=stage.name, status=StageStatus.PENDING, mode=stage.mode, started_at=ts, finished_at=ts))
        return tuple(out)


def execute(pipeline: Pipeline, environment: Optional[Mapping[str, str]] = None, **kwargs) -> RunReport:
    """Shortcut for ``Orchestrator(**kwargs).execute(pipeline, environment)``."""
    return Orchestrator(**kwargs).execute(pipeline, environment)
