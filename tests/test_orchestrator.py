import sys
import time

import pytest

from stageflow.core.pipeline.base import Hook, Pipeline, Stage, Task
from stageflow.core.pipeline.log import MemoryLogger
from stageflow.core.types import ErrorKind, HookTrigger, RunResult, StageMode, StageStatus, TaskResult
from stageflow.engine.guards import never, on_success
from stageflow.engine.orchestrator import Orchestrator


def ok(name, **artifacts):
    return Task(name, run=lambda env, ctx: TaskResult.success(artifacts))


def fail(name, detail="boom"):
    return Task(name, run=lambda env, ctx: TaskResult.failure(detail))


def raises(name):
    def _run(env, ctx):
        raise RuntimeError("kaboom")
    return Task(name, run=_run)


def trigger_hooks(fired):
    return [Hook(t, lambda state, t=t: fired.append(t), name=t.value) for t in HookTrigger]


def test_failed_test_stage_skips_guarded_build_and_deploy():
    fired = []
    pipeline = Pipeline(
        "ci",
        stages=[
            Stage("Setup", [ok("venv")]),
            Stage("Test", [fail("unit", "3 tests failed")]),
            Stage("Build", [ok("image")], guard=on_success),
            Stage("Deploy", [ok("remote")], guard=on_success),
        ],
        hooks=trigger_hooks(fired),
    )
    report = Orchestrator().execute(pipeline)

    assert report.statuses() == {
        "Setup": "succeeded",
        "Test": "failed",
        "Build": "skipped",
        "Deploy": "skipped",
    }
    assert report.result == RunResult.FAILURE
    assert report.exit_code != 0
    assert report.stage("Test").error.kind == ErrorKind.TASK_FAILED
    assert "3 tests failed" in report.stage("Test").error.detail
    assert report.stage("Build").error is None
    assert report.stage("Build").skip_reason
    assert fired == [HookTrigger.ALWAYS, HookTrigger.FAILURE, HookTrigger.CLEANUP]


def test_always_and_cleanup_fire_once_wherever_the_failure_is():
    layouts = [
        [fail("a"), ok("b"), ok("c")],
        [ok("a"), fail("b"), ok("c")],
        [ok("a"), ok("b"), raises("c")],
        [ok("a"), ok("b"), ok("c")],
    ]
    for tasks in layouts:
        fired = []
        stages = [Stage(f"S{i}", [t]) for i, t in enumerate(tasks)]
        report = Orchestrator().execute(Pipeline("p", stages, hooks=trigger_hooks(fired)))
        assert fired.count(HookTrigger.ALWAYS) == 1
        assert fired.count(HookTrigger.CLEANUP) == 1
        if report.result == RunResult.FAILURE:
            assert HookTrigger.SUCCESS not in fired
            assert fired.count(HookTrigger.FAILURE) == 1
        else:
            assert HookTrigger.FAILURE not in fired
            assert fired.count(HookTrigger.SUCCESS) == 1


def test_skipped_stage_leaves_result_unchanged():
    report = Orchestrator().execute(Pipeline("p", [Stage("A", [ok("a")]), Stage("B", [ok("b")], guard=never)]))
    assert report.stage("B").status == StageStatus.SKIPPED
    assert report.result == RunResult.SUCCESS
    assert report.exit_code == 0


def test_all_skipped_run_counts_as_success():
    report = Orchestrator().execute(Pipeline("p", [Stage("A", [ok("a")], guard=never)]))
    assert report.result == RunResult.SUCCESS


def test_stages_after_a_failure_still_run_unless_guarded():
    seen = []
    later = Task("notify", run=lambda env, ctx: seen.append(ctx.current_result))
    report = Orchestrator().execute(Pipeline("p", [Stage("A", [fail("a")]), Stage("B", [later])]))
    assert report.stage("B").status == StageStatus.SUCCEEDED
    assert seen == [RunResult.FAILURE]
    assert report.result == RunResult.FAILURE


def test_parallel_stage_waits_for_every_sibling():
    def slow(env, ctx):
        time.sleep(0.2)
        return TaskResult.success({"slow": "done"})

    stage = Stage("Checks", [fail("a"), Task("b", run=slow), ok("c")], mode=StageMode.PARALLEL)
    report = Orchestrator().execute(Pipeline("p", [stage]))
    out = report.stage("Checks")

    assert out.status == StageStatus.FAILED
    assert [t.name for t in out.tasks] == ["a", "b", "c"]
    assert [t.status.value for t in out.tasks] == ["failed", "succeeded", "succeeded"]
    assert out.duration_s >= 0.2
    assert report.artifacts["slow"] == "done"


def test_guard_fault_fails_the_stage():
    def bad_guard(view):
        raise ValueError("nope")

    report = Orchestrator().execute(Pipeline("p", [Stage("A", [ok("a")], guard=bad_guard)]))
    assert report.stage("A").status == StageStatus.FAILED
    assert report.stage("A").error.kind == ErrorKind.GUARD_FAULTED
    assert report.result == RunResult.FAILURE


def test_guard_is_evaluated_once_per_stage_in_order():
    calls = []

    def guard(name):
        def _g(view):
            calls.append(name)
            return True
        return _g

    Orchestrator().execute(Pipeline("p", [Stage(n, [ok(n.lower())], guard=guard(n)) for n in ("A", "B", "C")]))
    assert calls == ["A", "B", "C"]


def test_allow_failure_keeps_result_green():
    report = Orchestrator().execute(
        Pipeline(
            "p",
            [
                Stage("Lint", [fail("pylint")], allow_failure=True),
                Stage("Build", [ok("image")], guard=on_success),
            ],
        )
    )
    assert report.stage("Lint").status == StageStatus.FAILED
    assert report.stage("Build").status == StageStatus.SUCCEEDED
    assert report.result == RunResult.SUCCESS


def test_engine_error_still_runs_hooks_and_reports_unreached_stages():
    fired = []
    orch = Orchestrator()

    def broken_dispatch(stage, scope, view):
        raise RuntimeError("dispatcher exploded")

    orch.dispatcher.dispatch = broken_dispatch
    pipeline = Pipeline("p", [Stage("A", [ok("a")]), Stage("B", [ok("b")])], hooks=trigger_hooks(fired))
    report = orch.execute(pipeline)

    assert report.engine_error.kind == ErrorKind.ENGINE_ERROR
    assert report.stage("A").status == StageStatus.FAILED
    assert report.stage("B").status == StageStatus.PENDING
    assert report.result == RunResult.FAILURE
    assert fired == [HookTrigger.ALWAYS, HookTrigger.FAILURE, HookTrigger.CLEANUP]


def test_hook_fault_is_recorded_and_later_hooks_run():
    fired = []

    def broken(state):
        raise RuntimeError("publish failed")

    hooks = [
        Hook(HookTrigger.ALWAYS, broken, name="publish"),
        Hook(HookTrigger.SUCCESS, lambda s: fired.append("success")),
        Hook(HookTrigger.CLEANUP, lambda s: fired.append("cleanup")),
    ]
    report = Orchestrator().execute(Pipeline("p", [Stage("A", [ok("a")])], hooks=hooks))

    assert fired == ["success", "cleanup"]
    assert len(report.hook_errors) == 1
    assert report.hook_errors[0].hook == "publish"
    assert report.hook_errors[0].error.kind == ErrorKind.HOOK_FAULTED
    assert report.result == RunResult.SUCCESS


def test_environment_layers_are_scoped_to_their_stage():
    seen = {}

    def capture(key):
        def _run(env, ctx):
            seen[key] = dict(env)
        return _run

    pipeline = Pipeline(
        "p",
        [
            Stage("A", [Task("a", run=capture("a"), environment={"TASK": "a"})], environment={"STAGE": "A", "BASE": "stage"}),
            Stage("B", [Task("b", run=capture("b"))]),
        ],
        environment={"PIPE": "1"},
    )
    Orchestrator().execute(pipeline, {"BASE": "run"})

    assert seen["a"] == {"BASE": "stage", "PIPE": "1", "STAGE": "A", "TASK": "a"}
    assert seen["b"] == {"BASE": "run", "PIPE": "1"}


def test_stage_overlay_released_after_task_fault():
    seen = {}
    pipeline = Pipeline(
        "p",
        [
            Stage("A", [raises("a")], environment={"LEAK": "yes"}),
            Stage("B", [Task("b", run=lambda env, ctx: seen.update(env))]),
        ],
    )
    report = Orchestrator().execute(pipeline)
    assert report.stage("A").tasks[0].error.kind == ErrorKind.TASK_FAULTED
    assert "LEAK" not in seen


def test_artifacts_visible_to_later_stages_only_after_commit():
    seen = {}

    def read(env, ctx):
        seen.update(ctx.artifacts)

    pipeline = Pipeline(
        "p",
        [
            Stage("Test", [ok("unit", test_results="reports/junit.xml")]),
            Stage("Publish", [Task("read", run=read)]),
        ],
    )
    report = Orchestrator().execute(pipeline)
    assert seen == {"test_results": "reports/junit.xml"}
    assert dict(report.artifacts) == {"test_results": "reports/junit.xml"}


def test_same_pipeline_twice_gives_identical_reports_without_timestamps():
    pipeline = Pipeline(
        "p",
        [
            Stage("Setup", [ok("venv", venv=".venv")]),
            Stage("Checks", [ok("lint"), fail("ui"), Task.noop("it")], mode=StageMode.PARALLEL),
            Stage("Deploy", [ok("remote")], guard=on_success),
        ],
    )
    first = Orchestrator().execute(pipeline, {"A": "1"})
    second = Orchestrator().execute(pipeline, {"A": "1"})
    assert first.to_dict(timestamps=False) == second.to_dict(timestamps=False)


def test_event_log_records_run_lifecycle():
    log = MemoryLogger()
    Orchestrator(log=log).execute(Pipeline("p", [Stage("A", [ok("a")]), Stage("B", [ok("b")], guard=never)]))
    names = log.names()
    assert names[0] == "run_start"
    assert names[-1] == "run_done"
    assert "stage_skipped" in names
    assert names.count("task_done") == 1


def test_task_calling_sys_exit_is_a_task_fault():
    fired = []

    def wrapped_cli(env, ctx):
        sys.exit(3)

    report = Orchestrator().execute(
        Pipeline("p", [Stage("A", [Task("cli", run=wrapped_cli)]), Stage("B", [ok("b")])], hooks=trigger_hooks(fired))
    )
    assert report.stage("A").status == StageStatus.FAILED
    assert report.stage("A").tasks[0].error.kind == ErrorKind.TASK_FAULTED
    assert report.stage("A").tasks[0].error.data["exception"] == "SystemExit"
    assert report.stage("B").status == StageStatus.SUCCEEDED
    assert report.result == RunResult.FAILURE
    assert fired == [HookTrigger.ALWAYS, HookTrigger.FAILURE, HookTrigger.CLEANUP]


def test_keyboard_interrupt_in_parallel_task_is_recorded():
    fired = []

    def interrupted(env, ctx):
        raise KeyboardInterrupt()

    stage = Stage("Checks", [Task("ui", run=interrupted), ok("lint")], mode=StageMode.PARALLEL)
    report = Orchestrator().execute(Pipeline("p", [stage], hooks=trigger_hooks(fired)))

    assert [t.status.value for t in report.stage("Checks").tasks] == ["failed", "succeeded"]
    assert report.stage("Checks").tasks[0].error.kind == ErrorKind.TASK_FAULTED
    assert fired.count(HookTrigger.ALWAYS) == 1
    assert fired.count(HookTrigger.CLEANUP) == 1


def test_abort_runs_hooks_once_then_reaches_the_caller():
    fired = []
    log = MemoryLogger()
    orch = Orchestrator(log=log)

    def ctrl_c(stage, scope, view):
        raise KeyboardInterrupt()

    orch.dispatcher.dispatch = ctrl_c
    pipeline = Pipeline("p", [Stage("A", [ok("a")]), Stage("B", [ok("b")])], hooks=trigger_hooks(fired))
    with pytest.raises(KeyboardInterrupt):
        orch.execute(pipeline)

    assert fired == [HookTrigger.ALWAYS, HookTrigger.FAILURE, HookTrigger.CLEANUP]
    names = log.names()
    assert "engine_error" in names
    assert names[-1] == "run_done"
    assert log.events[-1][1]["stages"] == {"A": "failed", "B": "pending"}


def test_hook_calling_sys_exit_does_not_stop_cleanup():
    fired = []

    def notify(state):
        sys.exit(1)

    hooks = [
        Hook(HookTrigger.ALWAYS, notify, name="notify"),
        Hook(HookTrigger.SUCCESS, lambda s: fired.append("success")),
        Hook(HookTrigger.CLEANUP, lambda s: fired.append("cleanup")),
    ]
    report = Orchestrator().execute(Pipeline("p", [Stage("A", [ok("a")])], hooks=hooks))

    assert fired == ["success", "cleanup"]
    assert [h.hook for h in report.hook_errors] == ["notify"]
    assert report.hook_errors[0].error.kind == ErrorKind.HOOK_FAULTED
    assert report.exit_code == 0
