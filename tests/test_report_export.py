import csv

from stageflow.core.io import read_json
from stageflow.core.pipeline.base import Hook, Pipeline, Stage, Task
from stageflow.core.types import HookTrigger, StageMode, TaskResult
from stageflow.engine.guards import on_success
from stageflow.engine.orchestrator import execute
from stageflow.reporting.export import STAGE_COLS, export_report, stage_rows
from stageflow.reporting.sink import DirectorySink, MemorySink, publish_artifacts


def sample_report(hooks=()):
    def unit(env, ctx):
        return TaskResult.failure("1 failed", artifacts={"test_results": "reports/junit.xml"})

    pipeline = Pipeline(
        "ci",
        [
            Stage("Test", [Task("unit", run=unit)]),
            Stage("Checks", [Task.noop("lint"), Task.noop("ui")], mode=StageMode.PARALLEL),
            Stage("Deploy", [Task.noop("remote")], guard=on_success),
        ],
        hooks=hooks,
    )
    return execute(pipeline)


def test_stage_rows_interleave_tasks():
    rows = stage_rows(sample_report())
    assert [(r["stage"], r["task"]) for r in rows] == [
        ("Test", ""),
        ("Test", "unit"),
        ("Checks", ""),
        ("Checks", "lint"),
        ("Checks", "ui"),
        ("Deploy", ""),
    ]
    assert rows[0]["error_kind"] == "task_failed"
    assert rows[-1]["skip_reason"] == "guard on_success is false"


def test_export_writes_json_and_csv(tmp_path):
    report = sample_report()
    paths = export_report(report, tmp_path)

    data = read_json(paths["report"])
    assert data["result"] == "failure"
    assert data["exit_code"] == 1
    assert data["artifacts"] == {"test_results": "reports/junit.xml"}

    with paths["stages"].open(encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        assert reader.fieldnames == STAGE_COLS
        assert len(list(reader)) == 6


def test_summary_lines_name_failures():
    lines = sample_report().summary_lines()
    assert lines[0] == "Pipeline ci: FAILURE"
    assert any("unit: [task_failed] 1 failed" in line for line in lines)
    assert any("guard on_success is false" in line for line in lines)


def test_publish_hook_reports_missing_artifacts():
    sink = MemorySink()
    report = sample_report(hooks=[publish_artifacts(sink, ["test_results", "coverage_html"])])
    assert sink.published == {"test_results": "reports/junit.xml"}
    assert len(report.hook_errors) == 1
    assert "coverage_html" in report.hook_errors[0].error.detail


def test_directory_sink_copies_files(tmp_path):
    src = tmp_path / "junit.xml"
    src.write_text("<testsuite/>")
    (tmp_path / "cov").mkdir()
    (tmp_path / "cov" / "index.html").write_text("<html/>")

    sink = DirectorySink(tmp_path / "out")
    assert sink.publish("test_results", str(src)) == str(tmp_path / "out" / "test_results.xml")
    sink.publish("coverage_html", str(tmp_path / "cov"))
    sink.publish("deployment", {"container": "webapp"})

    assert (tmp_path / "out" / "coverage_html" / "index.html").exists()
    index = read_json(tmp_path / "out" / "index.json")
    assert index["deployment"] == {"container": "webapp"}


def test_publish_hook_can_run_on_failure_only():
    sink = MemorySink()
    hook = publish_artifacts(sink, trigger=HookTrigger.FAILURE)
    assert isinstance(hook, Hook)
    sample_report(hooks=[hook])
    assert "test_results" in sink.published
