import sys

import yaml

from stageflow.app.cli import main
from stageflow.core.io import read_json

PY = sys.executable


def write_pipeline(tmp_path, script, **extra):
    data = {
        "name": "demo",
        "credentials": {"source": "none"},
        "stages": [
            {
                "name": "Test",
                "tasks": [
                    {
                        "name": "unit",
                        "command": [PY, "-c", script],
                        "cwd": str(tmp_path),
                        "outputs": {"result_file": "result.txt"},
                    }
                ],
            },
            {"name": "Deploy", "guard": "success", "tasks": [{"name": "noop", "kind": "noop"}]},
        ],
        "hooks": [{"trigger": "always", "kind": "publish", "artifacts": ["result_file"]}],
    }
    data.update(extra)
    p = tmp_path / "pipeline.yaml"
    p.write_text(yaml.safe_dump(data), encoding="utf-8")
    return p


def run_cli(tmp_path, cfg, *more):
    return main(["run", "--config", str(cfg), "--output-dir", str(tmp_path / "runs"), "--run-id", "r1", "--quiet", *more])


def test_green_run_exits_zero_and_writes_report(tmp_path, capsys):
    cfg = write_pipeline(tmp_path, "open('result.txt', 'w').write('ok')")
    assert run_cli(tmp_path, cfg) == 0

    run_root = tmp_path / "runs" / "demo" / "r1"
    report = read_json(run_root / "report.json")
    assert report["result"] == "success"
    assert [s["status"] for s in report["stages"]] == ["succeeded", "succeeded"]
    assert (run_root / "stages.csv").exists()
    assert (run_root / "run.log.jsonl").exists()
    assert (run_root / "artifacts" / "result_file.txt").read_text() == "ok"

    out = capsys.readouterr().out
    assert "Pipeline demo: SUCCESS" in out
    assert "report.json" in out


def test_red_run_exits_non_zero(tmp_path):
    cfg = write_pipeline(tmp_path, "open('result.txt', 'w').write('1 failed'); raise SystemExit(1)")
    assert run_cli(tmp_path, cfg) == 1

    run_root = tmp_path / "runs" / "demo" / "r1"
    report = read_json(run_root / "report.json")
    assert report["result"] == "failure"
    assert [s["status"] for s in report["stages"]] == ["failed", "skipped"]
    # Reports produced by the failing test run are still published.
    assert (run_root / "artifacts" / "result_file.txt").read_text() == "1 failed"


def test_env_override_reaches_guards(tmp_path):
    cfg = write_pipeline(tmp_path, "open('result.txt', 'w').write('ok')")
    data = yaml.safe_load(cfg.read_text())
    data["stages"][1]["guard"] = "success and env:DEPLOY"
    cfg.write_text(yaml.safe_dump(data), encoding="utf-8")

    assert run_cli(tmp_path, cfg, "--env", "DEPLOY=0") == 0
    report = read_json(tmp_path / "runs" / "demo" / "r1" / "report.json")
    assert report["stages"][1]["status"] == "skipped"


def test_invalid_config_exits_two(tmp_path, capsys):
    p = tmp_path / "bad.yaml"
    p.write_text("name: bad\nstages: []\n", encoding="utf-8")
    assert main(["validate", "--config", str(p)]) == 2
    assert "Invalid pipeline configuration" in capsys.readouterr().err

    assert main(["run", "--config", str(tmp_path / "missing.yaml")]) == 2


def test_malformed_env_flag_exits_two(tmp_path):
    cfg = write_pipeline(tmp_path, "pass")
    assert run_cli(tmp_path, cfg, "--env", "NOEQUALS") == 2


def test_validate_and_stages(tmp_path, capsys):
    cfg = write_pipeline(tmp_path, "pass")
    assert main(["validate", "--config", str(cfg)]) == 0
    assert "OK: demo (2 stages, 2 tasks, 1 hooks)" in capsys.readouterr().out

    assert main(["stages", "--config", str(cfg)]) == 0
    out = capsys.readouterr().out
    assert "Test" in out
    assert "guard=success" in out
