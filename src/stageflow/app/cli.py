from __future__ import annotations

import argparse
import sys
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from stageflow.core.config import load_pipeline_config
from stageflow.core.errors import PipelineDefinitionError
from stageflow.pipelines.factory import build_pipeline
from stageflow.pipelines.run import ConfiguredRun
from stageflow.reporting.sink import MemorySink


def _env_pairs(values: Optional[List[str]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values or []:
        if "=" not in item:
            raise argparse.ArgumentTypeError(f"--env expects KEY=VALUE, got {item!r}")
        k, v = item.split("=", 1)
        out[k.strip()] = v
    return out


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_pipeline_config(args.config)

    # overrides
    if args.output_dir:
        cfg.output_dir = args.output_dir
    if args.run_id:
        cfg.run_id = args.run_id
    if args.max_workers is not None:
        cfg.max_workers = int(args.max_workers)
    if args.quiet:
        cfg.echo_log = False

    report, run_root = ConfiguredRun().run(cfg, environment=_env_pairs(args.env))
    for line in report.summary_lines():
        print(line)
    print(f"Report: {run_root / 'report.json'}")
    return report.exit_code


def cmd_validate(args: argparse.Namespace) -> int:
    cfg = load_pipeline_config(args.config)
    pipeline = build_pipeline(cfg, sink=MemorySink())
    n_tasks = sum(len(st.tasks) for st in pipeline.stages)
    print(f"OK: {pipeline.name} ({len(pipeline.stages)} stages, {n_tasks} tasks, {len(pipeline.hooks)} hooks)")
    return 0


def cmd_stages(args: argparse.Namespace) -> int:
    cfg = load_pipeline_config(args.config)
    for st in cfg.stages:
        tasks = ",".join(t.name for t in st.tasks)
        print(f"{st.name:24s} mode={st.mode:10s} guard={st.guard:16s} tasks={tasks}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="stageflow")
    sub = p.add_subparsers(dest="cmd", required=True)

    spr = sub.add_parser("run", help="Execute a pipeline definition")
    spr.add_argument("--config", default="configs/pipeline.yaml", help="Pipeline YAML definition.")
    spr.add_argument("--env", action="append", metavar="KEY=VALUE", help="Initial environment entry (repeatable).")
    spr.add_argument("--output-dir", help="Override output_dir from config.")
    spr.add_argument("--run-id", help="Override the run id (default: timestamp).")
    spr.add_argument("--max-workers", type=int, help="Worker threads for parallel stages.")
    spr.add_argument("--quiet", action="store_true", help="Do not echo the event log to stdout.")
    spr.set_defaults(func=cmd_run)

    spv = sub.add_parser("validate", help="Validate a pipeline definition without running it")
    spv.add_argument("--config", default="configs/pipeline.yaml", help="Pipeline YAML definition.")
    spv.set_defaults(func=cmd_validate)

    sps = sub.add_parser("stages", help="List stages of a pipeline definition")
    sps.add_argument("--config", default="configs/pipeline.yaml", help="Pipeline YAML definition.")
    sps.set_defaults(func=cmd_stages)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return int(args.func(args))
    except (FileNotFoundError, ValidationError, PipelineDefinitionError, yaml.YAMLError, argparse.ArgumentTypeError, ValueError) as e:
        print(f"Invalid pipeline configuration: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
