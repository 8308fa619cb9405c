from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional, Tuple

from stageflow.core.io import ensure_dir
from stageflow.core.pipeline.log import JsonlLogger
from stageflow.core.schema import PipelineConfig
from stageflow.credentials.providers import CredentialProvider
from stageflow.engine.orchestrator import Orchestrator
from stageflow.engine.report import RunReport
from stageflow.pipelines.factory import build_pipeline, make_credentials
from stageflow.reporting.export import export_report
from stageflow.reporting.sink import DirectorySink


class ConfiguredRun:
    """Run a YAML-defined pipeline: logger, sink, credentials, report export."""

    def __init__(self, *, credentials: Optional[CredentialProvider] = None):
        self.credentials = credentials

    def run(self, cfg: PipelineConfig, environment: Optional[Mapping[str, str]] = None) -> Tuple[RunReport, Path]:
        """Execute and return the report plus the run output directory."""
        run_root = ensure_dir(Path(cfg.output_dir) / cfg.name / cfg.run_id)
        log = JsonlLogger(run_root / "run.log.jsonl", echo=cfg.echo_log)
        sink = DirectorySink(run_root / "artifacts")

        pipeline = build_pipeline(cfg, sink=sink)
        orchestrator = Orchestrator(
            credentials=self.credentials or make_credentials(cfg.credentials),
            log=log,
            max_workers=cfg.max_workers,
        )
        report = orchestrator.execute(pipeline, environment)

        paths = export_report(report, run_root)
        log("report_written", {"report": str(paths["report"]), "stages": str(paths["stages"])})
        return report, run_root
