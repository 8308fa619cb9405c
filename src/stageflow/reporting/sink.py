"""Artifact sinks: hand collected artifacts to an external publisher."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol

from stageflow.core.io import dump_json, ensure_dir
from stageflow.core.pipeline.base import Hook
from stageflow.core.types import HookTrigger
from stageflow.engine.state import RunState


class ArtifactSink(Protocol):
    def publish(self, name: str, reference: Any) -> Any: ...


@dataclass
class MemorySink:
    published: Dict[str, Any] = field(default_factory=dict)

    def publish(self, name: str, reference: Any) -> Any:
        self.published[name] = reference
        return reference


@dataclass
class DirectorySink:
    """Copies file artifacts under ``root`` and indexes everything in ``index.json``."""
    root: Path
    index: Dict[str, Any] = field(default_factory=dict)

    def publish(self, name: str, reference: Any) -> Any:
        dest_dir = ensure_dir(self.root)
        stored: Any = reference
        if isinstance(reference, (str, Path)) and Path(reference).exists():
            src = Path(reference)
            dest = dest_dir / name
            if src.is_dir():
                shutil.copytree(src, dest, dirs_exist_ok=True)
            else:
                dest = dest.with_suffix(src.suffix) if src.suffix and not dest.suffix else dest
                shutil.copy2(src, dest)
            stored = str(dest)
        self.index[name] = stored
        dump_json(dest_dir / "index.json", self.index)
        return stored


def publish_artifacts(
    sink: ArtifactSink,
    names: Optional[Iterable[str]] = None,
    *,
    trigger: HookTrigger = HookTrigger.ALWAYS,
) -> Hook:
    """Hook that publishes run artifacts (all, or only ``names``) to ``sink``."""
    wanted = list(names) if names is not None else None

    def _publish(state: RunState) -> None:
        artifacts = state.artifacts
        keys = wanted if wanted is not None else sorted(artifacts)
        missing = [k for k in keys if k not in artifacts]
        for k in keys:
            if k in artifacts:
                sink.publish(k, artifacts[k])
        if missing:
            raise KeyError(f"artifacts not produced: {', '.join(missing)}")

    return Hook(trigger=trigger, action=_publish, name="publish_artifacts")
