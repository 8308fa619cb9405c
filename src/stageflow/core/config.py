"""YAML and Pydantic config loaders."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Type, TypeVar

import yaml

from stageflow.core.schema import PipelineConfig

T = TypeVar("T")


def load_yaml(path: str | Path) -> Dict[str, Any]:
    """Load a YAML mapping from file."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config must be a mapping at top-level: {p}")
    return data


def load_pydantic(path: str | Path, cls: Type[T]) -> T:
    """Load YAML and validate it against a Pydantic v2 model."""
    data = load_yaml(path)
    return cls.model_validate(data)  # type: ignore[attr-defined]


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    """Load a pipeline definition YAML."""
    return load_pydantic(path, PipelineConfig)
