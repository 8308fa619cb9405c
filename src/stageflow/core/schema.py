"""Pydantic schema for pipeline definitions loaded from YAML."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from stageflow.engine.guards import parse_guard


def _stringify(v: Any) -> Dict[str, str]:
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ValueError("environment must be a mapping")
    # YAML turns `true` / `8080` into bool / int; the environment is all strings.
    return {str(k): ("true" if val is True else "false" if val is False else str(val)) for k, val in v.items()}


class DeployCfg(BaseModel):
    """Remote deploy target and container to run there."""

    host: str
    user: str = ""
    port: int = 22
    ssh_credential: Optional[str] = None
    registry_credential: Optional[str] = None
    connect_timeout_s: int = 10

    container: str
    image: str
    registry: Optional[str] = None
    ports: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    run_args: List[str] = Field(default_factory=list)
    runtime: str = "docker"
    stop_attempts: int = Field(default=3, ge=1)
    stop_retry_delay_s: float = Field(default=1.0, ge=0)
    command_timeout_s: Optional[float] = None

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Dict[str, str]:
        return _stringify(v)

    @field_validator("ports", mode="before")
    @classmethod
    def _ports(cls, v: Any):
        return [str(p) for p in (v or [])]


class TaskCfg(BaseModel):
    """One task. ``kind`` picks the implementation."""

    name: str
    kind: Literal["shell", "noop", "deploy"] = "shell"
    command: Optional[Union[str, List[str]]] = None
    cwd: Optional[str] = None
    timeout_s: Optional[float] = None
    terminate_on_cancel: bool = False
    environment: Dict[str, str] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict, description="Artifact name -> file path")
    credentials: List[str] = Field(default_factory=list)
    deploy: Optional[DeployCfg] = None

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, v: Any) -> Dict[str, str]:
        return _stringify(v)

    @model_validator(mode="after")
    def _check_kind(self):
        if self.kind == "shell" and not self.command:
            raise ValueError(f"task {self.name!r}: shell tasks need a command")
        if self.kind == "deploy" and self.deploy is None:
            raise ValueError(f"task {self.name!r}: deploy tasks need a deploy section")
        return self


class StageCfg(BaseModel):
    """Stage definition: guard expression, mode and tasks."""

    name: str
    mode: Literal["sequential", "parallel"] = "sequential"
    guard: str = "always"
    environment: Dict[str, str] = Field(default_factory=dict)
    timeout_s: Optional[float] = Field(default=None, gt=0)
    allow_failure: bool = False
    max_workers: Optional[int] = Field(default=None, ge=1)
    tasks: List[TaskCfg] = Field(min_length=1)

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, v: Any) -> Dict[str, str]:
        return _stringify(v)

    @field_validator("guard")
    @classmethod
    def _guard_parses(cls, v: str) -> str:
        parse_guard(v)
        return v

    @model_validator(mode="after")
    def _unique_tasks(self):
        names = [t.name for t in self.tasks]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"stage {self.name!r}: duplicate task names {dupes}")
        return self


class HookCfg(BaseModel):
    """Completion hook: a shell command or an artifact publish step."""

    trigger: Literal["always", "success", "failure", "cleanup"]
    name: str = ""
    kind: Literal["shell", "publish"] = "shell"
    command: Optional[Union[str, List[str]]] = None
    cwd: Optional[str] = None
    timeout_s: Optional[float] = None
    artifacts: Optional[List[str]] = None

    @model_validator(mode="after")
    def _check_kind(self):
        if self.kind == "shell" and not self.command:
            raise ValueError(f"{self.trigger} hook {self.name!r}: shell hooks need a command")
        return self


class CredentialsCfg(BaseModel):
    """Where named credential bundles come from."""

    source: Literal["none", "env", "files"] = "env"
    prefix: str = "STAGEFLOW_CRED_"
    directory: Optional[str] = None

    @model_validator(mode="after")
    def _check_source(self):
        if self.source == "files" and not self.directory:
            raise ValueError("credentials.source=files needs credentials.directory")
        return self


class PipelineConfig(BaseModel):
    """Pipeline configuration loaded from YAML."""

    name: str = "pipeline"
    environment: Dict[str, str] = Field(default_factory=dict)
    stages: List[StageCfg] = Field(min_length=1)
    hooks: List[HookCfg] = Field(default_factory=list)
    credentials: CredentialsCfg = Field(default_factory=CredentialsCfg)

    max_workers: Optional[int] = Field(default=None, ge=1)
    output_dir: str = "runs"
    echo_log: bool = True
    run_id: str = Field(
        default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S"),
        description="Timestamp used to isolate run output folders.",
    )

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, v: Any) -> Dict[str, str]:
        return _stringify(v)

    @model_validator(mode="after")
    def _unique_stages(self):
        names = [s.name for s in self.stages]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate stage names {dupes}")
        return self
