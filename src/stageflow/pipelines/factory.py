"""Build runtime pipeline objects from a validated ``PipelineConfig``."""

from __future__ import annotations

from typing import List, Optional

from stageflow.core.errors import HookFaulted
from stageflow.core.pipeline.base import Hook, Pipeline, Stage, Task
from stageflow.core.schema import CredentialsCfg, HookCfg, PipelineConfig, StageCfg, TaskCfg
from stageflow.core.types import HookTrigger, StageMode
from stageflow.credentials.providers import (
    CredentialProvider,
    EnvCredentialProvider,
    FileCredentialProvider,
    NullCredentialProvider,
)
from stageflow.engine.context import TaskContext
from stageflow.engine.guards import parse_guard
from stageflow.engine.state import RunState
from stageflow.reporting.sink import ArtifactSink, publish_artifacts
from stageflow.tasks.deploy import DeploySpec, deploy_task, ssh_transport
from stageflow.tasks.shell import ShellCommand, shell_task


def make_credentials(cfg: CredentialsCfg) -> CredentialProvider:
    if cfg.source == "env":
        return EnvCredentialProvider(prefix=cfg.prefix)
    if cfg.source == "files":
        return FileCredentialProvider(cfg.directory or "")
    return NullCredentialProvider()


def make_task(cfg: TaskCfg) -> Task:
    if cfg.kind == "noop":
        return Task(name=cfg.name, environment=cfg.environment, credentials=tuple(cfg.credentials))

    if cfg.kind == "shell":
        return shell_task(
            cfg.name,
            cfg.command or "",
            cwd=cfg.cwd,
            timeout_s=cfg.timeout_s,
            outputs=cfg.outputs,
            environment=cfg.environment,
            credentials=cfg.credentials,
            terminate_on_cancel=cfg.terminate_on_cancel,
        )

    if cfg.kind == "deploy":
        d = cfg.deploy
        spec = DeploySpec(
            container=d.container,
            image=d.image,
            registry=d.registry,
            ports=tuple(d.ports),
            env=dict(d.env),
            run_args=tuple(d.run_args),
            runtime=d.runtime,
            stop_attempts=d.stop_attempts,
            stop_retry_delay_s=d.stop_retry_delay_s,
            command_timeout_s=d.command_timeout_s,
        )
        needed = list(cfg.credentials)
        if d.ssh_credential and d.ssh_credential not in needed:
            needed.append(d.ssh_credential)
        transport = ssh_transport(
            d.host,
            d.user,
            port=d.port,
            key_credential=d.ssh_credential,
            connect_timeout_s=d.connect_timeout_s,
        )
        return deploy_task(
            cfg.name,
            spec,
            transport,
            registry_credential=d.registry_credential,
            credentials=needed,
            environment=cfg.environment,
        )

    raise ValueError(f"Unknown task kind: {cfg.kind!r}")


def make_stage(cfg: StageCfg, max_workers: Optional[int] = None) -> Stage:
    return Stage(
        name=cfg.name,
        tasks=tuple(make_task(t) for t in cfg.tasks),
        mode=StageMode(cfg.mode),
        guard=parse_guard(cfg.guard),
        environment=cfg.environment,
        timeout_s=cfg.timeout_s,
        allow_failure=cfg.allow_failure,
        max_workers=cfg.max_workers or max_workers,
    )


def _shell_hook_action(cfg: HookCfg, name: str):
    cmd = ShellCommand(
        command=cfg.command if isinstance(cfg.command, str) else tuple(cfg.command or ()),
        cwd=cfg.cwd,
        timeout_s=cfg.timeout_s,
    )

    def _run(state: RunState) -> None:
        ctx = TaskContext(stage="post", task=name, view=state.view())
        env = dict(state.environment)
        env["STAGEFLOW_RESULT"] = state.current_result.value
        res = cmd(env, ctx)
        if not res.ok:
            detail = res.error.detail if res.error else "hook command failed"
            raise HookFaulted(f"{detail}\n{res.logs}".strip())

    return _run


def make_hook(cfg: HookCfg, sink: Optional[ArtifactSink] = None) -> Hook:
    trigger = HookTrigger(cfg.trigger)
    if cfg.kind == "publish":
        if sink is None:
            raise ValueError("publish hooks need an artifact sink")
        hook = publish_artifacts(sink, cfg.artifacts, trigger=trigger)
        return Hook(trigger=trigger, action=hook.action, name=cfg.name or hook.name)

    name = cfg.name or f"{cfg.trigger}_shell"
    return Hook(trigger=trigger, action=_shell_hook_action(cfg, name), name=name)


def build_pipeline(cfg: PipelineConfig, sink: Optional[ArtifactSink] = None) -> Pipeline:
    """Turn a validated config into an immutable Pipeline."""
    stages: List[Stage] = [make_stage(s, cfg.max_workers) for s in cfg.stages]
    hooks: List[Hook] = [make_hook(h, sink) for h in cfg.hooks]
    return Pipeline(name=cfg.name, stages=tuple(stages), hooks=tuple(hooks), environment=cfg.environment)
