"""Subprocess-backed tasks (test runner, linter, image build, ...)."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from stageflow.core.pipeline.base import Task
from stageflow.core.types import ErrorKind, TaskResult
from stageflow.credentials.providers import Credential, redact, secret_values
from stageflow.engine.context import TaskContext

POLL_S = 0.2


def _argv(command: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(command, str):
        return shlex.split(command)
    return [str(c) for c in command]


def credential_env(credentials: Mapping[str, Credential]) -> Dict[str, str]:
    """Expose credentials as ``<NAME>_USERNAME`` / ``_PASSWORD`` / ``_KEY_FILE``."""
    out: Dict[str, str] = {}
    for name, cred in credentials.items():
        key = "".join(ch if ch.isalnum() else "_" for ch in name).upper()
        if cred.username:
            out[f"{key}_USERNAME"] = cred.username
        if cred.secret:
            out[f"{key}_PASSWORD"] = cred.secret
        if cred.key_file:
            out[f"{key}_KEY_FILE"] = cred.key_file
    return out


@dataclass(frozen=True)
class ShellCommand:
    """Run a command without a shell and capture combined output.

    ``outputs`` maps artifact names to paths (relative to ``cwd``); files that
    exist after the command are attached, also when the command failed, so
    test reports survive a red build.
    """
    command: Union[str, Tuple[str, ...]]
    cwd: Optional[str] = None
    timeout_s: Optional[float] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    inherit_env: bool = True
    terminate_on_cancel: bool = False

    def __call__(self, env: Dict[str, str], ctx: TaskContext) -> TaskResult:
        args = _argv(self.command)
        full_env = os.environ.copy() if self.inherit_env else {}
        full_env.update(env)
        full_env.update(credential_env(ctx.credentials))

        t0 = time.monotonic()
        try:
            proc = subprocess.Popen(
                args,
                cwd=self.cwd,
                env=full_env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except (FileNotFoundError, PermissionError) as e:
            return TaskResult.failure(f"cannot start {args[0] if args else '<empty>'}: {e}")

        stopped: Optional[str] = None
        while True:
            try:
                out, _ = proc.communicate(timeout=POLL_S)
                break
            except subprocess.TimeoutExpired:
                if self.timeout_s is not None and time.monotonic() - t0 > self.timeout_s:
                    proc.kill()
                    stopped = "timeout"
                elif self.terminate_on_cancel and ctx.cancelled:
                    proc.terminate()
                    stopped = "cancelled"
                if stopped:
                    out, _ = proc.communicate()
                    break

        logs = redact(out or "", secret_values(ctx.credentials))
        artifacts = self._collect_outputs()

        if stopped == "timeout":
            return TaskResult.failure(
                f"command timed out after {self.timeout_s}s", kind=ErrorKind.TIMEOUT, logs=logs, artifacts=artifacts
            )
        if stopped == "cancelled":
            return TaskResult.failure("command terminated after stage timeout", kind=ErrorKind.TIMEOUT, logs=logs, artifacts=artifacts)
        if proc.returncode != 0:
            return TaskResult.failure(f"command exited with code {proc.returncode}", logs=logs, artifacts=artifacts)
        return TaskResult.success(artifacts, logs)

    def _collect_outputs(self) -> Dict[str, str]:
        base = Path(self.cwd) if self.cwd else Path.cwd()
        found: Dict[str, str] = {}
        for name, rel in self.outputs.items():
            p = Path(rel)
            p = p if p.is_absolute() else base / p
            if p.exists():
                found[name] = str(p)
        return found


def shell_task(
    name: str,
    command: Union[str, Sequence[str]],
    *,
    cwd: Optional[str] = None,
    timeout_s: Optional[float] = None,
    outputs: Optional[Mapping[str, str]] = None,
    environment: Optional[Mapping[str, str]] = None,
    credentials: Sequence[str] = (),
    terminate_on_cancel: bool = False,
) -> Task:
    """Build a Task that runs ``command`` through ``ShellCommand``."""
    cmd = command if isinstance(command, str) else tuple(str(c) for c in command)
    outs = dict(outputs or {})
    return Task(
        name=name,
        run=ShellCommand(
            command=cmd,
            cwd=cwd,
            timeout_s=timeout_s,
            outputs=outs,
            terminate_on_cancel=terminate_on_cancel,
        ),
        outputs=tuple(outs),
        environment=dict(environment or {}),
        credentials=tuple(credentials),
    )
