"""Remote deploy: stop prior instance, log in to the registry, launch the new one.

The stop step is idempotent and tolerant: a missing container is not an
error, transport errors are retried, and whatever happens the launch is still
attempted. Authentication and launch failures are reported as distinct kinds.
"""

from __future__ import annotations

import shlex
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from stageflow.core.errors import AuthError, TransportError
from stageflow.core.pipeline.base import Task
from stageflow.core.types import ErrorKind, TaskResult
from stageflow.engine.context import TaskContext
from stageflow.tasks.transport import RemoteTransport, SshTransport

TransportFactory = Callable[[TaskContext], RemoteTransport]


@dataclass(frozen=True)
class DeploySpec:
    """What to run on the remote host."""
    container: str
    image: str
    registry: Optional[str] = None
    ports: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    run_args: Tuple[str, ...] = ()
    runtime: str = "docker"
    stop_attempts: int = 3
    stop_retry_delay_s: float = 1.0
    command_timeout_s: Optional[float] = None

    def stop_commands(self) -> List[str]:
        c = shlex.quote(self.container)
        return [f"{self.runtime} stop {c}", f"{self.runtime} rm {c}"]

    def login_command(self, username: str) -> str:
        parts = [self.runtime, "login"]
        if self.registry:
            parts.append(shlex.quote(self.registry))
        parts += ["-u", shlex.quote(username), "--password-stdin"]
        return " ".join(parts)

    def launch_command(self) -> str:
        parts = [self.runtime, "run", "-d", "--name", shlex.quote(self.container)]
        for p in self.ports:
            parts += ["-p", shlex.quote(str(p))]
        for k, v in sorted(self.env.items()):
            parts += ["-e", shlex.quote(f"{k}={v}")]
        parts += [shlex.quote(a) for a in self.run_args]
        parts.append(shlex.quote(self.image))
        return " ".join(parts)


class RemoteDeploy:
    """Task body for a remote deploy over any ``RemoteTransport``."""

    def __init__(
        self,
        spec: DeploySpec,
        transport: TransportFactory,
        registry_credential: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.spec = spec
        self.transport = transport
        self.registry_credential = registry_credential
        self.sleep = sleep

    def __call__(self, env: Dict[str, str], ctx: TaskContext) -> TaskResult:
        lines: List[str] = []
        try:
            remote = self.transport(ctx)
        except TransportError as e:
            return TaskResult.failure(str(e), kind=ErrorKind.TRANSPORT)

        self._stop(remote, ctx, lines)

        if self.registry_credential:
            failure = self._login(remote, ctx, lines)
            if failure is not None:
                return failure

        cmd = self.spec.launch_command()
        try:
            res = remote.run(cmd, timeout_s=self.spec.command_timeout_s)
        except AuthError as e:
            return TaskResult.failure(str(e), kind=ErrorKind.AUTH, logs=self._logs(lines))
        except TransportError as e:
            return TaskResult.failure(str(e), kind=ErrorKind.TRANSPORT, logs=self._logs(lines))
        lines.append(f"[launch] $ {cmd}\n{res.output}".rstrip())
        if not res.ok:
            return TaskResult.failure(
                f"launch of {self.spec.image} as {self.spec.container} exited with code {res.exit_code}",
                kind=ErrorKind.LAUNCH,
                logs=self._logs(lines),
            )

        deployment = {"container": self.spec.container, "image": self.spec.image}
        return TaskResult.success({"deployment": deployment}, self._logs(lines))

    @staticmethod
    def _logs(lines: List[str]) -> str:
        return "\n".join(lines)

    def _stop(self, remote: RemoteTransport, ctx: TaskContext, lines: List[str]) -> None:
        for cmd in self.spec.stop_commands():
            attempts = max(1, self.spec.stop_attempts)
            for attempt in range(1, attempts + 1):
                try:
                    res = remote.run(cmd, timeout_s=self.spec.command_timeout_s)
                except TransportError as e:
                    lines.append(f"[stop] $ {cmd}\nattempt {attempt}/{attempts}: {e}")
                    ctx.log("deploy_stop_retry", {"task": ctx.task, "attempt": attempt, "error": str(e)})
                    if attempt < attempts:
                        self.sleep(self.spec.stop_retry_delay_s)
                    continue
                except AuthError as e:
                    lines.append(f"[stop] $ {cmd}\n{e}")
                    ctx.log("deploy_stop_failed", {"task": ctx.task, "error": str(e)})
                    break
                # Non-zero usually means "no such container".
                lines.append(f"[stop] $ {cmd}\n{res.output}".rstrip())
                break

    def _login(self, remote: RemoteTransport, ctx: TaskContext, lines: List[str]) -> Optional[TaskResult]:
        cred = ctx.credential(self.registry_credential)
        cmd = self.spec.login_command(cred.username)
        try:
            res = remote.run(cmd, stdin=cred.secret, timeout_s=self.spec.command_timeout_s)
        except AuthError as e:
            return TaskResult.failure(str(e), kind=ErrorKind.AUTH, logs=self._logs(lines))
        except TransportError as e:
            return TaskResult.failure(str(e), kind=ErrorKind.TRANSPORT, logs=self._logs(lines))
        lines.append(f"[login] $ {cmd}\n{res.output}".rstrip())
        if not res.ok:
            return TaskResult.failure(
                f"registry login rejected (exit code {res.exit_code})",
                kind=ErrorKind.AUTH,
                logs=self._logs(lines),
            )
        return None


def ssh_transport(
    host: str,
    user: str = "",
    *,
    port: int = 22,
    key_credential: Optional[str] = None,
    connect_timeout_s: int = 10,
) -> TransportFactory:
    """Factory for an ``SshTransport``; identity and user may come from a credential."""

    def _make(ctx: TaskContext) -> RemoteTransport:
        key_file = None
        login = user
        if key_credential:
            cred = ctx.credential(key_credential)
            key_file = cred.key_file
            login = login or cred.username
        return SshTransport(host=host, user=login, port=port, key_file=key_file, connect_timeout_s=connect_timeout_s)

    return _make


def deploy_task(
    name: str,
    spec: DeploySpec,
    transport: TransportFactory,
    *,
    registry_credential: Optional[str] = None,
    credentials: Sequence[str] = (),
    environment: Optional[Dict[str, str]] = None,
) -> Task:
    """Build a Task wrapping ``RemoteDeploy``; declares the credentials it needs."""
    needed = list(credentials)
    if registry_credential and registry_credential not in needed:
        needed.append(registry_credential)
    return Task(
        name=name,
        run=RemoteDeploy(spec, transport, registry_credential=registry_credential),
        outputs=("deployment",),
        environment=dict(environment or {}),
        credentials=tuple(needed),
    )
