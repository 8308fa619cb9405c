"""Remote execution transport: run a command on host H as user U."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from stageflow.core.errors import AuthError, TransportError

_AUTH_MARKERS = ("permission denied", "authentication failed", "too many authentication failures")


@dataclass(frozen=True)
class RemoteResult:
    """A remote command that ran to completion (any exit code)."""
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteTransport(Protocol):
    """Raises TransportError (unreachable) or AuthError (rejected); otherwise returns a RemoteResult."""

    def run(self, command: str, stdin: Optional[str] = None, timeout_s: Optional[float] = None) -> RemoteResult: ...


@dataclass(frozen=True)
class SshTransport:
    """OpenSSH client in BatchMode (never prompts)."""
    host: str
    user: str
    port: int = 22
    key_file: Optional[str] = None
    connect_timeout_s: int = 10
    options: Tuple[str, ...] = ("StrictHostKeyChecking=accept-new",)
    ssh_binary: str = "ssh"

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def argv(self, command: str) -> List[str]:
        args = [
            self.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={int(self.connect_timeout_s)}",
            "-p", str(self.port),
        ]
        for opt in self.options:
            args += ["-o", opt]
        if self.key_file:
            args += ["-i", self.key_file]
        args += [self.target, command]
        return args

    def run(self, command: str, stdin: Optional[str] = None, timeout_s: Optional[float] = None) -> RemoteResult:
        try:
            p = subprocess.run(
                self.argv(command),
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout_s,
                check=False,
            )
        except FileNotFoundError as e:
            raise TransportError(f"ssh client not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"ssh to {self.target} timed out after {timeout_s}s") from e

        stderr = (p.stderr or "").strip()
        # ssh reserves 255 for its own errors; anything else is the remote command's code.
        if p.returncode == 255:
            if any(m in stderr.lower() for m in _AUTH_MARKERS):
                raise AuthError(f"ssh authentication to {self.target} failed: {stderr}")
            raise TransportError(f"ssh connection to {self.target} failed: {stderr}")

        output = (p.stdout or "") + (("\n" + stderr) if stderr else "")
        return RemoteResult(p.returncode, output.strip())
