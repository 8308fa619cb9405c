"""Exception taxonomy.

Exceptions that carry a ``kind`` are mapped onto that error kind when a task
raises them; anything else raised by a task is reported as ``task_faulted``.
"""

from __future__ import annotations

from typing import Optional

from stageflow.core.types import ErrorKind, StageStatus


class StageflowError(Exception):
    """Base class for all orchestrator errors."""
    kind: ErrorKind = ErrorKind.ENGINE_ERROR


class PipelineDefinitionError(StageflowError, ValueError):
    """The pipeline definition is malformed (empty, duplicate names, bad guard)."""


class InvalidTransition(StageflowError):
    """A stage status change that is not allowed by the transition table."""

    def __init__(self, stage: str, src: StageStatus, dst: StageStatus):
        super().__init__(f"Invalid transition for stage {stage!r}: {src.value} -> {dst.value}")
        self.stage = stage
        self.src = src
        self.dst = dst


class TaskFailed(StageflowError):
    """Raised by a task to report an ordinary failure."""
    kind = ErrorKind.TASK_FAILED


class HookFaulted(StageflowError):
    kind = ErrorKind.HOOK_FAULTED


class TransportError(StageflowError):
    """Remote host unreachable or connection dropped."""
    kind = ErrorKind.TRANSPORT


class AuthError(StageflowError):
    """A credential was rejected."""
    kind = ErrorKind.AUTH


class LaunchError(StageflowError):
    """The new remote instance could not be started."""
    kind = ErrorKind.LAUNCH


class CredentialError(StageflowError, KeyError):
    """A named credential bundle is not available."""
    kind = ErrorKind.CREDENTIAL_MISSING

    def __init__(self, name: str, reason: Optional[str] = None):
        super().__init__(name)
        self.name = name
        self.reason = reason

    def __str__(self) -> str:
        msg = f"Credential {self.name!r} not available"
        return f"{msg}: {self.reason}" if self.reason else msg
