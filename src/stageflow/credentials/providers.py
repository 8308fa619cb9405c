"""Credential providers.

Credentials come from an external secret source; the orchestrator only
resolves them by name and hands them to tasks. Secret values never appear
in ``repr``, logs or reports.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from stageflow.core.errors import CredentialError

REDACTED = "***REDACTED***"


@dataclass(frozen=True)
class Credential:
    """Named credential bundle (username + secret, optional key file)."""
    name: str
    username: str = ""
    secret: str = field(default="", repr=False)
    key_file: Optional[str] = None

    def __str__(self) -> str:
        return f"Credential({self.name}, username={self.username!r}, secret={REDACTED})"


class CredentialProvider(Protocol):
    def get(self, name: str) -> Credential: ...


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every non-empty secret value in ``text``."""
    out = text or ""
    for s in secrets:
        if s:
            out = out.replace(s, REDACTED)
    return out


def secret_values(credentials: Mapping[str, Credential]) -> List[str]:
    return [c.secret for c in credentials.values() if c.secret]


class StaticCredentialProvider:
    """In-memory provider, mostly for tests and embedding."""

    def __init__(self, credentials: Optional[Mapping[str, Credential]] = None):
        self._creds: Dict[str, Credential] = dict(credentials or {})

    def get(self, name: str) -> Credential:
        try:
            return self._creds[name]
        except KeyError:
            raise CredentialError(name) from None


class NullCredentialProvider:
    def get(self, name: str) -> Credential:
        raise CredentialError(name, "no credential provider configured")


class EnvCredentialProvider:
    """Reads ``<PREFIX><NAME>_USERNAME`` / ``_PASSWORD`` / ``_KEY_FILE`` variables."""

    def __init__(self, prefix: str = "STAGEFLOW_CRED_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ

    def _key(self, name: str, suffix: str) -> str:
        norm = "".join(ch if ch.isalnum() else "_" for ch in name).upper()
        return f"{self.prefix}{norm}_{suffix}"

    def get(self, name: str) -> Credential:
        username = self.environ.get(self._key(name, "USERNAME"), "")
        secret = self.environ.get(self._key(name, "PASSWORD"), "")
        key_file = self.environ.get(self._key(name, "KEY_FILE")) or None
        if not (username or secret or key_file):
            raise CredentialError(name, f"no {self.prefix}* variables set")
        return Credential(name=name, username=username, secret=secret, key_file=key_file)


class FileCredentialProvider:
    """Reads secret files from a mounted directory.

    Layout: ``<dir>/<name>/username``, ``<dir>/<name>/password`` and
    optionally ``<dir>/<name>/key`` (used as an SSH identity file).
    A single file ``<dir>/<name>`` is taken as a bare secret.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    @staticmethod
    def _read(path: Path) -> str:
        with path.open("r", encoding="utf-8") as f:
            return f.read().strip()

    def get(self, name: str) -> Credential:
        p = self.directory / name
        if p.is_file():
            return Credential(name=name, secret=self._read(p))
        if not p.is_dir():
            raise CredentialError(name, f"not found under {self.directory}")

        username = self._read(p / "username") if (p / "username").is_file() else ""
        secret = self._read(p / "password") if (p / "password").is_file() else ""
        key_file = str(p / "key") if (p / "key").is_file() else None
        if not (username or secret or key_file):
            raise CredentialError(name, f"{p} holds no username/password/key")
        return Credential(name=name, username=username, secret=secret, key_file=key_file)
