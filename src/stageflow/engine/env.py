"""Hierarchical environment scoping: run <- pipeline <- stage <- task."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Dict, Iterator, List, Mapping, Optional


class EnvironmentScope:
    """Stack of environment layers; later layers override earlier ones."""

    def __init__(self, base: Optional[Mapping[str, str]] = None):
        self._layers: List[Dict[str, str]] = [dict(base or {})]

    @property
    def depth(self) -> int:
        return len(self._layers)

    def resolve(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Flatten all layers (plus ``extra``) into a fresh dict."""
        env: Dict[str, str] = {}
        for layer in self._layers:
            env.update(layer)
        if extra:
            env.update(extra)
        return env

    def push(self, overlay: Optional[Mapping[str, str]]) -> None:
        self._layers.append(dict(overlay or {}))

    def pop(self) -> None:
        if len(self._layers) == 1:
            raise RuntimeError("Cannot pop the base environment layer")
        self._layers.pop()

    @contextmanager
    def overlay(self, env: Optional[Mapping[str, str]]) -> Iterator["EnvironmentScope"]:
        """Apply ``env`` for the duration of the block; always released."""
        self.push(env)
        try:
            yield self
        finally:
            self.pop()
