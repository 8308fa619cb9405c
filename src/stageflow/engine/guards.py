"""Stage guards: pure predicates over a read-only view of the run state."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Callable

from stageflow.core.errors import PipelineDefinitionError
from stageflow.core.types import RunResult

if TYPE_CHECKING:
    from stageflow.engine.state import StateView

Guard = Callable[["StateView"], bool]

_FALSY = {"", "0", "false", "no", "off"}


def always(view: "StateView") -> bool:
    return True


def never(view: "StateView") -> bool:
    return False


def on_success(view: "StateView") -> bool:
    """True while nothing has failed (result is still unknown or success)."""
    return view.current_result in (RunResult.UNKNOWN, RunResult.SUCCESS)


def on_failure(view: "StateView") -> bool:
    return view.current_result == RunResult.FAILURE


def artifact_present(name: str) -> Guard:
    def _guard(view: "StateView") -> bool:
        return name in view.artifacts
    _guard.__name__ = f"artifact:{name}"
    return _guard


def env_flag(key: str) -> Guard:
    """True when ``key`` is set in the run environment to a truthy value."""
    def _guard(view: "StateView") -> bool:
        return str(view.environment.get(key, "")).strip().lower() not in _FALSY
    _guard.__name__ = f"env:{key}"
    return _guard


def all_of(*guards: Guard) -> Guard:
    def _guard(view: "StateView") -> bool:
        return all(g(view) for g in guards)
    _guard.__name__ = " and ".join(getattr(g, "__name__", "guard") for g in guards)
    return _guard


def negate(guard: Guard) -> Guard:
    def _guard(view: "StateView") -> bool:
        return not guard(view)
    _guard.__name__ = f"not {getattr(guard, '__name__', 'guard')}"
    return _guard


_NAMED = {
    "always": always,
    "never": never,
    "success": on_success,
    "failure": on_failure,
}


def parse_guard(expr: str | None) -> Guard:
    """Parse a guard expression from a pipeline definition.

    Supported forms: ``always``, ``never``, ``success``, ``failure``,
    ``artifact:<name>``, ``env:<KEY>``, optionally prefixed with ``not ``
    and combined with `` and ``.
    """
    if expr is None:
        return always
    text = expr.strip()
    if not text:
        return always

    parts = [p.strip() for p in re.split(r"\s+and\s+", text, flags=re.IGNORECASE)]
    if len(parts) > 1:
        return all_of(*(parse_guard(p) for p in parts))

    low = text.lower()
    if low.startswith("not "):
        return negate(parse_guard(text[4:]))

    if low in _NAMED:
        return _NAMED[low]
    if low.startswith("artifact:") and text[9:].strip():
        return artifact_present(text[9:].strip())
    if low.startswith("env:") and text[4:].strip():
        return env_flag(text[4:].strip())

    raise PipelineDefinitionError(f"Unknown guard expression: {expr!r}")
