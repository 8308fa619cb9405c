"""Hook dispatcher: always -> success|failure -> cleanup, each fault isolated."""

from __future__ import annotations

import traceback
from typing import Iterable, List, Optional

from stageflow.core.pipeline.base import Hook
from stageflow.core.pipeline.log import LogFn, noop_log
from stageflow.core.types import ErrorInfo, ErrorKind, HookTrigger, RunResult
from stageflow.engine.report import HookError
from stageflow.engine.state import RunState


def trigger_order(result: RunResult) -> List[HookTrigger]:
    """Triggers that fire for a final result, in dispatch order."""
    order = [HookTrigger.ALWAYS]
    if result == RunResult.SUCCESS:
        order.append(HookTrigger.SUCCESS)
    elif result == RunResult.FAILURE:
        order.append(HookTrigger.FAILURE)
    order.append(HookTrigger.CLEANUP)
    return order


class HookDispatcher:
    """Runs registered hooks once per run; faults are recorded, never re-raised."""

    def __init__(self, log: LogFn = noop_log):
        self.log = log

    def dispatch(self, hooks: Iterable[Hook], state: RunState, result: Optional[RunResult] = None) -> List[HookError]:
        hooks = list(hooks)
        result = result or state.current_result
        errors: List[HookError] = []
        for trigger in trigger_order(result):
            for hook in hooks:
                if hook.trigger != trigger:
                    continue
                err = self._invoke(hook, state)
                if err is not None:
                    errors.append(err)
        return errors

    def _invoke(self, hook: Hook, state: RunState) -> Optional[HookError]:
        self.log("hook_start", {"hook": hook.name, "trigger": hook.trigger.value})
        try:
            hook.action(state)
        except BaseException as e:
            info = ErrorInfo(
                ErrorKind.HOOK_FAULTED,
                f"{type(e).__name__}: {e}",
                {"traceback": traceback.format_exc()},
            )
            self.log("hook_error", {"hook": hook.name, "trigger": hook.trigger.value, "error": info.detail})
            return HookError(hook=hook.name, trigger=hook.trigger, error=info)
        return None
