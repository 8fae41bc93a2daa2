"""
core/hooks.py -- Ordered cross-cutting hooks around a single service implementation.

Pattern: Interceptor chain. A service method hands its operation name, the
acting principal, its parameters and a zero-argument callable to
HookChain.run(). Every hook sees the call before it runs (in registration
order) and after it finishes (in reverse order), with either the result or
the error. The error always propagates to the caller unchanged.

    chain = HookChain([LoggingHook(), PropagationHook(propagator)])
    chain.run("delete_class", actor, {"class_id": cid}, lambda: ...)

Hooks must not raise from after(): an after-hook runs once the core call has
already committed, so an exception there would report failure for an
operation that succeeded. HookChain logs and drops anything an after-hook
raises.

Layer rule: core/ is the kernel and imports nothing from the project.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

logger = logging.getLogger("rollcall.hooks")

T = TypeVar("T")


@dataclass
class Call:
    """One invocation of a service operation, as seen by hooks."""

    operation: str
    actor: str | None
    params: dict[str, Any] = field(default_factory=dict)
    started: float = 0.0


class Hook:
    """Base hook. Subclasses override either or both methods."""

    def before(self, call: Call) -> None:
        pass

    def after(self, call: Call, result: Any, error: BaseException | None) -> None:
        pass


class HookChain:
    def __init__(self, hooks: Iterable[Hook] = ()) -> None:
        self._hooks: list[Hook] = list(hooks)

    def run(self, operation: str, actor: str | None, params: dict[str, Any], fn: Callable[[], T]) -> T:
        call = Call(operation=operation, actor=actor, params=dict(params), started=time.perf_counter())
        for hook in self._hooks:
            hook.before(call)
        try:
            result = fn()
        except Exception as exc:
            self._after(call, None, exc)
            raise
        self._after(call, result, None)
        return result

    def _after(self, call: Call, result: Any, error: BaseException | None) -> None:
        for hook in reversed(self._hooks):
            try:
                hook.after(call, result, error)
            except Exception:
                logger.exception("after-hook %s failed for %s", type(hook).__name__, call.operation)


class LoggingHook(Hook):
    """Log every operation with its actor, outcome and duration."""

    def __init__(self, name: str = "rollcall.service") -> None:
        self._logger = logging.getLogger(name)

    def after(self, call: Call, result: Any, error: BaseException | None) -> None:
        ms = (time.perf_counter() - call.started) * 1000
        if error is None:
            self._logger.info("%s actor=%s ok %.1fms", call.operation, call.actor, ms)
        else:
            code = getattr(error, "code", type(error).__name__)
            self._logger.info("%s actor=%s err=%s %.1fms", call.operation, call.actor, code, ms)
