"""
bus/hooks.py -- After-hook that turns committed deletions into bus notifications.

Registered on the same HookChain as the principal and membership services.
It looks only at successful calls; a failed operation changed nothing, so
there is nothing to announce.

  delete_class -> classes.delete {"class_id"}
  leave_class  -> classes.leave  {"class_id", "user_id"}   (the removed user)
  delete_user  -> users.delete   {"user_id"}
"""

from __future__ import annotations

from typing import Any

from bus.publisher import TOPIC_CLASS_DELETE, TOPIC_CLASS_LEAVE, TOPIC_USER_DELETE, ConsistencyPropagator
from core.hooks import Call, Hook


class PropagationHook(Hook):
    def __init__(self, propagator: ConsistencyPropagator) -> None:
        self.propagator = propagator

    def after(self, call: Call, result: Any, error: BaseException | None) -> None:
        if error is not None:
            return
        if call.operation == "delete_class":
            self.propagator.notify(TOPIC_CLASS_DELETE, {"class_id": call.params["class_id"]})
        elif call.operation == "leave_class":
            self.propagator.notify(
                TOPIC_CLASS_LEAVE,
                {"class_id": call.params["class_id"], "user_id": result},
            )
        elif call.operation == "delete_user":
            self.propagator.notify(TOPIC_USER_DELETE, {"user_id": call.params["user_id"]})
