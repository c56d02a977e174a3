"""
Placeholder actions for the queue and internal kinds.

Jobs of these kinds can be registered and scheduled; executing one fails
its attempt with UnsupportedAction until a real action is registered.
"""

from __future__ import annotations

from cronpipe.actions.base import Action, ActionResult
from cronpipe.core.errors import UnsupportedAction
from cronpipe.scheduling.models import ActionKind, ExecutionTask


class QueueAction(Action):
    @property
    def kind(self) -> ActionKind:
        return ActionKind.QUEUE

    async def perform(self, task: ExecutionTask, excerpt_limit: int) -> ActionResult:
        raise UnsupportedAction("queue actions are not implemented", kind=self.kind.value)


class InternalAction(Action):
    @property
    def kind(self) -> ActionKind:
        return ActionKind.INTERNAL

    async def perform(self, task: ExecutionTask, excerpt_limit: int) -> ActionResult:
        raise UnsupportedAction("internal actions are not implemented", kind=self.kind.value)
