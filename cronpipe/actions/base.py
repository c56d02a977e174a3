"""
Action interface and registry.

An Action performs one kind of job (http, queue, internal). The executor
looks the kind up in an ActionRegistry and never branches on it itself,
so a new kind is one new Action subclass plus one register() call.

perform() returns an ActionResult for anything the remote side answered,
including non-success statuses, and raises ActionError subclasses for
failures where there is no answer (timeout, transport, unsupported kind).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from cronpipe.core.errors import UnsupportedAction
from cronpipe.scheduling.models import ActionKind, ExecutionTask

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """What the target answered."""

    ok: bool
    status_code: int | None = None
    excerpt: str | None = None
    detail: str | None = None  # short failure summary when not ok


class Action(ABC):
    """Abstract base class for job actions."""

    @property
    @abstractmethod
    def kind(self) -> ActionKind:
        ...

    @abstractmethod
    async def perform(self, task: ExecutionTask, excerpt_limit: int) -> ActionResult:
        """
        Execute the task's action once.

        Cancellation (the executor's timeout) must release any resources
        the action holds.
        """
        ...

    async def close(self) -> None:
        """Release long-lived resources (connection pools). No-op by default."""
        return None


class ActionRegistry:
    """
    Maps action kinds to implementations.

    Usage:
        registry = ActionRegistry()
        registry.register(HttpAction())
        action = registry.get(ActionKind.HTTP)
    """

    def __init__(self) -> None:
        self._actions: dict[ActionKind, Action] = {}

    def register(self, action: Action) -> None:
        """Register an action. Replaces any previous one of the same kind."""
        self._actions[action.kind] = action
        logger.debug(f"Registered action {action.kind.value}")

    def get(self, kind: ActionKind) -> Action:
        try:
            return self._actions[kind]
        except KeyError:
            raise UnsupportedAction(f"No action registered for kind {kind.value!r}", kind=kind.value)

    @property
    def kinds(self) -> list[ActionKind]:
        return list(self._actions)

    async def close(self) -> None:
        for action in self._actions.values():
            await action.close()


def default_registry(client=None) -> ActionRegistry:
    """Registry with the http action plus placeholders for the other kinds."""
    from cronpipe.actions.http import HttpAction
    from cronpipe.actions.stubs import InternalAction, QueueAction

    registry = ActionRegistry()
    registry.register(HttpAction(client=client))
    registry.register(QueueAction())
    registry.register(InternalAction())
    return registry
