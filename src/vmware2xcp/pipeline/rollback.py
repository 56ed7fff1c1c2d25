"""Compensating actions for one migration attempt.

Each successful creation on the destination pushes the action that undoes
it. On failure the stack is unwound newest first; an action that fails is
logged and the next one still runs. On success the stack is discarded and
the created objects are kept.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from vmware2xcp.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CompensatingAction:
    description: str
    func: Callable[..., Any]
    args: tuple

    async def run(self) -> None:
        result = await asyncio.to_thread(self.func, *self.args)
        if asyncio.iscoroutine(result):
            await result


class Rollback:
    """Append-only stack of compensating actions, fired at most once."""

    def __init__(self):
        self._actions: list[CompensatingAction] = []
        self._closed = False

    def __len__(self) -> int:
        return len(self._actions)

    def push(self, description: str, func: Callable[..., Any], *args: Any) -> None:
        if self._closed:
            raise RuntimeError("Rollback stack already unwound or discarded")
        self._actions.append(CompensatingAction(description, func, args))

    async def unwind(self) -> list[str]:
        """Run every action newest first. Returns the descriptions that failed."""
        if self._closed:
            return []
        self._closed = True
        failed = []
        while self._actions:
            action = self._actions.pop()
            logger.info(f"[yellow]↺ Rolling back: {action.description}[/yellow]")
            try:
                await action.run()
            except Exception as e:
                logger.error(f"Rollback step '{action.description}' failed: {e}")
                failed.append(action.description)
        return failed

    def discard(self) -> None:
        """Forget every action: the created objects now belong to the destination."""
        self._actions.clear()
        self._closed = True

    async def __aenter__(self) -> "Rollback":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.discard()
        else:
            await self.unwind()
        return False
