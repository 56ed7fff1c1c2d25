"""Task spans and warnings for one migration attempt.

A MigrationContext is created per attempt and handed explicitly to every
component. ``task()`` opens a named span that logs its start, end and
duration; spans nest by calling ``task()`` on the yielded child context.
Nothing here changes control flow: errors pass through untouched.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from vmware2xcp.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TaskRecord:
    """Outcome of a finished span."""
    name: str
    depth: int
    duration: float
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class _Journal:
    tasks: list[TaskRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class MigrationContext:
    """Progress reporting for one migration attempt."""

    def __init__(self, name: str = "migration", *, _journal: _Journal | None = None, _depth: int = 0):
        self.name = name
        self._journal = _journal or _Journal()
        self._depth = _depth

    @property
    def warnings(self) -> list[str]:
        return self._journal.warnings

    @property
    def tasks(self) -> list[TaskRecord]:
        return self._journal.tasks

    @asynccontextmanager
    async def task(self, name: str) -> AsyncIterator["MigrationContext"]:
        indent = "  " * self._depth
        logger.info(f"{indent}[cyan]▶ {name}[/cyan]")
        child = MigrationContext(name, _journal=self._journal, _depth=self._depth + 1)
        start = time.monotonic()
        try:
            yield child
        except BaseException as e:
            elapsed = time.monotonic() - start
            self._journal.tasks.append(TaskRecord(name, self._depth, elapsed, error=str(e) or type(e).__name__))
            logger.error(f"{indent}[red]✗ {name}: {e}[/red]")
            raise
        elapsed = time.monotonic() - start
        self._journal.tasks.append(TaskRecord(name, self._depth, elapsed))
        logger.info(f"{indent}[green]✓ {name}[/green] ({elapsed:.1f}s)")

    def warning(self, message: str) -> None:
        self._journal.warnings.append(message)
        logger.warning(f"{'  ' * self._depth}[yellow]⚠ {message}[/yellow]")
