"""asyncio helpers."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable


async def gather_settled(*aws: Awaitable[Any]) -> list[Any]:
    """Run awaitables concurrently and wait for all of them to settle.

    Siblings of a failing branch are not cancelled. Once every branch is
    done, the first error in argument order is raised; otherwise the results
    are returned in argument order.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results
