"""Small helpers shared across the package."""

from typing import Any
import inspect


async def maybe_await(result: Any) -> Any:
    """Await ``result`` when a sync-or-async callback returned an awaitable"""
    if inspect.isawaitable(result):
        return await result
    return result


__all__ = ["maybe_await"]
