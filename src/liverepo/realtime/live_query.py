"""
Live query handle returned by ``Repository.live_query()``.

Example:
    query = tasks.live_query({"completed": False}, order_by={"title": "asc"})
    unsubscribe = await query.subscribe(lambda info: print(info.items))
    ...
    unsubscribe()
"""

from typing import Any, List, Optional

from .engine import Listener, Unsubscribe


class LiveQuery:
    """A find whose result is pushed to listeners as it changes"""

    def __init__(self, repository, options):
        self.repository = repository
        self.options = options

    @property
    def engine(self):
        return self.repository.context.live_queries

    async def subscribe(self, listener: Listener) -> Unsubscribe:
        """Start listening; the first delivery is an ``all`` change with the current result.

        ``listener`` is a callable (sync or async) taking a
        ``LiveQueryChangeInfo``, or an object with ``next`` and optional
        ``error`` / ``complete`` methods.
        """
        return await self.engine.subscribe(self.repository, self.options, listener)

    async def find(self) -> List[Any]:
        """Run the query once without subscribing"""
        options = self.options
        return await self.repository.find(options.where, order_by=options.order_by,
                                          limit=options.limit, include=options.include)

    def __repr__(self) -> str:
        where: Optional[Any] = self.options.where
        return f"LiveQuery({self.repository.metadata.key}, where={where!r})"


__all__ = ["LiveQuery"]
