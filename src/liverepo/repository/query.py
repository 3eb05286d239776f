"""
Paged queries.

``Repository.query()`` returns a ``QueryResult`` that fetches one page per
provider call. Pages are ordered (by id when no order is given) so that
offset paging is stable.
"""

from typing import Any, AsyncIterator, Callable, List, Sequence
import logging

from ..utils import maybe_await
from ..filters.nodes import FilterNode, SortSegment

logger = logging.getLogger(__name__)


class Paginator:
    """One fetched page plus navigation to the next"""

    def __init__(self, result: 'QueryResult', items: List[Any], page_number: int):
        self._result = result
        self.items = items
        self.page_number = page_number

    @property
    def has_next_page(self) -> bool:
        """True when this page came back full.

        A full last page reports a next page that turns out empty; the total
        is never re-counted.
        """
        return len(self.items) == self._result.page_size

    async def next_page(self) -> 'Paginator':
        if not self.has_next_page:
            return Paginator(self._result, [], self.page_number + 1)
        return await self._result._paginator(self.page_number + 1)

    async def count(self) -> int:
        return await self._result.count()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


class QueryResult:
    """Lazily fetched, page by page query over a repository"""

    def __init__(self, repository, where: FilterNode, order_by: Sequence[SortSegment],
                 page_size: int, include: Any = None, progress: Any = None):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._repository = repository
        self._where = where
        self._order_by = list(order_by)
        self.page_size = page_size
        self._include = include
        self._progress = progress

    async def _fetch(self, page_number: int) -> List[Any]:
        skip = (page_number - 1) * self.page_size
        return await self._repository._find_node(
            self._where, self._order_by, self.page_size, skip, self._include)

    async def _paginator(self, page_number: int) -> Paginator:
        return Paginator(self, await self._fetch(page_number), page_number)

    async def paginator(self) -> Paginator:
        """First page"""
        return await self._paginator(1)

    async def get_page(self, page_number: int = 1) -> List[Any]:
        """Items of a 1-based page"""
        if page_number < 1:
            raise ValueError("page_number starts at 1")
        return await self._fetch(page_number)

    async def count(self) -> int:
        return await self._repository._count_node(self._where)

    async def for_each(self, handler: Callable[[Any], Any]) -> int:
        """Call ``handler`` (sync or async) for every item; returns the item count"""
        processed = 0
        async for item in self:
            await maybe_await(handler(item))
            processed += 1
        return processed

    async def _report(self, processed: int, total: int):
        fraction = min(processed / total, 1.0) if total else 1.0
        report = getattr(self._progress, "progress", self._progress)
        await maybe_await(report(fraction))

    async def __aiter__(self) -> AsyncIterator[Any]:
        total = await self.count() if self._progress is not None else 0
        processed = 0
        page = await self.paginator()
        while True:
            for item in page.items:
                yield item
                if self._progress is not None:
                    processed += 1
                    await self._report(processed, total)
            if not page.has_next_page:
                break
            page = await page.next_page()


__all__ = ["QueryResult", "Paginator"]
