"""
Paged queries over a repository.
"""

import pytest

from tests.models import Category, Task


async def seed(context, count=5):
    return await context.repo(Task).insert(
        [{"title": f"task {n}", "priority": n % 2} for n in range(1, count + 1)])


class TestPaginator:
    """Page by page navigation"""

    @pytest.mark.asyncio
    async def test_pages_follow_id_order(self, context):
        await seed(context)
        query = context.repo(Task).query(page_size=2)

        first = await query.paginator()
        assert [t.title for t in first] == ["task 1", "task 2"]
        assert first.page_number == 1
        assert first.has_next_page

        second = await first.next_page()
        assert [t.title for t in second] == ["task 3", "task 4"]

        last = await second.next_page()
        assert [t.title for t in last] == ["task 5"]
        assert not last.has_next_page

        beyond = await last.next_page()
        assert len(beyond) == 0
        assert beyond.page_number == 4

    @pytest.mark.asyncio
    async def test_full_last_page_reports_next_page(self, context):
        await seed(context, 4)
        page = await context.repo(Task).query(page_size=2).paginator()
        page = await page.next_page()
        assert page.has_next_page
        assert len(await page.next_page()) == 0

    @pytest.mark.asyncio
    async def test_get_page_and_count(self, context):
        await seed(context)
        query = context.repo(Task).query({"priority": 1}, page_size=2)
        assert [t.title for t in await query.get_page(2)] == ["task 5"]
        assert await query.count() == 3
        page = await query.paginator()
        assert await page.count() == 3

    @pytest.mark.asyncio
    async def test_order_with_id_tiebreaker(self, context):
        await seed(context)
        query = context.repo(Task).query(order_by={"priority": "desc"}, page_size=10)
        titles = [t.title for t in await query.get_page(1)]
        assert titles == ["task 1", "task 3", "task 5", "task 2", "task 4"]

    @pytest.mark.asyncio
    async def test_default_order_of_entity(self, context):
        await context.repo(Category).insert([{"name": "b"}, {"name": "a"}, {"name": "c"}])
        names = [c.name for c in await context.repo(Category).query(page_size=2).get_page(1)]
        assert names == ["a", "b"]

    @pytest.mark.asyncio
    async def test_invalid_paging(self, context):
        with pytest.raises(ValueError):
            context.repo(Task).query(page_size=0)
        with pytest.raises(ValueError):
            await context.repo(Task).query().get_page(0)

    @pytest.mark.asyncio
    async def test_default_page_size_from_config(self, context):
        context.config.query.default_page_size = 3
        await seed(context)
        page = await context.repo(Task).query().paginator()
        assert len(page) == 3


class TestIteration:
    """Iterating every item of a query"""

    @pytest.mark.asyncio
    async def test_async_for_reads_every_page(self, context):
        await seed(context)
        titles = [task.title async for task in context.repo(Task).query(page_size=2)]
        assert titles == [f"task {n}" for n in range(1, 6)]

    @pytest.mark.asyncio
    async def test_for_each_with_sync_and_async_handlers(self, context):
        await seed(context)
        query = context.repo(Task).query({"priority": 0}, page_size=1)

        seen = []
        assert await query.for_each(lambda task: seen.append(task.id)) == 2

        async def collect(task):
            seen.append(task.title)

        assert await query.for_each(collect) == 2
        assert seen == [2, 4, "task 2", "task 4"]

    @pytest.mark.asyncio
    async def test_empty_query(self, context):
        query = context.repo(Task).query(page_size=2)
        assert [task async for task in query] == []
        assert await query.for_each(lambda task: None) == 0


class TestProgress:
    """Progress reported while iterating"""

    @pytest.mark.asyncio
    async def test_progress_function_sees_each_item(self, context):
        await seed(context, 4)
        reported = []
        query = context.repo(Task).query(page_size=3, progress=reported.append)

        assert await query.for_each(lambda task: None) == 4
        assert reported == [0.25, 0.5, 0.75, 1.0]

    @pytest.mark.asyncio
    async def test_progress_object_with_async_method(self, context):
        await seed(context, 2)

        class Bar:
            def __init__(self):
                self.values = []

            async def progress(self, fraction):
                self.values.append(fraction)

        bar = Bar()
        titles = [task.title async for task in context.repo(Task).query({"priority": 1}, progress=bar)]
        assert titles == ["task 1"]
        assert bar.values == [1.0]

    @pytest.mark.asyncio
    async def test_no_progress_for_empty_query(self, context):
        reported = []
        query = context.repo(Task).query(progress=reported.append)
        assert [task async for task in query] == []
        assert reported == []
