"""
Repository CRUD, query and serialization tests.
"""

from datetime import date, datetime

import pytest

from liverepo import (
    AccessDeniedError, ConflictError, DataContext, DataLayerConfig, Environment,
    InMemoryDataProvider, NotFoundError, ProviderError, ValidationError,
)

from tests.models import (
    Archive, Category, Note, Order, OrderLine, Product, Status, Task, Ticket, hook_calls,
)


async def insert_tasks(context, *titles, **values):
    tasks = context.repo(Task)
    return [await tasks.insert({"title": title, **values}) for title in titles]


class FailingProvider(InMemoryDataProvider):
    async def find(self, entity_key, where, order_by=(), limit=None, skip=0):
        raise RuntimeError("connection lost")


class TestFind:
    """Reads"""

    @pytest.mark.asyncio
    async def test_find_with_filter_and_order(self, context):
        tasks = context.repo(Task)
        await tasks.insert([
            {"title": "b", "priority": 2},
            {"title": "a", "priority": 5, "completed": True},
            {"title": "c", "priority": 1},
        ])
        found = await tasks.find({"completed": False}, order_by={"priority": "desc"})
        assert [t.title for t in found] == ["b", "c"]
        assert all(not t.ref.is_new() for t in found)

    @pytest.mark.asyncio
    async def test_limit_and_page(self, context):
        tasks = context.repo(Task)
        await insert_tasks(context, "t1", "t2", "t3", "t4", "t5")
        page = await tasks.find(order_by={"title": "asc"}, limit=2, page=2)
        assert [t.title for t in page] == ["t3", "t4"]
        with pytest.raises(ValidationError):
            await tasks.find(limit=2, page=0)

    @pytest.mark.asyncio
    async def test_default_find_limit(self):
        config = DataLayerConfig.for_environment(Environment.TESTING)
        config.query.default_find_limit = 2
        context = DataContext(InMemoryDataProvider(), config)
        await insert_tasks(context, "a", "b", "c")
        assert len(await context.repo(Task).find()) == 2
        await context.close()

    @pytest.mark.asyncio
    async def test_count(self, context):
        await insert_tasks(context, "a", "b")
        await insert_tasks(context, "c", completed=True)
        tasks = context.repo(Task)
        assert await tasks.count() == 3
        assert await tasks.count({"completed": True}) == 1

    @pytest.mark.asyncio
    async def test_find_id(self, context):
        task, = await insert_tasks(context, "findme")
        tasks = context.repo(Task)
        assert (await tasks.find_id(task.id)).title == "findme"
        assert await tasks.find_id(999) is None

    @pytest.mark.asyncio
    async def test_find_id_without_id_value(self, context):
        await insert_tasks(context, "a")
        assert await context.repo(Task).find_id(None) is None
        assert await context.repo(Task).find_id(None, create_if_not_found=True) is None
        assert await context.repo(Task).count() == 1

        lines = context.repo(OrderLine)
        await lines.insert({"order_id": 1, "line_no": 1})
        assert await lines.find_id({"order_id": 1, "line_no": None}) is None
        assert context.provider.metrics.finds == 0

    @pytest.mark.asyncio
    async def test_find_first(self, context):
        await insert_tasks(context, "x", "y")
        tasks = context.repo(Task)
        first = await tasks.find_first(order_by={"title": "desc"})
        assert first.title == "y"
        assert await tasks.find_first({"title": "z"}) is None

    @pytest.mark.asyncio
    async def test_create_if_not_found_is_idempotent(self, context):
        tasks = context.repo(Task)
        first = await tasks.find_first({"title": "singleton", "priority": 3}, create_if_not_found=True)
        second = await tasks.find_first({"title": "singleton", "priority": 3}, create_if_not_found=True)
        assert first.id == second.id
        assert first.priority == 3
        assert await tasks.count() == 1

    @pytest.mark.asyncio
    async def test_create_if_not_found_needs_equality(self, context):
        with pytest.raises(ValidationError):
            await context.repo(Task).find_first({"priority": {"$gt": 1}}, create_if_not_found=True)

    @pytest.mark.asyncio
    async def test_provider_failures_are_wrapped(self):
        context = DataContext(FailingProvider())
        with pytest.raises(ProviderError) as exc_info:
            await context.repo(Task).find()
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.entity_key == "tasks"
        await context.close()


class TestWrite:
    """Inserts, updates and deletes"""

    @pytest.mark.asyncio
    async def test_save_dict_with_id_updates(self, context, provider):
        categories = context.repo(Category)
        category = await categories.insert({"name": "a"})
        saved = await categories.save({"id": category.id, "name": "b"})
        assert saved.name == "b"
        rows = provider.rows("categories")
        assert len(rows) == 1
        assert rows[0]["name"] == "b"

    @pytest.mark.asyncio
    async def test_save_dict_with_missing_id(self, context):
        with pytest.raises(NotFoundError):
            await context.repo(Category).save({"id": 42, "name": "ghost"})

    @pytest.mark.asyncio
    async def test_save_new_item_inserts(self, context):
        tasks = context.repo(Task)
        task = tasks.create({"title": "new"})
        await tasks.save(task)
        assert task.id == 1
        assert not task.ref.is_new()

    @pytest.mark.asyncio
    async def test_insert_list_stops_at_first_failure(self, context):
        tasks = context.repo(Task)
        with pytest.raises(ValidationError) as exc_info:
            await tasks.insert([{"title": "ok"}, {"title": ""}, {"title": "never"}])
        assert exc_info.value.item_index == 1
        assert await tasks.count() == 1

    @pytest.mark.asyncio
    async def test_save_list_with_bad_item_reports_its_index(self, context):
        tasks = context.repo(Task)
        with pytest.raises(ValidationError) as exc_info:
            await tasks.save([{"title": "ok"}, 42, {"title": "never"}])
        assert exc_info.value.item_index == 1
        assert exc_info.value.entity_key == "tasks"
        assert isinstance(exc_info.value.__cause__, TypeError)
        assert await tasks.count() == 1

    @pytest.mark.asyncio
    async def test_insert_saved_item_conflicts(self, context):
        task, = await insert_tasks(context, "saved")
        with pytest.raises(ConflictError):
            await context.repo(Task).insert(task)

    @pytest.mark.asyncio
    async def test_duplicate_id_conflicts(self, context):
        tasks = context.repo(Task)
        await tasks.insert({"id": 7, "title": "first"})
        with pytest.raises(ConflictError) as exc_info:
            await tasks.insert({"id": 7, "title": "second"})
        assert exc_info.value.entity_key == "tasks"
        # Sequences continue after explicit ids
        assert (await tasks.insert({"title": "third"})).id == 8

    @pytest.mark.asyncio
    async def test_update_by_id(self, context):
        task, = await insert_tasks(context, "before")
        tasks = context.repo(Task)
        updated = await tasks.update(task.id, {"title": "after"})
        assert updated.title == "after"
        assert (await tasks.find_id(task.id)).title == "after"
        with pytest.raises(NotFoundError):
            await tasks.update(999, {"title": "x"})

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, context):
        task, = await insert_tasks(context, "strict")
        with pytest.raises(ValidationError):
            await context.repo(Task).update(task, {"nope": 1})

    @pytest.mark.asyncio
    async def test_delete(self, context):
        a, b, c = await insert_tasks(context, "a", "b", "c")
        tasks = context.repo(Task)
        await tasks.delete(a.id)
        await tasks.delete([b, c.id])
        assert await tasks.count() == 0
        with pytest.raises(NotFoundError):
            await tasks.delete(a.id)

    @pytest.mark.asyncio
    async def test_update_many_and_delete_many(self, context):
        await insert_tasks(context, "a", "b", "c")
        tasks = context.repo(Task)
        changed = await tasks.update_many(where={"title": ["a", "b"]}, set={"completed": True})
        assert changed == 2
        assert await tasks.count({"completed": True}) == 2

        removed = await tasks.delete_many(where={"completed": True})
        assert removed == 2
        assert [t.title for t in await tasks.find()] == ["c"]

    @pytest.mark.asyncio
    async def test_update_many_checks_values(self, context):
        tasks = context.repo(Task)
        with pytest.raises(ValidationError):
            await tasks.update_many(where={}, set={"priority": "high"})
        with pytest.raises(ValidationError):
            await tasks.update_many(where={}, set={"title": None})

    @pytest.mark.asyncio
    async def test_composite_ids(self, context):
        lines = context.repo(OrderLine)
        await lines.insert([
            {"order_id": 1, "line_no": 1, "quantity": 2},
            {"order_id": 1, "line_no": 2, "quantity": 5},
        ])
        line = await lines.find_id({"order_id": 1, "line_no": 2})
        assert line.quantity == 5

        line.line_no = 3
        await line.ref.save()
        assert await lines.find_id({"order_id": 1, "line_no": 2}) is None
        assert (await lines.find_id({"order_id": 1, "line_no": 3})).quantity == 5
        assert [r["line_no"] for r in context.provider.rows("order_lines")] == [1, 3]


class TestEnumFields:
    """Enum fields are stored by their value"""

    @pytest.mark.asyncio
    async def test_order_and_filter_by_enum(self, context, provider):
        tickets = context.repo(Ticket)
        await tickets.insert([
            {"subject": "a", "status": Status.OPEN},
            {"subject": "b", "status": "closed"},
            {"subject": "c", "status": Status.ACTIVE},
        ])
        assert [r["status"] for r in provider.rows("tickets")] == ["open", "closed", "active"]

        found = await tickets.find(order_by={"status": "asc"})
        assert [t.subject for t in found] == ["c", "b", "a"]
        assert found[0].status is Status.ACTIVE

        closed = await tickets.find({"status": Status.CLOSED})
        assert [t.subject for t in closed] == ["b"]
        assert [t.subject for t in await tickets.find({"status": "open"})] == ["a"]

    @pytest.mark.asyncio
    async def test_enum_change_is_saved_by_value(self, context, provider):
        tickets = context.repo(Ticket)
        ticket = await tickets.insert({"subject": "a"})
        assert not ticket.ref.was_changed()

        ticket.status = Status.CLOSED
        assert ticket.ref.fields.status.value_changed()
        await ticket.ref.save()
        assert provider.rows("tickets")[0]["status"] == "closed"
        assert tickets.to_json(ticket)["status"] == "closed"


class TestEventListeners:
    """Repository level lifecycle listeners"""

    @pytest.mark.asyncio
    async def test_listeners_run_after_entity_hooks(self, context):
        class Recorder:
            def validating(self, item, event):
                hook_calls.append("listener:validating")

            async def saving(self, item, event):
                hook_calls.append("listener:saving")

            def saved(self, item, event):
                hook_calls.append("listener:saved:new" if event.is_new else "listener:saved")

            def deleting(self, item, event):
                hook_calls.append("listener:deleting")

            def deleted(self, item, event):
                hook_calls.append("listener:deleted")

        notes = context.repo(Note)
        notes.add_event_listener(Recorder())
        note = await notes.insert({"title": "hello"})
        assert hook_calls == ["validation", "listener:validating", "saving", "listener:saving",
                              "saved:new", "listener:saved:new"]

        hook_calls.clear()
        await note.ref.delete()
        assert hook_calls == ["deleting", "listener:deleting", "deleted", "listener:deleted"]

    @pytest.mark.asyncio
    async def test_listener_can_prevent_and_report_errors(self, context, provider):
        class Guard:
            def saving(self, item, event):
                if item.title == "skip":
                    event.prevent_default()
                if item.priority < 0:
                    event.fields.priority.error = "Must not be negative"

        tasks = context.repo(Task)
        remove = tasks.add_event_listener(Guard())

        skipped = await tasks.insert({"title": "skip"})
        assert skipped.ref.is_new()
        with pytest.raises(ValidationError) as exc_info:
            await tasks.insert({"title": "bad", "priority": -1})
        assert exc_info.value.model_state == {"priority": "Must not be negative"}
        assert provider.rows("tasks") == []

        remove()
        remove()
        assert not (await tasks.insert({"title": "skip"})).ref.is_new()

    @pytest.mark.asyncio
    async def test_listener_partial_and_shared_with_relation_repository(self, context):
        seen = []

        class SavedOnly:
            def saved(self, item, event):
                seen.append(item.name)

        context.repo(Product).add_event_listener(SavedOnly())
        category = await context.repo(Category).insert({"name": "tools"})
        await context.repo(Category).relations(category).products.insert({"name": "hammer"})
        assert seen == ["hammer"]


class TestAccess:
    @pytest.mark.asyncio
    async def test_read_only_entity(self):
        provider = InMemoryDataProvider({"archive": [{"id": 1, "title": "old"}]})
        context = DataContext(provider)
        archive = context.repo(Archive)
        assert [a.title for a in await archive.find()] == ["old"]

        with pytest.raises(AccessDeniedError):
            await archive.insert({"id": 2, "title": "new"})
        with pytest.raises(AccessDeniedError):
            await archive.update(1, {"title": "changed"})
        with pytest.raises(AccessDeniedError):
            await archive.delete_many(where={})
        assert provider.metrics.inserts == 0
        await context.close()


class TestSerialization:
    @pytest.mark.asyncio
    async def test_json_round_trip(self, context):
        orders = context.repo(Order)
        order = await orders.insert({
            "customer": 3,
            "total": 5.5,
            "created_at": datetime(2024, 1, 2, 3, 4, 5),
        })
        data = orders.to_json(order)
        assert data == {"id": 1, "customer": 3, "total": 5.5, "created_at": "2024-01-02T03:04:05"}

        restored = orders.from_json(data)
        assert restored.created_at == datetime(2024, 1, 2, 3, 4, 5)
        assert restored.ref.fields.customer.get_id() == 3
        assert not restored.ref.is_new()
        assert not restored.ref.was_changed()
        assert orders.to_json(restored) == data

    @pytest.mark.asyncio
    async def test_dates_and_nested_relations(self, context):
        categories = context.repo(Category)
        products = context.repo(Product)
        category = await categories.insert({"name": "Garden"})
        await products.insert({"name": "Rake", "category_id": category.id, "released": date(2023, 4, 1)})

        found = await products.find(include={"category": True})
        data = products.to_json(found)
        assert data[0]["released"] == "2023-04-01"
        assert data[0]["category"] == {"id": category.id, "name": "Garden"}

        restored = products.from_json(data[0])
        assert restored.released == date(2023, 4, 1)
        assert restored.category.name == "Garden"

    @pytest.mark.asyncio
    async def test_from_json_new(self, context):
        task = context.repo(Task).from_json({"title": "wire"}, is_new=True)
        assert task.ref.is_new()
        assert task.title == "wire"
