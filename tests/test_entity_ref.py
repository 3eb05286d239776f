"""
Entity reference tests: dirty tracking, undo, validation, hooks and access rules.
"""

from datetime import date

import pytest

from liverepo import AccessDeniedError, NotFoundError, ValidationError

from tests.models import Note, Order, Status, Task, Ticket, hook_calls


class TestTracking:
    """Original values and dirty detection"""

    @pytest.mark.asyncio
    async def test_create_is_new_and_unchanged(self, context):
        task = context.repo(Task).create()
        ref = task.ref
        assert ref.is_new()
        assert not ref.was_changed()
        assert task.title == ""
        assert task.completed is False

    @pytest.mark.asyncio
    async def test_assignment_marks_field_changed(self, context):
        tasks = context.repo(Task)
        task = await tasks.insert({"title": "Write docs"})
        ref = tasks.get_entity_ref(task)
        assert not ref.was_changed()

        task.title = "Write better docs"
        assert ref.was_changed()
        assert ref.fields.title.value_changed()
        assert not ref.fields.completed.value_changed()
        assert ref.fields.title.original_value == "Write docs"

    @pytest.mark.asyncio
    async def test_bool_and_int_are_different_values(self, context):
        task = await context.repo(Task).insert({"title": "a"})
        task.completed = 0
        assert task.ref.fields.completed.value_changed()

    @pytest.mark.asyncio
    async def test_undo_restores_values(self, context):
        task = await context.repo(Task).insert({"title": "Original", "priority": 2})
        task.title = "Changed"
        task.priority = 9
        task.ref.undo_changes()
        assert task.title == "Original"
        assert task.priority == 2
        assert not task.ref.was_changed()

    @pytest.mark.asyncio
    async def test_second_save_does_not_update(self, context, provider):
        task = await context.repo(Task).insert({"title": "Once"})
        task.title = "Twice"
        await task.ref.save()
        assert provider.metrics.updates == 1
        await task.ref.save()
        assert provider.metrics.updates == 1
        assert not task.ref.was_changed()

    @pytest.mark.asyncio
    async def test_update_sends_only_changed_fields(self, context, provider):
        task = await context.repo(Task).insert({"title": "Partial", "priority": 1})
        # Change the stored row behind the item's back
        provider._storage["tasks"][(task.id,)]["priority"] = 7
        task.title = "Partial update"
        await task.ref.save()
        assert provider.rows("tasks")[0]["priority"] == 7
        assert task.priority == 7

    @pytest.mark.asyncio
    async def test_reload_discards_changes(self, context):
        task = await context.repo(Task).insert({"title": "Stored"})
        task.title = "Unsaved"
        await task.ref.reload()
        assert task.title == "Stored"
        assert not task.ref.was_changed()

    @pytest.mark.asyncio
    async def test_observers(self, context):
        task = context.repo(Task).create()
        calls = []
        unsubscribe = task.ref.subscribe(lambda: calls.append("any"))
        task.ref.fields.title.subscribe(lambda: calls.append("title"))

        task.ref.fields.title.value = "Observed"
        task.ref.set("priority", 3)
        assert calls == ["any", "title", "any"]

        unsubscribe()
        task.ref.set("priority", 4)
        assert calls == ["any", "title", "any"]

    @pytest.mark.asyncio
    async def test_clone_keeps_tracking_state(self, context):
        task = await context.repo(Task).insert({"title": "Source"})
        task.title = "Edited"
        clone = task.ref.clone()
        assert clone is not task
        assert clone.title == "Edited"
        assert not clone.ref.is_new()
        assert clone.ref.fields.title.original_value == "Source"


class TestReferenceTracking:
    @pytest.mark.asyncio
    async def test_reference_id_without_loading(self, context):
        orders = context.repo(Order)
        order = await orders.insert({"customer": 5, "total": 12.5})
        loaded = await orders.find_id(order.id)
        assert loaded.customer is None
        assert loaded.ref.fields.customer.get_id() == 5

        # Saving an unrelated change keeps the foreign key
        loaded.total = 13.0
        await loaded.ref.save()
        assert context.provider.rows("orders")[0]["customer"] == 5

    @pytest.mark.asyncio
    async def test_undo_of_cleared_reference(self, context):
        orders = context.repo(Order)
        order = await orders.insert({"customer": 5})
        order.ref.set("customer", None)
        assert order.ref.was_changed()
        assert order.ref.fields.customer.value_is_null()

        order.ref.undo_changes()
        assert not order.ref.was_changed()
        assert order.ref.fields.customer.get_id() == 5

    @pytest.mark.asyncio
    async def test_set_id_points_reference_at_row(self, context, provider):
        orders = context.repo(Order)
        order = await orders.insert({"customer": 5})
        field = order.ref.fields.customer

        field.set_id(7)
        assert field.get_id() == 7
        assert order.customer is None
        assert field.value_changed()
        await order.ref.save()
        assert provider.rows("orders")[0]["customer"] == 7

        field.set_id(None)
        assert field.value_is_null()
        with pytest.raises(ValueError):
            order.ref.fields.total.set_id(1)


class TestInputValues:
    """Text forms of field values"""

    @pytest.mark.asyncio
    async def test_input_value_round_trips(self, context):
        ticket = context.repo(Ticket).create({"subject": "printer", "due": date(2024, 3, 9)})
        fields = ticket.ref.fields
        assert fields.status.input_value == "open"
        assert fields.due.input_value == "2024-03-09"
        assert fields.points.input_value == "0.0"
        assert fields.urgent.input_value == "false"
        assert fields.id.input_value == ""

        fields.status.input_value = "closed"
        fields.due.input_value = "2024-04-01"
        fields.points.input_value = "2.5"
        fields.urgent.input_value = "yes"
        assert ticket.status is Status.CLOSED
        assert ticket.due == date(2024, 4, 1)
        assert ticket.points == 2.5
        assert ticket.urgent is True

        fields.due.input_value = ""
        assert ticket.due is None
        with pytest.raises(ValueError):
            fields.status.input_value = "lost"
        with pytest.raises(ValueError):
            fields.urgent.input_value = "maybe"

    @pytest.mark.asyncio
    async def test_reference_input_value(self, context):
        order = await context.repo(Order).insert({"customer": 5})
        assert order.ref.fields.customer.input_value == "5"
        order.ref.fields.customer.input_value = "9"
        assert order.ref.fields.customer.get_id() == 9
        order.ref.fields.customer.input_value = ""
        assert order.ref.fields.customer.value_is_null()

    @pytest.mark.asyncio
    async def test_display_value(self, context):
        ticket = await context.repo(Ticket).insert({"subject": "printer"})
        assert ticket.ref.fields.subject.display_value == f"#{ticket.id} printer"
        assert ticket.ref.fields.status.display_value == "open"
        assert ticket.ref.fields.due.display_value == ""

        task = context.repo(Task).create({"title": "plain", "completed": True})
        assert task.ref.fields.title.display_value == "plain"
        assert task.ref.fields.completed.display_value == "true"


class TestValidation:
    @pytest.mark.asyncio
    async def test_field_validator(self, context, provider):
        tasks = context.repo(Task)
        task = tasks.create({"title": "  "})
        with pytest.raises(ValidationError) as exc_info:
            await task.ref.save()
        assert exc_info.value.model_state == {"title": "Title is required"}
        assert task.ref.fields.title.error == "Title is required"
        assert task.ref.error == "Title: Title is required"
        assert provider.metrics.inserts == 0

    @pytest.mark.asyncio
    async def test_validate_returns_errors(self, context):
        tasks = context.repo(Task)
        info = await tasks.validate({"title": ""})
        assert info.model_state == {"title": "Title is required"}
        assert await tasks.validate({"title": "fine"}) is None

    @pytest.mark.asyncio
    async def test_type_check(self, context):
        task = context.repo(Task).create({"title": "typed"})
        task.priority = "high"
        info = await task.ref.validate()
        assert "priority" in info.model_state

    @pytest.mark.asyncio
    async def test_entity_validation_hook(self, context):
        notes = context.repo(Note)
        with pytest.raises(ValidationError) as exc_info:
            await notes.insert({"title": "x", "body": "forbidden"})
        assert exc_info.value.model_state == {"body": "Body is not allowed"}
        assert hook_calls == ["validation"]


class TestLifecycleHooks:
    @pytest.mark.asyncio
    async def test_hook_order_on_insert_and_update(self, context, provider):
        notes = context.repo(Note)
        note = await notes.insert({"title": "  hello "})
        assert note.title == "hello"
        assert provider.rows("notes")[0]["title"] == "hello"
        assert hook_calls == ["validation", "saving", "saved:new"]

        hook_calls.clear()
        note.body = "more"
        await note.ref.save()
        assert hook_calls == ["validation", "saving", "saved"]

    @pytest.mark.asyncio
    async def test_saving_hook_can_prevent(self, context, provider):
        note = context.repo(Note).create({"title": "draft"})
        await note.ref.save()
        assert note.ref.is_new()
        assert provider.rows("notes") == []
        assert "saved:new" not in hook_calls

    @pytest.mark.asyncio
    async def test_deleting_hook_can_prevent(self, context, provider):
        note = await context.repo(Note).insert({"title": "pinned", "locked": True})
        await note.ref.delete()
        assert not note.ref.was_deleted()
        assert len(provider.rows("notes")) == 1
        assert hook_calls[-1] == "deleting"

    @pytest.mark.asyncio
    async def test_delete_runs_hooks(self, context, provider):
        note = await context.repo(Note).insert({"title": "gone"})
        hook_calls.clear()
        await note.ref.delete()
        assert note.ref.was_deleted()
        assert provider.rows("notes") == []
        assert hook_calls == ["deleting", "deleted"]

        with pytest.raises(NotFoundError):
            await note.ref.save()
        with pytest.raises(NotFoundError):
            await note.ref.delete()


class TestAccessRules:
    @pytest.mark.asyncio
    async def test_field_update_rule(self, context):
        note = await context.repo(Note).insert({"title": "rules"})
        note.locked = True
        with pytest.raises(AccessDeniedError):
            await note.ref.save()

    @pytest.mark.asyncio
    async def test_delete_predicate(self, context):
        note = await context.repo(Note).insert({"title": "keep"})
        assert not note.ref.api_delete_allowed()
        with pytest.raises(AccessDeniedError):
            await note.ref.delete()

    @pytest.mark.asyncio
    async def test_hidden_field_not_serialized(self, context):
        note = await context.repo(Note).insert({"title": "api", "secret": "s3cret"})
        data = note.ref.to_api_json()
        assert "secret" not in data
        assert data["title"] == "api"
