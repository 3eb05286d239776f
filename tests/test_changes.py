"""
Applying live query deltas to a previous result.
"""

import pytest

from liverepo import ChangeEvent, ChangeOperation, LiveQueryChange, apply_changes
from liverepo.realtime import default_id_of

from tests.models import OrderLine, Task


def row(id, name):
    return {"id": id, "name": name}


class TestApplyChanges:
    """apply_changes on plain dict items"""

    def test_all_replaces_everything(self):
        prev = [row(1, "a")]
        result = apply_changes(prev, [LiveQueryChange.all([row(2, "b"), row(3, "c")])])
        assert [r["id"] for r in result] == [2, 3]
        assert prev == [row(1, "a")]

    def test_add_at_index_or_end(self):
        prev = [row(1, "a"), row(3, "c")]
        result = apply_changes(prev, [
            LiveQueryChange.add(2, row(2, "b"), index=1),
            LiveQueryChange.add(4, row(4, "d")),
            LiveQueryChange.add(5, row(5, "e"), index=99),
        ])
        assert [r["id"] for r in result] == [1, 2, 3, 4, 5]

    def test_replace_matches_old_id(self):
        prev = [row(1, "a"), row(2, "b")]
        result = apply_changes(prev, [LiveQueryChange.replace(7, row(7, "b2"), old_id=2)])
        assert result == [row(1, "a"), row(7, "b2")]

    def test_remove_and_unknown_ids(self):
        prev = [row(1, "a"), row(2, "b")]
        result = apply_changes(prev, [
            LiveQueryChange.remove(1),
            LiveQueryChange.remove(42),
            LiveQueryChange.replace(43, row(43, "x")),
        ])
        assert result == [row(2, "b")]

    def test_changes_apply_in_order(self):
        result = apply_changes([], [
            LiveQueryChange.add(1, row(1, "a")),
            LiveQueryChange.replace(1, row(1, "a2")),
            LiveQueryChange.add(2, row(2, "b"), index=0),
            LiveQueryChange.remove(1),
        ])
        assert result == [row(2, "b")]

    def test_custom_id_function(self):
        prev = [{"key": "x"}, {"key": "y"}]
        result = apply_changes(prev, [LiveQueryChange.remove("x")], id_of=lambda item: item["key"])
        assert result == [{"key": "y"}]

    def test_unknown_change_type(self):
        with pytest.raises(ValueError):
            apply_changes([], [LiveQueryChange("move", id=1)])


class TestIds:
    """Default id lookup for entities and dicts"""

    def test_entity_and_composite_ids(self):
        assert default_id_of(Task.model_construct(id=3, title="t")) == 3
        line = OrderLine.model_construct(order_id=1, line_no=2, quantity=1)
        assert default_id_of(line) == {"order_id": 1, "line_no": 2}
        assert default_id_of({"id": 9}) == 9


class TestEvents:
    """Change event constructors"""

    def test_event_kinds(self):
        assert ChangeEvent.inserted("tasks", {"id": 1}, 1).operation == ChangeOperation.INSERT
        updated = ChangeEvent.updated("tasks", {"id": 2}, 2, previous_id=1)
        assert (updated.operation, updated.previous_id) == (ChangeOperation.UPDATE, 1)
        assert ChangeEvent.deleted("tasks", 1).row is None
        bulk = ChangeEvent.bulk("tasks")
        assert bulk.operation == ChangeOperation.BULK and bulk.id is None
        assert bulk.event_id != ChangeEvent.bulk("tasks").event_id
