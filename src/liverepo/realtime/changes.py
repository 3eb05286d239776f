"""
Live Query Changes - Change Events and Result Deltas

``ChangeEvent`` describes a row change reported to the live query engine
(by repositories after each mutation, or by any external change source).
``LiveQueryChange`` is one delta delivered to subscribers; applying a list of
deltas to the previous result with ``apply_changes`` yields the new result.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import uuid


class ChangeOperation(Enum):
    """Kinds of row changes"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    BULK = "bulk"  # unknown set of rows changed, re-run every query on the entity


@dataclass
class ChangeEvent:
    """A change to one row (or, for BULK, to an unknown set of rows)"""
    entity_key: str
    operation: ChangeOperation
    row: Optional[Dict[str, Any]] = None
    id: Any = None
    previous_id: Any = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def inserted(cls, entity_key: str, row: Dict[str, Any], id: Any) -> 'ChangeEvent':
        return cls(entity_key, ChangeOperation.INSERT, row=row, id=id)

    @classmethod
    def updated(cls, entity_key: str, row: Dict[str, Any], id: Any,
                previous_id: Any = None) -> 'ChangeEvent':
        return cls(entity_key, ChangeOperation.UPDATE, row=row, id=id, previous_id=previous_id)

    @classmethod
    def deleted(cls, entity_key: str, id: Any, row: Optional[Dict[str, Any]] = None) -> 'ChangeEvent':
        return cls(entity_key, ChangeOperation.DELETE, row=row, id=id)

    @classmethod
    def bulk(cls, entity_key: str) -> 'ChangeEvent':
        return cls(entity_key, ChangeOperation.BULK)


class ChangeType:
    ALL = "all"
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"


@dataclass
class LiveQueryChange:
    """One delta for a live query result.

    - ``all``: ``items`` replaces the whole result
    - ``add``: ``item`` is inserted at ``index`` (appended when None)
    - ``replace``: the item with ``old_id`` (or ``id``) is replaced by ``item``
    - ``remove``: the item with ``id`` is removed
    """
    type: str
    id: Any = None
    old_id: Any = None
    item: Any = None
    index: Optional[int] = None
    items: Optional[List[Any]] = None

    @classmethod
    def all(cls, items: Sequence[Any]) -> 'LiveQueryChange':
        return cls(ChangeType.ALL, items=list(items))

    @classmethod
    def add(cls, id: Any, item: Any, index: Optional[int] = None) -> 'LiveQueryChange':
        return cls(ChangeType.ADD, id=id, item=item, index=index)

    @classmethod
    def replace(cls, id: Any, item: Any, old_id: Any = None) -> 'LiveQueryChange':
        return cls(ChangeType.REPLACE, id=id, old_id=old_id if old_id is not None else id, item=item)

    @classmethod
    def remove(cls, id: Any) -> 'LiveQueryChange':
        return cls(ChangeType.REMOVE, id=id)


def default_id_of(item: Any) -> Any:
    """Id of an entity (via its metadata) or of a plain dict (its ``id`` key)"""
    if isinstance(item, Mapping):
        return item.get("id")
    from ..metadata.registry import get_metadata, is_registered
    if is_registered(type(item)):
        return get_metadata(type(item)).id_metadata.get_id(item)
    return getattr(item, "id", None)


def apply_changes(prev: Sequence[Any], changes: Sequence[LiveQueryChange],
                  id_of: Optional[Callable[[Any], Any]] = None) -> List[Any]:
    """Apply ``changes`` in order to ``prev`` and return the new list.

    ``prev`` is never modified. Adds land at their index when it is known
    and in range, otherwise at the end; replaces and removes match by id.
    """
    id_of = id_of or default_id_of
    items = list(prev)
    for change in changes:
        if change.type == ChangeType.ALL:
            items = list(change.items or [])
        elif change.type == ChangeType.ADD:
            if change.index is not None and 0 <= change.index <= len(items):
                items.insert(change.index, change.item)
            else:
                items.append(change.item)
        elif change.type == ChangeType.REPLACE:
            target = change.old_id if change.old_id is not None else change.id
            for position, existing in enumerate(items):
                if id_of(existing) == target:
                    items[position] = change.item
                    break
        elif change.type == ChangeType.REMOVE:
            items = [existing for existing in items if id_of(existing) != change.id]
        else:
            raise ValueError(f"Unknown live query change type '{change.type}'")
    return items


@dataclass
class LiveQueryChangeInfo:
    """Payload delivered to live query listeners"""
    items: List[Any]
    changes: List[LiveQueryChange]

    def apply_changes(self, prev: Sequence[Any],
                      id_of: Optional[Callable[[Any], Any]] = None) -> List[Any]:
        return apply_changes(prev, self.changes, id_of)


__all__ = [
    "ChangeOperation", "ChangeEvent", "ChangeType", "LiveQueryChange",
    "LiveQueryChangeInfo", "apply_changes", "default_id_of",
]
