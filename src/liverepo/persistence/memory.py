"""
Memory Provider - In-Memory Storage Backend

🧠 Reference Storage Provider:
Keeps rows in process memory, keyed by entity key and id. Filters and
ordering are evaluated in-process with ``filters.evaluate``, so this provider
behaves exactly like the live query engine's own row matching. Used by the
test suite and for prototyping; data is lost when the process exits.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple
import copy
import logging

from ..errors import ConflictError, NotFoundError
from ..filters.evaluate import filter_rows, sort_rows
from ..filters.nodes import FilterNode, SortSegment
from ..metadata.entity import EntityMetadata
from ..metadata.fields import ValueType
from .provider import DataProvider, Row

logger = logging.getLogger(__name__)

RowKey = Tuple[Any, ...]


class InMemoryDataProvider(DataProvider):
    """
    Complete in-memory provider implementation.

    Features:
    - Rows kept in insertion order per entity
    - Autoincrement sequences for ``fields.autoincrement()`` ids
    - Conflict and not-found detection by id
    - Deep copies in and out, so callers never share rows with the store
    """

    def __init__(self, data: Optional[Dict[str, List[Row]]] = None):
        super().__init__()
        self._storage: Dict[str, Dict[RowKey, Row]] = defaultdict(dict)
        self._sequences: Dict[str, int] = defaultdict(int)
        # Seed rows are inserted when their entity registers
        self._seed: Dict[str, List[Row]] = {k: list(v) for k, v in (data or {}).items()}

    def _do_register_entity(self, metadata: EntityMetadata) -> None:
        for row in self._seed.pop(metadata.key, []):
            self._insert_row(metadata, row)

    async def _do_shutdown(self):
        self._storage.clear()
        self._sequences.clear()

    # Helpers

    def _row_key(self, metadata: EntityMetadata, row: Row) -> RowKey:
        return tuple(row.get(f.key) for f in metadata.id_metadata.fields)

    def _auto_fields(self, metadata: EntityMetadata):
        return [f for f in metadata.id_metadata.fields
                if f.auto and f.value_type == ValueType.INTEGER]

    def _insert_row(self, metadata: EntityMetadata, row: Row) -> Row:
        stored = copy.deepcopy(dict(row))
        for field in self._auto_fields(metadata):
            sequence_key = f"{metadata.key}.{field.key}"
            if stored.get(field.key) is None:
                self._sequences[sequence_key] += 1
                stored[field.key] = self._sequences[sequence_key]
            else:
                self._sequences[sequence_key] = max(self._sequences[sequence_key], stored[field.key])

        for field in metadata.fields.persisted():
            stored.setdefault(field.key, None)

        key = self._row_key(metadata, stored)
        if any(part is None for part in key):
            raise ConflictError(f"Cannot insert a row without an id into '{metadata.key}'",
                                entity_key=metadata.key)
        table = self._storage[metadata.key]
        if key in table:
            raise ConflictError(f"A row with id {self._describe(metadata, key)} already exists",
                                entity_key=metadata.key)
        table[key] = stored
        return copy.deepcopy(stored)

    def _describe(self, metadata: EntityMetadata, key: RowKey) -> str:
        if len(key) == 1:
            return repr(key[0])
        return repr({f.key: v for f, v in zip(metadata.id_metadata.fields, key)})

    def _find_key(self, metadata: EntityMetadata, id: Dict[str, Any]) -> RowKey:
        key = tuple(id.get(f.key) for f in metadata.id_metadata.fields)
        if key not in self._storage[metadata.key]:
            raise NotFoundError(f"No row with id {self._describe(metadata, key)}",
                                entity_key=metadata.key)
        return key

    # Commands

    async def find(self, entity_key: str, where: FilterNode,
                   order_by: Sequence[SortSegment] = (),
                   limit: Optional[int] = None, skip: int = 0) -> List[Row]:
        self.get_entity(entity_key)
        self.metrics.finds += 1
        rows = filter_rows(self._storage[entity_key].values(), where)
        rows = sort_rows(rows, order_by)
        if skip:
            rows = rows[skip:]
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def count(self, entity_key: str, where: FilterNode) -> int:
        self.get_entity(entity_key)
        self.metrics.counts += 1
        return len(filter_rows(self._storage[entity_key].values(), where))

    async def insert(self, entity_key: str, row: Row) -> Row:
        metadata = self.get_entity(entity_key)
        self.metrics.inserts += 1
        try:
            return self._insert_row(metadata, row)
        except ConflictError:
            self.metrics.failed_operations += 1
            raise

    async def update(self, entity_key: str, id: Dict[str, Any], values: Row) -> Row:
        metadata = self.get_entity(entity_key)
        self.metrics.updates += 1
        table = self._storage[entity_key]
        try:
            key = self._find_key(metadata, id)
        except NotFoundError:
            self.metrics.failed_operations += 1
            raise

        updated = dict(table[key])
        updated.update(copy.deepcopy(dict(values)))
        new_key = self._row_key(metadata, updated)
        if new_key != key:
            if new_key in table:
                self.metrics.failed_operations += 1
                raise ConflictError(f"A row with id {self._describe(metadata, new_key)} already exists",
                                    entity_key=entity_key)
            # Re-key in place so the row keeps its insertion position
            self._storage[entity_key] = {
                (new_key if k == key else k): (updated if k == key else v)
                for k, v in table.items()
            }
        else:
            table[key] = updated
        return copy.deepcopy(updated)

    async def delete(self, entity_key: str, id: Dict[str, Any]) -> None:
        metadata = self.get_entity(entity_key)
        self.metrics.deletes += 1
        try:
            key = self._find_key(metadata, id)
        except NotFoundError:
            self.metrics.failed_operations += 1
            raise
        del self._storage[entity_key][key]

    async def update_many(self, entity_key: str, where: FilterNode, values: Row) -> int:
        metadata = self.get_entity(entity_key)
        if any(metadata.id_metadata.is_id_field(k) for k in values):
            # Id changes need re-keying, one row at a time
            return await super().update_many(entity_key, where, values)
        self.metrics.bulk_operations += 1
        rows = filter_rows(self._storage[entity_key].values(), where)
        for row in rows:
            row.update(copy.deepcopy(dict(values)))
        return len(rows)

    async def delete_many(self, entity_key: str, where: FilterNode) -> int:
        metadata = self.get_entity(entity_key)
        self.metrics.bulk_operations += 1
        table = self._storage[entity_key]
        keys = [self._row_key(metadata, row) for row in filter_rows(table.values(), where)]
        for key in keys:
            del table[key]
        return len(keys)

    # Inspection

    def rows(self, entity_key: str) -> List[Row]:
        """Copies of every stored row of an entity, in insertion order"""
        return [copy.deepcopy(r) for r in self._storage[entity_key].values()]

    def clear(self, entity_key: Optional[str] = None) -> None:
        if entity_key is None:
            self._storage.clear()
            self._sequences.clear()
        else:
            self._storage.pop(entity_key, None)


__all__ = ["InMemoryDataProvider"]
