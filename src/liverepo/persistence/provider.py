"""
Data Provider Interface - Storage Command Contract

🔌 Pluggable Storage:
Repositories never talk to a database directly. They translate filters and
ordering into provider neutral structures and hand them to a ``DataProvider``
through this narrow, async command interface. Concrete providers (SQL
dialects, document stores, the bundled in-memory store) only implement it.

Rows are plain dicts keyed by field key, holding storage-form values.
Ids are passed as ``{field_key: value}`` dicts so composite ids work the
same way as single ones.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging

from ..errors import ProviderError
from ..filters.nodes import FilterNode, SortSegment
from ..metadata.entity import EntityMetadata

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


@dataclass
class ProviderMetrics:
    """Operation counters collected by every provider"""
    finds: int = 0
    counts: int = 0
    inserts: int = 0
    updates: int = 0
    deletes: int = 0
    bulk_operations: int = 0
    failed_operations: int = 0
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def total_operations(self) -> int:
        return self.finds + self.counts + self.inserts + self.updates + self.deletes + self.bulk_operations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finds": self.finds,
            "counts": self.counts,
            "inserts": self.inserts,
            "updates": self.updates,
            "deletes": self.deletes,
            "bulk_operations": self.bulk_operations,
            "failed_operations": self.failed_operations,
            "total_operations": self.total_operations,
            "uptime_seconds": (datetime.now() - self.started_at).total_seconds(),
        }


class DataProvider(ABC):
    """
    Abstract storage provider.

    Implementations must:
    - raise ``NotFoundError`` from ``update`` / ``delete`` when the id has no row
    - raise ``ConflictError`` from ``insert`` when the id already exists
    - return copies, never rows they keep internally
    """

    def __init__(self):
        self.metrics = ProviderMetrics()
        self._entities: Dict[str, EntityMetadata] = {}
        self._is_initialized = False
        self._logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    # Lifecycle

    async def initialize(self):
        if self._is_initialized:
            return
        await self._do_initialize()
        self._is_initialized = True
        self._logger.info(f"{self.__class__.__name__} initialized")

    async def shutdown(self):
        if not self._is_initialized:
            return
        await self._do_shutdown()
        self._is_initialized = False
        self._logger.info(f"{self.__class__.__name__} shutdown complete")

    async def _do_initialize(self):
        """Override in subclasses for specific initialization"""
        pass

    async def _do_shutdown(self):
        """Override in subclasses for specific shutdown"""
        pass

    # Entity registration

    def register_entity(self, metadata: EntityMetadata) -> None:
        """Called once per entity before its first use"""
        if metadata.key in self._entities:
            return
        self._entities[metadata.key] = metadata
        self._do_register_entity(metadata)
        self._logger.debug(f"Registered entity '{metadata.key}' (db_name={metadata.db_name})")

    def _do_register_entity(self, metadata: EntityMetadata) -> None:
        """Override to create tables, collections or indexes"""
        pass

    def is_registered(self, entity_key: str) -> bool:
        return entity_key in self._entities

    def get_entity(self, entity_key: str) -> EntityMetadata:
        try:
            return self._entities[entity_key]
        except KeyError:
            raise ProviderError(f"Entity '{entity_key}' is not registered with {self.__class__.__name__}",
                                entity_key=entity_key) from None

    # Commands

    @abstractmethod
    async def find(self, entity_key: str, where: FilterNode,
                   order_by: Sequence[SortSegment] = (),
                   limit: Optional[int] = None, skip: int = 0) -> List[Row]:
        """Rows matching ``where`` in ``order_by`` order, paged by limit/skip"""
        pass

    @abstractmethod
    async def count(self, entity_key: str, where: FilterNode) -> int:
        pass

    @abstractmethod
    async def insert(self, entity_key: str, row: Row) -> Row:
        """Insert a row and return it as persisted (generated ids filled in)"""
        pass

    @abstractmethod
    async def update(self, entity_key: str, id: Dict[str, Any], values: Row) -> Row:
        """Apply a partial row to the row with ``id`` and return the full row"""
        pass

    @abstractmethod
    async def delete(self, entity_key: str, id: Dict[str, Any]) -> None:
        pass

    async def update_many(self, entity_key: str, where: FilterNode, values: Row) -> int:
        """Apply ``values`` to every matching row; returns the affected count.

        The default implementation updates row by row; providers with native
        bulk statements should override it.
        """
        meta = self.get_entity(entity_key)
        rows = await self.find(entity_key, where)
        for row in rows:
            await self.update(entity_key, {f.key: row[f.key] for f in meta.id_metadata.fields}, values)
        return len(rows)

    async def delete_many(self, entity_key: str, where: FilterNode) -> int:
        """Delete every matching row; returns the affected count"""
        meta = self.get_entity(entity_key)
        rows = await self.find(entity_key, where)
        for row in rows:
            await self.delete(entity_key, {f.key: row[f.key] for f in meta.id_metadata.fields})
        return len(rows)

    async def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()


__all__ = ["DataProvider", "ProviderMetrics", "Row", "SortSegment"]
