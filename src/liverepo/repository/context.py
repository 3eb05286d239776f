"""
Data Context - Provider, Repositories and Live Queries

🏭 Coordination:
A ``DataContext`` ties one storage provider to the repositories built on it
and to the live query engine those repositories publish their changes to.
Repositories are created on first use and cached per entity class.
"""

from typing import Dict, Optional, Type, TypeVar
import logging

from ..config import DataLayerConfig, get_config
from ..persistence.provider import DataProvider
from ..realtime.engine import LiveQueryEngine
from .repository import Repository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DataContext:
    """
    Entry point of the data layer.

    Example:
        context = DataContext(InMemoryDataProvider())
        tasks = context.repo(Task)
        ...
        await context.close()
    """

    def __init__(self, provider: DataProvider, config: Optional[DataLayerConfig] = None):
        self.provider = provider
        self.config = config or get_config()
        self.live_queries = LiveQueryEngine(self.config.live_query)
        self._repositories: Dict[type, Repository] = {}
        self._closed = False

    def repo(self, entity_type: Type[T]) -> Repository[T]:
        """Repository for a registered entity class (cached)"""
        repository = self._repositories.get(entity_type)
        if repository is None:
            repository = Repository(entity_type, self)
            self._repositories[entity_type] = repository
            logger.debug(f"Created repository for '{repository.metadata.key}'")
        return repository

    @property
    def repositories(self) -> Dict[type, Repository]:
        return dict(self._repositories)

    async def close(self):
        """Stop live queries and shut the provider down"""
        if self._closed:
            return
        self._closed = True
        await self.live_queries.stop()
        await self.provider.shutdown()
        logger.debug("DataContext closed")

    async def __aenter__(self) -> 'DataContext':
        await self.provider.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


__all__ = ["DataContext"]
