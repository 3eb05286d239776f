"""
LiveRepo - Repository Data Access with Live Queries

Declare entities once, then query, validate, save and relate them through a
uniform repository API over any storage provider, and subscribe to queries
whose results are patched as the data changes.
"""

from .entities import Entity, EntityRef, FieldRef, LifecycleEvent, ErrorInfo, get_entity_ref
from .metadata import (
    fields, relations, entity, register_entity, get_metadata, is_registered,
    EntityOptions, EntityMetadata, FieldMetadata, ValueType, RelationKind,
)
from .filters import FilterOperator, FilterNode, SortSegment, translate, translate_order
from .persistence import DataProvider, InMemoryDataProvider
from .repository import DataContext, Repository, FindOptions, QueryResult, Paginator
from .realtime import (
    ChangeEvent, ChangeOperation, LiveQuery, LiveQueryChange, LiveQueryChangeInfo,
    LiveQueryEngine, apply_changes,
)
from .errors import (
    DataLayerError, ValidationError, AccessDeniedError, NotFoundError,
    ConflictError, ProviderError,
)
from .config import (
    DataLayerConfig, QueryConfig, LiveQueryConfig, LoggingConfig, Environment,
    get_config, set_config, configure_logging,
)

__version__ = "0.1.0"

__all__ = [
    # Entities and metadata
    'Entity',
    'EntityRef',
    'FieldRef',
    'LifecycleEvent',
    'ErrorInfo',
    'get_entity_ref',
    'fields',
    'relations',
    'entity',
    'register_entity',
    'get_metadata',
    'is_registered',
    'EntityOptions',
    'EntityMetadata',
    'FieldMetadata',
    'ValueType',
    'RelationKind',

    # Filters
    'FilterOperator',
    'FilterNode',
    'SortSegment',
    'translate',
    'translate_order',

    # Storage and repositories
    'DataProvider',
    'InMemoryDataProvider',
    'DataContext',
    'Repository',
    'FindOptions',
    'QueryResult',
    'Paginator',

    # Live queries
    'ChangeEvent',
    'ChangeOperation',
    'LiveQuery',
    'LiveQueryChange',
    'LiveQueryChangeInfo',
    'LiveQueryEngine',
    'apply_changes',

    # Errors
    'DataLayerError',
    'ValidationError',
    'AccessDeniedError',
    'NotFoundError',
    'ConflictError',
    'ProviderError',

    # Configuration
    'DataLayerConfig',
    'QueryConfig',
    'LiveQueryConfig',
    'LoggingConfig',
    'Environment',
    'get_config',
    'set_config',
    'configure_logging',
]
