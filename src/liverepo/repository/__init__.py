"""
Repository - CRUD, Queries, Relations and the Data Context
"""

from .options import FindOptions, IncludeOptions
from .query import QueryResult, Paginator
from .relations import RelationResolver, ToOneRelation, ItemRelations
from .repository import Repository
from .context import DataContext

__all__ = [
    "FindOptions", "IncludeOptions", "QueryResult", "Paginator",
    "RelationResolver", "ToOneRelation", "ItemRelations",
    "Repository", "DataContext",
]
