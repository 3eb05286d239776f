"""
Metadata - Field and Entity Descriptions

Immutable descriptions of registered entities, built once per class.
"""

from .fields import ValueType, RelationKind, RelationInfo, FieldMetadata, fields, relations, evaluate_rule
from .entity import EntityOptions, EntityMetadata, FieldsMetadata, IdMetadata
from .registry import register_entity, entity, get_metadata, get_metadata_by_key, is_registered, clear_registry

__all__ = [
    "ValueType", "RelationKind", "RelationInfo", "FieldMetadata", "fields", "relations",
    "evaluate_rule", "EntityOptions", "EntityMetadata", "FieldsMetadata", "IdMetadata",
    "register_entity", "entity", "get_metadata", "get_metadata_by_key", "is_registered",
    "clear_registry",
]
