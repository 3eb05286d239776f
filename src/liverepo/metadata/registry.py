"""
Entity Registry - Build Once, Read Forever

``register_entity`` builds the metadata for an entity class from explicit
field descriptors plus whatever can be inferred from the pydantic model, and
caches it keyed by the class. The cache is written once per class at startup
and only read afterwards.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, Union, get_args, get_origin
import logging
import threading
import types
from dataclasses import replace

from .entity import EntityMetadata, EntityOptions
from .fields import FieldMetadata, ValueType, fields as field_builders

logger = logging.getLogger(__name__)

_registry: Dict[type, EntityMetadata] = {}
_keys: Dict[str, type] = {}
_lock = threading.Lock()


def _unwrap_optional(annotation: Any):
    """Return (inner annotation, allows None)"""
    origin = get_origin(annotation)
    if origin is Union or origin is getattr(types, "UnionType", None):
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0], True
        return annotation, True
    return annotation, False


def infer_field(annotation: Any, default: Any = None) -> Optional[FieldMetadata]:
    """Infer a field descriptor from a type annotation (None when unsupported)"""
    inner, nullable = _unwrap_optional(annotation)
    origin = get_origin(inner) or inner

    if inner is bool:
        descriptor = field_builders.boolean()
    elif inner is int:
        descriptor = field_builders.integer()
    elif inner is float:
        descriptor = field_builders.number()
    elif inner is str:
        descriptor = field_builders.string()
    elif inner is datetime:
        descriptor = field_builders.datetime()
    elif inner is date:
        descriptor = field_builders.date()
    elif isinstance(inner, type) and issubclass(inner, Enum):
        descriptor = field_builders.enum(inner)
    elif origin in (dict, list, Dict, List) or inner is Any:
        # Lists of entities are relations and must be declared explicitly
        if any(isinstance(arg, type) and hasattr(arg, "model_fields") for arg in get_args(inner)):
            return None
        descriptor = field_builders.json()
    else:
        return None

    return replace(descriptor, allow_null=nullable or descriptor.allow_null,
                   default=default if default is not None or nullable else descriptor.default)


def register_entity(entity_type: type, key: str,
                    fields: Optional[Mapping[str, FieldMetadata]] = None,
                    **options) -> None:
    """Register an entity class.

    Args:
        entity_type: ``Entity`` subclass holding the field values
        key: Unique entity key (also the default storage name)
        fields: Explicit field descriptors by field name; pydantic fields
            without a descriptor are inferred from their annotations
        **options: ``EntityOptions`` values (id, access rules, hooks, ...)
    """
    from ..entities.base import Entity

    if not (isinstance(entity_type, type) and issubclass(entity_type, Entity)):
        raise TypeError(f"{entity_type!r} must subclass liverepo.Entity")

    entity_options = EntityOptions(**options)
    explicit = dict(fields or {})
    model_fields = entity_type.model_fields

    unknown = [name for name in explicit if name not in model_fields]
    if unknown:
        raise ValueError(f"Fields {unknown} are not declared on {entity_type.__name__}")

    id_option = entity_options.id
    if id_option is None:
        id_keys = ("id",)
    elif isinstance(id_option, str):
        id_keys = (id_option,)
    else:
        id_keys = tuple(id_option)

    field_list: List[FieldMetadata] = []
    for name, model_field in model_fields.items():
        descriptor = explicit.get(name)
        if descriptor is None:
            default = None if model_field.is_required() else model_field.get_default(call_default_factory=True)
            descriptor = infer_field(model_field.annotation, default)
            if descriptor is None:
                logger.debug(f"Skipping field {entity_type.__name__}.{name}: unsupported annotation")
                continue
        field_list.append(descriptor.bind(name, is_id=name in id_keys))

    missing = [k for k in id_keys if k not in {f.key for f in field_list}]
    if missing:
        raise ValueError(f"Entity '{key}' has no id field(s) {missing}")

    metadata = EntityMetadata(entity_type, key, field_list, entity_options)

    with _lock:
        if entity_type in _registry:
            raise ValueError(f"{entity_type.__name__} is already registered as '{_registry[entity_type].key}'")
        if key in _keys:
            raise ValueError(f"Entity key '{key}' is already used by {_keys[key].__name__}")
        _registry[entity_type] = metadata
        _keys[key] = entity_type

    logger.debug(f"Registered entity '{key}' with fields {[f.key for f in field_list]}")


def entity(key: str, fields: Optional[Mapping[str, FieldMetadata]] = None, **options):
    """Class decorator form of ``register_entity``"""
    def decorator(entity_type: type) -> type:
        register_entity(entity_type, key, fields, **options)
        return entity_type
    return decorator


def get_metadata(entity_type: type) -> EntityMetadata:
    try:
        return _registry[entity_type]
    except KeyError:
        raise LookupError(f"{getattr(entity_type, '__name__', entity_type)} is not a registered entity") from None


def is_registered(entity_type: type) -> bool:
    return entity_type in _registry


def get_metadata_by_key(key: str) -> EntityMetadata:
    try:
        return _registry[_keys[key]]
    except KeyError:
        raise LookupError(f"No entity registered under key '{key}'") from None


def clear_registry() -> None:
    """Forget every registration (test helper)"""
    with _lock:
        _registry.clear()
        _keys.clear()


__all__ = [
    "register_entity", "entity", "get_metadata", "get_metadata_by_key",
    "is_registered", "clear_registry", "infer_field",
]
