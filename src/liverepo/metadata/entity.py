"""
Entity Metadata - Immutable Entity Descriptions

Entity metadata bundles the field descriptors with entity level policy:
storage name, caption, id fields, access predicates and lifecycle hooks.
One metadata object is built per entity class and shared by every instance.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .fields import AccessRule, FieldMetadata, evaluate_rule

LifecycleHook = Callable[[Any, Any], Any]


@dataclass(frozen=True)
class EntityOptions:
    """Entity level options given at registration"""
    caption: Optional[str] = None
    db_name: Optional[str] = None
    id: Union[str, Tuple[str, ...], None] = None
    allow_api_crud: AccessRule = True
    allow_api_read: Optional[AccessRule] = None
    allow_api_insert: Optional[AccessRule] = None
    allow_api_update: Optional[AccessRule] = None
    allow_api_delete: Optional[AccessRule] = None
    default_order_by: Optional[Mapping[str, str]] = None
    validation: Optional[LifecycleHook] = None
    saving: Optional[LifecycleHook] = None
    saved: Optional[LifecycleHook] = None
    deleting: Optional[LifecycleHook] = None
    deleted: Optional[LifecycleHook] = None


class FieldsMetadata:
    """Ordered, read-only collection of field metadata"""

    def __init__(self, field_list: List[FieldMetadata]):
        self._fields: Mapping[str, FieldMetadata] = MappingProxyType(
            {f.key: f for f in field_list}
        )

    def find(self, field_or_key: Union[FieldMetadata, str]) -> FieldMetadata:
        key = field_or_key.key if isinstance(field_or_key, FieldMetadata) else field_or_key
        try:
            return self._fields[key]
        except KeyError:
            raise KeyError(f"Unknown field '{key}'") from None

    def get(self, key: str) -> Optional[FieldMetadata]:
        return self._fields.get(key)

    def to_list(self) -> List[FieldMetadata]:
        return list(self._fields.values())

    def persisted(self) -> List[FieldMetadata]:
        return [f for f in self._fields.values() if f.is_persisted]

    def __getattr__(self, key: str) -> FieldMetadata:
        if key.startswith("_"):
            raise AttributeError(key)
        try:
            return self._fields[key]
        except KeyError:
            raise AttributeError(key) from None

    def __contains__(self, key: object) -> bool:
        return key in self._fields

    def __iter__(self) -> Iterator[FieldMetadata]:
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def keys(self):
        return self._fields.keys()


class IdMetadata:
    """Id field(s) of an entity and helpers to extract and filter by id"""

    def __init__(self, entity: 'EntityMetadata', id_fields: List[FieldMetadata]):
        self._entity = entity
        self.fields: Tuple[FieldMetadata, ...] = tuple(id_fields)

    @property
    def field(self) -> FieldMetadata:
        return self.fields[0]

    @property
    def is_composite(self) -> bool:
        return len(self.fields) > 1

    def is_id_field(self, field: Union[FieldMetadata, str]) -> bool:
        key = field.key if isinstance(field, FieldMetadata) else field
        return any(f.key == key for f in self.fields)

    def get_id(self, item: Any) -> Any:
        """Extract the id of an item or row (scalar, or dict for composite ids)"""
        values = {f.key: _read(item, f.key) for f in self.fields}
        if not self.is_composite:
            return values[self.field.key]
        return values

    def id_dict(self, id_value: Any) -> Dict[str, Any]:
        """Turn an id (scalar or dict) into a ``{field_key: value}`` dict"""
        if self.is_composite:
            if not isinstance(id_value, Mapping):
                raise ValueError(
                    f"Entity '{self._entity.key}' has a composite id, expected a dict of "
                    f"{[f.key for f in self.fields]}"
                )
            return {f.key: id_value[f.key] for f in self.fields}
        if isinstance(id_value, Mapping):
            return {self.field.key: id_value[self.field.key]}
        return {self.field.key: id_value}

    def has_id(self, item: Any) -> bool:
        return all(_read(item, f.key) is not None for f in self.fields)

    def get_id_filter(self, *ids: Any) -> Dict[str, Any]:
        """Filter expression matching the given id(s)"""
        if not self.is_composite:
            values = [self.id_dict(i)[self.field.key] for i in ids]
            return {self.field.key: values[0] if len(values) == 1 else values}
        dicts = [self.id_dict(i) for i in ids]
        if len(dicts) == 1:
            return dicts[0]
        return {"$or": dicts}

    def create_id_in_filter(self, items: List[Any]):
        from ..filters.translator import create_id_in_filter
        return create_id_in_filter(self._entity, items)


def _read(item: Any, key: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key)
    return getattr(item, key, None)


class EntityMetadata:
    """Immutable metadata for one registered entity class"""

    def __init__(self, entity_type: type, key: str, field_list: List[FieldMetadata],
                 options: EntityOptions):
        self.entity_type = entity_type
        self.key = key
        self.options = options
        self.caption = options.caption or entity_type.__name__
        self.db_name = options.db_name or key
        self.fields = FieldsMetadata(field_list)
        self.id_metadata = IdMetadata(self, [f for f in field_list if f.is_id])
        self._frozen = True

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise AttributeError(f"EntityMetadata for '{self.key}' is read-only")
        super().__setattr__(name, value)

    def rule(self, name: str) -> AccessRule:
        """Access rule by option name, falling back to ``allow_api_crud``"""
        rule = getattr(self.options, name)
        return self.options.allow_api_crud if rule is None else rule

    @property
    def api_read_allowed(self) -> bool:
        return evaluate_rule(self.rule("allow_api_read"), None)

    def api_insert_allowed(self, item: Any = None) -> bool:
        return evaluate_rule(self.rule("allow_api_insert"), item)

    def api_update_allowed(self, item: Any = None) -> bool:
        return evaluate_rule(self.rule("allow_api_update"), item)

    def api_delete_allowed(self, item: Any = None) -> bool:
        return evaluate_rule(self.rule("allow_api_delete"), item)

    def __repr__(self) -> str:
        return f"EntityMetadata(key={self.key!r}, fields={list(self.fields.keys())})"


__all__ = ["EntityOptions", "EntityMetadata", "FieldsMetadata", "IdMetadata", "LifecycleHook"]
