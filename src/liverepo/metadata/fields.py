"""
Field Metadata - Declarative Field Descriptions

This module describes the fields of an entity: their value type, nullability,
defaults, validators, serialisation hooks and access predicates. Field
descriptors are created with the ``fields`` / ``relations`` builders and are
bound to a key when the entity is registered.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type, Union
import copy
import json
import uuid as uuid_module

from pydantic import TypeAdapter

# Predicates are either plain booleans or functions of an item (or None)
AccessRule = Union[bool, Callable[[Any], bool]]
Validator = Callable[[Any, Any], Any]

_DATE_ADAPTER = TypeAdapter(date)
_DATETIME_ADAPTER = TypeAdapter(datetime)


class ValueType(Enum):
    """Value type tags for entity fields"""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    JSON = "json"
    ENUM = "enum"
    REFERENCE = "reference"
    TO_ONE = "to_one"
    TO_MANY = "to_many"


COMPARABLE_TYPES = frozenset({
    ValueType.STRING, ValueType.INTEGER, ValueType.NUMBER,
    ValueType.DATE, ValueType.DATETIME,
})


class RelationKind(Enum):
    """How a relation is stored"""
    REFERENCE = "reference"  # related id stored in the relation's own column
    TO_ONE = "to_one"        # virtual, keyed by foreign key field(s) on the owner
    TO_MANY = "to_many"      # virtual, keyed by foreign key field(s) on the target


@dataclass(frozen=True)
class RelationInfo:
    """Relation description attached to a relation field"""
    kind: RelationKind
    target: Any
    field: Optional[str] = None
    fields: Optional[Mapping[str, str]] = None
    find_options: Any = None
    default_included: bool = False

    def target_type(self) -> type:
        """Resolve the target class (targets may be given lazily as a callable)"""
        if isinstance(self.target, type):
            return self.target
        return self.target()

    def target_metadata(self):
        from .registry import get_metadata
        return get_metadata(self.target_type())

    def key_map(self, owner_metadata) -> Dict[str, str]:
        """Map of target field key -> owner field key used to match rows"""
        target = self.target_metadata()
        if self.fields:
            return dict(self.fields)
        if self.kind == RelationKind.TO_MANY:
            if not self.field:
                raise ValueError("to_many relations need `field` or `fields`")
            return {self.field: owner_metadata.id_metadata.field.key}
        return {target.id_metadata.field.key: self.field}


@dataclass(frozen=True)
class FieldMetadata:
    """Immutable description of one entity field"""
    key: str = ""
    value_type: ValueType = ValueType.STRING
    caption: Optional[str] = None
    db_name: Optional[str] = None
    allow_null: bool = False
    is_id: bool = False
    auto: bool = False
    default: Any = None
    validators: Tuple[Validator, ...] = ()
    to_db: Optional[Callable[[Any], Any]] = None
    from_db: Optional[Callable[[Any], Any]] = None
    to_json: Optional[Callable[[Any], Any]] = None
    from_json: Optional[Callable[[Any], Any]] = None
    include_in_api: AccessRule = True
    allow_api_update: AccessRule = True
    enum_type: Optional[Type[Enum]] = None
    relation: Optional[RelationInfo] = None
    # (item, value) -> text shown to users in place of the input text
    display_value: Optional[Callable[[Any, Any], Any]] = None

    def bind(self, key: str, **changes) -> 'FieldMetadata':
        """Return a copy bound to ``key``"""
        caption = self.caption or key.replace("_", " ").capitalize()
        return replace(self, key=key, caption=caption, db_name=self.db_name or key, **changes)

    @property
    def is_relation(self) -> bool:
        return self.relation is not None

    @property
    def is_persisted(self) -> bool:
        """Virtual relations have no column of their own"""
        return self.value_type not in (ValueType.TO_ONE, ValueType.TO_MANY)

    @property
    def is_comparable(self) -> bool:
        return self.value_type in COMPARABLE_TYPES

    def default_value(self) -> Any:
        if self.value_type == ValueType.TO_MANY:
            return []
        if callable(self.default):
            return self.default()
        return copy.deepcopy(self.default)

    def related_metadata(self):
        if not self.relation:
            raise ValueError(f"Field '{self.key}' is not a relation")
        return self.relation.target_metadata()

    # Value checks and conversions

    def check_value(self, value: Any) -> Any:
        """Normalise a value of this field's type or raise ``TypeError``"""
        if value is None:
            return None
        vt = self.value_type
        if vt == ValueType.STRING:
            if not isinstance(value, str):
                raise TypeError(f"expected a string, got {type(value).__name__}")
        elif vt == ValueType.INTEGER:
            if isinstance(value, bool) or not isinstance(value, int):
                if isinstance(value, float) and value.is_integer():
                    return int(value)
                raise TypeError(f"expected an integer, got {type(value).__name__}")
        elif vt == ValueType.NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"expected a number, got {type(value).__name__}")
        elif vt == ValueType.BOOLEAN:
            if not isinstance(value, bool):
                raise TypeError(f"expected a boolean, got {type(value).__name__}")
        elif vt == ValueType.DATE:
            if isinstance(value, datetime):
                return value.date()
            if not isinstance(value, date):
                return _DATE_ADAPTER.validate_python(value)
        elif vt == ValueType.DATETIME:
            if not isinstance(value, datetime):
                return _DATETIME_ADAPTER.validate_python(value)
        elif vt == ValueType.ENUM:
            if self.enum_type and not isinstance(value, self.enum_type):
                try:
                    return self.enum_type(value)
                except ValueError as e:
                    raise TypeError(str(e)) from e
        return value

    def value_to_db(self, value: Any) -> Any:
        if self.to_db:
            return self.to_db(value)
        if self.value_type == ValueType.JSON:
            return copy.deepcopy(value)
        if self.value_type == ValueType.ENUM and isinstance(value, Enum):
            # Rows hold the member's value
            return value.value
        return value

    def value_from_db(self, value: Any) -> Any:
        if self.from_db:
            return self.from_db(value)
        if self.value_type == ValueType.JSON:
            return copy.deepcopy(value)
        if self.value_type == ValueType.ENUM and self.enum_type and value is not None:
            return value if isinstance(value, self.enum_type) else self.enum_type(value)
        return value

    def value_to_json(self, value: Any) -> Any:
        if self.to_json:
            return self.to_json(value)
        if value is None:
            return None
        if self.value_type in (ValueType.DATE, ValueType.DATETIME):
            return value.isoformat()
        if self.value_type == ValueType.ENUM and isinstance(value, Enum):
            return value.value
        if self.value_type == ValueType.JSON:
            return copy.deepcopy(value)
        return value

    def value_from_json(self, value: Any) -> Any:
        if self.from_json:
            return self.from_json(value)
        if value is None:
            return None
        if self.value_type == ValueType.JSON:
            return copy.deepcopy(value)
        if self.value_type in (ValueType.REFERENCE, ValueType.TO_ONE, ValueType.TO_MANY):
            return value
        try:
            return self.check_value(value)
        except (TypeError, ValueError):
            if self.value_type == ValueType.NUMBER and isinstance(value, str):
                return float(value)
            if self.value_type == ValueType.INTEGER and isinstance(value, str):
                return int(value)
            raise

    def value_to_input(self, value: Any) -> str:
        """Text form of a value, as edited in a form input"""
        if value is None:
            return ""
        if self.value_type == ValueType.BOOLEAN and not self.to_json:
            return "true" if value else "false"
        if self.value_type == ValueType.JSON and not self.to_json:
            return json.dumps(value)
        return str(self.value_to_json(value))

    def value_from_input(self, text: Optional[str]) -> Any:
        """Parse the text of a form input; empty text is None except for strings"""
        vt = self.value_type
        if vt in (ValueType.REFERENCE, ValueType.TO_ONE, ValueType.TO_MANY):
            raise ValueError(f"Field '{self.key}' has no input form")
        if vt == ValueType.STRING:
            return text or ""
        if text is None or not text.strip():
            return None
        text = text.strip()
        if self.from_json:
            return self.from_json(text)
        if vt == ValueType.BOOLEAN:
            lowered = text.lower()
            if lowered in ("true", "1", "yes", "on"):
                return True
            if lowered in ("false", "0", "no", "off"):
                return False
            raise ValueError(f"expected true or false, got {text!r}")
        if vt == ValueType.INTEGER:
            return int(text)
        if vt == ValueType.NUMBER:
            return float(text)
        if vt == ValueType.JSON:
            return json.loads(text)
        if vt == ValueType.ENUM and self.enum_type:
            for member in self.enum_type:
                if str(member.value) == text:
                    return member
            raise ValueError(f"{text!r} is not a valid {self.enum_type.__name__}")
        return self.check_value(text)


def evaluate_rule(rule: AccessRule, item: Any = None) -> bool:
    """Evaluate a boolean-or-predicate access rule"""
    if callable(rule):
        return bool(rule(item))
    return bool(rule)


class fields:
    """Builders for value field descriptors"""

    @staticmethod
    def string(**options) -> FieldMetadata:
        options.setdefault("default", "")
        return FieldMetadata(value_type=ValueType.STRING, **options)

    @staticmethod
    def integer(**options) -> FieldMetadata:
        options.setdefault("default", 0)
        return FieldMetadata(value_type=ValueType.INTEGER, **options)

    @staticmethod
    def number(**options) -> FieldMetadata:
        options.setdefault("default", 0)
        return FieldMetadata(value_type=ValueType.NUMBER, **options)

    @staticmethod
    def boolean(**options) -> FieldMetadata:
        options.setdefault("default", False)
        return FieldMetadata(value_type=ValueType.BOOLEAN, **options)

    @staticmethod
    def date(**options) -> FieldMetadata:
        options.setdefault("allow_null", True)
        return FieldMetadata(value_type=ValueType.DATE, **options)

    @staticmethod
    def datetime(**options) -> FieldMetadata:
        options.setdefault("allow_null", True)
        return FieldMetadata(value_type=ValueType.DATETIME, **options)

    @staticmethod
    def json(**options) -> FieldMetadata:
        options.setdefault("allow_null", True)
        return FieldMetadata(value_type=ValueType.JSON, **options)

    @staticmethod
    def enum(enum_type: Type[Enum], **options) -> FieldMetadata:
        return FieldMetadata(value_type=ValueType.ENUM, enum_type=enum_type, **options)

    @staticmethod
    def autoincrement(**options) -> FieldMetadata:
        """Integer id generated by the storage provider"""
        options.setdefault("allow_null", True)
        return FieldMetadata(value_type=ValueType.INTEGER, auto=True, **options)

    @staticmethod
    def uuid(**options) -> FieldMetadata:
        """String id generated on create"""
        options.setdefault("default", lambda: str(uuid_module.uuid4()))
        return FieldMetadata(value_type=ValueType.STRING, **options)

    @staticmethod
    def reference(target: Any, **options) -> FieldMetadata:
        """To-one relation whose related id is stored in this field's column"""
        options.setdefault("allow_null", True)
        default_included = options.pop("default_included", False)
        return FieldMetadata(
            value_type=ValueType.REFERENCE,
            relation=RelationInfo(RelationKind.REFERENCE, target, default_included=default_included),
            **options,
        )


class relations:
    """Builders for relation field descriptors"""

    @staticmethod
    def to_one(target: Any, field: Optional[str] = None,
               fields: Optional[Mapping[str, str]] = None,
               find_options: Any = None, default_included: bool = False,
               **options) -> FieldMetadata:
        if not field and not fields:
            return FieldMetadata(
                value_type=ValueType.REFERENCE, allow_null=True,
                relation=RelationInfo(RelationKind.REFERENCE, target,
                                      find_options=find_options,
                                      default_included=default_included),
                **options,
            )
        return FieldMetadata(
            value_type=ValueType.TO_ONE, allow_null=True,
            relation=RelationInfo(RelationKind.TO_ONE, target, field=field,
                                  fields=fields, find_options=find_options,
                                  default_included=default_included),
            **options,
        )

    @staticmethod
    def to_many(target: Any, field: Optional[str] = None,
                fields: Optional[Mapping[str, str]] = None,
                find_options: Any = None, default_included: bool = False,
                **options) -> FieldMetadata:
        if not field and not fields:
            raise ValueError("to_many relations need `field` or `fields`")
        return FieldMetadata(
            value_type=ValueType.TO_MANY, allow_null=True,
            relation=RelationInfo(RelationKind.TO_MANY, target, field=field,
                                  fields=fields, find_options=find_options,
                                  default_included=default_included),
            **options,
        )


__all__ = [
    "ValueType", "RelationKind", "RelationInfo", "FieldMetadata",
    "AccessRule", "Validator", "evaluate_rule", "fields", "relations",
    "COMPARABLE_TYPES",
]
