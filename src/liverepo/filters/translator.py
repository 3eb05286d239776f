"""
Filter Translator - Filter Expressions to Filter Trees

Converts the declarative filter dictionaries used by repositories into the
normalized ``FilterNode`` tree consumed by storage providers:

    {"completed": False, "$or": [{"priority": {"$gte": 3}}, {"title": {"$contains": "x"}}]}

Operands are type-checked against the field metadata and converted to their
storage representation, so the tree can be evaluated directly against rows.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

from ..errors import ValidationError
from ..metadata.entity import EntityMetadata
from ..metadata.fields import FieldMetadata, ValueType
from .nodes import (
    MATCH_ALL, ORDERING_OPERATORS, STRING_OPERATORS,
    Comparison, FilterNode, FilterOperator, OrNode, SortSegment,
    and_, not_, or_,
)

logger = logging.getLogger(__name__)

OPERATORS: Dict[str, FilterOperator] = {
    "$eq": FilterOperator.EQUALS,
    "$ne": FilterOperator.NOT_EQUALS,
    "!=": FilterOperator.NOT_EQUALS,
    "$gt": FilterOperator.GREATER_THAN,
    ">": FilterOperator.GREATER_THAN,
    "$gte": FilterOperator.GREATER_THAN_OR_EQUAL,
    ">=": FilterOperator.GREATER_THAN_OR_EQUAL,
    "$lt": FilterOperator.LESS_THAN,
    "<": FilterOperator.LESS_THAN,
    "$lte": FilterOperator.LESS_THAN_OR_EQUAL,
    "<=": FilterOperator.LESS_THAN_OR_EQUAL,
    "$in": FilterOperator.IN,
    "$nin": FilterOperator.NOT_IN,
    "$contains": FilterOperator.CONTAINS,
    "$notContains": FilterOperator.NOT_CONTAINS,
    "$startsWith": FilterOperator.STARTS_WITH,
    "$endsWith": FilterOperator.ENDS_WITH,
}


def translate(meta: EntityMetadata, where: Any) -> FilterNode:
    """Translate a filter expression into a normalized filter tree.

    Args:
        meta: Metadata of the entity being filtered
        where: Filter dict, an existing ``FilterNode``, or an id filter
            (scalar id, list of ids, or list of id dicts for composite ids)

    Raises:
        ValidationError: unknown fields or operators, or operands that do not
            match the field type
    """
    if where is None:
        return MATCH_ALL
    if isinstance(where, FilterNode):
        return where
    if isinstance(where, Mapping):
        return _translate_mapping(meta, where)
    return id_filter(meta, where)


def _translate_mapping(meta: EntityMetadata, where: Mapping) -> FilterNode:
    nodes: List[FilterNode] = []
    for key, value in where.items():
        if key == "$and":
            nodes.extend(translate(meta, w) for w in _as_list(value))
        elif key == "$or":
            nodes.append(or_(*[translate(meta, w) for w in _as_list(value)]))
        elif key == "$not":
            nodes.append(not_(and_(*[translate(meta, w) for w in _as_list(value)])))
        else:
            nodes.append(_translate_field(meta, key, value))
    if not nodes:
        return MATCH_ALL
    return and_(*nodes)


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def is_operator_object(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(k in OPERATORS for k in value)


def _field(meta: EntityMetadata, key: str) -> FieldMetadata:
    field = meta.fields.get(key)
    if field is None:
        raise ValidationError(f"Unknown filter field '{key}'", {key: "Unknown field"},
                              entity_key=meta.key)
    return field


def _translate_field(meta: EntityMetadata, key: str, value: Any) -> FilterNode:
    field = _field(meta, key)
    if field.value_type == ValueType.TO_MANY:
        raise ValidationError(f"Cannot filter on to-many relation '{key}'",
                              {key: "Filtering on to-many relations is not supported"},
                              entity_key=meta.key)
    if field.relation is not None:
        return _translate_relation(meta, field, value)

    if is_operator_object(value):
        return and_(*[_comparison(meta, field, OPERATORS[op], operand) for op, operand in value.items()])
    if isinstance(value, Mapping) and field.value_type != ValueType.JSON:
        unknown = [k for k in value if k not in OPERATORS]
        raise ValidationError(f"Unknown filter operator(s) {unknown} for '{key}'",
                              {key: f"Unknown operator {unknown[0]}"}, entity_key=meta.key)
    return _comparison(meta, field, FilterOperator.EQUALS, value)


def _comparison(meta: EntityMetadata, field: FieldMetadata,
                operator: FilterOperator, operand: Any) -> FilterNode:
    is_json = field.value_type == ValueType.JSON

    if operator == FilterOperator.EQUALS:
        if operand is None:
            return Comparison(field.key, FilterOperator.IS_NULL)
        if isinstance(operand, (list, tuple, set, frozenset)) and not is_json:
            return _comparison(meta, field, FilterOperator.IN, operand)
        return Comparison(field.key, operator, _operand(meta, field, operand))

    if operator == FilterOperator.NOT_EQUALS:
        if operand is None:
            return Comparison(field.key, FilterOperator.IS_NOT_NULL)
        if isinstance(operand, (list, tuple, set, frozenset)) and not is_json:
            return _comparison(meta, field, FilterOperator.NOT_IN, operand)
        return Comparison(field.key, operator, _operand(meta, field, operand))

    if operator in (FilterOperator.IN, FilterOperator.NOT_IN):
        if not isinstance(operand, (list, tuple, set, frozenset)):
            raise _operand_error(meta, field, f"{operator.value} expects a list of values")
        values = _unique(_operand(meta, field, v) for v in operand)
        return Comparison(field.key, operator, values)

    if operand is None:
        raise _operand_error(meta, field, f"{operator.value} does not accept null")

    if operator in ORDERING_OPERATORS:
        if not field.is_comparable:
            raise _operand_error(meta, field,
                                 f"{operator.value} requires a comparable field, "
                                 f"'{field.key}' is {field.value_type.value}")
        return Comparison(field.key, operator, _operand(meta, field, operand))

    if operator in STRING_OPERATORS:
        if field.value_type != ValueType.STRING:
            raise _operand_error(meta, field,
                                 f"{operator.value} requires a string field, "
                                 f"'{field.key}' is {field.value_type.value}")
        if not isinstance(operand, str):
            raise _operand_error(meta, field, f"{operator.value} expects a string")
        return Comparison(field.key, operator, operand)

    raise _operand_error(meta, field, f"Unsupported operator {operator.value}")


def _operand(meta: EntityMetadata, field: FieldMetadata, value: Any) -> Any:
    """Type-check a literal and convert it to storage form"""
    if value is None:
        return None
    try:
        checked = field.check_value(value)
    except (TypeError, ValueError) as e:
        raise _operand_error(meta, field, f"Invalid value {value!r}: {e}") from e
    return field.value_to_db(checked)


def _operand_error(meta: EntityMetadata, field: FieldMetadata, message: str) -> ValidationError:
    return ValidationError(f"Invalid filter on '{field.key}': {message}",
                           {field.key: message}, entity_key=meta.key)


def _unique(values: Iterable[Any]) -> Tuple[Any, ...]:
    """De-duplicate values keeping first occurrence order"""
    seen = set()
    result = []
    for value in values:
        marker = _hashable(value)
        if marker in seen:
            continue
        seen.add(marker)
        result.append(value)
    return tuple(result)


def _hashable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_hashable(v) for v in value)
    return value


# Relations

def _relation_columns(meta: EntityMetadata, field: FieldMetadata) -> List[Tuple[str, FieldMetadata, str]]:
    """(owner column, field used for conversion, target field key) per key column"""
    target = field.related_metadata()
    if field.value_type == ValueType.REFERENCE:
        target_id = target.id_metadata.field
        return [(field.key, target_id, target_id.key)]
    columns = []
    for target_key, owner_key in field.relation.key_map(meta).items():
        columns.append((owner_key, _field(meta, owner_key), target_key))
    return columns


def _related_value(value: Any, target_key: str, single_column: bool) -> Any:
    if isinstance(value, Mapping):
        return value.get(target_key)
    if hasattr(value, "model_fields"):
        return getattr(value, target_key, None)
    if single_column:
        return value
    raise ValueError(f"expected an entity or dict with '{target_key}'")


def _relation_eq(meta: EntityMetadata, field: FieldMetadata, value: Any) -> FilterNode:
    columns = _relation_columns(meta, field)
    if value is None:
        return and_(*[Comparison(column, FilterOperator.IS_NULL) for column, _, _ in columns])
    nodes = []
    for column, converter, target_key in columns:
        try:
            raw = _related_value(value, target_key, len(columns) == 1)
        except ValueError as e:
            raise _operand_error(meta, field, str(e)) from e
        if raw is None:
            nodes.append(Comparison(column, FilterOperator.IS_NULL))
        else:
            nodes.append(Comparison(column, FilterOperator.EQUALS, _operand(meta, converter, raw)))
    return and_(*nodes)


def _relation_in(meta: EntityMetadata, field: FieldMetadata, values: Any) -> FilterNode:
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise _operand_error(meta, field, "expected a list of values")
    columns = _relation_columns(meta, field)
    if len(columns) == 1:
        column, converter, target_key = columns[0]
        converted = []
        for value in values:
            try:
                raw = _related_value(value, target_key, True)
            except ValueError as e:
                raise _operand_error(meta, field, str(e)) from e
            converted.append(_operand(meta, converter, raw))
        return Comparison(column, FilterOperator.IN, _unique(converted))
    return or_(*[_relation_eq(meta, field, v) for v in values]) if values else OrNode(())


def _translate_relation(meta: EntityMetadata, field: FieldMetadata, value: Any) -> FilterNode:
    if is_operator_object(value):
        nodes = []
        for op, operand in value.items():
            operator = OPERATORS[op]
            if operator == FilterOperator.EQUALS:
                nodes.append(_translate_relation(meta, field, operand))
            elif operator == FilterOperator.NOT_EQUALS:
                nodes.append(not_(_translate_relation(meta, field, operand)))
            elif operator == FilterOperator.IN:
                nodes.append(_relation_in(meta, field, operand))
            elif operator == FilterOperator.NOT_IN:
                nodes.append(not_(_relation_in(meta, field, operand)))
            else:
                raise _operand_error(meta, field, f"{op} is not supported on relations")
        return and_(*nodes)
    if isinstance(value, (list, tuple, set, frozenset)):
        return _relation_in(meta, field, value)
    return _relation_eq(meta, field, value)


# Id filters

def id_filter(meta: EntityMetadata, ids: Any) -> FilterNode:
    """Filter matching one id, or any of a list of ids"""
    if isinstance(ids, (list, tuple, set, frozenset)):
        return create_id_in_filter(meta, [_id_holder(meta, i) for i in ids])
    return _id_eq(meta, meta.id_metadata.id_dict(_id_value(meta, ids)))


def _id_value(meta: EntityMetadata, value: Any) -> Any:
    if hasattr(value, "model_fields"):
        return meta.id_metadata.get_id(value)
    return value


def _id_holder(meta: EntityMetadata, value: Any) -> Any:
    """Wrap a raw id so ``get_id`` can read it like an item"""
    if isinstance(value, Mapping) or hasattr(value, "model_fields"):
        return value
    return meta.id_metadata.id_dict(value)


def _id_eq(meta: EntityMetadata, id_values: Mapping[str, Any]) -> FilterNode:
    nodes = []
    for field in meta.id_metadata.fields:
        value = id_values.get(field.key)
        if value is None:
            raise _operand_error(meta, field, "id value is missing")
        nodes.append(Comparison(field.key, FilterOperator.EQUALS, _operand(meta, field, value)))
    return and_(*nodes)


def create_id_in_filter(meta: EntityMetadata, items: Sequence[Any]) -> FilterNode:
    """Id membership filter over the ids of ``items``.

    Identical ids are de-duplicated, keeping source order. Items may be
    entities, rows or id dicts.
    """
    id_meta = meta.id_metadata
    ids = _unique(id_meta.id_dict(id_meta.get_id(item)) for item in items)

    if not id_meta.is_composite:
        field = id_meta.field
        values = tuple(_operand(meta, field, i[field.key]) for i in ids)
        return Comparison(field.key, FilterOperator.IN, values)

    alternatives = tuple(_id_eq(meta, i) for i in ids)
    if len(alternatives) == 1:
        return alternatives[0]
    return OrNode(alternatives)


# Ordering

def translate_order(meta: EntityMetadata, order_by: Optional[Mapping[str, str]],
                    add_id_tiebreaker: bool = True) -> List[SortSegment]:
    """Translate ``{"field": "asc" | "desc"}`` into sort segments.

    Falls back to the entity's ``default_order_by``. When any ordering is in
    effect the id field(s) are appended as a tiebreaker so paging is stable.
    """
    if order_by is None:
        order_by = meta.options.default_order_by or {}

    segments: List[SortSegment] = []
    for key, direction in order_by.items():
        field = _field(meta, key)
        if not field.is_persisted:
            raise ValidationError(f"Cannot order by relation '{key}'",
                                  {key: "Ordering by this relation is not supported"},
                                  entity_key=meta.key)
        normalized = str(direction).lower()
        if normalized not in ("asc", "desc"):
            raise ValidationError(f"Invalid order direction {direction!r} for '{key}'",
                                  {key: "Order direction must be 'asc' or 'desc'"},
                                  entity_key=meta.key)
        segments.append(SortSegment(key, normalized == "desc"))

    if segments and add_id_tiebreaker:
        present = {s.field for s in segments}
        segments.extend(SortSegment(f.key) for f in meta.id_metadata.fields if f.key not in present)
    return segments


def id_order(meta: EntityMetadata) -> List[SortSegment]:
    return [SortSegment(f.key) for f in meta.id_metadata.fields]


__all__ = [
    "translate", "id_filter", "create_id_in_filter", "translate_order", "id_order",
    "is_operator_object", "OPERATORS",
]
