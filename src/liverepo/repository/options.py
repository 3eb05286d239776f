"""
Find and include options.

Include graphs are normalized per level: each level lists the relations to
resolve with their own filter, order, limit and nested include.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..errors import ValidationError
from ..metadata.entity import EntityMetadata


@dataclass
class FindOptions:
    """Options of a find, live query or paged query"""
    where: Any = None
    order_by: Optional[Mapping[str, str]] = None
    limit: Optional[int] = None
    page: Optional[int] = None
    include: Any = None


@dataclass
class IncludeOptions:
    """How one relation is resolved when included"""
    where: Any = None
    order_by: Optional[Mapping[str, str]] = None
    limit: Optional[int] = None
    include: Any = None

    @classmethod
    def from_value(cls, meta: EntityMetadata, key: str, value: Any) -> 'IncludeOptions':
        if value is True:
            return cls()
        if isinstance(value, IncludeOptions):
            return value
        if isinstance(value, Mapping):
            unknown = [k for k in value if k not in ("where", "order_by", "limit", "include")]
            if unknown:
                raise ValidationError(f"Unknown include option(s) {unknown} for '{key}'",
                                      {key: f"Unknown include option {unknown[0]}"},
                                      entity_key=meta.key)
            return cls(**value)
        raise ValidationError(f"Invalid include value {value!r} for '{key}'",
                              {key: "Include must be True, False or a dict of options"},
                              entity_key=meta.key)

    def merged_with(self, defaults: Any) -> 'IncludeOptions':
        """Fill unset values from a relation's ``find_options``"""
        if not defaults:
            return self
        if not isinstance(defaults, Mapping):
            defaults = vars(defaults)
        return IncludeOptions(
            where=_combine_where(defaults.get("where"), self.where),
            order_by=self.order_by if self.order_by is not None else defaults.get("order_by"),
            limit=self.limit if self.limit is not None else defaults.get("limit"),
            include=self.include if self.include is not None else defaults.get("include"),
        )


def _combine_where(first: Any, second: Any) -> Any:
    if first is None:
        return second
    if second is None:
        return first
    return {"$and": [first, second]}


def normalize_include(meta: EntityMetadata, include: Any,
                      top_level: bool = True) -> Dict[str, IncludeOptions]:
    """Relations to resolve at one level, by field key.

    ``default_included`` relations are added only at the top level of a find;
    an explicit ``False`` suppresses them.
    """
    result: Dict[str, IncludeOptions] = {}
    if top_level:
        for relation_field in meta.fields:
            if relation_field.relation is not None and relation_field.relation.default_included:
                result[relation_field.key] = IncludeOptions()

    if include is None:
        return result
    if isinstance(include, (list, tuple, set)):
        include = {key: True for key in include}
    if not isinstance(include, Mapping):
        raise ValidationError(f"Invalid include {include!r}", entity_key=meta.key)

    for key, value in include.items():
        relation_field = meta.fields.get(key)
        if relation_field is None or relation_field.relation is None:
            raise ValidationError(f"'{key}' is not a relation of '{meta.key}'",
                                  {key: "Not a relation"}, entity_key=meta.key)
        if value is False or value is None:
            result.pop(key, None)
            continue
        result[key] = IncludeOptions.from_value(meta, key, value)
    return result


__all__ = ["FindOptions", "IncludeOptions", "normalize_include"]
