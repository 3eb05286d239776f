"""
Filter Nodes - Provider Neutral Predicate Tree

Filters are translated into a small tagged-variant tree: leaf comparisons
combined by AND / OR / NOT composites. Storage providers receive this tree
and serialise it however they need to.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Tuple, Union


class FilterOperator(Enum):
    """Comparison operators for leaf nodes"""
    EQUALS = "eq"
    NOT_EQUALS = "ne"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


ORDERING_OPERATORS = frozenset({
    FilterOperator.GREATER_THAN, FilterOperator.GREATER_THAN_OR_EQUAL,
    FilterOperator.LESS_THAN, FilterOperator.LESS_THAN_OR_EQUAL,
})

STRING_OPERATORS = frozenset({
    FilterOperator.CONTAINS, FilterOperator.NOT_CONTAINS,
    FilterOperator.STARTS_WITH, FilterOperator.ENDS_WITH,
})

SET_OPERATORS = frozenset({FilterOperator.IN, FilterOperator.NOT_IN})


class FilterNode:
    """Base class of all filter tree nodes"""

    def canonical(self) -> str:
        """Stable textual form, identical for equivalent filters"""
        raise NotImplementedError

    @property
    def is_empty(self) -> bool:
        return False


@dataclass(frozen=True)
class Comparison(FilterNode):
    """Leaf node: ``field <operator> value``"""
    field: str
    operator: FilterOperator
    value: Any = None

    def __post_init__(self):
        if self.operator in (FilterOperator.IS_NULL, FilterOperator.IS_NOT_NULL):
            object.__setattr__(self, "value", None)
        elif self.operator in SET_OPERATORS and not isinstance(self.value, tuple):
            object.__setattr__(self, "value", tuple(self.value))

    def canonical(self) -> str:
        return f"{self.field} {self.operator.value} {self.value!r}"


@dataclass(frozen=True)
class AndNode(FilterNode):
    """All children must match; no children means match everything"""
    children: Tuple[FilterNode, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.children

    def canonical(self) -> str:
        return "and(" + ", ".join(c.canonical() for c in self.children) + ")"


@dataclass(frozen=True)
class OrNode(FilterNode):
    """At least one child must match"""
    children: Tuple[FilterNode, ...] = ()

    def canonical(self) -> str:
        return "or(" + ", ".join(c.canonical() for c in self.children) + ")"


@dataclass(frozen=True)
class NotNode(FilterNode):
    """Negates its child"""
    child: FilterNode

    def canonical(self) -> str:
        return f"not({self.child.canonical()})"


MATCH_ALL = AndNode(())


def and_(*nodes: FilterNode) -> FilterNode:
    """Combine nodes with AND, flattening, sorting and collapsing as ``translate`` does"""
    flat = []
    for node in nodes:
        if isinstance(node, AndNode):
            flat.extend(node.children)
        else:
            flat.append(node)
    unique = {n.canonical(): n for n in flat}
    children = tuple(unique[k] for k in sorted(unique))
    if len(children) == 1:
        return children[0]
    return AndNode(children)


def or_(*nodes: FilterNode) -> FilterNode:
    """Combine nodes with OR (an empty AND child makes the whole OR match everything)"""
    flat = []
    for node in nodes:
        if node.is_empty:
            return MATCH_ALL
        if isinstance(node, OrNode):
            flat.extend(node.children)
        else:
            flat.append(node)
    unique = {n.canonical(): n for n in flat}
    children = tuple(unique[k] for k in sorted(unique))
    if len(children) == 1:
        return children[0]
    return OrNode(children)


def not_(node: FilterNode) -> FilterNode:
    if isinstance(node, NotNode):
        return node.child
    return NotNode(node)


@dataclass(frozen=True)
class SortSegment:
    """One ordering segment: field key and direction"""
    field: str
    descending: bool = False

    def canonical(self) -> str:
        return f"{self.field} {'desc' if self.descending else 'asc'}"


FilterTree = Union[Comparison, AndNode, OrNode, NotNode]

__all__ = [
    "FilterOperator", "FilterNode", "Comparison", "AndNode", "OrNode", "NotNode",
    "MATCH_ALL", "and_", "or_", "not_", "FilterTree", "SortSegment",
    "ORDERING_OPERATORS", "STRING_OPERATORS", "SET_OPERATORS",
]
