"""
In-process filter evaluation and row ordering.

Used by the in-memory provider and by the live query engine to decide
whether a changed row belongs to a subscription without re-querying.
Rows are storage-form dicts, as are the operands in a translated tree.
"""

from functools import cmp_to_key
from typing import Any, Callable, Iterable, List, Mapping, Sequence

from .nodes import AndNode, Comparison, FilterNode, FilterOperator, NotNode, OrNode, SortSegment

Row = Mapping[str, Any]


def matches(node: FilterNode, row: Row) -> bool:
    """Evaluate a filter tree against a row"""
    if isinstance(node, AndNode):
        return all(matches(child, row) for child in node.children)
    if isinstance(node, OrNode):
        return any(matches(child, row) for child in node.children)
    if isinstance(node, NotNode):
        return not matches(node.child, row)
    if isinstance(node, Comparison):
        return _compare(node, row.get(node.field))
    raise TypeError(f"Unknown filter node {node!r}")


def _compare(node: Comparison, value: Any) -> bool:
    op = node.operator
    operand = node.value

    if op == FilterOperator.IS_NULL:
        return value is None
    if op == FilterOperator.IS_NOT_NULL:
        return value is not None

    # Negative operators hold for missing values, everything else fails
    if op == FilterOperator.NOT_EQUALS:
        return value != operand
    if op == FilterOperator.NOT_IN:
        return value not in operand
    if op == FilterOperator.NOT_CONTAINS:
        return value is None or operand.lower() not in str(value).lower()

    if value is None:
        return False
    if op == FilterOperator.EQUALS:
        return value == operand
    if op == FilterOperator.IN:
        return value in operand
    if op == FilterOperator.GREATER_THAN:
        return value > operand
    if op == FilterOperator.GREATER_THAN_OR_EQUAL:
        return value >= operand
    if op == FilterOperator.LESS_THAN:
        return value < operand
    if op == FilterOperator.LESS_THAN_OR_EQUAL:
        return value <= operand
    if op == FilterOperator.CONTAINS:
        return operand.lower() in str(value).lower()
    if op == FilterOperator.STARTS_WITH:
        return str(value).startswith(operand)
    if op == FilterOperator.ENDS_WITH:
        return str(value).endswith(operand)
    raise ValueError(f"Unsupported operator {op}")


def compare_values(a: Any, b: Any) -> int:
    """Three-way compare with nulls first"""
    if a is None and b is None:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    if isinstance(a, bool) or isinstance(b, bool):
        a, b = int(a), int(b)
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def row_comparator(order: Sequence[SortSegment]) -> Callable[[Row, Row], int]:
    """Build a three-way comparator for rows ordered by ``order``"""
    segments = list(order)

    def compare(a: Row, b: Row) -> int:
        for segment in segments:
            result = compare_values(a.get(segment.field), b.get(segment.field))
            if result:
                return -result if segment.descending else result
        return 0

    return compare


def sort_rows(rows: Iterable[Row], order: Sequence[SortSegment]) -> List[Row]:
    """Return rows sorted by ``order`` (stable; unchanged order when empty)"""
    rows = list(rows)
    if not order:
        return rows
    return sorted(rows, key=cmp_to_key(row_comparator(order)))


def filter_rows(rows: Iterable[Row], node: FilterNode) -> List[Row]:
    if isinstance(node, AndNode) and not node.children:
        return list(rows)
    return [row for row in rows if matches(node, row)]


__all__ = ["matches", "compare_values", "row_comparator", "sort_rows", "filter_rows"]
