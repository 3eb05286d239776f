"""
Filters - Filter Expressions, Filter Trees and In-Process Evaluation
"""

from .nodes import (
    FilterOperator, FilterNode, Comparison, AndNode, OrNode, NotNode,
    SortSegment, MATCH_ALL, and_, or_, not_,
)
from .translator import translate, id_filter, create_id_in_filter, translate_order, id_order
from .evaluate import matches, sort_rows, filter_rows, row_comparator, compare_values

__all__ = [
    "FilterOperator", "FilterNode", "Comparison", "AndNode", "OrNode", "NotNode",
    "SortSegment", "MATCH_ALL", "and_", "or_", "not_",
    "translate", "id_filter", "create_id_in_filter", "translate_order", "id_order",
    "matches", "sort_rows", "filter_rows", "row_comparator", "compare_values",
]
