"""Live queries: change events, deltas and the engine that produces them."""

from .changes import (
    ChangeEvent,
    ChangeOperation,
    ChangeType,
    LiveQueryChange,
    LiveQueryChangeInfo,
    apply_changes,
    default_id_of,
)
from .engine import LiveQueryEngine, LiveQuerySubscription, Unsubscribe
from .live_query import LiveQuery

__all__ = [
    "ChangeEvent",
    "ChangeOperation",
    "ChangeType",
    "LiveQueryChange",
    "LiveQueryChangeInfo",
    "apply_changes",
    "default_id_of",
    "LiveQueryEngine",
    "LiveQuerySubscription",
    "Unsubscribe",
    "LiveQuery",
]
