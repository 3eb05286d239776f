"""
Entities - Value Objects and Their Tracking References
"""

from .base import Entity, new_instance
from .ref import EntityRef, FieldRef, FieldsRef, LifecycleEvent, ErrorInfo, get_entity_ref

__all__ = [
    "Entity", "new_instance", "EntityRef", "FieldRef", "FieldsRef",
    "LifecycleEvent", "ErrorInfo", "get_entity_ref",
]
