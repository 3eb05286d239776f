"""
Entity Base - Plain Value Objects for Registered Entities

Entities are pydantic models holding only their own field values plus a
back-pointer to the ``EntityRef`` that tracks them. All mutation tracking
lives in the ref; the entity itself stays a plain value object.
"""

from typing import Any, Optional, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, PrivateAttr

if TYPE_CHECKING:
    from .ref import EntityRef


class Entity(BaseModel):
    """Base class for all entity classes.

    Example:
        class Task(Entity):
            id: Optional[int] = None
            title: str = ""
            completed: bool = False

        register_entity(Task, "tasks", {"id": fields.autoincrement()})
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=False,
        revalidate_instances="never",
        protected_namespaces=(),
    )

    _ref: Optional["EntityRef"] = PrivateAttr(default=None)

    @property
    def ref(self) -> "EntityRef":
        """The tracking ref attached to this instance"""
        from .ref import get_entity_ref
        return get_entity_ref(self)

    def __repr__(self) -> str:
        values = ", ".join(
            f"{k}={getattr(self, k, None)!r}" for k in type(self).model_fields
            if not isinstance(getattr(self, k, None), (list, Entity))
        )
        return f"{self.__class__.__name__}({values})"


def new_instance(entity_type: type, values: Optional[dict] = None) -> Any:
    """Build an instance without running pydantic validation"""
    return entity_type.model_construct(**(values or {}))


__all__ = ["Entity", "new_instance"]
