"""
LiveRepo Errors

Error taxonomy shared by the repository, the entity references and the
storage providers. Validation and access errors are raised before any I/O;
provider errors are passed through with entity context attached.
"""

from typing import Dict, Optional


class DataLayerError(Exception):
    """Base exception for all data layer operations"""

    def __init__(self, message: str, *, entity_key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_key = entity_key
        # Set on array operations to the position of the failing item
        self.item_index: Optional[int] = None

    def with_context(self, entity_key: Optional[str] = None,
                     item_index: Optional[int] = None) -> 'DataLayerError':
        """Fill in missing context and return self (for re-raising)"""
        if entity_key and not self.entity_key:
            self.entity_key = entity_key
        if item_index is not None and self.item_index is None:
            self.item_index = item_index
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.entity_key:
            parts.append(f"entity={self.entity_key}")
        if self.item_index is not None:
            parts.append(f"item={self.item_index}")
        return " | ".join(parts) if len(parts) > 1 else self.message


class ValidationError(DataLayerError):
    """Raised when an item, filter or option fails validation.

    ``model_state`` maps field keys to error messages so callers can
    highlight the offending fields.
    """

    def __init__(self, message: str, model_state: Optional[Dict[str, str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.model_state: Dict[str, str] = dict(model_state or {})


class AccessDeniedError(DataLayerError):
    """Raised when an entity or field access predicate returns false"""
    pass


class NotFoundError(DataLayerError):
    """Raised when an id based fetch, update or delete finds no row"""
    pass


class ConflictError(DataLayerError):
    """Raised when inserting a row whose id already exists"""
    pass


class ProviderError(DataLayerError):
    """Opaque storage provider failure; the original error is ``__cause__``"""
    pass


__all__ = [
    "DataLayerError", "ValidationError", "AccessDeniedError",
    "NotFoundError", "ConflictError", "ProviderError",
]
