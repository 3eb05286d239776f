"""
Entity References - Per-Instance Mutation Tracking

Every entity instance handed out by a repository carries an ``EntityRef``.
The ref owns all tracking state for that one instance:

- original values (as loaded or as last saved) and dirty detection
- per-field and entity level validation errors
- save / delete / reload / undo operations and lifecycle hooks
- observers notified on every ``set()``

Field values themselves live on the entity. Reference fields are the one
exception: the related id is kept by the ref, so an item whose related
entity was never loaded still saves without clearing the foreign key.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union
import copy
import logging

from ..errors import AccessDeniedError, NotFoundError, ValidationError
from ..filters.translator import id_filter
from ..metadata.entity import EntityMetadata
from ..metadata.fields import FieldMetadata, ValueType, evaluate_rule
from ..realtime.changes import ChangeEvent
from ..utils import maybe_await

logger = logging.getLogger(__name__)

Listener = Callable[[], Any]
Unsubscribe = Callable[[], None]

# Sentinel for "no relation value was ever placed on the item"
_NOT_PLACED = object()


@dataclass
class ErrorInfo:
    """Validation outcome: a summary message plus per-field errors"""
    message: str
    model_state: Dict[str, str] = field(default_factory=dict)


def _values_equal(a: Any, b: Any) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def related_id(field: FieldMetadata, value: Any) -> Any:
    """Storage-form id of a related entity, id dict or raw id"""
    if value is None:
        return None
    target_id = field.related_metadata().id_metadata.field
    if isinstance(value, Mapping):
        raw = value.get(target_id.key)
    elif hasattr(value, "model_fields"):
        raw = getattr(value, target_id.key, None)
    else:
        raw = value
    if raw is None:
        return None
    return target_id.value_to_db(target_id.check_value(raw))


class FieldRef:
    """Tracking view of one field of one instance"""

    def __init__(self, entity_ref: 'EntityRef', metadata: FieldMetadata):
        self.entity_ref = entity_ref
        self.metadata = metadata

    @property
    def key(self) -> str:
        return self.metadata.key

    @property
    def value(self) -> Any:
        return getattr(self.entity_ref.item, self.metadata.key, None)

    @value.setter
    def value(self, value: Any):
        self.entity_ref.set(self.metadata.key, value)

    @property
    def original_value(self) -> Any:
        return self.entity_ref._original.get(self.metadata.key)

    @property
    def error(self) -> Optional[str]:
        return self.entity_ref._errors.get(self.metadata.key)

    @error.setter
    def error(self, message: Optional[str]):
        if message:
            self.entity_ref._errors[self.metadata.key] = message
        else:
            self.entity_ref._errors.pop(self.metadata.key, None)

    def value_changed(self) -> bool:
        return self.metadata.key in self.entity_ref._changed_keys()

    def value_is_null(self) -> bool:
        if self.metadata.value_type == ValueType.REFERENCE:
            return self.entity_ref._reference_id(self.metadata) is None
        return self.value is None

    def original_value_is_null(self) -> bool:
        return self.original_value is None

    def get_id(self) -> Any:
        """Related id held by a reference field"""
        if self.metadata.value_type != ValueType.REFERENCE:
            raise ValueError(f"Field '{self.metadata.key}' is not a reference")
        return self.entity_ref._reference_id(self.metadata)

    def set_id(self, id: Any):
        """Point a reference field at ``id`` without loading the related entity"""
        if self.metadata.value_type != ValueType.REFERENCE:
            raise ValueError(f"Field '{self.metadata.key}' is not a reference")
        self.entity_ref.set(self.metadata.key, id)

    @property
    def input_value(self) -> str:
        if self.metadata.value_type == ValueType.REFERENCE:
            target = self.metadata.related_metadata().id_metadata.field
            stored = self.get_id()
            return "" if stored is None else target.value_to_input(target.value_from_db(stored))
        if not self.metadata.is_persisted:
            raise ValueError(f"Field '{self.metadata.key}' has no input form")
        return self.metadata.value_to_input(self.value)

    @input_value.setter
    def input_value(self, text: str):
        if self.metadata.value_type == ValueType.REFERENCE:
            target = self.metadata.related_metadata().id_metadata.field
            self.set_id(target.value_from_input(text))
        else:
            self.value = self.metadata.value_from_input(text)

    @property
    def display_value(self) -> str:
        """Text shown to users; the field's ``display_value`` option when set"""
        display = self.metadata.display_value
        if display is not None:
            shown = display(self.entity_ref.item, self.value)
            return "" if shown is None else str(shown)
        if not self.metadata.is_persisted:
            return "" if not self.value else str(self.value)
        return self.input_value

    async def load(self) -> Any:
        """Load (or reload) the related value of a relation field"""
        return await self.entity_ref.repository._resolver.load(self.entity_ref.item, self.metadata)

    async def validate(self) -> bool:
        self.error = None
        await self._run_validators()
        self.entity_ref._check_value(self.metadata)
        return self.error is None

    async def _run_validators(self):
        item = self.entity_ref.item
        for validator in self.metadata.validators:
            result = await maybe_await(validator(item, self))
            if result is False:
                self.error = self.error or "Invalid value"
            elif isinstance(result, str) and result:
                self.error = self.error or result

    def subscribe(self, listener: Listener) -> Unsubscribe:
        return self.entity_ref.subscribe(listener, field=self.metadata.key)

    def __repr__(self) -> str:
        return f"FieldRef({self.metadata.key}={self.value!r})"


class FieldsRef:
    """Field refs of an instance by key: ``ref.fields.title`` or ``ref.fields["title"]``"""

    def __init__(self, entity_ref: 'EntityRef'):
        self._entity_ref = entity_ref
        self._refs: Dict[str, FieldRef] = {}

    def find(self, field: Union[str, FieldMetadata]) -> FieldRef:
        metadata = self._entity_ref.metadata.fields.find(field)
        if metadata.key not in self._refs:
            self._refs[metadata.key] = FieldRef(self._entity_ref, metadata)
        return self._refs[metadata.key]

    def __getitem__(self, key: str) -> FieldRef:
        return self.find(key)

    def __getattr__(self, key: str) -> FieldRef:
        if key.startswith("_"):
            raise AttributeError(key)
        try:
            return self.find(key)
        except KeyError:
            raise AttributeError(key) from None

    def to_list(self) -> List[FieldRef]:
        return [self.find(f) for f in self._entity_ref.metadata.fields]

    def __iter__(self):
        return iter(self.to_list())


class LifecycleEvent:
    """Passed to lifecycle hooks; ``prevent_default()`` aborts the save or delete"""

    def __init__(self, entity_ref: 'EntityRef'):
        self._ref = entity_ref
        self.is_new = entity_ref.is_new()
        self.id = entity_ref.get_id()
        self.original_id = entity_ref.get_original_id()
        self.prevented = False

    @property
    def fields(self) -> FieldsRef:
        return self._ref.fields

    @property
    def repository(self):
        return self._ref.repository

    @property
    def metadata(self) -> EntityMetadata:
        return self._ref.metadata

    @property
    def relations(self):
        return self._ref.relations

    def prevent_default(self):
        self.prevented = True


class EntityRef:
    """Tracks original values, dirty state and errors of one entity instance"""

    def __init__(self, repository, item: Any, is_new: bool):
        self._repository = repository
        self._metadata: EntityMetadata = repository.metadata
        self._item = item
        self._is_new = is_new
        self._was_deleted = False
        self._original: Dict[str, Any] = {}
        self._reference_ids: Dict[str, Any] = {}
        self._placed: Dict[str, Any] = {}
        # Relation values as loaded or as last saved, restored by undo_changes
        self._loaded: Dict[str, Any] = {}
        self._errors: Dict[str, str] = {}
        self._error: Optional[str] = None
        self._listeners: List[Tuple[Optional[str], Listener]] = []
        self._loading = 0
        self.fields = FieldsRef(self)
        item._ref = self

    # Accessors

    @property
    def item(self) -> Any:
        return self._item

    @property
    def repository(self):
        return self._repository

    @property
    def metadata(self) -> EntityMetadata:
        return self._metadata

    @property
    def relations(self):
        return self._repository.relations(self._item)

    @property
    def is_loading(self) -> bool:
        return self._loading > 0

    @property
    def error(self) -> Optional[str]:
        return self._error

    @error.setter
    def error(self, message: Optional[str]):
        self._error = message or None

    @property
    def model_state(self) -> Dict[str, str]:
        return dict(self._errors)

    def is_new(self) -> bool:
        return self._is_new

    def was_deleted(self) -> bool:
        return self._was_deleted

    def was_changed(self) -> bool:
        return bool(self._changed_keys())

    def has_errors(self) -> bool:
        return self._error is not None or bool(self._errors)

    def get_id(self) -> Any:
        return self._metadata.id_metadata.get_id(self._item)

    def get_original_id(self) -> Any:
        if self._is_new or not self._original:
            return self.get_id()
        return self._metadata.id_metadata.get_id(self._original)

    def api_insert_allowed(self) -> bool:
        return self._metadata.api_insert_allowed(self._item)

    def api_update_allowed(self) -> bool:
        return self._metadata.api_update_allowed(self._item)

    def api_delete_allowed(self) -> bool:
        return self._metadata.api_delete_allowed(self._item)

    # Value tracking

    def _reference_id(self, field: FieldMetadata) -> Any:
        value = getattr(self._item, field.key, None)
        if value is None:
            placed = self._placed.get(field.key)
            if placed is not None and placed is not _NOT_PLACED:
                # A loaded related entity was removed from the item
                return None
            return self._reference_ids.get(field.key)
        return related_id(field, value)

    def _sync_to_one(self):
        """Copy ids of related entities assigned to to-one relations into their key fields"""
        for field in self._metadata.fields:
            if field.value_type != ValueType.TO_ONE:
                continue
            value = getattr(self._item, field.key, None)
            placed = self._placed.get(field.key, _NOT_PLACED)
            if value is placed:
                continue
            key_map = field.relation.key_map(self._metadata)
            if value is None:
                if placed is not None and placed is not _NOT_PLACED:
                    for owner_key in key_map.values():
                        setattr(self._item, owner_key, None)
            else:
                for target_key, owner_key in key_map.items():
                    if isinstance(value, Mapping):
                        setattr(self._item, owner_key, value.get(target_key))
                    else:
                        setattr(self._item, owner_key, getattr(value, target_key, None))
            self._placed[field.key] = value

    def _current_values(self) -> Dict[str, Any]:
        values = {}
        for field in self._metadata.fields.persisted():
            if field.value_type == ValueType.REFERENCE:
                values[field.key] = self._reference_id(field)
            else:
                values[field.key] = getattr(self._item, field.key, None)
        return values

    def _changed_keys(self) -> List[str]:
        self._sync_to_one()
        current = self._current_values()
        return [key for key, value in current.items()
                if not _values_equal(value, self._original.get(key))]

    def _reset_original(self):
        current = self._current_values()
        self._original = copy.deepcopy(current)
        for field in self._metadata.fields.persisted():
            if field.value_type == ValueType.REFERENCE:
                self._reference_ids[field.key] = current[field.key]
        for field in self._metadata.fields:
            if field.value_type in (ValueType.REFERENCE, ValueType.TO_ONE):
                value = getattr(self._item, field.key, None)
                if value is not None or field.key in self._placed:
                    self._loaded[field.key] = value

    def _row(self) -> Dict[str, Any]:
        """Current values in storage form"""
        row = {}
        for key, value in self._current_values().items():
            field = self._metadata.fields.find(key)
            row[key] = value if field.value_type == ValueType.REFERENCE else field.value_to_db(value)
        return row

    def _original_row(self) -> Dict[str, Any]:
        row = {}
        for key, value in self._original.items():
            field = self._metadata.fields.find(key)
            row[key] = value if field.value_type == ValueType.REFERENCE else field.value_to_db(value)
        return row

    def _original_id_dict(self) -> Dict[str, Any]:
        id_meta = self._metadata.id_metadata
        original = self._original_row() if not self._is_new else self._row()
        return {f.key: original.get(f.key) for f in id_meta.fields}

    def _apply_row(self, row: Mapping[str, Any]):
        """Replace field values with a storage row"""
        for field in self._metadata.fields.persisted():
            if field.key not in row:
                continue
            value = row[field.key]
            if field.value_type == ValueType.REFERENCE:
                self._reference_ids[field.key] = value
                current = getattr(self._item, field.key, None)
                if current is not None and related_id(field, current) != value:
                    setattr(self._item, field.key, None)
                    self._placed[field.key] = None
                elif current is None:
                    self._placed[field.key] = None
            else:
                setattr(self._item, field.key, field.value_from_db(value))

    def _place(self, key: str, value: Any):
        """Put a loaded relation value on the item without marking anything dirty"""
        setattr(self._item, key, value)
        self._placed[key] = value
        self._loaded[key] = value

    def set(self, field: Union[str, FieldMetadata], value: Any):
        """Set a field value and notify observers.

        Validators are not run; call ``validate()`` or ``save()`` for that.
        """
        metadata = self._metadata.fields.find(field)
        key = metadata.key
        if metadata.value_type == ValueType.REFERENCE:
            if value is None or hasattr(value, "model_fields"):
                setattr(self._item, key, value)
                self._placed[key] = value
            else:
                setattr(self._item, key, None)
                self._placed[key] = None
            self._reference_ids[key] = related_id(metadata, value)
        else:
            setattr(self._item, key, value)
            if metadata.value_type == ValueType.TO_ONE:
                self._sync_to_one()
        self._notify(key)

    def undo_changes(self):
        """Restore every field to its original value; no I/O"""
        for field in self._metadata.fields:
            key = field.key
            if field.value_type == ValueType.REFERENCE:
                original = self._original.get(key)
                self._reference_ids[key] = original
                current = getattr(self._item, key, None)
                if current is not None and related_id(field, current) == original:
                    continue
                loaded = self._loaded.get(key)
                if loaded is not None and related_id(field, loaded) == original:
                    self._place(key, loaded)
                else:
                    self._place(key, None)
            elif field.value_type == ValueType.TO_ONE:
                loaded = self._loaded.get(key)
                setattr(self._item, key, loaded)
                self._placed[key] = loaded
            elif field.is_persisted:
                setattr(self._item, key, copy.deepcopy(self._original.get(key)))
        self._errors.clear()
        self._error = None
        self._notify(None)

    # Observers

    def subscribe(self, listener: Listener, field: Optional[str] = None) -> Unsubscribe:
        """Call ``listener()`` after every change (of ``field`` only, when given)"""
        entry = (field, listener)
        self._listeners.append(entry)

        def unsubscribe():
            if entry in self._listeners:
                self._listeners.remove(entry)
        return unsubscribe

    def _notify(self, key: Optional[str]):
        for field, listener in list(self._listeners):
            if field is not None and key is not None and field != key:
                continue
            try:
                listener()
            except Exception:
                logger.exception(f"Observer of '{self._metadata.key}' failed")

    # Validation

    def _check_value(self, field: FieldMetadata):
        """Built-in null and type checks for one field"""
        if not field.is_persisted or field.key in self._errors:
            return
        if field.value_type == ValueType.REFERENCE:
            if not field.allow_null and self._reference_id(field) is None:
                self._errors[field.key] = "Should not be empty"
            return
        value = getattr(self._item, field.key, None)
        if value is None:
            if not field.allow_null and not field.auto:
                self._errors[field.key] = "Should not be empty"
            return
        try:
            field.check_value(value)
        except (TypeError, ValueError) as e:
            self._errors[field.key] = str(e)

    def _error_info(self) -> Optional[ErrorInfo]:
        if not self._errors and not self._error:
            return None
        if not self._error:
            self._error = ", ".join(
                f"{self._metadata.fields.find(key).caption}: {message}"
                for key, message in self._errors.items()
            )
        return ErrorInfo(self._error, dict(self._errors))

    async def validate(self, *field_keys: str) -> Optional[ErrorInfo]:
        """Run validators; returns the collected errors or None.

        Field validators run in declaration order, then the built-in null and
        type checks, then the entity ``validation`` hook. Every check runs even
        after a failure, so all problems are reported at once.
        """
        self._errors = {}
        self._error = None
        self._sync_to_one()
        targets = ([self._metadata.fields.find(k) for k in field_keys]
                   if field_keys else self._metadata.fields.to_list())

        for field in targets:
            await self.fields.find(field)._run_validators()
        for field in targets:
            self._check_value(field)

        if not field_keys:
            event = LifecycleEvent(self)
            hook = self._metadata.options.validation
            if hook:
                await maybe_await(hook(self._item, event))
            await self._fire("validating", event)

        return self._error_info()

    async def _fire(self, stage: str, event: LifecycleEvent):
        """Call the repository's event listeners registered for ``stage``"""
        for listener in list(self._repository._event_listeners):
            handler = getattr(listener, stage, None)
            if handler is not None:
                await maybe_await(handler(self._item, event))

    def _raise_errors(self):
        info = self._error_info()
        if info:
            raise ValidationError(info.message, info.model_state, entity_key=self._metadata.key)

    # Persistence

    async def save(self) -> Any:
        """Insert a new item or update the changed fields of an existing one"""
        meta = self._metadata
        repository = self._repository
        if self._was_deleted:
            raise NotFoundError("Cannot save an item that was deleted", entity_key=meta.key)

        self._sync_to_one()
        if self._is_new and not meta.api_insert_allowed(self._item):
            raise AccessDeniedError(f"Insert is not allowed for '{meta.key}'", entity_key=meta.key)
        if not self._is_new and not meta.api_update_allowed(self._item):
            raise AccessDeniedError(f"Update is not allowed for '{meta.key}'", entity_key=meta.key)

        await self.validate()
        self._raise_errors()

        event = LifecycleEvent(self)
        if meta.options.saving:
            await maybe_await(meta.options.saving(self._item, event))
        await self._fire("saving", event)
        self._raise_errors()
        if event.prevented:
            logger.debug(f"Save of '{meta.key}' prevented by saving hook")
            return self._item

        if self._is_new:
            row = self._row()
            for field in meta.id_metadata.fields:
                if field.auto and row.get(field.key) is None:
                    row.pop(field.key)
            result = await repository._call("insert", repository.provider.insert(meta.key, row))
            self._apply_row(result)
            self._is_new = False
            self._reset_original()
            logger.debug(f"Inserted '{meta.key}' id={self.get_id()!r}")
            await repository._publish(ChangeEvent.inserted(meta.key, result, self.get_id()))
        else:
            changed = self._changed_keys()
            if not changed:
                return self._item
            for key in changed:
                field = meta.fields.find(key)
                if not evaluate_rule(field.allow_api_update, self._item):
                    raise AccessDeniedError(f"Updating '{key}' is not allowed", entity_key=meta.key)
            row = self._row()
            values = {key: row[key] for key in changed}
            previous_id = self.get_original_id()
            result = await repository._call(
                "update", repository.provider.update(meta.key, self._original_id_dict(), values))
            self._apply_row(result)
            self._reset_original()
            current_id = self.get_id()
            logger.debug(f"Updated '{meta.key}' id={current_id!r} fields={changed}")
            await repository._publish(ChangeEvent.updated(
                meta.key, result, current_id,
                previous_id=previous_id if previous_id != current_id else None))

        if meta.options.saved:
            await maybe_await(meta.options.saved(self._item, event))
        await self._fire("saved", event)
        self._notify(None)
        return self._item

    async def delete(self) -> None:
        meta = self._metadata
        repository = self._repository
        if self._is_new:
            raise NotFoundError("Cannot delete an item that was never saved", entity_key=meta.key)
        if self._was_deleted:
            raise NotFoundError("Item was already deleted", entity_key=meta.key)
        if not meta.api_delete_allowed(self._item):
            raise AccessDeniedError(f"Delete is not allowed for '{meta.key}'", entity_key=meta.key)

        event = LifecycleEvent(self)
        if meta.options.deleting:
            await maybe_await(meta.options.deleting(self._item, event))
        await self._fire("deleting", event)
        if meta.options.deleting or self._repository._event_listeners:
            self._raise_errors()
        if event.prevented:
            logger.debug(f"Delete of '{meta.key}' prevented by deleting hook")
            return

        original_id = self.get_original_id()
        await repository._call("delete", repository.provider.delete(meta.key, self._original_id_dict()))
        self._was_deleted = True
        logger.debug(f"Deleted '{meta.key}' id={original_id!r}")
        await repository._publish(ChangeEvent.deleted(meta.key, original_id, self._original_row()))

        if meta.options.deleted:
            await maybe_await(meta.options.deleted(self._item, event))
        await self._fire("deleted", event)

    async def reload(self) -> Any:
        """Re-read the stored row, discarding unsaved changes"""
        meta = self._metadata
        repository = self._repository
        if self._is_new:
            raise NotFoundError("Cannot reload an item that was never saved", entity_key=meta.key)
        self._loading += 1
        try:
            rows = await repository._call("find", repository.provider.find(
                meta.key, id_filter(meta, self.get_original_id()), (), 1, 0))
        finally:
            self._loading -= 1
        if not rows:
            raise NotFoundError(f"No row with id {self.get_original_id()!r}", entity_key=meta.key)
        self._apply_row(rows[0])
        self._reset_original()
        self._errors.clear()
        self._error = None
        self._notify(None)
        return self._item

    # Serialization

    def to_api_json(self) -> Dict[str, Any]:
        return self._repository.to_json(self._item)

    def clone(self) -> Any:
        """A new instance with the same values and tracking state"""
        return self._repository._clone(self._item)

    def __repr__(self) -> str:
        state = "new" if self._is_new else ("deleted" if self._was_deleted else "loaded")
        return f"EntityRef({self._metadata.key}, id={self.get_id()!r}, {state})"


def get_entity_ref(item: Any, repository=None) -> EntityRef:
    """Return the ref of ``item``, attaching a not-new ref to a plain instance.

    Plain instances (built directly rather than by a repository) need the
    ``repository`` they belong to.
    """
    ref = getattr(item, "_ref", None)
    if ref is not None:
        return ref
    if repository is None:
        raise ValueError(
            f"{type(item).__name__} instance is not tracked; use Repository.get_entity_ref(item)"
        )
    return repository._attach(item, is_new=False)


__all__ = [
    "EntityRef", "FieldRef", "FieldsRef", "LifecycleEvent", "ErrorInfo",
    "get_entity_ref", "related_id",
]
