"""
Repository - CRUD and Query Facade for One Entity

🗄️ Uniform Data Access:
A repository binds one registered entity class to the storage provider of a
``DataContext``. It translates filters and ordering, calls the provider,
hydrates rows into tracked entity instances, resolves included relations and
publishes a change event to the live query engine after every mutation.

Example:
    tasks = context.repo(Task)
    task = await tasks.insert({"title": "Write docs"})
    open_tasks = await tasks.find({"completed": False}, order_by={"title": "asc"})
"""

from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Sequence, TypeVar, Union
import copy
import logging

from ..entities.base import new_instance
from ..entities.ref import EntityRef, ErrorInfo, get_entity_ref, related_id
from ..errors import (
    AccessDeniedError, ConflictError, DataLayerError, NotFoundError,
    ProviderError, ValidationError,
)
from ..filters.nodes import FilterNode, SortSegment, and_
from ..filters.translator import id_filter, id_order, is_operator_object, translate, translate_order
from ..metadata.entity import EntityMetadata, FieldsMetadata
from ..metadata.fields import ValueType, evaluate_rule
from ..metadata.registry import get_metadata
from ..realtime.changes import ChangeEvent
from .options import FindOptions
from .query import QueryResult
from .relations import IdentityMap, ItemRelations, RelationResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Repository(Generic[T]):
    """CRUD, query, serialization and relation access for one entity class"""

    def __init__(self, entity_type: type, context, *,
                 scope: Optional[FilterNode] = None,
                 defaults: Optional[Mapping[str, Any]] = None,
                 listeners: Optional[List[Any]] = None):
        self.entity_type = entity_type
        self.context = context
        self.metadata: EntityMetadata = get_metadata(entity_type)
        # Implicit filter and pre-filled values of relation scoped repositories
        self._scope = scope
        self._defaults = dict(defaults or {})
        # Lifecycle listeners, shared with the entity's scoped repositories
        self._event_listeners: List[Any] = listeners if listeners is not None else []
        self._resolver = RelationResolver(self)
        self._logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")
        context.provider.register_entity(self.metadata)

    @property
    def provider(self):
        return self.context.provider

    @property
    def fields(self) -> FieldsMetadata:
        return self.metadata.fields

    def __repr__(self) -> str:
        scoped = ", scoped" if self._scope is not None else ""
        return f"Repository({self.metadata.key}{scoped})"

    # Internal plumbing

    async def _call(self, operation: str, awaitable: Awaitable) -> Any:
        """Await a provider call, adding entity context to its errors"""
        try:
            return await awaitable
        except DataLayerError as e:
            self._logger.debug(f"Provider {operation} on '{self.metadata.key}' raised {e!r}")
            raise e.with_context(self.metadata.key)
        except Exception as e:
            self._logger.error(f"Provider {operation} on '{self.metadata.key}' failed: {e}")
            raise ProviderError(f"{operation} failed: {e}", entity_key=self.metadata.key) from e

    async def _publish(self, event: ChangeEvent):
        engine = getattr(self.context, "live_queries", None)
        if engine is not None:
            await engine.publish(event)

    async def _each(self, items: Sequence[Any], operation: Callable[[Any], Awaitable]) -> List[Any]:
        """Run ``operation`` per item in order; the first failure stops the batch"""
        results = []
        for index, item in enumerate(items):
            try:
                results.append(await operation(item))
            except DataLayerError as e:
                raise e.with_context(self.metadata.key, index)
            except (TypeError, ValueError) as e:
                error = ValidationError(str(e), entity_key=self.metadata.key)
                raise error.with_context(item_index=index) from e
        return results

    def _check_read(self):
        if not self.metadata.api_read_allowed:
            raise AccessDeniedError(f"Reading '{self.metadata.key}' is not allowed",
                                    entity_key=self.metadata.key)

    def _where_node(self, where: Any) -> FilterNode:
        node = translate(self.metadata, where)
        if self._scope is not None:
            node = and_(self._scope, node)
        return node

    async def _find_rows(self, node: FilterNode, order: Sequence[SortSegment],
                         limit: Optional[int], skip: int) -> List[Dict[str, Any]]:
        return await self._call("find", self.provider.find(self.metadata.key, node, list(order), limit, skip))

    async def _find_node(self, node: FilterNode, order: Sequence[SortSegment],
                         limit: Optional[int], skip: int, include: Any) -> List[T]:
        rows = await self._find_rows(node, order, limit, skip)
        self._logger.debug(f"find '{self.metadata.key}' returned {len(rows)} rows")
        return await self._hydrate(rows, include)

    async def _count_node(self, node: FilterNode) -> int:
        return await self._call("count", self.provider.count(self.metadata.key, node))

    async def _hydrate(self, rows: Sequence[Mapping[str, Any]], include: Any = None, depth: int = 0,
                       identity_map: Optional[IdentityMap] = None) -> List[T]:
        """Rows to tracked instances, sharing instances through the identity map"""
        identity_map = {} if identity_map is None else identity_map
        id_keys = tuple(f.key for f in self.metadata.id_metadata.fields)
        items, fresh = [], []
        for row in rows:
            cache_key = (self.metadata.key, id_keys, tuple(row.get(k) for k in id_keys))
            item = identity_map.get(cache_key)
            if item is None:
                item = self._from_row(row)
                identity_map[cache_key] = item
                fresh.append(item)
            items.append(item)
        await self._resolver.include(fresh, include, depth, identity_map)
        return items

    def _from_row(self, row: Mapping[str, Any]) -> T:
        values = {}
        for field in self.metadata.fields:
            if field.value_type in (ValueType.REFERENCE, ValueType.TO_ONE):
                values[field.key] = None
            elif field.value_type == ValueType.TO_MANY:
                values[field.key] = []
            else:
                values[field.key] = field.value_from_db(row.get(field.key))
        item = new_instance(self.entity_type, values)
        ref = EntityRef(self, item, is_new=False)
        for field in self.metadata.fields:
            if field.value_type == ValueType.REFERENCE:
                ref._reference_ids[field.key] = row.get(field.key)
        ref._reset_original()
        return item

    def _attach(self, item: Any, is_new: bool) -> EntityRef:
        """Attach a ref to an instance built outside the repository"""
        if not isinstance(item, self.entity_type):
            raise TypeError(f"Expected {self.entity_type.__name__}, got {type(item).__name__}")
        ref = EntityRef(self, item, is_new=is_new)
        for field in self.metadata.fields:
            if field.value_type != ValueType.REFERENCE:
                continue
            value = getattr(item, field.key, None)
            if value is not None and not hasattr(value, "model_fields"):
                # A raw id or id dict was assigned
                setattr(item, field.key, None)
            ref._reference_ids[field.key] = related_id(field, value)
        ref._reset_original()
        return ref

    def _values_of(self, item: Any) -> Dict[str, Any]:
        if isinstance(item, Mapping):
            return dict(item)
        if isinstance(item, self.entity_type):
            return {f.key: getattr(item, f.key) for f in self.metadata.fields if hasattr(item, f.key)}
        raise TypeError(f"Expected {self.entity_type.__name__} or a dict, got {type(item).__name__}")

    def _apply_values(self, item: T, values: Any):
        """Assign values through the ref so relation ids and observers stay consistent"""
        ref = self.get_entity_ref(item)
        for key, value in self._values_of(values).items():
            field = self.metadata.fields.get(key)
            if field is None:
                raise ValidationError(f"Unknown field '{key}'", {key: "Unknown field"},
                                      entity_key=self.metadata.key)
            if field.value_type == ValueType.TO_MANY:
                ref._place(key, list(value or []))
                continue
            if not field.is_relation and value is not None:
                try:
                    value = field.check_value(value)
                except (TypeError, ValueError):
                    # Left as given; validate() reports it
                    self._logger.debug(f"Value {value!r} for '{key}' does not match its type")
            ref.set(key, value)

    def _clone(self, item: T) -> T:
        ref = self.get_entity_ref(item)
        clone = self._from_row(ref._row())
        clone_ref = clone._ref
        clone_ref._original = copy.deepcopy(ref._original)
        clone_ref._reference_ids = dict(ref._reference_ids)
        clone_ref._is_new = ref.is_new()
        for field in self.metadata.fields:
            if field.is_relation:
                value = getattr(item, field.key, None)
                if value is not None:
                    clone_ref._place(field.key, list(value) if isinstance(value, list) else value)
        return clone

    async def _find_by_id(self, id: Any, include: Any = None) -> Optional[T]:
        items = await self._find_node(and_(self._where_node(None), id_filter(self.metadata, id)),
                                      [], 1, 0, include)
        return items[0] if items else None

    def _equality_values(self, where: Any) -> Dict[str, Any]:
        """Values implied by an equality-only filter (for create_if_not_found)"""
        if where is None:
            return {}
        if not isinstance(where, Mapping):
            if isinstance(where, (list, tuple, set)):
                raise ValidationError("Cannot create an item from a list of ids",
                                      entity_key=self.metadata.key)
            return self.metadata.id_metadata.id_dict(where)
        values: Dict[str, Any] = {}
        for key, value in where.items():
            if key == "$and":
                for part in (value if isinstance(value, (list, tuple)) else [value]):
                    values.update(self._equality_values(part))
            elif key.startswith("$"):
                raise ValidationError(f"Cannot create an item from a '{key}' filter",
                                      entity_key=self.metadata.key)
            elif is_operator_object(value):
                if set(value) != {"$eq"}:
                    raise ValidationError(
                        f"Cannot create an item from non-equality filter on '{key}'",
                        {key: "Only equality filters can be used to create an item"},
                        entity_key=self.metadata.key)
                values[key] = value["$eq"]
            elif isinstance(value, (list, tuple, set)):
                raise ValidationError(
                    f"Cannot create an item from a list filter on '{key}'",
                    {key: "Only equality filters can be used to create an item"},
                    entity_key=self.metadata.key)
            else:
                values[key] = value
        return values

    # Instances

    def create(self, data: Any = None) -> T:
        """A new, unsaved instance with defaults applied, then ``data``"""
        values = {f.key: (None if f.value_type in (ValueType.REFERENCE, ValueType.TO_ONE)
                          else f.default_value())
                  for f in self.metadata.fields}
        item = new_instance(self.entity_type, values)
        ref = EntityRef(self, item, is_new=True)
        if self._defaults:
            self._apply_values(item, self._defaults)
        ref._reset_original()
        if data:
            self._apply_values(item, data)
        return item

    def get_entity_ref(self, item: T) -> EntityRef:
        return get_entity_ref(item, self)

    def relations(self, item: T) -> ItemRelations:
        return ItemRelations(self, item)

    def add_event_listener(self, listener: Any) -> Callable[[], None]:
        """Register lifecycle callbacks for every item of this entity.

        ``listener`` may define any of ``validating``, ``saving``, ``saved``,
        ``deleting`` and ``deleted``, each called as ``(item, event)`` right
        after the entity option of the same stage. Returns a function that
        removes the listener again.
        """
        self._event_listeners.append(listener)

        def remove():
            if listener in self._event_listeners:
                self._event_listeners.remove(listener)

        return remove

    async def validate(self, item: Any, *field_keys: str) -> Optional[ErrorInfo]:
        if isinstance(item, Mapping):
            item = self.create(item)
        return await self.get_entity_ref(item).validate(*field_keys)

    # Reads

    async def find(self, where: Any = None, *, order_by: Optional[Mapping[str, str]] = None,
                   limit: Optional[int] = None, page: Optional[int] = None,
                   include: Any = None) -> List[T]:
        """Items matching ``where``.

        Args:
            where: Filter expression (see ``filters.translate``)
            order_by: ``{"field": "asc" | "desc"}``; the id is added as a tiebreaker
            limit: Maximum number of items
            page: 1-based page of ``limit`` items
            include: Relations to load eagerly
        """
        self._check_read()
        query = self.context.config.query
        node = self._where_node(where)
        order = translate_order(self.metadata, order_by)
        if limit is None:
            limit = query.default_find_limit
        if limit is not None and limit < 0:
            raise ValidationError("limit must not be negative", entity_key=self.metadata.key)
        skip = 0
        if page is not None:
            if page < 1:
                raise ValidationError("page starts at 1", entity_key=self.metadata.key)
            if limit is None:
                limit = query.default_page_size
            skip = (page - 1) * limit
        return await self._find_node(node, order, limit, skip, include)

    async def find_first(self, where: Any = None, *, order_by: Optional[Mapping[str, str]] = None,
                         include: Any = None, create_if_not_found: bool = False) -> Optional[T]:
        """First matching item; with ``create_if_not_found`` a missing item is
        inserted from the filter's equality values and returned"""
        if create_if_not_found:
            values = self._equality_values(where)
        items = await self.find(where, order_by=order_by, limit=1, include=include)
        if items:
            return items[0]
        if not create_if_not_found:
            return None
        item = self.create(values)
        self._logger.debug(f"Creating missing '{self.metadata.key}' from {values}")
        return await self.get_entity_ref(item).save()

    async def find_one(self, *, where: Any = None, order_by: Optional[Mapping[str, str]] = None,
                       include: Any = None, create_if_not_found: bool = False) -> Optional[T]:
        return await self.find_first(where, order_by=order_by, include=include,
                                     create_if_not_found=create_if_not_found)

    async def find_id(self, id: Any, *, include: Any = None,
                      create_if_not_found: bool = False) -> Optional[T]:
        self._check_read()
        if self._missing_id(id):
            return None
        item = await self._find_by_id(id, include)
        if item is not None or not create_if_not_found:
            return item
        item = self.create(self.metadata.id_metadata.id_dict(id))
        return await self.get_entity_ref(item).save()

    def _missing_id(self, id: Any) -> bool:
        if id is None:
            return True
        if isinstance(id, Mapping):
            return any(id.get(f.key) is None for f in self.metadata.id_metadata.fields)
        return False

    async def count(self, where: Any = None) -> int:
        self._check_read()
        return await self._count_node(self._where_node(where))

    def query(self, where: Any = None, *, order_by: Optional[Mapping[str, str]] = None,
              page_size: Optional[int] = None, include: Any = None,
              progress: Any = None) -> QueryResult:
        """Paged query; iterate with ``async for`` or use ``paginator()``.

        ``progress`` is called with the processed fraction (0..1) after each
        item while iterating; it may be a function or an object with a
        ``progress`` method.
        """
        self._check_read()
        order = translate_order(self.metadata, order_by) or id_order(self.metadata)
        return QueryResult(self, self._where_node(where), order,
                           page_size if page_size is not None else self.context.config.query.default_page_size,
                           include, progress)

    # Writes

    async def save(self, item: Union[T, Mapping[str, Any], List[Any]]) -> Any:
        """Insert new items, update changed fields of existing ones.

        Dicts (and untracked instances) holding id values are treated as
        existing rows: the row is loaded and the given values applied.
        """
        if isinstance(item, list):
            return await self._each(item, self._save_one)
        return await self._save_one(item)

    async def _save_one(self, item: Any) -> T:
        ref = getattr(item, "_ref", None)
        if ref is not None:
            return await ref.save()
        values = self._values_of(item)
        id_meta = self.metadata.id_metadata
        if id_meta.has_id(values):
            existing = await self._find_by_id(id_meta.get_id(values))
            if existing is None:
                raise NotFoundError(f"No row with id {id_meta.get_id(values)!r}",
                                    entity_key=self.metadata.key)
            self._apply_values(existing, values)
            return await existing._ref.save()
        return await self.get_entity_ref(self.create(values)).save()

    async def insert(self, item: Union[T, Mapping[str, Any], List[Any]]) -> Any:
        if isinstance(item, list):
            return await self._each(item, self._insert_one)
        return await self._insert_one(item)

    async def _insert_one(self, item: Any) -> T:
        ref = getattr(item, "_ref", None)
        if ref is not None:
            if not ref.is_new():
                raise ConflictError("Item is already saved; use save() or update()",
                                    entity_key=self.metadata.key)
            return await ref.save()
        return await self.get_entity_ref(self.create(self._values_of(item))).save()

    async def insert_with_relations(self, data: Any) -> Any:
        if isinstance(data, list):
            return await self._each(data, self._resolver.insert_with_relations)
        return await self._resolver.insert_with_relations(data)

    async def update(self, id_or_item: Any, values: Any = None) -> T:
        """Apply ``values`` to an item (or the item with the given id) and save it"""
        ref = getattr(id_or_item, "_ref", None)
        if ref is not None:
            if ref.is_new():
                raise NotFoundError("Cannot update an item that was never saved",
                                    entity_key=self.metadata.key)
            item = id_or_item
        else:
            id = id_or_item
            if isinstance(id_or_item, self.entity_type):
                id = self.metadata.id_metadata.get_id(id_or_item)
            item = await self._find_by_id(id)
            if item is None:
                raise NotFoundError(f"No row with id {id!r}", entity_key=self.metadata.key)
        if values:
            self._apply_values(item, values)
        return await self.get_entity_ref(item).save()

    async def delete(self, id_or_item: Any) -> None:
        if isinstance(id_or_item, list):
            await self._each(id_or_item, self._delete_one)
            return
        await self._delete_one(id_or_item)

    async def _delete_one(self, id_or_item: Any) -> None:
        ref = getattr(id_or_item, "_ref", None)
        if ref is None:
            id = id_or_item
            if isinstance(id_or_item, self.entity_type):
                id = self.metadata.id_metadata.get_id(id_or_item)
            item = await self._find_by_id(id)
            if item is None:
                raise NotFoundError(f"No row with id {id!r}", entity_key=self.metadata.key)
            ref = item._ref
        await ref.delete()

    def _check_bulk(self, rule_name: str):
        # Predicates of an item cannot be evaluated for a bulk statement
        rule = self.metadata.rule(rule_name)
        if not callable(rule) and not rule:
            raise AccessDeniedError(f"Bulk {rule_name.rsplit('_', 1)[-1]} is not allowed for "
                                    f"'{self.metadata.key}'", entity_key=self.metadata.key)

    def _row_values(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        row = {}
        for key, value in values.items():
            field = self.metadata.fields.get(key)
            if field is None or not field.is_persisted:
                raise ValidationError(f"Cannot set '{key}'", {key: "Unknown or virtual field"},
                                      entity_key=self.metadata.key)
            if field.value_type == ValueType.REFERENCE:
                row[key] = related_id(field, value)
                continue
            try:
                checked = field.check_value(value)
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid value for '{key}': {e}", {key: str(e)},
                                      entity_key=self.metadata.key) from e
            if checked is None and not field.allow_null:
                raise ValidationError(f"'{key}' should not be empty", {key: "Should not be empty"},
                                      entity_key=self.metadata.key)
            row[key] = field.value_to_db(checked)
        return row

    async def update_many(self, *, where: Any, set: Mapping[str, Any]) -> int:
        """Bulk update; lifecycle hooks and validators are not run"""
        self._check_bulk("allow_api_update")
        node = self._where_node(where)
        values = self._row_values(set)
        count = await self._call("update_many",
                                 self.provider.update_many(self.metadata.key, node, values))
        self._logger.debug(f"update_many '{self.metadata.key}' affected {count} rows")
        await self._publish(ChangeEvent.bulk(self.metadata.key))
        return count

    async def delete_many(self, *, where: Any) -> int:
        """Bulk delete; lifecycle hooks are not run"""
        self._check_bulk("allow_api_delete")
        node = self._where_node(where)
        count = await self._call("delete_many", self.provider.delete_many(self.metadata.key, node))
        self._logger.debug(f"delete_many '{self.metadata.key}' affected {count} rows")
        await self._publish(ChangeEvent.bulk(self.metadata.key))
        return count

    # Serialization

    def to_json(self, item: Any) -> Any:
        if isinstance(item, list):
            return [self._to_json(i, set()) for i in item]
        return self._to_json(item, set())

    def _to_json(self, item: Any, stack: set) -> Dict[str, Any]:
        ref = self.get_entity_ref(item)
        stack = stack | {id(item)}
        result: Dict[str, Any] = {}
        for field in self.metadata.fields:
            if not evaluate_rule(field.include_in_api, item):
                continue
            value = getattr(item, field.key, None)
            if field.value_type == ValueType.REFERENCE:
                target_id = field.related_metadata().id_metadata.field
                stored = ref._reference_id(field)
                result[field.key] = (None if stored is None
                                     else target_id.value_to_json(target_id.value_from_db(stored)))
            elif field.value_type == ValueType.TO_ONE:
                if value is not None and id(value) not in stack:
                    target = self.context.repo(field.relation.target_type())
                    result[field.key] = target._to_json(value, stack)
            elif field.value_type == ValueType.TO_MANY:
                if value:
                    target = self.context.repo(field.relation.target_type())
                    result[field.key] = [target._to_json(v, stack) for v in value if id(v) not in stack]
            else:
                result[field.key] = field.value_to_json(value)
        return result

    def from_json(self, data: Any, is_new: bool = False) -> Any:
        """Wire dicts to tracked instances (not new unless ``is_new``)"""
        if isinstance(data, list):
            return [self.from_json(d, is_new) for d in data]
        values: Dict[str, Any] = {}
        relations: Dict[str, Any] = {}
        for field in self.metadata.fields:
            if field.key not in data:
                continue
            raw = data[field.key]
            if field.value_type == ValueType.REFERENCE:
                values[field.key] = raw
            elif field.value_type == ValueType.TO_ONE:
                if isinstance(raw, Mapping):
                    target = self.context.repo(field.relation.target_type())
                    relations[field.key] = target.from_json(raw, is_new)
            elif field.value_type == ValueType.TO_MANY:
                target = self.context.repo(field.relation.target_type())
                relations[field.key] = [target.from_json(r, is_new) for r in raw or []]
            else:
                values[field.key] = field.value_from_json(raw)

        if is_new:
            item = self.create(values)
            ref = item._ref
        else:
            plain = {}
            for field in self.metadata.fields:
                if field.value_type in (ValueType.REFERENCE, ValueType.TO_ONE):
                    plain[field.key] = None
                elif field.value_type == ValueType.TO_MANY:
                    plain[field.key] = []
                elif field.key in values:
                    plain[field.key] = values[field.key]
                else:
                    plain[field.key] = field.default_value()
            item = new_instance(self.entity_type, plain)
            ref = EntityRef(self, item, is_new=False)
            for field in self.metadata.fields:
                if field.value_type == ValueType.REFERENCE:
                    ref._reference_ids[field.key] = related_id(field, values.get(field.key))
            ref._reset_original()
        for key, value in relations.items():
            ref._place(key, value)
        return item

    # Live queries

    def live_query(self, where: Any = None, *, order_by: Optional[Mapping[str, str]] = None,
                   limit: Optional[int] = None, include: Any = None):
        from ..realtime.live_query import LiveQuery
        return LiveQuery(self, FindOptions(where=where, order_by=order_by, limit=limit, include=include))


__all__ = ["Repository"]
