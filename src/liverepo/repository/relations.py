"""
Relation Resolver - Lazy and Eager Relation Loading

Resolves the relations declared on an entity:

- reference / to-one relations load the related entity, lazily on request
  or eagerly for every owner of a find at once (one ``$in`` query per
  relation and level)
- to-many relations expose a repository scoped to the owner, and are
  eagerly loaded the same batched way
- ``insert_with_relations`` inserts nested object graphs in post-order

Eager loading shares an identity map across one find, so a related row
reached from several owners is fetched and hydrated only once.
"""

from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging

from ..errors import ValidationError
from ..filters.nodes import Comparison, FilterNode, FilterOperator, and_, or_
from ..filters.translator import translate_order
from ..metadata.fields import FieldMetadata, ValueType
from .options import IncludeOptions, normalize_include

logger = logging.getLogger(__name__)

# (entity key, key field names, key values) -> hydrated entity
IdentityMap = Dict[Tuple[str, Tuple[str, ...], Tuple[Any, ...]], Any]


class RelationResolver:
    """Relation loading for the entities of one repository"""

    def __init__(self, repository):
        self._repository = repository
        self._metadata = repository.metadata

    @property
    def max_depth(self) -> int:
        return self._repository.context.config.query.max_include_depth

    def _target_repository(self, field: FieldMetadata):
        return self._repository.context.repo(field.relation.target_type())

    def _pairs(self, field: FieldMetadata) -> List[Tuple[str, Optional[str]]]:
        """(target field key, owner field key) pairs; owner None means the reference column"""
        if field.value_type == ValueType.REFERENCE:
            return [(field.related_metadata().id_metadata.field.key, None)]
        return list(field.relation.key_map(self._metadata).items())

    def _storage_value(self, item: Any, field: FieldMetadata, owner_key: Optional[str]) -> Any:
        ref = self._repository.get_entity_ref(item)
        if owner_key is None:
            return ref._reference_id(field)
        owner_field = self._metadata.fields.find(owner_key)
        if owner_field.value_type == ValueType.REFERENCE:
            return ref._reference_id(owner_field)
        return owner_field.value_to_db(getattr(item, owner_key, None))

    def _owner_values(self, item: Any, field: FieldMetadata,
                      pairs: Sequence[Tuple[str, Optional[str]]]) -> Tuple[Any, ...]:
        ref = self._repository.get_entity_ref(item)
        ref._sync_to_one()
        return tuple(self._storage_value(item, field, owner_key) for _, owner_key in pairs)

    @staticmethod
    def _key_filter(target_keys: Sequence[str], keys: Sequence[Tuple[Any, ...]]) -> FilterNode:
        if len(target_keys) == 1:
            return Comparison(target_keys[0], FilterOperator.IN, tuple(k[0] for k in keys))
        return or_(*[
            and_(*[Comparison(t, FilterOperator.EQUALS, v) for t, v in zip(target_keys, key)])
            for key in keys
        ])

    # Eager loading

    async def include(self, items: List[Any], include: Any, depth: int = 0,
                      identity_map: Optional[IdentityMap] = None) -> None:
        """Resolve the include graph of one level for ``items``"""
        if not items:
            return
        requested = normalize_include(self._metadata, include, top_level=depth == 0)
        if not requested:
            return
        if depth >= self.max_depth:
            raise ValidationError(f"Include depth exceeds the maximum of {self.max_depth}",
                                  entity_key=self._metadata.key)
        identity_map = {} if identity_map is None else identity_map

        for key, options in requested.items():
            field = self._metadata.fields.find(key)
            options = options.merged_with(field.relation.find_options)
            if field.value_type == ValueType.TO_MANY:
                await self._include_many(items, field, options, depth, identity_map)
            else:
                await self._include_one(items, field, options, depth, identity_map)

    async def _include_one(self, items: List[Any], field: FieldMetadata, options: IncludeOptions,
                           depth: int, identity_map: IdentityMap) -> None:
        target = self._target_repository(field)
        pairs = self._pairs(field)
        target_keys = tuple(t for t, _ in pairs)
        owner_keys = [self._owner_values(item, field, pairs) for item in items]

        wanted = []
        for key in owner_keys:
            if None in key or key in wanted:
                continue
            if (target.metadata.key, target_keys, key) not in identity_map:
                wanted.append(key)

        if wanted:
            node = and_(self._key_filter(target_keys, wanted), target._where_node(options.where))
            order = translate_order(target.metadata, options.order_by)
            rows = await target._find_rows(node, order, None, 0)
            related = await target._hydrate(rows, options.include, depth + 1, identity_map)
            for row, entity in zip(rows, related):
                identity_map.setdefault(
                    (target.metadata.key, target_keys, tuple(row.get(t) for t in target_keys)), entity)
            logger.debug(f"Included '{field.key}' for {len(items)} '{self._metadata.key}' rows "
                         f"({len(rows)} related)")

        for item, key in zip(items, owner_keys):
            value = None if None in key else identity_map.get((target.metadata.key, target_keys, key))
            self._repository.get_entity_ref(item)._place(field.key, value)

    async def _include_many(self, items: List[Any], field: FieldMetadata, options: IncludeOptions,
                            depth: int, identity_map: IdentityMap) -> None:
        target = self._target_repository(field)
        pairs = self._pairs(field)
        target_keys = tuple(t for t, _ in pairs)
        owner_keys = [self._owner_values(item, field, pairs) for item in items]

        wanted = []
        for key in owner_keys:
            if None not in key and key not in wanted:
                wanted.append(key)

        groups: Dict[Tuple[Any, ...], List[Any]] = defaultdict(list)
        if wanted:
            node = and_(self._key_filter(target_keys, wanted), target._where_node(options.where))
            order = translate_order(target.metadata, options.order_by)
            rows = await target._find_rows(node, order, None, 0)
            related = await target._hydrate(rows, options.include, depth + 1, identity_map)
            for row, entity in zip(rows, related):
                groups[tuple(row.get(t) for t in target_keys)].append(entity)
            logger.debug(f"Included '{field.key}' for {len(items)} '{self._metadata.key}' rows "
                         f"({len(rows)} related)")

        for item, key in zip(items, owner_keys):
            children = list(groups.get(key, []))
            if options.limit is not None:
                children = children[:options.limit]
            self._repository.get_entity_ref(item)._place(field.key, children)

    # Lazy loading

    async def load(self, item: Any, field: FieldMetadata) -> Any:
        """Fetch the related value of one relation for one item and place it on the item"""
        if field.relation is None:
            raise ValueError(f"Field '{field.key}' is not a relation")
        ref = self._repository.get_entity_ref(item)
        ref._loading += 1
        try:
            if field.value_type == ValueType.TO_MANY:
                options = IncludeOptions().merged_with(field.relation.find_options)
                value = await self.repository_for(item, field).find(
                    options.where, order_by=options.order_by, limit=options.limit,
                    include=options.include)
            else:
                target = self._target_repository(field)
                pairs = self._pairs(field)
                key = self._owner_values(item, field, pairs)
                value = None
                if None not in key:
                    node = and_(*[Comparison(t, FilterOperator.EQUALS, v)
                                  for (t, _), v in zip(pairs, key)])
                    found = await target._find_node(node, [], 1, 0, None)
                    value = found[0] if found else None
        finally:
            ref._loading -= 1
        ref._place(field.key, value)
        return value

    def repository_for(self, item: Any, field: FieldMetadata):
        """Repository of the to-many relation ``field`` scoped to ``item``"""
        from .repository import Repository

        if field.value_type != ValueType.TO_MANY:
            raise ValueError(f"Field '{field.key}' is not a to-many relation")
        pairs = self._pairs(field)
        key = self._owner_values(item, field, pairs)
        target_type = field.relation.target_type()
        target_meta = field.related_metadata()

        scope = and_(*[Comparison(t, FilterOperator.EQUALS, v) for (t, _), v in zip(pairs, key)])
        defaults = {}
        for (target_key, _), value in zip(pairs, key):
            target_field = target_meta.fields.find(target_key)
            if target_field.value_type == ValueType.REFERENCE:
                defaults[target_key] = value
            else:
                defaults[target_key] = target_field.value_from_db(value)
        context = self._repository.context
        return Repository(target_type, context, scope=scope, defaults=defaults,
                          listeners=context.repo(target_type)._event_listeners)

    # Nested inserts

    async def insert_with_relations(self, data: Any) -> Any:
        """Insert ``data`` with its nested to-one parents and to-many children.

        Post-order: related to-one objects are inserted first so their ids
        exist, then the owner, then its to-many children with the owner's
        key attached. A failing insert stops the walk; nothing is rolled back.
        """
        repository = self._repository
        ref = getattr(data, "_ref", None)
        if ref is not None and not ref.is_new():
            return data
        if isinstance(data, Mapping):
            values = dict(data)
        else:
            values = {f.key: getattr(data, f.key) for f in self._metadata.fields if hasattr(data, f.key)}

        for field in self._metadata.fields:
            if field.value_type not in (ValueType.REFERENCE, ValueType.TO_ONE):
                continue
            value = values.get(field.key)
            if value is None:
                continue
            related_ref = getattr(value, "_ref", None)
            if isinstance(value, Mapping) or (hasattr(value, "model_fields") and
                                              (related_ref is None or related_ref.is_new())):
                values[field.key] = await self._target_repository(field).insert_with_relations(value)

        children: Dict[str, List[Any]] = {}
        for field in self._metadata.fields:
            if field.value_type == ValueType.TO_MANY and field.key in values:
                nested = values.pop(field.key)
                if nested:
                    children[field.key] = list(nested)

        if ref is not None:
            item = data
            repository._apply_values(item, values)
        else:
            item = repository.create(values)
        await repository.get_entity_ref(item).save()

        for key, nested in children.items():
            scoped = self.repository_for(item, self._metadata.fields.find(key))
            inserted = [await scoped.insert_with_relations(child) for child in nested]
            repository.get_entity_ref(item)._place(key, inserted)
        return item


class ToOneRelation:
    """Handle to a reference or to-one relation of one item"""

    def __init__(self, resolver: RelationResolver, item: Any, field: FieldMetadata):
        self._resolver = resolver
        self._item = item
        self.field = field

    @property
    def id(self) -> Any:
        """Storage-form key of the related row (tuple for multi-field keys)"""
        pairs = self._resolver._pairs(self.field)
        key = self._resolver._owner_values(self._item, self.field, pairs)
        return key[0] if len(key) == 1 else key

    async def find_one(self) -> Any:
        return await self._resolver.load(self._item, self.field)


class ItemRelations:
    """Relation handles of one item: ``repo.relations(product).category``"""

    def __init__(self, repository, item: Any):
        self._repository = repository
        self._item = item

    def __getitem__(self, key: str):
        field = self._repository.metadata.fields.get(key)
        if field is None or field.relation is None:
            raise KeyError(f"'{key}' is not a relation of '{self._repository.metadata.key}'")
        resolver = self._repository._resolver
        if field.value_type == ValueType.TO_MANY:
            return resolver.repository_for(self._item, field)
        return ToOneRelation(resolver, self._item, field)

    def __getattr__(self, key: str):
        if key.startswith("_"):
            raise AttributeError(key)
        try:
            return self[key]
        except KeyError as e:
            raise AttributeError(str(e)) from None


__all__ = ["RelationResolver", "ToOneRelation", "ItemRelations", "IdentityMap"]
