"""
Live Query Engine - Subscriptions, Change Detection and Delta Dispatch

⚡ Live Results:
Repositories publish a ``ChangeEvent`` after every mutation. Events travel
through one channel (an ``asyncio.Queue``) to a worker that checks each event
against every subscription on the same entity:

- the changed row is matched in-process against the subscription's filter
- the result becomes an ``add``, ``replace`` or ``remove`` delta
- when a ``limit`` window is in effect (or a BULK event arrives) the
  subscription re-runs its query and diffs the new result against the old

Each subscription owns a queue and a dispatch task, so a slow listener never
delays detection or delivery for the other subscriptions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import asyncio
import logging
import uuid

from ..config import LiveQueryConfig
from ..utils import maybe_await
from ..errors import DataLayerError
from ..filters.evaluate import matches, row_comparator
from ..filters.nodes import FilterNode, SortSegment
from ..filters.translator import translate_order
from .changes import ChangeEvent, ChangeOperation, LiveQueryChange, LiveQueryChangeInfo

logger = logging.getLogger(__name__)

Listener = Any
RowKey = Tuple[Any, ...]


@dataclass
class _Entry:
    """One materialized row of a subscription result"""
    key: RowKey
    row: Dict[str, Any]
    item: Any


class LiveQuerySubscription:
    """An active live query: its query, last result and listener"""

    def __init__(self, engine: 'LiveQueryEngine', repository, options, node: FilterNode,
                 order: Sequence[SortSegment], listener: Listener, queue_size: int):
        self.subscription_id = str(uuid.uuid4())
        self.engine = engine
        self.repository = repository
        self.options = options
        self.node = node
        self.order = list(order)
        self.limit: Optional[int] = options.limit
        self.include = options.include
        self.listener = listener
        self.fingerprint = engine.fingerprint(repository.metadata.key, node, self.order, self.limit)
        self.entries: List[_Entry] = []
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.closed = False
        # Set while the baseline query runs; events seen meanwhile set ``missed``
        self.pending = False
        self.missed = False
        self.created_at = datetime.now()
        self.changes_delivered = 0
        self.errors = 0
        self._task: Optional[asyncio.Task] = None
        self._logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @property
    def entity_key(self) -> str:
        return self.repository.metadata.key

    @property
    def items(self) -> List[Any]:
        return [entry.item for entry in self.entries]

    def position(self, key: RowKey) -> int:
        for index, entry in enumerate(self.entries):
            if entry.key == key:
                return index
        return -1

    def item_id(self, item: Any) -> Any:
        return self.repository.metadata.id_metadata.get_id(item)

    # Dispatch

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._dispatch())

    def deliver(self, changes: List[LiveQueryChange]):
        """Queue a delta for the listener; an overflowing queue collapses to one ``all``"""
        if self.closed:
            return
        info = LiveQueryChangeInfo(self.items, changes)
        try:
            self.queue.put_nowait(info)
        except asyncio.QueueFull:
            dropped = 0
            while not self.queue.empty():
                self.queue.get_nowait()
                self.queue.task_done()
                dropped += 1
            self._logger.warning(f"Live query {self.subscription_id} fell behind, "
                                 f"replaced {dropped} pending deltas with the full result")
            self.queue.put_nowait(LiveQueryChangeInfo(self.items, [LiveQueryChange.all(self.items)]))

    async def _dispatch(self):
        while True:
            info = await self.queue.get()
            try:
                await self._call_listener(info)
            finally:
                self.queue.task_done()

    async def _call_listener(self, info: LiveQueryChangeInfo):
        try:
            if hasattr(self.listener, "next"):
                await maybe_await(self.listener.next(info))
            else:
                await maybe_await(self.listener(info))
            self.changes_delivered += len(info.changes)
        except Exception as e:
            self.errors += 1
            self._logger.exception(f"Live query listener {self.subscription_id} failed")
            if hasattr(self.listener, "error"):
                try:
                    await maybe_await(self.listener.error(e))
                except Exception:
                    self._logger.exception(f"Error handler of live query {self.subscription_id} failed")

    async def close(self):
        """Stop dispatching and tell the listener the query completed"""
        if self._task is None and self.closed:
            return
        self.closed = True
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if hasattr(self.listener, "complete"):
            try:
                await maybe_await(self.listener.complete())
            except Exception:
                self._logger.exception(f"Complete handler of live query {self.subscription_id} failed")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "entity_key": self.entity_key,
            "fingerprint": self.fingerprint,
            "created_at": self.created_at,
            "items": len(self.entries),
            "changes_delivered": self.changes_delivered,
            "pending": self.queue.qsize(),
            "errors": self.errors,
        }


class Unsubscribe:
    """Returned by ``subscribe``; calling it ends the subscription.

    The call removes the subscription at once and returns the task that
    completes the listener, which callers may await.
    """

    def __init__(self, engine: 'LiveQueryEngine', subscription: LiveQuerySubscription):
        self._engine = engine
        self.subscription = subscription

    def __call__(self) -> Optional[asyncio.Task]:
        return self._engine._unsubscribe(self.subscription)


class LiveQueryEngine:
    """Registry of live queries fed by a channel of change events"""

    def __init__(self, config: Optional[LiveQueryConfig] = None):
        self.config = config or LiveQueryConfig()
        self._subscriptions: Dict[str, LiveQuerySubscription] = {}
        self._by_entity: Dict[str, Set[str]] = {}
        self._by_fingerprint: Dict[str, Set[str]] = {}
        self._channel: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._closing: Set[asyncio.Task] = set()
        self._running = False
        self.events_processed = 0
        self.processing_errors = 0
        self._logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    # Lifecycle

    def start(self):
        """Start the channel worker (done implicitly by ``subscribe``)"""
        if self._running:
            return
        self._channel = asyncio.Queue(maxsize=self.config.queue_size)
        self._worker = asyncio.create_task(self._run())
        self._running = True
        self._logger.debug("Live query engine started")

    async def stop(self):
        """Stop the worker and complete every subscription"""
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._running = False
        self._channel = None

        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        self._by_entity.clear()
        self._by_fingerprint.clear()
        for subscription in subscriptions:
            await subscription.close()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        self._logger.debug(f"Live query engine stopped ({len(subscriptions)} subscriptions closed)")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @staticmethod
    def fingerprint(entity_key: str, node: FilterNode, order: Sequence[SortSegment],
                    limit: Optional[int] = None) -> str:
        """Identical for subscriptions running the same query"""
        order_text = ",".join(segment.canonical() for segment in order)
        return f"{entity_key}|{node.canonical()}|{order_text}|{limit}"

    def subscriptions_for(self, fingerprint: str) -> List[LiveQuerySubscription]:
        return [self._subscriptions[s] for s in self._by_fingerprint.get(fingerprint, ())
                if s in self._subscriptions]

    # Subscribe

    async def subscribe(self, repository, options, listener: Listener) -> Unsubscribe:
        """Register a live query, run it and send the result as an ``all`` change"""
        if not self.config.enabled:
            raise DataLayerError("Live queries are disabled", entity_key=repository.metadata.key)
        repository._check_read()
        node = repository._where_node(options.where)
        order = translate_order(repository.metadata, options.order_by)

        subscription = LiveQuerySubscription(self, repository, options, node, order, listener,
                                             self.config.queue_size)
        # Registered before the first query; events seen meanwhile force a re-run
        subscription.pending = True
        self.start()
        self._subscriptions[subscription.subscription_id] = subscription
        self._by_entity.setdefault(subscription.entity_key, set()).add(subscription.subscription_id)
        self._by_fingerprint.setdefault(subscription.fingerprint, set()).add(subscription.subscription_id)
        try:
            items = await repository._find_node(node, order, options.limit, 0, options.include)
            while subscription.missed:
                subscription.missed = False
                self._logger.debug(f"Live query {subscription.subscription_id} changed during its "
                                   f"baseline query, re-running it")
                items = await repository._find_node(node, order, options.limit, 0, options.include)
        except BaseException:
            self._unsubscribe(subscription)
            raise
        subscription.entries = [self._entry(repository, item) for item in items]
        subscription.pending = False
        if subscription.closed:
            # Stopped while the baseline query ran
            return Unsubscribe(self, subscription)
        subscription.start()
        subscription.deliver([LiveQueryChange.all(subscription.items)])

        self._logger.debug(f"Live query {subscription.subscription_id} on '{subscription.entity_key}' "
                           f"subscribed with {len(items)} rows")
        return Unsubscribe(self, subscription)

    def _unsubscribe(self, subscription: LiveQuerySubscription) -> Optional[asyncio.Task]:
        sid = subscription.subscription_id
        if self._subscriptions.pop(sid, None) is None:
            return None
        for index in (self._by_entity.get(subscription.entity_key),
                      self._by_fingerprint.get(subscription.fingerprint)):
            if index is not None:
                index.discard(sid)
        subscription.closed = True
        task = asyncio.ensure_future(subscription.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        self._logger.debug(f"Live query {sid} unsubscribed")
        return task

    # Publish

    async def publish(self, event: ChangeEvent):
        """Queue a change event for processing"""
        if not self._running or not self._by_entity.get(event.entity_key):
            return
        await self._channel.put(event)

    def publish_nowait(self, event: ChangeEvent) -> bool:
        """Queue a change event without waiting; False when the channel is full"""
        if not self._running or not self._by_entity.get(event.entity_key):
            return False
        try:
            self._channel.put_nowait(event)
        except asyncio.QueueFull:
            self._logger.warning(f"Live query channel full, dropped {event.operation.value} "
                                 f"event for '{event.entity_key}'")
            return False
        return True

    async def flush(self):
        """Wait until every queued event is processed and every listener has been called"""
        if self._channel is not None:
            await self._channel.join()
        for subscription in list(self._subscriptions.values()):
            await subscription.queue.join()

    # Processing

    async def _run(self):
        while True:
            event = await self._channel.get()
            try:
                await self.process_event(event)
            finally:
                self._channel.task_done()

    async def process_event(self, event: ChangeEvent):
        """Compute and queue the deltas of one event for every subscription on its entity"""
        ids = list(self._by_entity.get(event.entity_key, ()))
        subscriptions = [self._subscriptions[s] for s in ids if s in self._subscriptions]
        if not subscriptions:
            return
        results = await asyncio.gather(
            *[self._process(subscription, event) for subscription in subscriptions],
            return_exceptions=True,
        )
        self.events_processed += 1
        for subscription, result in zip(subscriptions, results):
            if isinstance(result, Exception):
                self.processing_errors += 1
                self._logger.error(f"Live query {subscription.subscription_id} failed to process "
                                   f"{event.operation.value} on '{event.entity_key}': {result}")

    async def _process(self, subscription: LiveQuerySubscription, event: ChangeEvent):
        if subscription.closed:
            return
        if subscription.pending:
            subscription.missed = True
            return
        changes = await self._changes_for(subscription, event)
        if changes and not subscription.closed:
            subscription.deliver(changes)

    async def _changes_for(self, subscription: LiveQuerySubscription,
                           event: ChangeEvent) -> List[LiveQueryChange]:
        meta = subscription.repository.metadata
        if event.operation == ChangeOperation.BULK:
            return await self._requery(subscription)

        key = self._event_key(meta, event)
        old_key = self._previous_key(meta, event) or key
        present = subscription.position(old_key)

        if event.operation == ChangeOperation.DELETE:
            if present < 0:
                return []
            if subscription.limit is not None:
                return await self._requery(subscription)
            entry = subscription.entries.pop(present)
            return [LiveQueryChange.remove(subscription.item_id(entry.item))]

        if event.row is None:
            return await self._requery(subscription)
        row = self._persisted(meta, event.row)
        matching = matches(subscription.node, row)

        if subscription.limit is not None:
            if present >= 0 or matching:
                return await self._requery(subscription)
            return []

        if present >= 0 and matching:
            entry = subscription.entries[present]
            if entry.row == row:
                return []
            if self.config.requery_on_window_change and self._order_changed(subscription, entry.row, row):
                return await self._requery(subscription)
            item = await self._hydrate(subscription, row)
            old_id = subscription.item_id(entry.item)
            subscription.entries[present] = _Entry(key, row, item)
            return [LiveQueryChange.replace(subscription.item_id(item), item, old_id=old_id)]

        if present >= 0:
            entry = subscription.entries.pop(present)
            return [LiveQueryChange.remove(subscription.item_id(entry.item))]

        if matching:
            item = await self._hydrate(subscription, row)
            index = self._insert_position(subscription, row)
            subscription.entries.insert(index, _Entry(key, row, item))
            return [LiveQueryChange.add(subscription.item_id(item), item, index)]
        return []

    async def _requery(self, subscription: LiveQuerySubscription) -> List[LiveQueryChange]:
        """Re-run the query and diff the new result against the current one"""
        repository = subscription.repository
        items = await repository._find_node(subscription.node, subscription.order,
                                            subscription.limit, 0, subscription.include)
        new_entries = [self._entry(repository, item) for item in items]
        old_entries = subscription.entries
        subscription.entries = new_entries

        new_keys = {entry.key for entry in new_entries}
        old_by_key = {entry.key: entry for entry in old_entries}
        retained_old = [entry.key for entry in old_entries if entry.key in new_keys]
        retained_new = [entry.key for entry in new_entries if entry.key in old_by_key]
        if retained_old != retained_new:
            return [LiveQueryChange.all(subscription.items)]

        changes = [LiveQueryChange.remove(subscription.item_id(entry.item))
                   for entry in old_entries if entry.key not in new_keys]
        for entry in new_entries:
            previous = old_by_key.get(entry.key)
            if previous is None:
                continue
            if previous.row != entry.row:
                changes.append(LiveQueryChange.replace(
                    subscription.item_id(entry.item), entry.item,
                    old_id=subscription.item_id(previous.item)))
        for index, entry in enumerate(new_entries):
            if entry.key not in old_by_key:
                changes.append(LiveQueryChange.add(subscription.item_id(entry.item), entry.item, index))
        return changes

    # Helpers

    @staticmethod
    def _entry(repository, item: Any) -> _Entry:
        row = repository.get_entity_ref(item)._row()
        key = tuple(row.get(f.key) for f in repository.metadata.id_metadata.fields)
        return _Entry(key, row, item)

    @staticmethod
    def _persisted(meta, row: Dict[str, Any]) -> Dict[str, Any]:
        """The row restricted to the entity's persisted fields"""
        return {f.key: row.get(f.key) for f in meta.fields.persisted()}

    @staticmethod
    def _event_key(meta, event: ChangeEvent) -> RowKey:
        id_fields = meta.id_metadata.fields
        if event.row is not None:
            return tuple(event.row.get(f.key) for f in id_fields)
        ids = meta.id_metadata.id_dict(event.id)
        return tuple(f.value_to_db(ids[f.key]) for f in id_fields)

    @staticmethod
    def _previous_key(meta, event: ChangeEvent) -> Optional[RowKey]:
        if event.previous_id is None:
            return None
        ids = meta.id_metadata.id_dict(event.previous_id)
        return tuple(f.value_to_db(ids[f.key]) for f in meta.id_metadata.fields)

    @staticmethod
    def _order_changed(subscription: LiveQuerySubscription, old: Dict[str, Any],
                       new: Dict[str, Any]) -> bool:
        return any(old.get(s.field) != new.get(s.field) for s in subscription.order)

    @staticmethod
    def _insert_position(subscription: LiveQuerySubscription, row: Dict[str, Any]) -> int:
        if not subscription.order:
            return len(subscription.entries)
        compare = row_comparator(subscription.order)
        for index, entry in enumerate(subscription.entries):
            if compare(row, entry.row) < 0:
                return index
        return len(subscription.entries)

    @staticmethod
    async def _hydrate(subscription: LiveQuerySubscription, row: Dict[str, Any]) -> Any:
        items = await subscription.repository._hydrate([row], subscription.include)
        return items[0]

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "subscriptions": self.subscription_count,
            "queries": len([f for f, ids in self._by_fingerprint.items() if ids]),
            "events_processed": self.events_processed,
            "processing_errors": self.processing_errors,
            "pending_events": self._channel.qsize() if self._channel else 0,
        }


__all__ = ["LiveQueryEngine", "LiveQuerySubscription", "Unsubscribe", "Listener"]
