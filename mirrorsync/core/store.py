"""
Implementation of the local state store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from logging import Logger
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Iterator, Mapping

from .cache import ReadCache
from .config import StoreConfig
from .exceptions import FetchError, StoreDestroyedError
from .fetch import FetchFunc, FetchHandler
from .item import IdentityCache, Item
from .queue import ChangeQueue, SyncFunc
from .types import (
    Change,
    ChangeType,
    FetchResult,
    FetchStatus,
    IdMapping,
    ItemStatus,
    QueueState,
    SyncResult,
    SyncState,
)
from .utils import (
    apply_mutator,
    generate_temp_id,
    get_record_id,
    set_record_id,
)

if TYPE_CHECKING:
    from .registry import StoreRegistry

__all__ = [
    "Store",
    "StoreState",
]


@dataclass(frozen=True)
class StoreState:
    """
    Point-in-time snapshot of a {obj}`Store`, safe to read without
    synchronization. Replaced as a whole on every change.
    """

    context: Any = None
    items: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )
    """Server baseline overlaid with pending local changes"""

    sync_state: SyncState = "idle"
    loading: bool = False
    syncing: bool = False
    sync_queue: QueueState = field(default_factory=QueueState)
    fetch_status: FetchStatus = "idle"
    fetch_error: str | None = None
    server_state: Any = None
    selected_id: str | None = None


class Store:
    """
    Client-side mirror of server-owned records.

    Mutations are applied locally right away and committed to the server in
    the background by a {obj}`ChangeQueue`. Outcomes are observed via
    {obj}`Store.get_item_status` and {obj}`Store.subscribe` rather than
    exceptions.

    Must be used from within a running event loop. Can be used as an async
    context manager, in which case records are fetched upon entering and
    pending changes are committed upon exiting.
    """

    _id: str
    """
    Unique id of this store, also used to key cached fetch results.
    """

    _config: StoreConfig

    _get_id: Callable[[Any], str | None]
    _set_id: Callable[[Any, str], Any]

    _state: StoreState

    _queue: ChangeQueue
    """
    Queue of pending changes.
    """

    _fetcher: FetchHandler | None
    """
    Fetch handler, or `None` if the store has no fetch function.
    """

    _identity: IdentityCache

    _baseline_version: int = 0
    """
    Version of the fetch state whose records were last applied.
    """

    _subscribers: set[Callable[[], None]]
    _remap_subscribers: set[Callable[[list[IdMapping]], None]]

    _batch_depth: int = 0

    _tasks: set[asyncio.Task]
    """
    Background fetches started by this store.
    """

    _registry: StoreRegistry | None

    _destroyed: bool = False

    _logger: Logger

    def __init__(
        self,
        store_id: str,
        on_fetch: FetchFunc | None = None,
        on_sync: SyncFunc | None = None,
        *,
        context: Any = None,
        config: StoreConfig | None = None,
        get_id: Callable[[Any], str | None] | None = None,
        set_id: Callable[[Any, str], Any] | None = None,
        initial_items: list[Any] | None = None,
        registry: StoreRegistry | None = None,
        logger: Logger | None = None,
    ):
        """
        :param store_id: Unique id of this store
        :param on_fetch: Function returning records for a context, or `None` for a purely local store
        :param on_sync: Function committing a batch of changes, or `None` to accept all changes locally
        :param context: Initial query context passed to `on_fetch`
        :param config: Tunables, or `None` to use defaults
        :param get_id: Get a record's id; defaults to `record["id"]` or `record.id`
        :param set_id: Return a copy of a record with a new id
        :param initial_items: Records to use as baseline before the first fetch
        :param registry: Registry in which to register this store
        :param logger: Logger to use, or `None` to use default logger
        """
        self._id = store_id
        self._config = config or StoreConfig()
        self._get_id = get_id or get_record_id
        self._set_id = set_id or set_record_id
        self._logger = logger or logging.getLogger()

        self._subscribers = set()
        self._remap_subscribers = set()
        self._tasks = set()
        self._identity = IdentityCache(self)

        self._queue = ChangeQueue(
            on_sync or _sync_locally,
            debounce=self._config.sync_debounce,
            max_retries=self._config.sync_retries,
            batch_size=self._config.batch_size,
            collapse_update_delete=self._config.collapse_update_delete,
            on_id_remap=self._handle_id_remap,
            set_id=self._set_id,
            logger=self._logger,
        )
        self._queue.subscribe(self._on_queue_change)

        if on_fetch is not None:
            self._fetcher = FetchHandler(
                store_id,
                on_fetch,
                cache=ReadCache(
                    self._config.cache_capacity, self._config.cache_ttl
                ),
                retries=self._config.fetch_retries,
                logger=self._logger,
            )
            self._fetcher.subscribe(self._on_fetch_change)
        else:
            self._fetcher = None

        self._state = StoreState(
            context=context,
            items=MappingProxyType(
                {self._get_id(r): r for r in initial_items or []}
            ),
        )

        self._registry = registry
        if registry is not None:
            registry.register(self)

    def __str__(self):
        return f"Store(id={self._id}, items={len(self._state.items)}, pending={self._queue.state.pending_count})"

    def __repr__(self):
        return str(self)

    async def __aenter__(self):
        self._logger.debug(f"Entering context: {self}")
        await self.fetch()
        return self

    async def __aexit__(self, exc_type, exc_val, traceback):
        if exc_type:
            self._logger.error(f"Exiting context with error: {self}")
            self.destroy()
            return

        self._logger.debug(f"Exiting context: {self}")

        # commit pending changes
        await self.flush()
        self.destroy()

    @property
    def id(self) -> str:
        return self._id

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def state(self) -> StoreState:
        """
        Current snapshot.
        """
        return self._state

    def get_state(self) -> StoreState:
        return self._state

    @property
    def items(self) -> Mapping[str, Any]:
        return self._state.items

    @property
    def context(self) -> Any:
        return self._state.context

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def syncing(self) -> bool:
        return self._state.syncing

    @property
    def queue(self) -> ChangeQueue:
        return self._queue

    @property
    def selected_id(self) -> str | None:
        return self._state.selected_id

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register callback invoked upon every state change. Returns a function
        which unsubscribes it.
        """
        self._subscribers.add(callback)
        return lambda: self._subscribers.discard(callback)

    def subscribe_id_remap(
        self, callback: Callable[[list[IdMapping]], None]
    ) -> Callable[[], None]:
        """
        Register callback invoked with the id remaps of each committed batch.
        """
        self._remap_subscribers.add(callback)
        return lambda: self._remap_subscribers.discard(callback)

    def get(self, record_id: str) -> Any | None:
        return self._state.items.get(record_id)

    def get_id(self, record: Any) -> str | None:
        return self._get_id(record)

    def create(self, record: Any) -> str:
        """
        Add a record locally and queue its creation. If the record has no id,
        a temporary one is assigned.

        :returns: Id of the record
        """
        self._check_alive()

        record_id = self._get_id(record)
        if record_id is None:
            record_id = generate_temp_id()
            record = self._set_id(record, record_id)

        with self.batch():
            items = dict(self._state.items)
            items[record_id] = record
            self._set_state(items=items)

            self._invalidate_cache()
            self._queue.enqueue(
                Change(id=record_id, type=ChangeType.CREATE, data=record)
            )

        self._logger.debug(f"Created record: store={self._id}, id={record_id}")

        if self._config.refetch_on_mutation:
            self._refetch()

        return record_id

    def update(self, record_id: str, mutator: Callable[[Any], Any]):
        """
        Apply mutator to a copy of the record and queue the update. No-op if
        the record doesn't exist.

        :param mutator: Patches the copy in place, or returns a new value
        """
        self._check_alive()

        current = self._state.items.get(record_id)
        if current is None:
            return

        record = apply_mutator(current, mutator)

        with self.batch():
            items = dict(self._state.items)
            items[record_id] = record
            self._set_state(items=items)

            self._invalidate_cache()
            self._queue.enqueue(
                Change(id=record_id, type=ChangeType.UPDATE, data=record)
            )

    def remove(self, record_id: str):
        """
        Remove the record locally and queue its deletion. No-op if the record
        doesn't exist.
        """
        self._check_alive()

        current = self._state.items.get(record_id)
        if current is None:
            return

        with self.batch():
            items = dict(self._state.items)
            del items[record_id]

            selected_id = self._state.selected_id
            if selected_id == record_id:
                selected_id = None

            self._set_state(items=items, selected_id=selected_id)
            self._identity.prune(items)

            self._invalidate_cache()
            self._queue.enqueue(
                Change(id=record_id, type=ChangeType.DELETE, data=current)
            )

        self._logger.debug(f"Removed record: store={self._id}, id={record_id}")

        if self._config.refetch_on_mutation:
            self._refetch()

    def select(self, record_id: str):
        if self._state.selected_id == record_id:
            return

        self._set_state(selected_id=record_id)
        self._notify()

    def deselect(self):
        if self._state.selected_id is None:
            return

        self._set_state(selected_id=None)
        self._notify()

    def get_item(self, record_id: str) -> Item:
        """
        Get a handle for a record. The same handle is returned for as long as
        the record's value is unchanged.
        """
        data = self._state.items.get(record_id)
        if data is None:
            # placeholder for a record which doesn't exist (yet)
            return Item(self, record_id)

        return self._identity.get(record_id, data)

    def get_item_status(self, record_id: str) -> ItemStatus | None:
        """
        Get sync status of a record as derived from the queue, or `None` if
        it's fully synced.
        """
        queue_state = self._queue.state
        error = queue_state.errors.get(record_id)
        retries = error.retry_count if error else 0

        in_flight = queue_state.in_flight.get(record_id)
        if in_flight:
            return ItemStatus(
                type=in_flight[-1].type, status="syncing", retries=retries
            )

        pending = queue_state.pending.get(record_id)
        if pending:
            return ItemStatus(
                type=pending[-1].type,
                status="error" if error else "pending",
                retries=retries,
                error=error.message if error else None,
            )

        if error is not None:
            return ItemStatus(
                type=error.operations[-1].type
                if error.operations
                else ChangeType.UPDATE,
                status="error",
                retries=retries,
                error=error.message,
            )

        return None

    @contextmanager
    def batch(self) -> Iterator[Store]:
        """
        Suppress notifications within the block and notify subscribers once
        upon exit. May be nested.
        """
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            self._notify()

    def set_context(self, patch: Any) -> asyncio.Task | None:
        """
        Replace the query context and fetch records for it.

        :param patch: New context, or a function applied to a copy of the current one
        :returns: Task of the started fetch, or `None` if context is unchanged
        """
        self._check_alive()

        old_context = self._state.context
        new_context = (
            apply_mutator(old_context, patch) if callable(patch) else patch
        )

        if new_context == old_context:
            return None

        self._set_state(context=new_context)
        self._notify()

        return self._spawn(self.fetch())

    async def fetch(self) -> FetchResult | None:
        """
        Fetch records for the current context, from the read cache if
        possible. Failures are recorded in `fetch_status` and `fetch_error`
        rather than raised.
        """
        self._check_alive()

        if self._fetcher is None:
            return None

        try:
            return await self._fetcher.fetch(self._state.context)
        except FetchError:
            return None

    async def refresh(self) -> FetchResult | None:
        """
        Fetch records for the current context, bypassing the read cache.
        """
        if self._fetcher is not None:
            self._fetcher.invalidate_cache()
        return await self.fetch()

    def pause_sync(self):
        self._queue.pause()

    def resume_sync(self):
        """
        Resume committing changes and refetch.
        """
        self._queue.resume()
        if self._fetcher is not None:
            self._refetch()

    def retry(self, record_id: str | None = None):
        """
        Retry failed changes of one record, or of all records if no id
        provided.
        """
        if record_id is None:
            self._queue.retry_all()
        else:
            self._queue.retry(record_id)

    async def flush(self):
        """
        Commit pending changes now and wait for the outcome.
        """
        if self._destroyed:
            return
        await self._queue.drain()

    def destroy(self):
        """
        Abort in-progress operations, discard pending changes and deregister
        from registry.
        """
        if self._destroyed:
            return

        self._destroyed = True

        self._queue.destroy()
        if self._fetcher is not None:
            self._fetcher.destroy()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        self._subscribers.clear()
        self._remap_subscribers.clear()
        self._identity.clear()

        if self._registry is not None:
            self._registry.discard(self)

        self._logger.debug(f"Destroyed store '{self._id}'")

    def get_pending_summary(self) -> str:
        """
        Get a summary of records with pending, in-flight or failed changes,
        sorted by id. Contains rich markup.
        """
        queue_state = self._queue.state
        lines: list[str] = []
        indent = " " * 4

        record_ids = (
            set(queue_state.pending)
            | set(queue_state.in_flight)
            | set(queue_state.errors)
        )

        for record_id in sorted(record_ids):
            status = self.get_item_status(record_id)
            assert status is not None

            lines.append(f"{status.type} {record_id} ({status.status})")

            if status.error:
                lines.append(
                    f"{indent}retries={status.retries}, error={status.error}"
                )

        return "\n".join(lines)

    def _check_alive(self):
        if self._destroyed:
            raise StoreDestroyedError(self._id)

    def _set_state(self, **changes):
        if "items" in changes:
            changes["items"] = MappingProxyType(dict(changes["items"]))
        self._state = replace(self._state, **changes)

    def _notify(self):
        if self._batch_depth:
            return

        for callback in list(self._subscribers):
            callback()

    def _invalidate_cache(self):
        if self._fetcher is not None:
            self._fetcher.invalidate_cache()

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _refetch(self):
        self._spawn(self.refresh())

    def _on_queue_change(self):
        queue_state = self._queue.state

        self._set_state(
            sync_queue=queue_state,
            syncing=queue_state.syncing,
            sync_state=_compute_sync_state(
                self._state.fetch_status, queue_state.syncing
            ),
        )
        self._notify()

    def _on_fetch_change(self):
        assert self._fetcher is not None
        fetch_state = self._fetcher.state

        changes: dict[str, Any] = dict(
            fetch_status=fetch_state.status,
            fetch_error=fetch_state.error,
            loading=fetch_state.status == "fetching",
            sync_state=_compute_sync_state(
                fetch_state.status, self._state.syncing
            ),
        )

        # only a new baseline replaces items; status changes and failures
        # keep the current ones
        if (
            fetch_state.status == "idle"
            and fetch_state.version != self._baseline_version
        ):
            self._baseline_version = fetch_state.version
            items = self._overlay(fetch_state.items)

            changes["items"] = items
            changes["server_state"] = fetch_state.server_state

            if self._state.selected_id not in items:
                changes["selected_id"] = None

            self._identity.prune(items)

        self._set_state(**changes)
        self._notify()

    def _overlay(self, baseline: tuple[Any, ...]) -> dict[str, Any]:
        """
        Apply local changes not yet confirmed by the server on top of fetched
        records. Later sources take precedence: parked failures, then
        in-flight, then pending.
        """
        items: dict[str, Any] = {self._get_id(r): r for r in baseline}
        queue_state = self._queue.state

        sources: list[Mapping[str, tuple[Change, ...]]] = [
            {
                record_id: error.operations
                for record_id, error in queue_state.errors.items()
            },
            queue_state.in_flight,
            queue_state.pending,
        ]

        for source in sources:
            for record_id, operations in source.items():
                if not operations:
                    continue

                last = operations[-1]
                if last.type is ChangeType.DELETE:
                    items.pop(record_id, None)
                else:
                    items[record_id] = last.data

        return items

    def _handle_id_remap(self, mappings: list[IdMapping]):
        """
        Rewrite temporary ids. Subscribers are notified by the queue state
        change which follows.
        """
        items = dict(self._state.items)
        selected_id = self._state.selected_id

        for mapping in mappings:
            if mapping.temp_id not in items:
                continue

            record = self._set_id(items[mapping.temp_id], mapping.new_id)

            # replace key in place to keep ordering
            items = {
                (mapping.new_id if k == mapping.temp_id else k): (
                    record if k == mapping.temp_id else v
                )
                for k, v in items.items()
            }
            self._identity.remap(mapping.temp_id, mapping.new_id, record)

            if selected_id == mapping.temp_id:
                selected_id = mapping.new_id

        self._set_state(items=items, selected_id=selected_id)

        for callback in list(self._remap_subscribers):
            callback(mappings)


def _compute_sync_state(fetch_status: FetchStatus, syncing: bool) -> SyncState:
    if fetch_status == "fetching":
        return "fetching"
    if syncing:
        return "syncing"
    return "idle"


def _sync_locally(changes: list[Change], token: asyncio.Event) -> list[SyncResult]:
    """
    Sync function of a store without a server: every change succeeds.
    """
    return [SyncResult(id=c.id, status="success") for c in changes]
