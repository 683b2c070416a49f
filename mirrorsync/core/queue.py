"""
Implementation of the change queue: per-record pending operations which are
coalesced, debounced and committed in batches via a sync function.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import replace
from logging import Logger
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable

from .types import ChangeType, Change, IdMapping, QueueState, SyncError, SyncResult
from .utils import maybe_await, set_record_id

__all__ = [
    "ChangeQueue",
    "SyncFunc",
    "coalesce",
]

SyncFunc = Callable[
    [list[Change], asyncio.Event],
    Awaitable[Iterable[SyncResult | Mapping[str, Any]]]
    | Iterable[SyncResult | Mapping[str, Any]],
]
"""
Collaborator committing a batch of changes; receives a cancellation token
which is set if the batch is aborted.
"""

RemapFunc = Callable[[list[IdMapping]], None]


def coalesce(
    operations: tuple[Change, ...],
    change: Change,
    *,
    collapse_update_delete: bool = True,
) -> tuple[Change, ...]:
    """
    Merge a new change into a record's pending operations, considering only
    the last one.

    - create + delete: both dropped
    - create + update: create carrying the new data
    - update + update: update carrying the new data
    - update + delete: delete, or both if `collapse_update_delete` is `False`
    - anything else: replaced by the new change
    """
    if not operations:
        return (change,)

    head, last = operations[:-1], operations[-1]

    match (last.type, change.type):
        case (ChangeType.CREATE, ChangeType.DELETE):
            return head
        case (ChangeType.CREATE, ChangeType.UPDATE):
            return head + (last.model_copy(update={"data": change.data}),)
        case (ChangeType.UPDATE, ChangeType.DELETE) if not collapse_update_delete:
            return head + (last, change)
        case _:
            return head + (change,)


class ChangeQueue:
    """
    Log of pending operations per record. Changes are coalesced as they're
    enqueued and committed by the sync function after a debounce interval.

    Failed records are retried automatically until `max_retries` attempts
    were made, then parked until {obj}`ChangeQueue.retry` is invoked.

    Must be used from within a running event loop.
    """

    _on_sync: SyncFunc
    """
    Sync function provided by user.
    """

    _on_id_remap: RemapFunc | None
    """
    Invoked with all id remaps of a batch once it's processed.
    """

    _debounce: float
    _max_retries: int
    _batch_size: int | None
    _collapse_update_delete: bool

    _set_id: Callable[[Any, str], Any]
    """
    Used to rewrite the data of pending changes upon id remap.
    """

    _state: QueueState
    _subscribers: set[Callable[[], None]]

    _timer: asyncio.TimerHandle | None = None
    """
    Debounce timer, if a flush is scheduled.
    """

    _flush_task: asyncio.Task | None = None
    """
    Task of the most recently started flush.
    """

    _token: asyncio.Event | None = None
    """
    Cancellation token of the batch in flight.
    """

    _destroyed: bool = False

    _logger: Logger

    def __init__(
        self,
        on_sync: SyncFunc,
        *,
        debounce: float = 0.3,
        max_retries: int = 3,
        batch_size: int | None = None,
        collapse_update_delete: bool = True,
        on_id_remap: RemapFunc | None = None,
        set_id: Callable[[Any, str], Any] | None = None,
        logger: Logger | None = None,
    ):
        """
        :param on_sync: Function committing a batch of changes
        :param debounce: Seconds to wait after the last enqueue before flushing
        :param max_retries: Number of attempts before a failure is parked
        :param batch_size: Max number of records per batch, or `None` for no limit
        :param collapse_update_delete: Coalesce update followed by delete into the delete alone
        :param on_id_remap: Invoked with id remaps after each batch, before its results are published
        :param set_id: Replace the id of a record, used upon id remap
        :param logger: Logger to use, or `None` to use default logger
        """
        self._on_sync = on_sync
        self._on_id_remap = on_id_remap
        self._debounce = debounce
        self._max_retries = max_retries
        self._batch_size = batch_size
        self._collapse_update_delete = collapse_update_delete
        self._set_id = set_id or set_record_id
        self._logger = logger or logging.getLogger()

        self._state = QueueState()
        self._subscribers = set()

    def __str__(self):
        state = self._state
        return f"ChangeQueue: pending={list(state.pending)}, in_flight={list(state.in_flight)}, errors={list(state.errors)}"

    @property
    def state(self) -> QueueState:
        """
        Current snapshot; never mutated after it's published.
        """
        return self._state

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register callback invoked upon every state change. Returns a function
        which unsubscribes it.
        """
        self._subscribers.add(callback)
        return lambda: self._subscribers.discard(callback)

    def enqueue(self, change: Change):
        """
        Add a change, coalescing it with the last pending operation for the
        same record, and schedule a flush.
        """
        state = self._state

        pending = dict(state.pending)
        errors = dict(state.errors)

        operations = pending.get(change.id, ())

        # a new mutation supersedes a stale failure; parked operations are
        # folded back in so e.g. a failed create isn't lost
        error = errors.pop(change.id, None)
        if (
            error is not None
            and change.id not in state.pending
            and change.id not in state.in_flight
        ):
            operations = error.operations

        operations = coalesce(
            operations,
            change,
            collapse_update_delete=self._collapse_update_delete,
        )

        if operations:
            pending[change.id] = operations
        else:
            pending.pop(change.id, None)
            self._logger.debug(f"Change cancelled out: id={change.id}")

        self._update_state(pending=pending, errors=errors)

        self._logger.debug(
            f"Enqueued {change.type.value}: id={change.id}, pending={len(pending)}"
        )

        self._schedule_flush()

    def pause(self):
        """
        Block flushes until resumed. A batch already in flight is allowed to
        finish.
        """
        self._update_state(paused=True)
        self._clear_timer()

    def resume(self):
        self._update_state(paused=False)
        if self._state.pending:
            self._schedule_flush()

    def retry(self, record_id: str):
        """
        Re-queue parked operations for a record and clear its error.
        """
        if record_id not in self._state.errors:
            return

        self._retry_ids([record_id])

    def retry_all(self):
        """
        Re-queue parked operations for all failed records.
        """
        if not self._state.errors:
            return

        self._retry_ids(list(self._state.errors))

    def reset_retries(self, record_id: str):
        """
        Reset the retry count of a failed record.
        """
        error = self._state.errors.get(record_id)
        if error is None:
            return

        errors = dict(self._state.errors)
        errors[record_id] = error.model_copy(update={"retry_count": 0})
        self._update_state(errors=errors)

    async def flush(self):
        """
        Commit pending changes now rather than waiting for the debounce
        interval. Waits for a batch already in flight first.
        """
        self._clear_timer()

        if self._flush_task is not None and not self._flush_task.done():
            await asyncio.shield(self._flush_task)
            self._clear_timer()

        if self._destroyed:
            return

        self._flush_task = asyncio.get_running_loop().create_task(self._flush())
        await self._flush_task

    async def drain(self):
        """
        Flush until nothing is pending, the queue is paused, or the
        remaining records are parked.
        """
        while (
            self._state.pending
            and not self._state.paused
            and not self._destroyed
        ):
            await self.flush()

    def destroy(self):
        """
        Abort the batch in flight and discard all state.
        """
        self._destroyed = True
        self._clear_timer()

        if self._token is not None:
            self._token.set()
            self._token = None

        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None

        self._subscribers.clear()
        self._state = QueueState()

    def _retry_ids(self, record_ids: list[str]):
        state = self._state
        pending = dict(state.pending)
        errors = dict(state.errors)

        for record_id in record_ids:
            error = errors.pop(record_id)

            # records already scheduled for automatic retry keep their ops
            if record_id not in pending and record_id not in state.in_flight:
                pending[record_id] = error.operations

        self._logger.debug(f"Retrying {len(record_ids)} records")

        self._update_state(pending=pending, errors=errors)
        self._schedule_flush()

    def _update_state(self, **changes):
        for key in ("pending", "in_flight", "errors"):
            if key in changes:
                changes[key] = MappingProxyType(dict(changes[key]))

        self._state = replace(self._state, **changes)

        for callback in list(self._subscribers):
            callback()

    def _schedule_flush(self):
        state = self._state
        if self._destroyed or state.paused or state.syncing:
            return

        self._clear_timer()
        self._timer = asyncio.get_running_loop().call_later(
            self._debounce, self._start_flush
        )

    def _clear_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_flush(self):
        self._timer = None
        self._flush_task = asyncio.get_running_loop().create_task(self._flush())

    async def _flush(self):
        state = self._state
        if state.paused or state.syncing or not state.pending:
            return

        entries = list(state.pending.items())
        if self._batch_size is not None:
            selected = entries[: self._batch_size]
            remaining = entries[self._batch_size :]
        else:
            selected, remaining = entries, []

        # move records to in-flight in a single state replacement so a
        # concurrent enqueue lands in the next batch
        self._update_state(
            pending=dict(remaining), in_flight=dict(selected), syncing=True
        )

        changes = [change for _, operations in selected for change in operations]

        token = asyncio.Event()
        self._token = token

        self._logger.debug(
            f"Flushing {len(changes)} changes for {len(selected)} records, {len(remaining)} remaining"
        )

        try:
            results = await maybe_await(self._on_sync, changes, token)
        except Exception as e:
            self._handle_error(e, aborted=token.is_set())
        else:
            if token.is_set():
                self._handle_error(None, aborted=True)
            else:
                self._process_results(results)
        finally:
            if self._token is token:
                self._token = None

        if self._destroyed:
            return

        if self._state.pending and not self._state.paused:
            self._schedule_flush()

    def _process_results(
        self, results: Iterable[SyncResult | Mapping[str, Any]] | None
    ):
        state = self._state
        pending = dict(state.pending)
        errors = dict(state.errors)
        requeued: dict[str, tuple[Change, ...]] = {}
        mappings: list[IdMapping] = []

        grouped = _group_results(results)

        for record_id, operations in state.in_flight.items():
            record_results = grouped.get(record_id, [])

            if record_results and all(r.ok for r in record_results):
                errors.pop(record_id, None)

                if any(op.type is ChangeType.CREATE for op in operations):
                    new_id = next(
                        (r.new_id for r in record_results if r.new_id), None
                    )
                    if new_id is not None and new_id != record_id:
                        mappings.append(
                            IdMapping(temp_id=record_id, new_id=new_id)
                        )
            else:
                if record_results:
                    message = next(
                        (r.error for r in record_results if not r.ok and r.error),
                        "Unknown error",
                    )
                else:
                    message = "No result returned"

                self._record_failure(
                    record_id, operations, message, errors, requeued
                )

        pending = self._merge_requeued(requeued, pending)

        for mapping in mappings:
            self._remap(mapping, pending, errors)

        # deliver remaps before publishing the new state
        if mappings:
            self._logger.debug(
                f"Remapped ids: {', '.join(f'{m.temp_id}->{m.new_id}' for m in mappings)}"
            )

            if self._on_id_remap is not None:
                self._on_id_remap(mappings)

        self._update_state(
            pending=pending, in_flight={}, errors=errors, syncing=False
        )

    def _handle_error(self, error: Exception | None, *, aborted: bool):
        state = self._state
        errors = dict(state.errors)
        requeued: dict[str, tuple[Change, ...]] = {}

        if aborted:
            # cancellation is not a failure: re-queue without penalty
            self._logger.debug(
                f"Sync aborted, re-queueing {len(state.in_flight)} records"
            )
            requeued = dict(state.in_flight)
        else:
            self._logger.warning(
                f"Sync failed for {len(state.in_flight)} records: {error}"
            )
            for record_id, operations in state.in_flight.items():
                self._record_failure(
                    record_id, operations, str(error), errors, requeued
                )

        pending = self._merge_requeued(requeued, dict(state.pending))

        self._update_state(
            pending=pending, in_flight={}, errors=errors, syncing=False
        )

    def _record_failure(
        self,
        record_id: str,
        operations: tuple[Change, ...],
        message: str,
        errors: dict[str, SyncError],
        requeued: dict[str, tuple[Change, ...]],
    ):
        previous = errors.get(record_id)
        retry_count = (previous.retry_count if previous else 0) + 1

        if retry_count < self._max_retries:
            requeued[record_id] = operations
            self._logger.debug(
                f"Sync failed: id={record_id}, attempt={retry_count}/{self._max_retries}, error={message}"
            )
        else:
            self._logger.warning(
                f"Sync failed permanently: id={record_id}, attempts={retry_count}, error={message}"
            )

        errors[record_id] = SyncError(
            message=message, retry_count=retry_count, operations=operations
        )

    def _merge_requeued(
        self,
        requeued: dict[str, tuple[Change, ...]],
        pending: dict[str, tuple[Change, ...]],
    ) -> dict[str, tuple[Change, ...]]:
        """
        Put re-queued records ahead of records enqueued while they were in
        flight, coalescing with newer operations for the same record.
        """
        merged: dict[str, tuple[Change, ...]] = {}

        for record_id, operations in requeued.items():
            for change in pending.get(record_id, ()):
                operations = coalesce(
                    operations,
                    change,
                    collapse_update_delete=self._collapse_update_delete,
                )
            if operations:
                merged[record_id] = operations

        for record_id, operations in pending.items():
            if record_id not in requeued:
                merged[record_id] = operations

        return merged

    def _remap(
        self,
        mapping: IdMapping,
        pending: dict[str, tuple[Change, ...]],
        errors: dict[str, SyncError],
    ):
        """
        Retarget operations enqueued against a temporary id.
        """

        def retarget(change: Change) -> Change:
            data = (
                self._set_id(change.data, mapping.new_id)
                if change.data is not None
                else None
            )
            return change.with_id(mapping.new_id, data)

        if mapping.temp_id in pending:
            items = list(pending.items())
            pending.clear()
            for record_id, operations in items:
                if record_id == mapping.temp_id:
                    pending[mapping.new_id] = tuple(
                        retarget(c) for c in operations
                    )
                else:
                    pending[record_id] = operations

        if mapping.temp_id in errors:
            error = errors.pop(mapping.temp_id)
            errors[mapping.new_id] = error.model_copy(
                update={
                    "operations": tuple(retarget(c) for c in error.operations)
                }
            )


def _group_results(
    results: Iterable[SyncResult | Mapping[str, Any]]
    | Mapping[str, Any]
    | None,
) -> dict[str, list[SyncResult]]:
    """
    Normalize results to a mapping of record id to its results. Accepts a
    list of results or a mapping of record id to result.
    """
    grouped: dict[str, list[SyncResult]] = {}

    if results is None:
        return grouped

    if isinstance(results, Mapping):
        results = [
            r if isinstance(r, SyncResult) else {**r, "id": record_id}
            for record_id, r in results.items()
        ]

    for raw in results:
        result = (
            raw if isinstance(raw, SyncResult) else SyncResult.model_validate(raw)
        )
        grouped.setdefault(result.id, []).append(result)

    return grouped
