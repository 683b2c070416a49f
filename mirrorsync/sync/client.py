"""
Build sync functions from per-change-type handlers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from logging import Logger
from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel, ConfigDict

from ..core.types import Change, ChangeType, SyncResult
from ..core.utils import maybe_await

__all__ = [
    "SyncClient",
    "SyncHandlerResult",
    "SyncBatchResult",
    "sync_success",
    "sync_error",
    "categorize_results",
    "ABORTED_MESSAGE",
]

ABORTED_MESSAGE = "Operation aborted"

CreateHandler = Callable[
    [Any, asyncio.Event], "Awaitable[SyncHandlerResult] | SyncHandlerResult"
]
UpdateHandler = Callable[
    [str, Any, asyncio.Event],
    "Awaitable[SyncHandlerResult] | SyncHandlerResult",
]
DeleteHandler = UpdateHandler


class SyncHandlerResult(BaseModel):
    """
    Outcome of a single handler invocation.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    error: str | None = None
    new_id: str | None = None


def sync_success(new_id: str | None = None) -> SyncHandlerResult:
    """
    Get a successful handler result.

    :param new_id: Server-assigned id of a created record
    """
    return SyncHandlerResult(success=True, new_id=new_id)


def sync_error(message: str) -> SyncHandlerResult:
    return SyncHandlerResult(success=False, error=message)


@dataclass(frozen=True)
class SyncBatchResult:
    """
    Results of a batch split by outcome.
    """

    results: list[SyncResult]
    successful: list[SyncResult]
    failed: list[SyncResult]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    @property
    def any_succeeded(self) -> bool:
        return bool(self.successful)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total": len(self.results),
            "succeeded": len(self.successful),
            "failed": len(self.failed),
        }


def categorize_results(results: Iterable[SyncResult]) -> SyncBatchResult:
    results = list(results)
    return SyncBatchResult(
        results=results,
        successful=[r for r in results if r.ok],
        failed=[r for r in results if not r.ok],
    )


class SyncClient:
    """
    Dispatches each change of a batch to the handler for its type,
    concurrently. Pass {obj}`SyncClient.on_sync` as a store's sync function.

    A change type without a handler is considered committed, so a client
    with no handlers at all works offline. Handlers may be plain functions
    or coroutine functions, returning {obj}`SyncHandlerResult` (see
    {obj}`sync_success` and {obj}`sync_error`); an exception raised by a
    handler becomes an error result for that change only.

    Handler signatures:

    - `create(data, token)`
    - `update(id, data, token)`
    - `delete(id, data, token)`
    """

    create: CreateHandler | None
    update: UpdateHandler | None
    delete: DeleteHandler | None

    _logger: Logger

    def __init__(
        self,
        create: CreateHandler | None = None,
        update: UpdateHandler | None = None,
        delete: DeleteHandler | None = None,
        *,
        logger: Logger | None = None,
    ):
        self.create = create
        self.update = update
        self.delete = delete
        self._logger = logger or logging.getLogger()

    async def on_sync(
        self, changes: list[Change], token: asyncio.Event
    ) -> list[SyncResult]:
        return list(
            await asyncio.gather(
                *[self._process(change, token) for change in changes]
            )
        )

    async def on_sync_with_stats(
        self, changes: list[Change], token: asyncio.Event
    ) -> SyncBatchResult:
        return categorize_results(await self.on_sync(changes, token))

    async def _process(
        self, change: Change, token: asyncio.Event
    ) -> SyncResult:
        if token.is_set():
            return SyncResult(id=change.id, status="error", error=ABORTED_MESSAGE)

        match change.type:
            case ChangeType.CREATE:
                handler = self.create
                args = (change.data, token)
            case ChangeType.UPDATE:
                handler = self.update
                args = (change.id, change.data, token)
            case ChangeType.DELETE:
                handler = self.delete
                args = (change.id, change.data, token)

        if handler is None:
            return SyncResult(id=change.id, status="success")

        try:
            result = await maybe_await(handler, *args)
        except Exception as e:
            message = str(e) or type(e).__name__
            self._logger.warning(
                f"Sync handler failed: {change.type.name} {change.id}: {message}"
            )
            return SyncResult(id=change.id, status="error", error=message)

        if not isinstance(result, SyncHandlerResult):
            result = SyncHandlerResult.model_validate(result)

        if not result.success:
            return SyncResult(
                id=change.id,
                status="error",
                error=result.error or "Unknown error",
            )

        return SyncResult(
            id=change.id,
            status="success",
            new_id=result.new_id
            if change.type is ChangeType.CREATE
            else None,
        )
