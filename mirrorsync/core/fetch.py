"""
Retrieval of the server baseline for a store's context.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from logging import Logger
from typing import Any, Awaitable, Callable

from .cache import ReadCache
from .exceptions import FetchError
from .types import FetchResult, FetchStatus
from .utils import make_cache_key, maybe_await

__all__ = [
    "FetchHandler",
    "FetchState",
    "FetchFunc",
]

FetchFunc = Callable[[Any, asyncio.Event], Awaitable[Any] | Any]
"""
Collaborator supplying records for a context; receives a cancellation token
which is set if the fetch is superseded.
"""


@dataclass(frozen=True)
class FetchState:
    """
    Snapshot of the most recent fetch.
    """

    status: FetchStatus = "idle"
    items: tuple[Any, ...] = field(default_factory=tuple)
    server_state: Any = None
    error: str | None = None
    retry_count: int = 0
    version: int = 0
    """
    Incremented each time a fetch delivers records.
    """


class FetchHandler:
    """
    Wraps the fetch function with read caching, supersession of older
    fetches and retries.
    """

    _store_id: str
    _on_fetch: FetchFunc
    _cache: ReadCache[FetchResult]
    _retries: int

    _state: FetchState
    _subscribers: set[Callable[[], None]]

    _token: asyncio.Event | None = None
    """
    Cancellation token of the fetch in progress.
    """

    _context: Any = None
    """
    Context of the most recent fetch.
    """

    _logger: Logger

    def __init__(
        self,
        store_id: str,
        on_fetch: FetchFunc,
        *,
        cache: ReadCache[FetchResult],
        retries: int = 0,
        logger: Logger | None = None,
    ):
        self._store_id = store_id
        self._on_fetch = on_fetch
        self._cache = cache
        self._retries = retries
        self._logger = logger or logging.getLogger()

        self._state = FetchState()
        self._subscribers = set()

    @property
    def state(self) -> FetchState:
        return self._state

    @property
    def cache(self) -> ReadCache[FetchResult]:
        return self._cache

    @property
    def context(self) -> Any:
        return self._context

    @property
    def is_fetching(self) -> bool:
        return self._state.status == "fetching"

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.add(callback)
        return lambda: self._subscribers.discard(callback)

    async def fetch(self, context: Any) -> FetchResult:
        """
        Get records for context, from the read cache if possible.

        A fetch started while another is in progress supersedes it: the older
        fetch's token is set and its result is discarded.

        :raises FetchError: If the fetch failed after all retries
        """
        key = make_cache_key(self._store_id, context)
        cached = self._cache.get(key)

        self._context = context

        if cached is not None:
            self._logger.debug(f"Read cache hit: store={self._store_id}")

            # supersede fetch in progress
            if self._token is not None:
                self._token.set()
                self._token = None

            self._set_state(
                status="idle",
                items=tuple(cached.items),
                server_state=cached.server_state,
                error=None,
                retry_count=0,
                version=self._state.version + 1,
            )
            return cached

        if self._token is not None:
            self._token.set()

        token = asyncio.Event()
        self._token = token

        self._set_state(status="fetching", error=None, retry_count=0)

        try:
            result = await self._fetch_with_retry(context, token)
        except Exception as e:
            if token.is_set():
                # superseded: keep whatever the newer fetch produces
                return self._current_result()

            self._token = None
            message = str(e) or type(e).__name__
            self._logger.error(
                f"Failed to fetch store '{self._store_id}' with context={context}: {message}"
            )
            self._set_state(status="error", error=message)

            if isinstance(e, FetchError):
                raise
            raise FetchError(message, context) from e

        if token.is_set():
            return self._current_result()

        self._token = None
        self._cache.put(key, result)

        self._logger.debug(
            f"Fetched {len(result.items)} records for store '{self._store_id}'"
        )

        self._set_state(
            status="idle",
            items=tuple(result.items),
            server_state=result.server_state,
            error=None,
            retry_count=0,
            version=self._state.version + 1,
        )
        return result

    async def refresh(self, context: Any = None) -> FetchResult:
        """
        Fetch bypassing the read cache.
        """
        context = self._context if context is None else context
        self._cache.invalidate(make_cache_key(self._store_id, context))
        return await self.fetch(context)

    def invalidate_cache(self, context: Any = None):
        """
        Invalidate cached results for a context, or all results if no context
        provided.
        """
        if context is None:
            self._cache.invalidate()
        else:
            self._cache.invalidate(make_cache_key(self._store_id, context))

    def abort(self):
        """
        Abort the fetch in progress, if any.
        """
        if self._token is not None:
            self._token.set()
            self._token = None

        if self.is_fetching:
            self._set_state(status="idle")

    def destroy(self):
        self.abort()
        self._subscribers.clear()
        self._cache.invalidate()

    async def _fetch_with_retry(
        self, context: Any, token: asyncio.Event
    ) -> FetchResult:
        attempt = 0

        while True:
            if token.is_set():
                raise FetchError("Fetch aborted", context)

            if attempt > 0:
                self._set_state(retry_count=attempt)

            try:
                response = await maybe_await(self._on_fetch, context, token)
            except Exception as e:
                if token.is_set() or attempt >= self._retries:
                    raise

                self._logger.debug(
                    f"Fetch attempt {attempt + 1} failed for store '{self._store_id}': {e}"
                )
                attempt += 1
            else:
                return FetchResult.normalize(response)

    def _current_result(self) -> FetchResult:
        return FetchResult(
            items=list(self._state.items),
            server_state=self._state.server_state,
        )

    def _set_state(self, **changes):
        self._state = replace(self._state, **changes)

        for callback in list(self._subscribers):
            callback()
