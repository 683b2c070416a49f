"""
Client for a server exposing fetch and sync via a single JSON POST endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from logging import Logger
from typing import Any

import requests

from ..core.exceptions import FetchError
from ..core.types import Change, FetchResult, SyncResult
from .client import ABORTED_MESSAGE

__all__ = ["EndpointSyncClient"]

DEFAULT_TIMEOUT = 30.0


class EndpointSyncClient:
    """
    Provides a store's fetch and sync functions backed by one endpoint.

    Requests:

    - fetch: `{"scope": ..., "query": <context>}`, response has `results`
      and optionally `serverState`
    - sync: `{"scope": ..., "changes": [...]}`, response has `syncResults`

    Requests are made with `requests` in a worker thread, so the event loop
    isn't blocked.

    Example:

    ```
    client = EndpointSyncClient("https://example.com/api/todos", scope="todos")
    store = Store("todos", client.on_fetch, client.on_sync)
    ```
    """

    endpoint: str
    headers: dict[str, str]
    scope: str | None
    timeout: float

    _logger: Logger

    def __init__(
        self,
        endpoint: str,
        headers: dict[str, str] | None = None,
        scope: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        logger: Logger | None = None,
    ):
        """
        :param endpoint: URL of endpoint
        :param headers: Additional HTTP headers, e.g. for authentication
        :param scope: Scope sent with each request, allowing one endpoint to serve multiple collections
        :param timeout: Request timeout in seconds
        :param logger: Logger to use, or `None` to use default logger
        """
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self.scope = scope
        self.timeout = timeout
        self._logger = logger or logging.getLogger()

    def __str__(self):
        return f"EndpointSyncClient(endpoint={self.endpoint}, scope={self.scope})"

    async def on_fetch(self, query: Any, token: asyncio.Event) -> FetchResult:
        """
        Fetch records for query.

        :raises FetchError: Upon transport failure or error response
        """
        if token.is_set():
            raise FetchError(ABORTED_MESSAGE, query)

        try:
            response = await asyncio.to_thread(
                self._post, {"scope": self.scope, "query": query}
            )
        except requests.RequestException as e:
            raise FetchError(str(e), query) from e

        if token.is_set():
            raise FetchError(ABORTED_MESSAGE, query)

        if not response.ok:
            raise FetchError(
                _get_error_message(response, "Fetch request failed"), query
            )

        try:
            body = response.json()
        except ValueError as e:
            raise FetchError("Invalid JSON response", query) from e

        return FetchResult(
            items=body.get("results") or [],
            server_state=body.get("serverState"),
        )

    async def on_sync(
        self, changes: list[Change], token: asyncio.Event
    ) -> list[SyncResult] | dict[str, Any]:
        """
        Commit changes. Failures are reported as error results for every
        change in the batch.
        """
        if token.is_set():
            return _fail_all(changes, ABORTED_MESSAGE)

        body = {
            "scope": self.scope,
            "changes": [c.model_dump(mode="json") for c in changes],
        }

        try:
            response = await asyncio.to_thread(self._post, body)
        except requests.RequestException as e:
            self._logger.warning(f"Sync request to {self.endpoint} failed: {e}")
            return _fail_all(changes, str(e) or type(e).__name__)

        if token.is_set():
            return _fail_all(changes, ABORTED_MESSAGE)

        if not response.ok:
            message = _get_error_message(response, "Sync request failed")
            self._logger.warning(
                f"Sync request to {self.endpoint} returned {response.status_code}: {message}"
            )
            return _fail_all(changes, message)

        try:
            sync_results = response.json().get("syncResults")
        except ValueError:
            sync_results = None

        if sync_results is None:
            return _fail_all(changes, "No sync results returned")

        return sync_results

    def _post(self, body: dict[str, Any]) -> requests.Response:
        headers = {"Content-Type": "application/json", **self.headers}

        self._logger.debug(f"POST {self.endpoint}: scope={self.scope}")

        return requests.post(
            self.endpoint,
            headers=headers,
            json=body,
            timeout=self.timeout,
        )


def _fail_all(changes: list[Change], message: str) -> list[SyncResult]:
    return [
        SyncResult(id=c.id, status="error", error=message) for c in changes
    ]


def _get_error_message(response: requests.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return default

    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return default
