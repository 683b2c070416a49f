"""
Test sync clients built from handlers and backed by an endpoint.
"""

import asyncio
from typing import Any

import requests
from pytest import MonkeyPatch, mark, raises

from mirrorsync import (
    Change,
    ChangeType,
    EndpointSyncClient,
    FetchError,
    FetchResult,
    Store,
    StoreConfig,
    SyncClient,
    SyncResult,
    categorize_results,
    sync_error,
    sync_success,
)


def make_changes() -> list[Change]:
    return [
        Change(id="tmp-1", type=ChangeType.CREATE, data={"title": "A"}),
        Change(id="2", type=ChangeType.UPDATE, data={"id": "2", "title": "B"}),
        Change(id="3", type=ChangeType.DELETE, data={"id": "3"}),
    ]


def test_helpers():
    assert sync_success().success
    assert sync_success("100").new_id == "100"

    result = sync_error("Something went wrong")
    assert not result.success
    assert result.error == "Something went wrong"


def test_categorize_results():
    results = [
        SyncResult(id="1", status="success"),
        SyncResult(id="2", status="error", error="Failed"),
        SyncResult(id="3", status="success"),
    ]

    categorized = categorize_results(results)

    assert categorized.results == results
    assert len(categorized.successful) == 2
    assert len(categorized.failed) == 1
    assert not categorized.all_succeeded
    assert categorized.any_succeeded
    assert categorized.summary == {"total": 3, "succeeded": 2, "failed": 1}

    assert not categorize_results([results[1]]).any_succeeded
    assert categorize_results([results[0]]).all_succeeded


@mark.asyncio
async def test_dispatch():
    calls: list[tuple] = []

    async def create(data, token):
        calls.append(("create", data))
        return sync_success("100")

    def update(record_id, data, token):
        calls.append(("update", record_id))
        return sync_success()

    async def delete(record_id, data, token):
        calls.append(("delete", record_id))
        return sync_error("Not allowed")

    client = SyncClient(create=create, update=update, delete=delete)
    results = await client.on_sync(make_changes(), asyncio.Event())

    assert results == [
        SyncResult(id="tmp-1", status="success", new_id="100"),
        SyncResult(id="2", status="success"),
        SyncResult(id="3", status="error", error="Not allowed"),
    ]
    assert sorted(c[0] for c in calls) == ["create", "delete", "update"]


@mark.asyncio
async def test_missing_handlers():
    """
    Without handlers every change is committed.
    """
    client = SyncClient()
    results = await client.on_sync(make_changes(), asyncio.Event())

    assert all(r.ok for r in results)


@mark.asyncio
async def test_handler_exception():
    def update(record_id, data, token):
        raise ValueError("invalid title")

    client = SyncClient(update=update)
    stats = await client.on_sync_with_stats(make_changes(), asyncio.Event())

    assert stats.summary == {"total": 3, "succeeded": 2, "failed": 1}
    assert stats.failed[0].id == "2"
    assert stats.failed[0].error == "invalid title"


@mark.asyncio
async def test_aborted():
    token = asyncio.Event()
    token.set()

    client = SyncClient(create=lambda data, token: sync_success())
    results = await client.on_sync(make_changes(), token)

    assert all(r.error == "Operation aborted" for r in results)


@mark.asyncio
async def test_store_integration(config: StoreConfig):
    server_ids = iter(["100", "101"])

    def create(data, token):
        return sync_success(next(server_ids))

    client = SyncClient(create=create)
    store = Store("todos", on_sync=client.on_sync, config=config)

    first = store.create({"title": "A"})
    second = store.create({"title": "B"})
    await store.flush()

    assert first not in store.items
    assert second not in store.items
    assert set(store.items) == {"100", "101"}

    store.destroy()


class Response:
    """
    Stand-in for `requests.Response`.
    """

    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self._body = body

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("No JSON")
        return self._body


class Transport:
    """
    Replaces `requests.post`, recording requests.
    """

    def __init__(self, response: Response | Exception):
        self.response = response
        self.requests: list[dict[str, Any]] = []

    def __call__(self, url, headers=None, json=None, timeout=None):
        self.requests.append({"url": url, "headers": headers, "json": json})

        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@mark.asyncio
async def test_endpoint_fetch(monkeypatch: MonkeyPatch):
    transport = Transport(
        Response(200, {"results": [{"id": "1"}], "serverState": {"v": 2}})
    )
    monkeypatch.setattr(requests, "post", transport)

    client = EndpointSyncClient(
        "https://example.com/api", headers={"X-Token": "abc"}, scope="todos"
    )
    result = await client.on_fetch({"page": 1}, asyncio.Event())

    assert result == FetchResult(items=[{"id": "1"}], server_state={"v": 2})

    request = transport.requests[0]
    assert request["url"] == "https://example.com/api"
    assert request["json"] == {"scope": "todos", "query": {"page": 1}}
    assert request["headers"]["X-Token"] == "abc"
    assert request["headers"]["Content-Type"] == "application/json"


@mark.asyncio
async def test_endpoint_fetch_error(monkeypatch: MonkeyPatch):
    client = EndpointSyncClient("https://example.com/api")

    monkeypatch.setattr(
        requests, "post", Transport(Response(500, {"error": "Database down"}))
    )
    with raises(FetchError, match="Database down"):
        await client.on_fetch(None, asyncio.Event())

    monkeypatch.setattr(
        requests, "post", Transport(requests.ConnectionError("refused"))
    )
    with raises(FetchError, match="refused"):
        await client.on_fetch(None, asyncio.Event())

    token = asyncio.Event()
    token.set()
    with raises(FetchError, match="Operation aborted"):
        await client.on_fetch(None, token)


@mark.asyncio
async def test_endpoint_sync(monkeypatch: MonkeyPatch):
    sync_results = [
        {"id": "tmp-1", "status": "success", "newId": "100"},
        {"id": "2", "status": "success"},
        {"id": "3", "status": "error", "error": "Not found"},
    ]
    transport = Transport(Response(200, {"syncResults": sync_results}))
    monkeypatch.setattr(requests, "post", transport)

    client = EndpointSyncClient("https://example.com/api", scope="todos")
    results = await client.on_sync(make_changes(), asyncio.Event())

    assert results == sync_results

    body = transport.requests[0]["json"]
    assert body["scope"] == "todos"
    assert body["changes"][0] == {
        "id": "tmp-1",
        "type": "create",
        "data": {"title": "A"},
    }


@mark.asyncio
async def test_endpoint_sync_error(monkeypatch: MonkeyPatch):
    client = EndpointSyncClient("https://example.com/api")
    changes = make_changes()

    monkeypatch.setattr(
        requests, "post", Transport(Response(503, {"error": "Maintenance"}))
    )
    results = await client.on_sync(changes, asyncio.Event())
    assert [r.error for r in results] == ["Maintenance"] * 3

    monkeypatch.setattr(requests, "post", Transport(Response(200, {})))
    results = await client.on_sync(changes, asyncio.Event())
    assert [r.error for r in results] == ["No sync results returned"] * 3

    monkeypatch.setattr(
        requests, "post", Transport(requests.Timeout("timed out"))
    )
    results = await client.on_sync(changes, asyncio.Event())
    assert all(r.status == "error" for r in results)
    assert results[0].error == "timed out"


@mark.asyncio
async def test_endpoint_store(monkeypatch: MonkeyPatch, config: StoreConfig):
    """
    Store using an endpoint client for both fetch and sync.
    """

    def post(url, headers=None, json=None, timeout=None):
        if "query" in json:
            return Response(200, {"results": [{"id": "1", "title": "A"}]})

        return Response(
            200,
            {
                "syncResults": {
                    c["id"]: {"status": "success", "newId": "200"}
                    for c in json["changes"]
                }
            },
        )

    monkeypatch.setattr(requests, "post", post)

    client = EndpointSyncClient("https://example.com/api", scope="todos")
    store = Store("todos", client.on_fetch, client.on_sync, config=config)

    await store.fetch()
    assert set(store.items) == {"1"}

    temp_id = store.create({"title": "B"})
    await store.flush()

    assert temp_id not in store.items
    assert store.get("200") == {"title": "B", "id": "200"}

    store.destroy()
