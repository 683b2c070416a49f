import asyncio
import logging
from typing import Any, Generator

from pytest import Config, fixture

from mirrorsync import (
    Change,
    ChangeType,
    Store,
    StoreConfig,
    SyncResult,
)

logging.basicConfig(level=logging.WARNING)

MARKERS = [
    "store_config",
]


def pytest_configure(config: Config) -> None:
    for marker in MARKERS:
        config.addinivalue_line("markers", marker)


class RecordingSync:
    """
    Sync function recording each batch it receives.

    Behavior can be changed between batches:

    - `fail_ids`: ids which get an error result
    - `new_ids`: mapping of local id to id assigned upon create
    - `omit_ids`: ids which get no result at all
    - `exception`: raised instead of returning results
    - `gate`: if set, each batch waits for this event before completing
    """

    batches: list[list[Change]]
    fail_ids: set[str]
    new_ids: dict[str, str]
    omit_ids: set[str]
    exception: Exception | None
    gate: asyncio.Event | None
    tokens: list[asyncio.Event]

    def __init__(self):
        self.batches = []
        self.fail_ids = set()
        self.new_ids = dict()
        self.omit_ids = set()
        self.exception = None
        self.gate = None
        self.tokens = []

    @property
    def changes(self) -> list[Change]:
        return [c for batch in self.batches for c in batch]

    async def __call__(
        self, changes: list[Change], token: asyncio.Event
    ) -> list[SyncResult]:
        self.batches.append(list(changes))
        self.tokens.append(token)

        if self.gate is not None:
            await self.gate.wait()

        if self.exception is not None:
            raise self.exception

        results = []
        for change in changes:
            if change.id in self.omit_ids:
                continue

            if change.id in self.fail_ids:
                results.append(
                    SyncResult(id=change.id, status="error", error="rejected")
                )
            else:
                new_id = (
                    self.new_ids.get(change.id)
                    if change.type is ChangeType.CREATE
                    else None
                )
                results.append(
                    SyncResult(id=change.id, status="success", new_id=new_id)
                )

        return results


class FakeServer:
    """
    Fetch function serving a mutable list of records, optionally filtered by
    a context of the form `{"done": bool}`.
    """

    records: list[dict[str, Any]]
    calls: list[Any]
    error: Exception | None
    server_state: Any

    def __init__(self, records: list[dict[str, Any]] | None = None):
        self.records = records or []
        self.calls = []
        self.error = None
        self.server_state = None

    async def __call__(self, context: Any, token: asyncio.Event):
        self.calls.append(context)

        if self.error is not None:
            raise self.error

        records = [dict(r) for r in self.records]
        if isinstance(context, dict) and "done" in context:
            records = [r for r in records if r.get("done") == context["done"]]

        return {"items": records, "server_state": self.server_state}


@fixture
def sync() -> RecordingSync:
    return RecordingSync()


@fixture
def server() -> FakeServer:
    return FakeServer(
        [
            {"id": "1", "title": "Buy milk", "done": False},
            {"id": "2", "title": "Walk dog", "done": True},
        ]
    )


@fixture
def config(request) -> StoreConfig:
    """
    Store config with a short debounce. Override fields using:

    @mark.store_config(sync_retries=1)
    """
    overrides: dict[str, Any] = dict()

    marker = request.node.get_closest_marker("store_config")
    if marker is not None:
        overrides.update(marker.kwargs)

    return StoreConfig(**{"sync_debounce": 0.01, **overrides})


@fixture
def store(
    server: FakeServer, sync: RecordingSync, config: StoreConfig
) -> Generator[Store, None, None]:
    store = Store("todos", server, sync, config=config)
    yield store
    store.destroy()


@fixture
def local_store(config: StoreConfig) -> Generator[Store, None, None]:
    """
    Store without server.
    """
    store = Store("local", config=config)
    yield store
    store.destroy()
