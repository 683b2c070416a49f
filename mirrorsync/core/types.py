"""
Value types shared by the queue, store and tree layers.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from rich.markup import escape

__all__ = [
    "ChangeType",
    "Change",
    "SyncResult",
    "IdMapping",
    "SyncError",
    "ItemStatus",
    "QueueState",
    "FetchResult",
    "SyncState",
    "FetchStatus",
    "ItemSyncStatus",
]

SyncState = Literal["idle", "fetching", "syncing"]
"""
Aggregate state of a store: fetching takes precedence over syncing.
"""

FetchStatus = Literal["idle", "fetching", "error"]

ItemSyncStatus = Literal["pending", "syncing", "error"]


class ChangeType(Enum):
    """
    Kind of mutation pending against a record.
    """

    CREATE = "create"
    """Record was created locally"""

    UPDATE = "update"
    """Record was modified locally"""

    DELETE = "delete"
    """Record was removed locally"""

    def __str__(self) -> str:
        color_map = {
            ChangeType.CREATE: "bright_green",
            ChangeType.UPDATE: "bright_yellow",
            ChangeType.DELETE: "red",
        }

        start = escape("[")
        end = escape("]")
        return f"{start}[{color_map[self]}]{self.name}[/{color_map[self]}]{end}"


class Change(BaseModel):
    """
    One pending mutation against a record.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    type: ChangeType
    data: Any = None

    def with_id(self, new_id: str, data: Any = None) -> Change:
        """
        Get a copy of this change targeting a different id.
        """
        return self.model_copy(
            update={"id": new_id, "data": self.data if data is None else data}
        )


class SyncResult(BaseModel):
    """
    Outcome of one change as reported by the sync function.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    status: Literal["success", "error"]
    error: str | None = None
    new_id: str | None = Field(
        default=None, validation_alias=AliasChoices("new_id", "newId")
    )

    @property
    def ok(self) -> bool:
        return self.status == "success"


class IdMapping(BaseModel):
    """
    Mapping of a temporary id to the permanent id assigned by the server.
    """

    model_config = ConfigDict(frozen=True)

    temp_id: str
    new_id: str


class SyncError(BaseModel):
    """
    Failure bookkeeping for one record.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message: str
    retry_count: int
    operations: tuple[Change, ...]


class ItemStatus(BaseModel):
    """
    Public sync status of a record, derived from queue state.
    """

    model_config = ConfigDict(frozen=True)

    type: ChangeType
    status: ItemSyncStatus
    retries: int = 0
    error: str | None = None


class FetchResult(BaseModel):
    """
    Fetch response carrying items plus opaque server-side state.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: list[Any]
    server_state: Any = None

    @classmethod
    def normalize(cls, response: Any) -> FetchResult:
        """
        Accept a bare list of records, a mapping with `items` (and optionally
        `server_state`/`serverState`), or a {obj}`FetchResult`.
        """
        if isinstance(response, FetchResult):
            return response
        if isinstance(response, Mapping):
            return cls(
                items=list(response.get("items") or []),
                server_state=response.get(
                    "server_state", response.get("serverState")
                ),
            )
        return cls(items=list(response or []))


def _frozen_map() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class QueueState:
    """
    Point-in-time snapshot of a change queue. Replaced as a whole on every
    change.
    """

    pending: Mapping[str, tuple[Change, ...]] = field(
        default_factory=_frozen_map
    )
    """Coalesced operations not yet sent, per record"""

    in_flight: Mapping[str, tuple[Change, ...]] = field(
        default_factory=_frozen_map
    )
    """Operations currently submitted to the sync function, per record"""

    errors: Mapping[str, SyncError] = field(default_factory=_frozen_map)
    """Failure bookkeeping, per record"""

    paused: bool = False
    syncing: bool = False

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    @property
    def is_idle(self) -> bool:
        return not (self.pending or self.in_flight or self.syncing)
