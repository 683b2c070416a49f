"""
Stable handles over store records.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable

if TYPE_CHECKING:
    from .store import Store
    from .types import ItemStatus

__all__ = [
    "Item",
    "IdentityCache",
]


class Item:
    """
    Handle over one record of a {obj}`Store`.

    Handles are obtained via {obj}`Store.get_item`; as long as a record's
    value is unchanged, the same handle is returned. A mutated record yields
    a new handle with a higher {obj}`Item.version`, so `handle1 is handle2`
    tells whether the row changed without comparing data.
    """

    _store: Store
    _id: str
    _version: int

    def __init__(self, store: Store, record_id: str, version: int = 0):
        self._store = store
        self._id = record_id
        self._version = version

    def __str__(self):
        return f"Item(id={self._id}, version={self._version})"

    def __repr__(self):
        return str(self)

    @property
    def id(self) -> str:
        return self._id

    @property
    def version(self) -> int:
        """
        Version of the record value this handle was created for.
        """
        return self._version

    @property
    def store(self) -> Store:
        return self._store

    @property
    def data(self) -> Any | None:
        """
        Current value of the record, or `None` if it doesn't exist.
        """
        return self._store.get(self._id)

    def exists(self) -> bool:
        return self._id in self._store.items

    def update(self, mutator: Callable[[Any], Any]):
        self._store.update(self._id, mutator)

    def remove(self):
        self._store.remove(self._id)

    def get_status(self) -> ItemStatus | None:
        return self._store.get_item_status(self._id)

    def _update_id(self, new_id: str):
        """
        Retarget this handle after the server assigned a permanent id.
        """
        self._id = new_id


@dataclass
class _Slot:
    """
    Arena slot tracking the last seen value of a record.
    """

    value: Any
    version: int
    handle: Item


class IdentityCache:
    """
    Maps a record's current value object to a stable {obj}`Item` handle.

    Each record id owns a slot holding the value last handed out and a
    version counter. Lookup compares the current value by identity: the
    same object returns the same handle, a new object bumps the version.
    Slots are released explicitly when records leave the store.
    """

    _store: Store
    _slots: dict[str, _Slot]

    def __init__(self, store: Store):
        self._store = store
        self._slots = dict()

    def __len__(self) -> int:
        return len(self._slots)

    def get(self, record_id: str, value: Any) -> Item:
        slot = self._slots.get(record_id)

        if slot is not None and slot.value is value:
            return slot.handle

        version = slot.version + 1 if slot is not None else 1
        handle = Item(self._store, record_id, version)
        self._slots[record_id] = _Slot(value=value, version=version, handle=handle)

        return handle

    def remap(self, temp_id: str, new_id: str, value: Any):
        """
        Move a slot to a new id, keeping its handle.
        """
        slot = self._slots.pop(temp_id, None)
        if slot is None:
            return

        slot.value = value
        slot.handle._update_id(new_id)
        self._slots[new_id] = slot

    def prune(self, live_ids: Iterable[str]):
        """
        Release slots of records no longer present.
        """
        live = set(live_ids)
        for record_id in [i for i in self._slots if i not in live]:
            del self._slots[record_id]

    def clear(self):
        self._slots.clear()
