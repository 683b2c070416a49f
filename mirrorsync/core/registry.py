"""
Caller-owned registry of stores.
"""

from __future__ import annotations

import logging
from logging import Logger
from typing import Any, Iterator

from .config import RegistryConfig
from .exceptions import RegistryError
from .fetch import FetchFunc
from .queue import SyncFunc
from .store import Store

__all__ = ["StoreRegistry"]


class StoreRegistry:
    """
    Holds stores keyed by store id, so that components asking for the same
    id share one store. Stores register themselves when created with
    `registry=`{l=python} and deregister when destroyed.
    """

    _stores: dict[str, Store]
    _config: RegistryConfig
    _logger: Logger

    def __init__(
        self,
        config: RegistryConfig | None = None,
        *,
        logger: Logger | None = None,
    ):
        """
        :param config: Per-store configuration used by {obj}`StoreRegistry.get_or_create`
        :param logger: Logger passed to created stores, or `None` to use default logger
        """
        self._stores = dict()
        self._config = config or RegistryConfig()
        self._logger = logger or logging.getLogger()

    def __str__(self):
        return f"StoreRegistry: stores={list(self._stores)}"

    def __contains__(self, store_id: str) -> bool:
        return store_id in self._stores

    def __len__(self) -> int:
        return len(self._stores)

    def __iter__(self) -> Iterator[Store]:
        return iter(list(self._stores.values()))

    def get(self, store_id: str) -> Store | None:
        return self._stores.get(store_id)

    def get_or_create(
        self,
        store_id: str,
        on_fetch: FetchFunc | None = None,
        on_sync: SyncFunc | None = None,
        **kwargs: Any,
    ) -> Store:
        """
        Get the store registered with this id, or create one. Config is taken
        from the registry's config unless passed explicitly.
        """
        existing = self._stores.get(store_id)
        if existing is not None:
            return existing

        kwargs.setdefault("config", self._config.get(store_id))
        kwargs.setdefault("logger", self._logger)

        return Store(store_id, on_fetch, on_sync, registry=self, **kwargs)

    def register(self, store: Store):
        """
        Add a store.

        :raises RegistryError: If a different store is registered with the same id
        """
        existing = self._stores.get(store.id)
        if existing is not None and existing is not store:
            raise RegistryError(
                f"Attempt to register store '{store.id}' when {existing} already registered"
            )

        self._stores[store.id] = store
        self._logger.debug(f"Registered store '{store.id}'")

    def discard(self, store: Store):
        """
        Remove a store if it's registered. No-op otherwise.
        """
        if self._stores.get(store.id) is store:
            del self._stores[store.id]

    def clear(self, store_id: str | None = None):
        """
        Remove one store, or all stores if no id provided, without destroying
        them.
        """
        if store_id is None:
            self._stores.clear()
        else:
            self._stores.pop(store_id, None)

    def destroy_all(self):
        """
        Destroy all registered stores.
        """
        for store in list(self._stores.values()):
            store.destroy()
        self._stores.clear()
