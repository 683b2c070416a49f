"""
Store configuration, optionally persisted in a .yaml file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Self

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic import field_validator

from .exceptions import ConfigError

__all__ = [
    "BaseYamlModel",
    "StoreConfig",
    "RegistryConfig",
]


class BaseYamlModel(BaseModel):
    """
    Base pydantic model with additional functionality to load from and dump
    to .yaml file.
    """

    @classmethod
    def load_yaml(cls, file: Path) -> Self:
        """
        Load model from .yaml file.

        :raises ConfigError: If the file is missing or its contents are invalid
        """
        if not file.is_file():
            raise ConfigError([f"file does not exist: '{file}'"])

        with file.open() as fh:
            model = yaml.safe_load(fh)

        if not isinstance(model, dict):
            raise ConfigError([f"invalid yaml contents: {model}"])

        try:
            return cls(**model)
        except PydanticValidationError as e:
            raise ConfigError(
                [
                    f"{'.'.join(str(l) for l in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
            ) from e

    def dump_yaml(self, file: Path):
        """
        Dump model to .yaml file.
        """
        model = self.model_dump(by_alias=True)
        model_yaml = yaml.safe_dump(
            model, default_flow_style=False, sort_keys=False
        )
        file.write_text(model_yaml)


class StoreConfig(BaseYamlModel):
    """
    Tunables of a {obj}`Store`. Durations are in seconds.
    """

    model_config = ConfigDict(extra="forbid")

    sync_debounce: float = Field(default=0.3, ge=0)
    """
    Time to wait after the last mutation before committing changes.
    """

    sync_retries: int = Field(default=3, ge=0)
    """
    Number of sync attempts per record before a failure is parked.
    """

    batch_size: int | None = Field(default=None, gt=0)
    """
    Max number of records per sync batch, or `None` for no limit.
    """

    collapse_update_delete: bool = True
    """
    Coalesce an update followed by a delete into the delete alone; otherwise
    both are sent in order.
    """

    refetch_on_mutation: bool = False
    """
    Refetch after local creates and removes.
    """

    cache_capacity: int = Field(default=10, ge=0)
    """
    Number of fetch results to cache; 0 disables the read cache.
    """

    cache_ttl: float = Field(default=60.0, ge=0)
    """
    Max age of cached fetch results.
    """

    fetch_retries: int = Field(default=0, ge=0)
    """
    Number of times to retry a failed fetch.
    """

    node_separator: str = "."
    """
    Separator of path segments in tree node ids.
    """

    @field_validator("node_separator")
    def validate_node_separator(cls, value: str) -> str:
        if not value:
            raise ValueError("separator must not be empty")
        return value


class RegistryConfig(BaseYamlModel):
    """
    Per-store configuration for a {obj}`StoreRegistry`.
    """

    defaults: StoreConfig = Field(default_factory=StoreConfig)
    """
    Configuration for stores not listed in `stores`.
    """

    stores: dict[str, StoreConfig] = Field(default_factory=dict)
    """
    Mapping of store ids to configs.
    """

    def get(self, store_id: str) -> StoreConfig:
        return self.stores.get(store_id, self.defaults)
