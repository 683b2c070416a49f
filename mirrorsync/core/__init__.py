"""
This module implements the local state store, its change queue and the tree
layer built on top of it.
"""

from pyrollup import rollup

from . import (
    cache,
    config,
    exceptions,
    fetch,
    item,
    queue,
    registry,
    store,
    tree,
    types,
)
from .cache import *  # noqa
from .config import *  # noqa
from .exceptions import *  # noqa
from .fetch import *  # noqa
from .item import *  # noqa
from .queue import *  # noqa
from .registry import *  # noqa
from .store import *  # noqa
from .tree import *  # noqa
from .types import *  # noqa

__all__ = rollup(
    store,
    queue,
    fetch,
    cache,
    item,
    registry,
    tree,
    types,
    config,
    exceptions,
)

__canonical_children__ = [
    "store",
    "queue",
    "fetch",
    "cache",
    "item",
    "registry",
    "tree",
    "types",
    "config",
    "exceptions",
]
