"""
mirrorsync: a local-first mirror of server-owned records with background
synchronization.
"""

from pyrollup import rollup

from . import core, sync
from .core import *  # noqa
from .sync import *  # noqa

__all__ = rollup(core, sync)

__canonical_children__ = [
    "core",
    "sync",
]
