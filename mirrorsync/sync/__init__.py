"""
Ready-made fetch and sync functions for stores.
"""

from pyrollup import rollup

from . import client, endpoint
from .client import *  # noqa
from .endpoint import *  # noqa

__all__ = rollup(client, endpoint)

__canonical_children__ = [
    "client",
    "endpoint",
]
