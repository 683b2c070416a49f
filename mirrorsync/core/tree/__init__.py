"""
Tree layer: records whose ids are materialized paths, with ordered children,
moves and cascading removal.
"""

from pyrollup import rollup

from . import node, paths, tree
from .node import *  # noqa
from .paths import *  # noqa
from .tree import *  # noqa

__all__ = rollup(tree, node, paths)

__canonical_children__ = [
    "tree",
    "node",
    "paths",
]
