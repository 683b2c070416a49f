"""
Helpers for materialized-path node ids, e.g. `root.a1.b2`.
"""

__all__ = [
    "DEFAULT_SEPARATOR",
    "get_parent_id",
    "is_direct_child",
    "is_descendant",
    "get_depth",
]

DEFAULT_SEPARATOR = "."


def get_parent_id(node_id: str, separator: str = DEFAULT_SEPARATOR) -> str | None:
    """
    Get id of parent node, or `None` for a root.
    """
    parent_id, sep, _ = node_id.rpartition(separator)
    return parent_id if sep else None


def is_direct_child(
    node_id: str, parent_id: str, separator: str = DEFAULT_SEPARATOR
) -> bool:
    prefix = parent_id + separator
    if not node_id.startswith(prefix):
        return False
    return separator not in node_id[len(prefix) :]


def is_descendant(
    node_id: str, ancestor_id: str, separator: str = DEFAULT_SEPARATOR
) -> bool:
    return node_id.startswith(ancestor_id + separator)


def get_depth(node_id: str, separator: str = DEFAULT_SEPARATOR) -> int:
    """
    Zero-based depth: `root` is 0, `root.a` is 1.
    """
    return node_id.count(separator)
