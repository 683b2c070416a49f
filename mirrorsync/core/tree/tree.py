"""
Hierarchical view over a store of {obj}`TreeNode` records.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

from ..utils import generate_id
from .node import Node, TreeNode, as_tree_node

if TYPE_CHECKING:
    from ..store import Store
    from ..types import ItemStatus

__all__ = ["Tree"]


class Tree:
    """
    Interprets records of a {obj}`Store` as a tree, where each record's id
    encodes its ancestry: `root`, `root.a1`, `root.a1.b2`, and so on.

    Example:

    ```
    store = Store("outline", on_fetch, on_sync)
    tree = Tree(store, "root")
    tree.ensure_root("Outline")

    chapter_id = tree.root.append("Chapter 1")
    tree.get_node(chapter_id).append("Section 1.1")
    ```
    """

    _store: Store
    _root_id: str
    _id_factory: Callable[[], str]

    def __init__(
        self,
        store: Store,
        root_id: str,
        *,
        id_factory: Callable[[], str] | None = None,
    ):
        """
        :param store: Store holding the tree's records
        :param root_id: Id of root node
        :param id_factory: Generates new id segments; must not produce the separator
        """
        self._store = store
        self._root_id = root_id
        self._id_factory = id_factory or generate_id

    def __str__(self):
        return f"Tree(store={self._store.id}, root={self._root_id})"

    @property
    def store(self) -> Store:
        return self._store

    @property
    def separator(self) -> str:
        return self._store.config.node_separator

    @property
    def root_id(self) -> str:
        return self._root_id

    @property
    def root(self) -> Node:
        return Node(self, self._root_id)

    def generate_segment(self) -> str:
        segment = self._id_factory()
        if not segment or self.separator in segment:
            raise ValueError(
                f"Invalid node id segment '{segment}' for separator '{self.separator}'"
            )
        return segment

    def ensure_root(self, value: Any = None, type: str = "object") -> Node:
        """
        Create the root record if it doesn't exist yet.
        """
        if self._root_id not in self._store.items:
            self._store.create(
                TreeNode(id=self._root_id, position=0, value=value, type=type)
            )
        return self.root

    def get_node(self, node_id: str) -> Node:
        return Node(self, node_id)

    def get_node_status(self, node_id: str) -> ItemStatus | None:
        return self._store.get_item_status(node_id)

    def select(self, node_id: str):
        self._store.select(node_id)

    def deselect(self):
        self._store.deselect()

    @property
    def selected_id(self) -> str | None:
        return self._store.selected_id

    @property
    def selected(self) -> Node | None:
        selected_id = self._store.selected_id
        return Node(self, selected_id) if selected_id is not None else None

    def to_json(self) -> dict[str, Any] | None:
        """
        Export the tree as nested dicts with keys `id`, `type`, `value` and,
        for nodes having children, `children` ordered by position.

        :returns: Nested dicts, or `None` if root doesn't exist
        """
        root = self.root
        if not root.exists():
            return None
        return self._node_to_json(root)

    def _node_to_json(self, node: Node) -> dict[str, Any]:
        data = as_tree_node(node.data)

        result: dict[str, Any] = {
            "id": node.id,
            "type": data.type,
            "value": data.value,
        }

        children = node.get_children()
        if children:
            result["children"] = [self._node_to_json(c) for c in children]

        return result
