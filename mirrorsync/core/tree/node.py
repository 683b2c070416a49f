"""
Tree records and node handles.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel

from .paths import get_depth, get_parent_id, is_descendant, is_direct_child

if TYPE_CHECKING:
    from ..store import Store
    from ..types import ItemStatus
    from .tree import Tree

__all__ = [
    "TreeNode",
    "Node",
    "as_tree_node",
]


class TreeNode(BaseModel):
    """
    Record stored for each tree node. The id encodes the node's ancestry.
    """

    id: str
    position: int | float = 0
    value: Any = None
    type: str = "object"


def as_tree_node(record: Any) -> TreeNode:
    """
    Get record as a {obj}`TreeNode`; fetched records may be plain mappings.
    """
    if isinstance(record, TreeNode):
        return record
    return TreeNode.model_validate(record)


class Node:
    """
    Handle over one tree node.

    All mutations go through the owning {obj}`Store`; operations touching
    more than one record are wrapped in {obj}`Store.batch` so subscribers
    observe them as a single change.
    """

    _tree: Tree
    _id: str

    def __init__(self, tree: Tree, node_id: str):
        self._tree = tree
        self._id = node_id

    def __str__(self):
        return f"Node(id={self._id})"

    def __repr__(self):
        return str(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Node):
            return NotImplemented
        return self._tree is other._tree and self._id == other._id

    def __hash__(self) -> int:
        return hash((id(self._tree), self._id))

    @property
    def id(self) -> str:
        return self._id

    @property
    def tree(self) -> Tree:
        return self._tree

    @property
    def store(self) -> Store:
        return self._tree.store

    @property
    def data(self) -> TreeNode | None:
        record = self.store.get(self._id)
        return as_tree_node(record) if record is not None else None

    @property
    def depth(self) -> int:
        return get_depth(self._id, self._sep)

    @property
    def _sep(self) -> str:
        return self._tree.separator

    def exists(self) -> bool:
        return self._id in self.store.items

    def get_status(self) -> ItemStatus | None:
        return self.store.get_item_status(self._id)

    def get_parent(self) -> Node | None:
        parent_id = get_parent_id(self._id, self._sep)
        return self._tree.get_node(parent_id) if parent_id else None

    def get_children(self) -> list[Node]:
        """
        Get direct children ordered by position.
        """
        entries = [
            (node_id, as_tree_node(data).position)
            for node_id, data in self.store.items.items()
            if is_direct_child(node_id, self._id, self._sep)
        ]
        entries.sort(key=lambda e: e[1])

        return [self._tree.get_node(node_id) for node_id, _ in entries]

    def get_descendant_ids(self) -> list[str]:
        return [
            node_id
            for node_id in self.store.items
            if is_descendant(node_id, self._id, self._sep)
        ]

    def append(self, value: Any, type: str = "object") -> str:
        """
        Create a child after all existing children.

        :returns: Id of the new node
        """
        positions = [c.data.position for c in self.get_children()]
        position = max(positions) + 1 if positions else 0

        return self._create_child(value, type, position)

    def prepend(self, value: Any, type: str = "object") -> str:
        """
        Create a child before all existing children.

        :returns: Id of the new node
        """
        positions = [c.data.position for c in self.get_children()]
        position = min(positions) - 1 if positions else 0

        return self._create_child(value, type, position)

    def move_up(self):
        """
        Swap position with the previous sibling.
        """
        self._swap(-1)

    def move_down(self):
        """
        Swap position with the next sibling.
        """
        self._swap(1)

    def set_position(self, index: int):
        """
        Move to index among siblings and renumber all siblings `0..n-1`.
        Index is clamped to the valid range.
        """
        siblings = self._get_siblings()
        if siblings is None or self not in siblings:
            return

        current = siblings.index(self)
        target = max(0, min(index, len(siblings) - 1))

        if target == current:
            return

        order = [s for s in siblings if s != self]
        order.insert(target, self)

        with self.store.batch():
            for position, sibling in enumerate(order):
                if sibling.data.position != position:
                    self.store.update(sibling.id, _set_position(position))

    def move(
        self, target_position: int | float, target_parent: Node | None = None
    ) -> str | None:
        """
        Move to a new position within the current parent, or to a different
        parent.

        Within the same parent, positions are swapped with the sibling at
        `target_position`, if any. Reparenting clones this subtree under the
        target with new ids and removes the original. Moving a root, or
        moving into this node or one of its descendants, is ignored.

        :returns: Id of the node after moving, or `None` if nothing moved
        """
        data = self.data
        if data is None:
            return None

        parent_id = get_parent_id(self._id, self._sep)
        if parent_id is None:
            return None

        if target_parent is None or target_parent.id == parent_id:
            return self._move_within_parent(data, target_position)

        if target_parent.id == self._id or is_descendant(
            target_parent.id, self._id, self._sep
        ):
            return None

        if not target_parent.exists():
            return None

        subtree = self.clone()

        with self.store.batch():
            new_id = target_parent.insert_clone(subtree, target_position)
            self.remove()

        return new_id

    def clone(self) -> dict[str, TreeNode]:
        """
        Copy this node and its descendants. Keys are ids relative to a freshly
        generated root segment, preserving the subtree's paths. Doesn't
        modify the store.
        """
        data = self.data
        if data is None:
            return {}

        root_id = self._tree.generate_segment()
        result: dict[str, TreeNode] = {
            root_id: TreeNode(
                id=root_id,
                position=data.position,
                value=copy.deepcopy(data.value),
                type=data.type,
            )
        }

        prefix_len = len(self._id) + len(self._sep)
        for node_id in self.get_descendant_ids():
            node = as_tree_node(self.store.get(node_id))
            new_id = f"{root_id}{self._sep}{node_id[prefix_len:]}"
            result[new_id] = TreeNode(
                id=new_id,
                position=node.position,
                value=copy.deepcopy(node.value),
                type=node.type,
            )

        return result

    def insert_clone(
        self,
        subtree: dict[str, TreeNode],
        position: int | float | None = None,
    ) -> str | None:
        """
        Create nodes from the result of {obj}`Node.clone` under this node.

        :param position: Position of the cloned root, or `None` to append
        :returns: Id of the inserted root
        """
        if not subtree:
            return None

        keys = list(subtree)
        root_key = next(
            (k for k in keys if self._sep not in k), min(keys, key=len)
        )

        new_root_id = self._generate_child_id()

        if position is None:
            positions = [c.data.position for c in self.get_children()]
            position = max(positions) + 1 if positions else 0

        # parents before children
        entries = sorted(
            subtree.items(), key=lambda e: get_depth(e[0], self._sep)
        )

        with self.store.batch():
            for clone_id, node in entries:
                if clone_id == root_key:
                    new_id = new_root_id
                    node_position = position
                else:
                    new_id = f"{new_root_id}{clone_id[len(root_key):]}"
                    node_position = node.position

                self.store.create(
                    TreeNode(
                        id=new_id,
                        position=node_position,
                        value=node.value,
                        type=node.type,
                    )
                )

        return new_root_id

    def update_value(self, mutator: Callable[[Any], Any]):
        """
        Apply mutator to a copy of this node's value.
        """

        def patch(draft: Any) -> TreeNode:
            node = as_tree_node(draft)
            result = mutator(node.value)
            if result is not None:
                node.value = result
            return node

        self.store.update(self._id, patch)

    def remove(self):
        """
        Remove this node and all descendants, deepest first.
        """
        node_ids = [self._id] + self.get_descendant_ids()
        node_ids.sort(key=lambda i: get_depth(i, self._sep), reverse=True)

        with self.store.batch():
            for node_id in node_ids:
                self.store.remove(node_id)

    def select(self):
        self.store.select(self._id)

    def _get_siblings(self) -> list[Node] | None:
        parent = self.get_parent()
        return parent.get_children() if parent is not None else None

    def _swap(self, offset: int):
        siblings = self._get_siblings()
        if siblings is None or self not in siblings:
            return

        index = siblings.index(self)
        other_index = index + offset

        if not 0 <= other_index < len(siblings):
            return

        other = siblings[other_index]
        position = self.data.position
        other_position = other.data.position

        if position == other_position:
            # swapping equal positions has no effect
            self.set_position(other_index)
            return

        with self.store.batch():
            self.store.update(other.id, _set_position(position))
            self.store.update(self._id, _set_position(other_position))

    def _move_within_parent(
        self, data: TreeNode, target_position: int | float
    ) -> str | None:
        current = data.position
        if current == target_position:
            return None

        target_sibling = next(
            (
                s
                for s in self._get_siblings() or []
                if s != self and s.data.position == target_position
            ),
            None,
        )

        with self.store.batch():
            if target_sibling is not None:
                self.store.update(target_sibling.id, _set_position(current))
            self.store.update(self._id, _set_position(target_position))

        return self._id

    def _generate_child_id(self) -> str:
        return f"{self._id}{self._sep}{self._tree.generate_segment()}"

    def _create_child(self, value: Any, type: str, position: int | float) -> str:
        return self.store.create(
            TreeNode(
                id=self._generate_child_id(),
                position=position,
                value=value,
                type=type,
            )
        )


def _set_position(position: int | float) -> Callable[[Any], TreeNode]:
    def patch(draft: Any) -> TreeNode:
        node = as_tree_node(draft)
        node.position = position
        return node

    return patch
