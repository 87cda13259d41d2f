"""Append-only radix tree used as an in-memory, queryable log.

Keys are fixed-length ASCII strings that are appended in non-decreasing order.
Each key holds one or more values; a value is addressed by its key plus a
logical sequence number that counts from zero within that key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, Iterator, List, Tuple, TypeVar

T = TypeVar("T")


@dataclass
class Node(Generic[T]):
    """A tree node: either an inner node with children or a leaf with values.

    ``length`` is the number of values held in the node's subtree.
    ``first_seq_num`` is the logical sequence number of ``values[0]`` in a leaf.
    """

    key: str = ""
    children: List["Node[T]"] = field(default_factory=list)
    values: List[T] = field(default_factory=list)
    first_seq_num: int = 0
    length: int = 0


def _find_child(nodes: List[Node[T]], key: str) -> Tuple[int, bool]:
    """Binary-search the first child whose key is >= the matching prefix of ``key``.

    Returns the index and whether that child's key equals the prefix exactly.
    """
    low, high = 0, len(nodes) - 1
    while low <= high:
        mid = (low + high) // 2
        child_key = nodes[mid].key
        prefix = key[: len(child_key)]
        if prefix == child_key:
            return mid, True
        if child_key < prefix:
            low = mid + 1
        else:
            high = mid - 1
    return low, False


def _trim_node(node: Node[T], until: str, seq_num: int, exact_key_match: bool) -> int:
    """Remove values below ``until``/``seq_num`` from the subtree; return how many."""
    if not node.children:
        if exact_key_match and node.values:
            physical_index = seq_num - node.first_seq_num
            if physical_index <= 0:
                return 0
            trim_count = min(physical_index, len(node.values))
            node.values = node.values[trim_count:]
            node.first_seq_num += trim_count
            node.length -= trim_count
            return trim_count
        return 0

    idx, is_key_match = _find_child(node.children, until)

    total_trimmed = sum(child.length for child in node.children[:idx])
    node.children = node.children[idx:]

    if node.children and is_key_match:
        child = node.children[0]
        total_trimmed += _trim_node(
            child, until[len(child.key):], seq_num, exact_key_match and is_key_match
        )

    node.length -= total_trimmed
    return total_trimmed


class LogTree(Generic[T]):
    """Radix-tree log that only grows on its rightmost side.

    The root is a sentinel with an empty key that never holds values.
    """

    def __init__(self) -> None:
        self.root: Node[T] = Node()
        self._last_key = ""

    def __len__(self) -> int:
        return self.root.length

    def append(self, key: str, values) -> None:
        """Append ``values`` under ``key``, which must be >= the previous key."""
        values = list(values)
        if not key:
            raise ValueError("key must not be empty")
        if key < self._last_key:
            raise ValueError(
                f"key {key!r} is less than the previously appended key {self._last_key!r}"
            )
        self._last_key = key
        count = len(values)

        node = self.root
        while node.children and key.startswith(node.key):
            rightmost = node.children[-1]
            next_key = key[len(node.key):]
            if not next_key or rightmost.key[0] != next_key[0]:
                break
            node.length += count
            node = rightmost
            key = next_key

        if node is self.root:
            node.children.append(Node(key=key, values=values, length=count))
            node.length += count
            return

        if node.key == key:
            node.values = node.values + values
            node.length += count
            return

        prefix_length = 0
        while (
            prefix_length < len(node.key)
            and prefix_length < len(key)
            and node.key[prefix_length] == key[prefix_length]
        ):
            prefix_length += 1

        if prefix_length == len(node.key):
            node.children.append(Node(key=key[prefix_length:], values=values, length=count))
            node.length += count
            return

        left = Node(
            key=node.key[prefix_length:],
            children=node.children,
            values=node.values,
            first_seq_num=node.first_seq_num,
            length=node.length,
        )
        right = Node(key=key[prefix_length:], values=values, length=count)
        node.children = [left, right]
        node.length += count
        node.key = node.key[:prefix_length]
        node.values = []
        node.first_seq_num = 0

    def read(self, start: str, seq_num: int, limit: int) -> List[T]:
        """Return up to ``limit`` values at or after position (``start``, ``seq_num``)."""
        if seq_num < 0:
            raise ValueError("seq_num must not be negative")
        if limit <= 0:
            raise ValueError("limit must be positive")

        last_key, last_seq_num = self.last_position()
        if start > last_key or (start == last_key and seq_num > last_seq_num):
            return []

        # Seed the stack with the chain of nodes that forms the lower bound.
        stack: List[Tuple[Iterator[Node[T]], List[T]]] = []
        node = self.root
        exact_key_match = True
        remaining_key = start
        while True:
            idx, is_key_match = _find_child(node.children, remaining_key)
            remaining_values = node.values
            if remaining_values and exact_key_match:
                physical_index = max(0, seq_num - node.first_seq_num)
                remaining_values = remaining_values[physical_index:]
            stack.append((iter(node.children[idx + 1:]), remaining_values))

            exact_key_match = exact_key_match and is_key_match

            if not node.children:
                break
            node = node.children[idx]
            remaining_key = remaining_key[len(node.key):]

        entries: List[T] = []
        while stack and len(entries) < limit:
            children, values = stack[-1]
            child = next(children, None)
            if child is not None:
                stack.append((iter(child.children), child.values))
                continue
            entries.extend(values[: limit - len(entries)])
            stack.pop()
        return entries

    def trim(self, until: str, seq_num: int) -> None:
        """Remove every value strictly before position (``until``, ``seq_num``)."""
        if seq_num < 0:
            raise ValueError("seq_num must not be negative")
        if len(self) == 0:
            return
        if until < self.root.children[0].key:
            return
        _trim_node(self.root, until, seq_num, True)
        self._cleanup(self.root)

    def last_position(self) -> Tuple[str, int]:
        """Return the last key and its last sequence number, or ("", -1) if empty."""
        if len(self) == 0:
            return "", -1
        node = self.root
        while node.children:
            node = node.children[-1]
        return self._last_key, node.first_seq_num + len(node.values) - 1

    def _cleanup(self, node: Node[T]) -> None:
        """Drop empty nodes and merge single-child inner nodes into their child."""
        if not node.children:
            return
        for child in node.children:
            self._cleanup(child)
        node.children = [c for c in node.children if c.children or c.values]
        if len(node.children) == 1 and node is not self.root:
            child = node.children[0]
            node.key = node.key + child.key
            node.children = child.children
            node.values = child.values
            node.first_seq_num = child.first_seq_num