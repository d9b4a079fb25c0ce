#!/usr/bin/env python3
"""
YAML Tree Accessor for aichatconf

Generic lookup and mutation of named children in a round-trip YAML tree.

The tree is whatever ruamel.yaml produces in round-trip mode: CommentedMap
for mappings, CommentedSeq for sequences, plain Python values for scalars.
Comments live on the container nodes, so values are always updated in place
and containers are never rebuilt.
"""

from enum import Enum
from typing import Any, Optional, Tuple

from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import CommentMark
from ruamel.yaml.tokens import CommentToken


class NodeKind(str, Enum):
    MAPPING = "mapping"
    SEQUENCE = "sequence"
    SCALAR = "scalar"


def node_kind(value: Any) -> NodeKind:
    """Classify a tree value as mapping, sequence or scalar."""
    if isinstance(value, (CommentedMap, dict)):
        return NodeKind.MAPPING
    if isinstance(value, (CommentedSeq, list)):
        return NodeKind.SEQUENCE
    return NodeKind.SCALAR


def get_child(node: Any, key: str, expected_kind: NodeKind) -> Tuple[Any, bool]:
    """
    Look up the value paired with ``key`` in a mapping node.

    Args:
        node: Any tree value (only mappings can have children)
        key: Key to look for
        expected_kind: Kind the value must have to count as found

    Returns:
        (value, True) when found with the right kind, otherwise (None, False).
        Non-mapping nodes, missing keys and kind mismatches are all "not found".
    """
    if node_kind(node) is not NodeKind.MAPPING:
        return None, False
    if key not in node:
        return None, False
    value = node[key]
    # An empty "key:" loads as None, which is a null scalar, not a container
    if value is None and expected_kind is not NodeKind.SCALAR:
        return None, False
    if node_kind(value) is not expected_kind:
        return None, False
    return value, True


def set_child(node: CommentedMap, key: str, value: Any) -> None:
    """
    Set ``key`` to ``value`` in a mapping node.

    An existing key keeps its position and attached comments; ruamel also
    keeps the quoting style when a quoted string is replaced by a plain one.
    A new key is appended after the last existing key.

    Raises:
        TypeError: If ``node`` is not a mapping
    """
    if node_kind(node) is not NodeKind.MAPPING:
        raise TypeError(f"cannot set '{key}' on a {node_kind(node).value} node")
    # Existing keys are updated where they are, new keys go to the end
    node[key] = value


def get_scalar(node: Any, key: str) -> Optional[str]:
    """Return the string form of a scalar child, or None if absent or null."""
    value, found = get_child(node, key, NodeKind.SCALAR)
    if not found or value is None:
        return None
    return str(value)


def _tail_slot(node: Any) -> Optional[Tuple[Any, Any, int]]:
    """
    Find where ruamel keeps the comment after the last line of a block node.

    It sits on the deepest last scalar, in its parent's ``ca.items``: slot 2
    for a mapping value, slot 0 for a sequence item.

    Returns:
        (parent, key, slot), or None for scalars, empty and flow collections
    """
    if isinstance(node, CommentedMap) and len(node) > 0 and not node.fa.flow_style():
        key, slot = list(node.keys())[-1], 2
    elif isinstance(node, CommentedSeq) and len(node) > 0 and not node.fa.flow_style():
        key, slot = len(node) - 1, 0
    else:
        return None
    nested = _tail_slot(node[key])
    if nested is not None:
        return nested
    return node, key, slot


def pop_comment_lines(node: Any) -> Optional[CommentToken]:
    """
    Detach the comment lines and blank lines that follow ``node``.

    ruamel stores them together with the end-of-line comment of the node's
    last line; that comment stays where it is.

    Returns:
        A token holding only the detached lines, or None if there are none
    """
    found = _tail_slot(node)
    if found is None:
        return None
    parent, key, slot = found
    comments = parent.ca.items.get(key)
    if not comments or comments[slot] is None:
        return None
    token = comments[slot]
    value = token.value
    if value.startswith('\n'):
        comments[slot] = None
        return token
    inline, newline, below = value.partition('\n')
    if not below:
        return None
    token.value = inline + newline
    return CommentToken(newline + below, token.start_mark, None)


def attach_comment_lines(node: Any, lines: CommentToken) -> bool:
    """
    Put lines from pop_comment_lines() back after the last line of ``node``.

    Returns:
        False if ``node`` is not a non-empty block collection
    """
    found = _tail_slot(node)
    if found is None:
        return False
    parent, key, slot = found
    comments = parent.ca.items.setdefault(key, [None, None, None, None])
    current = comments[slot]
    if current is None:
        comments[slot] = lines
        return True
    # lines.value starts with the break that ends the current last line
    value = current.value
    if value.endswith('\n'):
        value = value[:-1]
    current.value = value + lines.value
    return True


def prepend_comment_lines(seq: CommentedSeq, lines: CommentToken) -> None:
    """
    Put lines from pop_comment_lines() above the first item of a sequence.

    These go with the sequence's own leading comments, which are written
    verbatim starting at column 0.
    """
    # Drop the line break that ended the previous item's line
    token = CommentToken(lines.value[1:], CommentMark(0), None)
    if seq.ca.comment is None:
        seq.ca.comment = [None, []]
    elif seq.ca.comment[1] is None:
        seq.ca.comment[1] = []
    seq.ca.comment[1].append(token)
