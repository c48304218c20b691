"""Conversation graph builder.

Folds an append-only message sequence into a tree, one new message at a time.
Each new node hangs under its sequential predecessor unless a pending branch
intent redirects the first new node of a pass to the clicked assistant turn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set

from .intent import BranchIntentTracker, PendingBranch
from .messages import Message

logger = logging.getLogger("tutortree.graph")


@dataclass(eq=False)
class TreeNode:
    id: str
    content: str
    role: str
    children: List["TreeNode"] = field(default_factory=list)
    parent_id: Optional[str] = None
    branch_origin_id: Optional[str] = None
    branch_label: Optional[str] = None
    timestamp: Optional[str] = None

    @property
    def is_branch_point(self) -> bool:
        return len(self.children) > 1

    def add_child(self, child: "TreeNode") -> bool:
        if any(c.id == child.id for c in self.children):
            return False
        self.children.append(child)
        return True


@dataclass
class GraphState:
    """Mutable state of one session's tree, owned by its controller."""

    processed_ids: Set[str] = field(default_factory=set)
    index: Dict[str, TreeNode] = field(default_factory=dict)
    roots: List[TreeNode] = field(default_factory=list)
    pending: BranchIntentTracker = field(default_factory=BranchIntentTracker)

    def reset(self) -> None:
        self.processed_ids = set()
        self.index = {}
        self.roots = []
        self.pending.clear()

    def walk(self) -> Iterator[TreeNode]:
        """Depth-first, children in insertion order."""
        stack = list(reversed(self.roots))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


def _resolve_branch_parent(state: GraphState, intent: PendingBranch) -> Optional[TreeNode]:
    origin = state.index.get(intent.origin_node_id)
    if origin is None:
        logger.warning(
            "Dropping branch intent for unindexed node %s (label=%r)",
            intent.origin_node_id,
            intent.label,
        )
    return origin


def fold(state: GraphState, messages: Sequence[Message]) -> GraphState:
    """
    Fold every message of ``messages`` not yet processed into ``state``.

    Already processed ids are skipped, so calling this again with the same
    sequence is a no-op. The pending branch intent is consumed only when the
    pass actually folds a message. Returns ``state``.
    """
    if all(m.id in state.processed_ids for m in messages):
        return state

    intent = state.pending.take_branch()
    first = True
    folded: Set[str] = set()

    for i, msg in enumerate(messages):
        if msg.id in state.processed_ids:
            if msg.id in folded:
                logger.warning("Skipping duplicate message id %s", msg.id)
            continue

        node = TreeNode(id=msg.id, content=msg.content, role=msg.role, timestamp=msg.timestamp)

        parent: Optional[TreeNode] = None
        if first and intent is not None:
            parent = _resolve_branch_parent(state, intent)
            if parent is not None:
                node.branch_origin_id = parent.id
                node.branch_label = intent.label
        if parent is None and i > 0:
            parent = state.index.get(messages[i - 1].id)
            if parent is None:
                logger.warning("Predecessor of %s is not indexed; folding as root", msg.id)
        first = False

        state.index[node.id] = node
        state.processed_ids.add(node.id)
        folded.add(node.id)
        if parent is not None:
            node.parent_id = parent.id
            parent.add_child(node)
        else:
            state.roots.append(node)

    return state


def path_to(state: GraphState, node_id: str) -> List[TreeNode]:
    """Return the nodes from the root down to ``node_id`` (inclusive)."""
    path: List[TreeNode] = []
    seen: Set[str] = set()
    node = state.index.get(node_id)
    while node is not None and node.id not in seen:
        seen.add(node.id)
        path.append(node)
        node = state.index.get(node.parent_id) if node.parent_id else None
    path.reverse()
    return path


def count_branch_points(roots: Sequence[TreeNode]) -> int:
    total = 0
    stack = list(roots)
    while stack:
        node = stack.pop()
        if node.is_branch_point:
            total += 1
        stack.extend(node.children)
    return total
