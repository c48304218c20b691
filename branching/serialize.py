"""Tree serialization and rehydration.

The stored form is a list of nested plain dicts:

    {"id", "content", "role", "children": [...],
     "parentId"?, "timestamp"?, "clickedItem"?, "branchFromNodeId"?}

Both directions walk the tree with an explicit stack so long chains do not
hit the recursion limit.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .graph import GraphState, TreeNode

logger = logging.getLogger("tutortree.serialize")


def node_to_dict(node: TreeNode) -> Dict[str, Any]:
    """Flatten one node (without its children)."""
    out: Dict[str, Any] = {
        "id": node.id,
        "content": node.content,
        "role": node.role,
        "children": [],
    }
    if node.parent_id:
        out["parentId"] = node.parent_id
    if node.timestamp:
        out["timestamp"] = node.timestamp
    if node.branch_origin_id:
        out["clickedItem"] = node.branch_label or ""
        out["branchFromNodeId"] = node.branch_origin_id
    return out


def serialize_tree(roots: Sequence[TreeNode]) -> List[Dict[str, Any]]:
    """Depth-first structural copy of the tree, child order preserved."""
    out: List[Dict[str, Any]] = []
    stack: List[Tuple[TreeNode, List[Dict[str, Any]]]] = [(r, out) for r in reversed(roots)]
    while stack:
        node, siblings = stack.pop()
        data = node_to_dict(node)
        siblings.append(data)
        for child in reversed(node.children):
            stack.append((child, data["children"]))
    return out


def _node_from_dict(data: Dict[str, Any]) -> TreeNode:
    origin = data.get("branchFromNodeId") or None
    return TreeNode(
        id=str(data["id"]),
        content=data.get("content") or "",
        role=data.get("role") or "assistant",
        branch_origin_id=origin,
        branch_label=(data.get("clickedItem") or "") if origin else None,
        timestamp=data.get("timestamp"),
    )


def rehydrate(tree: Optional[Sequence[Dict[str, Any]]], state: Optional[GraphState] = None) -> GraphState:
    """
    Rebuild the node index from a stored tree.

    Prior contents of ``state`` are discarded. Every stored id is marked as
    processed, so later folds treat the reloaded history as closed. A node whose
    id already appeared is skipped together with its subtree.
    """
    state = state if state is not None else GraphState()
    state.reset()

    stack: List[Tuple[Dict[str, Any], Optional[TreeNode]]] = [(d, None) for d in reversed(tree or [])]
    while stack:
        data, parent = stack.pop()
        if not isinstance(data, dict) or not data.get("id"):
            logger.warning("Skipping malformed stored node: %r", data)
            continue
        node = _node_from_dict(data)
        if node.id in state.index:
            logger.warning("Skipping repeated stored node id %s", node.id)
            continue

        if parent is None:
            state.roots.append(node)
        else:
            node.parent_id = parent.id
            parent.add_child(node)
        state.index[node.id] = node
        state.processed_ids.add(node.id)

        for child in reversed(data.get("children") or []):
            stack.append((child, node))

    return state
