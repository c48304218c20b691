"""Learning progress statistics for a session and across a user's sessions."""

from __future__ import annotations

from typing import Any, Dict, Sequence

from .controller import ConversationController
from .graph import count_branch_points
from .serialize import rehydrate


def session_stats(ctl: ConversationController) -> Dict[str, Any]:
    messages = ctl.current_messages()
    return {
        "message_count": len(messages),
        "user_messages": sum(1 for m in messages if m.role == "user"),
        "assistant_messages": sum(1 for m in messages if m.role == "assistant"),
        "branches": count_branch_points(ctl.state.roots),
        "topics_explored": sum(1 for n in ctl.state.index.values() if n.branch_origin_id),
    }


def overall_stats(sessions: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Aggregate over stored session records (as listed by the session store)."""
    total_messages = sum(int(s.get("message_count") or 0) for s in sessions)
    total_branches = sum(
        count_branch_points(rehydrate(s.get("conversation_tree") or []).roots) for s in sessions
    )
    return {
        "total_sessions": len(sessions),
        "total_messages": total_messages,
        "total_branches": total_branches,
        "average_session_length": round(total_messages / len(sessions)) if sessions else 0,
        "public_sessions": sum(1 for s in sessions if s.get("is_public")),
    }
