"""Per-session conversation controller.

Owns everything that mutates while one session is open: the message store,
the graph state (processed ids, node index, roots) and the pending branch
slot. A controller is created when a session is opened and thrown away when
the user switches to another one.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from .graph import GraphState, TreeNode, fold, path_to
from .messages import Message, MessageStore, StreamingTurn, extract_list_items
from .serialize import rehydrate, serialize_tree

logger = logging.getLogger("tutortree.controller")

DEFAULT_TITLE = "New Conversation"
BRANCH_PROMPT = "Tell me more about: {label}"


class SessionClosedError(RuntimeError):
    pass


class ConversationController:
    def __init__(
        self,
        session_id: str,
        title: str = DEFAULT_TITLE,
        is_public: bool = False,
        share_token: Optional[str] = None,
    ):
        self.session_id = session_id
        self.title = title or DEFAULT_TITLE
        self.is_public = is_public
        self.share_token = share_token
        self.messages = MessageStore()
        self.state = GraphState()
        self.closed = False

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ConversationController":
        """Build a controller from a stored session (see storage.get_session)."""
        ctl = cls(
            record["id"],
            title=record.get("title") or DEFAULT_TITLE,
            is_public=bool(record.get("is_public")),
            share_token=record.get("share_token") or None,
        )
        ctl.messages = MessageStore(record.get("messages") or [])
        rehydrate(record.get("conversation_tree") or [], ctl.state)
        # Stored messages missing from the stored tree are folded sequentially.
        ctl.fold()
        logger.info(
            "Opened session %s: %s messages, %s nodes",
            ctl.session_id,
            len(ctl.messages),
            len(ctl.state.index),
        )
        return ctl

    def _check_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"Session view closed: {self.session_id}")

    # ----------------------------
    # Mutations
    # ----------------------------
    def fold(self) -> GraphState:
        return fold(self.state, self.messages.messages)

    def append_message(
        self,
        role: str,
        content: str,
        msg_id: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> Optional[Message]:
        self._check_open()
        msg = self.messages.append(role, content, msg_id=msg_id, timestamp=timestamp)
        self.fold()
        return msg

    def submit_user_turn(self, content: str) -> Message:
        """Append a user turn; an unfinished assistant turn is abandoned first."""
        self._check_open()
        dropped = self.messages.discard_stream()
        if dropped is not None:
            logger.info("User turn abandons streaming turn %s", dropped.id)
        msg = self.messages.append("user", content)
        self.fold()
        return msg

    def stream_update(self, msg_id: str, content: str) -> StreamingTurn:
        self._check_open()
        return self.messages.stream_update(msg_id, content)

    def finalize_stream(self) -> Optional[Message]:
        self._check_open()
        msg = self.messages.finalize_stream()
        self.fold()
        return msg

    def is_streaming(self, msg_id: str) -> bool:
        turn = self.messages.streaming
        return not self.closed and turn is not None and turn.id == msg_id

    def mark_branch(self, node_id: str, label: str) -> None:
        self._check_open()
        if node_id not in self.state.index:
            logger.warning("Branch requested from unknown node %s", node_id)
        self.state.pending.mark_branch(node_id, label)

    def on_branch_request(self, node_id: str, text: str) -> Message:
        """Start a new line of inquiry from ``node_id`` about the clicked ``text``."""
        text = (text or "").strip()
        if not text:
            raise ValueError("Branch text is required")
        self.mark_branch(node_id, text)
        return self.submit_user_turn(BRANCH_PROMPT.format(label=text))

    def close(self) -> None:
        self.closed = True
        self.messages.discard_stream()
        self.state.pending.clear()

    # ----------------------------
    # Read-only views
    # ----------------------------
    def current_tree(self) -> List[Dict[str, Any]]:
        return serialize_tree(self.state.roots)

    def current_messages(self) -> Tuple[Message, ...]:
        return self.messages.messages

    def node(self, node_id: str) -> Optional[TreeNode]:
        return self.state.index.get(node_id)

    def list_items(self, node_id: str) -> List[str]:
        node = self.state.index.get(node_id)
        if node is None or node.role != "assistant":
            return []
        return extract_list_items(node.content)

    def path_to(self, node_id: str) -> List[TreeNode]:
        return path_to(self.state, node_id)

    def build_context(self, head_id: str, system_prompt: str) -> List[Dict[str, str]]:
        """
        Build the completion context for a reply under ``head_id``.

        Only the head's own ancestry is sent, so a branch does not see the
        sibling lines of inquiry.
        """
        out: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        out.extend(
            {"role": n.role, "content": n.content}
            for n in self.path_to(head_id)
            if n.content and n.role != "system"
        )
        return out
