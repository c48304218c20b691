"""Message store for TutorTree.

Holds the ordered, append-only transcript of a chat session together with the
single in-progress assistant turn that the completion stream is still growing.
Only finalized turns are part of the transcript that gets folded into the tree.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger("tutortree.messages")

ROLES = ("user", "assistant", "system")

NUMBERED_ITEM_RE = re.compile(r"^(\s*)(\d+)\.\s+(.+)$")
BULLET_ITEM_RE = re.compile(r"^(\s*)[-*•]\s+(.+)$")


def new_message_id() -> str:
    return uuid.uuid4().hex


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass(frozen=True)
class Message:
    id: str
    role: str
    content: str
    sequence_index: int
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "role": self.role, "content": self.content}
        if self.timestamp:
            out["timestamp"] = self.timestamp
        return out


@dataclass
class StreamingTurn:
    """The assistant turn currently being produced by the completion stream."""

    id: str
    role: str
    content: str = ""


def _check_role(role: str) -> str:
    role = (role or "").lower()
    if role not in ROLES:
        raise ValueError(f"Unknown message role: {role!r}")
    return role


class MessageStore:
    """Append-only sequence of finalized chat turns, keyed by message id."""

    def __init__(self, messages: Optional[Sequence[Dict[str, Any]]] = None):
        self._messages: List[Message] = []
        self._ids: Dict[str, Message] = {}
        self._streaming: Optional[StreamingTurn] = None
        for m in messages or []:
            self.append(m["role"], m.get("content") or "", msg_id=m.get("id"), timestamp=m.get("timestamp"))

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __contains__(self, msg_id: object) -> bool:
        return msg_id in self._ids

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def streaming(self) -> Optional[StreamingTurn]:
        return self._streaming

    def get(self, msg_id: str) -> Optional[Message]:
        return self._ids.get(msg_id)

    def append(
        self,
        role: str,
        content: str,
        msg_id: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> Optional[Message]:
        """
        Append a finalized turn.

        Returns the new Message, or None when a message with the same id is
        already present (the duplicate is skipped).
        """
        role = _check_role(role)
        msg_id = msg_id or new_message_id()
        if msg_id in self._ids:
            logger.warning("Skipping duplicate message id %s", msg_id)
            return None

        msg = Message(
            id=msg_id,
            role=role,
            content=content,
            sequence_index=len(self._messages),
            timestamp=timestamp or _now_iso(),
        )
        self._messages.append(msg)
        self._ids[msg_id] = msg
        return msg

    # ----------------------------
    # Streaming turn
    # ----------------------------
    def stream_update(self, msg_id: str, content: str, role: str = "assistant") -> StreamingTurn:
        """Replace the growing content of the in-progress turn ``msg_id``."""
        if msg_id in self._ids:
            raise ValueError(f"Message already finalized: {msg_id}")
        turn = self._streaming
        if turn is None or turn.id != msg_id:
            if turn is not None:
                logger.info("Dropping unfinished streaming turn %s", turn.id)
            turn = StreamingTurn(id=msg_id, role=_check_role(role))
            self._streaming = turn
        turn.content = content
        return turn

    def finalize_stream(self) -> Optional[Message]:
        turn, self._streaming = self._streaming, None
        if turn is None:
            return None
        return self.append(turn.role, turn.content, msg_id=turn.id)

    def discard_stream(self) -> Optional[StreamingTurn]:
        turn, self._streaming = self._streaming, None
        return turn


def extract_list_items(content: str) -> List[str]:
    """
    Return the clickable list item texts of a message, in order.

    Example:
        1. Photosynthesis
        - Chlorophyll
    gives ["Photosynthesis", "Chlorophyll"].
    """
    items: List[str] = []
    for line in (content or "").split("\n"):
        m = NUMBERED_ITEM_RE.match(line)
        if m:
            items.append(m.group(3).strip())
            continue
        m = BULLET_ITEM_RE.match(line)
        if m:
            items.append(m.group(2).strip())
    return items
