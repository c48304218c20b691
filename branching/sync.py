"""Session synchronization.

Keeps the single open session of a user in step with the session store:
debounced saves of (messages, tree, title), wholesale reload on session
switch, and the streaming reply loop that feeds completion chunks into the
open controller.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import yaml
from fastapi import HTTPException

from .controller import DEFAULT_TITLE, ConversationController
from .messages import Message, new_message_id

logger = logging.getLogger("tutortree.sync")

# ----------------------------
# Config
# ----------------------------
SAVE_DELAY = float(os.environ.get("TUTORTREE_SAVE_DELAY", "1.0"))
TITLE_BUDGET = 50
TRUNCATION_MARKER = "..."

CompletionFn = Callable[[List[Dict[str, str]]], AsyncIterator[str]]


def derive_title(current_title: Optional[str], messages: Sequence[Message]) -> Optional[str]:
    """
    Title for a session still carrying the placeholder title.

    Returns None when the title was already set (derived or edited) or when
    there is no user message yet.
    """
    if current_title and current_title != DEFAULT_TITLE:
        return None
    for m in messages:
        if m.role != "user":
            continue
        text = m.content.strip()
        if not text:
            continue
        if len(text) <= TITLE_BUDGET:
            return text
        return text[:TITLE_BUDGET] + TRUNCATION_MARKER
    return None


class SessionSync:
    """The open session view of one user, plus its persistence schedule."""

    def __init__(self, store: Any, owner_id: str, delay: float = SAVE_DELAY):
        self.store = store
        self.owner_id = owner_id
        self.delay = delay
        self.controller: Optional[ConversationController] = None
        self.last_error: Optional[str] = None
        self._save_task: Optional[asyncio.Task] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.controller.session_id if self.controller else None

    @property
    def save_pending(self) -> bool:
        return self._save_task is not None and not self._save_task.done()

    def require_controller(self) -> ConversationController:
        if self.controller is None:
            raise HTTPException(409, "No session is open")
        return self.controller

    # ----------------------------
    # Saving
    # ----------------------------
    def schedule_save(self) -> bool:
        """(Re)start the quiet-period timer; rapid triggers coalesce into one save."""
        ctl = self.controller
        if ctl is None or not ctl.session_id or not len(ctl.messages):
            return False
        self.cancel_pending_save()
        self._save_task = asyncio.get_running_loop().create_task(self._save_later(ctl))
        return True

    def cancel_pending_save(self) -> None:
        task, self._save_task = self._save_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _save_later(self, ctl: ConversationController) -> None:
        await asyncio.sleep(self.delay)
        self._save_task = None
        await self.save(ctl)

    async def save(self, ctl: Optional[ConversationController] = None) -> bool:
        """
        Persist ``ctl`` (default: the open controller) to its own session id.

        A failure is logged and kept in ``last_error``; in-memory state is not
        touched, so the next save simply tries again.
        """
        ctl = ctl or self.controller
        if ctl is None or not ctl.session_id or not len(ctl.messages):
            return False

        derived = derive_title(ctl.title, ctl.messages.messages)
        messages = [m.to_dict() for m in ctl.current_messages()]
        tree = ctl.current_tree()
        try:
            record = await asyncio.to_thread(
                self.store.update_session,
                ctl.session_id,
                messages=messages,
                tree=tree,
                derived_title=derived,
                placeholder_title=DEFAULT_TITLE,
            )
        except (HTTPException, OSError, yaml.YAMLError, RecursionError, ValueError, TypeError) as e:
            detail = getattr(e, "detail", None) or str(e) or type(e).__name__
            self.last_error = str(detail)
            logger.warning("Saving session %s failed: %s", ctl.session_id, detail)
            return False

        stored_title = record.get("title")
        if stored_title and stored_title != ctl.title:
            ctl.title = stored_title
            if stored_title == derived:
                logger.info("Session %s titled %r", ctl.session_id, ctl.title)
        self.last_error = None
        logger.debug("Saved session %s (%s messages)", ctl.session_id, len(messages))
        return True

    async def flush(self) -> bool:
        """Run a pending debounced save now, against the session it was scheduled for."""
        if not self.save_pending:
            return False
        self.cancel_pending_save()
        return await self.save()

    # ----------------------------
    # Session lifecycle
    # ----------------------------
    async def load(self, session_id: str) -> ConversationController:
        """
        Open ``session_id``, replacing the current view wholesale.

        The previous session's pending save is flushed first. If the fetch
        fails the previous view stays open and the error propagates.
        """
        await self.flush()
        record = await asyncio.to_thread(self.store.get_session, session_id)
        await self.close()
        self.controller = ConversationController.from_record(record)
        return self.controller

    async def new_session(self, title: Optional[str] = None) -> ConversationController:
        await self.flush()
        record = await asyncio.to_thread(self.store.create_session, self.owner_id, title or DEFAULT_TITLE)
        await self.close()
        self.controller = ConversationController.from_record(record)
        return self.controller

    async def close(self, flush: bool = True) -> None:
        """Discard the open view; any stream still producing for it is ignored."""
        if flush:
            await self.flush()
        else:
            self.cancel_pending_save()
        ctl, self.controller = self.controller, None
        if ctl is not None:
            ctl.close()
            logger.info("Closed session view %s", ctl.session_id)

    def note_title(self, session_id: str, title: str) -> None:
        """Mirror a user title edit into the open view."""
        if self.controller is not None and self.controller.session_id == session_id and title:
            self.controller.title = title

    def note_sharing(self, session_id: str, is_public: bool, share_token: Optional[str]) -> None:
        if self.controller is not None and self.controller.session_id == session_id:
            self.controller.is_public = is_public
            self.controller.share_token = share_token

    # ----------------------------
    # Conversation events
    # ----------------------------
    def submit(self, content: str) -> Message:
        ctl = self.require_controller()
        msg = ctl.submit_user_turn(content)
        self.schedule_save()
        return msg

    def branch(self, node_id: str, text: str) -> Message:
        ctl = self.require_controller()
        msg = ctl.on_branch_request(node_id, text)
        self.schedule_save()
        return msg

    async def respond(self, complete: CompletionFn, system_prompt: str) -> AsyncIterator[str]:
        """
        Stream an assistant reply to the latest turn.

        Yields text deltas as they arrive. The turn is folded into the tree only
        once the stream ends; if the view is closed or a newer user turn
        abandons it meanwhile, the remaining chunks are ignored.
        """
        ctl = self.require_controller()
        history = ctl.current_messages()
        if not history:
            raise HTTPException(400, "Nothing to reply to")

        context = ctl.build_context(history[-1].id, system_prompt)
        turn_id = new_message_id()
        ctl.stream_update(turn_id, "")
        text = ""
        finished = False
        try:
            async for delta in complete(context):
                if not ctl.is_streaming(turn_id):
                    logger.info("Ignoring stale completion %s for session %s", turn_id, ctl.session_id)
                    return
                text += delta
                ctl.stream_update(turn_id, text)
                yield delta
            finished = True
        finally:
            if not finished and ctl.is_streaming(turn_id):
                ctl.messages.discard_stream()

        if ctl.is_streaming(turn_id):
            ctl.finalize_stream()
            if self.controller is ctl:
                self.schedule_save()
