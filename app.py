"""
TutorTree — branching tutor chat over a hosted LLM

- Stores each session as a Markdown note under <DATA>/sessions/<session_id>.md (see storage)
- Any list item of an assistant answer can be clicked to branch the conversation from that answer
- On reply, builds context = root-to-head path of the tree, so a branch only sees its own line of inquiry
- Identity comes from an upstream auth proxy via X-User-Id / X-User-Email / X-User-Name headers

Run:
  pip install -e .
  export TUTORTREE_DATA="/absolute/path/to/data"
  export OPENAI_API_KEY="..."
  uvicorn app:app --reload --port 8787
"""

from __future__ import annotations

import logging
import os
from collections import OrderedDict
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

# OpenAI Python SDK (official)
from openai import AsyncOpenAI, OpenAIError

from branching import DEFAULT_TITLE, ConversationController, SessionSync, overall_stats, session_stats
from storage import SessionStore, get_store

# ----------------------------
# Config
# ----------------------------
MODEL = os.environ.get("TUTORTREE_MODEL", "gpt-4o-mini")
SYSTEM_PROMPT = os.environ.get(
    "TUTORTREE_SYSTEM_PROMPT",
    "You are an expert AI tutor specialized in personalized learning. "
    "Assess the student's current understanding, break complex topics into manageable chunks, "
    "use examples and analogies, and end with a short numbered list of related topics to explore next.",
)
MAX_VIEWS = int(os.environ.get("TUTORTREE_MAX_VIEWS", "256"))

logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s - %(message)s")
logger = logging.getLogger("tutortree")


# ----------------------------
# OpenAI call
# ----------------------------
@lru_cache(maxsize=1)
def get_client() -> AsyncOpenAI:
    return AsyncOpenAI()


async def call_chatgpt_stream(messages: List[Dict[str, str]]) -> AsyncIterator[str]:
    """
    Streams the reply text via the Responses API of the official SDK.
    """
    try:
        stream = await get_client().responses.create(
            model=MODEL,
            input=messages,
            stream=True,
        )
        async for event in stream:
            if event.type == "response.output_text.delta":
                yield event.delta
    except OpenAIError as e:
        logger.exception("Completion failed: %s", e)
        raise


def get_completion():
    return call_chatgpt_stream


# ----------------------------
# Identity
# ----------------------------
class User(BaseModel):
    id: str
    email: str = ""
    name: str = ""


def current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> Optional[User]:
    if not x_user_id:
        return None
    return User(id=x_user_id, email=x_user_email or "", name=x_user_name or "")


def require_user(user: Optional[User] = Depends(current_user)) -> User:
    if user is None:
        raise HTTPException(401, "Unauthorized")
    return user


# ----------------------------
# FastAPI
# ----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.views = OrderedDict()
    yield
    for view in list(app.state.views.values()):
        await view.close()


app = FastAPI(title="TutorTree", lifespan=lifespan)


async def get_view(
    request: Request,
    user: User = Depends(require_user),
    store: SessionStore = Depends(get_store),
) -> SessionSync:
    """
    The open-session view of the calling user.

    Views are kept least recently used first; beyond MAX_VIEWS the oldest is
    closed (flushing its pending save) and dropped.
    """
    views = _views(request)
    view = views.get(user.id)
    if view is None or view.store is not store:
        view = SessionSync(store, user.id)
        views[user.id] = view
    views.move_to_end(user.id)
    while len(views) > max(MAX_VIEWS, 1):
        owner_id, stale = views.popitem(last=False)
        await stale.close()
        logger.info("Evicted session view of %s", owner_id)
    return view


def _views(request: Request) -> "OrderedDict[str, SessionSync]":
    views = getattr(request.app.state, "views", None)
    if views is None:
        views = request.app.state.views = OrderedDict()
    return views


def _owned_session(store: SessionStore, session_id: str, user: User) -> Dict[str, Any]:
    record = store.get_session(session_id)
    if record.get("owner_id") != user.id:
        raise HTTPException(403, "Forbidden")
    return record


def _view_payload(ctl: ConversationController) -> Dict[str, Any]:
    return {
        "session": {
            "id": ctl.session_id,
            "title": ctl.title,
            "is_public": ctl.is_public,
            "share_token": ctl.share_token,
        },
        "messages": [m.to_dict() for m in ctl.current_messages()],
        "tree": ctl.current_tree(),
    }


@app.get("/health")
def health():
    return {"status": "ok"}


# ----------------------------
# Sessions
# ----------------------------
class CreateSessionReq(BaseModel):
    title: str = ""


@app.post("/api/sessions")
def api_create_session(
    req: CreateSessionReq,
    user: User = Depends(require_user),
    store: SessionStore = Depends(get_store),
):
    return {"session": store.create_session(user.id, req.title.strip() or DEFAULT_TITLE)}


@app.get("/api/sessions")
def api_sessions(user: User = Depends(require_user), store: SessionStore = Depends(get_store)):
    return {"sessions": store.list_sessions_by_owner(user.id)}


@app.get("/api/sessions/private")
def api_private_sessions(user: User = Depends(require_user), store: SessionStore = Depends(get_store)):
    return {"sessions": store.list_private_sessions(user.id)}


@app.get("/api/sessions/public")
def api_public_sessions(user: User = Depends(require_user), store: SessionStore = Depends(get_store)):
    return {"sessions": store.list_public_sessions(user.id)}


@app.get("/api/sessions/shared")
def api_shared_sessions(user: User = Depends(require_user), store: SessionStore = Depends(get_store)):
    return {"sessions": store.list_public_sessions_excluding_owner(user.id)}


@app.get("/api/sessions/{session_id}")
def api_session(session_id: str, user: User = Depends(require_user), store: SessionStore = Depends(get_store)):
    return {"session": _owned_session(store, session_id, user)}


class UpdateSessionReq(BaseModel):
    title: Optional[str] = None
    messages: Optional[List[Dict[str, Any]]] = None
    conversation_tree: Optional[List[Dict[str, Any]]] = None


@app.put("/api/sessions/{session_id}")
async def api_update_session(
    session_id: str,
    req: UpdateSessionReq,
    view: SessionSync = Depends(get_view),
    user: User = Depends(require_user),
    store: SessionStore = Depends(get_store),
):
    await run_in_threadpool(_owned_session, store, session_id, user)
    title = (req.title or "").strip() or None
    record = await run_in_threadpool(
        store.update_session,
        session_id,
        title=title,
        messages=req.messages,
        tree=req.conversation_tree,
    )
    if title:
        view.note_title(session_id, title)
    return {"session": record}


@app.delete("/api/sessions/{session_id}")
async def api_delete_session(
    session_id: str,
    request: Request,
    view: SessionSync = Depends(get_view),
    user: User = Depends(require_user),
    store: SessionStore = Depends(get_store),
):
    await run_in_threadpool(_owned_session, store, session_id, user)
    if view.session_id == session_id:
        await view.close(flush=False)
        _views(request).pop(user.id, None)
    await run_in_threadpool(store.delete_session, session_id)
    return {"ok": True}


class ShareReq(BaseModel):
    is_public: bool


@app.post("/api/sessions/{session_id}/share")
async def api_share_session(
    session_id: str,
    req: ShareReq,
    view: SessionSync = Depends(get_view),
    user: User = Depends(require_user),
    store: SessionStore = Depends(get_store),
):
    await run_in_threadpool(_owned_session, store, session_id, user)
    record = await run_in_threadpool(store.set_public, session_id, req.is_public)
    view.note_sharing(session_id, record["is_public"], record.get("share_token"))
    return {
        "session": record,
        "share_url": f"/share/{record['share_token']}" if record["is_public"] else None,
    }


@app.get("/api/share/{token}")
def api_shared(token: str, store: SessionStore = Depends(get_store)):
    record = store.get_by_share_token(token)
    if record is None:
        raise HTTPException(404, "Session not found or not public")
    return {
        "session": {
            "id": record["id"],
            "title": record.get("title"),
            "created_at": record.get("created_at"),
            "updated_at": record.get("updated_at"),
            "message_count": record.get("message_count"),
        },
        "messages": record["messages"],
        "tree": record["conversation_tree"],
    }


# ----------------------------
# Open session view
# ----------------------------
@app.post("/api/sessions/{session_id}/open")
async def api_open_session(
    session_id: str,
    view: SessionSync = Depends(get_view),
    user: User = Depends(require_user),
    store: SessionStore = Depends(get_store),
):
    await run_in_threadpool(_owned_session, store, session_id, user)
    ctl = await view.load(session_id)
    return _view_payload(ctl)


@app.post("/api/chat/new")
async def api_new_chat(req: CreateSessionReq, view: SessionSync = Depends(get_view)):
    ctl = await view.new_session(req.title.strip() or None)
    return _view_payload(ctl)


@app.get("/api/chat/tree")
async def api_tree(view: SessionSync = Depends(get_view)):
    return {"tree": view.require_controller().current_tree()}


@app.get("/api/chat/messages")
async def api_messages(view: SessionSync = Depends(get_view)):
    return {"messages": [m.to_dict() for m in view.require_controller().current_messages()]}


@app.get("/api/chat/items/{node_id}")
async def api_items(node_id: str, view: SessionSync = Depends(get_view)):
    ctl = view.require_controller()
    if ctl.node(node_id) is None:
        raise HTTPException(404, f"Node not found: {node_id}")
    return {"node_id": node_id, "items": ctl.list_items(node_id)}


class ReplyReq(BaseModel):
    user_text: str


@app.post("/api/chat/reply")
async def api_reply(req: ReplyReq, view: SessionSync = Depends(get_view), complete=Depends(get_completion)):
    if not req.user_text.strip():
        raise HTTPException(400, "user_text is required")
    view.submit(req.user_text)
    return StreamingResponse(view.respond(complete, SYSTEM_PROMPT), media_type="text/plain")


class BranchReq(BaseModel):
    node_id: str
    text: str


@app.post("/api/chat/branch")
async def api_branch(req: BranchReq, view: SessionSync = Depends(get_view), complete=Depends(get_completion)):
    try:
        view.branch(req.node_id, req.text)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return StreamingResponse(view.respond(complete, SYSTEM_PROMPT), media_type="text/plain")


@app.post("/api/chat/save")
async def api_save(view: SessionSync = Depends(get_view)):
    ctl = view.require_controller()
    view.cancel_pending_save()
    saved = await view.save(ctl)
    if not saved and view.last_error:
        raise HTTPException(503, f"Save failed: {view.last_error}")
    return {"saved": saved, "title": ctl.title}


@app.get("/api/stats")
async def api_stats(
    view: SessionSync = Depends(get_view),
    user: User = Depends(require_user),
    store: SessionStore = Depends(get_store),
):
    sessions = await run_in_threadpool(store.list_sessions_by_owner, user.id)
    return {
        "session": session_stats(view.controller) if view.controller else None,
        "overall": overall_stats(sessions),
    }
