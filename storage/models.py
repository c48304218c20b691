"""Storage models and operations for TutorTree.

Each chat session is kept as a Markdown note under <DATA>/sessions/<session_id>.md:
the session record lives in the YAML frontmatter and the message log in the
body, one "## M<n> (<Role>) <message_id> <timestamp>" section per turn. The
conversation tree sits next to it in <session_id>.tree.json as flat node
records (each with its parentId) in depth-first order.
"""

import functools
import json
import os
import re
import threading
import uuid
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml
from fastapi import HTTPException

# ----------------------------
# Config
# ----------------------------
DATA_DIR = Path(os.environ.get("TUTORTREE_DATA", "data")).expanduser()

MSG_HEADER_RE = re.compile(
    r"^##\s+M(\d+)\s+\((User|Assistant|System)\)\s+(\S+)(?:[ \t]+(\S+))?[ \t]*$", re.M
)
FRONTMATTER_RE = re.compile(r"\A---\n(.*?)\n---\n", re.S)
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
ROLE_LABELS = {"user": "User", "assistant": "Assistant", "system": "System"}


# ----------------------------
# File I/O Helpers
# ----------------------------
def _atomic_write(path: Path, text: str) -> None:
    """Replace ``path`` in one step; readers see the old or the new file, never a partial one."""
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def _read_session_file(path: Path) -> Tuple[Dict[str, Any], str]:
    """Read session file and return (metadata, body)."""
    text = path.read_text(encoding="utf-8")
    m = FRONTMATTER_RE.match(text)
    if m:
        meta = yaml.safe_load(m.group(1)) or {}
        body = text[m.end():].lstrip("\n")
        return meta, body
    return {}, text


def _write_session_file(path: Path, meta: Dict[str, Any], body: str) -> None:
    """Write session file with YAML frontmatter and body."""
    front = "---\n" + yaml.safe_dump(meta, sort_keys=False, allow_unicode=True).strip() + "\n---\n\n"
    _atomic_write(path, front + body.strip() + "\n")


def _now_iso() -> str:
    """Return current time in ISO format."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


# ----------------------------
# Tree Records
# ----------------------------
def flatten_tree(tree: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Nested tree -> flat node records in depth-first order.

    Each record keeps every key but ``children``; ``parentId`` is taken from
    the structure. The result nests two levels deep however long a chain is.
    """
    records: List[Dict[str, Any]] = []
    stack: List[Tuple[Dict[str, Any], Optional[str]]] = [(n, None) for n in reversed(tree or [])]
    while stack:
        node, parent_id = stack.pop()
        record = {k: v for k, v in node.items() if k != "children"}
        if parent_id:
            record["parentId"] = parent_id
        records.append(record)
        for child in reversed(node.get("children") or []):
            stack.append((child, node.get("id")))
    return records


def nest_tree(records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Flat node records -> nested tree.

    A record whose ``parentId`` was not seen earlier in the list becomes a root.
    """
    roots: List[Dict[str, Any]] = []
    by_id: Dict[str, Dict[str, Any]] = {}
    for record in records:
        if not isinstance(record, dict):
            continue
        node = dict(record)
        node["children"] = []
        parent = by_id.get(node.get("parentId") or "")
        if parent is not None:
            parent["children"].append(node)
        else:
            roots.append(node)
        if node.get("id"):
            by_id.setdefault(node["id"], node)
    return roots


# ----------------------------
# Message Parsing
# ----------------------------
def parse_messages(body: str) -> List[Dict[str, Any]]:
    """
    Parse messages from session markdown body.

    Example:
        ## M1 (User) 5f0c... 2025-01-01T10:00:00+00:00
        text...
        ## M2 (Assistant) 9ab1...
        ...
    """
    matches = list(MSG_HEADER_RE.finditer(body))
    messages: List[Dict[str, Any]] = []

    for i, m in enumerate(matches):
        start = m.end()
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        msg: Dict[str, Any] = {
            "order": int(m.group(1)),
            "id": m.group(3),
            "role": m.group(2).lower(),
            "content": body[start:end].strip("\n").strip(),
        }
        if m.group(4):
            msg["timestamp"] = m.group(4)
        messages.append(msg)

    return messages


def _format_message(order: int, msg: Dict[str, Any]) -> str:
    label = ROLE_LABELS.get((msg.get("role") or "").lower(), "Assistant")
    header = f"## M{order} ({label}) {msg['id']}"
    if msg.get("timestamp"):
        header += f" {msg['timestamp']}"
    return header + "\n" + (msg.get("content") or "").strip() + "\n\n"


def _with_lock(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


# ----------------------------
# Session Store
# ----------------------------
class SessionStore:
    """File-backed session store; one frontmatter note plus one tree file per session."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.session_dir = self.root / "sessions"
        self.session_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _paths(self, session_id: str) -> Tuple[Path, Path]:
        if not SESSION_ID_RE.match(session_id or ""):
            raise HTTPException(404, f"Session not found: {session_id}")
        return (
            self.session_dir / f"{session_id}.md",
            self.session_dir / f"{session_id}.tree.json",
        )

    def _load(self, session_id: str) -> Tuple[Dict[str, Any], str]:
        path, _tree_path = self._paths(session_id)
        if not path.exists():
            raise HTTPException(404, f"Session not found: {session_id}")
        meta, body = _read_session_file(path)
        meta = meta or {}
        meta.setdefault("id", session_id)
        return meta, body

    def _read_tree(self, session_id: str) -> List[Dict[str, Any]]:
        _path, tree_path = self._paths(session_id)
        if not tree_path.exists():
            return []
        return nest_tree(json.loads(tree_path.read_text(encoding="utf-8")) or [])

    def _record(self, meta: Dict[str, Any], messages: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        record = dict(meta)
        record.setdefault("title", record.get("id", ""))
        record.setdefault("is_public", False)
        record.setdefault("message_count", 0)
        record["conversation_tree"] = self._read_tree(record["id"])
        if messages is not None:
            record["messages"] = messages
        return record

    # ----------------------------
    # Session Operations
    # ----------------------------
    @_with_lock
    def create_session(self, owner_id: str, title: str) -> Dict[str, Any]:
        """Create an empty session owned by ``owner_id``."""
        session_id = f"s_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"
        meta: Dict[str, Any] = {
            "id": session_id,
            "owner_id": owner_id,
            "title": title,
            "is_public": False,
            "share_token": uuid.uuid4().hex,
            "created_at": _now_iso(),
            "updated_at": _now_iso(),
            "message_count": 0,
        }
        path, _tree_path = self._paths(session_id)
        _write_session_file(path, meta, "")
        return self._record(meta, messages=[])

    @_with_lock
    def get_session(self, session_id: str) -> Dict[str, Any]:
        """Get a single session with its ordered messages."""
        meta, body = self._load(session_id)
        return self._record(meta, messages=parse_messages(body))

    @_with_lock
    def update_session(
        self,
        session_id: str,
        title: Optional[str] = None,
        messages: Optional[Sequence[Dict[str, Any]]] = None,
        tree: Optional[List[Dict[str, Any]]] = None,
        derived_title: Optional[str] = None,
        placeholder_title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Update a session.

        Messages are appended, never rewritten: only ids not yet stored are
        added, in the order given. ``title`` always replaces the stored title;
        ``derived_title`` only does while the stored title is empty or still
        ``placeholder_title``.
        """
        meta, body = self._load(session_id)
        path, tree_path = self._paths(session_id)
        tree_text = None if tree is None else json.dumps(flatten_tree(tree), ensure_ascii=False)

        if title:
            meta["title"] = title
        elif derived_title and (not meta.get("title") or meta.get("title") == placeholder_title):
            meta["title"] = derived_title

        if messages:
            existing = parse_messages(body)
            seen = {m["id"] for m in existing}
            additions = []
            for msg in messages:
                if not msg.get("id") or msg["id"] in seen:
                    continue
                seen.add(msg["id"])
                additions.append(_format_message(len(existing) + len(additions) + 1, msg))
            if additions:
                body = (body.rstrip() + "\n\n" + "".join(additions)).lstrip("\n")
            meta["message_count"] = len(existing) + len(additions)

        meta["updated_at"] = _now_iso()
        _write_session_file(path, meta, body)
        if tree_text is not None:
            _atomic_write(tree_path, tree_text)
        return self._record(meta)

    @_with_lock
    def delete_session(self, session_id: str) -> bool:
        """Delete a session together with its messages and tree."""
        path, tree_path = self._paths(session_id)
        if not path.exists():
            return False
        path.unlink()
        if tree_path.exists():
            tree_path.unlink()
        return True

    @_with_lock
    def _all_sessions(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for f in self.session_dir.glob("*.md"):
            meta, _body = _read_session_file(f)
            meta = meta or {}
            meta.setdefault("id", f.stem)
            meta.setdefault("updated_at", "")
            out.append(self._record(meta))
        out.sort(key=lambda s: str(s.get("updated_at") or ""), reverse=True)
        return out

    def list_sessions_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        """List a user's sessions, most recently updated first."""
        return [s for s in self._all_sessions() if s.get("owner_id") == owner_id]

    def list_private_sessions(self, owner_id: str) -> List[Dict[str, Any]]:
        return [s for s in self.list_sessions_by_owner(owner_id) if not s.get("is_public")]

    def list_public_sessions(self, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List public sessions, optionally only those of ``owner_id``."""
        return [
            s
            for s in self._all_sessions()
            if s.get("is_public") and (owner_id is None or s.get("owner_id") == owner_id)
        ]

    def list_public_sessions_excluding_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        return [s for s in self.list_public_sessions() if s.get("owner_id") != owner_id]

    # ----------------------------
    # Sharing
    # ----------------------------
    @_with_lock
    def set_public(self, session_id: str, is_public: bool) -> Dict[str, Any]:
        meta, body = self._load(session_id)
        path, _tree_path = self._paths(session_id)
        meta["is_public"] = bool(is_public)
        if not meta.get("share_token"):
            meta["share_token"] = uuid.uuid4().hex
        meta["updated_at"] = _now_iso()
        _write_session_file(path, meta, body)
        return self._record(meta)

    @_with_lock
    def get_by_share_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the session (with messages) for ``token`` while it is public."""
        if not token:
            return None
        for f in self.session_dir.glob("*.md"):
            meta, body = _read_session_file(f)
            if meta and meta.get("share_token") == token and meta.get("is_public"):
                meta.setdefault("id", f.stem)
                return self._record(meta, messages=parse_messages(body))
        return None


@lru_cache(maxsize=1)
def get_store() -> SessionStore:
    return SessionStore(DATA_DIR)
