from __future__ import annotations

import json
import threading

import pytest
from fastapi import HTTPException

from branching import GraphState, MessageStore, fold, path_to, rehydrate, serialize_tree
from storage import flatten_tree, nest_tree, parse_messages


def _msg(msg_id: str, role: str, content: str) -> dict:
    return {"id": msg_id, "role": role, "content": content, "timestamp": "2025-01-01T10:00:00+00:00"}


def test_create_and_get_session(store) -> None:
    created = store.create_session("u1", "New Conversation")
    loaded = store.get_session(created["id"])

    assert loaded["owner_id"] == "u1"
    assert loaded["title"] == "New Conversation"
    assert loaded["is_public"] is False
    assert loaded["share_token"]
    assert loaded["messages"] == []
    assert loaded["conversation_tree"] == []


def test_update_appends_messages_once(store) -> None:
    session_id = store.create_session("u1", "New Conversation")["id"]
    store.update_session(session_id, messages=[_msg("a", "user", "Hi"), _msg("b", "assistant", "1. X\n2. Y")])
    record = store.update_session(
        session_id,
        messages=[_msg("a", "user", "Hi"), _msg("b", "assistant", "1. X\n2. Y"), _msg("c", "user", "More")],
    )
    assert record["message_count"] == 3

    messages = store.get_session(session_id)["messages"]
    assert [m["id"] for m in messages] == ["a", "b", "c"]
    assert [m["order"] for m in messages] == [1, 2, 3]
    assert messages[1]["content"] == "1. X\n2. Y"
    assert messages[1]["role"] == "assistant"
    assert messages[0]["timestamp"] == "2025-01-01T10:00:00+00:00"


def test_update_stores_tree_and_title(store) -> None:
    session_id = store.create_session("u1", "New Conversation")["id"]
    tree = [{"id": "a", "content": "Hi", "role": "user", "children": []}]
    store.update_session(session_id, title="Cells", tree=tree)

    record = store.get_session(session_id)
    assert record["title"] == "Cells"
    assert record["conversation_tree"] == tree


def test_missing_session_is_not_found(store) -> None:
    with pytest.raises(HTTPException) as exc:
        store.get_session("s_nope")
    assert exc.value.status_code == 404
    with pytest.raises(HTTPException):
        store.get_session("../etc/passwd")
    assert store.delete_session("s_nope") is False


def test_delete_removes_session(store) -> None:
    session_id = store.create_session("u1", "New Conversation")["id"]
    store.update_session(session_id, messages=[_msg("a", "user", "Hi")], tree=[])
    assert store.delete_session(session_id) is True
    with pytest.raises(HTTPException):
        store.get_session(session_id)
    assert list(store.session_dir.iterdir()) == []


def test_listings_by_owner_and_visibility(store) -> None:
    mine_private = store.create_session("u1", "Private")["id"]
    mine_public = store.create_session("u1", "Public")["id"]
    theirs_public = store.create_session("u2", "Theirs")["id"]
    store.set_public(mine_public, True)
    store.set_public(theirs_public, True)

    assert {s["id"] for s in store.list_sessions_by_owner("u1")} == {mine_private, mine_public}
    assert [s["id"] for s in store.list_private_sessions("u1")] == [mine_private]
    assert [s["id"] for s in store.list_public_sessions("u1")] == [mine_public]
    assert {s["id"] for s in store.list_public_sessions()} == {mine_public, theirs_public}
    assert [s["id"] for s in store.list_public_sessions_excluding_owner("u1")] == [theirs_public]


def test_share_token_only_resolves_while_public(store) -> None:
    created = store.create_session("u1", "Shared")
    token = created["share_token"]
    assert store.get_by_share_token(token) is None

    record = store.set_public(created["id"], True)
    assert record["share_token"] == token
    assert store.get_by_share_token(token)["id"] == created["id"]

    store.set_public(created["id"], False)
    assert store.get_by_share_token(token) is None


def test_parse_messages_reads_headers() -> None:
    body = "## M1 (User) a1\nHello\n\n## M2 (Assistant) b2 2025-01-01T10:00:00+00:00\n- item\n"
    assert parse_messages(body) == [
        {"order": 1, "id": "a1", "role": "user", "content": "Hello"},
        {"order": 2, "id": "b2", "role": "assistant", "content": "- item", "timestamp": "2025-01-01T10:00:00+00:00"},
    ]


def _chain(length: int):
    messages = MessageStore()
    for i in range(length):
        messages.append("user" if i % 2 == 0 else "assistant", f"m{i}", msg_id=f"m{i}")
    return messages, fold(GraphState(), messages.messages)


def test_long_chain_saved_and_reloaded(store) -> None:
    messages, state = _chain(1200)
    session_id = store.create_session("u1", "New Conversation")["id"]
    store.update_session(
        session_id,
        messages=[m.to_dict() for m in messages.messages],
        tree=serialize_tree(state.roots),
    )

    record = store.get_session(session_id)
    assert record["message_count"] == 1200
    restored = rehydrate(record["conversation_tree"])
    assert len(restored.index) == 1200
    assert [n.id for n in path_to(restored, "m1199")][:3] == ["m0", "m1", "m2"]
    assert len(path_to(restored, "m1199")) == 1200

    stored = json.loads(store._paths(session_id)[1].read_text(encoding="utf-8"))
    assert len(stored) == 1200
    assert all("children" not in r for r in stored)
    assert "parentId" not in stored[0]
    assert (stored[1]["id"], stored[1]["role"], stored[1]["parentId"]) == ("m1", "assistant", "m0")


def test_tree_records_keep_child_order_and_branch_tags() -> None:
    tree = [
        {
            "id": "a",
            "content": "Hi",
            "role": "user",
            "children": [
                {"id": "b", "content": "1. X", "role": "assistant", "parentId": "a", "children": [
                    {"id": "c", "content": "More", "role": "user", "parentId": "b", "children": []},
                    {
                        "id": "d",
                        "content": "Tell me more about: X",
                        "role": "user",
                        "parentId": "b",
                        "clickedItem": "X",
                        "branchFromNodeId": "b",
                        "children": [],
                    },
                ]},
            ],
        },
        {"id": "z", "content": "Other root", "role": "user", "children": []},
    ]
    records = flatten_tree(tree)
    assert [r["id"] for r in records] == ["a", "b", "c", "d", "z"]
    assert nest_tree(records) == tree


def test_nest_tree_promotes_unknown_parent_to_root() -> None:
    roots = nest_tree([{"id": "x", "content": "", "role": "user", "parentId": "gone"}])
    assert [r["id"] for r in roots] == ["x"]


def test_derived_title_never_replaces_edited_title(store) -> None:
    session_id = store.create_session("u1", "New Conversation")["id"]
    store.update_session(session_id, title="Biology revision")
    record = store.update_session(
        session_id, derived_title="Teach me biology", placeholder_title="New Conversation"
    )
    assert record["title"] == "Biology revision"

    other_id = store.create_session("u1", "New Conversation")["id"]
    record = store.update_session(
        other_id, derived_title="Teach me biology", placeholder_title="New Conversation"
    )
    assert record["title"] == "Teach me biology"


def test_readers_never_see_partial_writes(store) -> None:
    created = store.create_session("u1", "Shared")
    session_id = created["id"]
    store.set_public(session_id, True)
    messages, state = _chain(300)
    payload = [m.to_dict() for m in messages.messages]
    tree = serialize_tree(state.roots)
    errors = []
    done = threading.Event()

    def writer():
        try:
            for _ in range(40):
                store.update_session(session_id, messages=payload, tree=tree)
        finally:
            done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    reads = 0
    while not done.is_set() or reads < 40:
        try:
            assert store.get_session(session_id)["id"] == session_id
            assert store.get_by_share_token(created["share_token"])["id"] == session_id
        except (HTTPException, KeyError, ValueError, TypeError) as e:
            errors.append(type(e).__name__)
        reads += 1
    thread.join()

    assert errors == []
    assert [p.name for p in store.session_dir.iterdir() if p.name.endswith(".tmp")] == []
