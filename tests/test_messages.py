from __future__ import annotations

import pytest

from branching import BranchIntentTracker, MessageStore, extract_list_items


def test_append_assigns_sequence_and_skips_duplicate_ids() -> None:
    store = MessageStore()
    first = store.append("user", "Hello", msg_id="a")
    second = store.append("assistant", "Hi", msg_id="b")
    assert (first.sequence_index, second.sequence_index) == (0, 1)

    assert store.append("user", "Again", msg_id="a") is None
    assert [m.id for m in store] == ["a", "b"]
    assert store.get("a").content == "Hello"


def test_unknown_role_is_rejected() -> None:
    with pytest.raises(ValueError):
        MessageStore().append("robot", "beep")


def test_streaming_turn_is_not_part_of_transcript_until_finalized() -> None:
    store = MessageStore()
    store.append("user", "Question", msg_id="q")
    store.stream_update("r", "Par")
    store.stream_update("r", "Partial answer")
    assert [m.id for m in store] == ["q"]

    msg = store.finalize_stream()
    assert msg.id == "r"
    assert msg.content == "Partial answer"
    assert store.streaming is None
    assert store.finalize_stream() is None


def test_stream_update_refuses_finalized_id() -> None:
    store = MessageStore()
    store.append("assistant", "Done", msg_id="r")
    with pytest.raises(ValueError):
        store.stream_update("r", "more")


def test_extract_list_items_numbered_and_bulleted() -> None:
    content = "Topics:\n1. Photosynthesis\n2.  Respiration\n- Chlorophyll\n* Stomata\n• Xylem\nPlain line\n3.NoSpace"
    assert extract_list_items(content) == [
        "Photosynthesis",
        "Respiration",
        "Chlorophyll",
        "Stomata",
        "Xylem",
    ]
    assert extract_list_items("") == []


def test_take_branch_clears_slot() -> None:
    tracker = BranchIntentTracker()
    assert tracker.take_branch() is None

    tracker.mark_branch("n1", "X")
    intent = tracker.take_branch()
    assert (intent.origin_node_id, intent.label) == ("n1", "X")
    assert tracker.take_branch() is None


def test_second_mark_overwrites_first() -> None:
    tracker = BranchIntentTracker()
    tracker.mark_branch("n1", "X")
    tracker.mark_branch("n2", "Y")
    assert tracker.peek().label == "Y"
    assert tracker.take_branch().origin_node_id == "n2"
