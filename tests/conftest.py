from __future__ import annotations

from typing import Dict, List

import pytest
from fastapi.testclient import TestClient

from branching import ConversationController
from storage import SessionStore

REPLY_CHUNKS = ["Here is a plan:\n", "1. Cells\n", "2. Genetics"]


async def fake_completion(messages: List[Dict[str, str]]):
    for chunk in REPLY_CHUNKS:
        yield chunk


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path)


@pytest.fixture
def controller() -> ConversationController:
    return ConversationController("s_test")


@pytest.fixture
def client(store):
    import app as app_module

    app_module.app.dependency_overrides[app_module.get_store] = lambda: store
    app_module.app.dependency_overrides[app_module.get_completion] = lambda: fake_completion
    with TestClient(app_module.app) as c:
        yield c
    app_module.app.dependency_overrides.clear()
