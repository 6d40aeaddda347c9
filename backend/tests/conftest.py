from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from symptrack_memory import (  # noqa: E402
    ConversationStore,
    EntityStore,
    EpisodeLinker,
    SQLiteMemoryDB,
    VectorStore,
    WorkingMemoryHydrator,
)


@pytest.fixture
def db(tmp_path) -> SQLiteMemoryDB:
    return SQLiteMemoryDB(str(tmp_path / "symptrack-test.sqlite"))


@pytest.fixture
def store(db) -> EntityStore:
    return EntityStore(db)


@pytest.fixture
def conversations(db) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def vectors(db) -> VectorStore:
    return VectorStore(db)


@pytest.fixture
def hydrator(store) -> WorkingMemoryHydrator:
    return WorkingMemoryHydrator(store)


@pytest.fixture
def linker(store) -> EpisodeLinker:
    return EpisodeLinker(store)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "symptrack-api-test.sqlite"
    monkeypatch.setenv("SYMPTRACK_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # Keep CI deterministic; tests that need providers inject fakes.
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("SYMPTRACK_ADMIN_TOKEN", "")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make
