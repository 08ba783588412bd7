"""Shared test fixtures for board tests."""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent

# Repository root for `pkg.board` and `board_server`, bots/ for the bot module
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / "bots"))

from pkg.board.docstore import MemoryDocumentStore
from pkg.board.store import SqliteDocumentStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each document store backend."""
    if request.param == "memory":
        return MemoryDocumentStore()
    return SqliteDocumentStore(str(tmp_path / "foard.db"))


@pytest.fixture
def memory_store():
    return MemoryDocumentStore()
