"""Shared fixtures for task board tests."""

import sys
from pathlib import Path

import pytest

# Make the repo root importable (taskboard package and taskboard_server)
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskboard.channel import NotificationHub
from taskboard.store import TaskboardStore


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def store(tmp_path, hub):
    return TaskboardStore(str(tmp_path / "taskboard.db"), notifier=hub)


@pytest.fixture
def alice(store):
    return store.create_profile("alice@example.com", "Alice")


@pytest.fixture
def bob(store):
    return store.create_profile("bob@example.com", "Bob")


@pytest.fixture
def mallory(store):
    """A registered user who is not a member of any test board."""
    return store.create_profile("mallory@example.com", "Mallory")


@pytest.fixture
def board(store, alice, bob):
    b = store.create_board(alice.id, "Roadmap", "Q3 plan")
    store.add_member(alice.id, b.id, bob.id)
    return b


@pytest.fixture
def two_lists(store, alice, board):
    """Board B with L1 = {T1 pos0, T2 pos1} and an empty L2."""
    l1 = store.create_list(alice.id, board.id, "Todo")
    l2 = store.create_list(alice.id, board.id, "Doing")
    t1 = store.create_task(alice.id, l1.id, "T1")
    t2 = store.create_task(alice.id, l1.id, "T2")
    return l1, l2, t1, t2
