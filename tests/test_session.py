"""Tests for BoardSession, the per-board client entry points."""

import asyncio

import pytest

from taskboard.config import Config
from taskboard.reconciler import SubscriptionState
from taskboard.schema import ActivityAction, EntityType
from taskboard.session import BoardSession

NO_POLL = Config(activity_poll_interval=0)


def test_session_flow(store, hub, alice, board, two_lists):
    l1, l2, t1, t2 = two_lists

    async def scenario():
        async with BoardSession(store, hub, alice.id, board.id, NO_POLL) as session:
            done = await session.create_entity_at_end(EntityType.LIST, board.id, "Done")
            t3 = await session.create_entity_at_end(EntityType.TASK, l1.id, "T3", priority="high")
            await session.move_entity(EntityType.TASK, t1.id, l2.id, 0)
            await session.reconciler.wait_idle()
            return session, done, t3, session.view.layout()

    session, done, t3, view_layout = asyncio.run(scenario())
    assert done.position == 2
    assert t3.position == 2
    assert view_layout == {l1.id: [t2.id, t3.id], l2.id: [t1.id], done.id: []}

    recent = asyncio.run(session.list_recent_activity())
    assert [e.action for e in recent] == [
        ActivityAction.MOVED, ActivityAction.CREATED, ActivityAction.CREATED,
    ]
    assert hub.subscriber_count(board.id) == 0


def test_other_session_sees_move(store, hub, alice, bob, board, two_lists):
    l1, l2, t1, t2 = two_lists

    async def scenario():
        async with BoardSession(store, hub, bob.id, board.id, NO_POLL) as watcher:
            async with BoardSession(store, hub, alice.id, board.id, NO_POLL) as mover:
                await mover.move_entity(EntityType.TASK, t1.id, l2.id, 0)
                await watcher.reconciler.wait_idle()
                return watcher.view.layout()

    assert asyncio.run(scenario()) == {l1.id: [t2.id], l2.id: [t1.id]}


def test_subscribe_to_board_context(store, hub, alice, board):
    session = BoardSession(store, hub, alice.id, board.id, NO_POLL)

    async def scenario():
        async with session.subscribe_to_board() as reconciler:
            return reconciler.state, hub.subscriber_count(board.id)

    assert asyncio.run(scenario()) == (SubscriptionState.ACTIVE, 1)
    assert hub.subscriber_count(board.id) == 0


def test_list_parent_must_be_session_board(store, hub, alice, board):
    session = BoardSession(store, hub, alice.id, board.id, NO_POLL)
    with pytest.raises(ValueError):
        asyncio.run(session.create_entity_at_end(EntityType.LIST, "other-board", "X"))


def test_recent_activity_limit(store, hub, alice, board):
    for i in range(5):
        store.append_activity(alice.id, board.id, "updated", "task", entity_name=str(i))
    session = BoardSession(store, hub, alice.id, board.id, Config(activity_limit=3, activity_poll_interval=0))

    assert len(asyncio.run(session.list_recent_activity())) == 3
    assert len(asyncio.run(session.list_recent_activity(limit=1))) == 1
