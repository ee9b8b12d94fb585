"""
Tests for the change notification reconciler.
"""
import asyncio

from taskboard.channel import NotificationHub
from taskboard.errors import ChannelDisconnected, TransientFailure
from taskboard.reconciler import BoardReconciler, SubscriptionState
from taskboard.schema import Collection
from taskboard.service import BoardService


class GatedService(BoardService):
    """Holds back the result of selected task refetches until released."""

    def __init__(self, store, actor_id):
        super().__init__(store, actor_id)
        self.gates = []

    def hold_next(self):
        fetched, release = asyncio.Event(), asyncio.Event()
        self.gates.append((fetched, release))
        return fetched, release

    async def list_tasks(self, board_id):
        rows = await super().list_tasks(board_id)
        if self.gates:
            fetched, release = self.gates.pop(0)
            fetched.set()
            await release.wait()
        return rows


class FailingListsService(BoardService):
    def __init__(self, store, actor_id):
        super().__init__(store, actor_id)
        self.broken = False

    async def list_lists(self, board_id):
        if self.broken:
            raise TransientFailure("database is locked")
        return await super().list_lists(board_id)


def flaky_subscribe(hub, failures):
    """Make ``hub.subscribe`` fail ``failures`` times before succeeding."""
    state = {"left": failures, "attempts": 0}

    async def subscribe(board_id):
        state["attempts"] += 1
        if state["left"] > 0:
            state["left"] -= 1
            raise ChannelDisconnected("channel unavailable")
        return await NotificationHub.subscribe(hub, board_id)

    hub.subscribe = subscribe
    return state


async def eventually(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


class TestLifecycle:

    def test_start_loads_and_subscribes(self, store, hub, alice, board, two_lists):
        l1, l2, t1, t2 = two_lists
        reconciler = BoardReconciler(BoardService(store, alice.id), hub, board.id, poll_interval=None)

        async def scenario():
            assert reconciler.state is SubscriptionState.UNSUBSCRIBED
            async with reconciler:
                return reconciler.state, hub.subscriber_count(board.id), reconciler.view.layout()

        state, subscribers, view_layout = asyncio.run(scenario())
        assert state is SubscriptionState.ACTIVE
        assert subscribers == 1
        assert view_layout == {l1.id: [t1.id, t2.id], l2.id: []}
        assert reconciler.state is SubscriptionState.UNSUBSCRIBED
        assert hub.subscriber_count(board.id) == 0

    def test_stop_is_safe_twice(self, store, hub, alice, board):
        reconciler = BoardReconciler(BoardService(store, alice.id), hub, board.id, poll_interval=0.01)

        async def scenario():
            await reconciler.start()
            await reconciler.stop()
            await reconciler.stop()

        asyncio.run(scenario())
        assert hub.subscriber_count(board.id) == 0


class TestEventDrivenRefetch:

    def test_remote_write_reaches_view(self, store, hub, alice, bob, board, two_lists):
        l1, l2, t1, _ = two_lists
        reconciler = BoardReconciler(BoardService(store, alice.id), hub, board.id, poll_interval=None)

        async def scenario():
            async with reconciler:
                await asyncio.to_thread(store.update_task, bob.id, t1.id, list_id=l2.id, position=0)
                await reconciler.wait_idle()
                return reconciler.view.layout()

        view_layout = asyncio.run(scenario())
        assert view_layout[l2.id] == [t1.id]
        assert reconciler.refresh_counts[Collection.TASKS] >= 2

    def test_activity_change_refreshes_activity(self, store, hub, alice, bob, board):
        reconciler = BoardReconciler(BoardService(store, alice.id), hub, board.id, poll_interval=None)

        async def scenario():
            async with reconciler:
                await asyncio.to_thread(store.append_activity, bob.id, board.id, "created", "list")
                await reconciler.wait_idle()
                return reconciler.view.activity()

        entries = asyncio.run(scenario())
        assert len(entries) == 1
        assert entries[0].actor_name == "Bob"

    def test_refresh_callback(self, store, hub, alice, board):
        refreshed = []
        reconciler = BoardReconciler(
            BoardService(store, alice.id), hub, board.id, poll_interval=None, on_refresh=refreshed.append,
        )

        async def scenario():
            async with reconciler:
                pass

        asyncio.run(scenario())
        assert set(refreshed) == set(Collection)


class TestRefetchOrdering:

    def test_invalidations_collapse(self, store, alice, board):
        reconciler = BoardReconciler(BoardService(store, alice.id), NotificationHub(), board.id)

        async def scenario():
            for _ in range(5):
                reconciler.invalidate(Collection.TASKS)
            await reconciler.wait_idle()

        asyncio.run(scenario())
        assert reconciler.slot(Collection.TASKS).issued == 1
        assert reconciler.refresh_counts[Collection.TASKS] == 1

    def test_invalidations_during_running_refetch_start_one_more(self, store, alice, board):
        service = GatedService(store, alice.id)
        reconciler = BoardReconciler(service, NotificationHub(), board.id)
        slot = reconciler.slot(Collection.TASKS)

        async def scenario():
            fetched, release = service.hold_next()
            reconciler.invalidate(Collection.TASKS)
            await asyncio.wait_for(fetched.wait(), 2)
            for _ in range(3):
                reconciler.invalidate(Collection.TASKS)
            release.set()
            await reconciler.wait_idle()

        asyncio.run(scenario())
        assert slot.issued == 2
        assert slot.applied == 2

    def test_late_stale_result_dropped(self, store, alice, board, two_lists):
        l1, l2, t1, t2 = two_lists
        service = GatedService(store, alice.id)
        reconciler = BoardReconciler(service, NotificationHub(), board.id)
        slot = reconciler.slot(Collection.TASKS)

        async def scenario():
            fetched, release = service.hold_next()
            reconciler.invalidate(Collection.TASKS)
            await asyncio.wait_for(fetched.wait(), 2)

            # The first refetch holds a snapshot from before this write
            await asyncio.to_thread(store.create_task, alice.id, l2.id, "Fresh")
            reconciler.invalidate(Collection.TASKS)
            await eventually(lambda: slot.applied == 2)

            release.set()
            await reconciler.wait_idle()
            return [t.title for t in reconciler.view.tasks(l2.id)]

        titles = asyncio.run(scenario())
        assert titles == ["Fresh"]
        assert slot.issued == 2
        assert slot.applied == 2
        assert slot.dropped == 1

    def test_failed_refetch_keeps_last_snapshot(self, store, alice, board, two_lists):
        l1, l2, _, _ = two_lists
        service = FailingListsService(store, alice.id)
        reconciler = BoardReconciler(service, NotificationHub(), board.id)

        async def scenario():
            await reconciler.refresh_all()
            service.broken = True
            await asyncio.to_thread(store.create_list, alice.id, board.id, "Done")
            reconciler.invalidate(Collection.LISTS)
            await reconciler.wait_idle()
            return [l.id for l in reconciler.view.lists()]

        assert asyncio.run(scenario()) == [l1.id, l2.id]


class TestSubscriptionFailures:

    def test_subscribe_failure_enters_error(self, store, hub, alice, board, two_lists):
        attempts = flaky_subscribe(hub, failures=3)
        reconciler = BoardReconciler(
            BoardService(store, alice.id), hub, board.id, poll_interval=None, subscribe_attempts=3,
        )

        async def scenario():
            await reconciler.start()
            state = reconciler.state
            loaded = set(reconciler.view.loaded)
            await reconciler.stop()
            return state, loaded

        state, loaded = asyncio.run(scenario())
        assert state is SubscriptionState.ERROR
        assert attempts["attempts"] == 3
        # Collections are still loaded once so the board is usable
        assert loaded == set(Collection)

    def test_resubscribe_after_error(self, store, hub, alice, bob, board, two_lists):
        _, l2, _, _ = two_lists
        flaky_subscribe(hub, failures=1)
        reconciler = BoardReconciler(
            BoardService(store, alice.id), hub, board.id, poll_interval=None, subscribe_attempts=1,
        )

        async def scenario():
            async with reconciler:
                assert reconciler.state is SubscriptionState.ERROR
                assert await reconciler.resubscribe()
                await reconciler.wait_idle()
                await asyncio.to_thread(store.create_task, bob.id, l2.id, "After recovery")
                await reconciler.wait_idle()
                return reconciler.state, [t.title for t in reconciler.view.tasks(l2.id)]

        state, titles = asyncio.run(scenario())
        assert state is SubscriptionState.ACTIVE
        assert titles == ["After recovery"]

    def test_disconnect_triggers_resubscribe(self, store, hub, alice, bob, board, two_lists):
        _, l2, _, _ = two_lists
        reconciler = BoardReconciler(BoardService(store, alice.id), hub, board.id, poll_interval=None)

        async def scenario():
            async with reconciler:
                assert hub.disconnect(board.id) == 1
                # Written while the channel is down; covered by the post-resubscribe refresh
                await asyncio.to_thread(store.create_task, bob.id, l2.id, "Missed")
                await eventually(lambda: hub.subscriber_count(board.id) == 1)
                await reconciler.wait_idle()
                return reconciler.state, [t.title for t in reconciler.view.tasks(l2.id)]

        state, titles = asyncio.run(scenario())
        assert state is SubscriptionState.ACTIVE
        assert titles == ["Missed"]
        assert hub.subscriber_count(board.id) == 0

    def test_polling_covers_error_state(self, store, hub, alice, bob, board, two_lists):
        _, l2, _, _ = two_lists
        flaky_subscribe(hub, failures=1000)
        reconciler = BoardReconciler(
            BoardService(store, alice.id), hub, board.id, poll_interval=0.01, subscribe_attempts=1,
        )

        async def scenario():
            async with reconciler:
                await asyncio.to_thread(store.create_task, bob.id, l2.id, "Polled")
                await eventually(lambda: [t.title for t in reconciler.view.tasks(l2.id)] == ["Polled"])
                return reconciler.state

        assert asyncio.run(scenario()) is SubscriptionState.ERROR

    def test_poll_recovers_subscription(self, store, hub, alice, board):
        flaky_subscribe(hub, failures=1)
        reconciler = BoardReconciler(
            BoardService(store, alice.id), hub, board.id, poll_interval=0.01, subscribe_attempts=1,
        )

        async def scenario():
            async with reconciler:
                await eventually(lambda: reconciler.state is SubscriptionState.ACTIVE)
                return hub.subscriber_count(board.id)

        assert asyncio.run(scenario()) == 1

    def test_activity_polled_while_active(self, store, hub, alice, board):
        reconciler = BoardReconciler(BoardService(store, alice.id), hub, board.id, poll_interval=0.01)

        async def scenario():
            async with reconciler:
                await eventually(lambda: reconciler.refresh_counts[Collection.ACTIVITY] >= 3)
                return reconciler.refresh_counts[Collection.LISTS]

        # Lists are not polled while notifications flow
        assert asyncio.run(scenario()) == 1
