"""Tests for the optimistic board view."""

from taskboard.schema import BoardList, Collection, Task
from taskboard.view import BoardView


def task(task_id, list_id, position, seq=0):
    return Task(id=task_id, list_id=list_id, board_id="b1", title=task_id,
                position=position, position_seq=seq)


def make_view():
    view = BoardView("b1")
    view.replace(Collection.LISTS, [
        BoardList(id="l1", board_id="b1", name="Todo", position=0, position_seq=1),
        BoardList(id="l2", board_id="b1", name="Doing", position=1, position_seq=2),
    ])
    view.replace(Collection.TASKS, [task("t1", "l1", 0, 3), task("t2", "l1", 1, 4)])
    return view


def test_snapshot_layout():
    view = make_view()
    assert view.layout() == {"l1": ["t1", "t2"], "l2": []}
    assert view.loaded == {Collection.LISTS, Collection.TASKS}


def test_staged_move_shows_immediately():
    view = make_view()
    token = view.stage(Collection.TASKS, "t1", list_id="l2", position=0)
    assert view.layout() == {"l1": ["t2"], "l2": ["t1"]}
    assert view.is_pending("t1")
    assert view.pending_count == 1
    assert token > 0


def test_discard_rolls_back():
    view = make_view()
    token = view.stage(Collection.TASKS, "t1", list_id="l2", position=0)
    view.discard(token)
    assert view.layout() == {"l1": ["t1", "t2"], "l2": []}
    assert not view.is_pending("t1")


def test_confirm_adopts_server_row():
    view = make_view()
    token = view.stage(Collection.TASKS, "t1", list_id="l2", position=0)
    view.confirm(token, task("t1", "l2", 0, 9))
    assert view.pending_count == 0
    assert view.get_task("t1").position_seq == 9
    assert view.layout() == {"l1": ["t2"], "l2": ["t1"]}


def test_refetch_keeps_pending_overlay():
    view = make_view()
    view.stage(Collection.TASKS, "t1", list_id="l2", position=0)
    # A snapshot taken before the move reached the server
    view.replace(Collection.TASKS, [task("t1", "l1", 0, 3), task("t2", "l1", 1, 4)])
    assert view.layout() == {"l1": ["t2"], "l2": ["t1"]}


def test_later_stage_wins():
    view = make_view()
    view.stage(Collection.TASKS, "t1", list_id="l2")
    view.stage(Collection.TASKS, "t1", list_id="l1", position=5)
    assert view.get_task("t1").list_id == "l1"
    assert view.get_task("t1").position == 5


def test_overlay_for_unknown_row_is_ignored():
    view = make_view()
    view.stage(Collection.TASKS, "ghost", title="x")
    assert view.get_task("ghost") is None


def test_list_reorder_overlay():
    view = make_view()
    view.stage(Collection.LISTS, "l2", position=0, position_seq=99)
    assert [l.id for l in view.lists()] == ["l2", "l1"]
    assert view.get_list("l2").position == 0


def test_remove_and_upsert():
    view = make_view()
    view.remove(Collection.TASKS, "t2")
    view.upsert(Collection.TASKS, task("t3", "l2", 0))
    assert view.layout() == {"l1": ["t1"], "l2": ["t3"]}


def test_activity_snapshot_is_copied():
    view = BoardView("b1")
    view.replace(Collection.ACTIVITY, [])
    entries = view.activity()
    entries.append("x")
    assert view.activity() == []
    assert Collection.ACTIVITY in view.loaded
