"""Tests for ordering keys and sibling sorting."""

from taskboard import positions
from taskboard.schema import Task


def make(task_id, position, seq=0, list_id="l1"):
    return Task(id=task_id, list_id=list_id, board_id="b1", title=task_id,
                position=position, position_seq=seq)


def test_ordered_by_position():
    tasks = [make("c", 2), make("a", 0), make("b", 1)]
    assert [t.id for t in positions.ordered(tasks)] == ["a", "b", "c"]


def test_higher_seq_wins_a_shared_position():
    tasks = [make("a", 0, seq=1), make("c", 0, seq=5), make("b", 1, seq=2)]
    assert [t.id for t in positions.ordered(tasks)] == ["c", "a", "b"]


def test_back_seq_sorts_after_shared_position():
    tasks = [make("b", 1, seq=2), make("a", 1, seq=-1), make("c", 2, seq=3)]
    assert [t.id for t in positions.ordered(tasks)] == ["b", "a", "c"]


def test_full_tie_falls_back_to_id():
    tasks = [make("y", 0, seq=3), make("x", 0, seq=3)]
    assert [t.id for t in positions.ordered(tasks)] == ["x", "y"]


def test_dense_rebuilds_indices():
    tasks = [make("a", 4), make("b", 9), make("c", 9, seq=1)]
    assert [(i, t.id) for i, t in positions.dense(tasks)] == [(0, "a"), (1, "c"), (2, "b")]
    assert positions.dense_index(tasks) == {"a": 0, "c": 1, "b": 2}


def test_append_position_is_sibling_count():
    assert positions.append_position([]) == 0
    assert positions.append_position([make("a", 0), make("b", 1), make("c", 2)]) == 3


class TestPlacement:

    def test_move_up_takes_front_seq(self):
        # c dragged to the top of [a, b]
        others = [make("a", 0, seq=1), make("b", 1, seq=2)]
        assert positions.placement(others, 0) == (0, positions.FRONT)

    def test_move_down_one_takes_back_seq(self):
        # a dragged below b in [a, b, c]
        others = [make("b", 1, seq=2), make("c", 2, seq=3)]
        assert positions.placement(others, 1) == (1, positions.BACK)

    def test_move_to_end_takes_back_seq(self):
        others = [make("b", 1, seq=2), make("c", 2, seq=3)]
        assert positions.placement(others, 2) == (2, positions.BACK)

    def test_append_to_dense_list(self):
        others = [make("a", 0), make("b", 1)]
        assert positions.placement(others, 2) == (2, positions.FRONT)

    def test_position_held_between_neighbours(self):
        # A gap left by a removed sibling: b and c sit at 1 and 2
        others = [make("b", 1, seq=2), make("c", 2, seq=3)]
        assert positions.placement(others, 0) == (0, positions.FRONT)
        assert positions.placement(others, 1) == (1, positions.BACK)
        others = [make("b", 3, seq=2), make("c", 5, seq=3)]
        assert positions.placement(others, 1) == (3, positions.BACK)
        assert positions.placement(others, 2) == (5, positions.BACK)

    def test_between_two_equal_positions(self):
        others = [make("a", 1, seq=8), make("b", 1, seq=-2)]
        position, seq = positions.placement(others, 1)
        assert position == 1
        placed = make("x", position, seq=seq)
        assert [t.id for t in positions.ordered(others + [placed])] == ["a", "x", "b"]

    def test_index_clamped(self):
        assert positions.placement([make("a", 0)], -3) == (0, positions.FRONT)
        assert positions.placement([], 5) == (0, positions.FRONT)


class TestAlreadyAt:

    def test_current_display_index(self):
        # Stored positions 1 and 2, shown at 0 and 1
        siblings = [make("b", 1, seq=2), make("c", 2, seq=3)]
        assert positions.already_at(siblings, "c", 1)
        assert not positions.already_at(siblings, "c", 0)

    def test_out_of_range_index_clamped(self):
        siblings = [make("a", 0), make("b", 1)]
        assert positions.already_at(siblings, "b", 10)

    def test_entity_from_another_parent(self):
        assert not positions.already_at([make("a", 0)], "z", 0)


def test_group_by_parent_sorts_each_group():
    tasks = [make("b", 1), make("x", 0, list_id="l2"), make("a", 0)]
    groups = positions.group_by_parent(tasks)
    assert [t.id for t in groups["l1"]] == ["a", "b"]
    assert [t.id for t in groups["l2"]] == ["x"]
