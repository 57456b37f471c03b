"""Tests for the latent event arena and assignment vectors."""

import numpy as np
import pytest

from ppseq.errors import AssignmentReferenceError
from ppseq.events import BACKGROUND, AssignmentVector, LatentEvent, LatentEventSet


def make_events(times, max_sequence_length: float = np.inf) -> LatentEventSet:
    events = LatentEventSet(max_sequence_length)
    for t in times:
        events.add(0, t, 1.0)
    return events


class TestLatentEventSet:
    """Test suite for LatentEventSet."""

    def test_ids_stable_and_never_reused(self) -> None:
        """Test that removed ids are not handed out again."""
        events = make_events([1.0, 2.0])
        events.remove(0)
        new_id = events.add(0, 3.0, 1.0)
        assert new_id == 2
        assert events.ids() == [1, 2]

    def test_pinned_id(self) -> None:
        """Test adding with an explicit id advances the id counter."""
        events = LatentEventSet()
        assert events.add(0, 1.0, 1.0, event_id=7) == 7
        assert events.add(0, 2.0, 1.0) == 8
        with pytest.raises(ValueError, match="already live"):
            events.add(0, 3.0, 1.0, event_id=7)

    def test_getitem_unknown(self) -> None:
        """Test that looking up a dead event raises AssignmentReferenceError."""
        events = make_events([1.0])
        with pytest.raises(AssignmentReferenceError, match="not live"):
            events[5]

    def test_remove_requires_empty(self) -> None:
        """Test that an event with spikes cannot be removed."""
        events = make_events([1.0])
        events.assign(3, 0)
        with pytest.raises(ValueError, match="still has"):
            events.remove(0)
        events.unassign(3, 0)
        events.remove(0)
        assert 0 not in events

    def test_members_sorted(self) -> None:
        """Test members are returned as a sorted int64 array."""
        events = make_events([1.0])
        for spike in (5, 2, 9):
            events.assign(spike, 0)
        members = events.members(0)
        np.testing.assert_array_equal(members, [2, 5, 9])
        assert members.dtype == np.int64
        assert events.size(0) == 3

    def test_replace_updates_index(self) -> None:
        """Test that moving an event in time updates neighborhood queries."""
        events = make_events([1.0, 10.0])
        events.replace(0, time=20.0, amplitude=4.0)
        assert events[0] == LatentEvent(0, 0, 20.0, 4.0, 0)
        assert events.events_near(20.0, window=0.5) == [0]
        assert events.events_near(1.0, window=0.5) == []

    def test_replace_cannot_change_id(self) -> None:
        """Test ids are immutable."""
        events = make_events([1.0])
        with pytest.raises(ValueError, match="ids cannot be changed"):
            events.replace(0, id=3)

    def test_events_near(self) -> None:
        """Test neighborhood queries return ids ordered by time."""
        events = make_events([5.0, 1.0, 3.0, 9.0], max_sequence_length=2.0)
        assert events.events_near(3.5) == [2, 0]
        assert events.events_near(3.5, window=0.4) == []
        assert events.events_near(3.5, window=np.inf) == [1, 2, 0, 3]

    def test_unbounded_neighborhood_is_every_event(self) -> None:
        """Test the default infinite max_sequence_length makes every event a neighbor."""
        events = make_events([50.0, 1.0, 99.0])
        assert events.events_near(0.0) == [1, 0, 2]

    def test_events_near_duplicate_times(self) -> None:
        """Test events sharing a time are all found and removable."""
        events = make_events([2.0, 2.0, 2.0])
        events.remove(1)
        assert sorted(events.events_near(2.0, window=0.0)) == [0, 2]

    def test_merge_candidates(self) -> None:
        """Test pairs of events within the window are listed once."""
        events = make_events([0.0, 0.5, 3.0, 3.8])
        assert events.merge_candidates(1.0) == [(0, 1), (2, 3)]
        assert len(events.merge_candidates(10.0)) == 6

    def test_within_bounds(self) -> None:
        """Test the max_sequence_length check."""
        events = LatentEventSet(max_sequence_length=1.0)
        assert events.within_bounds(5.0, np.array([4.5, 5.9]))
        assert not events.within_bounds(5.0, np.array([4.5, 6.1]))
        assert events.within_bounds(5.0, np.array([]))

    def test_copy_independent(self) -> None:
        """Test mutating a copy leaves the original untouched."""
        events = make_events([1.0])
        events.assign(0, 0)
        clone = events.copy()
        clone.unassign(0, 0)
        clone.add(0, 2.0, 1.0)
        assert events.size(0) == 1
        assert len(events) == 1
        assert len(clone) == 2

    def test_snapshot_is_value_copy(self) -> None:
        """Test snapshots do not change when the arena does."""
        events = make_events([1.0, 2.0])
        snapshot = events.snapshot()
        events.replace(0, time=5.0)
        events.remove(1)
        assert snapshot[0].time == 1.0
        assert len(snapshot) == 2

    def test_sacred(self) -> None:
        """Test sacred membership."""
        events = make_events([1.0, 2.0])
        events.sacred = frozenset({1})
        assert events.is_sacred(1)
        assert not events.is_sacred(0)


class TestAssignmentVector:
    """Test suite for AssignmentVector."""

    def test_all_background(self) -> None:
        """Test the all-background initialization."""
        labels = AssignmentVector.all_background(4)
        assert len(labels) == 4
        assert all(labels[i] == BACKGROUND for i in range(4))

    def test_rejects_invalid_labels(self) -> None:
        """Test labels below BACKGROUND are rejected."""
        with pytest.raises(AssignmentReferenceError):
            AssignmentVector(np.array([0, -2]))

    def test_validate_stale_reference(self) -> None:
        """Test labels naming dead events are reported."""
        events = make_events([1.0])
        labels = AssignmentVector(np.array([0, 1, BACKGROUND]))
        with pytest.raises(AssignmentReferenceError, match=r"\[1\]"):
            labels.validate(events)

    def test_snapshot_read_only(self) -> None:
        """Test snapshots are read-only copies."""
        labels = AssignmentVector(np.array([0, BACKGROUND]))
        snapshot = labels.snapshot()
        labels[0] = BACKGROUND
        assert snapshot[0] == 0
        with pytest.raises(ValueError):
            snapshot[0] = 1

    def test_input_not_aliased(self) -> None:
        """Test the vector owns its labels."""
        raw = np.array([0, 1])
        labels = AssignmentVector(raw)
        raw[0] = 5
        assert labels[0] == 0
