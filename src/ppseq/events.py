"""Latent sequence events, their arena with a temporal index, and spike assignments."""

import bisect
from collections.abc import Iterator
from dataclasses import dataclass, replace

import numpy as np
from numpy.typing import NDArray

from ._validation import readonly
from .errors import AssignmentReferenceError

BACKGROUND = -1


@dataclass(frozen=True)
class LatentEvent:
    """One occurrence of a sequence.

    Attributes:
        id: Stable arena id, never reused within a run
        seq_type: Sequence type index in [0, R)
        time: Onset time in (0, T]
        amplitude: Expected number of spikes emitted (> 0)
        warp_index: Index into the warp grid of the global parameters
    """

    id: int
    seq_type: int
    time: float
    amplitude: float
    warp_index: int = 0


class LatentEventSet:
    """Arena of live events keyed by stable integer ids.

    Besides the events themselves the arena owns, for every event, the set of
    spike indices assigned to it, and a time-sorted index used to find the
    events near a spike without scanning the whole arena.

    Parameters
    ----------
    max_sequence_length : float
        Largest allowed distance between an event onset and any of its spikes.
        Also the default neighborhood for :meth:`events_near`.
    """

    def __init__(self, max_sequence_length: float = np.inf) -> None:
        self.max_sequence_length = float(max_sequence_length)
        self._events: dict[int, LatentEvent] = {}
        self._members: dict[int, set[int]] = {}
        self._times: list[float] = []
        self._ids: list[int] = []
        self._next_id = 0
        self.sacred: frozenset[int] = frozenset()

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    def __getitem__(self, event_id: int) -> LatentEvent:
        try:
            return self._events[int(event_id)]
        except KeyError:
            raise AssignmentReferenceError(f"event {event_id} is not live") from None

    def __iter__(self) -> Iterator[int]:
        return iter(list(self._events))

    def __repr__(self) -> str:
        return f"LatentEventSet(n_events={len(self)}, sacred={sorted(self.sacred)})"

    def ids(self) -> list[int]:
        """Live event ids in increasing order."""
        return sorted(self._events)

    def values(self) -> list[LatentEvent]:
        """Live events ordered by id."""
        return [self._events[k] for k in self.ids()]

    # ------------------------------------------------------------------
    # Arena mutation
    # ------------------------------------------------------------------

    def add(
        self,
        seq_type: int,
        time: float,
        amplitude: float,
        warp_index: int = 0,
        *,
        event_id: int | None = None,
    ) -> int:
        """Insert a new event and return its id.

        ``event_id`` pins the id (used when restoring user-specified events);
        otherwise the next unused id is taken.
        """
        if event_id is None:
            event_id = self._next_id
        elif event_id in self._events:
            raise ValueError(f"event id {event_id} is already live")
        event_id = int(event_id)
        self._next_id = max(self._next_id, event_id + 1)

        event = LatentEvent(event_id, int(seq_type), float(time), float(amplitude), int(warp_index))
        self._events[event_id] = event
        self._members[event_id] = set()
        self._index_insert(event)
        return event_id

    def remove(self, event_id: int) -> LatentEvent:
        """Delete an event; it must have no assigned spikes."""
        event = self[event_id]
        if self._members[event_id]:
            raise ValueError(f"event {event_id} still has {len(self._members[event_id])} spikes")
        self._index_remove(event)
        del self._events[event_id]
        del self._members[event_id]
        return event

    def replace(self, event_id: int, **changes) -> LatentEvent:
        """Replace fields of a live event (id is preserved)."""
        old = self[event_id]
        new = replace(old, **changes)
        if new.id != old.id:
            raise ValueError("event ids cannot be changed")
        if new.time != old.time:
            self._index_remove(old)
            self._index_insert(new)
        self._events[event_id] = new
        return new

    def assign(self, spike: int, event_id: int) -> None:
        self._require(event_id)
        self._members[event_id].add(int(spike))

    def unassign(self, spike: int, event_id: int) -> None:
        self._require(event_id)
        self._members[event_id].discard(int(spike))

    def members(self, event_id: int) -> NDArray[np.int64]:
        """Sorted indices of spikes assigned to an event."""
        self._require(event_id)
        return np.array(sorted(self._members[event_id]), dtype=np.int64)

    def size(self, event_id: int) -> int:
        """Number of spikes assigned to an event."""
        self._require(event_id)
        return len(self._members[event_id])

    def _require(self, event_id: int) -> None:
        if event_id not in self._events:
            raise AssignmentReferenceError(f"event {event_id} is not live")

    def is_sacred(self, event_id: int) -> bool:
        return event_id in self.sacred

    # ------------------------------------------------------------------
    # Temporal queries
    # ------------------------------------------------------------------

    def _index_insert(self, event: LatentEvent) -> None:
        pos = bisect.bisect_left(self._times, event.time)
        self._times.insert(pos, event.time)
        self._ids.insert(pos, event.id)

    def _index_remove(self, event: LatentEvent) -> None:
        lo = bisect.bisect_left(self._times, event.time)
        hi = bisect.bisect_right(self._times, event.time)
        pos = lo + self._ids[lo:hi].index(event.id)
        del self._times[pos]
        del self._ids[pos]

    def events_near(self, time: float, window: float | None = None) -> list[int]:
        """Ids of events whose onset lies within ``window`` of ``time``.

        Parameters
        ----------
        time : float
            Query time, usually a spike time.
        window : float, optional
            Half-width of the neighborhood. Defaults to ``max_sequence_length``.
            With an infinite window every live event is returned.

        Returns
        -------
        event_ids : list of int
            Matching ids ordered by event time.
        """
        if window is None:
            window = self.max_sequence_length
        if not np.isfinite(window):
            return list(self._ids)
        lo = bisect.bisect_left(self._times, time - window)
        hi = bisect.bisect_right(self._times, time + window)
        return self._ids[lo:hi]

    def merge_candidates(self, window: float) -> list[tuple[int, int]]:
        """Pairs of event ids whose onsets are at most ``window`` apart.

        Lists candidate duplicate events, e.g. in a recorded sample. The
        split-merge sampler does not call this: it reaches event pairs through
        anchor spikes within ``split_merge_window`` of each other.
        """
        pairs = []
        for i, (t_i, id_i) in enumerate(zip(self._times, self._ids)):
            j = i + 1
            while j < len(self._times) and self._times[j] - t_i <= window:
                pairs.append((id_i, self._ids[j]))
                j += 1
        return pairs

    def within_bounds(self, event_time: float, spike_times: NDArray[np.floating]) -> bool:
        """True if every spike lies within ``max_sequence_length`` of the onset."""
        spike_times = np.asarray(spike_times, dtype=float)
        if spike_times.size == 0:
            return True
        return bool(np.max(np.abs(spike_times - event_time)) <= self.max_sequence_length)

    # ------------------------------------------------------------------
    # Copies
    # ------------------------------------------------------------------

    def copy(self) -> "LatentEventSet":
        """Deep copy of the arena (events are immutable and shared)."""
        new = LatentEventSet(self.max_sequence_length)
        new._events = dict(self._events)
        new._members = {k: set(v) for k, v in self._members.items()}
        new._times = list(self._times)
        new._ids = list(self._ids)
        new._next_id = self._next_id
        new.sacred = self.sacred
        return new

    def snapshot(self) -> tuple[LatentEvent, ...]:
        """Immutable value copy of the live events, ordered by id."""
        return tuple(self.values())


class AssignmentVector:
    """Per-spike source label: ``BACKGROUND`` or a live event id.

    Parameters
    ----------
    labels : np.ndarray
        Initial labels. Shape (n_spikes,).
    """

    def __init__(self, labels: NDArray[np.integer]) -> None:
        labels = np.asarray(labels)
        if labels.ndim != 1:
            raise ValueError(f"labels must be 1-dimensional, got shape {labels.shape}")
        self.labels = labels.astype(np.int64, copy=True)
        if np.any(self.labels < BACKGROUND):
            raise AssignmentReferenceError(f"labels must be >= {BACKGROUND}")

    @classmethod
    def all_background(cls, n_spikes: int) -> "AssignmentVector":
        return cls(np.full(n_spikes, BACKGROUND, dtype=np.int64))

    def __len__(self) -> int:
        return int(self.labels.size)

    def __getitem__(self, spike: int) -> int:
        return int(self.labels[spike])

    def __setitem__(self, spike: int, label: int) -> None:
        self.labels[spike] = label

    def validate(self, events: LatentEventSet) -> None:
        """Check every non-background label refers to a live event.

        Raises
        ------
        AssignmentReferenceError
            If a label names an event not present in ``events``.
        """
        stale = {int(k) for k in np.unique(self.labels[self.labels != BACKGROUND])} - set(events.ids())
        if stale:
            raise AssignmentReferenceError(f"assignments reference events that are not live: {sorted(stale)}")

    def copy(self) -> "AssignmentVector":
        return AssignmentVector(self.labels)

    def snapshot(self) -> NDArray[np.int64]:
        """Read-only copy of the labels."""
        return readonly(self.labels)
