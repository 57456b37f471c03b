"""Split-merge moves that change the number of latent events.

The moves act on the partition of event-assigned spikes, with the parameters
of the affected events integrated out (see
:func:`ppseq.likelihood.event_log_marginal`). Two anchor spikes i and j are
chosen, j within ``split_merge_window`` of i:

- if both belong to the same event, a random split seeds one child with each
  anchor and sends every other member to either child with probability 1/2;
- otherwise the two events are merged.

Merging is the deterministic reverse of splitting, so with M the log
marginal of a spike set and S = S_i + S_j,

    log alpha_split = [M(S_i) + M(S_j) - M(S)] / temperature + (|S| - 2) log 2
    log alpha_merge = -log alpha_split.

After acceptance the parameters of the new events are drawn from their exact
conditional posterior.
"""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .events import BACKGROUND
from .gibbs import EventParameters, sample_event_parameters
from .likelihood import event_log_marginal
from .state import ChainState

logger = logging.getLogger(__name__)

_LOG_2 = np.log(2.0)


@dataclass(frozen=True)
class SplitProposal:
    """Proposal to split ``event_id`` into the spike sets ``left`` and ``right``."""

    event_id: int
    left: NDArray[np.int64]
    right: NDArray[np.int64]
    log_accept: float


@dataclass(frozen=True)
class MergeProposal:
    """Proposal to merge events ``left_id`` and ``right_id``."""

    left_id: int
    right_id: int
    members: NDArray[np.int64]
    log_accept: float


@dataclass
class SplitMergeStats:
    """Counters of proposed and accepted moves."""

    proposed_splits: int = 0
    accepted_splits: int = 0
    proposed_merges: int = 0
    accepted_merges: int = 0

    @property
    def accepted(self) -> int:
        return self.accepted_splits + self.accepted_merges


def eligible_spikes(state: ChainState) -> NDArray[np.int64]:
    """Spikes that split-merge moves may touch, in time order.

    A spike is eligible if it is assigned to a non-sacred event and is not
    held out.
    """
    labels = state.assignments.labels
    is_eligible = (labels != BACKGROUND) & ~state.inert
    if state.events.sacred:
        is_eligible &= ~np.isin(labels, list(state.events.sacred))
    return np.flatnonzero(is_eligible)


def _log_marginal(state: ChainState, idx: NDArray[np.int64]) -> float:
    return event_log_marginal(
        state.spikes.neurons[idx], state.spikes.times[idx], state.globals, state.config, state.max_time
    )


def propose_split(
    state: ChainState, i: int, j: int, rng: np.random.Generator, temperature: float = 1.0
) -> SplitProposal:
    """Randomly split the event holding anchors ``i`` and ``j``."""
    event_id = state.assignments[i]
    if state.assignments[j] != event_id:
        raise ValueError(f"anchors {i} and {j} belong to different events")

    members = state.events.members(event_id)
    others = members[(members != i) & (members != j)]
    to_left = rng.random(others.size) < 0.5
    left = np.sort(np.concatenate([[i], others[to_left]])).astype(np.int64)
    right = np.sort(np.concatenate([[j], others[~to_left]])).astype(np.int64)

    log_ratio = _log_marginal(state, left) + _log_marginal(state, right) - _log_marginal(state, members)
    log_accept = log_ratio / temperature + others.size * _LOG_2
    return SplitProposal(int(event_id), left, right, float(log_accept))


def propose_merge(state: ChainState, i: int, j: int, temperature: float = 1.0) -> MergeProposal:
    """Merge the events holding anchors ``i`` and ``j``."""
    left_id, right_id = state.assignments[i], state.assignments[j]
    if left_id == right_id:
        raise ValueError(f"anchors {i} and {j} belong to the same event")

    left = state.events.members(left_id)
    right = state.events.members(right_id)
    members = np.sort(np.concatenate([left, right]))

    log_ratio = _log_marginal(state, members) - _log_marginal(state, left) - _log_marginal(state, right)
    log_accept = log_ratio / temperature - (members.size - 2) * _LOG_2
    return MergeProposal(int(left_id), int(right_id), members, float(log_accept))


def _draw_parameters(
    state: ChainState, idx: NDArray[np.int64], rng: np.random.Generator
) -> EventParameters:
    spikes = state.spikes
    return sample_event_parameters(
        spikes.neurons[idx], spikes.times[idx], state.globals, state.config, state.max_time, rng
    )


def apply_split(
    state: ChainState,
    proposal: SplitProposal,
    rng: np.random.Generator,
    params: tuple[EventParameters, EventParameters] | None = None,
) -> tuple[int, int] | None:
    """Replace the split event by two children.

    Parameters
    ----------
    state : ChainState
        Chain state, modified in place.
    proposal : SplitProposal
        Accepted proposal.
    rng : np.random.Generator
        Random number generator for the children's parameters.
    params : tuple of EventParameters, optional
        Parameters of the (left, right) children. Drawn from their
        posterior if omitted.

    Returns
    -------
    child_ids : tuple of int or None
        Ids of the children, or None if a child's onset violates
        ``max_sequence_length`` (state is then unchanged).
    """
    events, times = state.events, state.spikes.times
    if params is None:
        params = (_draw_parameters(state, proposal.left, rng), _draw_parameters(state, proposal.right, rng))
    left_params, right_params = params
    if not (
        events.within_bounds(left_params.time, times[proposal.left])
        and events.within_bounds(right_params.time, times[proposal.right])
    ):
        state.bound_rejections += 1
        return None

    for spike in events.members(proposal.event_id):
        state.assign(spike, BACKGROUND)
    events.remove(proposal.event_id)

    child_ids = []
    for members, p in ((proposal.left, left_params), (proposal.right, right_params)):
        child = events.add(p.seq_type, p.time, p.amplitude, p.warp_index)
        for spike in members:
            state.assign(spike, child)
        child_ids.append(child)
    return child_ids[0], child_ids[1]


def apply_merge(
    state: ChainState,
    proposal: MergeProposal,
    rng: np.random.Generator,
    params: EventParameters | None = None,
) -> int | None:
    """Replace two events by one holding all their spikes.

    Parameters
    ----------
    state : ChainState
        Chain state, modified in place.
    proposal : MergeProposal
        Accepted proposal.
    rng : np.random.Generator
        Random number generator for the merged event's parameters.
    params : EventParameters, optional
        Parameters of the merged event. Drawn from its posterior if omitted.

    Returns
    -------
    event_id : int or None
        Id of the merged event, or None if its onset violates
        ``max_sequence_length`` (state is then unchanged).
    """
    events = state.events
    if params is None:
        params = _draw_parameters(state, proposal.members, rng)
    if not events.within_bounds(params.time, state.spikes.times[proposal.members]):
        state.bound_rejections += 1
        return None

    for spike in proposal.members:
        state.assign(spike, BACKGROUND)
    events.remove(proposal.left_id)
    events.remove(proposal.right_id)

    merged = events.add(params.seq_type, params.time, params.amplitude, params.warp_index)
    for spike in proposal.members:
        state.assign(spike, merged)
    return merged


def split_merge_move(
    state: ChainState,
    rng: np.random.Generator,
    temperature: float = 1.0,
    stats: SplitMergeStats | None = None,
) -> bool:
    """Propose one split or merge and accept it with the Metropolis-Hastings rule.

    Returns
    -------
    accepted : bool
        True if the state changed.
    """
    eligible = eligible_spikes(state)
    if eligible.size < 2:
        return False

    times = state.spikes.times
    window = state.config.split_merge_window
    i = int(rng.choice(eligible))
    eligible_times = times[eligible]
    lo = np.searchsorted(eligible_times, times[i] - window, side="left")
    hi = np.searchsorted(eligible_times, times[i] + window, side="right")
    neighbors = eligible[lo:hi]
    neighbors = neighbors[neighbors != i]
    if neighbors.size == 0:
        return False
    j = int(rng.choice(neighbors))

    if state.assignments[i] == state.assignments[j]:
        split = propose_split(state, i, j, rng, temperature)
        if stats is not None:
            stats.proposed_splits += 1
        if np.log(rng.random()) < split.log_accept and apply_split(state, split, rng) is not None:
            if stats is not None:
                stats.accepted_splits += 1
            return True
        return False

    merge = propose_merge(state, i, j, temperature)
    if stats is not None:
        stats.proposed_merges += 1
    if np.log(rng.random()) < merge.log_accept and apply_merge(state, merge, rng) is not None:
        if stats is not None:
            stats.accepted_merges += 1
        return True
    return False
