"""Shared fixtures: a small recording of repeated three-neuron sequences."""

import numpy as np
import pytest

from ppseq.config import ModelConfig
from ppseq.events import BACKGROUND, AssignmentVector, LatentEventSet
from ppseq.parameters import GlobalParameters
from ppseq.spikes import SpikeStore
from ppseq.state import ChainState

MAX_TIME = 100.0
TRIPLE_OFFSETS = np.array([0.0, 0.3, 0.6])
EVENT_TIMES = np.arange(5.0, 100.0, 10.0)


def make_triples(
    rng: np.random.Generator, jitter: float = 0.02, num_background: int = 5
) -> tuple[SpikeStore, np.ndarray]:
    """Ten neuron 0 -> 1 -> 2 triples plus a few background spikes.

    Returns the spikes and the true label of every spike (event index or
    BACKGROUND) in the time order of the store.
    """
    neurons = np.tile(np.arange(3), EVENT_TIMES.size)
    times = (EVENT_TIMES[:, None] + TRIPLE_OFFSETS[None, :]).ravel()
    times = times + jitter * rng.standard_normal(times.size)
    labels = np.repeat(np.arange(EVENT_TIMES.size), 3)

    bkgd_neurons = rng.integers(0, 3, num_background)
    bkgd_times = rng.uniform(0.0, MAX_TIME, num_background)

    spikes = SpikeStore(
        np.concatenate([neurons, bkgd_neurons]),
        np.clip(np.concatenate([times, bkgd_times]), 0.0, MAX_TIME),
        num_neurons=3,
        max_time=MAX_TIME,
    )
    all_labels = np.concatenate([labels, np.full(num_background, BACKGROUND)])
    return spikes, all_labels[spikes.sort_index]


@pytest.fixture
def triple_config() -> ModelConfig:
    return ModelConfig(
        num_sequence_types=1,
        seq_event_rate=0.1,
        mean_event_amplitude=3.0,
        var_event_amplitude=1.0,
        neuron_response_conc_param=1.0,
        neuron_offset_pseudo_obs=1.0,
        neuron_width_pseudo_obs=1.0,
        neuron_width_prior=0.25,
        mean_bkgd_spike_rate=0.05,
        var_bkgd_spike_rate=0.01,
        bkgd_spikes_conc_param=1.0,
        max_sequence_length=2.0,
        split_merge_window=1.0,
        num_anneals=3,
        samples_per_anneal=10,
        max_temperature=10.0,
        save_every_during_anneal=5,
        samples_after_anneal=50,
        save_every_after_anneal=5,
        split_merge_moves_during_anneal=5,
        split_merge_moves_after_anneal=5,
    )


@pytest.fixture
def triple_globals() -> GlobalParameters:
    """Parameters close to those generating :func:`make_triples`."""
    return GlobalParameters(
        seq_type_proportions=np.array([1.0]),
        neuron_response_proportions=np.full((1, 3), 1.0 / 3.0),
        neuron_response_offsets=(TRIPLE_OFFSETS - TRIPLE_OFFSETS.mean())[None, :],
        neuron_response_widths=np.full((1, 3), 0.01),
        bkgd_total_rate=0.05,
        bkgd_proportions=np.full(3, 1.0 / 3.0),
        warp_values=np.array([1.0]),
        warp_log_proportions=np.array([0.0]),
    )


@pytest.fixture
def triple_spikes() -> tuple[SpikeStore, np.ndarray]:
    return make_triples(np.random.default_rng(seed=0))


def build_state(
    spikes: SpikeStore,
    labels: np.ndarray,
    config: ModelConfig,
    globals_: GlobalParameters,
) -> ChainState:
    """Chain state with one event per distinct label, placed at the mean time of its spikes."""
    events = LatentEventSet(config.max_sequence_length)
    state = ChainState(
        spikes=spikes,
        config=config,
        globals=globals_,
        events=events,
        assignments=AssignmentVector.all_background(len(spikes)),
    )
    for label in np.unique(labels[labels != BACKGROUND]):
        idx = np.flatnonzero(labels == label)
        event_id = events.add(0, float(spikes.times[idx].mean()), 3.0)
        for spike in idx:
            state.assign(int(spike), event_id)
    return state


@pytest.fixture
def triple_state(triple_spikes, triple_config, triple_globals) -> ChainState:
    spikes, labels = triple_spikes
    return build_state(spikes, labels, triple_config, triple_globals)


@pytest.fixture
def state_builder():
    return build_state


@pytest.fixture
def triples_maker():
    return make_triples
