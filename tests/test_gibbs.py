"""Tests for the assignment sampler and per-event parameter updates."""

import numpy as np
import pytest

from ppseq.config import validate_config
from ppseq.events import BACKGROUND
from ppseq.gibbs import (
    EventParameters,
    resample_events,
    sample_assignments,
    sample_categorical,
    sample_event_parameters,
)
from ppseq.parameters import sample_globals

rng = np.random.default_rng(seed=3)


def assert_consistent(state) -> None:
    """Labels, member sets and sequence-length bounds agree."""
    labels = state.assignments.labels
    live = set(state.events.ids())
    assert set(labels[labels != BACKGROUND].tolist()) <= live
    for k in live:
        members = state.events.members(k)
        np.testing.assert_array_equal(labels[members], k)
        assert state.events.within_bounds(state.events[k].time, state.spikes.times[members])
    assigned = int(np.sum(labels != BACKGROUND))
    assert assigned == sum(state.events.size(k) for k in live)


class TestSampleCategorical:
    """Test suite for sample_categorical."""

    def test_frequencies(self) -> None:
        """Test draws follow the normalized weights."""
        log_weights = np.log([1.0, 3.0])
        draws = [sample_categorical(log_weights, rng) for _ in range(4000)]
        np.testing.assert_allclose(np.mean(draws), 0.75, atol=0.03)

    def test_large_log_weights(self) -> None:
        """Test very large log-weights do not overflow."""
        assert sample_categorical(np.array([1000.0, 0.0]), rng) == 0


class TestSampleEventParameters:
    """Test suite for sample_event_parameters."""

    def test_onset_within_recording(self, triple_globals, triple_config) -> None:
        """Test onsets are truncated to [0, T] near the recording edge."""
        draws = [
            sample_event_parameters(np.array([2]), np.array([0.01]), triple_globals, triple_config, 100.0, rng)
            for _ in range(200)
        ]
        times = np.array([d.time for d in draws])
        assert np.all((times >= 0.0) & (times <= 100.0))
        assert all(isinstance(d, EventParameters) for d in draws)

    def test_amplitude_posterior(self, triple_globals, triple_config) -> None:
        """Test amplitudes follow Gamma(shape + n, rate + 1)."""
        neurons = np.array([0, 1, 2])
        times = np.array([4.7, 5.0, 5.3])
        draws = [
            sample_event_parameters(neurons, times, triple_globals, triple_config, 100.0, rng).amplitude
            for _ in range(2000)
        ]
        shape, rate = triple_config.event_amplitude_shape_rate
        np.testing.assert_allclose(np.mean(draws), (shape + 3) / (rate + 1), rtol=0.05)

    def test_amplitude_posterior_under_mask(self, triple_globals, triple_config) -> None:
        """Test masked intensity is not counted as silence: Gamma(shape + n, rate + 1 - m)."""
        # Neuron 0 is masked over the whole recording, so m = a_0 = 1/3
        config = validate_config(
            {**triple_config.model_dump(), "are_we_masking": True, "masks": [(0, 0.0, 100.0)]}
        )
        neurons = np.array([1, 2])
        times = np.array([50.0, 50.3])
        draws = [
            sample_event_parameters(neurons, times, triple_globals, config, 100.0, rng).amplitude
            for _ in range(3000)
        ]
        shape, rate = config.event_amplitude_shape_rate
        np.testing.assert_allclose(np.mean(draws), (shape + 2) / (rate + 1 - 1 / 3), rtol=0.02)

    def test_onset_near_spikes(self, triple_globals, triple_config) -> None:
        """Test onsets concentrate at the offset-corrected spike times."""
        draws = [
            sample_event_parameters(
                np.array([0, 1, 2]), np.array([4.7, 5.0, 5.3]), triple_globals, triple_config, 100.0, rng
            ).time
            for _ in range(500)
        ]
        np.testing.assert_allclose(np.mean(draws), 5.0, atol=0.02)


class TestSampleAssignments:
    """Test suite for sample_assignments."""

    def test_state_consistent_after_sweeps(self, triple_state) -> None:
        """Test labels and arena agree after every sweep."""
        for _ in range(5):
            sample_assignments(triple_state, rng)
            resample_events(triple_state, rng)
            assert_consistent(triple_state)

    def test_triples_stay_together(self, triple_state, triple_spikes) -> None:
        """Test spikes of a well-separated triple keep a common event."""
        _, labels = triple_spikes
        for _ in range(3):
            sample_assignments(triple_state, rng)
            resample_events(triple_state, rng)

        together = 0
        for k in range(10):
            current = triple_state.assignments.labels[labels == k]
            together += int(current[0] != BACKGROUND and np.all(current == current[0]))
        assert together >= 8

    def test_pruned_events_never_reappear(self, triple_state) -> None:
        """Test an event id, once removed, is never live again."""
        dead: set[int] = set()
        previous = set(triple_state.events.ids())
        for temperature in (10.0, 5.0, 1.0, 1.0, 1.0):
            sample_assignments(triple_state, rng, temperature)
            resample_events(triple_state, rng)
            current = set(triple_state.events.ids())
            dead |= previous - current
            assert not (current & dead)
            previous = current

    def test_no_empty_events(self, triple_state) -> None:
        """Test no event is left without spikes after a sweep."""
        sample_assignments(triple_state, rng)
        assert all(triple_state.events.size(k) > 0 for k in triple_state.events.ids())

    def test_inert_spikes_untouched(self, triple_state) -> None:
        """Test held-out spikes are never assigned."""
        inert = np.zeros(len(triple_state.spikes), dtype=bool)
        inert[::4] = True
        for spike in np.flatnonzero(inert):
            triple_state.assign(int(spike), BACKGROUND)
        triple_state.prune()
        triple_state.inert = inert

        for _ in range(3):
            sample_assignments(triple_state, rng)
        np.testing.assert_array_equal(triple_state.assignments.labels[inert], BACKGROUND)

    def test_sacred_events_frozen(self, triple_state) -> None:
        """Test sacred events keep their spikes and parameters and gain none."""
        triple_state.events.sacred = frozenset({0})
        members = triple_state.events.members(0)
        event = triple_state.events[0]

        for _ in range(3):
            sample_assignments(triple_state, rng, temperature=5.0)
            resample_events(triple_state, rng)

        np.testing.assert_array_equal(triple_state.events.members(0), members)
        assert triple_state.events[0] == event

    def test_high_temperature_is_flatter(self, triple_state) -> None:
        """Test tempering moves more spikes away from their events."""
        cold = triple_state.copy()
        hot = triple_state.copy()
        cold_rng = np.random.default_rng(0)
        hot_rng = np.random.default_rng(0)
        sample_assignments(cold, cold_rng, temperature=1.0)
        sample_assignments(hot, hot_rng, temperature=1000.0)

        assert np.sum(hot.assignments.labels == BACKGROUND) > np.sum(cold.assignments.labels == BACKGROUND)


class TestResampleEvents:
    """Test suite for resample_events."""

    def test_bound_rejections_counted(self, triple_state) -> None:
        """Test rejected draws are counted and leave events within bounds."""
        triple_state.events.max_sequence_length = 0.4

        before = triple_state.bound_rejections
        n_rejected = resample_events(triple_state, rng)
        assert triple_state.bound_rejections == before + n_rejected
        assert_consistent(triple_state)

    @pytest.mark.parametrize("warp_type", ["multiplicative", "additive"])
    def test_warp_index_in_grid(self, triple_state, warp_type) -> None:
        """Test resampled warp indices address the warp grid."""
        config = validate_config(
            {**triple_state.config.model_dump(), "num_warp_values": 5, "max_warp": 1.5, "warp_type": warp_type}
        )
        globals_ = sample_globals(config, 3, rng)
        triple_state.config = config
        triple_state.globals = globals_
        resample_events(triple_state, rng)
        for event in triple_state.events.values():
            assert 0 <= event.warp_index < 5
