"""Tests for intensities, log-likelihoods and collapsed event posteriors."""

import numpy as np
import pytest
from scipy.integrate import quad, trapezoid
from scipy.stats import gamma, norm

from ppseq.config import MaskRegion, ModelConfig, validate_config
from ppseq.errors import AssignmentReferenceError
from ppseq.events import AssignmentVector, LatentEvent, LatentEventSet
from ppseq.likelihood import (
    amplitude_log_marginal,
    average_firing_rates,
    event_log_marginal,
    event_posterior,
    firing_rate,
    held_out_log_likelihood,
    log_likelihood,
    new_event_log_weights,
    spike_intensities,
)
from ppseq.parameters import GlobalParameters, sample_globals
from ppseq.spikes import SpikeStore

rng = np.random.default_rng(seed=11)


class TestLogLikelihood:
    """Test suite for log_likelihood."""

    def test_background_only(self, triple_globals) -> None:
        """Test the homogeneous Poisson log-likelihood without events."""
        spikes = SpikeStore([0, 1, 1, 2], [1.0, 2.0, 3.0, 4.0], num_neurons=3, max_time=10.0)
        rates = triple_globals.bkgd_rates
        expected = np.sum(np.log(rates[[0, 1, 1, 2]])) - rates.sum() * 10.0

        result = log_likelihood(spikes, None, LatentEventSet(), triple_globals)
        np.testing.assert_allclose(result, expected, rtol=1e-12)

    def test_event_adds_intensity(self, triple_globals) -> None:
        """Test an event raises the intensity at its spikes and costs its amplitude."""
        spikes = SpikeStore([0, 1, 2], [4.7, 5.0, 5.3], num_neurons=3, max_time=10.0)
        event = LatentEvent(0, 0, 5.0, 3.0)
        offsets = triple_globals.neuron_response_offsets[0]
        sd = np.sqrt(triple_globals.neuron_response_widths[0])
        intensity = triple_globals.bkgd_rates + 3.0 / 3.0 * norm.pdf(
            np.array([-0.3, 0.0, 0.3]), loc=offsets, scale=sd
        )
        expected = np.sum(np.log(intensity)) - triple_globals.bkgd_total_rate * 10.0 - 3.0

        result = log_likelihood(spikes, None, [event], triple_globals)
        np.testing.assert_allclose(result, expected, rtol=1e-10)

    def test_stale_assignment(self, triple_state) -> None:
        """Test assignments to dead events raise AssignmentReferenceError."""
        labels = triple_state.assignments.copy()
        labels[0] = 999
        with pytest.raises(AssignmentReferenceError, match="999"):
            log_likelihood(triple_state.spikes, labels, triple_state.events, triple_state.globals)

    def test_wrong_length_assignment(self, triple_state) -> None:
        """Test assignment vectors must have one label per spike."""
        with pytest.raises(AssignmentReferenceError, match="one label per spike"):
            log_likelihood(
                triple_state.spikes,
                AssignmentVector.all_background(3),
                triple_state.events,
                triple_state.globals,
            )

    def test_masked_spikes_do_not_matter(self, triple_globals) -> None:
        """Test spikes inside masks leave the masked log-likelihood unchanged."""
        masks = (MaskRegion(1, 20.0, 30.0),)
        events = [LatentEvent(0, 0, 5.0, 3.0)]
        base = SpikeStore([0, 1, 2], [4.7, 5.0, 5.3], num_neurons=3, max_time=50.0)
        extra = SpikeStore([0, 1, 2, 1, 1], [4.7, 5.0, 5.3, 21.0, 25.0], num_neurons=3, max_time=50.0)

        np.testing.assert_allclose(
            log_likelihood(base, None, events, triple_globals, masks=masks),
            log_likelihood(extra, None, events, triple_globals, masks=masks),
            rtol=1e-12,
        )

    def test_held_out_complements_fit(self, triple_globals) -> None:
        """Test masked and held-out log-likelihoods add up to the unmasked one."""
        masks = (MaskRegion(1, 4.0, 5.2), MaskRegion(2, 30.0, 40.0))
        events = [LatentEvent(0, 0, 5.0, 3.0), LatentEvent(1, 0, 35.0, 2.0)]
        spikes = SpikeStore(
            [0, 1, 2, 0, 2, 1], [4.7, 5.0, 5.3, 34.7, 35.3, 12.0], num_neurons=3, max_time=50.0
        )

        fit = log_likelihood(spikes, None, events, triple_globals, masks=masks)
        held_out = held_out_log_likelihood(spikes, events, triple_globals, masks)
        full = log_likelihood(spikes, None, events, triple_globals)
        np.testing.assert_allclose(fit + held_out, full, rtol=1e-10)

    def test_held_out_without_masks(self, triple_state) -> None:
        """Test the held-out log-likelihood is zero without masks."""
        assert held_out_log_likelihood(triple_state.spikes, triple_state.events, triple_state.globals, ()) == 0.0

    def test_window_matches_full_sum(self, triple_state) -> None:
        """Test restricting events to a neighborhood does not change intensities."""
        full = spike_intensities(triple_state.spikes, triple_state.events, triple_state.globals)
        windowed = spike_intensities(triple_state.spikes, triple_state.events, triple_state.globals, 2.0)
        np.testing.assert_allclose(windowed, full, rtol=1e-12)


class TestFiringRate:
    """Test suite for firing_rate and average_firing_rates."""

    def test_non_negative_and_integrates_to_expected_count(self, triple_globals) -> None:
        """Test rates are non-negative and integrate to background plus amplitudes."""
        events = [LatentEvent(0, 0, 20.0, 4.0), LatentEvent(1, 0, 60.0, 2.5)]
        grid = np.linspace(0.0, 100.0, 100_001)
        rates = firing_rate(triple_globals, events, grid)

        assert rates.shape == (3, grid.size)
        assert np.all(rates >= 0)
        expected = triple_globals.bkgd_total_rate * 100.0 + 4.0 + 2.5
        np.testing.assert_allclose(trapezoid(rates, grid, axis=1).sum(), expected, rtol=1e-6)

    def test_per_neuron_share(self, triple_globals) -> None:
        """Test each neuron receives its response share of an event."""
        grid = np.linspace(0.0, 100.0, 100_001)
        rates = firing_rate(triple_globals, [LatentEvent(0, 0, 50.0, 6.0)], grid)
        per_neuron = trapezoid(rates, grid, axis=1) - triple_globals.bkgd_rates * 100.0
        np.testing.assert_allclose(per_neuron, [2.0, 2.0, 2.0], rtol=1e-6)

    def test_rejects_2d_grid(self, triple_globals) -> None:
        """Test the time grid must be one-dimensional."""
        with pytest.raises(ValueError, match="1-dimensional"):
            firing_rate(triple_globals, [], np.zeros((2, 2)))

    def test_average(self, triple_globals) -> None:
        """Test averaging over (globals, events) pairs."""
        grid = np.linspace(0.0, 10.0, 11)
        a = [LatentEvent(0, 0, 3.0, 2.0)]
        b = [LatentEvent(0, 0, 7.0, 4.0)]
        expected = 0.5 * (firing_rate(triple_globals, a, grid) + firing_rate(triple_globals, b, grid))
        result = average_firing_rates([(triple_globals, a), (triple_globals, b)], grid)
        np.testing.assert_allclose(result, expected)

    def test_average_requires_samples(self) -> None:
        """Test averaging nothing raises ValueError."""
        with pytest.raises(ValueError, match="at least one sample"):
            average_firing_rates([], np.linspace(0.0, 1.0, 3))


class TestAmplitudeLogMarginal:
    """Test suite for the Gamma-Poisson amplitude integral."""

    @pytest.mark.parametrize("num_spikes", [0, 1, 5])
    def test_matches_quadrature(self, num_spikes: int) -> None:
        """Test against numerical integration over the amplitude."""
        config = ModelConfig(mean_event_amplitude=4.0, var_event_amplitude=2.0)
        shape, rate = config.event_amplitude_shape_rate
        value, _ = quad(
            lambda a: gamma.pdf(a, shape, scale=1.0 / rate) * a**num_spikes * np.exp(-a), 0.0, np.inf
        )
        np.testing.assert_allclose(amplitude_log_marginal(num_spikes, config), np.log(value), rtol=1e-6)

    def test_masked_share_matches_quadrature(self) -> None:
        """Test masked intensity is left out of the exp(-A) term."""
        config = ModelConfig(mean_event_amplitude=4.0, var_event_amplitude=2.0)
        shape, rate = config.event_amplitude_shape_rate
        value, _ = quad(lambda a: gamma.pdf(a, shape, scale=1.0 / rate) * a**3 * np.exp(-0.6 * a), 0.0, np.inf)
        np.testing.assert_allclose(amplitude_log_marginal(3, config, 0.4), np.log(value), rtol=1e-6)


class TestEventPosterior:
    """Test suite for event_posterior and event_log_marginal."""

    def test_log_marginal_matches_quadrature(self, triple_globals, triple_config) -> None:
        """Test the collapsed marginal against integration over the onset."""
        neurons = np.array([0, 1, 2])
        times = np.array([4.75, 5.0, 5.28])
        offsets = triple_globals.neuron_response_offsets[0, neurons]
        sd = np.sqrt(triple_globals.neuron_response_widths[0, neurons])
        log_share = np.sum(np.log(triple_globals.neuron_response_proportions[0, neurons]))

        value, _ = quad(
            lambda tau: np.prod(norm.pdf(times, loc=tau + offsets, scale=sd)), 0.0, 10.0, points=[5.0]
        )
        expected = (
            np.log(triple_config.seq_event_rate)
            + amplitude_log_marginal(3, triple_config)
            + log_share
            + np.log(value)
        )
        result = event_log_marginal(neurons, times, triple_globals, triple_config, 10.0)
        np.testing.assert_allclose(result, expected, rtol=1e-6)

    def test_log_marginal_under_mask(self, triple_globals, triple_config) -> None:
        """Test the collapsed marginal uses the unmasked share of the event."""
        config = validate_config(
            {**triple_config.model_dump(), "are_we_masking": True, "masks": [(0, 0.0, 100.0)]}
        )
        neurons = np.array([1, 2])
        times = np.array([50.0, 50.3])
        shape, rate = config.event_amplitude_shape_rate

        masked = event_log_marginal(neurons, times, triple_globals, config, 100.0)
        unmasked = event_log_marginal(neurons, times, triple_globals, triple_config, 100.0)
        expected = (shape + 2) * (np.log1p(rate) - np.log(1 + rate - 1 / 3))
        np.testing.assert_allclose(masked - unmasked, expected, rtol=1e-6)

    def test_time_posterior(self, triple_globals, triple_config) -> None:
        """Test the onset posterior mean and sd for equal widths."""
        neurons = np.array([0, 1, 2])
        times = np.array([4.75, 5.0, 5.28])
        post = event_posterior(neurons, times, triple_globals, triple_config, 10.0)

        offsets = triple_globals.neuron_response_offsets[0]
        np.testing.assert_allclose(post.time_mean[0, 0], np.mean(times - offsets))
        np.testing.assert_allclose(post.time_sd[0, 0], np.sqrt(0.01 / 3))
        np.testing.assert_allclose(post.log_type_warp, [[0.0]], atol=1e-12)

    def test_type_posterior_prefers_matching_type(self, triple_globals, triple_config) -> None:
        """Test the (type, warp) posterior favors the type whose offsets fit."""
        config = triple_config.model_copy(update={"num_sequence_types": 2})
        globals_ = sample_globals(config, 3, rng)
        forward = triple_globals.neuron_response_offsets[0]
        globals_ = GlobalParameters(
            seq_type_proportions=np.array([0.5, 0.5]),
            neuron_response_proportions=np.full((2, 3), 1.0 / 3.0),
            neuron_response_offsets=np.stack([forward, -forward]),
            neuron_response_widths=np.full((2, 3), 0.01),
            bkgd_total_rate=globals_.bkgd_total_rate,
            bkgd_proportions=globals_.bkgd_proportions,
            warp_values=globals_.warp_values,
            warp_log_proportions=globals_.warp_log_proportions,
        )
        post = event_posterior(np.array([0, 1, 2]), np.array([4.7, 5.0, 5.3]), globals_, config, 10.0)
        probs = np.exp(post.log_type_warp)
        np.testing.assert_allclose(probs.sum(), 1.0, atol=1e-12)
        assert probs[0, 0] > 0.99

    def test_requires_spikes(self, triple_globals, triple_config) -> None:
        """Test an empty spike set is rejected."""
        with pytest.raises(ValueError, match="at least one spike"):
            event_posterior(np.array([], dtype=int), np.array([]), triple_globals, triple_config, 10.0)

    def test_new_event_weight(self, triple_globals, triple_config) -> None:
        """Test the new-event weight is rate x amplitude term x response share."""
        expected = (
            np.log(triple_config.seq_event_rate)
            + amplitude_log_marginal(1, triple_config)
            + np.log(triple_globals.neuron_response_proportions[0])
        )
        np.testing.assert_allclose(new_event_log_weights(triple_globals, triple_config), expected)
