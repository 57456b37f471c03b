"""Intensities, Poisson log-likelihoods and collapsed event posteriors.

The conditional intensity of neuron n at time t is

    lambda_n(t) = lambda_bkgd * nu_n
                  + sum_k A_k * a_{r_k, n} * f(t - tau_k; warp_k, c_{r_k, n}, sigma^2_{r_k, n})

where f is the warped Gaussian offset density of the event's sequence type.
Boundary effects at 0 and T are ignored: an event's intensity integrates to
its amplitude.
"""

from collections.abc import Iterable, Sequence
from typing import NamedTuple

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.special import gammaln, logsumexp, ndtr

from .config import MaskRegion, ModelConfig
from .errors import AssignmentReferenceError
from .events import AssignmentVector, LatentEvent, LatentEventSet
from .parameters import GlobalParameters
from .spikes import SpikeStore, mask_spikes, masked_duration

_LOG_2PI = np.log(2 * np.pi)
_MIN_MASS = 1e-300


def event_log_intensity(
    globals_: GlobalParameters,
    event: LatentEvent,
    neurons: NDArray[np.integer],
    times: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Log intensity contributed by one event at the given (neuron, time) points."""
    r = event.seq_type
    warp = globals_.warp_values[event.warp_index]
    log_density = globals_.kernel.log_offset_density(
        np.asarray(times) - event.time,
        warp,
        globals_.neuron_response_offsets[r, neurons],
        globals_.neuron_response_widths[r, neurons],
    )
    return np.log(event.amplitude) + np.log(globals_.neuron_response_proportions[r, neurons]) + log_density


def _events_of(events: "LatentEventSet | Iterable[LatentEvent]") -> list[LatentEvent]:
    if isinstance(events, LatentEventSet):
        return events.values()
    return list(events)


def spike_intensities(
    spikes: SpikeStore,
    events: "LatentEventSet | Iterable[LatentEvent]",
    globals_: GlobalParameters,
    window: float = np.inf,
) -> NDArray[np.floating]:
    """Total intensity at every spike (background plus nearby events).

    Parameters
    ----------
    spikes : SpikeStore
        Spikes at which to evaluate the intensity.
    events : LatentEventSet or iterable of LatentEvent
        Events contributing intensity.
    globals_ : GlobalParameters
        Global parameters.
    window : float, optional
        Only spikes within ``window`` of an event onset receive its
        contribution. Defaults to all spikes.

    Returns
    -------
    intensity : np.ndarray
        Shape (n_spikes,).
    """
    intensity = globals_.bkgd_rates[spikes.neurons].astype(float)
    for event in _events_of(events):
        idx = spikes.window(event.time - window, event.time + window)
        if idx.size == 0:
            continue
        intensity[idx] += np.exp(
            event_log_intensity(globals_, event, spikes.neurons[idx], spikes.times[idx])
        )
    return intensity


def masked_mass(
    globals_: GlobalParameters,
    seq_type: ArrayLike,
    warp: ArrayLike,
    time: ArrayLike,
    masks: Sequence[MaskRegion],
) -> NDArray[np.floating]:
    """Share of an event's expected spikes inside the masks; broadcasts over type, warp and onset."""
    mass = np.zeros(np.broadcast_shapes(np.shape(seq_type), np.shape(warp), np.shape(time)))
    for neuron, start, end in masks:
        loc, var = globals_.kernel.transform(
            globals_.neuron_response_offsets[seq_type, neuron],
            globals_.neuron_response_widths[seq_type, neuron],
            warp,
        )
        sd = np.sqrt(var)
        inside = ndtr((end - time - loc) / sd) - ndtr((start - time - loc) / sd)
        mass = mass + globals_.neuron_response_proportions[seq_type, neuron] * inside
    return np.minimum(mass, 1.0)


def event_masked_mass(
    globals_: GlobalParameters, event: LatentEvent, masks: Sequence[MaskRegion]
) -> float:
    """Fraction of an event's expected spikes that falls inside mask regions."""
    if not masks:
        return 0.0
    warp = globals_.warp_values[event.warp_index]
    return float(masked_mass(globals_, event.seq_type, warp, event.time, masks))


def _check_assignments(
    spikes: SpikeStore, assignments: AssignmentVector | None, events: "LatentEventSet | Iterable[LatentEvent]"
) -> None:
    if assignments is None:
        return
    if len(assignments) != len(spikes):
        raise AssignmentReferenceError(
            f"assignments must have one label per spike, got {len(assignments)} vs {len(spikes)}"
        )
    if isinstance(events, LatentEventSet):
        assignments.validate(events)


def log_likelihood(
    spikes: SpikeStore,
    assignments: AssignmentVector | None,
    events: "LatentEventSet | Iterable[LatentEvent]",
    globals_: GlobalParameters,
    *,
    masks: Sequence[MaskRegion] = (),
) -> float:
    """Inhomogeneous Poisson log-likelihood of the observed spikes.

    Parameters
    ----------
    spikes : SpikeStore
        Observed spikes.
    assignments : AssignmentVector or None
        Current labels. Only checked for stale references; the likelihood
        marginalizes over the source of every spike.
    events : LatentEventSet or iterable of LatentEvent
        Live events.
    globals_ : GlobalParameters
        Global parameters.
    masks : sequence of MaskRegion, optional
        Held-out regions. Spikes inside are ignored and the intensity is
        integrated over the unmasked region only.

    Returns
    -------
    log_likelihood : float
        sum_i log lambda_{n_i}(t_i) - sum_n integral lambda_n(t) dt.

    Raises
    ------
    AssignmentReferenceError
        If an assignment names an event that is not live.

    Notes
    -----
    Mask regions on the same neuron are assumed not to overlap when
    computing the masked share of event intensity.
    """
    _check_assignments(spikes, assignments, events)
    event_list = _events_of(events)

    window = events.max_sequence_length if isinstance(events, LatentEventSet) else np.inf
    intensity = spike_intensities(spikes, event_list, globals_, window)
    observed = ~mask_spikes(spikes, masks)

    exposure = spikes.max_time - masked_duration(masks, spikes.num_neurons, spikes.max_time)
    integral = float(np.dot(globals_.bkgd_rates, exposure))
    integral += sum(e.amplitude * (1.0 - event_masked_mass(globals_, e, masks)) for e in event_list)

    return float(np.sum(np.log(intensity[observed]))) - integral


def held_out_log_likelihood(
    spikes: SpikeStore,
    events: "LatentEventSet | Iterable[LatentEvent]",
    globals_: GlobalParameters,
    masks: Sequence[MaskRegion],
) -> float:
    """Poisson log-likelihood of the spikes inside the mask regions only.

    This is the test-set counterpart of :func:`log_likelihood` for masked
    (held-out) fitting.
    """
    if not masks:
        return 0.0
    event_list = _events_of(events)
    window = events.max_sequence_length if isinstance(events, LatentEventSet) else np.inf
    intensity = spike_intensities(spikes, event_list, globals_, window)
    held_out = mask_spikes(spikes, masks)

    duration = masked_duration(masks, spikes.num_neurons, spikes.max_time)
    integral = float(np.dot(globals_.bkgd_rates, duration))
    integral += sum(e.amplitude * event_masked_mass(globals_, e, masks) for e in event_list)

    return float(np.sum(np.log(intensity[held_out]))) - integral


def firing_rate(
    globals_: GlobalParameters,
    events: "LatentEventSet | Iterable[LatentEvent]",
    time_grid: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Expected instantaneous firing rate of every neuron on a time grid.

    Parameters
    ----------
    globals_ : GlobalParameters
        Global parameters of one sample.
    events : LatentEventSet or iterable of LatentEvent
        Events of the same sample.
    time_grid : np.ndarray
        Times at which to evaluate the rate. Shape (n_time,).

    Returns
    -------
    rates : np.ndarray
        Non-negative rates. Shape (num_neurons, n_time).

    Examples
    --------
    >>> import numpy as np
    >>> from ppseq import construct_model, firing_rate
    >>> model = construct_model({}, max_time=10.0, num_neurons=3, seed=0)
    >>> firing_rate(model.globals, [], np.linspace(0, 10, 5)).shape
    (3, 5)
    """
    grid = np.asarray(time_grid, dtype=float)
    if grid.ndim != 1:
        raise ValueError(f"time_grid must be 1-dimensional, got shape {grid.shape}")

    rates = np.repeat(globals_.bkgd_rates[:, None], grid.size, axis=1)
    neurons = np.arange(globals_.num_neurons)
    for event in _events_of(events):
        r = event.seq_type
        density = globals_.kernel.offset_density(
            grid[None, :] - event.time,
            globals_.warp_values[event.warp_index],
            globals_.neuron_response_offsets[r, neurons][:, None],
            globals_.neuron_response_widths[r, neurons][:, None],
        )
        rates += event.amplitude * globals_.neuron_response_proportions[r][:, None] * density
    return rates


def average_firing_rates(
    samples: Iterable,
    time_grid: NDArray[np.floating],
) -> NDArray[np.floating]:
    """Average :func:`firing_rate` over several samples.

    Parameters
    ----------
    samples : iterable
        Recorded samples (anything with ``globals`` and ``events``
        attributes) or (globals, events) pairs.
    time_grid : np.ndarray
        Times at which to evaluate the rate. Shape (n_time,).

    Returns
    -------
    rates : np.ndarray
        Mean rates. Shape (num_neurons, n_time).

    Raises
    ------
    ValueError
        If no samples are given.
    """
    total = None
    n_samples = 0
    for sample in samples:
        if hasattr(sample, "globals"):
            globals_, events = sample.globals, sample.events
        else:
            globals_, events = sample
        rates = firing_rate(globals_, events, time_grid)
        total = rates if total is None else total + rates
        n_samples += 1
    if total is None:
        raise ValueError("average_firing_rates requires at least one sample")
    return total / n_samples


class EventPosterior(NamedTuple):
    """Collapsed posterior of one event given its spikes.

    Attributes:
        log_marginal: Log weight of the spikes forming one event, with the
            event rate, amplitude, type, warp and time integrated out
        log_type_warp: Normalized log posterior over (type, warp). Shape (R, W).
        time_mean: Posterior mean of the onset per (type, warp). Shape (R, W).
        time_sd: Posterior sd of the onset per (type, warp). Shape (R, W).
    """

    log_marginal: float
    log_type_warp: NDArray[np.floating]
    time_mean: NDArray[np.floating]
    time_sd: NDArray[np.floating]


def amplitude_log_marginal(
    num_spikes: int, config: ModelConfig, masked_share: ArrayLike = 0.0
) -> "float | NDArray[np.floating]":
    """log of int Gamma(A; shape, rate) A^n exp(-A (1 - m)) dA.

    ``m`` is the share of the event's intensity inside mask regions, whose
    spikes are not observed. Broadcasts over ``masked_share``.
    """
    shape, rate = config.event_amplitude_shape_rate
    return (
        shape * np.log(rate)
        + gammaln(shape + num_spikes)
        - gammaln(shape)
        - (shape + num_spikes) * np.log(1.0 + rate - np.asarray(masked_share, dtype=float))
    )


def event_posterior(
    neurons: NDArray[np.integer],
    times: NDArray[np.floating],
    globals_: GlobalParameters,
    config: ModelConfig,
    max_time: float,
) -> EventPosterior:
    """Collapsed posterior over (type, warp, onset) of one event.

    For each (type r, warp w), the onset tau has a flat prior on [0, T] and
    each spike contributes N(t_i | tau + m_i, v_i) with (m_i, v_i) the
    warped offset mean and variance of its neuron, so the onset posterior is a
    Gaussian truncated to [0, T] with precision J = sum 1/v_i and mean h / J,
    h = sum (t_i - m_i) / v_i.

    The amplitude is integrated against A^n exp(-A (1 - m)), where m is the
    share of the event inside the configured mask regions. m depends on the
    onset and is evaluated at the posterior onset mean of each (type, warp).

    Parameters
    ----------
    neurons : np.ndarray
        Neuron ids of the event's spikes. Shape (n_spikes,), n_spikes >= 1.
    times : np.ndarray
        Times of the event's spikes. Shape (n_spikes,).
    globals_ : GlobalParameters
        Global parameters.
    config : ModelConfig
        Supplies the event rate, the amplitude prior and the active masks.
    max_time : float
        Recording length T.

    Returns
    -------
    posterior : EventPosterior
    """
    neurons = np.asarray(neurons, dtype=np.int64)
    times = np.asarray(times, dtype=float)
    if neurons.size == 0:
        raise ValueError("event_posterior requires at least one spike")

    # (R, 1, S) offsets/widths against (1, W, 1) warps
    offsets = globals_.neuron_response_offsets[:, neurons][:, None, :]
    widths = globals_.neuron_response_widths[:, neurons][:, None, :]
    warps = globals_.warp_values[None, :, None]
    loc, var = globals_.kernel.transform(offsets, widths, warps)
    loc, var = np.broadcast_arrays(loc, var)

    resid = times[None, None, :] - loc
    precision = np.sum(1.0 / var, axis=-1)
    h = np.sum(resid / var, axis=-1)
    time_mean = h / precision
    time_sd = 1.0 / np.sqrt(precision)

    log_gauss = (
        -0.5 * np.sum(_LOG_2PI + np.log(var) + resid**2 / var, axis=-1)
        + 0.5 * h**2 / precision
        + 0.5 * (_LOG_2PI - np.log(precision))
    )
    inside = ndtr((max_time - time_mean) / time_sd) - ndtr(-time_mean / time_sd)
    log_gauss += np.log(np.maximum(inside, _MIN_MASS))

    # Masked share evaluated at the posterior onset of each (type, warp)
    masks = config.active_masks
    masked = 0.0
    if masks:
        n_types = time_mean.shape[0]
        masked = masked_mass(
            globals_,
            np.arange(n_types)[:, None],
            globals_.warp_values[None, :],
            np.clip(time_mean, 0.0, max_time),
            masks,
        )

    log_joint = (
        np.log(globals_.seq_type_proportions)[:, None]
        + globals_.warp_log_proportions[None, :]
        + np.sum(np.log(globals_.neuron_response_proportions[:, neurons]), axis=-1)[:, None]
        + log_gauss
        + amplitude_log_marginal(neurons.size, config, masked)
    )
    log_norm = logsumexp(log_joint)
    log_marginal = np.log(config.seq_event_rate) + log_norm

    return EventPosterior(
        log_marginal=float(log_marginal),
        log_type_warp=log_joint - log_norm,
        time_mean=time_mean,
        time_sd=time_sd,
    )


def event_log_marginal(
    neurons: NDArray[np.integer],
    times: NDArray[np.floating],
    globals_: GlobalParameters,
    config: ModelConfig,
    max_time: float,
) -> float:
    """Log weight of a set of spikes forming a single event.

    Equal to ``event_posterior(...).log_marginal``; used by the split-merge
    sampler to compare partitions of spikes into events.
    """
    return event_posterior(neurons, times, globals_, config, max_time).log_marginal


def new_event_log_weights(globals_: GlobalParameters, config: ModelConfig) -> NDArray[np.floating]:
    """Log intensity, per neuron, of spikes from events not yet represented.

    seq_event_rate * E[A exp(-A)] * sum_r pi_r a_{r, n}, i.e. the weight of a
    spike starting a new event in the assignment sampler. Shape (N,).
    Mask regions are not taken into account.
    """
    return (
        np.log(config.seq_event_rate)
        + amplitude_log_marginal(1, config)
        + logsumexp(
            np.log(globals_.seq_type_proportions)[:, None]
            + np.log(globals_.neuron_response_proportions),
            axis=0,
        )
    )
