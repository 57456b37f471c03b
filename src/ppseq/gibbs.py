"""Gibbs updates of spike assignments and of per-event parameters."""

import logging
from typing import NamedTuple

import numpy as np
from numpy.typing import NDArray
from scipy.special import logsumexp
from scipy.stats import truncnorm

from .config import ModelConfig
from .events import BACKGROUND
from .likelihood import event_posterior, masked_mass, new_event_log_weights
from .parameters import GlobalParameters
from .state import ChainState

logger = logging.getLogger(__name__)


class EventParameters(NamedTuple):
    """Sampled parameters of one event."""

    seq_type: int
    warp_index: int
    time: float
    amplitude: float


def sample_categorical(log_weights: NDArray[np.floating], rng: np.random.Generator) -> int:
    """Draw an index with probability proportional to ``exp(log_weights)``."""
    probs = np.exp(log_weights - logsumexp(log_weights))
    return int(rng.choice(probs.size, p=probs / probs.sum()))


def sample_event_parameters(
    neurons: NDArray[np.integer],
    times: NDArray[np.floating],
    globals_: GlobalParameters,
    config: ModelConfig,
    max_time: float,
    rng: np.random.Generator,
) -> EventParameters:
    """Draw (type, warp, onset, amplitude) of an event from its exact conditional.

    Type and warp come from the collapsed posterior, the onset from a Gaussian
    truncated to [0, T] and the amplitude from Gamma(shape + n, rate + 1 - m),
    where m is the share of the event inside the active mask regions.

    Parameters
    ----------
    neurons : np.ndarray
        Neuron ids of the event's spikes. Shape (n_spikes,).
    times : np.ndarray
        Times of the event's spikes. Shape (n_spikes,).
    globals_ : GlobalParameters
        Global parameters.
    config : ModelConfig
        Model hyperparameters.
    max_time : float
        Recording length T.
    rng : np.random.Generator
        Random number generator.

    Returns
    -------
    params : EventParameters
    """
    post = event_posterior(neurons, times, globals_, config, max_time)
    flat_index = sample_categorical(post.log_type_warp.ravel(), rng)
    seq_type, warp_index = np.unravel_index(flat_index, post.log_type_warp.shape)

    mean = post.time_mean[seq_type, warp_index]
    sd = post.time_sd[seq_type, warp_index]
    time = truncnorm.rvs((0.0 - mean) / sd, (max_time - mean) / sd, loc=mean, scale=sd, random_state=rng)
    if not np.isfinite(time):
        # Posterior mass is numerically all beyond one edge
        time = np.clip(mean, 0.0, max_time)

    masks = config.active_masks
    masked = 0.0
    if masks:
        masked = float(masked_mass(globals_, seq_type, globals_.warp_values[warp_index], time, masks))
    shape, rate = config.event_amplitude_shape_rate
    amplitude = rng.gamma(shape + np.size(neurons), 1.0 / (rate + 1.0 - masked))
    return EventParameters(int(seq_type), int(warp_index), float(time), float(amplitude))


def sample_assignments(state: ChainState, rng: np.random.Generator, temperature: float = 1.0) -> None:
    """Resample the source of every fitted spike, in time order.

    Each spike is removed from its event (an event left without spikes is
    deleted at once) and reassigned by a categorical draw over the
    background, every nearby live event, and a new event, with weights
    proportional to the intensity each source contributes at the spike,
    tempered by ``1 / temperature``. A new event draws its parameters from
    the posterior given that single spike.

    Held-out spikes and spikes held by sacred events are skipped; sacred
    events accept no new spikes.
    """
    spikes, events, labels = state.spikes, state.events, state.assignments
    globals_, config = state.globals, state.config
    kernel = globals_.kernel

    log_bkgd = np.log(globals_.bkgd_rates)
    log_new = new_event_log_weights(globals_, config)
    log_props = np.log(globals_.neuron_response_proportions)

    for i in range(len(spikes)):
        if state.inert[i]:
            continue
        old = labels[i]
        if old != BACKGROUND and events.is_sacred(old):
            continue
        if old != BACKGROUND:
            state.assign(i, BACKGROUND)
            if events.size(old) == 0:
                events.remove(old)

        n, t = int(spikes.neurons[i]), float(spikes.times[i])
        candidates = [k for k in events.events_near(t) if not events.is_sacred(k)]

        log_w = np.empty(len(candidates) + 2)
        log_w[0] = log_bkgd[n]
        log_w[1] = log_new[n]
        if candidates:
            near = [events[k] for k in candidates]
            types = np.array([e.seq_type for e in near])
            log_w[2:] = (
                np.log([e.amplitude for e in near])
                + log_props[types, n]
                + kernel.log_offset_density(
                    t - np.array([e.time for e in near]),
                    globals_.warp_values[[e.warp_index for e in near]],
                    globals_.neuron_response_offsets[types, n],
                    globals_.neuron_response_widths[types, n],
                )
            )

        choice = sample_categorical(log_w / temperature, rng)
        if choice == 0:
            continue
        if choice >= 2:
            state.assign(i, candidates[choice - 2])
            continue

        params = sample_event_parameters(
            spikes.neurons[i : i + 1], spikes.times[i : i + 1], globals_, config, state.max_time, rng
        )
        if not events.within_bounds(params.time, spikes.times[i : i + 1]):
            state.bound_rejections += 1
            continue
        new_id = events.add(params.seq_type, params.time, params.amplitude, params.warp_index)
        state.assign(i, new_id)


def resample_events(state: ChainState, rng: np.random.Generator) -> int:
    """Redraw type, warp, onset and amplitude of every non-sacred event.

    A draw that would put one of the event's spikes farther than
    ``max_sequence_length`` from its onset is rejected and the event keeps
    its parameters.

    Returns
    -------
    n_rejected : int
        Number of events whose draw was rejected.
    """
    spikes, events = state.spikes, state.events
    n_rejected = 0
    for k in events.ids():
        if events.is_sacred(k):
            continue
        idx = events.members(k)
        if idx.size == 0:
            continue
        params = sample_event_parameters(
            spikes.neurons[idx], spikes.times[idx], state.globals, state.config, state.max_time, rng
        )
        if not events.within_bounds(params.time, spikes.times[idx]):
            n_rejected += 1
            continue
        events.replace(k, **params._asdict())

    if n_rejected:
        logger.debug("Rejected %d event resamples outside max_sequence_length", n_rejected)
    state.bound_rejections += n_rejected
    return n_rejected
