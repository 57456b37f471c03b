"""Draw synthetic spike trains from the generative model."""

from typing import NamedTuple

import numpy as np
from numpy.typing import NDArray

from .config import ModelConfig
from .events import BACKGROUND, LatentEvent
from .parameters import GlobalParameters
from .spikes import SpikeStore


class SimulatedData(NamedTuple):
    """Spikes together with the ground truth that produced them.

    Attributes:
        spikes: Simulated spikes, time ordered
        events: True events ordered by id
        assignments: True source of every spike in the order of ``spikes``
    """

    spikes: SpikeStore
    events: tuple[LatentEvent, ...]
    assignments: NDArray[np.int64]


def simulate_spikes(
    config: ModelConfig,
    globals_: GlobalParameters,
    max_time: float,
    rng: np.random.Generator,
) -> SimulatedData:
    """Sample events and spikes given global parameters.

    Event onsets follow a homogeneous Poisson process with rate
    ``seq_event_rate`` on [0, T]. Each event draws its type, warp and
    amplitude from their priors and emits Poisson(amplitude) spikes spread
    over neurons by the type's response proportions. Spikes falling outside
    [0, T] or farther than ``max_sequence_length`` from their event's onset
    are discarded.

    Parameters
    ----------
    config : ModelConfig
        Event rate, amplitude prior and max_sequence_length.
    globals_ : GlobalParameters
        Global parameters, e.g. ``construct_model(...).globals``.
    max_time : float
        Recording length T.
    rng : np.random.Generator
        Random number generator.

    Returns
    -------
    data : SimulatedData

    Examples
    --------
    >>> import numpy as np
    >>> from ppseq import construct_model
    >>> from ppseq.simulate import simulate_spikes
    >>> model = construct_model({"seq_event_rate": 0.2}, max_time=50.0, num_neurons=4, seed=0)
    >>> data = simulate_spikes(model.config, model.globals, 50.0, np.random.default_rng(1))
    >>> len(data.assignments) == len(data.spikes)
    True
    """
    kernel = globals_.kernel
    num_neurons = globals_.num_neurons

    bkgd_counts = rng.poisson(globals_.bkgd_rates * max_time)
    neurons = [np.repeat(np.arange(num_neurons), bkgd_counts)]
    times = [rng.uniform(0.0, max_time, bkgd_counts.sum())]
    labels = [np.full(bkgd_counts.sum(), BACKGROUND, dtype=np.int64)]

    shape, rate = config.event_amplitude_shape_rate
    warp_probs = np.exp(globals_.warp_log_proportions)
    num_events = rng.poisson(config.seq_event_rate * max_time)
    events = []
    for event_id in range(num_events):
        seq_type = int(rng.choice(globals_.num_sequence_types, p=globals_.seq_type_proportions))
        warp_index = int(rng.choice(globals_.num_warp_values, p=warp_probs / warp_probs.sum()))
        onset = rng.uniform(0.0, max_time)
        amplitude = rng.gamma(shape, 1.0 / rate)
        events.append(LatentEvent(event_id, seq_type, onset, amplitude, warp_index))

        n_spikes = rng.poisson(amplitude)
        event_neurons = rng.choice(num_neurons, size=n_spikes, p=globals_.neuron_response_proportions[seq_type])
        loc, var = kernel.transform(
            globals_.neuron_response_offsets[seq_type, event_neurons],
            globals_.neuron_response_widths[seq_type, event_neurons],
            globals_.warp_values[warp_index],
        )
        offsets = loc + np.sqrt(var) * rng.standard_normal(n_spikes)
        event_times = onset + offsets
        keep = (
            (event_times >= 0.0)
            & (event_times <= max_time)
            & (np.abs(offsets) <= config.max_sequence_length)
        )
        neurons.append(event_neurons[keep])
        times.append(event_times[keep])
        labels.append(np.full(keep.sum(), event_id, dtype=np.int64))

    spikes = SpikeStore(np.concatenate(neurons), np.concatenate(times), num_neurons, max_time)
    assignments = np.concatenate(labels)[spikes.sort_index]
    return SimulatedData(spikes, tuple(events), assignments)
