"""Global model parameters: prior draws and conjugate posterior updates.

The global parameters are shared by all events:

- ``seq_type_proportions`` pi ~ Dir(seq_type_conc_param), shape (R,)
- ``neuron_response_proportions`` a_r ~ Dir(neuron_response_conc_param), shape (R, N)
- ``neuron_response_offsets`` c and ``neuron_response_widths`` sigma^2, shape (R, N),
  drawn from a Normal-Inverse-Chi-Squared prior with mean 0
- ``bkgd_total_rate`` lambda ~ Gamma and ``bkgd_proportions`` nu ~ Dir, so that
  neuron n fires background spikes at lambda * nu_n
- ``warp_values`` and ``warp_log_proportions``, the fixed warp grid and its prior

Given current assignments, every parameter has a closed-form conditional
posterior, so :func:`resample_globals` draws them exactly.
"""

from dataclasses import dataclass, fields

import numpy as np
from numpy.typing import NDArray

from ._validation import readonly, validate_probability_vector
from .config import ModelConfig, WarpType
from .errors import NumericDegeneracyError
from .events import BACKGROUND, AssignmentVector, LatentEventSet
from .spikes import SpikeStore, masked_duration
from .warp import WarpKernel, get_warp_kernel, warp_log_proportions

# Floor for Dirichlet draws so that log-proportions stay finite
_MIN_PROPORTION = 1e-300


@dataclass(frozen=True)
class GlobalParameters:
    """One draw of the parameters shared by all sequence events.

    Arrays are stored as read-only copies, so an instance can be kept in a
    sample history without aliasing the sampler's live state.
    """

    seq_type_proportions: NDArray[np.floating]
    neuron_response_proportions: NDArray[np.floating]
    neuron_response_offsets: NDArray[np.floating]
    neuron_response_widths: NDArray[np.floating]
    bkgd_total_rate: float
    bkgd_proportions: NDArray[np.floating]
    warp_values: NDArray[np.floating]
    warp_log_proportions: NDArray[np.floating]
    warp_type: WarpType = WarpType.MULTIPLICATIVE

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.name not in ("bkgd_total_rate", "warp_type"):
                value = np.asarray(getattr(self, f.name), dtype=float)
                object.__setattr__(self, f.name, readonly(value))
        object.__setattr__(self, "bkgd_total_rate", float(self.bkgd_total_rate))
        object.__setattr__(self, "warp_type", WarpType(self.warp_type))

        n_types = self.seq_type_proportions.shape[0]
        n_neurons = self.bkgd_proportions.shape[0]
        for name in ("neuron_response_proportions", "neuron_response_offsets", "neuron_response_widths"):
            shape = getattr(self, name).shape
            if shape != (n_types, n_neurons):
                raise ValueError(f"{name} must have shape {(n_types, n_neurons)}, got {shape}")
        if self.warp_values.shape != self.warp_log_proportions.shape:
            raise ValueError("warp_values and warp_log_proportions must have same shape")

        validate_probability_vector(self.seq_type_proportions, "seq_type_proportions")
        validate_probability_vector(self.neuron_response_proportions, "neuron_response_proportions")
        validate_probability_vector(self.bkgd_proportions, "bkgd_proportions")
        validate_probability_vector(np.exp(self.warp_log_proportions), "warp proportions")
        if not np.all(np.isfinite(self.neuron_response_offsets)):
            raise ValueError("neuron_response_offsets contains non-finite values.")
        if not np.all(np.isfinite(self.neuron_response_widths) & (self.neuron_response_widths > 0)):
            raise ValueError("neuron_response_widths must be finite and positive.")
        if not (np.isfinite(self.bkgd_total_rate) and self.bkgd_total_rate > 0):
            raise ValueError(f"bkgd_total_rate must be finite and positive, got {self.bkgd_total_rate}")

    @property
    def num_sequence_types(self) -> int:
        return self.seq_type_proportions.shape[0]

    @property
    def num_neurons(self) -> int:
        return self.bkgd_proportions.shape[0]

    @property
    def num_warp_values(self) -> int:
        return self.warp_values.shape[0]

    @property
    def kernel(self) -> WarpKernel:
        """Warp kernel selected by ``warp_type``."""
        return get_warp_kernel(self.warp_type)

    @property
    def bkgd_rates(self) -> NDArray[np.floating]:
        """Background firing rate of each neuron. Shape (N,)."""
        return self.bkgd_total_rate * self.bkgd_proportions


def sample_dirichlet(alpha: NDArray[np.floating], rng: np.random.Generator) -> NDArray[np.floating]:
    """Draw from a Dirichlet along the last axis, flooring zero entries.

    Small concentrations can underflow to exact zeros; these are floored at a
    tiny positive value and the vector renormalized.
    """
    alpha = np.atleast_1d(np.asarray(alpha, dtype=float))
    if alpha.ndim == 1:
        draw = rng.dirichlet(alpha)
    else:
        draw = np.stack([rng.dirichlet(row) for row in alpha])
    draw = np.maximum(draw, _MIN_PROPORTION)
    return draw / draw.sum(axis=-1, keepdims=True)


def _sample_nix(
    count: NDArray[np.floating],
    total: NDArray[np.floating],
    total_sq: NDArray[np.floating],
    config: ModelConfig,
    rng: np.random.Generator,
) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
    """Draw (mean, variance) from the Normal-Inverse-Chi-Squared posterior.

    Sufficient statistics are element-wise counts, sums and sums of squares of
    unwarped offsets. With zero counts this draws from the prior.
    """
    kappa0 = config.neuron_offset_pseudo_obs
    nu0 = config.neuron_width_pseudo_obs
    s0_sq = config.neuron_width_prior

    kappa_n = kappa0 + count
    nu_n = nu0 + count
    mu_n = total / kappa_n

    safe_count = np.where(count > 0, count, 1.0)
    scatter = np.where(count > 0, np.maximum(total_sq - total**2 / safe_count, 0.0), 0.0)
    shrink = np.where(count > 0, kappa0 * total**2 / (safe_count * kappa_n), 0.0)
    scale_n = nu0 * s0_sq + scatter + shrink

    variance = scale_n / rng.chisquare(nu_n)
    mean = mu_n + np.sqrt(variance / kappa_n) * rng.standard_normal(np.shape(mu_n))
    return mean, variance


def sample_globals(
    config: ModelConfig, num_neurons: int, rng: np.random.Generator
) -> GlobalParameters:
    """Draw global parameters from the prior.

    Parameters
    ----------
    config : ModelConfig
        Model hyperparameters.
    num_neurons : int
        Number of neurons N.
    rng : np.random.Generator
        Random number generator.

    Returns
    -------
    globals_ : GlobalParameters
        A prior draw.
    """
    n_types = config.num_sequence_types
    shape = (n_types, num_neurons)
    zeros = np.zeros(shape)
    offsets, widths = _sample_nix(zeros, zeros, zeros, config, rng)
    bkgd_shape, bkgd_rate = config.bkgd_rate_shape_rate

    return GlobalParameters(
        seq_type_proportions=sample_dirichlet(np.full(n_types, config.seq_type_conc_param), rng),
        neuron_response_proportions=sample_dirichlet(np.full(shape, config.neuron_response_conc_param), rng),
        neuron_response_offsets=offsets,
        neuron_response_widths=widths,
        bkgd_total_rate=rng.gamma(bkgd_shape, 1.0 / bkgd_rate),
        bkgd_proportions=sample_dirichlet(np.full(num_neurons, config.bkgd_spikes_conc_param), rng),
        warp_values=get_warp_kernel(config.warp_type).grid(config.num_warp_values, config.max_warp),
        warp_log_proportions=warp_log_proportions(config.num_warp_values, config.warp_variance),
        warp_type=config.warp_type,
    )


def offset_statistics(
    spikes: SpikeStore,
    assignments: AssignmentVector,
    events: LatentEventSet,
    globals_: GlobalParameters,
    inert: NDArray[np.bool_] | None = None,
) -> tuple[NDArray[np.floating], NDArray[np.floating], NDArray[np.floating]]:
    """Per-(type, neuron) counts, sums and sums of squares of unwarped offsets.

    Returns
    -------
    count, total, total_sq : np.ndarray
        Each of shape (R, N).
    """
    shape = (globals_.num_sequence_types, globals_.num_neurons)
    count = np.zeros(shape)
    total = np.zeros(shape)
    total_sq = np.zeros(shape)

    labels = assignments.labels
    selected = labels != BACKGROUND
    if inert is not None:
        selected &= ~inert
    idx = np.flatnonzero(selected)
    if idx.size == 0:
        return count, total, total_sq

    kernel = globals_.kernel
    event_ids = labels[idx]
    types = np.array([events[k].seq_type for k in event_ids], dtype=np.int64)
    onsets = np.array([events[k].time for k in event_ids])
    warps = globals_.warp_values[[events[k].warp_index for k in event_ids]]

    neurons = spikes.neurons[idx]
    x = kernel.unwarp(spikes.times[idx] - onsets, warps)
    np.add.at(count, (types, neurons), 1.0)
    np.add.at(total, (types, neurons), x)
    np.add.at(total_sq, (types, neurons), x**2)
    return count, total, total_sq


def resample_globals(
    spikes: SpikeStore,
    assignments: AssignmentVector,
    events: LatentEventSet,
    config: ModelConfig,
    globals_: GlobalParameters,
    rng: np.random.Generator,
    *,
    inert: NDArray[np.bool_] | None = None,
    fallback: bool = False,
) -> GlobalParameters:
    """Draw new global parameters from their conjugate posteriors.

    Parameters
    ----------
    spikes : SpikeStore
        Observed spikes.
    assignments : AssignmentVector
        Current spike-to-source labels.
    events : LatentEventSet
        Live events the labels refer to.
    config : ModelConfig
        Model hyperparameters.
    globals_ : GlobalParameters
        Current draw; only the fixed warp grid is carried over.
    rng : np.random.Generator
        Random number generator.
    inert : np.ndarray, optional
        Boolean flags of held-out spikes excluded from all statistics.
        Shape (n_spikes,).
    fallback : bool, optional
        If True, degenerate variance draws are replaced by prior draws
        instead of raising.

    Returns
    -------
    globals_ : GlobalParameters
        New draw from the posterior.

    Raises
    ------
    NumericDegeneracyError
        If a resampled offset variance is non-positive or non-finite and
        ``fallback`` is False.

    Notes
    -----
    - Type proportions: Dir(conc + number of live events of each type).
    - Neuron proportions of type r: Dir(conc + spikes per neuron in type-r events).
    - Offsets/widths: NIX posterior on offsets ``unwarp(t - tau, warp)``.
    - Background proportions: Dir(conc + background spikes per neuron);
      population rate: Gamma(shape + background count, rate + exposure),
      where exposure is the unmasked recording time weighted by the new
      proportions. This is exact without masks and approximate with masks.
    """
    n_types = globals_.num_sequence_types
    n_neurons = globals_.num_neurons

    type_counts = np.zeros(n_types)
    for event in events.values():
        type_counts[event.seq_type] += 1
    seq_type_proportions = sample_dirichlet(config.seq_type_conc_param + type_counts, rng)

    count, total, total_sq = offset_statistics(spikes, assignments, events, globals_, inert)
    neuron_response_proportions = sample_dirichlet(config.neuron_response_conc_param + count, rng)

    offsets, widths = _sample_nix(count, total, total_sq, config, rng)
    degenerate = ~(np.isfinite(widths) & (widths > 0) & np.isfinite(offsets))
    if np.any(degenerate):
        if not fallback:
            raise NumericDegeneracyError(
                f"Resampled offset variance degenerate for {int(degenerate.sum())} "
                f"(type, neuron) pairs"
            )
        zeros = np.zeros_like(widths)
        prior_offsets, prior_widths = _sample_nix(zeros, zeros, zeros, config, rng)
        prior_widths = np.where(
            np.isfinite(prior_widths) & (prior_widths > 0), prior_widths, config.neuron_width_prior
        )
        prior_offsets = np.where(np.isfinite(prior_offsets), prior_offsets, 0.0)
        offsets = np.where(degenerate, prior_offsets, offsets)
        widths = np.where(degenerate, prior_widths, widths)

    is_bkgd = assignments.labels == BACKGROUND
    if inert is not None:
        is_bkgd &= ~inert
    bkgd_counts = np.bincount(spikes.neurons[is_bkgd], minlength=n_neurons)
    bkgd_proportions = sample_dirichlet(config.bkgd_spikes_conc_param + bkgd_counts, rng)

    exposure = spikes.max_time - masked_duration(config.active_masks, n_neurons, spikes.max_time)
    bkgd_shape, bkgd_rate = config.bkgd_rate_shape_rate
    bkgd_total_rate = rng.gamma(
        bkgd_shape + bkgd_counts.sum(), 1.0 / (bkgd_rate + np.dot(bkgd_proportions, exposure))
    )

    return GlobalParameters(
        seq_type_proportions=seq_type_proportions,
        neuron_response_proportions=neuron_response_proportions,
        neuron_response_offsets=offsets,
        neuron_response_widths=widths,
        bkgd_total_rate=bkgd_total_rate,
        bkgd_proportions=bkgd_proportions,
        warp_values=globals_.warp_values,
        warp_log_proportions=globals_.warp_log_proportions,
        warp_type=globals_.warp_type,
    )
