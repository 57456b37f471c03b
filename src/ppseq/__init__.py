"""Point-process sequence detection for neural spike trains.

This package fits a Neyman-Scott style model, in which spikes are either
background noise or members of recurring sequence events, by annealed Gibbs
sampling with split-merge moves over the latent events.
"""

from ppseq.config import MaskRegion, ModelConfig, WarpType, validate_config
from ppseq.display import sort_neurons_by_response
from ppseq.errors import (
    AssignmentReferenceError,
    ConfigValidationError,
    ConvergenceWarning,
    NumericDegeneracyError,
)
from ppseq.events import BACKGROUND, AssignmentVector, LatentEvent, LatentEventSet
from ppseq.likelihood import average_firing_rates, firing_rate, log_likelihood
from ppseq.parameters import GlobalParameters, resample_globals
from ppseq.sampler import (
    Model,
    Sample,
    SampleHistory,
    Sampler,
    SamplerState,
    construct_model,
    run_chains,
    run_sampler,
)
from ppseq.simulate import simulate_spikes
from ppseq.spikes import SpikeStore, create_random_mask

compute_firing_rates = firing_rate

__version__ = "0.1.0"

__all__ = [
    "construct_model",
    "run_sampler",
    "run_chains",
    "compute_firing_rates",
    "firing_rate",
    "average_firing_rates",
    "log_likelihood",
    "resample_globals",
    "sort_neurons_by_response",
    "simulate_spikes",
    "create_random_mask",
    "validate_config",
    "Model",
    "ModelConfig",
    "WarpType",
    "MaskRegion",
    "SpikeStore",
    "GlobalParameters",
    "LatentEvent",
    "LatentEventSet",
    "AssignmentVector",
    "BACKGROUND",
    "Sample",
    "SampleHistory",
    "Sampler",
    "SamplerState",
    "ConfigValidationError",
    "AssignmentReferenceError",
    "NumericDegeneracyError",
    "ConvergenceWarning",
]
