"""Model and sampler hyperparameters with validation."""

from collections.abc import Mapping
from enum import Enum
from typing import Any, NamedTuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigValidationError


class WarpType(str, Enum):
    """How an event's warp value acts on the per-neuron offset distribution."""

    MULTIPLICATIVE = "multiplicative"
    ADDITIVE = "additive"


class MaskRegion(NamedTuple):
    """A (neuron, [start, end)) region whose spikes are held out of fitting."""

    neuron: int
    start: float
    end: float


class ModelConfig(BaseModel):
    """Hyperparameters of the sequence model and the annealed sampler.

    Gamma priors are given by mean and variance. All fields are validated
    once at construction and the instance is immutable; derive variants with
    ``config.model_copy(update={...})`` followed by :func:`validate_config`.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Sequence types and events
    num_sequence_types: int = Field(default=1, ge=1, description="Number of sequence types R")
    seq_type_conc_param: float = Field(default=1.0, gt=0, description="Dirichlet concentration on type proportions")
    seq_event_rate: float = Field(default=1.0, gt=0, description="Rate of the event Poisson process")
    mean_event_amplitude: float = Field(default=100.0, gt=0, description="Mean expected spike count per event")
    var_event_amplitude: float = Field(default=1000.0, gt=0, description="Variance of event amplitude")

    # Per-type neuron responses
    neuron_response_conc_param: float = Field(default=0.1, gt=0, description="Dirichlet concentration over neurons")
    neuron_offset_pseudo_obs: float = Field(default=1.0, gt=0, description="NIX prior pseudo-observations on offsets")
    neuron_width_pseudo_obs: float = Field(default=1.0, gt=0, description="NIX prior pseudo-observations on widths")
    neuron_width_prior: float = Field(default=0.5, gt=0, description="NIX prior variance of offsets")

    # Time warping
    num_warp_values: int = Field(default=1, ge=1, description="Number of warp grid values")
    max_warp: float = Field(default=1.0, ge=1.0, description="Largest warp factor")
    warp_variance: float = Field(default=1.0, gt=0, description="Variance of the warp prior")
    warp_type: WarpType = Field(default=WarpType.MULTIPLICATIVE)

    # Background
    mean_bkgd_spike_rate: float = Field(default=30.0, gt=0, description="Mean population background rate")
    var_bkgd_spike_rate: float = Field(default=30.0, gt=0, description="Variance of population background rate")
    bkgd_spikes_conc_param: float = Field(default=0.3, gt=0, description="Dirichlet concentration of background shares")

    max_sequence_length: float = Field(
        default=np.inf,
        gt=0,
        description=(
            "Largest spike-to-event distance. Also bounds the neighborhood searched for each spike;"
            " with the default inf every live event is a candidate, so lookups are linear in the"
            " number of events"
        ),
    )

    # Annealing schedule
    num_anneals: int = Field(default=10, ge=0)
    samples_per_anneal: int = Field(default=100, ge=0)
    max_temperature: float = Field(default=40.0, ge=1.0)
    save_every_during_anneal: int = Field(default=10, ge=1)
    samples_after_anneal: int = Field(default=2000, ge=0)
    save_every_after_anneal: int = Field(default=10, ge=1)

    # Split-merge
    split_merge_moves_during_anneal: int = Field(default=10, ge=0)
    split_merge_moves_after_anneal: int = Field(default=10, ge=0)
    split_merge_window: float = Field(default=1.0, gt=0)
    convergence_window: int = Field(
        default=200, ge=1, description="Sweeps without accepted split-merge moves before warning"
    )

    # Held-out evaluation and frozen events
    are_we_masking: bool = False
    masks: tuple[MaskRegion, ...] = ()
    sacred_sequences: bool = False
    sacred_event_ids: tuple[int, ...] = ()

    seed: int | None = None

    @field_validator("masks")
    @classmethod
    def validate_masks(cls, v: tuple[MaskRegion, ...]) -> tuple[MaskRegion, ...]:
        """Validate each mask region is a non-empty interval on a valid neuron."""
        for region in v:
            if region.neuron < 0:
                raise ValueError(f"mask neuron must be non-negative, got {region.neuron}")
            if not (np.isfinite(region.start) and np.isfinite(region.end)):
                raise ValueError(f"mask bounds must be finite, got {region}")
            if region.start >= region.end:
                raise ValueError(f"mask start must be < end, got {region}")
        return v

    @field_validator("sacred_event_ids")
    @classmethod
    def validate_sacred_ids(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        """Validate sacred event ids are non-negative and unique."""
        if any(i < 0 for i in v):
            raise ValueError("sacred_event_ids must be non-negative")
        if len(set(v)) != len(v):
            raise ValueError("sacred_event_ids must be unique")
        return v

    @model_validator(mode="after")
    def validate_masking(self) -> "ModelConfig":
        """Validate masking is only requested together with mask regions."""
        if self.are_we_masking and not self.masks:
            raise ValueError("are_we_masking requires at least one mask region")
        return self

    @property
    def active_masks(self) -> tuple[MaskRegion, ...]:
        """Mask regions in effect for fitting (empty unless masking is enabled)."""
        return self.masks if self.are_we_masking else ()

    @property
    def event_amplitude_shape_rate(self) -> tuple[float, float]:
        """Gamma (shape, rate) of the event amplitude prior."""
        return gamma_shape_rate(self.mean_event_amplitude, self.var_event_amplitude)

    @property
    def bkgd_rate_shape_rate(self) -> tuple[float, float]:
        """Gamma (shape, rate) of the population background rate prior."""
        return gamma_shape_rate(self.mean_bkgd_spike_rate, self.var_bkgd_spike_rate)


def gamma_shape_rate(mean: float, var: float) -> tuple[float, float]:
    """Convert a Gamma mean and variance into (shape, rate)."""
    return mean**2 / var, mean / var


def validate_config(config: "ModelConfig | Mapping[str, Any] | None" = None) -> ModelConfig:
    """Validate a configuration given as a ModelConfig or a plain mapping.

    Parameters
    ----------
    config : ModelConfig or Mapping, optional
        Configuration to validate. ``None`` gives the defaults.

    Returns
    -------
    config : ModelConfig
        Validated, immutable configuration.

    Raises
    ------
    ConfigValidationError
        If any hyperparameter lies outside its valid domain.

    Examples
    --------
    >>> from ppseq.config import validate_config
    >>> config = validate_config({"num_sequence_types": 2, "seq_event_rate": 0.5})
    >>> config.num_sequence_types
    2
    """
    if config is None:
        return ModelConfig()
    try:
        if isinstance(config, ModelConfig):
            # Re-run validators, model_copy(update=...) skips them
            return ModelConfig.model_validate(config.model_dump())
        return ModelConfig.model_validate(dict(config))
    except ValidationError as err:
        raise ConfigValidationError(str(err)) from err
