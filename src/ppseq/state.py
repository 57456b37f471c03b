"""Mutable state of one Markov chain."""

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .config import ModelConfig
from .events import BACKGROUND, AssignmentVector, LatentEventSet
from .parameters import GlobalParameters
from .spikes import SpikeStore


@dataclass
class ChainState:
    """Live state owned by the sampler for the duration of a run.

    Attributes:
        spikes: Observed spikes (immutable)
        config: Validated hyperparameters
        globals: Current global parameter draw, replaced every sweep
        events: Arena of live events and their member spikes
        assignments: Per-spike source labels
        inert: Flags of held-out (masked) spikes that never take part in fitting
        bound_rejections: Proposals rejected for violating max_sequence_length
    """

    spikes: SpikeStore
    config: ModelConfig
    globals: GlobalParameters
    events: LatentEventSet
    assignments: AssignmentVector
    inert: NDArray[np.bool_] | None = None
    bound_rejections: int = 0

    def __post_init__(self) -> None:
        if self.inert is None:
            self.inert = np.zeros(len(self.spikes), dtype=bool)

    @property
    def max_time(self) -> float:
        return self.spikes.max_time

    def copy(self) -> "ChainState":
        """Copy of the mutable parts; spikes, config and globals are immutable and shared."""
        return ChainState(
            spikes=self.spikes,
            config=self.config,
            globals=self.globals,
            events=self.events.copy(),
            assignments=self.assignments.copy(),
            inert=self.inert,
            bound_rejections=self.bound_rejections,
        )

    def assign(self, spike: int, event_id: int) -> None:
        """Move a spike to ``event_id`` (or to the background)."""
        old = self.assignments[spike]
        if old != BACKGROUND:
            self.events.unassign(spike, old)
        if event_id != BACKGROUND:
            self.events.assign(spike, event_id)
        self.assignments[spike] = event_id

    def prune(self) -> list[int]:
        """Remove every non-sacred event without assigned spikes."""
        empty = [
            k for k in self.events.ids() if self.events.size(k) == 0 and not self.events.is_sacred(k)
        ]
        for k in empty:
            self.events.remove(k)
        return empty
