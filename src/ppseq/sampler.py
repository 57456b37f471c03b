"""Model construction and the annealed MCMC driver.

A run moves through four states, strictly forward:

    INITIALIZING -> ANNEALING -> SAMPLING -> DONE

Each sweep resamples every spike assignment, proposes a number of split-merge
moves, redraws the parameters of every event and finally redraws the global
parameters. During annealing the likelihood terms of the assignment and
split-merge steps are tempered by temperatures spaced geometrically from
``max_temperature`` down to 1.
"""

import logging
import warnings
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple

import numpy as np
from numpy.typing import NDArray

from ._validation import validate_positive
from .config import ModelConfig, validate_config
from .errors import (
    AssignmentReferenceError,
    ConfigValidationError,
    ConvergenceWarning,
    NumericDegeneracyError,
)
from .events import BACKGROUND, AssignmentVector, LatentEvent, LatentEventSet
from .gibbs import resample_events, sample_assignments, sample_event_parameters
from .likelihood import held_out_log_likelihood, log_likelihood
from .parameters import GlobalParameters, resample_globals, sample_globals
from .spikes import SpikeStore, mask_spikes
from .split_merge import SplitMergeStats, split_merge_move
from .state import ChainState

logger = logging.getLogger(__name__)


class SamplerState(Enum):
    """Phase of a sampler run."""

    INITIALIZING = "initializing"
    ANNEALING = "annealing"
    SAMPLING = "sampling"
    DONE = "done"


@dataclass
class Model:
    """Validated configuration plus an initial draw of the global parameters.

    Attributes:
        config: Validated hyperparameters
        max_time: Recording length T
        num_neurons: Number of neurons N
        globals: Prior draw of the global parameters
        events: Initial (usually empty) event arena
    """

    config: ModelConfig
    max_time: float
    num_neurons: int
    globals: GlobalParameters
    events: LatentEventSet


def _check_masks(config: ModelConfig, num_neurons: int) -> None:
    for region in config.masks:
        if region.neuron >= num_neurons:
            raise ConfigValidationError(
                f"mask region {region} names neuron {region.neuron}, but num_neurons={num_neurons}"
            )


# Fields that fix the shapes and warp grid of the global parameters
_GLOBALS_FIELDS = ("num_sequence_types", "num_warp_values", "max_warp", "warp_variance", "warp_type")


def _check_globals_compatible(config: ModelConfig, model: "Model") -> None:
    changed = [name for name in _GLOBALS_FIELDS if getattr(config, name) != getattr(model.config, name)]
    if changed:
        raise ConfigValidationError(
            f"config changes {changed} from the model's configuration, under which the "
            "model's global parameters were drawn; construct a new model instead"
        )


def construct_model(
    config: "ModelConfig | Mapping[str, Any] | None",
    max_time: float,
    num_neurons: int,
    *,
    seed: int | None = None,
) -> Model:
    """Validate hyperparameters and draw the initial global parameters.

    Parameters
    ----------
    config : ModelConfig or Mapping or None
        Hyperparameters. Missing entries take their defaults.
    max_time : float
        Recording length T. Must be positive.
    num_neurons : int
        Number of neurons N. Must be positive.
    seed : int, optional
        Seed for the prior draw. Defaults to ``config.seed``.

    Returns
    -------
    model : Model
        Model with prior global parameters and an empty event arena.

    Raises
    ------
    ConfigValidationError
        If a hyperparameter is invalid or a mask names a neuron >= N.
    ValueError
        If max_time or num_neurons is not positive.

    Examples
    --------
    >>> from ppseq import construct_model
    >>> model = construct_model({"num_sequence_types": 2}, max_time=100.0, num_neurons=5, seed=0)
    >>> model.globals.neuron_response_proportions.shape
    (2, 5)
    """
    config = validate_config(config)
    validate_positive(max_time, "max_time")
    if int(num_neurons) != num_neurons or num_neurons < 1:
        raise ValueError(f"num_neurons must be a positive integer, got {num_neurons}")
    _check_masks(config, int(num_neurons))

    rng = np.random.default_rng(config.seed if seed is None else seed)
    return Model(
        config=config,
        max_time=float(max_time),
        num_neurons=int(num_neurons),
        globals=sample_globals(config, int(num_neurons), rng),
        events=LatentEventSet(config.max_sequence_length),
    )


@dataclass(frozen=True)
class Sample:
    """Immutable snapshot of the chain after one sweep.

    Attributes:
        sweep: Sweep number (0 for the initial state)
        temperature: Temperature the sweep ran at
        log_likelihood: Log-likelihood of the unmasked spikes
        globals: Global parameters (immutable)
        events: Live events ordered by id
        assignments: Read-only labels in the time order of the SpikeStore
    """

    sweep: int
    temperature: float
    log_likelihood: float
    globals: GlobalParameters
    events: tuple[LatentEvent, ...]
    assignments: NDArray[np.int64]

    @property
    def num_events(self) -> int:
        return len(self.events)


@dataclass
class Diagnostics:
    """How a run went, beyond the samples themselves."""

    aborted: bool = False
    message: str = ""
    cancelled: bool = False
    warnings: list[str] = field(default_factory=list)
    bound_rejections: int = 0
    degeneracy_recoveries: int = 0


@dataclass
class SampleHistory:
    """Recorded samples, per-sweep traces and diagnostics of one run.

    Attributes:
        initial: Snapshot of the initialized chain
        anneal_samples: Snapshots recorded during annealing
        samples: Snapshots recorded after annealing
        log_likelihoods: Log-likelihood after every sweep
        held_out_log_likelihoods: Log-likelihood of masked spikes after every
            sweep (empty unless masking)
        num_events: Number of live events after every sweep
        accepted_splits: Accepted split moves per sweep
        accepted_merges: Accepted merge moves per sweep
        diagnostics: Abort, cancellation and warning information
    """

    initial: Sample
    anneal_samples: list[Sample] = field(default_factory=list)
    samples: list[Sample] = field(default_factory=list)
    log_likelihoods: list[float] = field(default_factory=list)
    held_out_log_likelihoods: list[float] = field(default_factory=list)
    num_events: list[int] = field(default_factory=list)
    accepted_splits: list[int] = field(default_factory=list)
    accepted_merges: list[int] = field(default_factory=list)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    @property
    def all_samples(self) -> list[Sample]:
        return self.anneal_samples + self.samples


class Progress(NamedTuple):
    """Passed to the run callback after every sweep."""

    state: SamplerState
    sweep: int
    total_sweeps: int
    temperature: float
    log_likelihood: float
    num_events: int


def annealing_temperatures(config: ModelConfig) -> NDArray[np.floating]:
    """Temperatures of the annealing steps, geometric from max_temperature to 1.

    Examples
    --------
    >>> from ppseq.config import ModelConfig
    >>> from ppseq.sampler import annealing_temperatures
    >>> annealing_temperatures(ModelConfig(num_anneals=3, max_temperature=100.0)).round(6).tolist()
    [100.0, 10.0, 1.0]
    """
    if config.num_anneals == 0:
        return np.empty(0)
    return np.geomspace(config.max_temperature, 1.0, config.num_anneals)


class Sampler:
    """Annealed Gibbs and split-merge sampler over one chain.

    The sampler exclusively owns the live chain state; everything it records
    is an immutable copy.

    Parameters
    ----------
    model : Model
        Model from :func:`construct_model`.
    spikes : SpikeStore
        Observed spikes; must match the model's num_neurons and max_time.
    initial_assignments : array-like, optional
        Label per spike in the input order of ``spikes`` (``BACKGROUND`` or an
        event id). ``None`` or an empty sequence starts with every spike in
        the background.
    config : ModelConfig or Mapping, optional
        Overrides the model's configuration. Fields that determine the
        shape of the global parameters (number of sequence types, warp grid
        and warp type) must match the model's.
    initial_events : iterable of LatentEvent, optional
        Parameters of events named in ``initial_assignments``. Events that
        are referenced but not given here have their parameters drawn from
        the posterior given their spikes. Defaults to the model's events.
    seed : int, optional
        Seed of the chain. Defaults to ``config.seed``.

    Raises
    ------
    ConfigValidationError
        If the configuration is invalid, inconsistent with the spikes, or
        changes the shape of the model's global parameters.
    AssignmentReferenceError
        If an initial assignment is below ``BACKGROUND``.
    ValueError
        If the spikes do not match the model or the initial assignments are
        malformed.
    """

    def __init__(
        self,
        model: Model,
        spikes: SpikeStore,
        initial_assignments: "Sequence[int] | NDArray[np.integer] | None" = None,
        config: "ModelConfig | Mapping[str, Any] | None" = None,
        *,
        initial_events: Iterable[LatentEvent] = (),
        seed: int | None = None,
    ) -> None:
        self.status = SamplerState.INITIALIZING
        self.config = validate_config(model.config if config is None else config)
        if spikes.num_neurons != model.num_neurons:
            raise ValueError(
                f"spikes have num_neurons={spikes.num_neurons}, model has {model.num_neurons}"
            )
        if spikes.max_time != model.max_time:
            raise ValueError(f"spikes have max_time={spikes.max_time}, model has {model.max_time}")
        _check_masks(self.config, model.num_neurons)
        _check_globals_compatible(self.config, model)

        self.rng = np.random.default_rng(self.config.seed if seed is None else seed)
        self.masks = self.config.active_masks
        self.sweeps_done = 0
        self._stalled_sweeps = 0

        initial_events = tuple(initial_events) or tuple(model.events.values())
        self.state = self._initial_state(model, spikes, initial_assignments, initial_events)
        temperatures = annealing_temperatures(self.config)
        start_temperature = float(temperatures[0]) if temperatures.size else 1.0
        self.history = SampleHistory(initial=self._snapshot(0, start_temperature, self._log_likelihood()))
        logger.info(
            "Initialized chain with %d spikes, %d events (%d sacred), %d masked spikes",
            len(spikes),
            len(self.state.events),
            len(self.state.events.sacred),
            int(self.state.inert.sum()),
        )

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _initial_state(
        self,
        model: Model,
        spikes: SpikeStore,
        initial_assignments,
        initial_events: tuple[LatentEvent, ...],
    ) -> ChainState:
        config = self.config
        n_spikes = len(spikes)

        if initial_assignments is None or len(initial_assignments) == 0:
            labels = np.full(n_spikes, BACKGROUND, dtype=np.int64)
        else:
            given = np.asarray(initial_assignments)
            if given.shape != (n_spikes,):
                raise ValueError(
                    f"initial_assignments must have shape ({n_spikes},), got {given.shape}"
                )
            labels = given.astype(np.int64)[spikes.sort_index]
            if np.any(labels < BACKGROUND):
                raise AssignmentReferenceError(
                    f"initial_assignments must be BACKGROUND ({BACKGROUND}) or event ids, got {labels.min()}"
                )

        inert = mask_spikes(spikes, self.masks)
        labels[inert] = BACKGROUND

        events = LatentEventSet(config.max_sequence_length)
        for event in initial_events:
            events.add(event.seq_type, event.time, event.amplitude, event.warp_index, event_id=event.id)

        state = ChainState(
            spikes=spikes,
            config=config,
            globals=model.globals,
            events=events,
            assignments=AssignmentVector.all_background(n_spikes),
            inert=inert,
        )

        for event_id in np.unique(labels[labels != BACKGROUND]):
            idx = np.flatnonzero(labels == event_id)
            event_id = int(event_id)
            if event_id not in events:
                self._add_posterior_event(state, event_id, idx)
            for spike in idx:
                state.assign(int(spike), event_id)

        if config.sacred_sequences:
            sacred = set(config.sacred_event_ids) or set(events.ids())
            missing = sacred - set(events.ids())
            if missing:
                raise ConfigValidationError(f"sacred_event_ids name events that do not exist: {sorted(missing)}")
            events.sacred = frozenset(sacred)

        state.prune()
        return state

    def _add_posterior_event(self, state: ChainState, event_id: int, idx: NDArray[np.int64]) -> None:
        spikes = state.spikes
        times = spikes.times[idx]
        params = sample_event_parameters(
            spikes.neurons[idx], times, state.globals, self.config, state.max_time, self.rng
        )
        time = params.time
        if not state.events.within_bounds(time, times):
            time = 0.5 * (times.min() + times.max())
            if not state.events.within_bounds(time, times):
                raise ValueError(
                    f"spikes assigned to event {event_id} span {np.ptp(times):.3g}, more than "
                    f"twice max_sequence_length={self.config.max_sequence_length}"
                )
        state.events.add(params.seq_type, time, params.amplitude, params.warp_index, event_id=event_id)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def _log_likelihood(self) -> float:
        state = self.state
        return log_likelihood(state.spikes, state.assignments, state.events, state.globals, masks=self.masks)

    def _snapshot(self, sweep: int, temperature: float, log_like: float) -> Sample:
        return Sample(
            sweep=sweep,
            temperature=float(temperature),
            log_likelihood=float(log_like),
            globals=self.state.globals,
            events=self.state.events.snapshot(),
            assignments=self.state.assignments.snapshot(),
        )

    def _sweep_once(self, temperature: float, num_moves: int, fallback: bool) -> tuple[float, SplitMergeStats]:
        state, rng = self.state, self.rng
        stats = SplitMergeStats()

        state.prune()
        sample_assignments(state, rng, temperature)
        for _ in range(num_moves):
            split_merge_move(state, rng, temperature, stats)
        resample_events(state, rng)
        state.globals = resample_globals(
            state.spikes,
            state.assignments,
            state.events,
            self.config,
            state.globals,
            rng,
            inert=state.inert,
            fallback=fallback,
        )

        log_like = self._log_likelihood()
        if not np.isfinite(log_like):
            raise NumericDegeneracyError(f"log-likelihood is not finite ({log_like})")
        return log_like, stats

    def sweep(self, temperature: float = 1.0, num_moves: int | None = None) -> tuple[float, SplitMergeStats]:
        """Run one full sweep, retrying once with prior fallbacks on numeric degeneracy.

        Parameters
        ----------
        temperature : float, optional
            Tempering of the likelihood terms, >= 1. Default 1.
        num_moves : int, optional
            Number of split-merge proposals. Defaults to
            ``split_merge_moves_after_anneal``.

        Returns
        -------
        log_likelihood : float
            Log-likelihood after the sweep.
        stats : SplitMergeStats
            Split-merge proposals and acceptances of the sweep.

        Raises
        ------
        NumericDegeneracyError
            If the retried sweep is degenerate as well. The chain state is
            then left as it was before the retry.
        """
        if num_moves is None:
            num_moves = self.config.split_merge_moves_after_anneal
        backup = self.state.copy()
        try:
            result = self._sweep_once(temperature, num_moves, fallback=False)
        except NumericDegeneracyError as err:
            logger.warning("Sweep %d degenerate (%s); retrying with prior fallback", self.sweeps_done + 1, err)
            self.history.diagnostics.degeneracy_recoveries += 1
            self.state = backup.copy()
            try:
                result = self._sweep_once(temperature, num_moves, fallback=True)
            except NumericDegeneracyError:
                self.state = backup
                raise
        self.sweeps_done += 1
        return result

    def _record(self, log_like: float, stats: SplitMergeStats, num_moves: int) -> None:
        history, state = self.history, self.state
        history.log_likelihoods.append(log_like)
        history.num_events.append(len(state.events))
        history.accepted_splits.append(stats.accepted_splits)
        history.accepted_merges.append(stats.accepted_merges)
        if self.masks:
            history.held_out_log_likelihoods.append(
                held_out_log_likelihood(state.spikes, state.events, state.globals, self.masks)
            )
        history.diagnostics.bound_rejections = state.bound_rejections

        if num_moves == 0:
            return
        self._stalled_sweeps = 0 if stats.accepted else self._stalled_sweeps + 1
        if self._stalled_sweeps >= self.config.convergence_window:
            message = (
                f"No split-merge move accepted in the last {self._stalled_sweeps} sweeps "
                f"(sweep {self.sweeps_done})"
            )
            warnings.warn(message, ConvergenceWarning, stacklevel=3)
            logger.warning(message)
            history.diagnostics.warnings.append(message)
            self._stalled_sweeps = 0

    def _schedule(self) -> list[tuple[SamplerState, float, int, bool]]:
        """(phase, temperature, split-merge moves, save) for every sweep of the run."""
        config = self.config
        schedule = []
        anneal_sweep = 0
        for temperature in annealing_temperatures(config):
            for _ in range(config.samples_per_anneal):
                anneal_sweep += 1
                save = anneal_sweep % config.save_every_during_anneal == 0
                schedule.append(
                    (SamplerState.ANNEALING, float(temperature), config.split_merge_moves_during_anneal, save)
                )
        for sweep in range(1, config.samples_after_anneal + 1):
            save = sweep % config.save_every_after_anneal == 0
            schedule.append((SamplerState.SAMPLING, 1.0, config.split_merge_moves_after_anneal, save))
        return schedule

    def run(self, callback: "Callable[[Progress], bool | None] | None" = None) -> SampleHistory:
        """Run annealing and then sampling, recording snapshots.

        Parameters
        ----------
        callback : callable, optional
            Called with a :class:`Progress` after every sweep. Returning True
            stops the run after that sweep.

        Returns
        -------
        history : SampleHistory
            Everything recorded. If a sweep stays numerically degenerate
            after its retry, the history so far is returned with
            ``diagnostics.aborted`` set.
        """
        if self.status is not SamplerState.INITIALIZING:
            raise RuntimeError(f"run() requires a fresh sampler, state is {self.status.value}")

        history = self.history
        schedule = self._schedule()
        for phase, temperature, num_moves, save in schedule:
            if phase is not self.status:
                logger.info("Entering %s phase at sweep %d", phase.value, self.sweeps_done + 1)
                self.status = phase
            try:
                log_like, stats = self.sweep(temperature, num_moves)
            except NumericDegeneracyError as err:
                history.diagnostics.aborted = True
                history.diagnostics.message = str(err)
                logger.error("Aborting run at sweep %d: %s", self.sweeps_done + 1, err)
                break

            self._record(log_like, stats, num_moves)
            logger.debug(
                "Sweep %d: T=%.3g, events=%d, log-likelihood=%.2f, splits=%d/%d, merges=%d/%d",
                self.sweeps_done,
                temperature,
                len(self.state.events),
                log_like,
                stats.accepted_splits,
                stats.proposed_splits,
                stats.accepted_merges,
                stats.proposed_merges,
            )
            if save:
                sample = self._snapshot(self.sweeps_done, temperature, log_like)
                (history.anneal_samples if phase is SamplerState.ANNEALING else history.samples).append(sample)

            if callback is not None and callback(
                Progress(phase, self.sweeps_done, len(schedule), temperature, log_like, len(self.state.events))
            ):
                history.diagnostics.cancelled = True
                logger.info("Run cancelled after sweep %d", self.sweeps_done)
                break

        self.status = SamplerState.DONE
        history.diagnostics.bound_rejections = self.state.bound_rejections
        logger.info(
            "Finished after %d sweeps: %d events, %d samples recorded",
            self.sweeps_done,
            len(self.state.events),
            len(history.anneal_samples) + len(history.samples),
        )
        return history


def run_sampler(
    model: Model,
    spikes: SpikeStore,
    initial_assignments: "Sequence[int] | NDArray[np.integer] | None" = None,
    config: "ModelConfig | Mapping[str, Any] | None" = None,
    *,
    initial_events: Iterable[LatentEvent] = (),
    seed: int | None = None,
    callback: "Callable[[Progress], bool | None] | None" = None,
) -> SampleHistory:
    """Fit the model to spikes by annealed MCMC.

    See :class:`Sampler` for the parameters.

    Returns
    -------
    history : SampleHistory
        Recorded samples, traces and diagnostics.

    Examples
    --------
    >>> from ppseq import SpikeStore, construct_model, run_sampler
    >>> spikes = SpikeStore([0, 1, 2], [1.0, 1.2, 1.4], num_neurons=3, max_time=10.0)
    >>> config = {"num_anneals": 0, "samples_after_anneal": 3, "save_every_after_anneal": 1}
    >>> model = construct_model(config, max_time=10.0, num_neurons=3, seed=0)
    >>> history = run_sampler(model, spikes, seed=1)
    >>> len(history.samples)
    3
    """
    sampler = Sampler(
        model, spikes, initial_assignments, config, initial_events=initial_events, seed=seed
    )
    return sampler.run(callback)


def _run_chain(args: tuple) -> SampleHistory:
    model, spikes, initial_assignments, config, seed = args
    return run_sampler(model, spikes, initial_assignments, config, seed=seed)


def run_chains(
    model: Model,
    spikes: SpikeStore,
    num_chains: int,
    *,
    initial_assignments: "Sequence[int] | NDArray[np.integer] | None" = None,
    config: "ModelConfig | Mapping[str, Any] | None" = None,
    seed: int | None = None,
    max_workers: int | None = None,
) -> list[SampleHistory]:
    """Run independent chains with independent seeds.

    Parameters
    ----------
    model : Model
        Model shared (by value) by all chains.
    spikes : SpikeStore
        Observed spikes.
    num_chains : int
        Number of chains.
    initial_assignments, config
        As in :func:`run_sampler`.
    seed : int, optional
        Root seed; chain seeds are spawned from it.
    max_workers : int, optional
        If greater than 1, chains run in that many worker processes.
        Otherwise they run sequentially in this process.

    Returns
    -------
    histories : list of SampleHistory
        One per chain, in chain order.
    """
    if num_chains < 1:
        raise ValueError(f"num_chains must be >= 1, got {num_chains}")
    seed = (model.config.seed if seed is None else seed)
    chain_seeds = [int(s.generate_state(1)[0]) for s in np.random.SeedSequence(seed).spawn(num_chains)]
    jobs = [(model, spikes, initial_assignments, config, s) for s in chain_seeds]

    if max_workers is None or max_workers <= 1:
        return [_run_chain(job) for job in jobs]
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(_run_chain, jobs))
