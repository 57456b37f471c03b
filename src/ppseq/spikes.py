"""Immutable spike storage and held-out mask utilities."""

from collections.abc import Sequence

import numpy as np
from numpy.typing import NDArray

from ._validation import readonly, validate_positive, validate_spike_arrays
from .config import MaskRegion


class SpikeStore:
    """Time-ordered collection of (neuron, time) observations.

    Parameters
    ----------
    neurons : np.ndarray
        Neuron id of each spike. Shape (n_spikes,).
    times : np.ndarray
        Time of each spike. Shape (n_spikes,).
    num_neurons : int
        Number of recorded neurons N.
    max_time : float
        Length of the recording T; times lie in [0, T].

    Notes
    -----
    Spikes are stably sorted by time on ingestion. ``sort_index`` holds the
    permutation applied, so ``labels[store.sort_index]`` reorders per-spike
    labels given in input order. Arrays are read-only.
    """

    def __init__(
        self,
        neurons: NDArray[np.integer],
        times: NDArray[np.floating],
        num_neurons: int,
        max_time: float,
    ) -> None:
        neuron_arr, time_arr = validate_spike_arrays(neurons, times, num_neurons, max_time)
        order = np.argsort(time_arr, kind="stable")

        self.num_neurons = int(num_neurons)
        self.max_time = float(max_time)
        self.neurons = readonly(neuron_arr[order])
        self.times = readonly(time_arr[order])
        self.sort_index = readonly(order)

    @classmethod
    def from_pairs(
        cls, pairs: Sequence[tuple[int, float]], num_neurons: int, max_time: float
    ) -> "SpikeStore":
        """Build a store from an iterable of (neuron, time) pairs."""
        arr = np.asarray(pairs, dtype=float).reshape(-1, 2)
        return cls(arr[:, 0].astype(np.int64), arr[:, 1], num_neurons, max_time)

    def __len__(self) -> int:
        return int(self.times.size)

    def __repr__(self) -> str:
        return (
            f"SpikeStore(n_spikes={len(self)}, num_neurons={self.num_neurons}, "
            f"max_time={self.max_time})"
        )

    def spike_counts(self) -> NDArray[np.int64]:
        """Number of spikes per neuron. Shape (num_neurons,)."""
        return np.bincount(self.neurons, minlength=self.num_neurons)

    def window(self, start: float, end: float) -> NDArray[np.int64]:
        """Indices of spikes with start <= time <= end."""
        lo = np.searchsorted(self.times, start, side="left")
        hi = np.searchsorted(self.times, end, side="right")
        return np.arange(lo, hi)


def mask_spikes(spikes: SpikeStore, masks: Sequence[MaskRegion]) -> NDArray[np.bool_]:
    """Flag spikes that fall inside any mask region.

    Parameters
    ----------
    spikes : SpikeStore
        Spikes to test.
    masks : sequence of MaskRegion
        Held-out (neuron, start, end) regions; intervals are half-open.

    Returns
    -------
    is_masked : np.ndarray
        True for spikes inside a region. Shape (n_spikes,).
    """
    is_masked = np.zeros(len(spikes), dtype=bool)
    for neuron, start, end in masks:
        is_masked |= (spikes.neurons == neuron) & (spikes.times >= start) & (spikes.times < end)
    return is_masked


def masked_duration(
    masks: Sequence[MaskRegion], num_neurons: int, max_time: float
) -> NDArray[np.floating]:
    """Total masked time per neuron, clipped to [0, T] with overlaps merged.

    Returns
    -------
    duration : np.ndarray
        Masked time on each neuron. Shape (num_neurons,).
    """
    duration = np.zeros(num_neurons)
    for neuron in range(num_neurons):
        intervals = sorted(
            (max(start, 0.0), min(end, max_time))
            for n, start, end in masks
            if n == neuron and end > 0 and start < max_time
        )
        cur_start, cur_end = None, None
        for start, end in intervals:
            if cur_end is None or start > cur_end:
                if cur_end is not None:
                    duration[neuron] += cur_end - cur_start
                cur_start, cur_end = start, end
            else:
                cur_end = max(cur_end, end)
        if cur_end is not None:
            duration[neuron] += cur_end - cur_start
    return duration


def create_random_mask(
    num_neurons: int,
    max_time: float,
    mask_length: float,
    percent_masked: float,
    rng: np.random.Generator,
) -> tuple[MaskRegion, ...]:
    """Hold out a random fraction of each neuron's recording.

    The recording of every neuron is cut into consecutive blocks of
    ``mask_length`` and a random ``percent_masked`` percent of the blocks is
    masked, independently per neuron.

    Parameters
    ----------
    num_neurons : int
        Number of neurons N.
    max_time : float
        Recording length T.
    mask_length : float
        Length of each masked block.
    percent_masked : float
        Percentage of blocks to mask, in [0, 100].
    rng : np.random.Generator
        Random number generator.

    Returns
    -------
    masks : tuple of MaskRegion
        Masked regions, ordered by neuron then start time.

    Raises
    ------
    ValueError
        If mask_length is not positive or percent_masked is outside [0, 100].

    Examples
    --------
    >>> import numpy as np
    >>> from ppseq.spikes import create_random_mask
    >>> masks = create_random_mask(2, 10.0, 1.0, 20.0, np.random.default_rng(0))
    >>> len(masks)
    4
    """
    validate_positive(mask_length, "mask_length")
    validate_positive(max_time, "max_time")
    if not (0.0 <= percent_masked <= 100.0):
        raise ValueError(f"percent_masked must be in [0, 100], got {percent_masked}")

    starts = np.arange(0.0, max_time, mask_length)
    n_blocks = starts.size
    n_masked = int(round(n_blocks * percent_masked / 100.0))

    masks = []
    for neuron in range(num_neurons):
        chosen = np.sort(rng.choice(n_blocks, size=n_masked, replace=False))
        for block in chosen:
            start = float(starts[block])
            masks.append(MaskRegion(neuron, start, min(start + mask_length, max_time)))
    return tuple(masks)
