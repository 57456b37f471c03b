"""Validation utilities for spike arrays, probability vectors and parameters."""

import numpy as np
from numpy.typing import NDArray

from .errors import AssignmentReferenceError

PROBABILITY_ATOL = 1e-9


def validate_positive(value: float, name: str) -> None:
    """Validate that a scalar is finite and strictly positive.

    Parameters
    ----------
    value : float
        Value to validate
    name : str
        Name for error messages

    Raises
    ------
    ValueError
        If value is not finite or not > 0
    """
    if not (np.isfinite(value) and value > 0):
        raise ValueError(f"{name} must be finite and positive, got {value}")


def validate_probability_vector(
    probabilities: NDArray[np.floating],
    name: str = "probabilities",
    atol: float = PROBABILITY_ATOL,
) -> NDArray[np.floating]:
    """Validate that the last axis of an array holds probability vectors.

    Parameters
    ----------
    probabilities : np.ndarray
        Array whose last axis should sum to one. Shape (..., n_categories).
    name : str
        Name for error messages
    atol : float
        Absolute tolerance on the sum.

    Returns
    -------
    arr : np.ndarray
        The input as a float array.

    Raises
    ------
    ValueError
        If any entry is negative or non-finite, or a vector does not sum to 1.
    """
    arr = np.asarray(probabilities, dtype=float)
    if arr.ndim < 1 or arr.shape[-1] == 0:
        raise ValueError(f"{name} must have a non-empty last axis, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} contains non-finite values (NaN or inf).")
    if np.any(arr < 0):
        raise ValueError(f"{name} must be non-negative.")
    sums = arr.sum(axis=-1)
    if not np.allclose(sums, 1.0, rtol=0.0, atol=atol):
        raise ValueError(f"{name} must sum to 1 along the last axis, got sums {sums}")
    return arr


def validate_spike_arrays(
    neurons: NDArray[np.integer],
    times: NDArray[np.floating],
    num_neurons: int,
    max_time: float,
) -> tuple[NDArray[np.int64], NDArray[np.floating]]:
    """Validate and coerce paired neuron-id and spike-time arrays.

    Parameters
    ----------
    neurons : np.ndarray
        Neuron index of each spike. Shape (n_spikes,).
    times : np.ndarray
        Time of each spike. Shape (n_spikes,).
    num_neurons : int
        Number of neurons N; ids must lie in [0, N).
    max_time : float
        Recording length T; times must lie in [0, T].

    Returns
    -------
    neurons : np.ndarray
        Neuron ids as int64. Shape (n_spikes,).
    times : np.ndarray
        Spike times as float64. Shape (n_spikes,).

    Raises
    ------
    ValueError
        If shapes differ, arrays are not 1D or times fall outside the
        recording.
    AssignmentReferenceError
        If a neuron id lies outside [0, num_neurons).
    """
    if int(num_neurons) <= 0:
        raise ValueError(f"num_neurons must be positive, got {num_neurons}")
    validate_positive(max_time, "max_time")

    neuron_arr = np.asarray(neurons)
    time_arr = np.asarray(times, dtype=float)

    if neuron_arr.ndim != 1 or time_arr.ndim != 1:
        raise ValueError(
            f"neurons and times must be 1-dimensional, "
            f"got shapes {neuron_arr.shape} and {time_arr.shape}"
        )
    if neuron_arr.shape != time_arr.shape:
        raise ValueError(
            f"neurons and times must have same length, got {neuron_arr.shape} vs {time_arr.shape}"
        )
    if neuron_arr.size and not np.all(np.equal(np.mod(neuron_arr, 1), 0)):
        raise ValueError("neurons must contain integer ids.")
    neuron_arr = neuron_arr.astype(np.int64)

    if np.any((neuron_arr < 0) | (neuron_arr >= num_neurons)):
        raise AssignmentReferenceError(f"neuron ids must lie in [0, {num_neurons}).")
    if not np.all(np.isfinite(time_arr)):
        raise ValueError("times contains non-finite values (NaN or inf).")
    if np.any((time_arr < 0) | (time_arr > max_time)):
        raise ValueError(f"spike times must lie in [0, {max_time}].")

    return neuron_arr, time_arr


def readonly(arr: NDArray) -> NDArray:
    """Return a read-only copy of an array."""
    out = np.array(arr, copy=True)
    out.flags.writeable = False
    return out
