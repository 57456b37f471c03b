"""Neuron orderings that make sequences visible in raster plots."""

import numpy as np
from numpy.typing import NDArray

from .parameters import GlobalParameters


def sort_neurons_by_response(globals_: GlobalParameters) -> NDArray[np.int64]:
    """Order neurons by preferred sequence type, then by response offset.

    A neuron's preferred type is the one giving it the largest share of
    event spikes. Within a type, neurons that fire earlier after event onset
    come first, so each sequence appears as a diagonal band when spikes are
    plotted with neuron ``order[k]`` on row k.

    Parameters
    ----------
    globals_ : GlobalParameters
        Global parameters of one sample.

    Returns
    -------
    order : np.ndarray
        Permutation of neuron ids. Shape (num_neurons,).

    Examples
    --------
    >>> import numpy as np
    >>> from ppseq import construct_model, sort_neurons_by_response
    >>> model = construct_model({}, max_time=10.0, num_neurons=4, seed=0)
    >>> np.sort(sort_neurons_by_response(model.globals)).tolist()
    [0, 1, 2, 3]
    """
    neurons = np.arange(globals_.num_neurons)
    preferred = np.argmax(globals_.neuron_response_proportions, axis=0)
    offsets = globals_.neuron_response_offsets[preferred, neurons]
    # lexsort sorts by the last key first
    return np.lexsort((neurons, offsets, preferred)).astype(np.int64)
