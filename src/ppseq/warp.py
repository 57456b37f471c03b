"""Warp kernels: how an event's warp value reshapes per-neuron offset distributions.

Each sequence type describes, for every neuron, a canonical Gaussian offset
distribution N(c, sigma^2) of spike times relative to event onset. An event
carries one value from a fixed warp grid, and the kernel selected by
``ModelConfig.warp_type`` maps the canonical distribution to the one used for
that event. The set of kernels is closed: :class:`MultiplicativeWarp` and
:class:`AdditiveWarp`.
"""

from abc import ABC, abstractmethod

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.special import logsumexp
from scipy.stats import norm

from .config import WarpType

_LOG_2PI = np.log(2 * np.pi)


class WarpKernel(ABC):
    """Capability interface shared by all warp kernels."""

    warp_type: WarpType
    identity: float

    @abstractmethod
    def grid(self, num_values: int, max_warp: float) -> NDArray[np.floating]:
        """Return the grid of warp values, ordered increasingly."""

    @abstractmethod
    def transform(
        self, mean: ArrayLike, variance: ArrayLike, warp: ArrayLike
    ) -> tuple[NDArray[np.floating], NDArray[np.floating]]:
        """Map canonical (mean, variance) to the warped offset distribution."""

    @abstractmethod
    def unwarp(self, offset: ArrayLike, warp: ArrayLike) -> NDArray[np.floating]:
        """Map an observed offset back to canonical (unwarped) units."""

    def log_offset_density(
        self, offset: ArrayLike, warp: ArrayLike, mean: ArrayLike, variance: ArrayLike
    ) -> NDArray[np.floating]:
        """Log density of a spike offset ``t - tau`` under a warped event."""
        loc, var = self.transform(mean, variance, warp)
        return -0.5 * (_LOG_2PI + np.log(var) + (np.asarray(offset, dtype=float) - loc) ** 2 / var)

    def offset_density(
        self, offset: ArrayLike, warp: ArrayLike, mean: ArrayLike, variance: ArrayLike
    ) -> NDArray[np.floating]:
        """Density of a spike offset ``t - tau`` under a warped event."""
        return np.exp(self.log_offset_density(offset, warp, mean, variance))


class MultiplicativeWarp(WarpKernel):
    """Time dilation: offsets and widths both scale by the warp factor.

    t - tau ~ N(w * c, (w * sigma)^2) with w on a geometric grid in
    [1 / max_warp, max_warp].
    """

    warp_type = WarpType.MULTIPLICATIVE
    identity = 1.0

    def grid(self, num_values: int, max_warp: float) -> NDArray[np.floating]:
        if num_values == 1:
            return np.array([self.identity])
        return np.geomspace(1.0 / max_warp, max_warp, num_values)

    def transform(self, mean, variance, warp):
        warp = np.asarray(warp, dtype=float)
        return warp * np.asarray(mean, dtype=float), warp**2 * np.asarray(variance, dtype=float)

    def unwarp(self, offset, warp):
        return np.asarray(offset, dtype=float) / np.asarray(warp, dtype=float)


class AdditiveWarp(WarpKernel):
    """Shift: every offset moves by the warp value, widths are unchanged.

    t - tau ~ N(c + w, sigma^2) with w on a linear grid in
    [-(max_warp - 1), max_warp - 1].
    """

    warp_type = WarpType.ADDITIVE
    identity = 0.0

    def grid(self, num_values: int, max_warp: float) -> NDArray[np.floating]:
        if num_values == 1:
            return np.array([self.identity])
        bound = max_warp - 1.0
        return np.linspace(-bound, bound, num_values)

    def transform(self, mean, variance, warp):
        mean = np.asarray(mean, dtype=float)
        variance = np.asarray(variance, dtype=float)
        return mean + np.asarray(warp, dtype=float), np.broadcast_to(
            variance, np.broadcast_shapes(variance.shape, mean.shape, np.shape(warp))
        ).astype(float)

    def unwarp(self, offset, warp):
        return np.asarray(offset, dtype=float) - np.asarray(warp, dtype=float)


_KERNELS: dict[WarpType, WarpKernel] = {
    WarpType.MULTIPLICATIVE: MultiplicativeWarp(),
    WarpType.ADDITIVE: AdditiveWarp(),
}


def get_warp_kernel(warp_type: WarpType | str) -> WarpKernel:
    """Return the kernel implementing ``warp_type``.

    Raises
    ------
    ValueError
        If warp_type does not name a known kernel.
    """
    return _KERNELS[WarpType(warp_type)]


def warp_log_proportions(num_values: int, warp_variance: float) -> NDArray[np.floating]:
    """Log prior probability of each warp grid value.

    A zero-mean normal with variance ``warp_variance`` evaluated on an evenly
    spaced index grid in [-1, 1], normalized to sum to one. A single-value
    grid gets log-probability 0.

    Examples
    --------
    >>> import numpy as np
    >>> from ppseq.warp import warp_log_proportions
    >>> logp = warp_log_proportions(5, 1.0)
    >>> bool(np.isclose(np.exp(logp).sum(), 1.0))
    True
    """
    if num_values == 1:
        return np.zeros(1)
    positions = np.linspace(-1.0, 1.0, num_values)
    logp = norm.logpdf(positions, loc=0.0, scale=np.sqrt(warp_variance))
    return logp - logsumexp(logp)
