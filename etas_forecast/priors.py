"""Bayesian priors over the fitting grid.

A prior supplies, for every sub-voxel of a voxel, the log of the prior
density and the volume of the sub-voxel cell. Volumes are measured in
the prior's own coordinates: ``log10(c)`` and ``log10(n)`` for the
log-scaled Omori c-value and branch ratio, the parameter itself
otherwise. Zero-width (fixed) parameters do not contribute to volumes.
"""

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import numpy.typing as npt
import scipy as sp

from etas_forecast.value_range import ValueAxis, ValueElement, axis_values


def _log_width(element: ValueElement) -> float:
    if element.width <= 0.0:
        return 1.0
    return float(np.log10(element.upper / element.lower))


def _width(element: Optional[ValueElement]) -> float:
    if element is None or element.width <= 0.0:
        return 1.0
    return element.width


def _axis_widths(axis: Optional[ValueAxis]) -> npt.NDArray[np.float64]:
    if axis is None:
        return np.ones(1)
    return np.array([_width(element) for element in axis])


class BayesianPrior(ABC):
    """A prior distribution over the ETAS parameters."""

    def vox_volume(
        self,
        b: ValueElement,
        alpha: Optional[ValueElement],
        c: ValueElement,
        p: ValueElement,
        n: ValueElement,
        zams_axis: ValueAxis,
        zmu_axis: Optional[ValueAxis],
    ) -> npt.NDArray[np.float64]:
        """Return the volume of each sub-voxel, ordered with zmu varying fastest."""
        primary = _width(b) * _width(alpha) * _log_width(c) * _width(p) * _log_width(n)
        return primary * np.outer(_axis_widths(zams_axis), _axis_widths(zmu_axis)).ravel()

    @abstractmethod
    def log_density(
        self,
        b: float,
        alpha: float,
        c: float,
        p: float,
        n: float,
        zams: npt.NDArray[np.float64],
        zmu: Optional[npt.NDArray[np.float64]],
    ) -> npt.NDArray[np.float64]:
        """Return the log prior density at each sub-voxel.

        Parameters
        ----------
        b, alpha, c, p, n : float
            The voxel's primary parameters.
        zams : np.ndarray
            The mainshock productivity of each sub-voxel.
        zmu : Optional[np.ndarray]
            The background rate of each sub-voxel, or None.

        Returns
        -------
        np.ndarray
            The log density, one per sub-voxel.
        """


class UniformPrior(BayesianPrior):
    """A prior with constant density."""

    def log_density(self, b, alpha, c, p, n, zams, zmu):
        return np.zeros(len(zams))


class GaussianPrior(BayesianPrior):
    """A Gaussian prior on the mainshock productivity, uniform in the other parameters.

    Parameters
    ----------
    zams_mean : float
        Mean of ``zams``.
    zams_sigma : float
        Standard deviation of ``zams``.
    """

    def __init__(self, zams_mean: float = -2.0, zams_sigma: float = 0.5):
        self.zams_mean = zams_mean
        self.zams_sigma = zams_sigma

    def log_density(self, b, alpha, c, p, n, zams, zmu):
        return sp.stats.norm.logpdf(zams, loc=self.zams_mean, scale=self.zams_sigma)


def subvox_values(
    zams_axis: ValueAxis, zmu_axis: Optional[ValueAxis]
) -> tuple[npt.NDArray[np.float64], Optional[npt.NDArray[np.float64]]]:
    """Return the ``(zams, zmu)`` values of each sub-voxel, with zmu varying fastest."""
    zams = axis_values(zams_axis)
    if zmu_axis is None:
        return zams, None
    zmu = axis_values(zmu_axis)
    return np.repeat(zams, len(zmu)), np.tile(zmu, len(zams))
