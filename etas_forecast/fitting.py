"""Fitting information and likelihood handles for voxel fitting.

The fitted history is an observed earthquake sequence: the mainshock
(if any) and the earthquakes around it, complete above the fitting
magnitude ``mag_min``. Productivity is parameterised by

- ``ten_aint_q``: ``10^a * Q`` for non-mainshock earthquakes, derived
  from the branch ratio ``n`` with ``Q`` taken over the observed range
  ``[mag_min, mag_max]`` (so that it accounts for unobserved smaller
  earthquakes);
- ``ten_ams_q``: ``10^ams`` for the mainshock, where ``ams`` is derived
  from ``zams``, the mainshock productivity as it would be if
  ``alpha == b``;
- ``mu``: the background rate of earthquakes above ``mref`` per day,
  derived from ``zmu``, the background rate above the mainshock
  magnitude.

The log-likelihood is the ETAS point process log-likelihood of the
aftershocks of the history given these productivities. Since the
likelihood is linear in the three productivities, `MagOmoriHandle`
precomputes every Omori sum once per ``(p, c, b, alpha)``, and
`ProductivityHandle` evaluates the likelihood for many sub-voxels at
once.

Source earthquakes are bucketed into time groups before the forecast
start; the unscaled productivity of each group becomes one seed rupture
of the simulation.
"""

import dataclasses
from typing import Any, ClassVar, Optional, Self

import numpy as np
import numpy.typing as npt
import pandas as pd
from schema import Schema

from etas_forecast import schemas, stats
from etas_forecast.catalog import GenerationInfo
from etas_forecast.constants import C_LOG_10, STABLE_LIMIT_EPS
from etas_forecast.parameters import MarshalableConfiguration

TINY_INTENSITY = 1.0e-300
"""Lower bound on the intensity at an observed earthquake."""


@dataclasses.dataclass
class FitHistory:
    """An observed earthquake sequence used for fitting."""

    t_day: npt.NDArray[np.float64]
    """Earthquake times, in days, sorted."""
    rup_mag: npt.NDArray[np.float64]
    """Earthquake magnitudes."""
    main_index: Optional[int]
    """Index of the mainshock, or None."""
    t_forecast: float
    """Start of the forecast (end of the fitting interval), in days."""

    @classmethod
    def from_dataframe(
        cls,
        history: pd.DataFrame,
        t_forecast: Optional[float] = None,
        has_mainshock: bool = True,
    ) -> Self:
        """Build a history from a table of earthquakes.

        Parameters
        ----------
        history : pd.DataFrame
            Table with columns ``time_days`` and ``magnitude``.
        t_forecast : Optional[float]
            Start of the forecast. Defaults to the time of the last
            earthquake.
        has_mainshock : bool
            If True, the largest earthquake is the mainshock.

        Returns
        -------
        FitHistory
            The history, sorted by time.
        """
        history = history.sort_values("time_days", kind="stable")
        t_day = history["time_days"].to_numpy(dtype=np.float64)
        rup_mag = history["magnitude"].to_numpy(dtype=np.float64)
        return cls(
            t_day=t_day,
            rup_mag=rup_mag,
            main_index=int(np.argmax(rup_mag)) if has_mainshock and len(rup_mag) else None,
            t_forecast=float(t_day[-1]) if t_forecast is None else t_forecast,
        )

    @property
    def mag_main(self) -> Optional[float]:
        if self.main_index is None:
            return None
        return float(self.rup_mag[self.main_index])


@dataclasses.dataclass
class FitInfo(MarshalableConfiguration):
    """Configuration of a fit, shared read-only by every voxel and seeder."""

    _config_key: ClassVar[str] = "fit_info"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.FIT_INFO_SCHEMA

    mref: float
    """Reference magnitude."""
    msup: float
    """Supremum magnitude."""
    mag_min: float
    """Minimum magnitude of the fitted (complete) history."""
    mag_max: float
    """Maximum magnitude of the fitted history."""
    mag_main: Optional[float]
    """Magnitude of the mainshock, or None."""
    tint_br: float
    """Time interval for branch ratios, in days."""
    f_background: bool
    """True if the fit supports a background rate."""
    group_time: npt.NDArray[np.float64]
    """Representative time of each source group, in days."""
    group_duration: npt.NDArray[np.float64]
    """Length of the fitted time interval covered by each source group, in days."""

    def _fields_to_dict(self) -> dict[str, Any]:
        fields = dataclasses.asdict(self)
        fields["group_time"] = self.group_time.tolist()
        fields["group_duration"] = self.group_duration.tolist()
        return fields

    @property
    def group_count(self) -> int:
        return len(self.group_time)

    @property
    def seed_gen_info(self) -> GenerationInfo:
        return GenerationInfo(self.mag_min, self.mag_max)

    @property
    def scaling_mag(self) -> float:
        """Magnitude that ``zams`` and ``zmu`` are relative to."""
        return self.mag_main if self.mag_main is not None else self.mref

    @classmethod
    def from_history(
        cls,
        history: FitHistory,
        mref: float,
        msup: float,
        mag_min: float,
        mag_max: float,
        tint_br: float,
        group_lookback: npt.NDArray[np.float64],
        f_background: bool = False,
    ) -> Self:
        """Build the fitting information for a history.

        Parameters
        ----------
        history : FitHistory
            The observed sequence.
        mref, msup : float
            Reference and supremum magnitudes.
        mag_min, mag_max : float
            Magnitude range of the fitted history.
        tint_br : float
            Time interval for branch ratios, in days.
        group_lookback : np.ndarray
            Increasing group edges, in days before the forecast start,
            starting with 0.
        f_background : bool
            True to support a background rate.

        Returns
        -------
        FitInfo
            The fitting information. Each source group's time is the
            time of its largest earthquake, or its midpoint if it has
            none.
        """
        edges = history.t_forecast - np.asarray(group_lookback)[::-1]
        fit_begin = float(history.t_day[0]) if len(history.t_day) else edges[0]
        group_time = (edges[:-1] + edges[1:]) / 2
        group_index = group_of(edges, history.t_day)
        for group in range(len(group_time)):
            members = np.nonzero(
                (group_index == group) & (history.rup_mag >= mag_min)
            )[0]
            if len(members):
                group_time[group] = history.t_day[
                    members[np.argmax(history.rup_mag[members])]
                ]
        group_duration = np.maximum(
            edges[1:] - np.maximum(edges[:-1], fit_begin), 0.0
        )
        return cls(
            mref=mref,
            msup=msup,
            mag_min=mag_min,
            mag_max=mag_max,
            mag_main=history.mag_main,
            tint_br=tint_br,
            f_background=f_background,
            group_time=group_time,
            group_duration=group_duration,
        )

    def group_edges(self, t_forecast: float) -> npt.NDArray[np.float64]:
        """Recover the group edges from the group durations, ending at `t_forecast`."""
        return t_forecast - np.concatenate(([0.0], np.cumsum(self.group_duration[::-1])))[::-1]

    def calc_ten_a_q_from_branch_ratio(
        self, n: float, p: float, c: float, b: float, alpha: float
    ) -> float:
        """Compute ``10^a * Q`` for the fitted magnitude range from a branch ratio."""
        return stats.ten_a_q_from_branch_ratio(
            n, p, c, b, alpha, self.mref, self.mag_min, self.mag_max, self.tint_br
        )

    def calc_a_from_branch_ratio(
        self, n: float, p: float, c: float, b: float, alpha: float, mref: float, msup: float
    ) -> float:
        """Compute the productivity ``a`` relative to ``[mref, msup]`` from a branch ratio."""
        return stats.inv_branch_ratio(n, p, c, b, alpha, mref, msup, self.tint_br)

    def calc_ams_from_zams(self, zams: npt.ArrayLike, b: float, alpha: float) -> np.ndarray:
        """Convert ``zams`` (mainshock productivity as if ``alpha == b``) to ``ams``."""
        return np.asarray(zams, dtype=np.float64) + (b - alpha) * (
            self.scaling_mag - self.mref
        )

    def calc_ten_ams_q_from_zams(
        self, zams: npt.ArrayLike, b: float, alpha: float
    ) -> np.ndarray:
        """Convert ``zams`` to ``10^ams``; the mainshock correction ``Q`` is 1."""
        return 10.0 ** self.calc_ams_from_zams(zams, b, alpha)

    def calc_mu_from_zmu(self, zmu: npt.ArrayLike, b: float) -> np.ndarray:
        """Convert ``zmu`` (background rate above the scaling magnitude) to ``mu`` (above ``mref``)."""
        return np.asarray(zmu, dtype=np.float64) * 10.0 ** (
            b * (self.scaling_mag - self.mref)
        )

    def calc_m0_from_prod_and_ten_ams_q(
        self, k_prod: float, ten_ams_q: float, alpha: float
    ) -> float:
        """Magnitude of a mainshock-like rupture with productivity `k_prod`."""
        return stats.magnitude_from_corrected_k(k_prod, ten_ams_q, alpha, self.mref)


def group_of(edges: npt.NDArray[np.float64], t_day: npt.NDArray[np.float64]) -> np.ndarray:
    """Return the group of each time, or -1 for times outside the groups."""
    index = np.searchsorted(edges, t_day, side="right") - 1
    index[t_day == edges[-1]] = len(edges) - 2
    index[(index < 0) | (index >= len(edges) - 1)] = -1
    return index


def _unobserved_productivity(b: float, alpha: float, mref: float, mag_min: float) -> float:
    """Productivity per unit rate of earthquakes in ``[mref, mag_min]``, per ``10^a * Q``."""
    delta = mag_min - mref
    if delta <= 0.0:
        return 0.0
    x = C_LOG_10 * (alpha - b) * delta
    ratio = 1.0 if abs(x) <= STABLE_LIMIT_EPS else np.expm1(x) / x
    return b * C_LOG_10 * delta * ratio


class MagOmoriHandle:
    """Omori sums over a history, for one combination of ``(p, c, b, alpha)``.

    Parameters
    ----------
    fit_info : FitInfo
        The fitting information.
    history : FitHistory
        The observed sequence.
    p, c, b, alpha : float
        The parameters the handle is built for.
    """

    def __init__(
        self,
        fit_info: FitInfo,
        history: FitHistory,
        p: float,
        c: float,
        b: float,
        alpha: float,
    ):
        self.p = p
        self.c = c
        self.b = b
        self.alpha = alpha
        self.fit_info = fit_info

        edges = fit_info.group_edges(history.t_forecast)
        observed = history.rup_mag >= fit_info.mag_min
        group_index = group_of(edges, history.t_day)
        is_source = observed & (group_index >= 0)
        is_main = np.zeros(len(history.t_day), dtype=np.bool_)
        if history.main_index is not None:
            is_main[history.main_index] = True
            t_target_begin = float(history.t_day[history.main_index])
        else:
            t_target_begin = float(edges[0])
        self.t_target_begin = t_target_begin
        self.t_target_end = history.t_forecast

        t_source = history.t_day[is_source]
        weight = 10.0 ** (alpha * (history.rup_mag[is_source] - fit_info.mref))
        main_source = is_main[is_source]
        is_target = (
            observed
            & (history.t_day > t_target_begin)
            & (history.t_day <= history.t_forecast)
        )
        t_target = history.t_day[is_target]
        self.target_count = int(is_target.sum())

        lag = t_target[:, None] - t_source[None, :]
        kernel = np.where(lag > 0.0, np.power(np.maximum(lag, 0.0) + c, -p), 0.0)
        self.sum_scnd = kernel[:, ~main_source] @ weight[~main_source]
        self.sum_main = kernel[:, main_source] @ weight[main_source]

        integral = stats.omori_rate_shifted(
            p, c, t_source, 0.0, t_target_begin, history.t_forecast
        )
        self.int_scnd = float(np.sum(weight[~main_source] * integral[~main_source]))
        self.int_main = float(np.sum(weight[main_source] * integral[main_source]))

        unobserved = _unobserved_productivity(b, alpha, fit_info.mref, fit_info.mag_min)
        self.bkgd_weight = unobserved * fit_info.group_duration
        group_lag = t_target[:, None] - fit_info.group_time[None, :]
        group_kernel = np.where(
            group_lag > 0.0, np.power(np.maximum(group_lag, 0.0) + c, -p), 0.0
        )
        self.sum_bkgd = group_kernel @ self.bkgd_weight
        self.int_bkgd = float(
            np.sum(
                self.bkgd_weight
                * stats.omori_rate_shifted(
                    p, c, fit_info.group_time, 0.0, t_target_begin, history.t_forecast
                )
            )
        )

        self.mag_fraction = float(
            stats.gr_rate(b, fit_info.mref, fit_info.mag_min, fit_info.mag_max)
        )
        self.duration = history.t_forecast - t_target_begin

        source_group = group_index[is_source]
        group_count = fit_info.group_count
        self.prod_scnd_unit = np.bincount(
            source_group[~main_source], weights=weight[~main_source], minlength=group_count
        )
        self.prod_main_unit = np.bincount(
            source_group[main_source], weights=weight[main_source], minlength=group_count
        )

    def check_param_values(self, p: float, c: float, b: float, alpha: float) -> bool:
        """True if the handle was built for these parameter values."""
        return (p, c, b, alpha) == (self.p, self.c, self.b, self.alpha)


class ProductivityHandle:
    """Likelihood evaluation for one branch ratio on top of a `MagOmoriHandle`."""

    def __init__(self):
        self.pmom: Optional[MagOmoriHandle] = None
        self.ten_aint_q = 0.0

    def build(self, pmom: MagOmoriHandle, ten_aint_q: float) -> None:
        self.pmom = pmom
        self.ten_aint_q = ten_aint_q

    def calc_log_like(
        self,
        ten_aint_q: float,
        ten_ams_q: npt.NDArray[np.float64],
        mu: Optional[npt.NDArray[np.float64]] = None,
    ) -> npt.NDArray[np.float64]:
        """Compute the log-likelihood for each sub-voxel.

        Parameters
        ----------
        ten_aint_q : float
            ``10^a * Q`` for non-mainshock earthquakes.
        ten_ams_q : np.ndarray
            ``10^ams`` for the mainshock, one per sub-voxel.
        mu : Optional[np.ndarray]
            Background rate above ``mref`` per day, one per sub-voxel,
            or None for no background.

        Returns
        -------
        np.ndarray
            The log-likelihood of each sub-voxel.
        """
        pmom = self.pmom
        ten_ams_q = np.asarray(ten_ams_q, dtype=np.float64)
        mu = np.zeros_like(ten_ams_q) if mu is None else np.asarray(mu, dtype=np.float64)
        intensity = pmom.mag_fraction * (
            ten_aint_q * pmom.sum_scnd[None, :]
            + ten_ams_q[:, None] * pmom.sum_main[None, :]
            + mu[:, None] * (1.0 + ten_aint_q * pmom.sum_bkgd[None, :])
        )
        expected = pmom.mag_fraction * (
            ten_aint_q * pmom.int_scnd
            + ten_ams_q * pmom.int_main
            + mu * (pmom.duration + ten_aint_q * pmom.int_bkgd)
        )
        return np.log(np.maximum(intensity, TINY_INTENSITY)).sum(axis=1) - expected

    def grouped_unscaled_prod(
        self, f_background: bool
    ) -> tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
        """Return the per-group productivity coefficients.

        Returns
        -------
        tuple
            ``(prod_scnd, prod_main, prod_bkgd)``: the seed productivity
            of group ``g`` is ``prod_scnd[g]*ten_aint_q +
            prod_main[g]*ten_ams_q + prod_bkgd[g]*mu``. ``prod_bkgd`` is
            None without background support.
        """
        pmom = self.pmom
        prod_bkgd = self.ten_aint_q * pmom.bkgd_weight if f_background else None
        return pmom.prod_scnd_unit.copy(), pmom.prod_main_unit.copy(), prod_bkgd
