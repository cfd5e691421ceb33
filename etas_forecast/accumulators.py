"""Accumulators that merge simulated catalogs into ensemble statistics.

An accumulator receives every successfully generated catalog of an
ensemble through `EnsembleAccumulator.accumulate`, which is called
concurrently from the worker threads. Each worker thread appends its
per-catalog results to its own shard, so no lock is held while a
catalog is being accumulated; the shards are merged once in
`EnsembleAccumulator.end_accumulation`, after all work has completed.

Two families of accumulators are provided:

- Time/magnitude accumulators (`CumTimeMagAccumulator`,
  `RateTimeMagAccumulator`) produce the forecast: the expected number of
  earthquakes above each magnitude threshold within each forecast
  window, the probability of one or more, and fractiles.
- `SimRangingAccumulator` tracks catalog size and survival on the
  ranging time grid, for the ranging loop of the simulator.

Use `make_accumulator` to build an accumulator from an
`AccumulatorKind`.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

import numpy as np
import numpy.typing as npt

from etas_forecast import stats
from etas_forecast.catalog import Catalog
from etas_forecast.constants import (
    DEF_RATE_ACCUM_METHOD,
    GEN_MAG_EPS,
    GEN_TIME_EPS,
    NO_MAG_NEG,
    AccumulatorKind,
    CatalogLengthMethod,
    InfillMethod,
    MagfillMethod,
    OutfillMethod,
    RateAccumulationMethod,
)


class ShardedRows:
    """Per-thread row buffers that are merged on demand.

    Each thread appends to its own list, registering the list once
    under a lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._local = threading.local()
        self._shards: list[list[Any]] = []

    def append(self, row: Any) -> None:
        shard = getattr(self._local, "rows", None)
        if shard is None:
            shard = []
            self._local.rows = shard
            with self._lock:
                self._shards.append(shard)
        shard.append(row)

    def merge(self) -> list[Any]:
        with self._lock:
            return [row for shard in self._shards for row in shard]


class EnsembleAccumulator(ABC):
    """Contract between the ensemble generator and an accumulator."""

    def __init__(self):
        self._rows = ShardedRows()
        self.catalog_count = 0
        """Number of catalogs accumulated, available after `end_accumulation`."""

    def begin_accumulation(self) -> None:
        """Prepare to receive the catalogs of a new ensemble."""
        self._rows = ShardedRows()
        self.catalog_count = 0

    @abstractmethod
    def accumulate(self, catalog: Catalog) -> None:
        """Accumulate one completed catalog. Safe to call from many threads."""

    def end_accumulation(self) -> None:
        """Merge the accumulated catalogs. Called once all work is complete."""
        rows = self._rows.merge()
        self.catalog_count = len(rows)
        self._finish(rows)

    @abstractmethod
    def _finish(self, rows: list[Any]) -> None:
        pass


class TimeMagAccumulator(EnsembleAccumulator):
    """Accumulates cumulative counts on a forecast time/magnitude grid.

    Each catalog contributes, for every forecast window ``[t0, t_j]``
    (``j >= 1``) and magnitude threshold ``m_i``, a realised count of
    ruptures plus a non-negative expected-count fill. The count is
    valid for a window unless the catalog was omitted from it.
    """

    def __init__(self):
        super().__init__()
        self.time_values: Optional[npt.NDArray[np.float64]] = None
        self.mag_values: Optional[npt.NDArray[np.float64]] = None
        self._realized: Optional[np.ndarray] = None
        self._fill: Optional[np.ndarray] = None
        self._valid: Optional[np.ndarray] = None

    def setup(
        self,
        time_values: npt.NDArray[np.float64],
        mag_values: npt.NDArray[np.float64],
    ) -> None:
        """Configure the grid.

        Parameters
        ----------
        time_values : np.ndarray
            Absolute times, in days. The first is the start of every
            forecast window and each later value the end of one window.
        mag_values : np.ndarray
            Magnitude thresholds.
        """
        self.time_values = np.asarray(time_values, dtype=np.float64)
        self.mag_values = np.asarray(mag_values, dtype=np.float64)

    @property
    def grid_shape(self) -> tuple[int, int]:
        return len(self.time_values) - 1, len(self.mag_values)

    def _realized_counts(
        self, catalog: Catalog, t_end: float
    ) -> npt.NDArray[np.float64]:
        """Count generated ruptures above each threshold in each window, up to `t_end`."""
        aftershocks = catalog.aftershocks()
        t_day = aftershocks["t_day"]
        rup_mag = aftershocks["rup_mag"]
        window_end = np.minimum(self.time_values[1:], t_end)
        in_window = t_day[None, :] <= window_end[:, None]
        above = rup_mag[None, :] >= self.mag_values[:, None]
        return (in_window[:, None, :] & above[None, :, :]).sum(axis=2).astype(np.float64)

    def _finish(self, rows: list[Any]) -> None:
        num_times, num_mags = self.grid_shape
        if rows:
            self._realized = np.stack([row[0] for row in rows])
            self._fill = np.stack([row[1] for row in rows])
            self._valid = np.stack([row[2] for row in rows])
        else:
            self._realized = np.zeros((0, num_times, num_mags))
            self._fill = np.zeros((0, num_times, num_mags))
            self._valid = np.zeros((0, num_times), dtype=np.bool_)

    def _valid_counts(self) -> npt.NDArray[np.float64]:
        return self._valid.sum(axis=0).astype(np.float64)

    def get_mean_array(self) -> npt.NDArray[np.float64]:
        """Return the expected count in each window above each threshold."""
        total = ((self._realized + self._fill) * self._valid[:, :, None]).sum(axis=0)
        return total / np.maximum(self._valid_counts(), 1.0)[:, None]

    def get_prob_occur_array(self) -> npt.NDArray[np.float64]:
        """Return the probability of one or more earthquakes in each window above each threshold.

        A catalog with a realised earthquake counts as an occurrence;
        otherwise its fill is treated as a Poisson expectation.
        """
        prob = np.where(self._realized >= 1.0, 1.0, -np.expm1(-self._fill))
        total = (prob * self._valid[:, :, None]).sum(axis=0)
        return total / np.maximum(self._valid_counts(), 1.0)[:, None]

    def get_fractile_array(self, fractile: float) -> npt.NDArray[np.float64]:
        """Return the given fractile of the count in each window above each threshold."""
        values = self._realized + self._fill
        result = np.zeros(self.grid_shape)
        for j in range(self.grid_shape[0]):
            selected = values[self._valid[:, j], j, :]
            if len(selected):
                result[j] = np.quantile(selected, fractile, axis=0)
        return result


class CumTimeMagAccumulator(TimeMagAccumulator):
    """Cumulative realised counts, with optional infill below the simulated magnitudes."""

    def __init__(self):
        super().__init__()
        self.infill = InfillMethod.NONE

    def setup(
        self,
        time_values: npt.NDArray[np.float64],
        mag_values: npt.NDArray[np.float64],
        option: int = InfillMethod.NONE,
    ) -> None:
        """Configure the grid and the infill method.

        Raises
        ------
        ValueError
            If `option` is not an `InfillMethod`.
        """
        super().setup(time_values, mag_values)
        try:
            self.infill = InfillMethod(option)
        except ValueError as e:
            raise ValueError(f"Invalid infill method: {option}") from e

    def accumulate(self, catalog: Catalog) -> None:
        params = catalog.params
        realized = self._realized_counts(catalog, catalog.stop_time)
        fill = np.zeros_like(realized)
        if self.infill == InfillMethod.SCALE:
            below = self.mag_values < params.mag_min - GEN_MAG_EPS
            scale = 10.0 ** (params.b * (params.mag_min - self.mag_values[below]))
            fill[:, below] = realized[:, below] * (scale[None, :] - 1.0)
        valid = np.ones(self.grid_shape[0], dtype=np.bool_)
        self._rows.append((realized, fill, valid))


class RateTimeMagAccumulator(TimeMagAccumulator):
    """Realised counts combined with expected-rate fills.

    The fills use the closed-form expected number of direct aftershocks
    of every source rupture in the catalog (seeds included), so they
    cover magnitudes below the simulated range (magfill) and time after
    the catalog's effective end (outfill).
    """

    def __init__(self):
        super().__init__()
        self.method = DEF_RATE_ACCUM_METHOD
        self.upfill_sec_reduce = 0.0
        self.rejected_count = 0
        self._rejections = ShardedRows()

    def setup(
        self,
        time_values: npt.NDArray[np.float64],
        mag_values: npt.NDArray[np.float64],
        option: Optional[int] = None,
        upfill_sec_reduce: float = 0.0,
    ) -> None:
        """Configure the grid and the rate accumulation method.

        Parameters
        ----------
        time_values : np.ndarray
            Absolute forecast times, in days.
        mag_values : np.ndarray
            Magnitude thresholds.
        option : Optional[int]
            Rate accumulation method code, ``catlen*100 + outfill*10 + magfill``.
            None selects the typical method, code 433.
        upfill_sec_reduce : float
            Proportional reduction (0 to 1) of the productivity of
            secondary (non-seed) ruptures when filling magnitudes below
            the simulated range.

        Raises
        ------
        ValueError
            If the method code is malformed.
        """
        super().setup(time_values, mag_values)
        self.method = (
            DEF_RATE_ACCUM_METHOD
            if option is None
            else RateAccumulationMethod.from_code(option)
        )
        self.upfill_sec_reduce = upfill_sec_reduce

    def begin_accumulation(self) -> None:
        super().begin_accumulation()
        self._rejections = ShardedRows()

    def _finish(self, rows: list[Any]) -> None:
        super()._finish(rows)
        self.rejected_count = len(self._rejections.merge())

    def _effective_end(self, catalog: Catalog) -> Optional[float]:
        """Return the effective end time of the catalog, or None to reject it."""
        catlen = self.method.catlen
        stop_time = catalog.stop_time
        if catlen == CatalogLengthMethod.RANGE:
            required = min(self.time_values[-1], catalog.params.tend)
            if stop_time < required - GEN_TIME_EPS:
                return None
        elif catlen in (CatalogLengthMethod.ENTIRE, CatalogLengthMethod.ENTIRE_CLIP):
            if stop_time < catalog.params.tend - GEN_TIME_EPS:
                return None
        if catlen in (CatalogLengthMethod.ANY_CLIP, CatalogLengthMethod.ENTIRE_CLIP):
            edges = self.time_values[self.time_values <= stop_time + GEN_TIME_EPS]
            return float(edges[-1]) if len(edges) else float(self.time_values[0])
        return stop_time

    def _direct_fill(
        self,
        catalog: Catalog,
        weights: npt.NDArray[np.float64],
        t_lo: npt.NDArray[np.float64] | float,
        t_hi: npt.NDArray[np.float64],
        mag_lo: npt.NDArray[np.float64],
        mag_hi: npt.NDArray[np.float64] | float,
    ) -> npt.NDArray[np.float64]:
        """Expected direct aftershocks of all sources, per window and threshold.

        The time interval of window ``j`` is ``[t_lo, t_hi[j]]`` and the
        magnitude interval of threshold ``i`` is ``[mag_lo[i], mag_hi]``.
        """
        params = catalog.params
        sources = catalog.sources()
        trigger = ~sources["is_background"].astype(np.bool_)
        t_source = sources["t_day"][trigger]
        weighted_k = (sources["k_prod"] * weights)[trigger]
        time_integral = stats.omori_rate_shifted(
            params.p,
            params.c,
            t_source[:, None],
            0.0,
            t_lo,
            np.asarray(t_hi)[None, :],
        )
        time_weight = weighted_k @ time_integral

        background = sources["is_background"].astype(np.bool_)
        if background.any():
            mu = float((sources["k_prod"] * weights)[background].sum())
            start = np.maximum(t_lo, params.tbegin)
            time_weight = time_weight + mu * np.maximum(np.asarray(t_hi) - start, 0.0)

        mag_weight = np.maximum(stats.gr_rate(params.b, params.mref, mag_lo, mag_hi), 0.0)
        return np.outer(time_weight, mag_weight)

    def accumulate(self, catalog: Catalog) -> None:
        t_eff = self._effective_end(catalog)
        if t_eff is None:
            self._rejections.append(1)
            return

        params = catalog.params
        method = self.method
        num_times, num_mags = self.grid_shape
        window_end = self.time_values[1:]
        window_start = self.time_values[0]
        inside_end = np.minimum(window_end, t_eff)
        sources = catalog.sources()
        is_seed = sources["generation"] == 0

        realized = self._realized_counts(catalog, t_eff)
        fill = np.zeros((num_times, num_mags))
        below = self.mag_values < params.mag_min - GEN_MAG_EPS

        match method.magfill:
            case MagfillMethod.PDF_ONLY:
                realized = np.zeros_like(realized)
                fill += self._direct_fill(
                    catalog,
                    np.ones(len(is_seed)),
                    window_start,
                    inside_end,
                    self.mag_values,
                    params.gen_mag_max,
                )
            case MagfillMethod.PDF_HYBRID | MagfillMethod.PDF_STERILE if below.any():
                secondary_weight = (
                    0.0
                    if method.magfill == MagfillMethod.PDF_STERILE
                    else 1.0 - self.upfill_sec_reduce
                )
                weights = np.where(is_seed, 1.0, secondary_weight)
                fill[:, below] += self._direct_fill(
                    catalog,
                    weights,
                    window_start,
                    inside_end,
                    self.mag_values[below],
                    params.mag_min,
                )

        valid = np.ones(num_times, dtype=np.bool_)
        past_end = window_end > t_eff + GEN_TIME_EPS
        if past_end.any():
            match method.outfill:
                case OutfillMethod.OMIT:
                    valid &= ~past_end
                case OutfillMethod.PDF_DIRECT:
                    fill += self._direct_fill(
                        catalog,
                        np.ones(len(is_seed)),
                        t_eff,
                        np.maximum(window_end, t_eff),
                        self.mag_values,
                        params.msup,
                    )

        self._rows.append((realized, fill, valid))


class SimRangingAccumulator(EnsembleAccumulator):
    """Tracks catalog size, maximum magnitude and survival on the ranging time grid."""

    def __init__(self):
        super().__init__()
        self.time_values: Optional[npt.NDArray[np.float64]] = None
        self._sizes = np.zeros((0, 0), dtype=np.int64)
        self._max_mags = np.zeros((0, 0))
        self._stop_times = np.zeros(0)

    def setup(self, time_values: npt.NDArray[np.float64], option: int = 0) -> None:
        """Configure the ranging time grid.

        Parameters
        ----------
        time_values : np.ndarray
            Absolute time edges, in days. Bin ``j`` spans
            ``[time_values[j], time_values[j + 1]]``.
        option : int
            Ranging accumulator option. Only 0, the default tracking of
            size, maximum magnitude and survival, is defined.

        Raises
        ------
        ValueError
            If the option is not 0.
        """
        if option != 0:
            raise ValueError(f"Invalid ranging accumulator option: {option}")
        self.time_values = np.asarray(time_values, dtype=np.float64)

    def accumulate(self, catalog: Catalog) -> None:
        aftershocks = catalog.aftershocks()
        order = np.argsort(aftershocks["t_day"], kind="stable")
        t_day = aftershocks["t_day"][order]
        rup_mag = aftershocks["rup_mag"][order]
        counts = np.searchsorted(t_day, self.time_values, side="right")
        max_mags = np.full(len(self.time_values), NO_MAG_NEG)
        if len(rup_mag):
            running_max = np.maximum.accumulate(rup_mag)
            occupied = counts > 0
            max_mags[occupied] = running_max[counts[occupied] - 1]
        self._rows.append((counts, max_mags, catalog.stop_time))

    def _finish(self, rows: list[Any]) -> None:
        num_edges = len(self.time_values)
        if rows:
            self._sizes = np.stack([row[0] for row in rows])
            self._max_mags = np.stack([row[1] for row in rows])
            self._stop_times = np.array([row[2] for row in rows])
        else:
            self._sizes = np.zeros((0, num_edges), dtype=np.int64)
            self._max_mags = np.zeros((0, num_edges))
            self._stop_times = np.zeros(0)

    def get_survival_bins(self, exceed_fraction: float) -> int:
        """Return the number of bins that enough catalogs survive.

        Parameters
        ----------
        exceed_fraction : float
            Fraction of catalogs allowed to have stopped early.

        Returns
        -------
        int
            The largest ``k`` such that at most `exceed_fraction` of the
            catalogs stopped before ``time_values[k]``. Zero if that
            fraction is exceeded within the first bin.
        """
        if self.catalog_count == 0:
            return 0
        stopped_before = (
            self._stop_times[:, None] < self.time_values[None, :] - GEN_TIME_EPS
        ).mean(axis=0)
        surviving = np.nonzero(stopped_before <= exceed_fraction)[0]
        return int(surviving[-1]) if len(surviving) else 0

    def get_bin_fractile(self, bin_index: int, fractile: float) -> int:
        """Return the fractile of the catalog size at the end of bin `bin_index`."""
        if self.catalog_count == 0:
            return 0
        return int(
            np.quantile(self._sizes[:, bin_index + 1], fractile, method="lower")
        )

    def get_sel_high_mag_fractile(
        self, check_bin: int, fractile: float, sel_bin: int
    ) -> float:
        """Return the fractile of the maximum magnitude at the end of `check_bin`.

        Only catalogs that survive to the end of `sel_bin` are
        considered.

        Returns
        -------
        float
            The magnitude, or `NO_MAG_NEG` if no catalog is selected.
        """
        selected = self._stop_times >= self.time_values[sel_bin + 1] - GEN_TIME_EPS
        if not selected.any():
            return NO_MAG_NEG
        return float(
            np.quantile(self._max_mags[selected, check_bin + 1], fractile, method="lower")
        )


def make_accumulator(kind: AccumulatorKind) -> Optional[EnsembleAccumulator]:
    """Build an (unconfigured) accumulator of the given kind.

    Parameters
    ----------
    kind : AccumulatorKind
        The accumulator kind.

    Returns
    -------
    EnsembleAccumulator or None
        The accumulator, or None for `AccumulatorKind.NONE`.

    Raises
    ------
    ValueError
        If `kind` is not an accumulator kind.
    """
    match AccumulatorKind(kind):
        case AccumulatorKind.NONE:
            return None
        case AccumulatorKind.SIM_RANGING:
            return SimRangingAccumulator()
        case AccumulatorKind.CUM_TIME_MAG:
            return CumTimeMagAccumulator()
        case AccumulatorKind.RATE_TIME_MAG:
            return RateTimeMagAccumulator()
