"""Simulated earthquake catalogs and the ETAS branching generator.

A catalog is a list of generations. Generation zero holds the seed
ruptures (the mainshock, grouped sources from the fitted history, or a
background pseudo-rupture) and is filled by a seeder through
`CatalogBuilder`. `CatalogGenerator` then grows the catalog one
generation at a time: each rupture of the previous generation spawns a
Poisson-distributed number of direct aftershocks with Omori-distributed
times and Gutenberg-Richter distributed magnitudes.

A whole catalog is generated within one thread. Builders, ruptures
and random generators are thread-local; `CatalogParams` is shared.
"""

import dataclasses
from typing import Optional

import numpy as np
import numpy.typing as npt

from etas_forecast import stats
from etas_forecast.constants import (
    GEN_TIME_EPS,
    STABLE_LIMIT_EPS,
    TINY_BACKGROUND_RATE,
    CatalogResult,
)
from etas_forecast.parameters import CatalogParams


@dataclasses.dataclass
class Rupture:
    """Scratch record describing one rupture, reused within a single thread."""

    t_day: float = 0.0
    """Time of the rupture, in days."""
    rup_mag: float = 0.0
    """Magnitude of the rupture."""
    k_prod: float = 0.0
    """Productivity, or the background rate per day for a background rupture."""
    rup_parent: int = -1
    """Index of the parent rupture in the previous generation, -1 for seeds."""
    is_background: bool = False
    """True for a background pseudo-rupture emitting at a constant rate."""

    def set_seed(self, t_day: float, rup_mag: float, k_prod: float) -> None:
        self.t_day = t_day
        self.rup_mag = rup_mag
        self.k_prod = k_prod
        self.rup_parent = -1
        self.is_background = False

    def set_background(self, t_day: float, mu: float) -> None:
        """Make this a background pseudo-rupture, active from `t_day` with rate `mu`."""
        self.t_day = t_day
        self.rup_mag = 0.0
        self.k_prod = mu
        self.rup_parent = -1
        self.is_background = True


@dataclasses.dataclass(frozen=True)
class GenerationInfo:
    """Magnitude range from which a generation's ruptures were drawn."""

    gen_mag_min: float
    gen_mag_max: float


@dataclasses.dataclass
class Generation:
    """The ruptures of one generation, as parallel arrays."""

    info: GenerationInfo
    t_day: npt.NDArray[np.float64]
    rup_mag: npt.NDArray[np.float64]
    k_prod: npt.NDArray[np.float64]
    rup_parent: npt.NDArray[np.int64]
    is_background: npt.NDArray[np.bool_]

    def __len__(self) -> int:
        return len(self.t_day)


class Catalog:
    """One simulated catalog.

    Parameters
    ----------
    params : CatalogParams
        The (shared, read-only) parameters of the catalog.
    """

    def __init__(self, params: CatalogParams):
        self.params = params
        self.generations: list[Generation] = []
        self.stop_time = params.tend
        """Time at which the catalog ends, earlier than `params.tend` after an early stop."""
        self.result = CatalogResult.OK

    @property
    def seeds(self) -> Generation:
        return self.generations[0]

    def _concatenate(self, generations: list[Generation]) -> dict[str, np.ndarray]:
        columns = {}
        for column in ("t_day", "rup_mag", "k_prod", "is_background"):
            arrays = [getattr(generation, column) for generation in generations]
            columns[column] = (
                np.concatenate(arrays) if arrays else np.empty(0, dtype=np.float64)
            )
        columns["generation"] = np.concatenate(
            [np.full(len(generation), i) for i, generation in enumerate(generations)]
            or [np.empty(0, dtype=np.int64)]
        )
        return columns

    def aftershocks(self) -> dict[str, np.ndarray]:
        """Return the generated (non-seed) ruptures up to the stop time.

        Returns
        -------
        dict[str, np.ndarray]
            Arrays ``t_day``, ``rup_mag``, ``k_prod``, ``is_background``
            and ``generation`` (counting from 1).
        """
        columns = self._concatenate(self.generations[1:])
        columns["generation"] = columns["generation"] + 1
        mask = columns["t_day"] <= self.stop_time
        return {key: value[mask] for key, value in columns.items()}

    def sources(self) -> dict[str, np.ndarray]:
        """Return every rupture that can trigger aftershocks, seeds included.

        Returns
        -------
        dict[str, np.ndarray]
            As `aftershocks`, with seeds at generation 0.
        """
        columns = self._concatenate(self.generations)
        mask = columns["t_day"] <= self.stop_time
        return {key: value[mask] for key, value in columns.items()}

    @property
    def size(self) -> int:
        """int: Number of generated ruptures up to the stop time."""
        return sum(
            int(np.count_nonzero(generation.t_day <= self.stop_time))
            for generation in self.generations[1:]
        )


class CatalogBuilder:
    """Thread-local builder that records the seed generation of a catalog."""

    def __init__(self):
        self._catalog: Optional[Catalog] = None
        self._info: Optional[GenerationInfo] = None
        self._rows: list[tuple[float, float, float, int, bool]] = []

    def begin_catalog(self, params: CatalogParams) -> None:
        self._catalog = Catalog(params)

    def begin_generation(self, info: GenerationInfo) -> None:
        self._info = info
        self._rows = []

    def add_rup(self, rup: Rupture) -> None:
        """Copy the contents of `rup` into the current generation."""
        self._rows.append(
            (rup.t_day, rup.rup_mag, rup.k_prod, rup.rup_parent, rup.is_background)
        )

    def end_generation(self) -> None:
        t_day, rup_mag, k_prod, rup_parent, is_background = (
            zip(*self._rows) if self._rows else ((), (), (), (), ())
        )
        self._catalog.generations.append(
            Generation(
                info=self._info,
                t_day=np.array(t_day, dtype=np.float64),
                rup_mag=np.array(rup_mag, dtype=np.float64),
                k_prod=np.array(k_prod, dtype=np.float64),
                rup_parent=np.array(rup_parent, dtype=np.int64),
                is_background=np.array(is_background, dtype=np.bool_),
            )
        )
        self._rows = []

    def end_catalog(self) -> Catalog:
        catalog, self._catalog = self._catalog, None
        return catalog


def sample_omori_times(
    p: float,
    c: float,
    t0: np.ndarray,
    t1: np.ndarray | float,
    t2: float,
    u: np.ndarray,
) -> np.ndarray:
    """Draw aftershock times from the Omori kernel by inverting its integral.

    Parameters
    ----------
    p, c : float
        Omori parameters.
    t0 : np.ndarray
        Times of the parent earthquakes.
    t1 : np.ndarray or float
        Start of the interval for each aftershock (at least `t0`).
    t2 : float
        End of the interval.
    u : np.ndarray
        Uniform random numbers in [0, 1), one per aftershock.

    Returns
    -------
    np.ndarray
        The aftershock times.
    """
    x1 = np.asarray(t1) - t0 + c
    x2 = np.maximum(t2 - t0 + c, x1)
    log_ratio = np.log(x2 / x1)
    q = 1.0 - p
    y = q * log_ratio
    small = np.abs(y) <= STABLE_LIMIT_EPS
    safe_q = q if q != 0.0 else 1.0
    log_x_ratio = np.where(
        small, u * log_ratio, np.log1p(u * np.expm1(y)) / safe_q
    )
    return np.minimum(t0 + x1 * np.exp(log_x_ratio) - c, t2)


def sample_gr_magnitudes(b: float, m1: float, m2: float, u: np.ndarray) -> np.ndarray:
    """Draw Gutenberg-Richter magnitudes in `[m1, m2]` by inverting the distribution."""
    return m1 - np.log10(1.0 - u * (1.0 - 10.0 ** (-b * (m2 - m1)))) / b


class CatalogGenerator:
    """Grows a seeded catalog generation by generation.

    Parameters
    ----------
    rng : np.random.Generator
        The random generator of the calling thread.
    """

    def __init__(self, rng: np.random.Generator):
        self.rng = rng

    def _expected_children(
        self, catalog: Catalog, parents: Generation, gr_fraction: float
    ) -> np.ndarray:
        params = catalog.params
        expected = np.zeros(len(parents))
        live = parents.t_day < catalog.stop_time
        triggering = live & ~parents.is_background
        expected[triggering] = (
            parents.k_prod[triggering]
            * stats.omori_rate_shifted(
                params.p,
                params.c,
                parents.t_day[triggering],
                GEN_TIME_EPS,
                params.tbegin,
                catalog.stop_time,
            )
            * gr_fraction
        )
        background = live & parents.is_background & (parents.k_prod > TINY_BACKGROUND_RATE)
        expected[background] = (
            parents.k_prod[background]
            * np.maximum(
                catalog.stop_time - np.maximum(parents.t_day[background], params.tbegin),
                0.0,
            )
            * gr_fraction
        )
        return expected

    def _child_times(
        self, catalog: Catalog, parents: Generation, parent_index: np.ndarray
    ) -> np.ndarray:
        params = catalog.params
        t0 = parents.t_day[parent_index]
        background = parents.is_background[parent_index]
        t1 = np.maximum(t0 + GEN_TIME_EPS, params.tbegin)
        u = self.rng.random(len(parent_index))
        times = sample_omori_times(params.p, params.c, t0, t1, catalog.stop_time, u)
        if background.any():
            start = np.maximum(t0[background], params.tbegin)
            times[background] = start + u[background] * (catalog.stop_time - start)
        return times

    def generate(self, catalog: Catalog) -> CatalogResult:
        """Generate all aftershock generations of a seeded catalog.

        Parameters
        ----------
        catalog : Catalog
            A catalog whose seed generation has been filled.

        Returns
        -------
        CatalogResult
            The outcome, also stored in `catalog.result`.
        """
        params = catalog.params
        gen_mag_min = params.mag_min
        gen_mag_max = params.gen_mag_max
        info = GenerationInfo(gen_mag_min, gen_mag_max)
        gr_fraction = float(stats.gr_rate(params.b, params.mref, gen_mag_min, gen_mag_max))
        ten_a_q = 10.0**params.a * params.q_correction
        total_size = 0

        parents = catalog.seeds
        while True:
            expected = self._expected_children(catalog, parents, gr_fraction)
            counts = self.rng.poisson(expected)
            child_count = int(counts.sum())
            if child_count == 0:
                break
            if len(catalog.generations) >= params.max_gen_count:
                catalog.result = CatalogResult.TOO_MANY_GEN
                return catalog.result
            total_size += child_count
            if total_size > params.max_cat_size:
                catalog.result = CatalogResult.CAT_TOO_LARGE
                return catalog.result

            parent_index = np.repeat(np.arange(len(parents)), counts)
            t_day = self._child_times(catalog, parents, parent_index)
            rup_mag = sample_gr_magnitudes(
                params.b, gen_mag_min, gen_mag_max, self.rng.random(child_count)
            )

            if params.mag_excess > 0.0:
                too_large = rup_mag > params.mag_max
                if too_large.any():
                    first_stop = float(t_day[too_large].min())
                    if first_stop < catalog.stop_time:
                        catalog.stop_time = first_stop
                        catalog.result = CatalogResult.EARLY_STOP

            keep = t_day <= catalog.stop_time
            parents = Generation(
                info=info,
                t_day=t_day[keep],
                rup_mag=rup_mag[keep],
                k_prod=ten_a_q * 10.0 ** (params.alpha * (rup_mag[keep] - params.mref)),
                rup_parent=parent_index[keep],
                is_background=np.zeros(int(keep.sum()), dtype=np.bool_),
            )
            catalog.generations.append(parents)

        return catalog.result
