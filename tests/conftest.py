from collections.abc import Callable, Iterator, Sequence

import pytest

from etas_forecast import stats
from etas_forecast.catalog import Catalog, CatalogBuilder, GenerationInfo, Rupture
from etas_forecast.ensemble import AutoExecutor
from etas_forecast.parameters import CatalogParams


@pytest.fixture
def executor() -> Iterator[AutoExecutor]:
    with AutoExecutor(2) as executor:
        yield executor


@pytest.fixture
def cat_params() -> CatalogParams:
    return CatalogParams.from_branch_ratio(
        0.5,
        1.1,
        0.01,
        1.0,
        1.0,
        mref=3.0,
        msup=9.5,
        tbegin=1.0,
        tend=31.0,
        mag_min=5.0,
        mag_max=9.5,
    )


@pytest.fixture
def make_catalog() -> Callable[..., Catalog]:
    """Build a catalog from explicit seed and aftershock ``(time, magnitude)`` pairs."""

    def make_catalog(
        params: CatalogParams,
        seeds: Sequence[tuple[float, float]],
        aftershocks: Sequence[tuple[float, float]] = (),
        stop_time: float | None = None,
    ) -> Catalog:
        builder = CatalogBuilder()
        rup = Rupture()
        builder.begin_catalog(params)
        builder.begin_generation(GenerationInfo(params.mag_min, params.gen_mag_max))
        for t_day, rup_mag in seeds:
            rup.set_seed(
                t_day,
                rup_mag,
                stats.uncorrected_productivity(rup_mag, params.a, params.alpha, params.mref),
            )
            builder.add_rup(rup)
        builder.end_generation()
        if aftershocks:
            builder.begin_generation(GenerationInfo(params.mag_min, params.gen_mag_max))
            for t_day, rup_mag in aftershocks:
                rup.set_seed(
                    t_day,
                    rup_mag,
                    stats.uncorrected_productivity(
                        rup_mag, params.a, params.alpha, params.mref
                    ),
                )
                rup.rup_parent = 0
                builder.add_rup(rup)
            builder.end_generation()
        catalog = builder.end_catalog()
        if stop_time is not None:
            catalog.stop_time = stop_time
        return catalog

    return make_catalog
