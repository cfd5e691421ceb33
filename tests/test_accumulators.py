import numpy as np
import pytest

from etas_forecast import stats
from etas_forecast.accumulators import (
    CumTimeMagAccumulator,
    RateTimeMagAccumulator,
    SimRangingAccumulator,
    make_accumulator,
)
from etas_forecast.constants import (
    DEF_RATE_ACCUM_METHOD,
    NO_MAG_NEG,
    AccumulatorKind,
    InfillMethod,
    RateAccumulationMethod,
)
from etas_forecast.parameters import CatalogParams


def accumulate(accumulator, catalogs):
    accumulator.begin_accumulation()
    for catalog in catalogs:
        accumulator.accumulate(catalog)
    accumulator.end_accumulation()


def test_cum_time_mag(cat_params: CatalogParams, make_catalog):
    accumulator = CumTimeMagAccumulator()
    accumulator.setup(np.array([1.0, 2.0, 8.0]), np.array([3.0, 5.0]))
    accumulate(
        accumulator,
        [
            make_catalog(cat_params, [(0.0, 7.0)], [(1.5, 4.0), (3.0, 5.5), (10.0, 6.0)]),
            make_catalog(cat_params, [(0.0, 7.0)]),
        ],
    )
    assert accumulator.catalog_count == 2
    assert np.allclose(accumulator.get_mean_array(), [[0.5, 0.0], [1.0, 0.5]])
    assert np.allclose(accumulator.get_prob_occur_array(), [[0.5, 0.0], [0.5, 0.5]])
    assert np.allclose(accumulator.get_fractile_array(1.0), [[1.0, 0.0], [2.0, 1.0]])


def test_cum_time_mag_scale_infill(cat_params: CatalogParams, make_catalog):
    accumulator = CumTimeMagAccumulator()
    accumulator.setup(np.array([1.0, 8.0]), np.array([4.0, 5.0]), InfillMethod.SCALE)
    accumulate(accumulator, [make_catalog(cat_params, [(0.0, 7.0)], [(2.0, 5.5)])])
    # One earthquake above M5 scales to ten above M4 when b = 1.
    assert np.allclose(accumulator.get_mean_array(), [[10.0, 1.0]])


def test_cum_time_mag_invalid_option():
    with pytest.raises(ValueError):
        CumTimeMagAccumulator().setup(np.array([0.0, 1.0]), np.array([3.0]), 7)


def test_empty_accumulation():
    accumulator = CumTimeMagAccumulator()
    accumulator.setup(np.array([0.0, 1.0, 2.0]), np.array([3.0]))
    accumulate(accumulator, [])
    assert accumulator.catalog_count == 0
    assert np.all(accumulator.get_mean_array() == 0.0)


def test_rate_time_mag_hybrid_magfill(cat_params: CatalogParams, make_catalog):
    accumulator = RateTimeMagAccumulator()
    # Entire catalogs, no outfill, hybrid magfill.
    accumulator.setup(np.array([1.0, 8.0]), np.array([3.0, 5.0]), option=413)
    catalog = make_catalog(cat_params, [(0.0, 7.0)])
    accumulate(accumulator, [catalog])
    k_prod = catalog.seeds.k_prod[0]
    expected_fill = (
        k_prod
        * stats.omori_rate_shifted(cat_params.p, cat_params.c, 0.0, 0.0, 1.0, 8.0)
        * stats.gr_rate(cat_params.b, cat_params.mref, 3.0, 5.0)
    )
    assert np.allclose(accumulator.get_mean_array(), [[expected_fill, 0.0]])
    assert accumulator.get_prob_occur_array()[0, 0] == pytest.approx(
        -np.expm1(-expected_fill)
    )


def test_rate_time_mag_secondary_reduction(cat_params: CatalogParams, make_catalog):
    catalog = make_catalog(cat_params, [(0.0, 7.0)], [(2.0, 6.0)])
    fills = []
    for upfill_sec_reduce in (0.0, 1.0):
        accumulator = RateTimeMagAccumulator()
        accumulator.setup(
            np.array([1.0, 8.0]),
            np.array([3.0]),
            option=413,
            upfill_sec_reduce=upfill_sec_reduce,
        )
        accumulate(accumulator, [catalog])
        fills.append(accumulator.get_mean_array()[0, 0])
    assert fills[0] > fills[1] > 0.0


def test_rate_time_mag_rejects_short_catalogs(cat_params: CatalogParams, make_catalog):
    accumulator = RateTimeMagAccumulator()
    accumulator.setup(np.array([1.0, 8.0]), np.array([5.0]), option=433)
    accumulate(accumulator, [make_catalog(cat_params, [(0.0, 7.0)], stop_time=3.0)])
    assert accumulator.catalog_count == 0
    assert accumulator.rejected_count == 1


def test_rate_time_mag_direct_outfill(cat_params: CatalogParams, make_catalog):
    accumulator = RateTimeMagAccumulator()
    # Any catalog, direct outfill, no magfill.
    accumulator.setup(np.array([1.0, 2.0, 8.0]), np.array([5.0]), option=131)
    catalog = make_catalog(cat_params, [(0.0, 7.0)], [(1.5, 5.5)], stop_time=3.0)
    accumulate(accumulator, [catalog])
    sources = catalog.sources()
    expected_outfill = sum(
        k_prod * stats.omori_rate_shifted(cat_params.p, cat_params.c, t_day, 0.0, 3.0, 8.0)
        for t_day, k_prod in zip(sources["t_day"], sources["k_prod"])
    ) * stats.gr_rate(cat_params.b, cat_params.mref, 5.0, cat_params.msup)
    mean = accumulator.get_mean_array()
    assert mean[0, 0] == pytest.approx(1.0)
    assert mean[1, 0] == pytest.approx(1.0 + expected_outfill)


def test_rate_time_mag_omit_outfill(cat_params: CatalogParams, make_catalog):
    accumulator = RateTimeMagAccumulator()
    accumulator.setup(np.array([1.0, 2.0, 8.0]), np.array([5.0]), option=121)
    accumulate(
        accumulator,
        [
            make_catalog(cat_params, [(0.0, 7.0)], [(1.5, 5.5)], stop_time=3.0),
            make_catalog(cat_params, [(0.0, 7.0)], [(4.0, 5.5), (5.0, 5.5)]),
        ],
    )
    # The short catalog only counts towards the first window.
    assert np.allclose(accumulator.get_mean_array(), [[0.5], [2.0]])


def test_rate_time_mag_invalid_option():
    with pytest.raises(ValueError):
        RateTimeMagAccumulator().setup(np.array([0.0, 1.0]), np.array([3.0]), option=999)


@pytest.fixture
def ranging_accumulator(cat_params: CatalogParams, make_catalog) -> SimRangingAccumulator:
    accumulator = SimRangingAccumulator()
    accumulator.setup(np.array([1.0, 2.0, 4.0, 8.0]))
    accumulate(
        accumulator,
        [
            make_catalog(cat_params, [(0.0, 7.0)], [(3.0, 6.0), (1.5, 5.5)]),
            make_catalog(cat_params, [(0.0, 7.0)], [(1.2, 5.1)], stop_time=3.0),
        ],
    )
    return accumulator


def test_ranging_survival_bins(ranging_accumulator: SimRangingAccumulator):
    assert ranging_accumulator.get_survival_bins(0.0) == 1
    assert ranging_accumulator.get_survival_bins(0.5) == 3


def test_ranging_bin_fractile(ranging_accumulator: SimRangingAccumulator):
    assert ranging_accumulator.get_bin_fractile(0, 1.0) == 1
    assert ranging_accumulator.get_bin_fractile(1, 1.0) == 2
    assert ranging_accumulator.get_bin_fractile(1, 0.0) == 1


def test_ranging_high_mag_fractile(ranging_accumulator: SimRangingAccumulator):
    assert ranging_accumulator.get_sel_high_mag_fractile(1, 1.0, 2) == 6.0
    assert ranging_accumulator.get_sel_high_mag_fractile(0, 0.0, 0) == 5.1


def test_ranging_no_survivors(cat_params: CatalogParams, make_catalog):
    accumulator = SimRangingAccumulator()
    accumulator.setup(np.array([1.0, 2.0, 4.0]))
    accumulate(accumulator, [make_catalog(cat_params, [(0.0, 7.0)], stop_time=1.5)])
    assert accumulator.get_survival_bins(0.0) == 0
    assert accumulator.get_sel_high_mag_fractile(0, 1.0, 1) == NO_MAG_NEG


@pytest.mark.parametrize(
    "kind, accumulator_type",
    [
        (AccumulatorKind.SIM_RANGING, SimRangingAccumulator),
        (AccumulatorKind.CUM_TIME_MAG, CumTimeMagAccumulator),
        (AccumulatorKind.RATE_TIME_MAG, RateTimeMagAccumulator),
    ],
)
def test_make_accumulator(kind: AccumulatorKind, accumulator_type: type):
    assert isinstance(make_accumulator(kind), accumulator_type)


def test_make_accumulator_none():
    assert make_accumulator(AccumulatorKind.NONE) is None


def test_make_accumulator_invalid():
    with pytest.raises(ValueError):
        make_accumulator("bogus")


def test_cum_time_mag_scale_infill_at_mag_min(cat_params: CatalogParams, make_catalog):
    accumulator = CumTimeMagAccumulator()
    # A threshold within rounding of the simulated minimum magnitude is not infilled.
    accumulator.setup(
        np.array([1.0, 8.0]), np.array([cat_params.mag_min - 1e-5]), InfillMethod.SCALE
    )
    accumulate(accumulator, [make_catalog(cat_params, [(0.0, 7.0)], [(2.0, 5.5)])])
    assert np.allclose(accumulator.get_mean_array(), [[1.0]])


def test_rate_time_mag_default_method():
    accumulator = RateTimeMagAccumulator()
    accumulator.setup(np.array([0.0, 1.0]), np.array([3.0]))
    assert accumulator.method == DEF_RATE_ACCUM_METHOD
    assert accumulator.method == RateAccumulationMethod.from_code(433)


def test_ranging_invalid_option():
    with pytest.raises(ValueError):
        SimRangingAccumulator().setup(np.array([1.0, 2.0, 4.0]), option=1)
