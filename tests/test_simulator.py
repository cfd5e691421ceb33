import dataclasses

import numpy as np
import pytest

from etas_forecast import stats
from etas_forecast.accumulators import CumTimeMagAccumulator, SimRangingAccumulator
from etas_forecast.constants import AccumulatorKind
from etas_forecast.defaults import ParameterSet
from etas_forecast.ensemble import AutoExecutor, FixedStateInitializer
from etas_forecast.forecast_grid import ForecastGridConfig
from etas_forecast.parameters import CatalogParams, SimulationParams
from etas_forecast.simulator import (
    RangingError,
    SimulationError,
    Simulator,
    SimulatorState,
    bsearch,
)

MAG_MAIN = 6.5


class StubGenerator:
    """Stands in for `EnsembleGenerator`, producing no catalogs."""

    def __init__(self, catalog_count: int = 2000, thread_abort: bool = False):
        self.catalog_count = catalog_count
        self.thread_abort = thread_abort

    def generate_all_catalogs(self, initializer, accumulators, num_catalogs, executor, **kwargs):
        return self.catalog_count


class StubRangingAccumulator(SimRangingAccumulator):
    def __init__(self, survival_size: int, survival_bins: int, high_mag: float):
        super().__init__()
        self.survival_size = survival_size
        self.survival_bins = survival_bins
        self.high_mag = high_mag

    def get_survival_bins(self, exceed_fraction: float) -> int:
        return self.survival_bins

    def get_bin_fractile(self, bin_index: int, fractile: float) -> int:
        return self.survival_size

    def get_sel_high_mag_fractile(self, check_bin: int, fractile: float, sel_bin: int) -> float:
        return self.high_mag


@pytest.fixture
def sim_parameters() -> SimulationParams:
    return SimulationParams.read_from_defaults(ParameterSet.development)


@pytest.fixture
def forecast_config() -> ForecastGridConfig:
    return ForecastGridConfig(
        time_windows=np.array([1.0, 7.0, 30.0]),
        mag_thresholds=np.array([3.0, 4.0, 5.0]),
        ranging_times=np.array([0.0, 1.0, 2.0, 3.0, 5.0, 7.0, 10.0, 14.0, 21.0, 30.0]),
        fractiles=[0.5],
    )


@pytest.fixture
def initializer(cat_params: CatalogParams) -> FixedStateInitializer:
    return FixedStateInitializer(cat_params, MAG_MAIN, 0.0)


def stub_simulator(sizes, survival_bins=9, high_mag=MAG_MAIN - 1.0, generator=None):
    sizes = iter(sizes)

    def make_accumulator(kind):
        return StubRangingAccumulator(next(sizes), survival_bins, high_mag)

    return Simulator(
        make_ensemble_generator=lambda: generator or StubGenerator(),
        make_accumulator=make_accumulator,
    )


def setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor):
    simulator.setup_inputs(initializer, sim_parameters, executor, forecast_config)
    return simulator.sim_catalog_range


@pytest.mark.parametrize(
    "target, lo, hi, expected",
    [(1.5, 0, 4, 2), (10.0, 1, 3, 3), (-1.0, 1, 3, 1), (2.0, 0, 4, 3)],
)
def test_bsearch(target: float, lo: int, hi: int, expected: int):
    assert bsearch([0.0, 1.0, 2.0, 3.0], target, lo, hi) == expected


def test_bsearch_ties_and_arrays():
    values = np.array([0.0, 1.0, 1.0, 2.0, 5.0])
    # Equal values are at or below the target.
    assert bsearch(values, 1.0, 1, 4) == 3
    # The search stays within [lo, hi].
    assert bsearch(values, 9.0, 0, 3) == 3
    assert bsearch(values, -1.0, 2, 4) == 2


def test_setup_inputs(initializer, sim_parameters, forecast_config, executor):
    simulator = Simulator()
    simulator.setup_inputs(initializer, sim_parameters, executor, forecast_config)
    assert simulator.sim_forecast_grid.tbegin == initializer.cat_params.tbegin
    assert simulator.sim_forecast_grid.model_params["mag_main"] == str(MAG_MAIN)


def test_ranging_converges(initializer, sim_parameters, forecast_config, executor):
    target = sim_parameters.range_target_size
    simulator = stub_simulator([target // 4, target])
    cat_range = setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    simulator.run_ranging()
    assert simulator.ranging_attempts == 2
    # Catalogs four times too small lower the minimum magnitude by log10(4) / b.
    assert cat_range.mag_min_sim == pytest.approx(
        MAG_MAIN + sim_parameters.range_min_rel_mag - np.log10(4.0)
    )
    # The end time is the survival time, 30 days after the start.
    assert cat_range.tend == pytest.approx(initializer.cat_params.tbegin + 30.0)
    # The high magnitude fractile is below the maximum magnitude, so it is kept.
    assert cat_range.mag_max_sim == MAG_MAIN + sim_parameters.range_max_rel_mag
    assert initializer.get_range() == cat_range


def test_ranging_lowers_max_mag(initializer, sim_parameters, forecast_config, executor):
    target = sim_parameters.range_target_size
    simulator = stub_simulator([target, target], high_mag=MAG_MAIN - 2.0)
    cat_range = setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    simulator.run_ranging()
    assert cat_range.mag_max_sim == pytest.approx(MAG_MAIN - 1.0)


def test_ranging_max_mag_too_close(initializer, sim_parameters, forecast_config, executor):
    target = sim_parameters.range_target_size
    simulator = stub_simulator([target, target], high_mag=MAG_MAIN - 4.5)
    setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    with pytest.raises(RangingError):
        simulator.run_ranging()


def test_ranging_max_attempts(initializer, sim_parameters, forecast_config, executor):
    target = sim_parameters.range_target_size
    simulator = stub_simulator([target // 4] * (sim_parameters.range_max_attempts + 1))
    setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    with pytest.raises(RangingError):
        simulator.run_ranging()
    assert simulator.ranging_attempts == sim_parameters.range_max_attempts + 1


def test_ranging_short_survival(initializer, sim_parameters, forecast_config, executor):
    simulator = stub_simulator([1000], survival_bins=2)
    setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    with pytest.raises(RangingError):
        simulator.run_ranging()


def test_ranging_too_few_catalogs(initializer, sim_parameters, forecast_config, executor):
    sim_parameters = dataclasses.replace(sim_parameters, range_max_attempts=1)
    simulator = stub_simulator([1000, 1000], generator=StubGenerator(catalog_count=10))
    cat_range = setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    with pytest.raises(RangingError):
        simulator.run_ranging()
    # Fewer catalogs than required raise the minimum magnitude.
    assert cat_range.mag_min_sim > MAG_MAIN + sim_parameters.range_min_rel_mag


def test_ranging_thread_abort(initializer, sim_parameters, forecast_config, executor):
    simulator = stub_simulator([1000], generator=StubGenerator(thread_abort=True))
    setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    with pytest.raises(SimulationError):
        simulator.run_ranging()


def test_ranging_invalid_accumulator(initializer, sim_parameters, forecast_config, executor):
    simulator = Simulator(
        make_ensemble_generator=StubGenerator,
        make_accumulator=lambda kind: CumTimeMagAccumulator(),
    )
    setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    with pytest.raises(ValueError):
        simulator.run_ranging()


def test_ranging_invalid_accumulator_option(
    initializer, sim_parameters, forecast_config, executor
):
    sim_parameters = dataclasses.replace(sim_parameters, range_accum_option=1)
    simulator = stub_simulator([1000])
    setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    with pytest.raises(ValueError):
        simulator.run_ranging()


def test_default_range(initializer, sim_parameters, forecast_config, executor):
    sim_parameters = dataclasses.replace(
        sim_parameters, range_accum_selection=AccumulatorKind.NONE
    )
    simulator = Simulator(make_ensemble_generator=StubGenerator)
    cat_range = setup_ranging(simulator, initializer, sim_parameters, forecast_config, executor)
    simulator.run_ranging()
    assert simulator.ranging_attempts == 0
    assert cat_range.tend == initializer.cat_params.tbegin + 30.0
    assert cat_range.mag_min_sim == MAG_MAIN + sim_parameters.range_min_rel_mag


def test_run_simulation_failure(initializer, sim_parameters, forecast_config, executor):
    simulator = stub_simulator([1000], generator=StubGenerator(thread_abort=True))
    assert not simulator.run_simulation(initializer, sim_parameters, executor, forecast_config)
    assert simulator.state == SimulatorState.FAILED
    assert simulator.sim_forecast_grid is None
    assert simulator.sim_catalog_range is None


def test_run_simulation(sim_parameters: SimulationParams, forecast_config: ForecastGridConfig):
    cat_params = CatalogParams.from_branch_ratio(
        1.0, 1.1, 0.05, 1.0, 1.0, 3.0, 9.5, 0.0, 30.0, tint=365.0
    )
    initializer = FixedStateInitializer(cat_params, MAG_MAIN, 0.0)
    sim_parameters.set_num_catalogs(200)
    sim_parameters.set_target_size(500)
    sim_parameters.range_max_attempts = 20
    simulator = Simulator(seed=11)
    with AutoExecutor(2) as executor:
        assert simulator.run_simulation(initializer, sim_parameters, executor, forecast_config)

    assert simulator.state == SimulatorState.SUCCESS
    assert simulator.catalog_count >= sim_parameters.sim_min_num_catalogs
    grid = simulator.sim_forecast_grid
    assert grid.mean.shape == (3, 3)
    # Counts grow with the window and shrink with the threshold.
    assert np.all(np.diff(grid.mean, axis=0) >= 0.0)
    assert np.all(np.diff(grid.mean, axis=1) <= 0.0)
    assert np.all((grid.prob_occur >= 0.0) & (grid.prob_occur <= 1.0))
    assert grid.model_params["sim_count"] == str(simulator.catalog_count)
    assert simulator.sim_catalog_range.tend <= 30.0
    assert len(grid.to_dataframe()) == 9

    # The first day M3+ count is dominated by direct aftershocks of the mainshock.
    direct_count = stats.expected_direct_count(
        cat_params.a,
        cat_params.p,
        cat_params.c,
        cat_params.b,
        cat_params.alpha,
        cat_params.mref,
        cat_params.msup,
        cat_params.mref,
        cat_params.msup,
        MAG_MAIN,
        0.0,
        3.0,
        cat_params.msup,
        0.0,
        1.0,
    )
    assert 0.5 * direct_count <= grid.mean[0, 0] <= 5.0 * direct_count
