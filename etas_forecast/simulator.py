"""Ranging and ensemble simulation of a forecast.

`Simulator.run_simulation` moves through the states

    IDLE -> SETUP_INPUTS -> RANGING -> SIMULATING -> SUCCESS | FAILED

Ranging runs small ensembles to choose the simulation window. Starting
from a default window (magnitudes relative to the mainshock), each
attempt rescales the minimum magnitude until the catalog size at the
survival time is within 20% of the target size. The final attempt fixes
the end time at the survival time and may lower the maximum magnitude.

The simulation then runs the full ensemble into the configured
accumulator and copies the results into the forecast grid. Any failure
makes `run_simulation` return False with all outputs cleared.
"""

from enum import StrEnum
from typing import Callable, Optional

import numpy as np
import numpy.typing as npt

from etas_forecast import accumulators, log_utils
from etas_forecast.accumulators import (
    CumTimeMagAccumulator,
    EnsembleAccumulator,
    RateTimeMagAccumulator,
    SimRangingAccumulator,
    TimeMagAccumulator,
)
from etas_forecast.constants import DEF_MAG_EXCESS, GEN_TIME_EPS, AccumulatorKind
from etas_forecast.ensemble import AutoExecutor, EnsembleGenerator, EnsembleInitializer
from etas_forecast.forecast_grid import ForecastGrid, ForecastGridConfig
from etas_forecast.parameters import CatalogRange, SimulationParams

RANGING_RATIO_MIN = 0.1
RANGING_RATIO_MAX = 10.0
RANGING_RATIO_STOP_LOW = 0.8
RANGING_RATIO_STOP_HIGH = 1.2
MAG_LIM_FRACTION_MIN = 1.0e-6
"""Maximum magnitude fractions below this disable the maximum magnitude check."""
MAG_LIM_MARGIN = 1.0
"""Magnitude added to the high magnitude fractile, and the minimum gap to the minimum magnitude."""


class SimulationError(Exception):
    """The simulation could not produce a forecast."""

    pass


class RangingError(SimulationError):
    """Ranging could not find an acceptable simulation window."""

    pass


class SimulatorState(StrEnum):
    IDLE = "idle"
    SETUP_INPUTS = "setup_inputs"
    RANGING = "ranging"
    SIMULATING = "simulating"
    SUCCESS = "success"
    FAILED = "failed"


def bsearch(values: npt.ArrayLike, target: float, lo: int, hi: int) -> int:
    """Return the first index in ``[lo, hi)`` of sorted `values` whose value exceeds `target`.

    The result is clipped to ``[lo, hi]``, so it is `hi` if there is no
    such index and `lo` if every value exceeds `target`.
    """
    return int(np.clip(np.searchsorted(values, target, side="right"), lo, hi))


class Simulator:
    """Runs ranging and then the ensemble simulation for one forecast.

    Parameters
    ----------
    seed : Optional[int]
        Entropy for the ensembles' random generators, by default fresh
        entropy for every ensemble.
    make_ensemble_generator : Optional[Callable[[], EnsembleGenerator]]
        Factory for the generator of each ensemble.
    make_accumulator : Callable
        Factory for accumulators, given an `AccumulatorKind`.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        make_ensemble_generator: Optional[Callable[[], EnsembleGenerator]] = None,
        make_accumulator: Callable[
            [AccumulatorKind], Optional[EnsembleAccumulator]
        ] = accumulators.make_accumulator,
    ):
        self.make_ensemble_generator = make_ensemble_generator or (
            lambda: EnsembleGenerator(seed)
        )
        self.make_accumulator = make_accumulator
        self.state = SimulatorState.IDLE
        self.clear()

    def clear(self) -> None:
        """Forget the inputs and outputs."""
        self.sim_initializer: Optional[EnsembleInitializer] = None
        self.sim_parameters: Optional[SimulationParams] = None
        self.sim_executor: Optional[AutoExecutor] = None
        self.sim_accumulator: Optional[TimeMagAccumulator] = None
        """The accumulator holding the simulation results."""
        self.sim_forecast_grid: Optional[ForecastGrid] = None
        """The forecast grid, filled from the accumulator."""
        self.sim_catalog_range: Optional[CatalogRange] = None
        """The simulation window."""
        self.range_accumulator: Optional[EnsembleAccumulator] = None
        self.ranging_attempts = 0
        self.catalog_count = 0

    def _run_ensemble(
        self,
        accumulator: EnsembleAccumulator,
        num_catalogs: int,
        max_runtime: Optional[float],
        progress_time: Optional[float],
    ) -> EnsembleGenerator:
        ensemble_generator = self.make_ensemble_generator()
        ensemble_generator.generate_all_catalogs(
            self.sim_initializer,
            [accumulator],
            num_catalogs,
            self.sim_executor,
            max_runtime=max_runtime,
            progress_time=progress_time,
        )
        return ensemble_generator

    def setup_inputs(
        self,
        initializer: EnsembleInitializer,
        sim_parameters: SimulationParams,
        executor: AutoExecutor,
        forecast_config: ForecastGridConfig,
    ) -> None:
        """Save the inputs and set up the forecast grid and the initial range.

        Only the start time of the initializer's initial range is used.
        """
        self.state = SimulatorState.SETUP_INPUTS
        self.sim_initializer = initializer
        self.sim_parameters = sim_parameters
        self.sim_executor = executor
        self.sim_catalog_range = initializer.get_initial_range()
        self.sim_forecast_grid = ForecastGrid(forecast_config, self.sim_catalog_range.tbegin)
        if initializer.has_mainshock_mag():
            self.sim_forecast_grid.add_model_param(
                "mag_main", initializer.get_mainshock_mag()
            )

    def run_ranging(self) -> None:
        """Choose the simulation window.

        Raises
        ------
        RangingError
            If ranging does not converge within the maximum number of
            attempts, the survival duration is too short, or the maximum
            magnitude cannot be adjusted.
        SimulationError
            If a ranging ensemble aborted.
        ValueError
            If the ranging accumulator selection is invalid.
        """
        self.state = SimulatorState.RANGING
        params = self.sim_parameters
        cat_range = self.sim_catalog_range
        ranging_time_values = self.sim_forecast_grid.get_ranging_time_values()
        b_value = self.sim_initializer.get_b_value()
        scaling_mag = self.sim_initializer.get_mainshock_mag()

        cat_range.tend = float(ranging_time_values[-1])
        cat_range.mag_min_sim = scaling_mag + params.range_min_rel_mag
        cat_range.mag_max_sim = scaling_mag + params.range_max_rel_mag
        cat_range.mag_excess = DEF_MAG_EXCESS
        self.sim_initializer.set_range(cat_range)

        if params.range_accum_selection == AccumulatorKind.NONE:
            log_utils.log("using default range", range=cat_range.progress_string())
            return

        attempt = 0
        ranging = True
        while ranging:
            attempt += 1
            self.ranging_attempts = attempt
            if attempt > params.range_max_attempts:
                raise RangingError(
                    "Ranging failed due to reaching maximum number of attempts: "
                    f"max_attempts = {params.range_max_attempts}"
                )

            accumulator = self.make_accumulator(params.range_accum_selection)
            if not isinstance(accumulator, SimRangingAccumulator):
                raise ValueError(
                    "Invalid accumulator selection: range_accum_selection = "
                    f"{params.range_accum_selection}"
                )
            accumulator.setup(ranging_time_values, params.range_accum_option)
            self.range_accumulator = accumulator

            with log_utils.log_elapsed(
                "ranging ensemble",
                attempt=attempt,
                num_catalogs=params.range_num_catalogs,
                range=cat_range.progress_string(),
            ):
                ensemble_generator = self._run_ensemble(
                    accumulator,
                    params.range_num_catalogs,
                    params.range_max_runtime,
                    params.range_progress_time,
                )
            if ensemble_generator.thread_abort:
                raise SimulationError("Ranging failed due to thread abort")

            catalog_count = ensemble_generator.catalog_count
            eff_catalog_count = max(catalog_count, self.sim_executor.num_threads)

            if eff_catalog_count < params.range_min_num_catalogs:
                r = max(RANGING_RATIO_MIN, 0.5 * eff_catalog_count) / params.range_num_catalogs
                log_utils.log(
                    "too few ranging catalogs",
                    catalog_count=catalog_count,
                    minimum=params.range_min_num_catalogs,
                    ratio=r,
                )
                cat_range.set_rescaled_min_mag(b_value, r)
            else:
                ranging = self._adjust_range(accumulator, ranging_time_values, b_value, attempt)

            self.sim_initializer.set_range(cat_range)

        log_utils.log(
            "ranging complete", attempts=attempt, range=cat_range.progress_string()
        )

    def _adjust_range(
        self,
        accumulator: SimRangingAccumulator,
        ranging_time_values,
        b_value: float,
        attempt: int,
    ) -> bool:
        """Adjust the range from a ranging ensemble; return False once ranging is done."""
        params = self.sim_parameters
        cat_range = self.sim_catalog_range

        survival_bins = accumulator.get_survival_bins(params.range_exceed_fraction)
        survival_time = float(ranging_time_values[survival_bins])
        survival_duration = survival_time - float(ranging_time_values[0])
        if survival_duration + GEN_TIME_EPS < params.range_min_duration:
            raise RangingError(
                "Catalog survival duration is too small: "
                f"survival_duration = {survival_duration}, "
                f"required minimum = {params.range_min_duration}"
            )
        if survival_bins == 0:
            raise RangingError("Catalog survival duration is before start of simulation")

        survival_size = accumulator.get_bin_fractile(
            survival_bins - 1, params.range_target_fractile
        )
        r = params.range_target_size / max(survival_size, 1)
        log_utils.log(
            "ranging survival",
            attempt=attempt,
            survival_duration=survival_duration,
            survival_size=survival_size,
            ratio=r,
        )

        if r > RANGING_RATIO_MAX:
            r = RANGING_RATIO_MAX
        elif r < RANGING_RATIO_MIN:
            r = RANGING_RATIO_MIN
        elif attempt > 1 and RANGING_RATIO_STOP_LOW <= r <= RANGING_RATIO_STOP_HIGH:
            cat_range.tend = survival_time
            self._adjust_max_mag(accumulator, ranging_time_values, survival_bins)
            return False

        cat_range.set_rescaled_min_mag(b_value, r)
        return True

    def _adjust_max_mag(
        self,
        accumulator: SimRangingAccumulator,
        ranging_time_values,
        survival_bins: int,
    ) -> None:
        params = self.sim_parameters
        cat_range = self.sim_catalog_range
        if params.range_mag_lim_fraction < MAG_LIM_FRACTION_MIN:
            return

        check_bin = (
            bsearch(
                ranging_time_values,
                cat_range.tbegin + params.range_mag_lim_time - GEN_TIME_EPS,
                1,
                len(ranging_time_values) - 1,
            )
            - 1
        )
        check_duration = float(ranging_time_values[check_bin + 1] - ranging_time_values[0])
        if check_bin >= survival_bins:
            raise RangingError(
                "Maximum magnitude check time is after catalog survival time: "
                f"survival_duration = {ranging_time_values[survival_bins] - ranging_time_values[0]}, "
                f"check_duration = {check_duration}"
            )

        high_mag = accumulator.get_sel_high_mag_fractile(
            check_bin, 1.0 - params.range_mag_lim_fraction, survival_bins - 1
        )
        new_mag_max = high_mag + MAG_LIM_MARGIN
        if new_mag_max >= cat_range.mag_max_sim:
            log_utils.log(
                "no adjustment of maximum magnitude",
                proposed=new_mag_max,
                existing=cat_range.mag_max_sim,
            )
        elif new_mag_max < cat_range.mag_min_sim + MAG_LIM_MARGIN:
            raise RangingError(
                "New maximum magnitude is too close to minimum magnitude: "
                f"proposed new max mag = {new_mag_max}, "
                f"existing min mag = {cat_range.mag_min_sim}"
            )
        else:
            log_utils.log(
                "adjusting maximum magnitude",
                proposed=new_mag_max,
                existing=cat_range.mag_max_sim,
                check_duration=check_duration,
            )
            cat_range.mag_max_sim = new_mag_max

    def _make_sim_accumulator(self, time_values, mag_values) -> TimeMagAccumulator:
        params = self.sim_parameters
        accumulator = self.make_accumulator(params.sim_accum_selection)
        match accumulator:
            case RateTimeMagAccumulator():
                accumulator.setup(
                    time_values,
                    mag_values,
                    params.sim_accum_option,
                    upfill_sec_reduce=params.sim_accum_param_1,
                )
            case CumTimeMagAccumulator():
                accumulator.setup(time_values, mag_values, params.sim_accum_option)
            case _:
                raise ValueError(
                    "Invalid accumulator selection: sim_accum_selection = "
                    f"{params.sim_accum_selection}"
                )
        return accumulator

    def run_ensemble_simulation(self) -> None:
        """Run the full ensemble and fill the forecast grid.

        Raises
        ------
        SimulationError
            If a worker aborted or too few catalogs were produced.
        ValueError
            If the simulation accumulator selection is invalid.
        """
        self.state = SimulatorState.SIMULATING
        params = self.sim_parameters
        cat_range = self.sim_catalog_range
        time_values = self.sim_forecast_grid.get_time_values()
        mag_values = self.sim_forecast_grid.get_mag_values()

        cat_range.clip_tend(float(time_values[-1]))
        self.sim_initializer.set_range(cat_range)
        accumulator = self._make_sim_accumulator(time_values, mag_values)

        with log_utils.log_elapsed(
            "simulation ensemble",
            num_catalogs=params.sim_num_catalogs,
            num_threads=self.sim_executor.num_threads,
            max_runtime=params.sim_max_runtime,
            range=cat_range.progress_string(),
        ):
            ensemble_generator = self._run_ensemble(
                accumulator,
                params.sim_num_catalogs,
                params.sim_max_runtime,
                params.sim_progress_time,
            )

        if ensemble_generator.thread_abort:
            raise SimulationError("Simulation failed due to thread abort")
        if ensemble_generator.catalog_count < params.sim_min_num_catalogs:
            raise SimulationError(
                "Simulation failed due to insufficient number of catalogs: "
                f"obtained = {ensemble_generator.catalog_count}, "
                f"required = {params.sim_min_num_catalogs}"
            )

        self.sim_accumulator = accumulator
        self.catalog_count = ensemble_generator.catalog_count
        grid = self.sim_forecast_grid
        grid.supply_results(accumulator)
        for name, value in self.sim_initializer.get_display_params().items():
            grid.add_model_param(name, value)
        grid.add_model_param("sim_count", ensemble_generator.catalog_count)
        grid.add_model_param(
            "sim_duration", round(cat_range.tend - cat_range.tbegin, 1)
        )
        grid.add_model_param("sim_mag_min", round(cat_range.mag_min_sim, 2))
        grid.add_model_param("sim_mag_max", round(cat_range.mag_max_sim, 2))

    def run_simulation(
        self,
        initializer: EnsembleInitializer,
        sim_parameters: SimulationParams,
        executor: AutoExecutor,
        forecast_config: ForecastGridConfig,
    ) -> bool:
        """Run ranging and the simulation.

        Parameters
        ----------
        initializer : EnsembleInitializer
            Supplies seeded catalogs; used for every ensemble.
        sim_parameters : SimulationParams
            Ranging and simulation parameters.
        executor : AutoExecutor
            Thread pool to run ensembles on.
        forecast_config : ForecastGridConfig
            Axes of the forecast grid.

        Returns
        -------
        bool
            True on success, when `sim_accumulator`, `sim_forecast_grid`
            and `sim_catalog_range` hold the results. On failure the
            error is logged and every output is None.
        """
        try:
            with log_utils.log_elapsed("simulation"):
                self.setup_inputs(initializer, sim_parameters, executor, forecast_config)
                self.run_ranging()
                self.run_ensemble_simulation()
        except Exception:
            log_utils.log_failure(
                "ETAS simulation failed",
                state=self.state,
                ranging_attempts=self.ranging_attempts,
            )
            self.state = SimulatorState.FAILED
            self.sim_accumulator = None
            self.sim_forecast_grid = None
            self.sim_catalog_range = None
            self.range_accumulator = None
            return False
        self.state = SimulatorState.SUCCESS
        log_utils.log("ETAS simulation succeeded", catalog_count=self.catalog_count)
        return True
