#!/usr/bin/env python3
"""Fixed Parameter Forecast.

Description
-----------
Run an ETAS aftershock forecast for a mainshock with fixed ETAS parameters. The productivity is chosen to give the requested branch ratio. The simulation window is found by ranging, after which the full ensemble is simulated and the expected number of aftershocks, and the probability of one or more aftershocks, is reported for each forecast window and magnitude threshold.

Inputs
------
1. ETAS parameters (branch ratio, Omori p and c, Gutenberg-Richter b, alpha).
2. The mainshock magnitude and the forecast start time (in days after the mainshock).
3. Optionally, a parameter file written by `etas-simulation-parameters`.

Outputs
-------
A forecast summary on standard output and, optionally, the forecast as a CSV file.

Exit status is 0 on success, 1 for invalid arguments and 2 if the simulation fails.

Environment
-----------
Can be run from your own computer using the `etas-simulate` command which is installed after running `pip install etas_forecast`. Set `LOG_FORMAT=JSON` for machine-readable logs.

Usage
-----
`etas-simulate [OPTIONS] N P C B ALPHA MAG_MAIN TBEGIN`

For More Help
-------------
See the output of `etas-simulate --help` or `etas_forecast.scripts.simulate`.
"""

import logging
import sys
from pathlib import Path
from typing import Annotated, Optional

import click
import typer

from etas_forecast import log_utils
from etas_forecast.constants import AccumulatorKind, RateAccumulationMethod
from etas_forecast.defaults import ParameterSet
from etas_forecast.ensemble import AutoExecutor, EnsembleInitializer, FixedStateInitializer
from etas_forecast.forecast_grid import ForecastGrid, ForecastGridConfig
from etas_forecast.parameters import (
    CatalogConfig,
    CatalogParams,
    MarshalError,
    SimulationParams,
)
from etas_forecast.simulator import Simulator

app = typer.Typer()

EXIT_INVALID_ARGUMENTS = 1
EXIT_SIMULATION_FAILED = 2


def check_etas_parameters(n: float, p: float, c: float, b: float, alpha: float) -> None:
    """Check ETAS parameters are in their valid domain.

    Raises
    ------
    ValueError
        If any parameter is not positive.
    """
    for name, value in {"n": n, "p": p, "c": c, "b": b, "alpha": alpha}.items():
        if not value > 0.0:
            raise ValueError(f"{name} must be positive, got {value}")


def apply_overrides(
    sim_parameters: SimulationParams,
    num_catalogs: Optional[int] = None,
    target_size: Optional[int] = None,
    accum_option: Optional[int] = None,
    max_rel_mag: Optional[float] = None,
    exceed_fraction: Optional[float] = None,
    accum_param_1: Optional[float] = None,
) -> None:
    """Apply command line overrides to simulation parameters.

    Raises
    ------
    ValueError
        If the accumulator option is not valid for the selected
        accumulator, or an override is out of range.
    """
    if num_catalogs is not None:
        sim_parameters.set_num_catalogs(num_catalogs)
    if target_size is not None:
        sim_parameters.set_target_size(target_size)
    if accum_option is not None:
        sim_parameters.sim_accum_option = accum_option
    if max_rel_mag is not None:
        sim_parameters.range_max_rel_mag = max_rel_mag
    if exceed_fraction is not None:
        if not 0.0 <= exceed_fraction < 1.0:
            raise ValueError(f"exceed_fraction must be in [0, 1), got {exceed_fraction}")
        sim_parameters.range_exceed_fraction = exceed_fraction
    if accum_param_1 is not None:
        sim_parameters.sim_accum_param_1 = accum_param_1
    if sim_parameters.sim_accum_selection == AccumulatorKind.RATE_TIME_MAG:
        RateAccumulationMethod.from_code(sim_parameters.sim_accum_option)


def run_forecast(
    initializer: EnsembleInitializer,
    sim_parameters: SimulationParams,
    forecast_config: ForecastGridConfig,
    num_threads: Optional[int],
    seed: Optional[int],
    output_ffp: Optional[Path],
) -> ForecastGrid:
    """Run a forecast and report it.

    Raises
    ------
    typer.Exit
        With `EXIT_SIMULATION_FAILED` if the simulation fails.
    """
    simulator = Simulator(seed=seed)
    with AutoExecutor(num_threads) as executor:
        success = simulator.run_simulation(
            initializer, sim_parameters, executor, forecast_config
        )
    if not success:
        print("ETAS simulation failed")
        raise typer.Exit(code=EXIT_SIMULATION_FAILED)
    forecast_grid = simulator.sim_forecast_grid
    print(forecast_grid.summary_string())
    if output_ffp is not None:
        forecast_grid.to_dataframe().to_csv(output_ffp, index=False)
    return forecast_grid


@app.command(help="Forecast aftershocks of a mainshock from fixed ETAS parameters.")
@log_utils.log_call()
def simulate(
    n: Annotated[float, typer.Argument(help="Branch ratio.")],
    p: Annotated[float, typer.Argument(help="Omori p-value.")],
    c: Annotated[float, typer.Argument(help="Omori c-value (days).")],
    b: Annotated[float, typer.Argument(help="Gutenberg-Richter b-value.")],
    alpha: Annotated[float, typer.Argument(help="ETAS intensity parameter.")],
    mag_main: Annotated[float, typer.Argument(help="Mainshock magnitude.")],
    tbegin: Annotated[
        float, typer.Argument(help="Forecast start time (days after the mainshock).")
    ],
    parameter_set: Annotated[
        ParameterSet, typer.Option(help="Default parameter set.")
    ] = ParameterSet.production,
    config_ffp: Annotated[
        Optional[Path],
        typer.Option(
            help="Parameter file (overrides the parameter set).",
            exists=True,
            dir_okay=False,
        ),
    ] = None,
    num_catalogs: Annotated[
        Optional[int], typer.Option(help="Number of catalogs to simulate.")
    ] = None,
    target_size: Annotated[
        Optional[int], typer.Option(help="Target catalog size for ranging.")
    ] = None,
    accum_option: Annotated[
        Optional[int], typer.Option(help="Simulation accumulator option.")
    ] = None,
    max_rel_mag: Annotated[
        Optional[float],
        typer.Option(help="Maximum simulated magnitude, relative to the mainshock."),
    ] = None,
    exceed_fraction: Annotated[
        Optional[float],
        typer.Option(help="Fraction of catalogs allowed to stop early while ranging."),
    ] = None,
    accum_param_1: Annotated[
        Optional[float],
        typer.Option(help="Reduction of secondary productivity for magnitude fills."),
    ] = None,
    n_main: Annotated[
        Optional[float], typer.Option(help="Branch ratio of the mainshock.")
    ] = None,
    num_threads: Annotated[
        Optional[int], typer.Option(help="Number of worker threads.", min=1)
    ] = None,
    seed: Annotated[
        Optional[int], typer.Option(help="Random seed, for reproducible forecasts.")
    ] = None,
    output_ffp: Annotated[
        Optional[Path], typer.Option(help="Write the forecast to this CSV file.", dir_okay=False)
    ] = None,
) -> None:
    """Forecast aftershocks of a mainshock from fixed ETAS parameters.

    Parameters
    ----------
    n, p, c, b, alpha : float
        ETAS parameters; the productivity is derived from the branch
        ratio `n` over the forecast duration.
    mag_main : float
        Mainshock magnitude.
    tbegin : float
        Forecast start time, in days after the mainshock.
    parameter_set : ParameterSet
        Default parameter set.
    config_ffp : Optional[Path]
        Parameter file whose sections replace the parameter set's.
    num_catalogs, target_size, accum_option, max_rel_mag, exceed_fraction, accum_param_1
        Overrides of the simulation parameters.
    n_main : Optional[float]
        Branch ratio of the mainshock, if different from `n`.
    num_threads : Optional[int]
        Number of worker threads, by default one per CPU.
    seed : Optional[int]
        Random seed.
    output_ffp : Optional[Path]
        CSV file to write the forecast to.
    """
    try:
        check_etas_parameters(n, p, c, b, alpha)
        sim_parameters = SimulationParams.read_from_file_or_defaults(
            config_ffp, parameter_set
        )
        apply_overrides(
            sim_parameters,
            num_catalogs=num_catalogs,
            target_size=target_size,
            accum_option=accum_option,
            max_rel_mag=max_rel_mag,
            exceed_fraction=exceed_fraction,
            accum_param_1=accum_param_1,
        )
        catalog_config = CatalogConfig.read_from_file_or_defaults(config_ffp, parameter_set)
        forecast_config = ForecastGridConfig.read_from_file_or_defaults(
            config_ffp, parameter_set
        )
        tend = ForecastGrid(forecast_config, tbegin).get_config_tend()
        cat_params = CatalogParams.from_branch_ratio(
            n,
            p,
            c,
            b,
            alpha,
            catalog_config.mref,
            catalog_config.msup,
            tbegin,
            tend,
            max_gen_count=catalog_config.max_gen_count,
            max_cat_size=catalog_config.max_cat_size,
        )
        initializer = FixedStateInitializer(cat_params, mag_main, 0.0, n_main=n_main)
    except (ValueError, MarshalError) as e:
        log_utils.log("invalid arguments", None, logging.ERROR, error=str(e))
        print(f"Invalid arguments: {e}")
        raise typer.Exit(code=EXIT_INVALID_ARGUMENTS)

    run_forecast(initializer, sim_parameters, forecast_config, num_threads, seed, output_ffp)


def main() -> None:
    """Run the command, exiting with 1 (rather than 2) on usage errors."""
    try:
        exit_code = app(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(EXIT_INVALID_ARGUMENTS)
    sys.exit(exit_code or 0)
