#!/usr/bin/env python3
"""Fitted Forecast.

Description
-----------
Fit a grid of ETAS parameters to an observed earthquake sequence, select the simulation seeds from the posterior distribution, and run an ensemble aftershock forecast seeded from them.

Inputs
------
1. A CSV file of the observed sequence, with columns `time_days` and `magnitude`.
2. Optionally, a parameter file written by `etas-simulation-parameters`, whose `fitting` section sets the parameter grid.

Outputs
-------
A forecast summary on standard output and, optionally:
1. the forecast as a CSV file,
2. the fitted voxel set as a JSON file.

Exit status is 0 on success, 1 for invalid arguments and 2 if seed selection or the simulation fails.

Environment
-----------
Can be run from your own computer using the `etas-fit-simulate` command which is installed after running `pip install etas_forecast`.

Usage
-----
`etas-fit-simulate [OPTIONS] HISTORY_CSV`

For More Help
-------------
See the output of `etas-fit-simulate --help` or `etas_forecast.scripts.fit_simulate`.
"""

import logging
import sys
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Optional

import click
import pandas as pd
import typer

from etas_forecast import log_utils
from etas_forecast.defaults import ParameterSet
from etas_forecast.ensemble import AutoExecutor
from etas_forecast.fitting import FitHistory
from etas_forecast.forecast_grid import ForecastGrid, ForecastGridConfig
from etas_forecast.parameters import (
    CatalogConfig,
    CatalogParams,
    MarshalError,
    SeedingParams,
    SimulationParams,
)
from etas_forecast.priors import BayesianPrior, GaussianPrior, UniformPrior
from etas_forecast.scripts.simulate import (
    EXIT_INVALID_ARGUMENTS,
    EXIT_SIMULATION_FAILED,
    apply_overrides,
    run_forecast,
)
from etas_forecast.voxel_fitting import FittingConfig, fit_voxel_set
from etas_forecast.voxel_set import InvariantViolationError, VoxelSet

app = typer.Typer()


class PriorKind(StrEnum):
    """Bayesian priors selectable from the command line."""

    uniform = "uniform"
    gaussian = "gaussian"


def make_prior(prior: PriorKind) -> BayesianPrior:
    match prior:
        case PriorKind.uniform:
            return UniformPrior()
        case PriorKind.gaussian:
            return GaussianPrior()


def read_history(
    history_ffp: Path, t_forecast: Optional[float], has_mainshock: bool
) -> FitHistory:
    """Read an observed sequence from a CSV file.

    Raises
    ------
    ValueError
        If the file lacks the required columns or has no earthquakes.
    """
    history_df = pd.read_csv(history_ffp)
    missing = {"time_days", "magnitude"} - set(history_df.columns)
    if missing:
        raise ValueError(f"History is missing columns: {sorted(missing)}")
    if history_df.empty:
        raise ValueError("History has no earthquakes")
    return FitHistory.from_dataframe(
        history_df, t_forecast=t_forecast, has_mainshock=has_mainshock
    )


@app.command(help="Fit ETAS parameters to a sequence and forecast its aftershocks.")
@log_utils.log_call()
def fit_simulate(
    history_ffp: Annotated[
        Path,
        typer.Argument(
            help="CSV file of the observed sequence.",
            exists=True,
            dir_okay=False,
            metavar="HISTORY_CSV",
        ),
    ],
    t_forecast: Annotated[
        Optional[float],
        typer.Option(help="Forecast start time (days). Defaults to the last earthquake."),
    ] = None,
    mag_min: Annotated[
        Optional[float],
        typer.Option(help="Minimum magnitude of the fitted history. Defaults to mref."),
    ] = None,
    mag_max: Annotated[
        Optional[float],
        typer.Option(help="Maximum magnitude of the fitted history. Defaults to msup."),
    ] = None,
    prior: Annotated[PriorKind, typer.Option(help="Bayesian prior.")] = PriorKind.uniform,
    bay_weight: Annotated[
        Optional[float], typer.Option(help="Weight of the prior in the posterior.")
    ] = None,
    no_mainshock: Annotated[
        bool, typer.Option(help="Treat every earthquake as an aftershock.")
    ] = False,
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
    num_threads: Annotated[
        Optional[int], typer.Option(help="Number of worker threads.", min=1)
    ] = None,
    seed: Annotated[
        Optional[int], typer.Option(help="Random seed, for reproducible forecasts.")
    ] = None,
    output_ffp: Annotated[
        Optional[Path], typer.Option(help="Write the forecast to this CSV file.", dir_okay=False)
    ] = None,
    voxel_set_ffp: Annotated[
        Optional[Path],
        typer.Option(help="Write the fitted voxel set to this JSON file.", dir_okay=False),
    ] = None,
) -> None:
    """Fit ETAS parameters to a sequence and forecast its aftershocks.

    Parameters
    ----------
    history_ffp : Path
        CSV file with columns ``time_days`` and ``magnitude``.
    t_forecast : Optional[float]
        Forecast start time.
    mag_min, mag_max : Optional[float]
        Magnitude range of the fitted history.
    prior : PriorKind
        Bayesian prior.
    bay_weight : Optional[float]
        Overrides the prior weight of the parameter set.
    no_mainshock : bool
        If True, the history has no distinguished mainshock.
    parameter_set : ParameterSet
        Default parameter set.
    config_ffp : Optional[Path]
        Parameter file whose sections replace the parameter set's.
    num_catalogs, target_size : Optional[int]
        Overrides of the simulation parameters.
    num_threads : Optional[int]
        Number of worker threads.
    seed : Optional[int]
        Random seed.
    output_ffp : Optional[Path]
        CSV file to write the forecast to.
    voxel_set_ffp : Optional[Path]
        JSON file to write the fitted voxel set to.
    """
    try:
        sim_parameters = SimulationParams.read_from_file_or_defaults(
            config_ffp, parameter_set
        )
        apply_overrides(sim_parameters, num_catalogs=num_catalogs, target_size=target_size)
        seeding_params = SeedingParams.read_from_file_or_defaults(config_ffp, parameter_set)
        if bay_weight is not None:
            seeding_params.bay_weight = bay_weight
        catalog_config = CatalogConfig.read_from_file_or_defaults(config_ffp, parameter_set)
        forecast_config = ForecastGridConfig.read_from_file_or_defaults(
            config_ffp, parameter_set
        )
        fitting_config = FittingConfig.read_from_file_or_defaults(config_ffp, parameter_set)
        history = read_history(history_ffp, t_forecast, not no_mainshock)
        tbegin = history.t_forecast
        tend = ForecastGrid(forecast_config, tbegin).get_config_tend()
        # Placeholder statistics, replaced by each seed's voxel.
        proto_cat_params = CatalogParams(
            a=0.0,
            p=1.0,
            c=1.0,
            b=1.0,
            alpha=1.0,
            mref=catalog_config.mref,
            msup=catalog_config.msup,
            tbegin=tbegin,
            tend=tend,
            mag_min=catalog_config.mref,
            mag_max=catalog_config.msup,
            max_gen_count=catalog_config.max_gen_count,
            max_cat_size=catalog_config.max_cat_size,
        )
    except (ValueError, MarshalError) as e:
        log_utils.log("invalid arguments", None, logging.ERROR, error=str(e))
        print(f"Invalid arguments: {e}")
        raise typer.Exit(code=EXIT_INVALID_ARGUMENTS)

    mag_min = catalog_config.mref if mag_min is None else mag_min
    mag_max = catalog_config.msup if mag_max is None else mag_max
    try:
        if not mag_max > mag_min:
            raise ValueError(f"mag_max ({mag_max}) must exceed mag_min ({mag_min})")
        with AutoExecutor(num_threads) as executor:
            voxel_set: VoxelSet = fit_voxel_set(
                history,
                fitting_config,
                mref=catalog_config.mref,
                msup=catalog_config.msup,
                mag_min=mag_min,
                mag_max=mag_max,
                prior=make_prior(prior),
                executor=executor,
            )
    except ValueError as e:
        log_utils.log("invalid fitting parameters", None, logging.ERROR, error=str(e))
        print(f"Invalid arguments: {e}")
        raise typer.Exit(code=EXIT_INVALID_ARGUMENTS)

    try:
        voxel_set.setup_post_fitting(proto_cat_params, seeding_params)
    except InvariantViolationError as e:
        log_utils.log_failure("seed selection failed", error=str(e))
        print(f"Seed selection failed: {e}")
        raise typer.Exit(code=EXIT_SIMULATION_FAILED)
    if voxel_set_ffp is not None:
        voxel_set.write_to_file(voxel_set_ffp, update=False)

    run_forecast(voxel_set, sim_parameters, forecast_config, num_threads, seed, output_ffp)


def main() -> None:
    """Run the command, exiting with 1 (rather than 2) on usage errors."""
    try:
        exit_code = app(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(EXIT_INVALID_ARGUMENTS)
    sys.exit(exit_code or 0)
