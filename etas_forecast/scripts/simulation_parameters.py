#!/usr/bin/env python3
"""Simulation Parameters.

Description
-----------
Write a default parameter set to a parameter file, for editing and passing to `etas-simulate` or `etas-fit-simulate` with `--config-ffp`.

Inputs
------
A parameter set name (`production` or `development`).

Outputs
-------
A JSON parameter file with the `simulation`, `seeding`, `catalog`, `forecast` and `fitting` sections. Existing sections of other configurations in the file are kept.

Environment
-----------
Can be run from your own computer using the `etas-simulation-parameters` command which is installed after running `pip install etas_forecast`.

Usage
-----
`etas-simulation-parameters [OPTIONS] OUTPUT_FFP`

For More Help
-------------
See the output of `etas-simulation-parameters --help` or `etas_forecast.scripts.simulation_parameters`.
"""

import sys
from pathlib import Path
from typing import Annotated

import click
import typer

from etas_forecast import log_utils
from etas_forecast.defaults import ParameterSet
from etas_forecast.forecast_grid import ForecastGridConfig
from etas_forecast.parameters import CatalogConfig, SeedingParams, SimulationParams
from etas_forecast.voxel_fitting import FittingConfig

app = typer.Typer()

CONFIGURATIONS = [
    SimulationParams,
    SeedingParams,
    CatalogConfig,
    ForecastGridConfig,
    FittingConfig,
]


@app.command(help="Write a default parameter set to a parameter file.")
@log_utils.log_call()
def simulation_parameters(
    output_ffp: Annotated[
        Path, typer.Argument(help="Parameter file to write.", dir_okay=False, writable=True)
    ],
    parameter_set: Annotated[
        ParameterSet, typer.Option(help="Default parameter set.")
    ] = ParameterSet.production,
) -> None:
    """Write a default parameter set to a parameter file.

    Parameters
    ----------
    output_ffp : Path
        Parameter file to write.
    parameter_set : ParameterSet
        Default parameter set.
    """
    for configuration in CONFIGURATIONS:
        configuration.read_from_defaults(parameter_set).write_to_file(output_ffp)


def main() -> None:
    try:
        exit_code = app(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(1)
    sys.exit(exit_code or 0)
