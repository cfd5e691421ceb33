"""Functions to load the default parameter sets for forecast simulations."""

import importlib
from enum import StrEnum
from importlib import resources
from typing import Any

import yaml


class ParameterSet(StrEnum):
    """Enum of parameter sets that can be loaded by load_defaults."""

    production = "production"
    """Parameters used for operational forecasts."""
    development = "development"
    """Smaller ensembles with more generous runtime budgets, for testing."""


def load_defaults(parameter_set: ParameterSet) -> dict[str, Any]:
    """Load a default parameter set from its YAML file.

    Parameters
    ----------
    parameter_set : ParameterSet
        The parameter set to load.

    Returns
    -------
    dict
        A dictionary containing the sections of the parameter set
        (``simulation``, ``seeding``, ``catalog``, ``forecast`` and
        ``fitting``), each a dictionary of parameter values.
    """
    defaults_package = importlib.import_module(
        f"etas_forecast.default_parameters.{ParameterSet(parameter_set).value}"
    )
    defaults_path = resources.files(defaults_package) / "defaults.yaml"
    with defaults_path.open(encoding="utf-8") as defaults_file_handle:
        return yaml.safe_load(defaults_file_handle)
