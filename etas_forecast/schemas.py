"""Schema definitions for parameter files and marshaled forecast structures.

Every marshaled structure carries a ``version`` field which is checked
by `etas_forecast.parameters.MarshalableConfiguration` before the
remaining fields are validated against the schemas defined here. The
same schemas validate the sections of the default parameter sets in
`etas_forecast.default_parameters`.
"""

import numpy as np
from schema import And, Literal, Optional, Or, Schema, Use

from etas_forecast.constants import AccumulatorKind

# NOTE: As with any use of the schema library, the small named
# functions below exist so that validation errors name the failed
# check. For example
#
# And(float, is_positive).validate(-12)
# schema.SchemaError: is_positive(-12) should evaluate to True
#
# is far more helpful than an error about an anonymous lambda.
#
# Accordingly, the most trivial of these functions lack docstrings.


def is_positive(x: float) -> bool:
    return x > 0


def is_non_negative(x: float) -> bool:
    return x >= 0


def is_fraction(x: float) -> bool:
    return 0 <= x <= 1


def is_plausible_magnitude(magnitude: float) -> bool:
    return -12 < magnitude < 12


def is_at_least_two(x: int) -> bool:
    return x >= 2


def is_power_of_two(x: int) -> bool:
    return x > 0 and x & (x - 1) == 0


def is_strictly_increasing(values: np.ndarray) -> bool:
    return bool(np.all(np.diff(values) > 0))


def has_three_values(values: list[float]) -> bool:
    return len(values) == 3


def as_float_array(values: list[float]) -> np.ndarray:
    return np.array(values, dtype=np.float64)


def as_optional_float_array(values: list[float]) -> np.ndarray | None:
    """Convert a marshaled array, restoring an empty list to an absent (None) array."""
    if len(values) == 0:
        return None
    return np.array(values, dtype=np.float64)


def as_float(x: int | float) -> float:
    return float(x)


NUMBER = And(Or(int, float), Use(as_float))
POSITIVE_NUMBER = And(NUMBER, is_positive)
NON_NEGATIVE_NUMBER = And(NUMBER, is_non_negative)
MAGNITUDE = And(NUMBER, is_plausible_magnitude)
FLOAT_LIST = [NUMBER]
RUNTIME = Or(None, POSITIVE_NUMBER)

CATALOG_PARAMS_SCHEMA = Schema(
    {
        Literal("a", description="Productivity, relative to [mref, msup]"): NUMBER,
        Literal("p", description="Omori p-value"): POSITIVE_NUMBER,
        Literal("c", description="Omori c-value (days)"): POSITIVE_NUMBER,
        Literal("b", description="Gutenberg-Richter b-value"): POSITIVE_NUMBER,
        Literal("alpha", description="ETAS intensity parameter"): POSITIVE_NUMBER,
        Literal("mref", description="Reference magnitude"): MAGNITUDE,
        Literal("msup", description="Supremum magnitude"): MAGNITUDE,
        Literal("tbegin", description="Simulation start time (days)"): NUMBER,
        Literal("tend", description="Simulation end time (days)"): NUMBER,
        Literal("mag_min", description="Minimum simulated magnitude"): MAGNITUDE,
        Literal("mag_max", description="Maximum simulated magnitude"): MAGNITUDE,
        Literal(
            "mag_excess",
            description="Magnitudes generated above mag_max (0 disables early stop)",
        ): NON_NEGATIVE_NUMBER,
        Literal("max_gen_count", description="Maximum number of generations"): And(
            int, is_positive
        ),
        Literal("max_cat_size", description="Maximum number of ruptures"): And(
            int, is_positive
        ),
    }
)

CATALOG_RANGE_SCHEMA = Schema(
    {
        Literal("tbegin", description="Simulation start time (days)"): NUMBER,
        Literal("tend", description="Simulation end time (days)"): NUMBER,
        Literal("mag_min_sim", description="Minimum simulated magnitude"): MAGNITUDE,
        Literal("mag_max_sim", description="Maximum simulated magnitude"): MAGNITUDE,
        Literal(
            "mag_excess", description="Magnitudes generated above mag_max_sim"
        ): NON_NEGATIVE_NUMBER,
    }
)

ACCUMULATOR_KIND = And(str, Use(AccumulatorKind))

SIMULATION_PARAMS_SCHEMA = Schema(
    {
        Literal("sim_num_catalogs", description="Number of catalogs"): And(
            int, is_positive
        ),
        Literal("sim_min_num_catalogs", description="Minimum acceptable catalogs"): And(
            int, is_positive
        ),
        Literal(
            "sim_max_runtime", description="Runtime budget (s), null for unlimited"
        ): RUNTIME,
        Literal(
            "sim_progress_time", description="Progress interval (s), null for none"
        ): RUNTIME,
        Literal(
            "sim_accum_selection", description="Accumulator for the simulation"
        ): ACCUMULATOR_KIND,
        Literal("sim_accum_option", description="Accumulator option"): int,
        Literal("sim_accum_param_1", description="Accumulator parameter"): NUMBER,
        Literal("range_num_catalogs", description="Catalogs per ranging pass"): And(
            int, is_positive
        ),
        Literal(
            "range_min_num_catalogs", description="Minimum catalogs per ranging pass"
        ): And(int, is_positive),
        Literal("range_max_runtime", description="Ranging runtime budget (s)"): RUNTIME,
        Literal(
            "range_progress_time", description="Ranging progress interval (s)"
        ): RUNTIME,
        Literal(
            "range_accum_selection", description="Accumulator for ranging"
        ): ACCUMULATOR_KIND,
        Literal("range_accum_option", description="Ranging accumulator option"): int,
        Literal(
            "range_min_rel_mag", description="Initial minimum magnitude offset"
        ): NUMBER,
        Literal(
            "range_max_rel_mag", description="Initial maximum magnitude offset"
        ): NUMBER,
        Literal(
            "range_exceed_fraction",
            description="Fraction of catalogs allowed to stop early",
        ): And(NUMBER, is_fraction),
        Literal(
            "range_target_size", description="Target catalog size"
        ): POSITIVE_NUMBER,
        Literal(
            "range_target_fractile", description="Fractile for the catalog size"
        ): And(NUMBER, is_fraction),
        Literal(
            "range_min_duration", description="Minimum simulation duration (days)"
        ): NON_NEGATIVE_NUMBER,
        Literal("range_max_attempts", description="Maximum ranging attempts"): And(
            int, is_positive
        ),
        Literal(
            "range_mag_lim_fraction",
            description="Fractile for the maximum magnitude check, 0 disables",
        ): And(NUMBER, is_fraction),
        Literal(
            "range_mag_lim_time", description="Time of the magnitude check (days)"
        ): POSITIVE_NUMBER,
    }
)

SEEDING_PARAMS_SCHEMA = Schema(
    {
        Literal("bay_weight", description="Bayesian prior weight"): And(
            NUMBER, is_fraction
        ),
        Literal(
            "density_bin_size_lnu", description="Density bin width (natural log units)"
        ): POSITIVE_NUMBER,
        Literal("density_bin_count", description="Number of density bins"): And(
            int, is_at_least_two
        ),
        Literal(
            "prob_tail_trim", description="Fraction of probability trimmed from tail"
        ): And(NUMBER, is_fraction),
        Literal("seed_subvox_count", description="Number of seeds"): And(
            int, is_power_of_two
        ),
    }
)

CATALOG_CONFIG_SCHEMA = Schema(
    {
        Literal("mref", description="Reference magnitude"): MAGNITUDE,
        Literal("msup", description="Supremum magnitude"): MAGNITUDE,
        Literal("max_gen_count", description="Maximum number of generations"): And(
            int, is_positive
        ),
        Literal("max_cat_size", description="Maximum number of ruptures"): And(
            int, is_positive
        ),
    }
)

FORECAST_CONFIG_SCHEMA = Schema(
    {
        Literal("time_windows", description="Forecast windows (days)"): And(
            FLOAT_LIST, Use(as_float_array), is_strictly_increasing
        ),
        Literal("mag_thresholds", description="Forecast magnitudes"): And(
            FLOAT_LIST, Use(as_float_array), is_strictly_increasing
        ),
        Literal("ranging_times", description="Ranging time edges (days)"): And(
            FLOAT_LIST, Use(as_float_array), is_strictly_increasing
        ),
        Literal("fractiles", description="Reported fractiles"): [And(NUMBER, is_fraction)],
    }
)

AXIS_SPEC_SCHEMA = Or(
    {"scale": "single", "value": NUMBER},
    {
        "scale": Or("linear", "log"),
        "min": NUMBER,
        "max": NUMBER,
        "num": And(int, is_positive),
    },
)

FITTING_CONFIG_SCHEMA = Schema(
    {
        Literal("tint_br", description="Branch ratio time interval (days)"): POSITIVE_NUMBER,
        Literal("f_background", description="Fit a background rate"): bool,
        Literal(
            "group_lookback", description="Source group edges, days before the forecast"
        ): And(FLOAT_LIST, Use(as_float_array), is_strictly_increasing),
        "b": AXIS_SPEC_SCHEMA,
        Optional("alpha", default=None): Or(None, AXIS_SPEC_SCHEMA),
        "c": AXIS_SPEC_SCHEMA,
        "p": AXIS_SPEC_SCHEMA,
        "n": AXIS_SPEC_SCHEMA,
        "zams": AXIS_SPEC_SCHEMA,
        Optional("zmu", default=None): Or(None, AXIS_SPEC_SCHEMA),
    }
)

FIT_INFO_SCHEMA = Schema(
    {
        "mref": MAGNITUDE,
        "msup": MAGNITUDE,
        "mag_min": MAGNITUDE,
        "mag_max": MAGNITUDE,
        "mag_main": Or(None, MAGNITUDE),
        "tint_br": POSITIVE_NUMBER,
        "f_background": bool,
        "group_time": And(FLOAT_LIST, Use(as_float_array)),
        "group_duration": And(FLOAT_LIST, Use(as_float_array)),
    }
)

VALUE_ELEMENT = And([NUMBER], has_three_values)

STAT_VOXEL_SCHEMA = Schema(
    {
        "b": VALUE_ELEMENT,
        "alpha": Or(None, VALUE_ELEMENT),
        "c": VALUE_ELEMENT,
        "p": VALUE_ELEMENT,
        "n": VALUE_ELEMENT,
        "zams_axis": And(int, is_non_negative),
        "zmu_axis": Or(None, And(int, is_non_negative)),
        "bay_log_density": And(FLOAT_LIST, Use(as_optional_float_array)),
        "bay_vox_volume": And(FLOAT_LIST, Use(as_optional_float_array)),
        "ten_aint_q": NUMBER,
        "log_likelihood": And(FLOAT_LIST, Use(as_optional_float_array)),
        "prod_scnd": And(FLOAT_LIST, Use(as_optional_float_array)),
        "prod_main": And(FLOAT_LIST, Use(as_optional_float_array)),
        "prod_bkgd": And(FLOAT_LIST, Use(as_optional_float_array)),
    }
)

VOXEL_SET_SCHEMA = Schema(
    {
        "fit_info": dict,
        "b_scaling": NUMBER,
        "proto_cat_params": Or(None, dict),
        "cat_range": Or(None, dict),
        "subvox_axes": [[VALUE_ELEMENT]],
        "voxels": [dict],
        "cum_subvox_count": [And(int, is_non_negative)],
        "bay_weight": NUMBER,
        "density_bin_size_lnu": NUMBER,
        "density_bin_count": int,
        "prob_tail_trim": NUMBER,
        "seed_subvox_count": int,
        "seed_subvox": [int],
        "max_log_density": NUMBER,
        "clip_bin_index": int,
        "clip_log_density": NUMBER,
        "clip_log_density_prob": NUMBER,
        "clip_log_density_tally": int,
        "clip_tail_prob": NUMBER,
        "clip_tail_tally": int,
        "clip_seed_prob": NUMBER,
        "clip_seed_tally": int,
        "dither_mismatch": int,
        "seed_b_value": NUMBER,
        "ranging_b_value": NUMBER,
    }
)
