import numpy as np
import pandas as pd
import pytest

from etas_forecast import defaults, value_range
from etas_forecast.ensemble import AutoExecutor
from etas_forecast.fitting import FitHistory
from etas_forecast.priors import GaussianPrior, UniformPrior
from etas_forecast.voxel_fitting import FittingConfig, fit_voxel_set, make_axis


@pytest.fixture
def history() -> FitHistory:
    return FitHistory.from_dataframe(
        pd.DataFrame(
            {
                "time_days": [0.0, 0.3, 0.5, 1.0, 2.0, 4.0, 9.5],
                "magnitude": [6.0, 4.1, 4.0, 3.5, 4.2, 3.1, 3.2],
            }
        ),
        t_forecast=10.0,
    )


def small_config(**kwargs) -> FittingConfig:
    fields = {
        "tint_br": 365.0,
        "f_background": False,
        "group_lookback": np.array([0.0, 1.0, 100.0]),
        "b": {"scale": "single", "value": 1.0},
        "c": {"scale": "log", "min": 0.001, "max": 0.1, "num": 2},
        "p": {"scale": "linear", "min": 0.9, "max": 1.3, "num": 2},
        "n": {"scale": "log", "min": 0.1, "max": 1.0, "num": 3},
        "zams": {"scale": "linear", "min": -4.0, "max": 0.0, "num": 5},
    }
    return FittingConfig(**(fields | kwargs))


@pytest.mark.parametrize(
    "spec, expected",
    [
        ({"scale": "single", "value": 1.5}, [1.5]),
        ({"scale": "linear", "min": 0.0, "max": 1.0, "num": 2}, [0.25, 0.75]),
        ({"scale": "log", "min": 1.0, "max": 100.0, "num": 2}, [10.0**0.5, 10.0**1.5]),
    ],
)
def test_make_axis(spec: dict, expected: list[float]):
    assert value_range.axis_values(make_axis(spec)).tolist() == pytest.approx(expected)


def test_make_axis_none():
    assert make_axis(None) is None


def test_make_axis_unknown_scale():
    with pytest.raises(ValueError):
        make_axis({"scale": "cubic", "min": 0.0, "max": 1.0, "num": 2})


def test_fitting_config_round_trip():
    config = small_config(zmu={"scale": "log", "min": 1e-4, "max": 1e-2, "num": 2})
    read_config = FittingConfig.from_dict(config.to_dict())
    assert np.array_equal(read_config.group_lookback, config.group_lookback)
    assert read_config.zmu == config.zmu
    assert read_config.alpha is None


def test_fit_voxel_set(history: FitHistory, executor: AutoExecutor):
    voxel_set = fit_voxel_set(
        history, small_config(), 3.0, 9.5, 3.0, 9.5, UniformPrior(), executor
    )
    assert voxel_set.voxel_count == 2 * 2 * 3
    assert voxel_set.total_subvox_count == 2 * 2 * 3 * 5
    assert voxel_set.fit_info.mag_main == 6.0
    assert all(np.all(np.isfinite(voxel.log_likelihood)) for voxel in voxel_set.voxels)


def test_fit_voxel_set_alpha_axis(history: FitHistory, executor: AutoExecutor):
    config = small_config(alpha={"scale": "linear", "min": 0.8, "max": 1.0, "num": 2})
    voxel_set = fit_voxel_set(
        history, config, 3.0, 9.5, 3.0, 9.5, GaussianPrior(), executor
    )
    assert voxel_set.voxel_count == 2 * 2 * 2 * 3
    assert sorted({voxel.alpha_value for voxel in voxel_set.voxels}) == pytest.approx(
        [0.85, 0.95]
    )


def test_fit_voxel_set_background(history: FitHistory, executor: AutoExecutor):
    config = small_config(
        f_background=True, zmu={"scale": "log", "min": 1e-4, "max": 1e-2, "num": 2}
    )
    voxel_set = fit_voxel_set(
        history, config, 3.0, 9.5, 3.5, 9.5, UniformPrior(), executor
    )
    assert voxel_set.total_subvox_count == 2 * 2 * 3 * 5 * 2
    assert all(voxel.prod_bkgd is not None for voxel in voxel_set.voxels)


def test_fit_default_grid_shape():
    config = FittingConfig.read_from_defaults(defaults.ParameterSet.development)
    assert config.b["scale"] == "single"
    assert len(make_axis(config.zams)) == config.zams["num"]
