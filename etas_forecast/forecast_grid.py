"""The forecast grid: forecast windows, magnitude thresholds and results.

The grid supplies the time and magnitude axes to the simulator, and
receives the accumulated ensemble statistics once the simulation has
succeeded. Times are absolute, in days; every forecast window starts
at the forecast start time.
"""

import dataclasses
from typing import Any, ClassVar, Optional

import numpy as np
import numpy.typing as npt
import pandas as pd
from schema import Schema

from etas_forecast import schemas
from etas_forecast.accumulators import TimeMagAccumulator
from etas_forecast.parameters import MarshalableConfiguration


@dataclasses.dataclass
class ForecastGridConfig(MarshalableConfiguration):
    """Axes of the forecast grid, relative to the forecast start time."""

    _config_key: ClassVar[str] = "forecast"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.FORECAST_CONFIG_SCHEMA

    time_windows: npt.NDArray[np.float64]
    """Lengths of the forecast windows, in days."""
    mag_thresholds: npt.NDArray[np.float64]
    """Magnitude thresholds."""
    ranging_times: npt.NDArray[np.float64]
    """Edges of the ranging time bins, in days after the forecast start (first is 0)."""
    fractiles: list[float]
    """Fractiles to report."""

    def _fields_to_dict(self) -> dict[str, Any]:
        return {
            "time_windows": self.time_windows.tolist(),
            "mag_thresholds": self.mag_thresholds.tolist(),
            "ranging_times": self.ranging_times.tolist(),
            "fractiles": list(self.fractiles),
        }


class ForecastGrid:
    """Forecast axes and, after a successful simulation, the forecast itself.

    Parameters
    ----------
    config : ForecastGridConfig
        The forecast axes.
    tbegin : float
        The forecast start time, in days.
    """

    def __init__(self, config: ForecastGridConfig, tbegin: float):
        self.config = config
        self.tbegin = tbegin
        self.mean: Optional[npt.NDArray[np.float64]] = None
        """Expected count, indexed by window then threshold."""
        self.prob_occur: Optional[npt.NDArray[np.float64]] = None
        """Probability of one or more earthquakes, indexed by window then threshold."""
        self.fractile_values: dict[float, npt.NDArray[np.float64]] = {}
        self.model_params: dict[str, str] = {}
        """Descriptive parameters of the model and run, for display."""

    def get_time_values(self) -> npt.NDArray[np.float64]:
        """Absolute forecast times: the start, then the end of each window."""
        return self.tbegin + np.concatenate(([0.0], self.config.time_windows))

    def get_mag_values(self) -> npt.NDArray[np.float64]:
        return np.array(self.config.mag_thresholds, dtype=np.float64)

    def get_ranging_time_values(self) -> npt.NDArray[np.float64]:
        """Absolute edges of the ranging time bins."""
        return self.tbegin + self.config.ranging_times

    def get_config_tend(self) -> float:
        """The latest time the forecast or ranging needs, in days."""
        return self.tbegin + max(
            float(self.config.time_windows[-1]), float(self.config.ranging_times[-1])
        )

    def supply_results(self, accumulator: TimeMagAccumulator) -> None:
        """Copy the readout of a completed time/magnitude accumulator."""
        self.mean = accumulator.get_mean_array()
        self.prob_occur = accumulator.get_prob_occur_array()
        self.fractile_values = {
            fractile: accumulator.get_fractile_array(fractile)
            for fractile in self.config.fractiles
        }

    def add_model_param(self, name: str, value: Any) -> None:
        self.model_params[name] = str(value)

    @property
    def has_results(self) -> bool:
        return self.mean is not None

    def to_dataframe(self) -> pd.DataFrame:
        """Return the forecast as a table with one row per window and threshold.

        Returns
        -------
        pd.DataFrame
            Columns ``window_days``, ``magnitude``, ``expected_count``,
            ``probability`` and one ``fractile_<f>`` column per fractile.

        Raises
        ------
        ValueError
            If no results have been supplied.
        """
        if not self.has_results:
            raise ValueError("The forecast grid has no results")
        windows, magnitudes = np.meshgrid(
            self.config.time_windows, self.config.mag_thresholds, indexing="ij"
        )
        table = {
            "window_days": windows.ravel(),
            "magnitude": magnitudes.ravel(),
            "expected_count": self.mean.ravel(),
            "probability": self.prob_occur.ravel(),
        }
        for fractile, values in self.fractile_values.items():
            table[f"fractile_{fractile:g}"] = values.ravel()
        return pd.DataFrame(table)

    def to_dict(self) -> dict[str, Any]:
        """Return the forecast in a JSON-compatible form."""
        return {
            "tbegin": self.tbegin,
            "model_params": dict(self.model_params),
            "forecast": self.to_dataframe().to_dict(orient="records"),
        }

    def summary_string(self) -> str:
        lines = [f"{name} = {value}" for name, value in self.model_params.items()]
        if self.has_results:
            lines.append(
                self.to_dataframe()
                .pivot(index="magnitude", columns="window_days", values="expected_count")
                .to_string(float_format="{:.4g}".format)
            )
        return "\n".join(lines)
