"""Fit a voxel set to an observed earthquake sequence.

The fitting grid is read from the ``fitting`` section of a parameter
set. Each axis is a single value, or a linear or logarithmic range:

    c:
      scale: log
      min: 0.00001
      max: 1.0
      num: 11

Voxels sharing ``(b, alpha, c, p)`` share one `MagOmoriHandle`, so the
grid is fitted in parallel with one task per such combination. Each
task fits every branch ratio, then hands its voxels to the voxel set.
"""

import dataclasses
import itertools
from typing import Any, ClassVar, Optional

import numpy as np
import numpy.typing as npt
from schema import Schema

from etas_forecast import log_utils, schemas, value_range
from etas_forecast.ensemble import AutoExecutor
from etas_forecast.fitting import FitHistory, FitInfo, MagOmoriHandle, ProductivityHandle
from etas_forecast.parameters import MarshalableConfiguration
from etas_forecast.priors import BayesianPrior
from etas_forecast.stat_voxel import StatVoxel
from etas_forecast.value_range import ValueAxis, ValueElement
from etas_forecast.voxel_set import VoxelSet


def make_axis(spec: Optional[dict[str, Any]]) -> Optional[ValueAxis]:
    """Build a value axis from its configuration, or None for no axis."""
    if spec is None:
        return None
    match spec["scale"]:
        case "single":
            return value_range.single_value(spec["value"])
        case "linear":
            return value_range.linear_range(spec["min"], spec["max"], spec["num"])
        case "log":
            return value_range.log_range(spec["min"], spec["max"], spec["num"])
    raise ValueError(f"Unknown axis scale: {spec['scale']!r}")


@dataclasses.dataclass
class FittingConfig(MarshalableConfiguration):
    """The fitting grid and fitting options."""

    _config_key: ClassVar[str] = "fitting"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.FITTING_CONFIG_SCHEMA

    tint_br: float
    """Time interval for branch ratios, in days."""
    f_background: bool
    """Fit a background rate (requires a ``zmu`` axis)."""
    group_lookback: npt.NDArray[np.float64]
    """Source group edges, in days before the forecast start."""
    b: dict[str, Any]
    c: dict[str, Any]
    p: dict[str, Any]
    n: dict[str, Any]
    zams: dict[str, Any]
    alpha: Optional[dict[str, Any]] = None
    """Axis of alpha values, or None for ``alpha == b``."""
    zmu: Optional[dict[str, Any]] = None

    def _fields_to_dict(self) -> dict[str, Any]:
        fields = dataclasses.asdict(self)
        fields["group_lookback"] = self.group_lookback.tolist()
        return fields


def _fit_omori_block(
    fit_info: FitInfo,
    history: FitHistory,
    b: ValueElement,
    alpha: Optional[ValueElement],
    c: ValueElement,
    p: ValueElement,
    n_axis: ValueAxis,
    zams_axis: ValueAxis,
    zmu_axis: Optional[ValueAxis],
    prior: BayesianPrior,
    voxel_set: VoxelSet,
) -> None:
    alpha_value = b.value if alpha is None else alpha.value
    pmom = MagOmoriHandle(fit_info, history, p.value, c.value, b.value, alpha_value)
    avpr = ProductivityHandle()
    voxels = []
    for n in n_axis:
        voxel = StatVoxel(b, alpha, c, p, n, zams_axis, zmu_axis)
        voxel.apply_bayesian_prior(prior)
        voxel.fit_likelihood(fit_info, avpr, pmom)
        voxels.append(voxel)
    voxel_set.add_voxels(voxels)


def fit_voxel_set(
    history: FitHistory,
    fitting_config: FittingConfig,
    mref: float,
    msup: float,
    mag_min: float,
    mag_max: float,
    prior: BayesianPrior,
    executor: AutoExecutor,
) -> VoxelSet:
    """Fit every voxel of the grid to a history.

    Parameters
    ----------
    history : FitHistory
        The observed sequence.
    fitting_config : FittingConfig
        The grid and fitting options.
    mref, msup : float
        Reference and supremum magnitudes.
    mag_min, mag_max : float
        Magnitude range of the fitted history.
    prior : BayesianPrior
        The Bayesian prior.
    executor : AutoExecutor
        Thread pool for fitting.

    Returns
    -------
    VoxelSet
        The fitted voxel set, sorted, ready for `VoxelSet.setup_post_fitting`.
    """
    fit_info = FitInfo.from_history(
        history,
        mref=mref,
        msup=msup,
        mag_min=mag_min,
        mag_max=mag_max,
        tint_br=fitting_config.tint_br,
        group_lookback=fitting_config.group_lookback,
        f_background=fitting_config.f_background,
    )
    b_axis = make_axis(fitting_config.b)
    alpha_axis = make_axis(fitting_config.alpha) or (None,)
    c_axis = make_axis(fitting_config.c)
    p_axis = make_axis(fitting_config.p)
    n_axis = make_axis(fitting_config.n)
    zams_axis = make_axis(fitting_config.zams)
    zmu_axis = make_axis(fitting_config.zmu)

    voxel_set = VoxelSet()
    voxel_set.begin_voxel_consume(fit_info, b_scaling=b_axis[0].value)
    with log_utils.log_elapsed(
        "fitting",
        voxel_count=len(b_axis) * len(alpha_axis) * len(c_axis) * len(p_axis) * len(n_axis),
        group_count=fit_info.group_count,
    ):
        futures = [
            executor.submit(
                _fit_omori_block,
                fit_info,
                history,
                b,
                alpha,
                c,
                p,
                n_axis,
                zams_axis,
                zmu_axis,
                prior,
                voxel_set,
            )
            for b, alpha, c, p in itertools.product(b_axis, alpha_axis, c_axis, p_axis)
        ]
        for future in futures:
            future.result()
    voxel_set.end_voxel_consume()
    return voxel_set
