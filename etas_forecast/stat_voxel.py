"""A voxel of the fitting grid.

A `StatVoxel` holds one combination of the primary statistical
parameters ``(b, alpha, c, p, n)`` and a grid of sub-voxels over the
secondary parameters ``zams`` (mainshock productivity) and, optionally,
``zmu`` (background rate). Sub-voxel ``i`` has ``zams`` index
``i // zmu_count`` and ``zmu`` index ``i % zmu_count``.

The secondary axes are shared, read-only, between many voxels. A voxel
owns its per-sub-voxel arrays (prior log density, volume,
log-likelihood) and its per-group productivity coefficients.
"""

import dataclasses
from typing import Any, Optional

import numpy as np
import numpy.typing as npt
from schema import SchemaError

from etas_forecast import schemas
from etas_forecast.catalog import CatalogBuilder, Rupture
from etas_forecast.constants import TINY_BACKGROUND_RATE
from etas_forecast.fitting import FitInfo, MagOmoriHandle, ProductivityHandle
from etas_forecast.parameters import CatalogParams, MarshalError
from etas_forecast.priors import BayesianPrior, subvox_values
from etas_forecast.value_range import ValueAxis, ValueElement

STAT_VOXEL_MARSHAL_VERSION = 1


@dataclasses.dataclass(frozen=True)
class SeedParams:
    """Secondary parameters of one sub-voxel, converted for seeding."""

    ams: float
    """Mainshock productivity."""
    ten_ams_q: float
    mu: float
    """Background rate above the reference magnitude, per day (0 without background)."""
    seed_mag_min: float
    """Lower magnitude of the seed productivity range, the reference magnitude."""
    seed_mag_max: float
    """Upper magnitude of the seed productivity range, the supremum magnitude."""


def _array_to_list(values: Optional[np.ndarray]) -> list[float]:
    return [] if values is None else values.tolist()


class StatVoxel:
    """One cell of primary parameters, with its sub-voxels.

    Parameters
    ----------
    b, c, p, n : ValueElement
        Gutenberg-Richter b-value, Omori c and p, and branch ratio.
    alpha : Optional[ValueElement]
        ETAS intensity, or None for ``alpha == b``.
    zams_axis : ValueAxis
        Shared mainshock productivity axis.
    zmu_axis : Optional[ValueAxis]
        Shared background rate axis, or None.
    """

    def __init__(
        self,
        b: ValueElement,
        alpha: Optional[ValueElement],
        c: ValueElement,
        p: ValueElement,
        n: ValueElement,
        zams_axis: ValueAxis,
        zmu_axis: Optional[ValueAxis] = None,
    ):
        self.b = b
        self.alpha = alpha
        self.c = c
        self.p = p
        self.n = n
        self.zams_axis = zams_axis
        self.zmu_axis = zmu_axis

        self.bay_log_density: Optional[npt.NDArray[np.float64]] = None
        self.bay_vox_volume: Optional[npt.NDArray[np.float64]] = None
        self.ten_aint_q = 0.0
        """``10^a * Q`` for the fitted magnitude range."""
        self.log_likelihood: Optional[npt.NDArray[np.float64]] = None
        self.prod_scnd: Optional[npt.NDArray[np.float64]] = None
        """Per-group productivity from non-mainshock sources, per unit ``ten_aint_q``."""
        self.prod_main: Optional[npt.NDArray[np.float64]] = None
        """Per-group productivity from the mainshock, per unit ``ten_ams_q``."""
        self.prod_bkgd: Optional[npt.NDArray[np.float64]] = None
        """Per-group productivity from background earthquakes, per unit ``mu``."""

    @property
    def alpha_value(self) -> float:
        return self.b.value if self.alpha is None else self.alpha.value

    @property
    def zmu_count(self) -> int:
        return 1 if self.zmu_axis is None else len(self.zmu_axis)

    @property
    def subvox_count(self) -> int:
        return len(self.zams_axis) * self.zmu_count

    @property
    def sort_key(self) -> tuple[float, float, float, float, float]:
        """The primary parameter values; voxels are sorted, and must be unique, by this key."""
        return (self.b.value, self.alpha_value, self.c.value, self.p.value, self.n.value)

    def get_b_value(self) -> float:
        return self.b.value

    def apply_bayesian_prior(self, prior: BayesianPrior) -> None:
        """Fill the prior log density and volume of every sub-voxel."""
        zams, zmu = subvox_values(self.zams_axis, self.zmu_axis)
        self.bay_log_density = np.asarray(
            prior.log_density(
                self.b.value,
                self.alpha_value,
                self.c.value,
                self.p.value,
                self.n.value,
                zams,
                zmu,
            ),
            dtype=np.float64,
        )
        self.bay_vox_volume = prior.vox_volume(
            self.b, self.alpha, self.c, self.p, self.n, self.zams_axis, self.zmu_axis
        )

    def fit_likelihood(
        self, fit_info: FitInfo, avpr: ProductivityHandle, pmom: MagOmoriHandle
    ) -> None:
        """Compute the log-likelihood of each sub-voxel and the per-group productivities.

        Parameters
        ----------
        fit_info : FitInfo
            The fitting information.
        avpr : ProductivityHandle
            Thread-local handle, rebuilt here for this voxel's branch ratio.
        pmom : MagOmoriHandle
            Handle built for this voxel's ``(p, c, b, alpha)``.

        Raises
        ------
        ValueError
            If `pmom` was built for different parameter values.
        """
        b = self.b.value
        alpha = self.alpha_value
        if not pmom.check_param_values(self.p.value, self.c.value, b, alpha):
            raise ValueError(
                f"Omori handle was built for p={pmom.p}, c={pmom.c}, b={pmom.b}, "
                f"alpha={pmom.alpha} but the voxel has p={self.p.value}, "
                f"c={self.c.value}, b={b}, alpha={alpha}"
            )
        self.ten_aint_q = fit_info.calc_ten_a_q_from_branch_ratio(
            self.n.value, self.p.value, self.c.value, b, alpha
        )
        zams, zmu = subvox_values(self.zams_axis, self.zmu_axis)
        ten_ams_q = fit_info.calc_ten_ams_q_from_zams(zams, b, alpha)
        f_background = fit_info.f_background and zmu is not None
        mu = fit_info.calc_mu_from_zmu(zmu, b) if f_background else None

        avpr.build(pmom, self.ten_aint_q)
        self.log_likelihood = avpr.calc_log_like(self.ten_aint_q, ten_ams_q, mu)
        self.prod_scnd, self.prod_main, self.prod_bkgd = avpr.grouped_unscaled_prod(
            f_background
        )

    def combined_log_density(self, bay_weight: float) -> npt.NDArray[np.float64]:
        """Return the posterior log density of each sub-voxel.

        Parameters
        ----------
        bay_weight : float
            1 for the full Bayesian posterior, 0 for the likelihood only.
        """
        return self.bay_log_density * bay_weight + self.log_likelihood

    def get_cat_params(self, fit_info: FitInfo, proto: CatalogParams) -> CatalogParams:
        """Overlay this voxel's statistics on a prototype.

        The branch ratio is converted to productivity relative to the
        prototype's ``[mref, msup]``.
        """
        b = self.b.value
        alpha = self.alpha_value
        a = fit_info.calc_a_from_branch_ratio(
            self.n.value, self.p.value, self.c.value, b, alpha, proto.mref, proto.msup
        )
        return proto.with_statistics(a=a, p=self.p.value, c=self.c.value, b=b, alpha=alpha)

    def _subvox_axis_values(self, subvox_index: int) -> tuple[float, Optional[float]]:
        zams = self.zams_axis[subvox_index // self.zmu_count].value
        if self.zmu_axis is None:
            return zams, None
        return zams, self.zmu_axis[subvox_index % self.zmu_count].value

    def get_seed_params(self, fit_info: FitInfo, subvox_index: int) -> SeedParams:
        b = self.b.value
        alpha = self.alpha_value
        zams, zmu = self._subvox_axis_values(subvox_index)
        mu = 0.0
        if self.prod_bkgd is not None and zmu is not None:
            mu = float(fit_info.calc_mu_from_zmu(zmu, b))
        return SeedParams(
            ams=float(fit_info.calc_ams_from_zams(zams, b, alpha)),
            ten_ams_q=float(fit_info.calc_ten_ams_q_from_zams(zams, b, alpha)),
            mu=mu,
            seed_mag_min=fit_info.mref,
            seed_mag_max=fit_info.msup,
        )

    def grouped_prod(self, seed_params: SeedParams) -> npt.NDArray[np.float64]:
        """Return the productivity of each source group for a sub-voxel."""
        prod = self.prod_scnd * self.ten_aint_q + self.prod_main * seed_params.ten_ams_q
        if self.prod_bkgd is not None:
            prod = prod + self.prod_bkgd * seed_params.mu
        return prod

    def seed_catalog(
        self,
        fit_info: FitInfo,
        subvox_index: int,
        builder: CatalogBuilder,
        rup: Rupture,
        cat_params: CatalogParams,
    ) -> None:
        """Begin a catalog and fill its seeds from one sub-voxel.

        One seed rupture is added per source group with non-zero
        productivity, plus a background pseudo-rupture starting at the
        catalog start when the background rate is non-zero.

        Parameters
        ----------
        fit_info : FitInfo
            Shared, read-only fitting information.
        subvox_index : int
            Index of the sub-voxel within this voxel.
        builder : CatalogBuilder
            Thread-local catalog builder.
        rup : Rupture
            Thread-local scratch rupture.
        cat_params : CatalogParams
            Parameters of the catalog, as made by `get_cat_params`.
        """
        seed_params = self.get_seed_params(fit_info, subvox_index)
        builder.begin_catalog(cat_params)
        builder.begin_generation(fit_info.seed_gen_info)
        for t_day, k_prod in zip(fit_info.group_time, self.grouped_prod(seed_params)):
            if k_prod > 0.0:
                rup.set_seed(
                    float(t_day),
                    fit_info.calc_m0_from_prod_and_ten_ams_q(
                        float(k_prod), seed_params.ten_ams_q, self.alpha_value
                    ),
                    float(k_prod),
                )
                builder.add_rup(rup)
        if seed_params.mu > TINY_BACKGROUND_RATE:
            rup.set_background(cat_params.tbegin, seed_params.mu)
            builder.add_rup(rup)
        builder.end_generation()

    def layout_grouped_prod(self, fit_info: FitInfo, subvox_index: int) -> str:
        """Return a table of the per-group productivities of a sub-voxel."""
        seed_params = self.get_seed_params(fit_info, subvox_index)
        lines = [f"ams = {seed_params.ams:.4f}, mu = {seed_params.mu:.4e}"]
        for group, (t_day, k_prod) in enumerate(
            zip(fit_info.group_time, self.grouped_prod(seed_params))
        ):
            lines.append(f"{group:3d}  t = {t_day:12.5f}  k = {k_prod:.5e}")
        return "\n".join(lines)

    def to_dict(self, axis_table: dict[int, int]) -> dict[str, Any]:
        """Convert the voxel to its marshaled form.

        Parameters
        ----------
        axis_table : dict[int, int]
            Maps the ``id`` of each shared axis to its index in the
            marshaled axis list.
        """
        return {
            "version": STAT_VOXEL_MARSHAL_VERSION,
            "b": self.b.to_list(),
            "alpha": None if self.alpha is None else self.alpha.to_list(),
            "c": self.c.to_list(),
            "p": self.p.to_list(),
            "n": self.n.to_list(),
            "zams_axis": axis_table[id(self.zams_axis)],
            "zmu_axis": None if self.zmu_axis is None else axis_table[id(self.zmu_axis)],
            "bay_log_density": _array_to_list(self.bay_log_density),
            "bay_vox_volume": _array_to_list(self.bay_vox_volume),
            "ten_aint_q": self.ten_aint_q,
            "log_likelihood": _array_to_list(self.log_likelihood),
            "prod_scnd": _array_to_list(self.prod_scnd),
            "prod_main": _array_to_list(self.prod_main),
            "prod_bkgd": _array_to_list(self.prod_bkgd),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], axes: list[ValueAxis]) -> "StatVoxel":
        """Read a voxel from its marshaled form.

        Parameters
        ----------
        data : dict
            The marshaled form, as produced by `to_dict`.
        axes : list[ValueAxis]
            The shared axes, indexed as in the marshaled form.

        Raises
        ------
        MarshalError
            If the version is unknown or the fields are invalid.
        """
        fields = dict(data)
        version = fields.pop("version", None)
        if version != STAT_VOXEL_MARSHAL_VERSION:
            raise MarshalError(f"Unknown StatVoxel marshal version {version!r}")
        try:
            fields = schemas.STAT_VOXEL_SCHEMA.validate(fields)
            zams_axis = axes[fields["zams_axis"]]
            zmu_axis = None if fields["zmu_axis"] is None else axes[fields["zmu_axis"]]
        except (SchemaError, IndexError) as e:
            raise MarshalError(f"Invalid StatVoxel fields: {e}") from e
        voxel = cls(
            b=ValueElement.from_list(fields["b"]),
            alpha=None if fields["alpha"] is None else ValueElement.from_list(fields["alpha"]),
            c=ValueElement.from_list(fields["c"]),
            p=ValueElement.from_list(fields["p"]),
            n=ValueElement.from_list(fields["n"]),
            zams_axis=zams_axis,
            zmu_axis=zmu_axis,
        )
        voxel.bay_log_density = fields["bay_log_density"]
        voxel.bay_vox_volume = fields["bay_vox_volume"]
        voxel.ten_aint_q = fields["ten_aint_q"]
        voxel.log_likelihood = fields["log_likelihood"]
        voxel.prod_scnd = fields["prod_scnd"]
        voxel.prod_main = fields["prod_main"]
        voxel.prod_bkgd = fields["prod_bkgd"]
        return voxel

    def __repr__(self) -> str:
        return (
            f"StatVoxel(b={self.b.value}, alpha={self.alpha_value}, c={self.c.value}, "
            f"p={self.p.value}, n={self.n.value}, subvox_count={self.subvox_count})"
        )
