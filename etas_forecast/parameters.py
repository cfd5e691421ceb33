"""Parameter records for forecast simulations, and their marshaled form.

Every configuration here derives from `MarshalableConfiguration`, which
provides a versioned dictionary form (``to_dict`` / ``from_dict``),
JSON file helpers, and loading from the default parameter sets. Each
type has exactly one current marshal version; reading any other version
raises `MarshalError`.

Field validation is done with the schemas in `etas_forecast.schemas`.
Cross-field invariants (for example ``tend > tbegin``) are checked when
the object is constructed.
"""

import dataclasses
import json
import math
from abc import ABC
from pathlib import Path
from typing import Any, ClassVar, Optional, Self

from schema import Schema, SchemaError

from etas_forecast import defaults, schemas, stats
from etas_forecast.constants import (
    DEF_MAG_EXCESS,
    DEF_MAX_CAT_SIZE,
    DEF_MAX_GEN_COUNT,
    AccumulatorKind,
)
from etas_forecast.defaults import ParameterSet


class MarshalError(Exception):
    """Marshaled data could not be read."""

    pass


class MarshalableConfiguration(ABC):
    """Abstract base class for versioned, marshalable configuration records."""

    _config_key: ClassVar[str]
    """The key to save and load the configuration under in files and parameter sets."""
    _marshal_version: ClassVar[int]
    """The current marshal format version."""
    _schema: ClassVar[Schema]
    """The reference schema to validate fields against."""

    def _fields_to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert the object to its marshaled dictionary form.

        Returns
        -------
        dict
            Dictionary representation of the object, including the
            marshal ``version``.
        """
        return {"version": self._marshal_version} | self._fields_to_dict()

    @classmethod
    def _from_fields(cls, fields: dict[str, Any]) -> Self:
        return cls(**fields)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Read an object from its marshaled dictionary form.

        Parameters
        ----------
        data : dict
            The marshaled form, as produced by `to_dict`.

        Returns
        -------
        MarshalableConfiguration
            The unmarshaled object.

        Raises
        ------
        MarshalError
            If the version is missing or unknown, or the fields fail
            validation.
        """
        fields = dict(data)
        version = fields.pop("version", None)
        if version != cls._marshal_version:
            raise MarshalError(
                f"Unknown {cls.__name__} marshal version {version!r}, "
                f"expected {cls._marshal_version}"
            )
        try:
            validated = cls._schema.validate(fields)
        except SchemaError as e:
            raise MarshalError(f"Invalid {cls.__name__} fields: {e}") from e
        return cls._from_fields(validated)

    @classmethod
    def read_from_defaults(cls, parameter_set: ParameterSet) -> Self:
        """Read default values for this configuration.

        Parameters
        ----------
        parameter_set : ParameterSet
            The parameter set to load from.

        Returns
        -------
        MarshalableConfiguration
            The configuration loaded from the section `cls._config_key`
            of the parameter set.

        Raises
        ------
        MarshalError
            If the parameter set has no section for this configuration.
        """
        default_config = defaults.load_defaults(parameter_set)
        if cls._config_key not in default_config:
            raise MarshalError(f"No {cls._config_key} in parameter set {parameter_set}")
        return cls._from_fields(cls._schema.validate(default_config[cls._config_key]))

    @classmethod
    def read_from_file(cls, config_ffp: Path) -> Self:
        """Read configuration from a JSON file written by `write_to_file`.

        Parameters
        ----------
        config_ffp : Path
            The filepath to read from.

        Returns
        -------
        MarshalableConfiguration
            The configuration stored under `cls._config_key`.

        Raises
        ------
        MarshalError
            If the key is not present in the file, or the stored form
            is invalid.
        """
        with open(config_ffp, "r", encoding="utf-8") as config_file_handle:
            config = json.load(config_file_handle)
        if cls._config_key not in config:
            raise MarshalError(f"No {cls._config_key} in {config_ffp}")
        return cls.from_dict(config[cls._config_key])

    @classmethod
    def read_from_file_or_defaults(
        cls, config_ffp: Optional[Path], parameter_set: ParameterSet
    ) -> Self:
        """Read configuration from a file, falling back to a default parameter set.

        Parameters
        ----------
        config_ffp : Optional[Path]
            The filepath to read from, or None.
        parameter_set : ParameterSet
            The parameter set used if the file is absent or has no
            section for this configuration.

        Returns
        -------
        MarshalableConfiguration
            The configuration.
        """
        if config_ffp is not None:
            with open(config_ffp, "r", encoding="utf-8") as config_file_handle:
                config = json.load(config_file_handle)
            if cls._config_key in config:
                return cls.from_dict(config[cls._config_key])
        return cls.read_from_defaults(parameter_set)

    def write_to_file(self, config_ffp: Path, update: bool = True) -> None:
        """Write the configuration to a JSON file.

        The default behaviour updates the file and replaces just the
        section `self._config_key`. If `update` is False, the file is
        overwritten with only this configuration.

        Parameters
        ----------
        config_ffp : Path
            The filepath to write to.
        update : bool
            If True, then the file is updated, rather than replaced.
            Default is True.
        """
        config = {}
        if config_ffp.exists() and update:
            with open(config_ffp, "r", encoding="utf-8") as config_file_handle:
                config = json.load(config_file_handle)
        config.update({self._config_key: self.to_dict()})
        with open(config_ffp, "w", encoding="utf-8") as config_file_handle:
            json.dump(config, config_file_handle)


@dataclasses.dataclass
class CatalogRange(MarshalableConfiguration):
    """The active time and magnitude window of the simulation.

    The ranging loop mutates the range in place.
    """

    _config_key: ClassVar[str] = "catalog_range"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.CATALOG_RANGE_SCHEMA

    tbegin: float
    """Start time of the simulation, in days."""
    tend: float
    """End time of the simulation, in days."""
    mag_min_sim: float
    """Minimum simulated magnitude."""
    mag_max_sim: float
    """Maximum simulated magnitude."""
    mag_excess: float = DEF_MAG_EXCESS
    """Magnitudes up to this much above `mag_max_sim` are generated and stop the catalog."""

    def set_rescaled_min_mag(self, b: float, r: float) -> None:
        """Rescale the minimum magnitude so the expected catalog size is multiplied by `r`.

        Under Gutenberg-Richter scaling the number of earthquakes above
        magnitude ``m`` is proportional to ``10^(-b*m)``.

        Parameters
        ----------
        b : float
            The b-value used for scaling.
        r : float
            The (positive) size ratio.
        """
        self.mag_min_sim -= math.log10(r) / b

    def clip_tend(self, t: float) -> None:
        """Reduce the end time to at most `t`."""
        self.tend = min(self.tend, t)

    def progress_string(self) -> str:
        return (
            f"tbegin = {self.tbegin:.3f}, tend = {self.tend:.3f}, "
            f"mag_min_sim = {self.mag_min_sim:.3f}, mag_max_sim = {self.mag_max_sim:.3f}, "
            f"mag_excess = {self.mag_excess:.3f}"
        )


@dataclasses.dataclass(frozen=True)
class CatalogParams(MarshalableConfiguration):
    """Parameters of one simulated catalog.

    Instances are immutable, so they can be shared freely between
    threads. Per-catalog variants are derived with `with_statistics`
    and `with_range`.
    """

    _config_key: ClassVar[str] = "catalog_params"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.CATALOG_PARAMS_SCHEMA

    a: float
    """Productivity, relative to the magnitude range [mref, msup]."""
    p: float
    """Omori p-value."""
    c: float
    """Omori c-value, in days."""
    b: float
    """Gutenberg-Richter b-value."""
    alpha: float
    """ETAS intensity parameter."""
    mref: float
    """Reference magnitude."""
    msup: float
    """Supremum magnitude."""
    tbegin: float
    """Start time of the simulation, in days."""
    tend: float
    """End time of the simulation, in days."""
    mag_min: float
    """Minimum simulated magnitude."""
    mag_max: float
    """Maximum simulated magnitude."""
    mag_excess: float = 0.0
    """Magnitudes up to this much above `mag_max` are generated and stop the catalog."""
    max_gen_count: int = DEF_MAX_GEN_COUNT
    """Maximum number of generations."""
    max_cat_size: int = DEF_MAX_CAT_SIZE
    """Maximum number of ruptures."""

    def __post_init__(self):
        if not self.msup > self.mref:
            raise ValueError(f"msup ({self.msup}) must exceed mref ({self.mref})")
        if not self.tend > self.tbegin:
            raise ValueError(f"tend ({self.tend}) must exceed tbegin ({self.tbegin})")
        if not self.mag_max > self.mag_min:
            raise ValueError(
                f"mag_max ({self.mag_max}) must exceed mag_min ({self.mag_min})"
            )

    @property
    def gen_mag_max(self) -> float:
        """float: The largest magnitude that can be generated."""
        if self.mag_excess > 0.0:
            return max(min(self.mag_max + self.mag_excess, self.msup), self.mag_max)
        return self.mag_max

    @property
    def q_correction(self) -> float:
        """float: Productivity correction for the generated magnitude range."""
        return stats.q_correction(
            self.b, self.alpha, self.mref, self.msup, self.mag_min, self.gen_mag_max
        )

    def get_range(self) -> CatalogRange:
        """Return the time and magnitude window of these parameters."""
        return CatalogRange(
            tbegin=self.tbegin,
            tend=self.tend,
            mag_min_sim=self.mag_min,
            mag_max_sim=self.mag_max,
            mag_excess=self.mag_excess,
        )

    def with_range(self, cat_range: CatalogRange) -> Self:
        """Return a copy of these parameters with the window replaced by `cat_range`."""
        return dataclasses.replace(
            self,
            tbegin=cat_range.tbegin,
            tend=cat_range.tend,
            mag_min=cat_range.mag_min_sim,
            mag_max=cat_range.mag_max_sim,
            mag_excess=cat_range.mag_excess,
        )

    def with_statistics(
        self, a: float, p: float, c: float, b: float, alpha: float
    ) -> Self:
        """Return a copy of these parameters with the statistical parameters replaced."""
        return dataclasses.replace(self, a=a, p=p, c=c, b=b, alpha=alpha)

    @classmethod
    def from_branch_ratio(
        cls,
        n: float,
        p: float,
        c: float,
        b: float,
        alpha: float,
        mref: float,
        msup: float,
        tbegin: float,
        tend: float,
        mag_min: Optional[float] = None,
        mag_max: Optional[float] = None,
        tint: Optional[float] = None,
        **kwargs: Any,
    ) -> Self:
        """Build catalog parameters whose productivity gives the branch ratio `n`.

        Parameters
        ----------
        n : float
            Branch ratio.
        p, c, b, alpha : float
            ETAS parameters.
        mref, msup : float
            Reference and supremum magnitudes.
        tbegin, tend : float
            Time range of the simulation, in days.
        mag_min, mag_max : Optional[float]
            Simulated magnitude range, defaulting to [mref, msup].
        tint : Optional[float]
            Time interval for the branch ratio, defaulting to the
            simulation duration.
        **kwargs : Any
            Remaining fields (`mag_excess`, `max_gen_count`, `max_cat_size`).

        Returns
        -------
        CatalogParams
            The catalog parameters.
        """
        a = stats.inv_branch_ratio(
            n, p, c, b, alpha, mref, msup, tint if tint is not None else tend - tbegin
        )
        return cls(
            a=a,
            p=p,
            c=c,
            b=b,
            alpha=alpha,
            mref=mref,
            msup=msup,
            tbegin=tbegin,
            tend=tend,
            mag_min=mref if mag_min is None else mag_min,
            mag_max=msup if mag_max is None else mag_max,
            **kwargs,
        )


@dataclasses.dataclass
class CatalogConfig(MarshalableConfiguration):
    """Magnitude reference points and generation limits shared by all catalogs."""

    _config_key: ClassVar[str] = "catalog"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.CATALOG_CONFIG_SCHEMA

    mref: float
    """Reference magnitude."""
    msup: float
    """Supremum magnitude."""
    max_gen_count: int = DEF_MAX_GEN_COUNT
    """Maximum number of generations."""
    max_cat_size: int = DEF_MAX_CAT_SIZE
    """Maximum number of ruptures."""


@dataclasses.dataclass
class SimulationParams(MarshalableConfiguration):
    """Parameters controlling ranging and the ensemble simulation.

    Runtimes and progress intervals are in seconds; None means
    unlimited (or no progress reports). Fields prefixed with ``sim_``
    control the final simulation, fields prefixed with ``range_``
    control ranging.
    """

    _config_key: ClassVar[str] = "simulation"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.SIMULATION_PARAMS_SCHEMA

    sim_num_catalogs: int
    """Number of catalogs to simulate."""
    sim_min_num_catalogs: int
    """Minimum number of catalogs for a successful simulation."""
    sim_max_runtime: Optional[float]
    """Runtime budget, in seconds."""
    sim_progress_time: Optional[float]
    """Interval between progress messages, in seconds."""
    sim_accum_selection: AccumulatorKind
    """Accumulator for the simulation."""
    sim_accum_option: int
    """Accumulator option (infill method, or rate accumulation method code)."""
    sim_accum_param_1: float
    """Accumulator parameter (reduction of secondary productivity for fills)."""
    range_num_catalogs: int
    """Number of catalogs per ranging attempt."""
    range_min_num_catalogs: int
    """Minimum number of catalogs for a ranging attempt to be used."""
    range_max_runtime: Optional[float]
    """Runtime budget per ranging attempt, in seconds."""
    range_progress_time: Optional[float]
    """Interval between progress messages while ranging, in seconds."""
    range_accum_selection: AccumulatorKind
    """Accumulator for ranging."""
    range_accum_option: int
    """Ranging accumulator option."""
    range_min_rel_mag: float
    """Initial minimum magnitude, relative to the scaling magnitude."""
    range_max_rel_mag: float
    """Maximum magnitude, relative to the scaling magnitude."""
    range_exceed_fraction: float
    """Fraction of catalogs allowed to stop early before the end time."""
    range_target_size: float
    """Target catalog size."""
    range_target_fractile: float
    """Fractile at which the catalog size is compared to the target."""
    range_min_duration: float
    """Minimum acceptable simulation duration, in days."""
    range_max_attempts: int
    """Maximum number of ranging attempts."""
    range_mag_lim_fraction: float
    """Fractile for the maximum magnitude check, zero to disable."""
    range_mag_lim_time: float
    """Time after the start of the maximum magnitude check, in days."""

    def set_num_catalogs(self, num_catalogs: int) -> None:
        """Set the number of catalogs for simulation and ranging.

        Ranging uses a tenth as many catalogs. Neither count drops below
        100, and the minimum counts are half the counts.
        """
        self.sim_num_catalogs = max(100, num_catalogs)
        self.sim_min_num_catalogs = self.sim_num_catalogs // 2
        self.range_num_catalogs = max(100, num_catalogs // 10)
        self.range_min_num_catalogs = self.range_num_catalogs // 2

    def set_target_size(self, target_size: int) -> None:
        """Set the target catalog size for ranging, at least 100."""
        self.range_target_size = max(100, target_size)


@dataclasses.dataclass
class SeedingParams(MarshalableConfiguration):
    """Parameters converting a fitted voxel set into seeds."""

    _config_key: ClassVar[str] = "seeding"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.SEEDING_PARAMS_SCHEMA

    bay_weight: float
    """Weight of the Bayesian prior: 1 is fully Bayesian, 0 is sequence specific."""
    density_bin_size_lnu: float
    """Width of a density bin, in natural log units."""
    density_bin_count: int
    """Number of density bins (at least 2; the last bin is always discarded)."""
    prob_tail_trim: float
    """Fraction of probability to trim from the low density tail."""
    seed_subvox_count: int
    """Number of seeds, a power of two."""
