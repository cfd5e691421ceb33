"""The fitted voxel set, and the seeds drawn from it.

A `VoxelSet` is built in three stages:

1. Consume: fitting workers hand over fitted voxels with `add_voxels`
   between `begin_voxel_consume` and `end_voxel_consume`. The voxels
   are then sorted, and duplicates are rejected.
2. Post-fitting: `setup_post_fitting` turns the posterior density of
   every sub-voxel into a fixed number of seed selections by trimming
   the low density tail and dithering the remaining probability.
3. Seeding: the voxel set is an `EnsembleInitializer`. Each catalog
   takes the next seed (wrapping around), and the sub-voxel of that
   seed supplies the catalog parameters and seed ruptures.

After post-fitting the voxel set is read-only, apart from the seeding
index, which is an atomic counter.
"""

import threading
from typing import Any, ClassVar, Optional, Self

import numpy as np
import numpy.typing as npt
from schema import Schema

from etas_forecast import log_utils, schemas
from etas_forecast.catalog import CatalogBuilder, Rupture
from etas_forecast.constants import UNKNOWN_B_VALUE
from etas_forecast.ensemble import AtomicCounter, CatalogSeeder, EnsembleInitializer
from etas_forecast.fitting import FitInfo
from etas_forecast.parameters import (
    CatalogParams,
    CatalogRange,
    MarshalableConfiguration,
    MarshalError,
    SeedingParams,
)
from etas_forecast.stat_voxel import StatVoxel
from etas_forecast.value_range import ValueAxis, ValueElement


class InvariantViolationError(Exception):
    """Voxel set data violates an internal invariant."""

    pass


DITHER_TOLERANCE_DIVISOR = 32
"""The dither may miss the seed count by up to ``seed_subvox_count // DITHER_TOLERANCE_DIVISOR``."""


def bit_rev_array(bit_count: int) -> npt.NDArray[np.int64]:
    """Return the bit-reversal permutation of ``0 .. 2^bit_count - 1``.

    Examples
    --------
    >>> bit_rev_array(3)
    array([0, 4, 2, 6, 1, 5, 3, 7])
    """
    result = np.zeros(1, dtype=np.int64)
    for _ in range(bit_count):
        result = np.concatenate((result * 2, result * 2 + 1))
    return result


def dither_counts(
    prob: npt.NDArray[np.float64], step: float
) -> npt.NDArray[np.int64]:
    """Deterministically dither probabilities into seed counts.

    A running sum starts at ``-step/2`` and accumulates each probability
    in turn. Every time it reaches zero one seed is emitted for the
    current entry and ``step`` is subtracted, so an entry can receive
    several seeds.

    Parameters
    ----------
    prob : np.ndarray
        Probability of each entry, in walking order.
    step : float
        Probability per seed.

    Returns
    -------
    np.ndarray
        The number of seeds emitted for each entry.
    """
    running = np.cumsum(prob) - 0.5 * step
    emitted = np.maximum(np.floor(running / step).astype(np.int64) + 1, 0)
    return np.diff(emitted, prepend=0)


class VoxelSet(MarshalableConfiguration, EnsembleInitializer):
    """A set of fitted voxels, and the seeds selected from their sub-voxels."""

    _config_key: ClassVar[str] = "voxel_set"
    _marshal_version: ClassVar[int] = 1
    _schema: ClassVar[Schema] = schemas.VOXEL_SET_SCHEMA

    def __init__(self):
        self.fit_info: Optional[FitInfo] = None
        self.b_scaling = UNKNOWN_B_VALUE
        """b-value used to scale the mainshock magnitude in the voxels' secondary parameters."""
        self.voxels: list[StatVoxel] = []
        self.cum_subvox_count = np.zeros(1, dtype=np.int64)
        """``cum_subvox_count[v]`` is the global index of the first sub-voxel of voxel ``v``."""
        self._consume_lock = threading.Lock()
        self._consumed: list[StatVoxel] = []

        self.proto_cat_params: Optional[CatalogParams] = None
        self.cat_range: Optional[CatalogRange] = None
        self.range_proto: Optional[CatalogParams] = None

        self.bay_weight = 1.0
        self.density_bin_size_lnu = 0.25
        self.density_bin_count = 100
        self.prob_tail_trim = 0.0
        self.seed_subvox_count = 0
        self.seed_subvox = np.zeros(0, dtype=np.int64)
        """Global sub-voxel index of each seed, in scrambled order."""

        self.max_log_density = 0.0
        self.clip_bin_index = 0
        """Sub-voxels in density bins at or beyond this index are trimmed."""
        self.clip_log_density = 0.0
        self.clip_log_density_prob = 0.0
        """Fraction of the probability outside the last density bin."""
        self.clip_log_density_tally = 0
        self.clip_tail_prob = 0.0
        """Fraction of the probability kept by the tail trim."""
        self.clip_tail_tally = 0
        self.clip_seed_prob = 0.0
        """Fraction of the probability in sub-voxels that received seeds."""
        self.clip_seed_tally = 0
        self.dither_mismatch = 0
        """Difference between the number of seeds emitted by the dither and the seed count."""
        self.seed_b_value = 0.0
        self.ranging_b_value = 0.0

        self.seeding_index = AtomicCounter()

    # Consuming voxels

    def begin_voxel_consume(self, fit_info: FitInfo, b_scaling: float) -> None:
        self.fit_info = fit_info
        self.b_scaling = b_scaling
        with self._consume_lock:
            self._consumed = []

    def add_voxels(self, voxels: list[StatVoxel]) -> None:
        """Add fitted voxels. May be called concurrently."""
        with self._consume_lock:
            self._consumed.extend(voxels)

    def end_voxel_consume(self) -> None:
        """Sort the consumed voxels and build the sub-voxel offset table.

        Raises
        ------
        InvariantViolationError
            If no voxels were consumed, or two voxels share the same
            primary parameters.
        """
        with self._consume_lock:
            voxels, self._consumed = self._consumed, []
        if not voxels:
            raise InvariantViolationError("No voxels were supplied to the voxel set")
        voxels.sort(key=lambda voxel: voxel.sort_key)
        for previous, current in zip(voxels[:-1], voxels[1:]):
            if previous.sort_key == current.sort_key:
                raise InvariantViolationError(
                    f"Duplicate voxel in voxel set: {current!r}"
                )
        self.voxels = voxels
        self.cum_subvox_count = np.concatenate(
            ([0], np.cumsum([voxel.subvox_count for voxel in voxels]))
        ).astype(np.int64)

    @property
    def voxel_count(self) -> int:
        return len(self.voxels)

    @property
    def total_subvox_count(self) -> int:
        return int(self.cum_subvox_count[-1])

    def locate_subvox(self, global_index: int) -> tuple[int, int]:
        """Return ``(voxel_index, subvox_index)`` for a global sub-voxel index."""
        voxel_index = int(
            np.searchsorted(self.cum_subvox_count, global_index, side="right") - 1
        )
        return voxel_index, global_index - int(self.cum_subvox_count[voxel_index])

    # Post-fitting

    def setup_post_fitting(
        self,
        proto_cat_params: CatalogParams,
        seeding_params: SeedingParams,
        ranging_b_value: float = UNKNOWN_B_VALUE,
    ) -> None:
        """Select the seeds from the posterior density of the sub-voxels.

        Parameters
        ----------
        proto_cat_params : CatalogParams
            Prototype catalog parameters; each seed overlays its voxel's
            statistics on the prototype.
        seeding_params : SeedingParams
            Prior weight, density binning, tail trim and seed count.
        ranging_b_value : float
            The b-value for ranging. A negative value (the default) selects
            the mean b-value of the seeds.

        Raises
        ------
        InvariantViolationError
            If the dither misses the seed count by more than the
            tolerance, or seeds collide in the scrambled order.
        """
        self.proto_cat_params = proto_cat_params
        self.cat_range = proto_cat_params.get_range()
        self.bay_weight = seeding_params.bay_weight
        self.density_bin_size_lnu = seeding_params.density_bin_size_lnu
        self.density_bin_count = seeding_params.density_bin_count
        self.prob_tail_trim = seeding_params.prob_tail_trim
        self.seed_subvox_count = seeding_params.seed_subvox_count
        seed_count = self.seed_subvox_count
        bin_count = self.density_bin_count

        log_density = np.concatenate(
            [voxel.combined_log_density(self.bay_weight) for voxel in self.voxels]
        )
        if len(log_density) != self.total_subvox_count:
            raise InvariantViolationError(
                f"Sub-voxel tally mismatch: {len(log_density)} densities for "
                f"{self.total_subvox_count} sub-voxels"
            )
        self.max_log_density = float(np.max(log_density))
        neg_log_density = self.max_log_density - log_density
        prob = np.exp(-neg_log_density)
        density_bin = np.minimum(
            np.floor(neg_log_density / self.density_bin_size_lnu), bin_count - 1
        ).astype(np.int64)

        bin_prob = np.bincount(density_bin, weights=prob, minlength=bin_count)
        bin_tally = np.bincount(density_bin, minlength=bin_count)
        accum_prob = np.concatenate(([0.0], np.cumsum(bin_prob)))
        accum_tally = np.concatenate(([0], np.cumsum(bin_tally)))

        # The last bin is always discarded.
        total_prob = accum_prob[bin_count]
        clip_prob = (1.0 - self.prob_tail_trim) * accum_prob[bin_count - 1]
        # First bin in 1 .. bin_count - 1 whose cumulative probability exceeds clip_prob.
        self.clip_bin_index = 1 + int(
            np.count_nonzero(accum_prob[2:bin_count] <= clip_prob)
        )
        self.clip_log_density = (
            self.max_log_density - self.clip_bin_index * self.density_bin_size_lnu
        )
        self.clip_log_density_prob = float(accum_prob[bin_count - 1] / total_prob)
        self.clip_log_density_tally = int(accum_tally[bin_count - 1])
        self.clip_tail_prob = float(accum_prob[self.clip_bin_index] / total_prob)
        self.clip_tail_tally = int(accum_tally[self.clip_bin_index])

        kept_prob = np.where(density_bin < self.clip_bin_index, prob, 0.0)
        counts = dither_counts(kept_prob, accum_prob[self.clip_bin_index] / seed_count)
        seeded = counts > 0
        self.clip_seed_prob = float(prob[seeded].sum() / total_prob)
        self.clip_seed_tally = int(np.count_nonzero(seeded))

        emitted = np.repeat(np.arange(len(counts), dtype=np.int64), counts)
        self.dither_mismatch = len(emitted) - seed_count
        tolerance = seed_count // DITHER_TOLERANCE_DIVISOR
        if abs(self.dither_mismatch) > tolerance:
            raise InvariantViolationError(
                f"Dither mismatch {self.dither_mismatch} exceeds tolerance {tolerance} "
                f"(seed count {seed_count}, sub-voxels {self.total_subvox_count})"
            )
        emitted = emitted[:seed_count]

        scramble = bit_rev_array(int(seed_count).bit_length() - 1)
        self.seed_subvox = np.full(seed_count, -1, dtype=np.int64)
        positions = scramble[: len(emitted)]
        if len(np.unique(positions)) != len(positions):
            raise InvariantViolationError("Dither array collision")
        self.seed_subvox[positions] = emitted
        mid = seed_count // 2
        for ix in range(len(emitted), seed_count):
            self.seed_subvox[scramble[ix]] = self.seed_subvox[scramble[ix - mid]]
        if np.any(self.seed_subvox < 0):
            raise InvariantViolationError("Dither array has unfilled seeds")

        subvox_b_value = np.repeat(
            [voxel.get_b_value() for voxel in self.voxels],
            np.diff(self.cum_subvox_count),
        )
        self.seed_b_value = float(np.mean(subvox_b_value[self.seed_subvox]))
        self.ranging_b_value = (
            self.seed_b_value if ranging_b_value < 0.0 else ranging_b_value
        )
        log_utils.log(
            "voxel set seeds selected",
            voxel_count=self.voxel_count,
            subvox_count=self.total_subvox_count,
            clip_bin_index=self.clip_bin_index,
            clip_tail_prob=self.clip_tail_prob,
            clip_seed_tally=self.clip_seed_tally,
            dither_mismatch=self.dither_mismatch,
            seed_b_value=self.seed_b_value,
        )

    def seed_subvox_location(self, seed_index: int) -> tuple[int, int]:
        """Return ``(voxel_index, subvox_index)`` of a seed, wrapping the index."""
        return self.locate_subvox(int(self.seed_subvox[seed_index % self.seed_subvox_count]))

    # Ensemble initializer

    def make_seeder(self) -> CatalogSeeder:
        return VoxelSetSeeder(self)

    def begin_initialization(self) -> None:
        self.seeding_index.set(0)
        self.range_proto = self.proto_cat_params.with_range(self.cat_range)

    def end_initialization(self) -> None:
        self.range_proto = None

    def has_mainshock_mag(self) -> bool:
        return self.fit_info.mag_main is not None

    def get_mainshock_mag(self) -> float:
        if self.fit_info.mag_main is not None:
            return self.fit_info.mag_main
        return self.fit_info.mag_max

    def get_initial_range(self) -> CatalogRange:
        return self.proto_cat_params.get_range()

    def get_range(self) -> CatalogRange:
        return self.cat_range

    def set_range(self, cat_range: CatalogRange) -> None:
        self.cat_range = cat_range

    def get_b_value(self) -> float:
        return self.ranging_b_value

    def get_display_params(self) -> dict[str, float]:
        return {
            "Mref": self.proto_cat_params.mref,
            "Msup": self.proto_cat_params.msup,
            "voxel_count": self.voxel_count,
            "subvox_count": self.total_subvox_count,
            "seed_b_value": self.seed_b_value,
            "clip_tail_prob": self.clip_tail_prob,
        }

    # Marshaling

    def _fields_to_dict(self) -> dict[str, Any]:
        axes: list[ValueAxis] = []
        axis_table: dict[int, int] = {}
        for voxel in self.voxels:
            for axis in (voxel.zams_axis, voxel.zmu_axis):
                if axis is not None and id(axis) not in axis_table:
                    axis_table[id(axis)] = len(axes)
                    axes.append(axis)
        return {
            "fit_info": self.fit_info.to_dict(),
            "b_scaling": self.b_scaling,
            "proto_cat_params": (
                None if self.proto_cat_params is None else self.proto_cat_params.to_dict()
            ),
            "cat_range": None if self.cat_range is None else self.cat_range.to_dict(),
            "subvox_axes": [[element.to_list() for element in axis] for axis in axes],
            "voxels": [voxel.to_dict(axis_table) for voxel in self.voxels],
            "cum_subvox_count": self.cum_subvox_count.tolist(),
            "bay_weight": self.bay_weight,
            "density_bin_size_lnu": self.density_bin_size_lnu,
            "density_bin_count": self.density_bin_count,
            "prob_tail_trim": self.prob_tail_trim,
            "seed_subvox_count": self.seed_subvox_count,
            "seed_subvox": self.seed_subvox.tolist(),
            "max_log_density": self.max_log_density,
            "clip_bin_index": self.clip_bin_index,
            "clip_log_density": self.clip_log_density,
            "clip_log_density_prob": self.clip_log_density_prob,
            "clip_log_density_tally": self.clip_log_density_tally,
            "clip_tail_prob": self.clip_tail_prob,
            "clip_tail_tally": self.clip_tail_tally,
            "clip_seed_prob": self.clip_seed_prob,
            "clip_seed_tally": self.clip_seed_tally,
            "dither_mismatch": self.dither_mismatch,
            "seed_b_value": self.seed_b_value,
            "ranging_b_value": self.ranging_b_value,
        }

    @classmethod
    def _from_fields(cls, fields: dict[str, Any]) -> Self:
        voxel_set = cls()
        axes = [
            tuple(ValueElement.from_list(element) for element in axis)
            for axis in fields.pop("subvox_axes")
        ]
        voxel_set.fit_info = FitInfo.from_dict(fields.pop("fit_info"))
        proto = fields.pop("proto_cat_params")
        voxel_set.proto_cat_params = None if proto is None else CatalogParams.from_dict(proto)
        cat_range = fields.pop("cat_range")
        voxel_set.cat_range = None if cat_range is None else CatalogRange.from_dict(cat_range)
        voxel_set.voxels = [
            StatVoxel.from_dict(voxel, axes) for voxel in fields.pop("voxels")
        ]
        voxel_set.cum_subvox_count = np.array(fields.pop("cum_subvox_count"), dtype=np.int64)
        voxel_set.seed_subvox = np.array(fields.pop("seed_subvox"), dtype=np.int64)
        for name, value in fields.items():
            setattr(voxel_set, name, value)
        expected = np.concatenate(
            ([0], np.cumsum([voxel.subvox_count for voxel in voxel_set.voxels]))
        )
        if not np.array_equal(expected, voxel_set.cum_subvox_count):
            raise MarshalError("Voxel set sub-voxel offsets do not match its voxels")
        return voxel_set


class VoxelSetSeeder(CatalogSeeder):
    """Thread-local seeder drawing successive seeds from a `VoxelSet`."""

    def __init__(self, voxel_set: VoxelSet):
        self.voxel_set = voxel_set
        self.rup = Rupture()

    def seed_catalog(self, builder: CatalogBuilder) -> None:
        voxel_set = self.voxel_set
        voxel_index, subvox_index = voxel_set.seed_subvox_location(
            voxel_set.seeding_index.get_and_increment()
        )
        voxel = voxel_set.voxels[voxel_index]
        cat_params = voxel.get_cat_params(voxel_set.fit_info, voxel_set.range_proto)
        voxel.seed_catalog(voxel_set.fit_info, subvox_index, builder, self.rup, cat_params)
