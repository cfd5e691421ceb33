from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from etas_forecast import value_range
from etas_forecast import voxel_set as voxel_set_module
from etas_forecast.catalog import CatalogBuilder
from etas_forecast.ensemble import AutoExecutor
from etas_forecast.fitting import FitHistory
from etas_forecast.parameters import CatalogParams, MarshalError, SeedingParams
from etas_forecast.priors import UniformPrior
from etas_forecast.stat_voxel import StatVoxel
from etas_forecast.voxel_fitting import FittingConfig, fit_voxel_set
from etas_forecast.voxel_set import (
    InvariantViolationError,
    VoxelSet,
    bit_rev_array,
    dither_counts,
)


@pytest.fixture
def history() -> FitHistory:
    return FitHistory.from_dataframe(
        pd.DataFrame(
            {
                "time_days": [0.0, 0.5, 1.0, 2.0, 9.5],
                "magnitude": [6.5, 4.0, 3.5, 4.2, 3.2],
            }
        ),
        t_forecast=10.0,
    )


@pytest.fixture
def proto_cat_params() -> CatalogParams:
    return CatalogParams(
        a=0.0, p=1.0, c=1.0, b=1.0, alpha=1.0, mref=3.0, msup=9.5,
        tbegin=10.0, tend=40.0, mag_min=3.0, mag_max=9.5,
    )


def seeding_params(prob_tail_trim: float = 0.0) -> SeedingParams:
    return SeedingParams(
        bay_weight=1.0,
        density_bin_size_lnu=0.25,
        density_bin_count=100,
        prob_tail_trim=prob_tail_trim,
        seed_subvox_count=64,
    )


@pytest.fixture
def voxel_set(history: FitHistory, executor: AutoExecutor) -> VoxelSet:
    fitting_config = FittingConfig(
        tint_br=365.0,
        f_background=False,
        group_lookback=np.array([0.0, 1.0, 100.0]),
        b={"scale": "single", "value": 1.0},
        c={"scale": "single", "value": 0.01},
        p={"scale": "linear", "min": 1.0, "max": 1.2, "num": 2},
        n={"scale": "log", "min": 0.1, "max": 1.0, "num": 2},
        zams={"scale": "linear", "min": -4.0, "max": 0.0, "num": 4},
    )
    return fit_voxel_set(
        history, fitting_config, 3.0, 9.5, 3.0, 9.5, UniformPrior(), executor
    )


@pytest.fixture
def seeded_voxel_set(voxel_set: VoxelSet, proto_cat_params: CatalogParams) -> VoxelSet:
    voxel_set.setup_post_fitting(proto_cat_params, seeding_params())
    return voxel_set


def all_log_density(voxel_set: VoxelSet) -> np.ndarray:
    return np.concatenate(
        [voxel.combined_log_density(voxel_set.bay_weight) for voxel in voxel_set.voxels]
    )


def test_bit_rev_array():
    assert bit_rev_array(0).tolist() == [0]
    assert bit_rev_array(3).tolist() == [0, 4, 2, 6, 1, 5, 3, 7]


@pytest.mark.parametrize("bit_count", [1, 4, 10])
def test_bit_rev_array_is_permutation(bit_count: int):
    assert sorted(bit_rev_array(bit_count).tolist()) == list(range(2**bit_count))


@pytest.mark.parametrize(
    "prob, step, expected",
    [
        ([0.25, 0.25, 0.25, 0.25], 0.5, [1, 0, 1, 0]),
        ([1.0, 0.0, 0.0], 0.25, [4, 0, 0]),
        ([0.0, 0.1, 0.9], 0.5, [0, 0, 2]),
    ],
)
def test_dither_counts(prob: list[float], step: float, expected: list[int]):
    assert dither_counts(np.array(prob), step).tolist() == expected


def test_dither_counts_total():
    prob = np.random.default_rng(1).random(1000)
    assert dither_counts(prob, prob.sum() / 256).sum() == 256


def test_end_voxel_consume_empty(voxel_set: VoxelSet):
    voxel_set.begin_voxel_consume(voxel_set.fit_info, 1.0)
    with pytest.raises(InvariantViolationError):
        voxel_set.end_voxel_consume()


def test_end_voxel_consume_duplicate(voxel_set: VoxelSet):
    zams_axis = value_range.linear_range(-4.0, 0.0, 4)
    elements = [value_range.single_value(value)[0] for value in (1.0, 0.01, 1.1, 0.5)]
    b, c, p, n = elements
    voxel_set.begin_voxel_consume(voxel_set.fit_info, 1.0)
    voxel_set.add_voxels([StatVoxel(b, None, c, p, n, zams_axis) for _ in range(2)])
    with pytest.raises(InvariantViolationError):
        voxel_set.end_voxel_consume()


def test_voxels_sorted(voxel_set: VoxelSet):
    assert voxel_set.voxel_count == 4
    sort_keys = [voxel.sort_key for voxel in voxel_set.voxels]
    assert sort_keys == sorted(sort_keys)
    assert voxel_set.cum_subvox_count.tolist() == [0, 4, 8, 12, 16]


@pytest.mark.parametrize(
    "global_index, expected", [(0, (0, 0)), (3, (0, 3)), (5, (1, 1)), (15, (3, 3))]
)
def test_locate_subvox(voxel_set: VoxelSet, global_index: int, expected: tuple[int, int]):
    assert voxel_set.locate_subvox(global_index) == expected


def test_setup_post_fitting(seeded_voxel_set: VoxelSet):
    seeds = seeded_voxel_set.seed_subvox
    assert len(seeds) == 64
    assert np.all((seeds >= 0) & (seeds < seeded_voxel_set.total_subvox_count))
    assert seeded_voxel_set.dither_mismatch == 0
    # The most probable sub-voxel is always seeded.
    assert np.argmax(all_log_density(seeded_voxel_set)) in seeds
    assert seeded_voxel_set.seed_b_value == pytest.approx(1.0)
    assert seeded_voxel_set.get_b_value() == pytest.approx(1.0)


def test_setup_post_fitting_is_deterministic(
    voxel_set: VoxelSet, proto_cat_params: CatalogParams
):
    voxel_set.setup_post_fitting(proto_cat_params, seeding_params())
    first = voxel_set.seed_subvox.copy()
    voxel_set.setup_post_fitting(proto_cat_params, seeding_params())
    assert np.array_equal(first, voxel_set.seed_subvox)


def single_voxel_set(fit_info, log_likelihood: list[float]) -> VoxelSet:
    """A voxel set of one voxel whose sub-voxels have the given log-likelihoods."""
    b, c, p, n = [value_range.single_value(value)[0] for value in (1.0, 0.01, 1.1, 0.5)]
    zams_axis = value_range.linear_range(-4.0, 0.0, len(log_likelihood))
    voxel = StatVoxel(b, None, c, p, n, zams_axis)
    voxel.bay_log_density = np.zeros(len(log_likelihood))
    voxel.log_likelihood = np.array(log_likelihood)
    voxel_set = VoxelSet()
    voxel_set.begin_voxel_consume(fit_info, 1.0)
    voxel_set.add_voxels([voxel])
    voxel_set.end_voxel_consume()
    return voxel_set


@pytest.mark.parametrize(
    "log_likelihood, prob_tail_trim, clip_bin_index, log_density_prob, tail_prob, seed_tally",
    [
        # The second sub-voxel holds 18% of the probability, so a 10% trim drops it.
        ([0.0, -1.5], 0.1, 1, 1.0, 1.0 / (1.0 + np.exp(-1.5)), 1),
        ([0.0, -1.5], 0.0, 2, 1.0, 1.0, 2),
        # The last density bin is always discarded.
        ([0.0, -5.0], 0.0, 2, 1.0 / (1.0 + np.exp(-5.0)), 1.0 / (1.0 + np.exp(-5.0)), 1),
    ],
)
def test_tail_trim(
    voxel_set: VoxelSet,
    proto_cat_params: CatalogParams,
    log_likelihood: list[float],
    prob_tail_trim: float,
    clip_bin_index: int,
    log_density_prob: float,
    tail_prob: float,
    seed_tally: int,
):
    trimmed = single_voxel_set(voxel_set.fit_info, log_likelihood)
    trimmed.setup_post_fitting(
        proto_cat_params,
        SeedingParams(
            bay_weight=1.0,
            density_bin_size_lnu=1.0,
            density_bin_count=3,
            prob_tail_trim=prob_tail_trim,
            seed_subvox_count=64,
        ),
    )
    assert trimmed.clip_bin_index == clip_bin_index
    assert trimmed.clip_log_density_prob == pytest.approx(log_density_prob)
    assert trimmed.clip_tail_prob == pytest.approx(tail_prob)
    assert trimmed.clip_tail_tally == seed_tally
    assert trimmed.clip_seed_tally == seed_tally
    assert trimmed.clip_seed_prob == pytest.approx(tail_prob)
    assert len(np.unique(trimmed.seed_subvox)) == seed_tally
    assert trimmed.dither_mismatch == 0


def shift_dither(monkeypatch: pytest.MonkeyPatch, shift: int):
    """Make the dither emit ``shift`` seeds more (or fewer) than requested."""

    def shifted_dither_counts(prob, step):
        counts = dither_counts(prob, step)
        for _ in range(abs(shift)):
            counts[np.argmax(counts)] += 1 if shift > 0 else -1
        return counts

    monkeypatch.setattr(voxel_set_module, "dither_counts", shifted_dither_counts)


def test_dither_shortfall_padded(
    voxel_set: VoxelSet, proto_cat_params: CatalogParams, monkeypatch: pytest.MonkeyPatch
):
    shift_dither(monkeypatch, -2)
    voxel_set.setup_post_fitting(proto_cat_params, seeding_params())
    assert voxel_set.dither_mismatch == -2
    assert len(voxel_set.seed_subvox) == 64
    assert np.all(voxel_set.seed_subvox >= 0)
    # Missing seeds copy the seed half a scrambled period earlier.
    scramble = bit_rev_array(6)
    for ix in (62, 63):
        assert voxel_set.seed_subvox[scramble[ix]] == voxel_set.seed_subvox[scramble[ix - 32]]


def test_dither_excess_truncated(
    voxel_set: VoxelSet, proto_cat_params: CatalogParams, monkeypatch: pytest.MonkeyPatch
):
    shift_dither(monkeypatch, 2)
    voxel_set.setup_post_fitting(proto_cat_params, seeding_params())
    assert voxel_set.dither_mismatch == 2
    assert len(voxel_set.seed_subvox) == 64
    assert np.all(voxel_set.seed_subvox >= 0)


@pytest.mark.parametrize("shift", [-3, 3])
def test_dither_mismatch_beyond_tolerance(
    voxel_set: VoxelSet,
    proto_cat_params: CatalogParams,
    monkeypatch: pytest.MonkeyPatch,
    shift: int,
):
    # 64 seeds tolerate a mismatch of 64 // 32 == 2.
    shift_dither(monkeypatch, shift)
    with pytest.raises(InvariantViolationError):
        voxel_set.setup_post_fitting(proto_cat_params, seeding_params())


def test_ranging_b_value_override(voxel_set: VoxelSet, proto_cat_params: CatalogParams):
    voxel_set.setup_post_fitting(proto_cat_params, seeding_params(), ranging_b_value=0.9)
    assert voxel_set.get_b_value() == 0.9


def test_initializer(seeded_voxel_set: VoxelSet, proto_cat_params: CatalogParams):
    assert seeded_voxel_set.has_mainshock_mag()
    assert seeded_voxel_set.get_mainshock_mag() == 6.5
    assert seeded_voxel_set.get_initial_range() == proto_cat_params.get_range()

    seeded_voxel_set.begin_initialization()
    seeder = seeded_voxel_set.make_seeder()
    builder = CatalogBuilder()
    for _ in range(2):
        seeder.seed_catalog(builder)
        catalog = builder.end_catalog()
        assert len(catalog.seeds) > 0
        assert catalog.params.tbegin == proto_cat_params.tbegin
    assert seeded_voxel_set.seeding_index.get() == 2
    seeded_voxel_set.end_initialization()
    assert seeded_voxel_set.range_proto is None


def test_seed_index_wraps(seeded_voxel_set: VoxelSet):
    assert seeded_voxel_set.seed_subvox_location(64) == seeded_voxel_set.seed_subvox_location(0)


def test_marshal_round_trip(seeded_voxel_set: VoxelSet):
    read_voxel_set = VoxelSet.from_dict(seeded_voxel_set.to_dict())
    assert np.array_equal(read_voxel_set.seed_subvox, seeded_voxel_set.seed_subvox)
    assert read_voxel_set.voxel_count == seeded_voxel_set.voxel_count
    # Voxels share their sub-voxel axes after reading.
    assert read_voxel_set.voxels[0].zams_axis is read_voxel_set.voxels[-1].zams_axis
    assert np.allclose(all_log_density(read_voxel_set), all_log_density(seeded_voxel_set))
    assert read_voxel_set.proto_cat_params == seeded_voxel_set.proto_cat_params


def test_file_round_trip(seeded_voxel_set: VoxelSet, tmp_path: Path):
    voxel_set_ffp = tmp_path / "voxel_set.json"
    seeded_voxel_set.write_to_file(voxel_set_ffp, update=False)
    read_voxel_set = VoxelSet.read_from_file(voxel_set_ffp)
    assert read_voxel_set.seed_subvox_location(5) == seeded_voxel_set.seed_subvox_location(5)


def test_marshal_bad_offsets(seeded_voxel_set: VoxelSet):
    marshaled = seeded_voxel_set.to_dict()
    marshaled["cum_subvox_count"] = [0, 4, 8, 12, 17]
    with pytest.raises(MarshalError):
        VoxelSet.from_dict(marshaled)
