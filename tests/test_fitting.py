import numpy as np
import pandas as pd
import pytest

from etas_forecast import stats
from etas_forecast.fitting import (
    FitHistory,
    FitInfo,
    MagOmoriHandle,
    ProductivityHandle,
    group_of,
)

MREF = 3.0
MSUP = 9.5


@pytest.fixture
def history() -> FitHistory:
    return FitHistory.from_dataframe(
        pd.DataFrame(
            {
                "time_days": [2.0, 0.0, 0.5, 1.0, 9.5],
                "magnitude": [4.2, 6.5, 4.0, 3.5, 3.2],
            }
        ),
        t_forecast=10.0,
    )


def make_fit_info(history: FitHistory, group_lookback=(0.0, 1.0, 100.0)) -> FitInfo:
    return FitInfo.from_history(
        history,
        mref=MREF,
        msup=MSUP,
        mag_min=MREF,
        mag_max=MSUP,
        tint_br=365.0,
        group_lookback=np.array(group_lookback),
    )


def test_history_from_dataframe(history: FitHistory):
    assert history.t_day.tolist() == [0.0, 0.5, 1.0, 2.0, 9.5]
    assert history.main_index == 0
    assert history.mag_main == 6.5
    assert history.t_forecast == 10.0


def test_history_without_mainshock():
    history = FitHistory.from_dataframe(
        pd.DataFrame({"time_days": [0.0, 1.0], "magnitude": [5.0, 4.0]}),
        has_mainshock=False,
    )
    assert history.mag_main is None
    assert history.t_forecast == 1.0


def test_group_of():
    edges = np.array([0.0, 1.0, 3.0])
    assert group_of(edges, np.array([-1.0, 0.0, 0.5, 1.0, 3.0, 4.0])).tolist() == [
        -1,
        0,
        0,
        1,
        1,
        -1,
    ]


def test_fit_info_groups(history: FitHistory):
    fit_info = make_fit_info(history)
    assert fit_info.group_count == 2
    # Group times are those of each group's largest earthquake.
    assert fit_info.group_time.tolist() == [0.0, 9.5]
    # The first group is clipped to the start of the history.
    assert fit_info.group_duration.tolist() == [9.0, 1.0]
    assert fit_info.scaling_mag == 6.5


def test_fit_info_empty_group_uses_midpoint(history: FitHistory):
    fit_info = make_fit_info(history, group_lookback=(0.0, 0.25, 3.0, 100.0))
    # Groups [-90, 7], [7, 9.75] and [9.75, 10]; the last is empty.
    assert fit_info.group_time.tolist() == pytest.approx([0.0, 9.5, 9.875])


def test_group_edges(history: FitHistory):
    fit_info = make_fit_info(history)
    assert np.allclose(fit_info.group_edges(10.0), [0.0, 9.0, 10.0])


def test_fit_info_round_trip(history: FitHistory):
    fit_info = make_fit_info(history)
    read_fit_info = FitInfo.from_dict(fit_info.to_dict())
    assert np.array_equal(read_fit_info.group_time, fit_info.group_time)
    assert np.array_equal(read_fit_info.group_duration, fit_info.group_duration)
    assert read_fit_info.mag_main == fit_info.mag_main


def test_zams_conversions(history: FitHistory):
    fit_info = make_fit_info(history)
    # With alpha == b, zams is ams.
    assert fit_info.calc_ams_from_zams(-2.0, 1.0, 1.0) == pytest.approx(-2.0)
    assert fit_info.calc_ams_from_zams(-2.0, 1.0, 0.8) == pytest.approx(-2.0 + 0.2 * 3.5)
    assert fit_info.calc_mu_from_zmu(1e-3, 1.0) == pytest.approx(1e-3 * 10.0**3.5)


def test_ten_a_q_from_branch_ratio(history: FitHistory):
    fit_info = make_fit_info(history)
    assert fit_info.calc_ten_a_q_from_branch_ratio(0.5, 1.1, 0.01, 1.0, 1.0) == pytest.approx(
        10.0 ** stats.inv_branch_ratio(0.5, 1.1, 0.01, 1.0, 1.0, MREF, MSUP, 365.0)
    )


def test_mag_omori_sums(history: FitHistory):
    fit_info = make_fit_info(history)
    p, c, b, alpha = 1.1, 0.01, 1.0, 1.0
    pmom = MagOmoriHandle(fit_info, history, p, c, b, alpha)
    assert pmom.target_count == 4
    main_weight = 10.0 ** (alpha * (6.5 - MREF))
    t_target = np.array([0.5, 1.0, 2.0, 9.5])
    assert np.allclose(pmom.sum_main, main_weight * (t_target + c) ** -p)
    assert pmom.int_main == pytest.approx(main_weight * stats.omori_rate(p, c, 0.0, 10.0))
    # The first aftershock has no earlier secondary source.
    assert pmom.sum_scnd[0] == 0.0
    assert pmom.check_param_values(p, c, b, alpha)
    assert not pmom.check_param_values(p, c, b, 0.9)


def test_likelihood_peaks_at_expected_productivity(history: FitHistory):
    fit_info = make_fit_info(history)
    pmom = MagOmoriHandle(fit_info, history, 1.1, 0.01, 1.0, 1.0)
    avpr = ProductivityHandle()
    avpr.build(pmom, 0.0)
    ten_ams_q = np.geomspace(1e-6, 1e-1, 2001)
    log_like = avpr.calc_log_like(0.0, ten_ams_q)
    assert log_like.shape == ten_ams_q.shape
    # Maximised where the expected count equals the observed count.
    best = pmom.target_count / (pmom.mag_fraction * pmom.int_main)
    assert ten_ams_q[np.argmax(log_like)] == pytest.approx(best, rel=0.01)


def test_grouped_unscaled_prod(history: FitHistory):
    fit_info = make_fit_info(history)
    pmom = MagOmoriHandle(fit_info, history, 1.1, 0.01, 1.0, 1.0)
    avpr = ProductivityHandle()
    avpr.build(pmom, 1e-3)
    prod_scnd, prod_main, prod_bkgd = avpr.grouped_unscaled_prod(False)
    assert prod_bkgd is None
    assert prod_main.tolist() == pytest.approx([10.0**3.5, 0.0])
    assert prod_scnd.tolist() == pytest.approx(
        [10.0**1.0 + 10.0**0.5 + 10.0**1.2, 10.0**0.2]
    )


def test_background_productivity(history: FitHistory):
    fit_info = FitInfo.from_history(
        history,
        mref=MREF,
        msup=MSUP,
        mag_min=4.0,
        mag_max=MSUP,
        tint_br=365.0,
        group_lookback=np.array([0.0, 1.0, 100.0]),
        f_background=True,
    )
    pmom = MagOmoriHandle(fit_info, history, 1.1, 0.01, 1.0, 1.0)
    avpr = ProductivityHandle()
    avpr.build(pmom, 1e-3)
    _, _, prod_bkgd = avpr.grouped_unscaled_prod(True)
    assert prod_bkgd is not None
    assert np.all(prod_bkgd > 0.0)
    log_like = avpr.calc_log_like(1e-3, np.array([1e-3, 1e-3]), np.array([0.0, 1.0]))
    assert log_like[0] != log_like[1]
