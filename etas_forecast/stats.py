"""Closed-form ETAS statistics.

Conversions between the representations of aftershock productivity
used by the fitting and simulation code, and the Omori and
Gutenberg-Richter integrals they are built on.

Notation
--------
The ETAS rate density of direct aftershocks of an earthquake of
magnitude ``m0`` at time ``t0`` is

    lambda(t, m) = k * b * ln(10) * 10^(-b*(m - mref)) * (t - t0 + c)^(-p)

with the productivity

    k = 10^(a + alpha*(m0 - mref)).

The productivity ``a`` is defined relative to the magnitude range
``[mref, msup]``. When the simulation only draws magnitudes from
``[mag_min, mag_max]`` the productivity of each simulated earthquake is
multiplied by a correction ``Q`` which preserves the branch ratio. Many
functions here work with the combined value ``10^a * Q``.

All functions are total over their valid domain (``p``, ``c``, ``b`` and
the magnitude intervals positive). The case ``alpha == b`` is handled
by a stable limit rather than raising.
"""

import math

import numpy as np
import numpy.typing as npt

from etas_forecast.constants import C_LOG_10, STABLE_LIMIT_EPS

FloatLike = float | npt.NDArray[np.float64]


def _expm1_ratio(x: FloatLike) -> FloatLike:
    """Evaluate expm1(x)/x, with the value 1 when |x| <= 1e-16."""
    x = np.asarray(x, dtype=np.float64)
    small = np.abs(x) <= STABLE_LIMIT_EPS
    safe_x = np.where(small, 1.0, x)
    return np.where(small, 1.0, np.expm1(safe_x) / safe_x)


def omori_rate_shifted(
    p: float, c: float, t0: FloatLike, teps: float, t1: FloatLike, t2: FloatLike
) -> FloatLike:
    """Integrate the Omori kernel of an earthquake over a time interval.

    Computes the integral of ``(t - t0 + c)^(-p)`` for ``t`` in
    ``[max(t1, t0 + teps), t2]``. Empty intervals integrate to zero.

    Parameters
    ----------
    p : float
        Omori p-value.
    c : float
        Omori c-value, in days.
    t0 : float or np.ndarray
        Time of the earthquake, in days.
    teps : float
        Minimum time after the earthquake at which integration can start.
    t1 : float or np.ndarray
        Start of the interval, in days.
    t2 : float or np.ndarray
        End of the interval, in days.

    Returns
    -------
    float or np.ndarray
        The integral, broadcast over the array arguments.
    """
    x1 = np.maximum(np.asarray(t1, dtype=np.float64) - t0, teps) + c
    x2 = np.maximum(np.asarray(t2, dtype=np.float64) - t0 + c, x1)
    log_ratio = np.log(x2 / x1)
    q = 1.0 - p
    return np.power(x1, q) * log_ratio * _expm1_ratio(q * log_ratio)


def omori_rate(p: float, c: float, t1: FloatLike, t2: FloatLike) -> FloatLike:
    """Integrate ``(t + c)^(-p)`` for ``t`` in ``[t1, t2]``, with ``t1 >= 0``."""
    return omori_rate_shifted(p, c, 0.0, 0.0, t1, t2)


def gr_rate(b: float, mref: float, m1: FloatLike, m2: FloatLike) -> FloatLike:
    """Integrate the Gutenberg-Richter density over ``[m1, m2]``.

    The density is ``b * ln(10) * 10^(-b*(m - mref))``, so the result is
    ``10^(-b*(m1 - mref)) - 10^(-b*(m2 - mref))``.
    """
    return np.power(10.0, -b * (np.asarray(m1) - mref)) - np.power(
        10.0, -b * (np.asarray(m2) - mref)
    )


def uncorrected_productivity(m0: float, a: float, alpha: float, mref: float) -> float:
    """Compute the productivity of an earthquake, ``10^(a + alpha*(m0 - mref))``.

    Parameters
    ----------
    m0 : float
        Magnitude of the earthquake.
    a : float
        Productivity, relative to ``[mref, msup]``.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.

    Returns
    -------
    float
        The productivity ``k``.
    """
    return 10.0 ** (a + alpha * (m0 - mref))


def q_correction(
    b: float,
    alpha: float,
    mref: float,
    msup: float,
    mag_min: float,
    mag_max: float,
) -> float:
    """Compute the productivity correction ``Q`` for a simulation magnitude range.

    ``Q`` scales the productivity of earthquakes drawn from
    ``[mag_min, mag_max]`` so that the branch ratio equals that of
    earthquakes drawn from ``[mref, msup]``.

    Parameters
    ----------
    b : float
        Gutenberg-Richter b-value.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.
    msup : float
        Supremum magnitude.
    mag_min : float
        Minimum simulated magnitude.
    mag_max : float
        Maximum simulated magnitude.

    Returns
    -------
    float
        The correction ``Q``. Equal to 1 when ``mag_min == mref`` and
        ``mag_max == msup``.
    """
    v = C_LOG_10 * (alpha - b)
    delta_sup_ref = msup - mref
    delta_max_min = mag_max - mag_min
    q = math.exp(v * (mref - mag_min))
    if max(abs(v * delta_sup_ref), abs(v * delta_max_min)) <= STABLE_LIMIT_EPS:
        return q * delta_sup_ref / delta_max_min
    return q * math.expm1(v * delta_sup_ref) / math.expm1(v * delta_max_min)


def corrected_productivity(
    m0: float,
    a: float,
    b: float,
    alpha: float,
    mref: float,
    msup: float,
    mag_min: float,
    mag_max: float,
) -> float:
    """Compute the productivity of an earthquake drawn from ``[mag_min, mag_max]``.

    Parameters
    ----------
    m0 : float
        Magnitude of the earthquake.
    a : float
        Productivity, relative to ``[mref, msup]``.
    b : float
        Gutenberg-Richter b-value.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.
    msup : float
        Supremum magnitude.
    mag_min : float
        Minimum simulated magnitude.
    mag_max : float
        Maximum simulated magnitude.

    Returns
    -------
    float
        The corrected productivity ``k * Q``.

    Examples
    --------
    >>> k = uncorrected_productivity(6.0, -2.0, 0.8, 3.0)
    >>> math.isclose(corrected_productivity(6.0, -2.0, 1.0, 0.8, 3.0, 9.5, 3.0, 9.5), k)
    True
    """
    return uncorrected_productivity(m0, a, alpha, mref) * q_correction(
        b, alpha, mref, msup, mag_min, mag_max
    )


def _branch_ratio_mag_factor(
    b: float, alpha: float, delta_mag: float, p: float, c: float, tint: float
) -> float:
    """Branch ratio per unit ``10^a``, for a magnitude interval of width ``delta_mag``."""
    v = C_LOG_10 * (alpha - b)
    r = b * C_LOG_10 * float(omori_rate(p, c, 0.0, tint))
    if abs(v * delta_mag) <= STABLE_LIMIT_EPS:
        return r * delta_mag
    return r * math.expm1(v * delta_mag) / v


def branch_ratio(
    a: float,
    p: float,
    c: float,
    b: float,
    alpha: float,
    mref: float,
    msup: float,
    tint: float,
) -> float:
    """Compute the branch ratio, the expected number of direct aftershocks per earthquake.

    The Omori kernel is integrated over ``[0, tint]`` and the magnitudes
    of both the earthquake and its aftershocks range over ``[mref, msup]``.

    Parameters
    ----------
    a : float
        Productivity.
    p : float
        Omori p-value.
    c : float
        Omori c-value, in days.
    b : float
        Gutenberg-Richter b-value.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.
    msup : float
        Supremum magnitude.
    tint : float
        Length of the time interval, in days.

    Returns
    -------
    float
        The branch ratio ``n``.
    """
    return 10.0**a * _branch_ratio_mag_factor(b, alpha, msup - mref, p, c, tint)


def inv_branch_ratio(
    n: float,
    p: float,
    c: float,
    b: float,
    alpha: float,
    mref: float,
    msup: float,
    tint: float,
) -> float:
    """Compute the productivity ``a`` that gives the branch ratio ``n``.

    This is the inverse of `branch_ratio`, with the same parameters.

    Returns
    -------
    float
        The productivity ``a``.
    """
    return math.log10(n / _branch_ratio_mag_factor(b, alpha, msup - mref, p, c, tint))


def ten_a_q_from_branch_ratio(
    n: float,
    p: float,
    c: float,
    b: float,
    alpha: float,
    mref: float,
    mag_min: float,
    mag_max: float,
    tint: float,
) -> float:
    """Compute ``10^a * Q`` directly from a branch ratio.

    Equivalent to ``10**inv_branch_ratio(...) * q_correction(...)`` but
    never evaluates the correction for the ``[mref, msup]`` range, so
    ``msup`` is not needed.

    Parameters
    ----------
    n : float
        Branch ratio.
    p : float
        Omori p-value.
    c : float
        Omori c-value, in days.
    b : float
        Gutenberg-Richter b-value.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.
    mag_min : float
        Minimum simulated magnitude.
    mag_max : float
        Maximum simulated magnitude.
    tint : float
        Length of the time interval for the branch ratio, in days.

    Returns
    -------
    float
        The value of ``10^a * Q``.
    """
    v = C_LOG_10 * (alpha - b)
    r = _branch_ratio_mag_factor(b, alpha, mag_max - mag_min, p, c, tint)
    return n * math.exp(v * (mref - mag_min)) / r


def ten_a_q_from_expected_count(
    count: float,
    p: float,
    c: float,
    b: float,
    alpha: float,
    mref: float,
    m0: float,
    t0: float,
    m1: float,
    m2: float,
    t1: float,
    t2: float,
) -> float:
    """Compute ``10^a * Q`` such that an earthquake has a given expected direct aftershock count.

    Parameters
    ----------
    count : float
        Expected number of direct aftershocks with magnitude in
        ``[m1, m2]`` and time in ``[t1, t2]``.
    p : float
        Omori p-value.
    c : float
        Omori c-value, in days.
    b : float
        Gutenberg-Richter b-value.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.
    m0 : float
        Magnitude of the earthquake.
    t0 : float
        Time of the earthquake, in days.
    m1, m2 : float
        Magnitude range of the aftershocks.
    t1, t2 : float
        Time range of the aftershocks, in days.

    Returns
    -------
    float
        The value of ``10^a * Q``.
    """
    time_integral = float(omori_rate_shifted(p, c, t0, 0.0, t1, t2))
    mag_integral = float(gr_rate(b, mref, m1, m2))
    return count / (10.0 ** (alpha * (m0 - mref)) * time_integral * mag_integral)


def expected_direct_count(
    a: float,
    p: float,
    c: float,
    b: float,
    alpha: float,
    mref: float,
    msup: float,
    mag_min: float,
    mag_max: float,
    m0: float,
    t0: float,
    m1: float,
    m2: float,
    t1: float,
    t2: float,
) -> float:
    """Compute the expected number of direct aftershocks in a time/magnitude box.

    Parameters
    ----------
    a : float
        Productivity.
    p : float
        Omori p-value.
    c : float
        Omori c-value, in days.
    b : float
        Gutenberg-Richter b-value.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.
    msup : float
        Supremum magnitude.
    mag_min : float
        Minimum simulated magnitude, for the productivity correction.
    mag_max : float
        Maximum simulated magnitude, for the productivity correction.
    m0 : float
        Magnitude of the earthquake.
    t0 : float
        Time of the earthquake, in days.
    m1, m2 : float
        Magnitude range of the aftershocks.
    t1, t2 : float
        Time range of the aftershocks, in days.

    Returns
    -------
    float
        The expected number of direct aftershocks.
    """
    k_corr = corrected_productivity(m0, a, b, alpha, mref, msup, mag_min, mag_max)
    return (
        k_corr
        * float(omori_rate_shifted(p, c, t0, 0.0, t1, t2))
        * float(gr_rate(b, mref, m1, m2))
    )


def magnitude_from_corrected_k(
    k_corr: float, ten_a_q: float, alpha: float, mref: float
) -> float:
    """Compute the magnitude whose corrected productivity is ``k_corr``.

    This inverts ``k_corr = ten_a_q * 10^(alpha*(m0 - mref))``.

    Parameters
    ----------
    k_corr : float
        Corrected productivity.
    ten_a_q : float
        The value of ``10^a * Q``.
    alpha : float
        ETAS intensity parameter.
    mref : float
        Reference magnitude.

    Returns
    -------
    float
        The magnitude ``m0``.
    """
    return math.log10(k_corr / ten_a_q) / alpha + mref
