"""Numerical constants and enumerations shared across the forecasting engine."""

import dataclasses
import math
from enum import IntEnum, StrEnum
from typing import Self

C_LOG_10 = math.log(10.0)
"""Natural logarithm of 10."""

STABLE_LIMIT_EPS = 1.0e-16
"""Exponent arguments at or below this magnitude use the linear limit form."""

GEN_TIME_EPS = 1.0e-5
"""Tolerance, in days, when comparing simulated times."""

GEN_MAG_EPS = 2.0e-4
"""Tolerance when comparing simulated magnitudes."""

DEF_MAG_EXCESS = 4.0
"""Default magnitude excess above the maximum simulated magnitude."""

DEF_MAX_GEN_COUNT = 100
"""Default maximum number of generations in a catalog."""

DEF_MAX_CAT_SIZE = 5_000_000
"""Default maximum number of ruptures in a catalog."""

TINY_BACKGROUND_RATE = 1.0e-20
"""Background rates at or below this value are treated as zero."""

UNKNOWN_B_VALUE = -1.0
"""Marker for an unknown b-value; any value below zero counts as unknown."""

NO_MAG_NEG = -11.875
"""Magnitude reported when a catalog has no ruptures."""


class CatalogResult(IntEnum):
    """Outcome of generating one catalog."""

    OK = 0
    """The catalog ran to its end time."""
    EARLY_STOP = 1
    """The catalog was stopped early by a rupture above the maximum magnitude."""
    CAT_TOO_LARGE = 2
    """The catalog exceeded the maximum number of ruptures."""
    TOO_MANY_GEN = 3
    """The catalog exceeded the maximum number of generations."""

    @property
    def is_success(self) -> bool:
        """True if the catalog can be accumulated."""
        return self in (CatalogResult.OK, CatalogResult.EARLY_STOP)


class AccumulatorKind(StrEnum):
    """Accumulator selected for a phase of the simulation."""

    NONE = "none"
    """No accumulator (ranging is skipped and the default range is used)."""
    SIM_RANGING = "sim_ranging"
    """Catalog size and survival tracker used during ranging."""
    CUM_TIME_MAG = "cum_time_mag"
    """Cumulative realised counts on the time/magnitude grid."""
    RATE_TIME_MAG = "rate_time_mag"
    """Realised counts plus expected-rate fills on the time/magnitude grid."""


class InfillMethod(IntEnum):
    """How `CUM_TIME_MAG` fills magnitudes below the simulated range."""

    NONE = 1
    """Counts below the simulated minimum are the realised counts."""
    SCALE = 2
    """Counts below the simulated minimum are scaled up by Gutenberg-Richter."""


class CatalogLengthMethod(IntEnum):
    """Which catalogs are accepted, and how their effective end time is chosen."""

    ANY = 1
    """Accept all catalogs, effective end is the stop time."""
    ANY_CLIP = 2
    """Accept all catalogs, effective end is clipped to a time bin boundary."""
    RANGE = 3
    """Accept catalogs that reach the last forecast time."""
    ENTIRE = 4
    """Accept catalogs that reach the end of the simulation."""
    ENTIRE_CLIP = 5
    """As `ENTIRE`, with the effective end clipped to a time bin boundary."""


class OutfillMethod(IntEnum):
    """How time after a catalog's effective end is filled."""

    NONE = 1
    """No fill: nothing happens after the end."""
    OMIT = 2
    """The catalog is omitted from bins that extend past its end."""
    PDF_DIRECT = 3
    """Fill with the expected direct aftershocks of all ruptures."""


class MagfillMethod(IntEnum):
    """How magnitudes below the simulated minimum are filled."""

    NONE = 1
    """No fill: counts below the simulated minimum are the realised counts."""
    PDF_ONLY = 2
    """Counts are replaced by expected rates for every magnitude."""
    PDF_HYBRID = 3
    """Realised counts plus expected rates below the simulated minimum."""
    PDF_STERILE = 4
    """As `PDF_HYBRID`, but only seed ruptures contribute to the fill."""


@dataclasses.dataclass(frozen=True)
class RateAccumulationMethod:
    """A rate accumulation method, encoded as `catlen*100 + outfill*10 + magfill`.

    Examples
    --------
    >>> RateAccumulationMethod.from_code(433)
    RateAccumulationMethod(catlen=<CatalogLengthMethod.ENTIRE: 4>, outfill=<OutfillMethod.PDF_DIRECT: 3>, magfill=<MagfillMethod.PDF_HYBRID: 3>)
    """

    catlen: CatalogLengthMethod
    outfill: OutfillMethod
    magfill: MagfillMethod

    @property
    def code(self) -> int:
        """int: The three-digit method code."""
        return self.catlen * 100 + self.outfill * 10 + self.magfill

    @classmethod
    def from_code(cls, code: int) -> Self:
        """Decode and validate a three-digit rate accumulation method code.

        Parameters
        ----------
        code : int
            The method code.

        Returns
        -------
        RateAccumulationMethod
            The decoded method.

        Raises
        ------
        ValueError
            If any digit of the code is not a valid method.
        """
        if not 100 <= code <= 999:
            raise ValueError(f"Invalid rate accumulation method code: {code}")
        try:
            return cls(
                catlen=CatalogLengthMethod(code // 100),
                outfill=OutfillMethod((code // 10) % 10),
                magfill=MagfillMethod(code % 10),
            )
        except ValueError as e:
            raise ValueError(f"Invalid rate accumulation method code: {code}") from e


DEF_RATE_ACCUM_METHOD = RateAccumulationMethod(
    CatalogLengthMethod.ENTIRE, OutfillMethod.PDF_DIRECT, MagfillMethod.PDF_HYBRID
)
"""Typical rate accumulation method (code 433)."""
