"""Discrete ranges of parameter values.

A fitting grid axis is a tuple of `ValueElement` objects. Each element
is one value of the parameter together with the cell (element) of the
axis it represents. Axes are tuples so they can be shared between many
voxels without copying.
"""

import dataclasses
from typing import Self

import numpy as np


@dataclasses.dataclass(frozen=True)
class ValueElement:
    """One discrete value of a parameter, and the cell around it."""

    value: float
    """The parameter value."""
    lower: float
    """Lower edge of the cell."""
    upper: float
    """Upper edge of the cell."""

    @property
    def width(self) -> float:
        """float: The width of the cell."""
        return self.upper - self.lower

    def to_list(self) -> list[float]:
        return [self.value, self.lower, self.upper]

    @classmethod
    def from_list(cls, values: list[float]) -> Self:
        value, lower, upper = values
        return cls(value=value, lower=lower, upper=upper)


ValueAxis = tuple[ValueElement, ...]


def single_value(value: float) -> ValueAxis:
    """An axis holding exactly one value, with a zero-width cell."""
    return (ValueElement(value, value, value),)


def linear_range(min_value: float, max_value: float, num: int) -> ValueAxis:
    """Build an axis of `num` equal cells covering `[min_value, max_value]`.

    Values are the cell centres.

    Parameters
    ----------
    min_value : float
        Lower edge of the first cell.
    max_value : float
        Upper edge of the last cell.
    num : int
        Number of cells.

    Returns
    -------
    ValueAxis
        The axis.

    Raises
    ------
    ValueError
        If `num` is less than one or the range is empty.

    Examples
    --------
    >>> linear_range(0.0, 1.0, 2)
    (ValueElement(value=0.25, lower=0.0, upper=0.5), ValueElement(value=0.75, lower=0.5, upper=1.0))
    """
    if num < 1 or not max_value > min_value:
        raise ValueError(
            f"Invalid linear range: min={min_value}, max={max_value}, num={num}"
        )
    edges = np.linspace(min_value, max_value, num + 1)
    return tuple(
        ValueElement(float((lower + upper) / 2), float(lower), float(upper))
        for lower, upper in zip(edges[:-1], edges[1:])
    )


def log_range(min_value: float, max_value: float, num: int) -> ValueAxis:
    """Build an axis of `num` cells of equal logarithmic width covering `[min_value, max_value]`.

    Values are the geometric cell centres.

    Raises
    ------
    ValueError
        If `num` is less than one, `min_value` is not positive, or the
        range is empty.
    """
    if num < 1 or min_value <= 0 or not max_value > min_value:
        raise ValueError(
            f"Invalid log range: min={min_value}, max={max_value}, num={num}"
        )
    edges = np.geomspace(min_value, max_value, num + 1)
    return tuple(
        ValueElement(float(np.sqrt(lower * upper)), float(lower), float(upper))
        for lower, upper in zip(edges[:-1], edges[1:])
    )


def axis_values(axis: ValueAxis) -> np.ndarray:
    """Return the values of an axis as an array."""
    return np.array([element.value for element in axis], dtype=np.float64)


def axis_widths(axis: ValueAxis) -> np.ndarray:
    """Return the cell widths of an axis as an array."""
    return np.array([element.width for element in axis], dtype=np.float64)
