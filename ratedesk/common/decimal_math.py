"""
Decimal arithmetic helpers for monetary and rate calculations.

Every price, amount, spread and rate in RateDesk is a ``Decimal``. The
helpers here run under a local decimal128 context (34 significant digits)
and never mutate the global context, so callers can rely on the same
precision regardless of what the host application configured.
"""

from collections.abc import Iterable
from decimal import Context, Decimal, InvalidOperation, localcontext
from typing import Union

from .errors import DecimalDomainError

DecimalLike = Union[Decimal, int, str, float]

WORKING_PRECISION = 34
HUNDRED = Decimal("100")
ZERO = Decimal("0")

_CONTEXT = Context(prec=WORKING_PRECISION)


def to_decimal(value: DecimalLike) -> Decimal:
    """
    Convert a value to ``Decimal``.

    Floats are accepted only for configuration edges (YAML parses ``0.5`` as a
    float) and are converted through ``str()`` so the shortest repr is used
    rather than the binary expansion.

    Raises:
        DecimalDomainError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise DecimalDomainError(f"Boolean is not a decimal value: {value!r}")

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise DecimalDomainError(f"Invalid decimal value: {value!r}")
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        raise DecimalDomainError(
            f"Unsupported type for decimal conversion: {type(value).__name__}"
        )

    if not result.is_finite():
        raise DecimalDomainError(f"Decimal value must be finite: {value!r}")
    return result


def safe_div(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Divide, raising ``DecimalDomainError`` instead of producing NaN/Infinity."""
    if denominator == 0:
        raise DecimalDomainError(f"Division by zero: {numerator} / {denominator}")
    with localcontext(_CONTEXT):
        return numerator / denominator


def percent_of(value: Decimal, percent: Decimal) -> Decimal:
    """Return ``value * percent / 100``."""
    with localcontext(_CONTEXT):
        return value * percent / HUNDRED


def dmin(*values: Decimal) -> Decimal:
    return min(values)


def dmax(*values: Decimal) -> Decimal:
    return max(values)


def clamp(value: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    """Clamp ``value`` into ``[lower, upper]``."""
    if lower > upper:
        raise DecimalDomainError(f"Invalid clamp bounds: {lower} > {upper}")
    return max(lower, min(upper, value))


def dsqrt(value: Decimal) -> Decimal:
    """Square root at working precision."""
    if value < 0:
        raise DecimalDomainError(f"Square root of negative value: {value}")
    with localcontext(_CONTEXT):
        return value.sqrt()


def dsum(values: Iterable[Decimal]) -> Decimal:
    total = ZERO
    with localcontext(_CONTEXT):
        for value in values:
            total += value
    return total


def mean(values: list[Decimal]) -> Decimal:
    """
    Arithmetic mean of a non-empty list.

    Raises:
        DecimalDomainError: If ``values`` is empty
    """
    if not values:
        raise DecimalDomainError("Mean of empty sequence")
    return safe_div(dsum(values), Decimal(len(values)))


def population_variance(values: list[Decimal], average: Decimal) -> Decimal:
    """Mean of squared deviations from ``average``."""
    with localcontext(_CONTEXT):
        squared = [(value - average) ** 2 for value in values]
    return safe_div(dsum(squared), Decimal(len(values)))


def decimal_to_str(value: Decimal) -> str:
    """Exact string form used at serialization edges."""
    return format(value, "f")
