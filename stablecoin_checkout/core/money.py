"""
Fixed-point amounts.

Every currency and stablecoin amount in the system is an integer number of
micro-units (1 unit == 1_000_000 micros). Decimals appear only at the edges:
parsing provider/API input and rendering responses.
"""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

MICROS_PER_UNIT = 1_000_000
MICROS_PER_CENT = 10_000
# Amounts are stored in signed 64-bit integer columns.
MAX_MICROS = 2**63 - 1

_MICRO = Decimal("0.000001")
_CENT = Decimal("0.01")

AmountLike = Union[Decimal, int, float, str]


class AmountError(ValueError):
    """Raised when a value cannot be interpreted as an amount."""

    pass


def to_micros(value: AmountLike) -> int:
    """
    Convert a decimal amount to micro-units, rounding half-up at 6 decimals.

    Floats are routed through ``str`` so ``2.000123`` stays ``2000123``.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        quantized = amount.quantize(_MICRO, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise AmountError(f"Invalid amount: {value!r}") from e
    if not quantized.is_finite():
        raise AmountError(f"Invalid amount: {value!r}")
    micros = int(quantized * MICROS_PER_UNIT)
    if abs(micros) > MAX_MICROS:
        raise AmountError(f"Amount out of range: {value!r}")
    return micros


def from_micros(micros: int, places: int = 6) -> Decimal:
    """Render micro-units as a Decimal with the given number of places."""
    exponent = Decimal(1).scaleb(-places)
    return (Decimal(micros) / MICROS_PER_UNIT).quantize(exponent, rounding=ROUND_HALF_UP)


def round_half_up_to_cents(micros: int) -> int:
    """Round a non-negative micro amount to whole cents, half-up."""
    if micros < 0:
        raise AmountError("Amounts must not be negative")
    return (micros + MICROS_PER_CENT // 2) // MICROS_PER_CENT * MICROS_PER_CENT


def truncate_to_cents(micros: int) -> int:
    """Drop sub-cent micro-units. Never rounds up."""
    if micros < 0:
        raise AmountError("Amounts must not be negative")
    return micros // MICROS_PER_CENT * MICROS_PER_CENT


def cents_decimal(micros: int) -> Decimal:
    """Render a whole-cent micro amount as a 2-place Decimal."""
    return (Decimal(micros) / MICROS_PER_UNIT).quantize(_CENT, rounding=ROUND_DOWN)
