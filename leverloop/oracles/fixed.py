from __future__ import annotations

from decimal import (
    ROUND_DOWN,
    Context,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    localcontext,
)
from typing import ContextManager

FixedPoint = Decimal

I80F48_FRACTIONAL_BITS = 48
I80F48_ONE_BITS = 1 << I80F48_FRACTIONAL_BITS
I80F48_MIN_BITS = -(1 << 127)
I80F48_MAX_BITS = (1 << 127) - 1

# Large enough for a full i128 mantissa and 48 fractional binary digits.
FIXED_CONTEXT = Context(
    prec=60,
    rounding=ROUND_DOWN,
    traps=[InvalidOperation, DivisionByZero, Overflow],
)

EXP_10: tuple[int, ...] = tuple(10**exponent for exponent in range(40))
EXP_10_DECIMAL: tuple[Decimal, ...] = tuple(Decimal(value) for value in EXP_10)

ZERO = Decimal(0)
ONE = Decimal(1)

MICRO_USD_EXPONENT = 6


def fixed_context() -> ContextManager[Context]:
    return localcontext(FIXED_CONTEXT)


def scale_by_power_of_ten(value: Decimal | int, exponent: int) -> Decimal:
    """Return ``value * 10**exponent`` using the exact scaling table."""
    magnitude = abs(exponent)
    if magnitude >= len(EXP_10_DECIMAL):
        raise ValueError(f"exponent out of supported range: {exponent}")

    factor = EXP_10_DECIMAL[magnitude]
    with fixed_context():
        number = Decimal(value)
        if exponent == 0:
            return +number
        if exponent < 0:
            return number / factor
        return number * factor


def from_i80f48_bits(bits: int) -> Decimal:
    if not I80F48_MIN_BITS <= bits <= I80F48_MAX_BITS:
        raise ValueError(f"value does not fit a 128-bit fixed point word: {bits}")
    with fixed_context():
        return Decimal(bits) / Decimal(I80F48_ONE_BITS)


def to_i80f48_bits(value: Decimal | int) -> int:
    with fixed_context():
        scaled = Decimal(value) * Decimal(I80F48_ONE_BITS)
    bits = int(scaled.to_integral_value(rounding=ROUND_DOWN))
    if not I80F48_MIN_BITS <= bits <= I80F48_MAX_BITS:
        raise ValueError(f"value does not fit a 128-bit fixed point word: {value}")
    return bits


def to_native_units(value: Decimal) -> int:
    """Truncate a token amount to whole native units (never rounds up)."""
    if value <= 0:
        return 0
    return int(value.to_integral_value(rounding=ROUND_DOWN))
