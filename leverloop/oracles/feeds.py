from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Union

from .fixed import (
    EXP_10,
    FIXED_CONTEXT,
    ZERO,
    fixed_context,
    scale_by_power_of_ten,
)

# Conservatism multiplier applied to every oracle's reported uncertainty.
CONF_INTERVAL_MULTIPLE = Decimal("2.12")

SWITCHBOARD_MAX_SCALE = 20


class OracleSetup(IntEnum):
    NONE = 0
    PYTH_EMA = 1
    SWITCHBOARD_V2 = 2


class SwitchboardResolutionMode(IntEnum):
    ROUND = 0
    SLIDING = 1


class OracleDecodeError(ValueError):
    pass


class OracleValidationError(ValueError):
    pass


class NegativeConfidenceError(OracleValidationError):
    def __init__(self, confidence: Decimal) -> None:
        super().__init__(f"oracle reported a negative confidence interval: {confidence}")
        self.confidence = confidence


class StaleOracleError(OracleValidationError):
    def __init__(self, *, updated_at: int, now: int, max_age_seconds: int) -> None:
        super().__init__(
            f"oracle price is stale: age={now - updated_at}s max_age={max_age_seconds}s"
        )
        self.updated_at = updated_at
        self.now = now
        self.max_age_seconds = max_age_seconds


@dataclass(slots=True, frozen=True)
class SwitchboardDecimal:
    mantissa: int
    scale: int

    def fit_scale(self, scale: int) -> SwitchboardDecimal:
        if self.scale <= scale:
            return self
        scale_diff = self.scale - scale
        if scale_diff >= len(EXP_10):
            # Larger than any i128 mantissa.
            return SwitchboardDecimal(mantissa=0, scale=scale)
        # Truncates trailing precision, same as an integer division on chain.
        divisor = EXP_10[scale_diff]
        quotient = abs(self.mantissa) // divisor
        return SwitchboardDecimal(mantissa=quotient if self.mantissa >= 0 else -quotient, scale=scale)

    def to_fixed(self) -> Decimal:
        fitted = self.fit_scale(SWITCHBOARD_MAX_SCALE)
        return scale_by_power_of_ten(fitted.mantissa, -fitted.scale)


def _checked_confidence(confidence: Decimal) -> Decimal:
    if confidence < ZERO:
        raise NegativeConfidenceError(confidence)
    return confidence


def _range_around(price: Decimal, confidence: Decimal) -> tuple[Decimal, Decimal]:
    with fixed_context():
        return price - confidence, price + confidence


@dataclass(slots=True, frozen=True)
class PythPriceFeed:
    price_mantissa: int
    confidence_mantissa: int
    exponent: int
    updated_at: int
    last_update_slot: int

    @property
    def setup(self) -> OracleSetup:
        return OracleSetup.PYTH_EMA

    def price(self) -> Decimal:
        try:
            return scale_by_power_of_ten(self.price_mantissa, self.exponent)
        except ValueError as error:
            raise OracleDecodeError(f"unable to normalize pyth price: {error}") from error

    def confidence_interval(self) -> Decimal:
        try:
            normalized = scale_by_power_of_ten(self.confidence_mantissa, self.exponent)
        except ValueError as error:
            raise OracleDecodeError(f"unable to normalize pyth confidence: {error}") from error
        return _checked_confidence(FIXED_CONTEXT.multiply(normalized, CONF_INTERVAL_MULTIPLE))

    def price_range(self) -> tuple[Decimal, Decimal]:
        return _range_around(self.price(), self.confidence_interval())


@dataclass(slots=True, frozen=True)
class SwitchboardPriceFeed:
    result: SwitchboardDecimal
    std_deviation: SwitchboardDecimal
    num_success: int
    min_oracle_results: int
    resolution_mode: SwitchboardResolutionMode
    updated_at: int

    @property
    def setup(self) -> OracleSetup:
        return OracleSetup.SWITCHBOARD_V2

    def confirmed_result(self) -> SwitchboardDecimal:
        if self.resolution_mode == SwitchboardResolutionMode.SLIDING:
            return self.result
        if self.min_oracle_results > self.num_success:
            raise OracleValidationError(
                "switchboard round has too few oracle responses: "
                f"num_success={self.num_success} min_oracle_results={self.min_oracle_results}"
            )
        return self.result

    def price(self) -> Decimal:
        return self.confirmed_result().to_fixed()

    def confidence_interval(self) -> Decimal:
        deviation = self.std_deviation.to_fixed()
        return _checked_confidence(FIXED_CONTEXT.multiply(deviation, CONF_INTERVAL_MULTIPLE))

    def price_range(self) -> tuple[Decimal, Decimal]:
        return _range_around(self.price(), self.confidence_interval())


PriceFeed = Union[PythPriceFeed, SwitchboardPriceFeed]


def ensure_fresh(feed: PriceFeed, *, now: int, max_age_seconds: int) -> PriceFeed:
    if max_age_seconds <= 0:
        return feed
    if now - feed.updated_at > max_age_seconds:
        raise StaleOracleError(updated_at=feed.updated_at, now=now, max_age_seconds=max_age_seconds)
    return feed
