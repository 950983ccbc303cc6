"""Worst-case collateral valuation, deposit caps and the borrow-rate curve.

Everything here is pure: inputs are frozen snapshots, outputs are ``Decimal``
values computed under the shared fixed-point context.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Protocol

from leverloop.oracles import PriceFeed
from leverloop.oracles.fixed import (
    EXP_10_DECIMAL,
    MICRO_USD_EXPONENT,
    ONE,
    ZERO,
    fixed_context,
    scale_by_power_of_ten,
)

from .types import AccountBalance, BankSnapshot, UnresolvedBankError


class BankLookup(Protocol):
    def bank_by_mint(self, mint: str) -> BankSnapshot | None: ...


def _scaled_value(amount: Decimal, weight: Decimal | None, price: Decimal, mint_decimals: int) -> Decimal:
    weighted = amount * weight if weight is not None else amount
    return weighted * price / EXP_10_DECIMAL[mint_decimals]


def weighted_amounts(
    balance: AccountBalance,
    bank: BankSnapshot,
    feed: PriceFeed,
) -> tuple[Decimal, Decimal]:
    """Return ``(assets, liabilities)`` in micro-USD for one balance.

    Assets are valued at the low end of the oracle range and liabilities at
    the high end, each scaled by the weight captured on the balance.
    """
    if not balance.active:
        return ZERO, ZERO

    low_price, high_price = feed.price_range()
    # A confidence wider than the price must not turn assets negative.
    low_price = max(ZERO, low_price)
    with fixed_context():
        asset_amount = balance.asset_shares * bank.asset_share_value
        liability_amount = balance.liability_shares * bank.liability_share_value

        assets = _scaled_value(asset_amount, balance.asset_weight, low_price, bank.mint_decimals)
        liabilities = _scaled_value(liability_amount, balance.liability_weight, high_price, bank.mint_decimals)

        if bank.total_asset_value_init_limit != 0:
            bank_value = _scaled_value(
                bank.total_asset_shares * bank.asset_share_value,
                None,
                low_price,
                bank.mint_decimals,
            )
            cap = Decimal(bank.total_asset_value_init_limit)
            if bank_value > cap:
                assets = assets * (cap / bank_value)

    return (
        scale_by_power_of_ten(assets, MICRO_USD_EXPONENT),
        scale_by_power_of_ten(liabilities, MICRO_USD_EXPONENT),
    )


def max_deposit_amount(bank: BankSnapshot, requested: Decimal) -> Decimal:
    if bank.total_asset_value_init_limit == 0:
        return requested

    with fixed_context():
        cap = Decimal(bank.total_asset_value_init_limit) * EXP_10_DECIMAL[bank.mint_decimals]
        deposited = bank.asset_share_value * bank.total_asset_shares
        if cap <= deposited:
            return ZERO
        return min(requested, cap - deposited)


def utilization(bank: BankSnapshot) -> Decimal:
    if bank.total_liability_shares == 0:
        return ZERO
    if bank.total_asset_shares <= 0:
        return ONE
    with fixed_context():
        return bank.total_liability_shares / bank.total_asset_shares


def borrow_rate(bank: BankSnapshot) -> Decimal:
    current = utilization(bank)
    if current == 0:
        return ZERO

    curve = bank.interest_rate
    with fixed_context():
        if curve.optimal_utilization > 0 and current <= curve.optimal_utilization:
            return current / curve.optimal_utilization * curve.plateau_rate

        remaining = ONE - curve.optimal_utilization
        if remaining <= 0:
            return curve.max_rate
        excess = current - curve.optimal_utilization
        return (excess / remaining) * (curve.max_rate - curve.plateau_rate) + curve.plateau_rate


def best_borrow_target(account: BankLookup, candidate_mints: Iterable[str]) -> tuple[str, BankSnapshot]:
    best: tuple[str, BankSnapshot] | None = None
    lowest_rate: Decimal | None = None

    for mint in candidate_mints:
        bank = account.bank_by_mint(mint)
        if bank is None:
            raise UnresolvedBankError(mint=mint)
        rate = borrow_rate(bank)
        if lowest_rate is None or rate < lowest_rate:
            best = (mint, bank)
            lowest_rate = rate

    if best is None:
        raise ValueError("at least one borrow candidate is required")
    return best


def usd_to_borrow_amount(bank: BankSnapshot, feed: PriceFeed, micro_usd: Decimal) -> Decimal:
    """Native token units whose weighted liability value equals ``micro_usd``."""
    if micro_usd <= 0:
        return ZERO

    _, high_price = feed.price_range()
    if high_price <= 0 or bank.liability_weight_init <= 0:
        raise ValueError(f"bank {bank.address} cannot be priced for borrowing")

    usd = scale_by_power_of_ten(micro_usd, -MICRO_USD_EXPONENT)
    with fixed_context():
        return usd * EXP_10_DECIMAL[bank.mint_decimals] / (high_price * bank.liability_weight_init)
