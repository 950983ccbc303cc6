from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from leverloop.oracles import OracleSetup
from leverloop.oracles.fixed import ZERO


class AccountLayoutError(ValueError):
    pass


class UnresolvedBankError(LookupError):
    def __init__(self, *, bank: str | None = None, mint: str | None = None) -> None:
        if bank is not None:
            message = f"balance references bank {bank} which is not in the loaded bank set"
        else:
            message = f"no bank loaded for mint {mint}"
        super().__init__(message)
        self.bank = bank
        self.mint = mint


@dataclass(slots=True, frozen=True)
class InterestRateCurve:
    optimal_utilization: Decimal
    plateau_rate: Decimal
    max_rate: Decimal


@dataclass(slots=True, frozen=True)
class BankSnapshot:
    address: str
    mint: str
    mint_decimals: int
    oracle_setup: OracleSetup
    oracle_address: str
    liquidity_vault: str
    asset_weight_init: Decimal
    liability_weight_init: Decimal
    asset_share_value: Decimal
    liability_share_value: Decimal
    total_asset_shares: Decimal
    total_liability_shares: Decimal
    # USD, 0 means uncapped.
    total_asset_value_init_limit: int
    interest_rate: InterestRateCurve
    group: str = ""

    @property
    def oracle_request(self) -> tuple[OracleSetup, str]:
        return self.oracle_setup, self.oracle_address


@dataclass(slots=True, frozen=True)
class AccountBalance:
    active: bool
    bank_address: str
    asset_shares: Decimal
    liability_shares: Decimal
    asset_weight: Decimal
    liability_weight: Decimal

    @classmethod
    def from_bank(
        cls,
        bank: BankSnapshot,
        *,
        active: bool,
        asset_shares: Decimal = ZERO,
        liability_shares: Decimal = ZERO,
    ) -> AccountBalance:
        return cls(
            active=active,
            bank_address=bank.address,
            asset_shares=asset_shares,
            liability_shares=liability_shares,
            asset_weight=bank.asset_weight_init,
            liability_weight=bank.liability_weight_init,
        )
