from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, Mapping

from leverloop.oracles import MissingOracleError, OracleSetup, PriceFeed, ensure_fresh
from leverloop.oracles.fixed import ZERO, fixed_context, to_native_units

from .layouts import DEFAULT_PUBKEY, RawMarginAccount
from .risk import weighted_amounts
from .types import AccountBalance, BankSnapshot, UnresolvedBankError


class MarginAccountView:
    """Read-side operations shared by confirmed and projected account state."""

    def __init__(
        self,
        *,
        address: str,
        banks: Iterable[BankSnapshot],
        balances: Mapping[str, AccountBalance],
    ) -> None:
        self._address = address
        self._banks: dict[str, BankSnapshot] = {bank.address: bank for bank in banks}
        self._banks_by_mint: dict[str, BankSnapshot] = {}
        for bank in self._banks.values():
            self._banks_by_mint.setdefault(bank.mint, bank)
        self._balances: dict[str, AccountBalance] = dict(balances)

        for balance in self._balances.values():
            if balance.active and balance.bank_address not in self._banks:
                raise UnresolvedBankError(bank=balance.bank_address)

    @property
    def address(self) -> str:
        return self._address

    @property
    def banks(self) -> Mapping[str, BankSnapshot]:
        return MappingProxyType(self._banks)

    @property
    def balances(self) -> Mapping[str, AccountBalance]:
        return MappingProxyType(self._balances)

    def bank_by_mint(self, mint: str) -> BankSnapshot | None:
        return self._banks_by_mint.get(mint)

    def bank_by_address(self, address: str) -> BankSnapshot | None:
        return self._banks.get(address)

    def balance_by_mint(self, mint: str) -> AccountBalance | None:
        return self._balances.get(mint)

    def active_balances(self) -> list[tuple[BankSnapshot, AccountBalance]]:
        return [
            (self._banks[balance.bank_address], balance)
            for balance in self._balances.values()
            if balance.active
        ]

    def oracle_requests(self, extra_mints: Iterable[str] = ()) -> list[tuple[OracleSetup, str]]:
        """Oracles a risk pass needs: every active balance plus ``extra_mints``."""
        banks = [bank for bank, _ in self.active_balances()]
        for mint in extra_mints:
            bank = self.bank_by_mint(mint)
            if bank is None:
                raise UnresolvedBankError(mint=mint)
            banks.append(bank)
        return list(dict.fromkeys(bank.oracle_request for bank in banks))

    def weighted_totals(
        self,
        prices: Mapping[str, PriceFeed],
        *,
        now: int | None = None,
        max_age_seconds: int = 0,
    ) -> tuple[Decimal, Decimal]:
        total_assets = ZERO
        total_liabilities = ZERO

        for bank, balance in self.active_balances():
            feed = prices.get(bank.oracle_address)
            if feed is None:
                raise MissingOracleError(setup=bank.oracle_setup, address=bank.oracle_address)
            if now is not None:
                ensure_fresh(feed, now=now, max_age_seconds=max_age_seconds)

            assets, liabilities = weighted_amounts(balance, bank, feed)
            with fixed_context():
                total_assets = total_assets + assets
                total_liabilities = total_liabilities + liabilities

        return total_assets, total_liabilities

    def free_collateral(
        self,
        prices: Mapping[str, PriceFeed],
        *,
        now: int | None = None,
        max_age_seconds: int = 0,
    ) -> Decimal:
        assets, liabilities = self.weighted_totals(prices, now=now, max_age_seconds=max_age_seconds)
        with fixed_context():
            return max(ZERO, assets - liabilities)

    def deposited_amount(self, mint: str) -> int:
        balance = self.balance_by_mint(mint)
        if balance is None:
            return 0
        bank = self.bank_by_address(balance.bank_address)
        if bank is None:
            raise UnresolvedBankError(bank=balance.bank_address)
        with fixed_context():
            return to_native_units(balance.asset_shares * bank.asset_share_value)


class MarginAccountState(MarginAccountView):
    """Margin account exactly as last read from chain."""

    @classmethod
    def from_chain(
        cls,
        *,
        address: str,
        account: RawMarginAccount,
        banks: Iterable[BankSnapshot],
    ) -> MarginAccountState:
        bank_set = list(banks)
        by_address = {bank.address: bank for bank in bank_set}

        balances: dict[str, AccountBalance] = {}
        for raw in account.balances:
            if not raw.active and raw.bank_address == DEFAULT_PUBKEY:
                continue
            bank = by_address.get(raw.bank_address)
            if bank is None:
                if raw.active:
                    raise UnresolvedBankError(bank=raw.bank_address)
                continue
            balances[bank.mint] = AccountBalance.from_bank(
                bank,
                active=raw.active,
                asset_shares=raw.asset_shares,
                liability_shares=raw.liability_shares,
            )

        return cls(address=address, banks=bank_set, balances=balances)

    def projected(self) -> ProjectedMarginAccount:
        return ProjectedMarginAccount(
            address=self._address,
            banks=self._banks.values(),
            balances=self._balances,
        )


class ProjectedMarginAccount(MarginAccountView):
    """Optimistic copy of a confirmed account.

    ``deposit`` and ``borrow`` book share changes for instructions that have
    not landed yet. Refresh from chain before trusting it again.
    """

    def _bank_for_mint(self, mint: str) -> BankSnapshot:
        bank = self.bank_by_mint(mint)
        if bank is None:
            raise UnresolvedBankError(mint=mint)
        return bank

    def deposit(self, amount: Decimal, mint: str) -> AccountBalance:
        bank = self._bank_for_mint(mint)
        with fixed_context():
            shares = Decimal(amount) / bank.asset_share_value

        current = self._balances.get(mint)
        if current is None:
            updated = AccountBalance.from_bank(bank, active=True, asset_shares=shares)
        else:
            with fixed_context():
                updated = replace(current, active=True, asset_shares=current.asset_shares + shares)
        self._balances[mint] = updated
        return updated

    def borrow(self, amount: Decimal, mint: str) -> AccountBalance:
        bank = self._bank_for_mint(mint)
        with fixed_context():
            shares = Decimal(amount) / bank.liability_share_value

        current = self._balances.get(mint)
        if current is None:
            updated = AccountBalance.from_bank(bank, active=True, liability_shares=shares)
        else:
            with fixed_context():
                updated = replace(current, active=True, liability_shares=current.liability_shares + shares)
        self._balances[mint] = updated
        return updated
