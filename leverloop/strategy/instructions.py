from __future__ import annotations

import hashlib
import struct

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from leverloop.margin import BankSnapshot, MarginAccountView, UnresolvedBankError

from .addresses import AddressBook, PoolAddresses

U64_MAX = (1 << 64) - 1


def anchor_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def encode_u64(*values: int) -> bytes:
    for value in values:
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"amount does not fit in u64: {value}")
    return struct.pack(f"<{len(values)}Q", *values)


def _writable(address: str, *, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=Pubkey.from_string(address), is_signer=signer, is_writable=True)


def _readonly(address: str) -> AccountMeta:
    return AccountMeta(pubkey=Pubkey.from_string(address), is_signer=False, is_writable=False)


class InstructionBuilder:
    """Anchor instructions for the lending, pool and farm programs."""

    def __init__(self, book: AddressBook) -> None:
        self._book = book

    @property
    def book(self) -> AddressBook:
        return self._book

    def _health_accounts(self, account: MarginAccountView) -> list[AccountMeta]:
        metas: list[AccountMeta] = []
        for bank, _ in account.active_balances():
            metas.append(_readonly(bank.address))
            metas.append(_readonly(bank.oracle_address))
        return metas

    def _lending_bank(self, account: MarginAccountView, mint: str) -> BankSnapshot:
        bank = account.bank_by_mint(mint)
        if bank is None:
            raise UnresolvedBankError(mint=mint)
        return bank

    def lending_deposit(self, account: MarginAccountView, *, mint: str, amount: int) -> Instruction:
        bank = self._lending_bank(account, mint)
        accounts = [
            _readonly(self._book.lending_group),
            _writable(account.address),
            _writable(self._book.wallet, signer=True),
            _writable(bank.address),
            _writable(self._book.token_account(mint)),
            _writable(bank.liquidity_vault),
            _readonly(self._book.programs.token),
            *self._health_accounts(account),
        ]
        return Instruction(
            Pubkey.from_string(self._book.programs.lending),
            anchor_discriminator("lending_account_deposit") + encode_u64(amount),
            accounts,
        )

    def lending_borrow(self, account: MarginAccountView, *, mint: str, amount: int) -> Instruction:
        bank = self._lending_bank(account, mint)
        accounts = [
            _readonly(self._book.lending_group),
            _writable(account.address),
            _writable(self._book.wallet, signer=True),
            _writable(bank.address),
            _writable(self._book.token_account(mint)),
            _writable(self._book.liquidity_vault_authority(bank.address)),
            _writable(bank.liquidity_vault),
            _readonly(self._book.programs.token),
            *self._health_accounts(account),
        ]
        return Instruction(
            Pubkey.from_string(self._book.programs.lending),
            anchor_discriminator("lending_account_borrow") + encode_u64(amount),
            accounts,
        )

    def pool_deposit(
        self,
        pool: PoolAddresses,
        *,
        minimum_pool_token_amount: int,
        token_a_amount: int,
        token_b_amount: int,
    ) -> Instruction:
        accounts = [
            _writable(pool.address),
            _writable(pool.lp_mint),
            _writable(self._book.token_account(pool.lp_mint)),
            _writable(pool.a_vault_lp),
            _writable(pool.b_vault_lp),
            _writable(pool.a_vault),
            _writable(pool.b_vault),
            _writable(pool.vault_a_lp_mint),
            _writable(pool.vault_b_lp_mint),
            _writable(pool.vault_a_vault),
            _writable(pool.vault_b_vault),
            _writable(self._book.token_account(pool.a_token_mint)),
            _writable(self._book.token_account(pool.b_token_mint)),
            _writable(self._book.wallet, signer=True),
            _readonly(self._book.programs.vault),
            _readonly(self._book.programs.token),
        ]
        return Instruction(
            Pubkey.from_string(self._book.programs.pool),
            anchor_discriminator("add_balance_liquidity")
            + encode_u64(minimum_pool_token_amount, token_a_amount, token_b_amount),
            accounts,
        )

    def farm_deposit(self, *, mint: str, amount: int) -> Instruction:
        farm = self._book.farm_for(mint)
        pool = self._book.pool_for(mint)
        accounts = [
            _writable(farm.address),
            _writable(farm.staking_vault),
            _writable(farm.user_account),
            _writable(self._book.wallet, signer=True),
            _writable(self._book.token_account(pool.lp_mint)),
            _readonly(self._book.programs.token),
        ]
        return Instruction(
            Pubkey.from_string(self._book.programs.farm),
            anchor_discriminator("deposit") + encode_u64(amount),
            accounts,
        )
