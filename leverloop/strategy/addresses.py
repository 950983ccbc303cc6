from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from solders.pubkey import Pubkey

SPL_TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
LENDING_PROGRAM_ID = "MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA"
POOL_PROGRAM_ID = "Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB"
VAULT_PROGRAM_ID = "24Uqj9JCLxUeoC3hGfh5W3s9FM9uCHDS2SG3LYwBpyTi"
FARM_PROGRAM_ID = "FarmuwXPWXvefWUeqFAa5w6rifLkq5X6E8bimYvrhCB1"

LENDING_GROUP = "4qp6Fx6tnZkY5Wropq9wUYgtFxXKwE6viZxFHg3rdAG8"
BSOL_MINT = "bSo13r4TkiE4KumL71LsHTPpL2euBYLFx6h9HP3piy1"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"
UXD_MINT = "7kbnvuGBxxj8AG9qp8Scn56muWGaRaFqxg1FsRp3PaFT"

LIQUIDITY_VAULT_AUTHORITY_SEED = b"liquidity_vault_auth"
FARM_STAKING_SEED = b"staking"


class AddressBookError(ValueError):
    pass


def _pubkey(value: str | Pubkey) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


def associated_token_address(
    wallet: str | Pubkey,
    mint: str | Pubkey,
    *,
    token_program: str = SPL_TOKEN_PROGRAM_ID,
    associated_token_program: str = ASSOCIATED_TOKEN_PROGRAM_ID,
) -> str:
    address, _ = Pubkey.find_program_address(
        [bytes(_pubkey(wallet)), bytes(_pubkey(token_program)), bytes(_pubkey(mint))],
        _pubkey(associated_token_program),
    )
    return str(address)


@dataclass(slots=True, frozen=True)
class ProgramIds:
    token: str = SPL_TOKEN_PROGRAM_ID
    associated_token: str = ASSOCIATED_TOKEN_PROGRAM_ID
    lending: str = LENDING_PROGRAM_ID
    pool: str = POOL_PROGRAM_ID
    vault: str = VAULT_PROGRAM_ID
    farm: str = FARM_PROGRAM_ID


@dataclass(slots=True, frozen=True)
class PoolAddresses:
    address: str
    lp_mint: str
    a_vault: str
    b_vault: str
    a_vault_lp: str
    b_vault_lp: str
    vault_a_vault: str
    vault_b_vault: str
    vault_a_lp_mint: str
    vault_b_lp_mint: str
    a_token_mint: str
    b_token_mint: str

    def get_token_for_deposit(self, amount: int, mint: str) -> tuple[int, int]:
        if mint == self.a_token_mint:
            return amount, 0
        return 0, amount


@dataclass(slots=True, frozen=True)
class FarmAddresses:
    address: str
    staking_vault: str
    user_account: str


@dataclass(slots=True, frozen=True)
class AddressBook:
    """Static addresses the strategy needs, keyed the way instructions use them.

    Pools and farms are keyed by the mint that is supplied to them. Wallet
    token accounts are derived with the associated token account rule.
    """

    wallet: str
    programs: ProgramIds = field(default_factory=ProgramIds)
    lending_group: str = LENDING_GROUP
    collateral_mint: str = BSOL_MINT
    quote_mint: str = USDC_MINT
    borrow_mints: tuple[str, ...] = (USDC_MINT, USDT_MINT, UXD_MINT)
    pools: Mapping[str, PoolAddresses] = field(default_factory=dict)
    farms: Mapping[str, FarmAddresses] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, wallet: str) -> AddressBook:
        programs = ProgramIds(**dict(data.get("programs") or {}))

        pools: dict[str, PoolAddresses] = {}
        for raw_pool in data.get("pools") or []:
            try:
                input_mint = str(raw_pool["input_mint"])
                pool_fields = {key: str(value) for key, value in raw_pool.items() if key != "input_mint"}
                pools[input_mint] = PoolAddresses(**pool_fields)
            except (KeyError, TypeError) as error:
                raise AddressBookError(f"invalid pool entry {raw_pool}: {error}") from error

        farms: dict[str, FarmAddresses] = {}
        for raw_farm in data.get("farms") or []:
            try:
                input_mint = str(raw_farm["input_mint"])
                farm_address = str(raw_farm["address"])
            except (KeyError, TypeError) as error:
                raise AddressBookError(f"invalid farm entry {raw_farm}: {error}") from error
            farms[input_mint] = derive_farm_addresses(wallet, farm_address, farm_program=programs.farm)

        borrow_mints = tuple(str(mint) for mint in data.get("borrow_mints") or (USDC_MINT, USDT_MINT, UXD_MINT))
        if not borrow_mints:
            raise AddressBookError("borrow_mints must not be empty")

        return cls(
            wallet=wallet,
            programs=programs,
            lending_group=str(data.get("lending_group") or LENDING_GROUP),
            collateral_mint=str(data.get("collateral_mint") or BSOL_MINT),
            quote_mint=str(data.get("quote_mint") or USDC_MINT),
            borrow_mints=borrow_mints,
            pools=pools,
            farms=farms,
        )

    @classmethod
    def load(cls, path: str | Path, *, wallet: str) -> AddressBook:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise AddressBookError(f"failed to read address book {path}: {error}") from error
        if not isinstance(raw, dict):
            raise AddressBookError(f"address book {path} must be a JSON object")
        return cls.from_dict(raw, wallet=wallet)

    def token_account(self, mint: str) -> str:
        return associated_token_address(
            self.wallet,
            mint,
            token_program=self.programs.token,
            associated_token_program=self.programs.associated_token,
        )

    def liquidity_vault_authority(self, bank_address: str) -> str:
        address, _ = Pubkey.find_program_address(
            [LIQUIDITY_VAULT_AUTHORITY_SEED, bytes(_pubkey(bank_address))],
            _pubkey(self.programs.lending),
        )
        return str(address)

    def pool_for(self, mint: str) -> PoolAddresses:
        pool = self.pools.get(mint)
        if pool is None:
            raise AddressBookError(f"no pool configured for mint {mint}")
        return pool

    def farm_for(self, mint: str) -> FarmAddresses:
        farm = self.farms.get(mint)
        if farm is None:
            raise AddressBookError(f"no farm configured for mint {mint}")
        return farm


def derive_farm_addresses(wallet: str, farm_address: str, *, farm_program: str = FARM_PROGRAM_ID) -> FarmAddresses:
    program = _pubkey(farm_program)
    farm = _pubkey(farm_address)
    user_account, _ = Pubkey.find_program_address([bytes(_pubkey(wallet)), bytes(farm)], program)
    staking_vault, _ = Pubkey.find_program_address([FARM_STAKING_SEED, bytes(farm)], program)
    return FarmAddresses(
        address=farm_address,
        staking_vault=str(staking_vault),
        user_account=str(user_account),
    )
