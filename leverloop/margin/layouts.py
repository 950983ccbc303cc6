from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from solders.pubkey import Pubkey

from leverloop.common import AccountDataError, decode_account_data
from leverloop.oracles import OracleSetup
from leverloop.oracles.fixed import EXP_10, from_i80f48_bits

from .types import AccountLayoutError, BankSnapshot, InterestRateCurve

BANK_DISCRIMINATOR = hashlib.sha256(b"account:Bank").digest()[:8]
MARGIN_ACCOUNT_DISCRIMINATOR = hashlib.sha256(b"account:MarginfiAccount").digest()[:8]

BANK_ACCOUNT_SIZE = 1864
_BANK_MINT = 8
_BANK_MINT_DECIMALS = 40
_BANK_GROUP = 41
_BANK_ASSET_SHARE_VALUE = 80
_BANK_LIABILITY_SHARE_VALUE = 96
_BANK_LIQUIDITY_VAULT = 112
_BANK_TOTAL_LIABILITY_SHARES = 256
_BANK_TOTAL_ASSET_SHARES = 272
_BANK_CONFIG = 296
_CONFIG_ASSET_WEIGHT_INIT = _BANK_CONFIG
_CONFIG_LIABILITY_WEIGHT_INIT = _BANK_CONFIG + 32
_CONFIG_OPTIMAL_UTILIZATION = _BANK_CONFIG + 72
_CONFIG_PLATEAU_RATE = _BANK_CONFIG + 88
_CONFIG_MAX_RATE = _BANK_CONFIG + 104
_CONFIG_ORACLE_SETUP = _BANK_CONFIG + 313
_CONFIG_ORACLE_KEYS = _BANK_CONFIG + 314
_CONFIG_TOTAL_ASSET_VALUE_INIT_LIMIT = _BANK_CONFIG + 496
_BANK_MIN_SIZE = _CONFIG_TOTAL_ASSET_VALUE_INIT_LIMIT + 8

# Memcmp offset of the group key, used to filter program accounts.
BANK_GROUP_OFFSET = _BANK_GROUP

MARGIN_ACCOUNT_SIZE = 2312
MARGIN_ACCOUNT_AUTHORITY_OFFSET = 40
_ACCOUNT_GROUP = 8
_ACCOUNT_BALANCES = 72
MAX_BALANCES = 16
BALANCE_SIZE = 104
_BALANCE_BANK = 1
_BALANCE_ASSET_SHARES = 40
_BALANCE_LIABILITY_SHARES = 56
_MARGIN_ACCOUNT_MIN_SIZE = _ACCOUNT_BALANCES + MAX_BALANCES * BALANCE_SIZE

DEFAULT_PUBKEY = str(Pubkey.default())


@dataclass(slots=True, frozen=True)
class RawBalance:
    active: bool
    bank_address: str
    asset_shares: Decimal
    liability_shares: Decimal


@dataclass(slots=True, frozen=True)
class RawMarginAccount:
    group: str
    authority: str
    balances: tuple[RawBalance, ...]


def _read_pubkey(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset : offset + 32]))


def _read_i80f48(data: bytes, offset: int) -> Decimal:
    return from_i80f48_bits(int.from_bytes(data[offset : offset + 16], "little", signed=True))


def _account_bytes(raw: Any, *, discriminator: bytes, min_size: int, kind: str) -> bytes:
    try:
        data = decode_account_data(raw)
    except AccountDataError as error:
        raise AccountLayoutError(str(error)) from error
    if len(data) < min_size:
        raise AccountLayoutError(f"{kind} account too short: {len(data)} bytes")
    if data[:8] != discriminator:
        raise AccountLayoutError(f"account is not a {kind} account")
    return data


def decode_bank(address: str, raw: Any) -> BankSnapshot:
    data = _account_bytes(raw, discriminator=BANK_DISCRIMINATOR, min_size=_BANK_MIN_SIZE, kind="bank")

    raw_setup = data[_CONFIG_ORACLE_SETUP]
    try:
        oracle_setup = OracleSetup(raw_setup)
    except ValueError as error:
        raise AccountLayoutError(f"bank {address} uses an unsupported oracle setup: {raw_setup}") from error
    mint_decimals = data[_BANK_MINT_DECIMALS]
    if mint_decimals >= len(EXP_10):
        raise AccountLayoutError(f"bank {address} has unsupported mint decimals: {mint_decimals}")

    return BankSnapshot(
        address=address,
        mint=_read_pubkey(data, _BANK_MINT),
        mint_decimals=mint_decimals,
        oracle_setup=oracle_setup,
        oracle_address=_read_pubkey(data, _CONFIG_ORACLE_KEYS),
        liquidity_vault=_read_pubkey(data, _BANK_LIQUIDITY_VAULT),
        asset_weight_init=_read_i80f48(data, _CONFIG_ASSET_WEIGHT_INIT),
        liability_weight_init=_read_i80f48(data, _CONFIG_LIABILITY_WEIGHT_INIT),
        asset_share_value=_read_i80f48(data, _BANK_ASSET_SHARE_VALUE),
        liability_share_value=_read_i80f48(data, _BANK_LIABILITY_SHARE_VALUE),
        total_asset_shares=_read_i80f48(data, _BANK_TOTAL_ASSET_SHARES),
        total_liability_shares=_read_i80f48(data, _BANK_TOTAL_LIABILITY_SHARES),
        total_asset_value_init_limit=struct.unpack_from("<Q", data, _CONFIG_TOTAL_ASSET_VALUE_INIT_LIMIT)[0],
        interest_rate=InterestRateCurve(
            optimal_utilization=_read_i80f48(data, _CONFIG_OPTIMAL_UTILIZATION),
            plateau_rate=_read_i80f48(data, _CONFIG_PLATEAU_RATE),
            max_rate=_read_i80f48(data, _CONFIG_MAX_RATE),
        ),
        group=_read_pubkey(data, _BANK_GROUP),
    )


def decode_margin_account(raw: Any) -> RawMarginAccount:
    data = _account_bytes(
        raw,
        discriminator=MARGIN_ACCOUNT_DISCRIMINATOR,
        min_size=_MARGIN_ACCOUNT_MIN_SIZE,
        kind="margin",
    )

    balances: list[RawBalance] = []
    for index in range(MAX_BALANCES):
        offset = _ACCOUNT_BALANCES + index * BALANCE_SIZE
        balances.append(
            RawBalance(
                active=data[offset] != 0,
                bank_address=_read_pubkey(data, offset + _BALANCE_BANK),
                asset_shares=_read_i80f48(data, offset + _BALANCE_ASSET_SHARES),
                liability_shares=_read_i80f48(data, offset + _BALANCE_LIABILITY_SHARES),
            )
        )

    return RawMarginAccount(
        group=_read_pubkey(data, _ACCOUNT_GROUP),
        authority=_read_pubkey(data, MARGIN_ACCOUNT_AUTHORITY_OFFSET),
        balances=tuple(balances),
    )
