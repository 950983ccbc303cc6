"""Byte images of on-chain accounts for tests."""

from __future__ import annotations

import struct
from decimal import Decimal

from solders.pubkey import Pubkey

from leverloop.margin import BankSnapshot, RawBalance
from leverloop.margin.layouts import (
    _ACCOUNT_BALANCES,
    _ACCOUNT_GROUP,
    _BALANCE_ASSET_SHARES,
    _BALANCE_BANK,
    _BALANCE_LIABILITY_SHARES,
    _BANK_ASSET_SHARE_VALUE,
    _BANK_GROUP,
    _BANK_LIABILITY_SHARE_VALUE,
    _BANK_LIQUIDITY_VAULT,
    _BANK_MINT,
    _BANK_MINT_DECIMALS,
    _BANK_TOTAL_ASSET_SHARES,
    _BANK_TOTAL_LIABILITY_SHARES,
    _CONFIG_ASSET_WEIGHT_INIT,
    _CONFIG_LIABILITY_WEIGHT_INIT,
    _CONFIG_MAX_RATE,
    _CONFIG_OPTIMAL_UTILIZATION,
    _CONFIG_ORACLE_KEYS,
    _CONFIG_ORACLE_SETUP,
    _CONFIG_PLATEAU_RATE,
    _CONFIG_TOTAL_ASSET_VALUE_INIT_LIMIT,
    BALANCE_SIZE,
    BANK_ACCOUNT_SIZE,
    BANK_DISCRIMINATOR,
    DEFAULT_PUBKEY,
    MARGIN_ACCOUNT_AUTHORITY_OFFSET,
    MARGIN_ACCOUNT_DISCRIMINATOR,
    MARGIN_ACCOUNT_SIZE,
    MAX_BALANCES,
)
from leverloop.oracles import SwitchboardDecimal, SwitchboardResolutionMode
from leverloop.oracles.codec import (
    _PYTH_EMA_CONF_OFFSET,
    _PYTH_EMA_PRICE_OFFSET,
    _PYTH_HEADER,
    _PYTH_MIN_SIZE,
    _PYTH_TIMESTAMP_OFFSET,
    _PYTH_VALID_SLOT_OFFSET,
    _SB_MIN_ORACLE_RESULTS_OFFSET,
    _SB_NUM_SUCCESS_OFFSET,
    _SB_RESOLUTION_MODE_OFFSET,
    _SB_RESULT_OFFSET,
    _SB_ROUND_OPEN_TIMESTAMP_OFFSET,
    _SB_STD_DEVIATION_OFFSET,
    PYTH_ACCOUNT_TYPE_PRICE,
    PYTH_MAGIC,
    PYTH_VERSION,
    SWITCHBOARD_AGGREGATOR_DISCRIMINATOR,
    SWITCHBOARD_AGGREGATOR_SIZE,
)
from leverloop.oracles.fixed import to_i80f48_bits


def _write_i80f48(data: bytearray, offset: int, value: Decimal) -> None:
    data[offset : offset + 16] = to_i80f48_bits(value).to_bytes(16, "little", signed=True)


def _write_pubkey(data: bytearray, offset: int, address: str) -> None:
    data[offset : offset + 32] = bytes(Pubkey.from_string(address))


def encode_pyth_price_account(
    *,
    price_mantissa: int,
    confidence_mantissa: int,
    exponent: int,
    updated_at: int = 0,
    valid_slot: int = 0,
) -> bytes:
    data = bytearray(_PYTH_MIN_SIZE)
    _PYTH_HEADER.pack_into(
        data,
        0,
        PYTH_MAGIC,
        PYTH_VERSION,
        PYTH_ACCOUNT_TYPE_PRICE,
        _PYTH_MIN_SIZE,
        1,
        exponent,
        0,
        0,
    )
    struct.pack_into("<Q", data, _PYTH_VALID_SLOT_OFFSET, valid_slot)
    struct.pack_into("<q", data, _PYTH_EMA_PRICE_OFFSET, price_mantissa)
    struct.pack_into("<q", data, _PYTH_EMA_CONF_OFFSET, confidence_mantissa)
    struct.pack_into("<q", data, _PYTH_TIMESTAMP_OFFSET, updated_at)
    return bytes(data)


def encode_switchboard_aggregator(
    *,
    result: SwitchboardDecimal,
    std_deviation: SwitchboardDecimal,
    num_success: int,
    min_oracle_results: int,
    resolution_mode: SwitchboardResolutionMode = SwitchboardResolutionMode.ROUND,
    updated_at: int = 0,
) -> bytes:
    data = bytearray(SWITCHBOARD_AGGREGATOR_SIZE)
    data[:8] = SWITCHBOARD_AGGREGATOR_DISCRIMINATOR
    struct.pack_into("<I", data, _SB_MIN_ORACLE_RESULTS_OFFSET, min_oracle_results)
    struct.pack_into("<I", data, _SB_NUM_SUCCESS_OFFSET, num_success)
    struct.pack_into("<q", data, _SB_ROUND_OPEN_TIMESTAMP_OFFSET, updated_at)
    for offset, value in ((_SB_RESULT_OFFSET, result), (_SB_STD_DEVIATION_OFFSET, std_deviation)):
        data[offset : offset + 16] = value.mantissa.to_bytes(16, "little", signed=True)
        struct.pack_into("<I", data, offset + 16, value.scale)
    data[_SB_RESOLUTION_MODE_OFFSET] = int(resolution_mode)
    return bytes(data)


def encode_bank(bank: BankSnapshot) -> bytes:
    data = bytearray(BANK_ACCOUNT_SIZE)
    data[:8] = BANK_DISCRIMINATOR
    _write_pubkey(data, _BANK_MINT, bank.mint)
    data[_BANK_MINT_DECIMALS] = bank.mint_decimals
    _write_pubkey(data, _BANK_GROUP, bank.group or DEFAULT_PUBKEY)
    _write_i80f48(data, _BANK_ASSET_SHARE_VALUE, bank.asset_share_value)
    _write_i80f48(data, _BANK_LIABILITY_SHARE_VALUE, bank.liability_share_value)
    _write_pubkey(data, _BANK_LIQUIDITY_VAULT, bank.liquidity_vault)
    _write_i80f48(data, _BANK_TOTAL_LIABILITY_SHARES, bank.total_liability_shares)
    _write_i80f48(data, _BANK_TOTAL_ASSET_SHARES, bank.total_asset_shares)
    _write_i80f48(data, _CONFIG_ASSET_WEIGHT_INIT, bank.asset_weight_init)
    _write_i80f48(data, _CONFIG_LIABILITY_WEIGHT_INIT, bank.liability_weight_init)
    _write_i80f48(data, _CONFIG_OPTIMAL_UTILIZATION, bank.interest_rate.optimal_utilization)
    _write_i80f48(data, _CONFIG_PLATEAU_RATE, bank.interest_rate.plateau_rate)
    _write_i80f48(data, _CONFIG_MAX_RATE, bank.interest_rate.max_rate)
    data[_CONFIG_ORACLE_SETUP] = int(bank.oracle_setup)
    _write_pubkey(data, _CONFIG_ORACLE_KEYS, bank.oracle_address)
    struct.pack_into("<Q", data, _CONFIG_TOTAL_ASSET_VALUE_INIT_LIMIT, bank.total_asset_value_init_limit)
    return bytes(data)


def encode_margin_account(*, group: str, authority: str, balances: list[RawBalance]) -> bytes:
    if len(balances) > MAX_BALANCES:
        raise ValueError(f"a margin account holds at most {MAX_BALANCES} balances")
    data = bytearray(MARGIN_ACCOUNT_SIZE)
    data[:8] = MARGIN_ACCOUNT_DISCRIMINATOR
    _write_pubkey(data, _ACCOUNT_GROUP, group)
    _write_pubkey(data, MARGIN_ACCOUNT_AUTHORITY_OFFSET, authority)
    for index, balance in enumerate(balances):
        offset = _ACCOUNT_BALANCES + index * BALANCE_SIZE
        data[offset] = 1 if balance.active else 0
        _write_pubkey(data, offset + _BALANCE_BANK, balance.bank_address)
        _write_i80f48(data, offset + _BALANCE_ASSET_SHARES, balance.asset_shares)
        _write_i80f48(data, offset + _BALANCE_LIABILITY_SHARES, balance.liability_shares)
    return bytes(data)
