from __future__ import annotations

import hashlib
import struct
from typing import Any

from leverloop.common import AccountDataError, decode_account_data

from .feeds import (
    OracleDecodeError,
    OracleSetup,
    PriceFeed,
    PythPriceFeed,
    SwitchboardDecimal,
    SwitchboardPriceFeed,
    SwitchboardResolutionMode,
)

PYTH_MAGIC = 0xA1B2C3D4
PYTH_VERSION = 2
PYTH_ACCOUNT_TYPE_PRICE = 3
PYTH_MAX_EXPONENT = 39

_PYTH_HEADER = struct.Struct("<IIIIIiII")
_PYTH_EXPONENT_OFFSET = 20
_PYTH_VALID_SLOT_OFFSET = 40
_PYTH_EMA_PRICE_OFFSET = 48
_PYTH_EMA_CONF_OFFSET = 72
_PYTH_TIMESTAMP_OFFSET = 96
_PYTH_MIN_SIZE = 240

SWITCHBOARD_AGGREGATOR_DISCRIMINATOR = hashlib.sha256(b"account:AggregatorAccountData").digest()[:8]
_SB_MIN_ORACLE_RESULTS_OFFSET = 236
_SB_LATEST_ROUND_OFFSET = 341
_SB_NUM_SUCCESS_OFFSET = _SB_LATEST_ROUND_OFFSET
_SB_ROUND_OPEN_TIMESTAMP_OFFSET = _SB_LATEST_ROUND_OFFSET + 17
_SB_RESULT_OFFSET = _SB_LATEST_ROUND_OFFSET + 25
_SB_STD_DEVIATION_OFFSET = _SB_LATEST_ROUND_OFFSET + 45
_SB_RESOLUTION_MODE_OFFSET = 3712
SWITCHBOARD_AGGREGATOR_SIZE = 3851


def _read_i64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<q", data, offset)[0]


def _read_u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _read_u32(data: bytes, offset: int) -> int:
    return struct.unpack_from("<I", data, offset)[0]


def _read_switchboard_decimal(data: bytes, offset: int) -> SwitchboardDecimal:
    mantissa = int.from_bytes(data[offset : offset + 16], "little", signed=True)
    scale = _read_u32(data, offset + 16)
    return SwitchboardDecimal(mantissa=mantissa, scale=scale)


def decode_pyth_price_account(data: bytes) -> PythPriceFeed:
    if len(data) < _PYTH_MIN_SIZE:
        raise OracleDecodeError(f"pyth price account too short: {len(data)} bytes")

    magic, version, account_type, *_ = _PYTH_HEADER.unpack_from(data, 0)
    if magic != PYTH_MAGIC:
        raise OracleDecodeError(f"invalid pyth magic number: {magic:#x}")
    if version != PYTH_VERSION:
        raise OracleDecodeError(f"unsupported pyth account version: {version}")
    if account_type != PYTH_ACCOUNT_TYPE_PRICE:
        raise OracleDecodeError(f"pyth account is not a price account: type={account_type}")

    exponent = struct.unpack_from("<i", data, _PYTH_EXPONENT_OFFSET)[0]
    if abs(exponent) > PYTH_MAX_EXPONENT:
        raise OracleDecodeError(f"pyth exponent out of range: {exponent}")

    return PythPriceFeed(
        price_mantissa=_read_i64(data, _PYTH_EMA_PRICE_OFFSET),
        confidence_mantissa=_read_i64(data, _PYTH_EMA_CONF_OFFSET),
        exponent=exponent,
        updated_at=_read_i64(data, _PYTH_TIMESTAMP_OFFSET),
        last_update_slot=_read_u64(data, _PYTH_VALID_SLOT_OFFSET),
    )


def decode_switchboard_aggregator(data: bytes) -> SwitchboardPriceFeed:
    if len(data) < SWITCHBOARD_AGGREGATOR_SIZE:
        raise OracleDecodeError(f"switchboard aggregator account too short: {len(data)} bytes")
    if data[:8] != SWITCHBOARD_AGGREGATOR_DISCRIMINATOR:
        raise OracleDecodeError("account is not a switchboard aggregator")

    raw_mode = data[_SB_RESOLUTION_MODE_OFFSET]
    try:
        resolution_mode = SwitchboardResolutionMode(raw_mode)
    except ValueError as error:
        raise OracleDecodeError(f"unknown switchboard resolution mode: {raw_mode}") from error

    return SwitchboardPriceFeed(
        result=_read_switchboard_decimal(data, _SB_RESULT_OFFSET),
        std_deviation=_read_switchboard_decimal(data, _SB_STD_DEVIATION_OFFSET),
        num_success=_read_u32(data, _SB_NUM_SUCCESS_OFFSET),
        min_oracle_results=_read_u32(data, _SB_MIN_ORACLE_RESULTS_OFFSET),
        resolution_mode=resolution_mode,
        updated_at=_read_i64(data, _SB_ROUND_OPEN_TIMESTAMP_OFFSET),
    )


def decode_price_feed(setup: OracleSetup, raw: Any) -> PriceFeed:
    try:
        data = decode_account_data(raw)
    except AccountDataError as error:
        raise OracleDecodeError(str(error)) from error

    if setup == OracleSetup.PYTH_EMA:
        return decode_pyth_price_account(data)
    if setup == OracleSetup.SWITCHBOARD_V2:
        return decode_switchboard_aggregator(data)
    raise OracleDecodeError(f"bank has no oracle configured: setup={setup!r}")
