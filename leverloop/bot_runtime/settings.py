from __future__ import annotations

import contextlib
import json
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from solders.keypair import Keypair

from leverloop.storage import DEFAULT_OUTCOME_STREAM
from leverloop.swap.jupiter import DEFAULT_SWAP_API_URL


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_fraction(value: Any, default: Decimal) -> Decimal:
    try:
        if value is None or str(value).strip() == "":
            return default
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        return default
    if not parsed.is_finite() or parsed <= 0 or parsed > 1:
        return default
    return parsed


def load_keypair(raw: str) -> Keypair:
    value = raw.strip()
    if not value:
        raise ValueError("PRIVATE_KEY is not set.")

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


@dataclass(slots=True)
class AppSettings:
    solana_rpc_url: str
    solana_ws_url: str
    private_key: str
    address_book_path: str
    collateral_amount: int
    borrow_fraction: Decimal
    swap_api_url: str
    swap_api_key: str
    swap_slippage_bps: int
    pool_min_out_bps: int
    tx_max_attempts: int
    tx_poll_interval_seconds: float
    tx_validity_seconds: float
    tx_compute_unit_limit: int
    tx_compute_unit_price_micro_lamports: int
    rpc_timeout_seconds: float
    oracle_max_age_seconds: int
    subscription_backoff_seconds: float
    error_backoff_seconds: float
    bootstrap_max_attempts: int
    redis_url: str
    redis_outcome_stream: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", "").strip(),
            solana_ws_url=os.getenv("SOLANA_WS_URL", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            address_book_path=os.getenv("ADDRESS_BOOK_PATH", "address_book.json").strip(),
            collateral_amount=max(0, to_int(os.getenv("COLLATERAL_AMOUNT"), 0)),
            borrow_fraction=to_fraction(os.getenv("BORROW_FRACTION"), Decimal("0.9")),
            swap_api_url=os.getenv("SWAP_API_URL", DEFAULT_SWAP_API_URL).strip(),
            swap_api_key=os.getenv("SWAP_API_KEY", "").strip(),
            swap_slippage_bps=min(10_000, max(1, to_int(os.getenv("SWAP_SLIPPAGE_BPS"), 50))),
            pool_min_out_bps=min(10_000, max(0, to_int(os.getenv("POOL_MIN_OUT_BPS"), 9_500))),
            tx_max_attempts=max(1, to_int(os.getenv("TX_MAX_ATTEMPTS"), 6)),
            tx_poll_interval_seconds=max(0.25, to_float(os.getenv("TX_POLL_INTERVAL_SECONDS"), 2.0)),
            tx_validity_seconds=max(5.0, to_float(os.getenv("TX_VALIDITY_SECONDS"), 40.0)),
            tx_compute_unit_limit=max(0, to_int(os.getenv("TX_COMPUTE_UNIT_LIMIT"), 0)),
            tx_compute_unit_price_micro_lamports=max(
                0,
                to_int(os.getenv("TX_COMPUTE_UNIT_PRICE_MICRO_LAMPORTS"), 0),
            ),
            rpc_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 10.0)),
            oracle_max_age_seconds=max(0, to_int(os.getenv("ORACLE_MAX_AGE_SECONDS"), 60)),
            subscription_backoff_seconds=max(
                0.1,
                to_float(os.getenv("SUBSCRIPTION_BACKOFF_SECONDS"), 1.0),
            ),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            bootstrap_max_attempts=max(1, to_int(os.getenv("BOOTSTRAP_MAX_ATTEMPTS"), 5)),
            redis_url=os.getenv("REDIS_URL", "").strip(),
            redis_outcome_stream=os.getenv("REDIS_OUTCOME_STREAM", DEFAULT_OUTCOME_STREAM).strip()
            or DEFAULT_OUTCOME_STREAM,
        )
