from .cache import MissingOracleError, OracleStateCache, OracleUpdate
from .codec import (
    decode_price_feed,
    decode_pyth_price_account,
    decode_switchboard_aggregator,
)
from .feeds import (
    CONF_INTERVAL_MULTIPLE,
    NegativeConfidenceError,
    OracleDecodeError,
    OracleSetup,
    OracleValidationError,
    PriceFeed,
    PythPriceFeed,
    StaleOracleError,
    SwitchboardDecimal,
    SwitchboardPriceFeed,
    SwitchboardResolutionMode,
    ensure_fresh,
)
from .subscriptions import OracleSubscriber, TrackedOracle, compute_reconnect_backoff_seconds

__all__ = [
    "CONF_INTERVAL_MULTIPLE",
    "MissingOracleError",
    "NegativeConfidenceError",
    "OracleDecodeError",
    "OracleSetup",
    "OracleStateCache",
    "OracleSubscriber",
    "OracleUpdate",
    "OracleValidationError",
    "PriceFeed",
    "PythPriceFeed",
    "StaleOracleError",
    "SwitchboardDecimal",
    "SwitchboardPriceFeed",
    "SwitchboardResolutionMode",
    "TrackedOracle",
    "compute_reconnect_backoff_seconds",
    "decode_price_feed",
    "decode_pyth_price_account",
    "decode_switchboard_aggregator",
    "ensure_fresh",
]
