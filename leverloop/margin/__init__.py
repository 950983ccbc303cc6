from .account import MarginAccountState, MarginAccountView, ProjectedMarginAccount
from .layouts import (
    BANK_DISCRIMINATOR,
    BANK_GROUP_OFFSET,
    MARGIN_ACCOUNT_AUTHORITY_OFFSET,
    MARGIN_ACCOUNT_DISCRIMINATOR,
    RawBalance,
    RawMarginAccount,
    decode_bank,
    decode_margin_account,
)
from .risk import (
    best_borrow_target,
    borrow_rate,
    max_deposit_amount,
    usd_to_borrow_amount,
    utilization,
    weighted_amounts,
)
from .types import (
    AccountBalance,
    AccountLayoutError,
    BankSnapshot,
    InterestRateCurve,
    UnresolvedBankError,
)

__all__ = [
    "BANK_DISCRIMINATOR",
    "BANK_GROUP_OFFSET",
    "MARGIN_ACCOUNT_AUTHORITY_OFFSET",
    "MARGIN_ACCOUNT_DISCRIMINATOR",
    "AccountBalance",
    "AccountLayoutError",
    "BankSnapshot",
    "InterestRateCurve",
    "MarginAccountState",
    "MarginAccountView",
    "ProjectedMarginAccount",
    "RawBalance",
    "RawMarginAccount",
    "UnresolvedBankError",
    "best_borrow_target",
    "borrow_rate",
    "decode_bank",
    "decode_margin_account",
    "max_deposit_amount",
    "usd_to_borrow_amount",
    "utilization",
    "weighted_amounts",
]
