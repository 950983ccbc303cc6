from .builder import MAX_TRANSACTION_SIZE, TransactionBuilder
from .pipeline import OutcomeSink, TransactionPipeline, token_balance_change
from .rpc import RpcMethodError, SolanaRpc, decode_lookup_table, is_retryable_rpc_error
from .types import (
    Confirmed,
    ExecutionOutcome,
    ExecutionReport,
    Failed,
    SignedTransactionEnvelope,
    TimedOut,
    TransactionCompileError,
    TransactionFailedError,
    TransactionMetaMissingError,
    TransactionRetriesExhaustedError,
    TransactionSigningError,
)

__all__ = [
    "MAX_TRANSACTION_SIZE",
    "Confirmed",
    "ExecutionOutcome",
    "ExecutionReport",
    "Failed",
    "OutcomeSink",
    "RpcMethodError",
    "SignedTransactionEnvelope",
    "SolanaRpc",
    "TimedOut",
    "TransactionBuilder",
    "TransactionCompileError",
    "TransactionFailedError",
    "TransactionMetaMissingError",
    "TransactionPipeline",
    "TransactionRetriesExhaustedError",
    "TransactionSigningError",
    "decode_lookup_table",
    "is_retryable_rpc_error",
    "token_balance_change",
]
