from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction
from solders.transaction import VersionedTransaction


class TransactionCompileError(RuntimeError):
    pass


class TransactionSigningError(RuntimeError):
    pass


class TransactionMetaMissingError(RuntimeError):
    def __init__(self, *, signature: str) -> None:
        super().__init__(f"transaction {signature} was found without status meta")
        self.signature = signature


class TransactionFailedError(RuntimeError):
    def __init__(self, *, signature: str, error: Any, report: ExecutionReport | None = None) -> None:
        super().__init__(f"transaction {signature} failed on chain: {_error_text(error)}")
        self.signature = signature
        self.error = error
        self.report = report


class TransactionRetriesExhaustedError(RuntimeError):
    def __init__(self, *, signatures: list[str], report: ExecutionReport | None = None) -> None:
        super().__init__(
            f"transaction was not confirmed after {len(signatures)} attempts: {', '.join(signatures)}"
        )
        self.signatures = signatures
        self.report = report


def _error_text(error: Any) -> str:
    if isinstance(error, str):
        return error
    return json.dumps(error, ensure_ascii=False, sort_keys=True, default=str)


@dataclass(slots=True, frozen=True)
class SignedTransactionEnvelope:
    transaction: VersionedTransaction
    signature: str
    instructions: tuple[Instruction, ...]
    lookup_tables: tuple[AddressLookupTableAccount, ...]
    blockhash: str
    last_valid_block_height: int
    attempt: int
    size_bytes: int

    @property
    def uses_lookup_tables(self) -> bool:
        return bool(self.lookup_tables)


@dataclass(slots=True, frozen=True)
class Confirmed:
    signature: str
    meta: dict[str, Any]
    slot: int | None = None

    @property
    def status(self) -> str:
        return "confirmed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "signature": self.signature,
            "slot": self.slot,
            "fee": self.meta.get("fee"),
        }


@dataclass(slots=True, frozen=True)
class Failed:
    signature: str
    error: Any

    @property
    def status(self) -> str:
        return "failed"

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "signature": self.signature, "error": _error_text(self.error)}


@dataclass(slots=True, frozen=True)
class TimedOut:
    signature: str

    @property
    def status(self) -> str:
        return "timed_out"

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "signature": self.signature}


ExecutionOutcome = Union[Confirmed, Failed, TimedOut]


@dataclass(slots=True)
class ExecutionReport:
    label: str
    outcomes: list[ExecutionOutcome] = field(default_factory=list)
    status: str = "pending"
    submitted: list[str] = field(default_factory=list)

    @property
    def signatures(self) -> list[str]:
        # An earlier submission can land while a later attempt is polled.
        ordered = dict.fromkeys(self.submitted)
        ordered.update(dict.fromkeys(outcome.signature for outcome in self.outcomes))
        return list(ordered)

    @property
    def confirmed(self) -> Confirmed | None:
        for outcome in reversed(self.outcomes):
            if isinstance(outcome, Confirmed):
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "status": self.status,
            "attempts": len(self.outcomes),
            "signatures": self.signatures,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }
