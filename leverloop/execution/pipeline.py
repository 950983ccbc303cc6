from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import Instruction

from leverloop.common import guarded_call, log_event

from .rpc import is_retryable_rpc_error
from .types import (
    Confirmed,
    ExecutionOutcome,
    ExecutionReport,
    Failed,
    TimedOut,
    TransactionCompileError,
    TransactionFailedError,
    TransactionMetaMissingError,
    TransactionRetriesExhaustedError,
)

if TYPE_CHECKING:
    from .builder import TransactionBuilder
    from .rpc import SolanaRpc


class OutcomeSink(Protocol):
    async def record(self, report: ExecutionReport, outcome: ExecutionOutcome | None) -> None: ...


def token_balance_change(
    meta: dict[str, Any],
    *,
    owner: str,
    mint: str,
    increase: bool = True,
) -> int | None:
    """Change of ``owner``'s ``mint`` balance across one confirmed transaction.

    A token account opened inside the transaction has no pre balance and is
    counted from zero.
    """
    pre_balances = meta.get("preTokenBalances")
    post_balances = meta.get("postTokenBalances")
    if not isinstance(pre_balances, list) or not isinstance(post_balances, list):
        return None

    def find_amount(balances: list[Any]) -> int | None:
        for balance in balances:
            if not isinstance(balance, dict):
                continue
            if balance.get("mint") != mint or balance.get("owner") != owner:
                continue
            ui_amount = balance.get("uiTokenAmount")
            if not isinstance(ui_amount, dict):
                return None
            try:
                return int(str(ui_amount.get("amount")))
            except ValueError:
                return None
        return None

    post_amount = find_amount(post_balances)
    if post_amount is None:
        return None
    pre_amount = find_amount(pre_balances) or 0

    if increase:
        return post_amount - pre_amount
    return pre_amount - post_amount


class TransactionPipeline:
    """Build, sign, submit and poll one logical action until it lands.

    Attempt ``n`` is compiled with the lookup tables only when ``n`` is even,
    so a stale table cannot block every retry. An attempt that does not fit
    without the tables is rebuilt with them.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpc,
        builder: TransactionBuilder,
        max_attempts: int = 6,
        poll_interval_seconds: float = 2.0,
        validity_seconds: float = 40.0,
        send_max_retries: int = 20,
        journal: OutcomeSink | None = None,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._builder = builder
        self._max_attempts = max(1, max_attempts)
        self._poll_interval_seconds = max(0.0, poll_interval_seconds)
        self._validity_seconds = max(0.0, validity_seconds)
        self._send_max_retries = max(0, send_max_retries)
        self._journal = journal

    async def execute(
        self,
        instructions: Sequence[Instruction],
        *,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        label: str = "transaction",
    ) -> ExecutionReport:
        report = ExecutionReport(label=label)

        for attempt in range(self._max_attempts):
            tables = lookup_tables if attempt % 2 == 0 else ()
            try:
                envelope = await self._builder.build(instructions, lookup_tables=tables, attempt=attempt)
            except TransactionCompileError as error:
                if tables or not lookup_tables:
                    raise
                log_event(
                    self._logger,
                    level="warning",
                    event="transaction_uncompressed_build_failed",
                    message="Transaction does not compile without lookup tables; keeping them",
                    label=label,
                    attempt=attempt,
                    error=str(error),
                )
                envelope = await self._builder.build(instructions, lookup_tables=lookup_tables, attempt=attempt)
            signature = await self._rpc.send_transaction(
                envelope.transaction,
                max_retries=self._send_max_retries,
            )
            report.submitted.append(signature)
            log_event(
                self._logger,
                level="info",
                event="transaction_submitted",
                message="Transaction submitted",
                label=label,
                signature=signature,
                attempt=attempt,
                lookup_table_count=len(envelope.lookup_tables),
                tx_size_bytes=envelope.size_bytes,
            )

            outcome = await self.poll(*report.submitted)
            report.outcomes.append(outcome)

            if isinstance(outcome, Confirmed):
                report.status = "confirmed"
                log_event(
                    self._logger,
                    level="info",
                    event="transaction_confirmed",
                    message="Transaction confirmed",
                    label=label,
                    signature=outcome.signature,
                    latest_signature=signature,
                    attempt=attempt,
                    slot=outcome.slot,
                )
                await self._record(report, outcome)
                return report

            if isinstance(outcome, Failed):
                report.status = "failed"
                log_event(
                    self._logger,
                    level="error",
                    event="transaction_failed",
                    message="Transaction failed on chain",
                    label=label,
                    signature=outcome.signature,
                    latest_signature=signature,
                    attempt=attempt,
                    error=outcome.to_dict()["error"],
                )
                await self._record(report, outcome)
                raise TransactionFailedError(signature=outcome.signature, error=outcome.error, report=report)

            log_event(
                self._logger,
                level="warning",
                event="transaction_timed_out",
                message="Transaction was not confirmed within its validity window",
                label=label,
                signature=signature,
                attempt=attempt,
                validity_seconds=self._validity_seconds,
                next_uses_lookup_tables=bool(lookup_tables) and (attempt + 1) % 2 == 0,
            )

        report.status = "exhausted"
        log_event(
            self._logger,
            level="error",
            event="transaction_retries_exhausted",
            message="Transaction retries exhausted",
            label=label,
            signatures=report.signatures,
            attempts=len(report.outcomes),
        )
        await self._record(report, None)
        raise TransactionRetriesExhaustedError(signatures=report.signatures, report=report)

    async def poll(self, *signatures: str) -> ExecutionOutcome:
        """Wait for the first of ``signatures`` to reach a terminal status.

        Earlier submissions of the same action stay eligible until the window
        closes.
        """
        if not signatures:
            raise ValueError("poll needs at least one signature")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._validity_seconds

        while loop.time() <= deadline:
            await asyncio.sleep(self._poll_interval_seconds)
            for signature in signatures:
                outcome = await self._poll_once(signature)
                if outcome is not None:
                    return outcome

        return TimedOut(signature=signatures[-1])

    async def _poll_once(self, signature: str) -> ExecutionOutcome | None:
        try:
            result = await self._rpc.get_transaction(signature)
        except Exception as error:
            if not is_retryable_rpc_error(error):
                raise
            log_event(
                self._logger,
                level="debug",
                event="transaction_poll_retry",
                message="Transient error while polling transaction status",
                signature=signature,
                error=str(error),
            )
            return None

        if result is None:
            return None
        meta = result.get("meta")
        if not isinstance(meta, dict):
            raise TransactionMetaMissingError(signature=signature)
        if meta.get("err") is not None:
            return Failed(signature=signature, error=meta["err"])
        slot = result.get("slot")
        return Confirmed(signature=signature, meta=meta, slot=slot if isinstance(slot, int) else None)

    async def _record(self, report: ExecutionReport, outcome: ExecutionOutcome | None) -> None:
        if self._journal is None:
            return
        journal = self._journal
        await guarded_call(
            lambda: journal.record(report, outcome),
            logger=self._logger,
            event="transaction_journal_failed",
            message="Failed to journal transaction outcome",
            label=report.label,
        )
