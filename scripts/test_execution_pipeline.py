from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from solders.compute_budget import set_compute_unit_limit
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from leverloop.common import AccountDataError
from leverloop.execution import (
    Confirmed,
    Failed,
    RpcMethodError,
    TimedOut,
    TransactionBuilder,
    TransactionCompileError,
    TransactionFailedError,
    TransactionMetaMissingError,
    TransactionPipeline,
    TransactionRetriesExhaustedError,
    TransactionSigningError,
    decode_lookup_table,
    is_retryable_rpc_error,
    token_balance_change,
)

OWNER = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def _token_balance(amount: int, *, owner: str = OWNER, mint: str = MINT) -> dict:
    return {
        "accountIndex": 1,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": 6},
    }


def _envelope(*, lookup_tables: tuple = ()) -> MagicMock:
    envelope = MagicMock()
    envelope.lookup_tables = lookup_tables
    envelope.size_bytes = 512
    return envelope


class TransactionPipelineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.rpc = MagicMock()
        self.rpc.send_transaction = AsyncMock(side_effect=[f"sig-{index}" for index in range(10)])
        self.rpc.get_transaction = AsyncMock(return_value=None)
        self.builder = MagicMock()
        self.builder.build = AsyncMock(
            side_effect=lambda instructions, *, lookup_tables, attempt: _envelope(lookup_tables=tuple(lookup_tables))
        )
        self.journal = MagicMock()
        self.journal.record = AsyncMock()
        self.instructions = [MagicMock()]

    def _pipeline(self, *, max_attempts: int = 4, validity_seconds: float = 5.0) -> TransactionPipeline:
        return TransactionPipeline(
            logger=logging.getLogger("test.pipeline"),
            rpc=self.rpc,
            builder=self.builder,
            max_attempts=max_attempts,
            poll_interval_seconds=0.0,
            validity_seconds=validity_seconds,
            journal=self.journal,
        )

    async def test_timeouts_alternate_lookup_tables_until_exhausted(self) -> None:
        table = object()
        pipeline = self._pipeline(max_attempts=4, validity_seconds=0.0)

        with self.assertRaises(TransactionRetriesExhaustedError) as ctx:
            await pipeline.execute(self.instructions, lookup_tables=[table], label="swap")

        used_tables = [call.kwargs["lookup_tables"] for call in self.builder.build.await_args_list]
        self.assertEqual(used_tables, [[table], (), [table], ()])
        self.assertEqual([call.kwargs["attempt"] for call in self.builder.build.await_args_list], [0, 1, 2, 3])
        self.assertEqual(ctx.exception.signatures, ["sig-0", "sig-1", "sig-2", "sig-3"])
        report = ctx.exception.report
        self.assertEqual(report.status, "exhausted")
        self.assertTrue(all(isinstance(outcome, TimedOut) for outcome in report.outcomes))
        self.journal.record.assert_awaited_once_with(report, None)

    async def test_attempt_that_only_fits_with_lookup_tables_keeps_them(self) -> None:
        table = object()

        def build(instructions, *, lookup_tables, attempt):
            if not lookup_tables:
                raise TransactionCompileError("oversized")
            return _envelope(lookup_tables=tuple(lookup_tables))

        self.builder.build.side_effect = build
        pipeline = self._pipeline(max_attempts=6, validity_seconds=0.0)

        with self.assertRaises(TransactionRetriesExhaustedError) as ctx:
            await pipeline.execute(self.instructions, lookup_tables=[table], label="swap")

        used_tables = [call.kwargs["lookup_tables"] for call in self.builder.build.await_args_list]
        self.assertEqual(used_tables, [[table], (), [table]] * 3)
        self.assertEqual(self.rpc.send_transaction.await_count, 6)
        self.assertEqual(ctx.exception.signatures, [f"sig-{index}" for index in range(6)])

    async def test_compile_error_with_lookup_tables_propagates(self) -> None:
        self.builder.build.side_effect = TransactionCompileError("oversized")
        pipeline = self._pipeline(validity_seconds=0.0)

        with self.assertRaises(TransactionCompileError):
            await pipeline.execute(self.instructions, lookup_tables=[object()], label="swap")

        self.rpc.send_transaction.assert_not_awaited()

    async def test_earlier_submission_that_lands_late_is_not_resent(self) -> None:
        def get_transaction(signature):
            if signature == "sig-0" and self.rpc.send_transaction.await_count >= 2:
                return {"slot": 12, "meta": {"err": None}}
            return None

        self.rpc.get_transaction.side_effect = get_transaction
        pipeline = self._pipeline(max_attempts=3, validity_seconds=0.05)

        report = await pipeline.execute(self.instructions, label="lending_deposit_borrow")

        self.assertEqual(report.status, "confirmed")
        self.assertEqual(report.confirmed.signature, "sig-0")
        self.assertEqual(report.signatures, ["sig-0", "sig-1"])
        self.assertEqual(self.rpc.send_transaction.await_count, 2)
        self.journal.record.assert_awaited_once_with(report, report.confirmed)

    async def test_poll_returns_first_terminal_signature(self) -> None:
        self.rpc.get_transaction.side_effect = lambda signature: (
            {"slot": 4, "meta": {"err": None}} if signature == "sig-b" else None
        )

        outcome = await self._pipeline().poll("sig-a", "sig-b")

        self.assertEqual(outcome, Confirmed(signature="sig-b", meta={"err": None}, slot=4))

    async def test_failed_transaction_is_not_retried(self) -> None:
        self.rpc.get_transaction.return_value = {"slot": 5, "meta": {"err": {"InstructionError": [0, "Custom"]}}}
        pipeline = self._pipeline()

        with self.assertRaises(TransactionFailedError) as ctx:
            await pipeline.execute(self.instructions, label="lending_deposit_borrow")

        self.assertEqual(ctx.exception.signature, "sig-0")
        self.assertEqual(self.builder.build.await_count, 1)
        self.assertEqual(ctx.exception.report.status, "failed")
        outcome = self.journal.record.await_args.args[1]
        self.assertIsInstance(outcome, Failed)

    async def test_confirmed_transaction_is_reported_and_journaled(self) -> None:
        self.rpc.get_transaction.side_effect = [None, {"slot": 77, "meta": {"err": None, "fee": 5000}}]
        pipeline = self._pipeline()

        report = await pipeline.execute(self.instructions, label="farm_deposit")

        self.assertEqual(report.status, "confirmed")
        self.assertEqual(report.signatures, ["sig-0"])
        self.assertEqual(report.confirmed.slot, 77)
        self.assertEqual(report.to_dict()["outcomes"][0]["fee"], 5000)
        self.journal.record.assert_awaited_once_with(report, report.confirmed)

    async def test_journal_failure_does_not_fail_the_transaction(self) -> None:
        self.rpc.get_transaction.return_value = {"slot": 1, "meta": {"err": None}}
        self.journal.record.side_effect = RuntimeError("redis down")
        pipeline = self._pipeline()

        report = await pipeline.execute(self.instructions)

        self.assertEqual(report.status, "confirmed")

    async def test_poll_retries_transient_errors(self) -> None:
        self.rpc.get_transaction.side_effect = [
            RpcMethodError(method="getTransaction", message="busy", status=503),
            {"slot": 9, "meta": {"err": None}},
        ]

        outcome = await self._pipeline().poll("sig")

        self.assertEqual(outcome, Confirmed(signature="sig", meta={"err": None}, slot=9))

    async def test_poll_raises_non_retryable_errors(self) -> None:
        self.rpc.get_transaction.side_effect = RpcMethodError(method="getTransaction", message="bad", status=400)

        with self.assertRaises(RpcMethodError):
            await self._pipeline().poll("sig")

    async def test_poll_raises_when_meta_is_missing(self) -> None:
        self.rpc.get_transaction.return_value = {"slot": 3}

        with self.assertRaises(TransactionMetaMissingError):
            await self._pipeline().poll("sig")


class TokenBalanceChangeTests(unittest.TestCase):
    def test_increase_is_post_minus_pre(self) -> None:
        meta = {"preTokenBalances": [_token_balance(100)], "postTokenBalances": [_token_balance(350)]}

        self.assertEqual(token_balance_change(meta, owner=OWNER, mint=MINT), 250)

    def test_account_opened_in_transaction_counts_from_zero(self) -> None:
        meta = {"preTokenBalances": [], "postTokenBalances": [_token_balance(42)]}

        self.assertEqual(token_balance_change(meta, owner=OWNER, mint=MINT), 42)

    def test_decrease(self) -> None:
        meta = {"preTokenBalances": [_token_balance(100)], "postTokenBalances": [_token_balance(30)]}

        self.assertEqual(token_balance_change(meta, owner=OWNER, mint=MINT, increase=False), 70)

    def test_missing_owner_or_balances_yield_none(self) -> None:
        meta = {"preTokenBalances": [], "postTokenBalances": [_token_balance(5, owner=str(Pubkey.new_unique()))]}

        self.assertIsNone(token_balance_change(meta, owner=OWNER, mint=MINT))
        self.assertIsNone(token_balance_change({}, owner=OWNER, mint=MINT))


class TransactionBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.signer = Keypair()

    def _builder(self, **kwargs: int) -> TransactionBuilder:
        return TransactionBuilder(rpc=MagicMock(), signer=self.signer, **kwargs)

    def _transfer(self, *, source: Pubkey | None = None) -> object:
        return transfer(
            TransferParams(
                from_pubkey=source or self.signer.pubkey(),
                to_pubkey=Pubkey.new_unique(),
                lamports=1,
            )
        )

    def _compile(self, builder: TransactionBuilder, instructions: list) -> object:
        return builder.compile_and_sign(
            instructions,
            lookup_tables=(),
            blockhash=Hash.default(),
            last_valid_block_height=100,
            attempt=0,
        )

    def test_compute_budget_prelude_is_prepended(self) -> None:
        builder = self._builder(compute_unit_limit=400_000, compute_unit_price_micro_lamports=1_000)

        envelope = self._compile(builder, [self._transfer()])

        self.assertEqual(len(envelope.transaction.message.instructions), 3)
        self.assertEqual(len(envelope.instructions), 1)
        self.assertEqual(envelope.signature, str(envelope.transaction.signatures[0]))
        self.assertFalse(envelope.uses_lookup_tables)

    def test_prelude_is_skipped_when_instructions_carry_a_compute_budget(self) -> None:
        builder = self._builder(compute_unit_limit=400_000, compute_unit_price_micro_lamports=1_000)

        envelope = self._compile(builder, [set_compute_unit_limit(600_000), self._transfer()])

        self.assertEqual(len(envelope.transaction.message.instructions), 2)

    def test_empty_instruction_list_is_rejected(self) -> None:
        with self.assertRaises(TransactionCompileError):
            self._compile(self._builder(), [])

    def test_foreign_signer_is_rejected(self) -> None:
        with self.assertRaises(TransactionSigningError):
            self._compile(self._builder(), [self._transfer(source=Pubkey.new_unique())])

    def test_oversized_transaction_is_rejected(self) -> None:
        instructions = [self._transfer() for _ in range(40)]

        with self.assertRaises(TransactionCompileError):
            self._compile(self._builder(), instructions)


class TransactionBuilderBuildTests(unittest.IsolatedAsyncioTestCase):
    async def test_build_uses_latest_blockhash(self) -> None:
        rpc = MagicMock()
        rpc.get_latest_blockhash = AsyncMock(return_value=(Hash.default(), 321))
        signer = Keypair()
        builder = TransactionBuilder(rpc=rpc, signer=signer)
        instruction = transfer(TransferParams(from_pubkey=signer.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))

        envelope = await builder.build([instruction], attempt=2)

        self.assertEqual(envelope.last_valid_block_height, 321)
        self.assertEqual(envelope.attempt, 2)
        self.assertEqual(envelope.blockhash, str(Hash.default()))


class RpcHelperTests(unittest.TestCase):
    def test_retryable_classification(self) -> None:
        self.assertTrue(RpcMethodError(method="m", message="x", status=429).retryable)
        self.assertTrue(RpcMethodError(method="m", message="x", code=-32005).retryable)
        self.assertFalse(RpcMethodError(method="m", message="x", status=400).retryable)
        self.assertTrue(is_retryable_rpc_error(asyncio.TimeoutError()))
        self.assertFalse(is_retryable_rpc_error(ValueError("nope")))

    def test_lookup_table_addresses_follow_the_header(self) -> None:
        first, second = Pubkey.new_unique(), Pubkey.new_unique()
        data = bytes(56) + bytes(first) + bytes(second)
        address = str(Pubkey.new_unique())

        table = decode_lookup_table(address, data)

        self.assertEqual(str(table.key), address)
        self.assertEqual(list(table.addresses), [first, second])

    def test_truncated_lookup_table_is_rejected(self) -> None:
        with self.assertRaises(AccountDataError):
            decode_lookup_table(str(Pubkey.new_unique()), bytes(56 + 10))


if __name__ == "__main__":
    unittest.main()
