from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from leverloop.common import log_event
from leverloop.execution import ExecutionReport, token_balance_change
from leverloop.margin import (
    BANK_DISCRIMINATOR,
    BANK_GROUP_OFFSET,
    MARGIN_ACCOUNT_AUTHORITY_OFFSET,
    MARGIN_ACCOUNT_DISCRIMINATOR,
    AccountLayoutError,
    BankSnapshot,
    MarginAccountState,
    ProjectedMarginAccount,
    UnresolvedBankError,
    best_borrow_target,
    decode_bank,
    decode_margin_account,
    max_deposit_amount,
    usd_to_borrow_amount,
)
from leverloop.oracles.fixed import fixed_context, to_native_units

from .instructions import InstructionBuilder

if TYPE_CHECKING:
    from solders.instruction import Instruction

    from leverloop.execution import SolanaRpc, TransactionPipeline
    from leverloop.oracles import OracleStateCache
    from leverloop.swap import JupiterSwapClient


class StrategyError(RuntimeError):
    pass


@dataclass(slots=True, frozen=True)
class StrategyConfig:
    collateral_amount: int
    borrow_fraction: Decimal = Decimal("0.9")
    slippage_bps: int = 50
    pool_min_out_bps: int = 9_500
    oracle_max_age_seconds: int = 0


@dataclass(slots=True)
class StrategyResult:
    deposited_amount: int = 0
    borrow_mint: str = ""
    borrowed_amount: int = 0
    pool_supply_amount: int = 0
    lp_amount: int = 0
    reports: list[ExecutionReport] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deposited_amount": self.deposited_amount,
            "borrow_mint": self.borrow_mint,
            "borrowed_amount": self.borrowed_amount,
            "pool_supply_amount": self.pool_supply_amount,
            "lp_amount": self.lp_amount,
            "reports": [report.to_dict() for report in self.reports],
        }


def _memcmp(offset: int, raw: bytes) -> dict[str, Any]:
    return {
        "memcmp": {
            "offset": offset,
            "bytes": base64.b64encode(raw).decode("ascii"),
            "encoding": "base64",
        }
    }


class LeverageLoopStrategy:
    """One pass of deposit, borrow, optional swap, pool deposit and farm stake.

    Each step waits for its transaction to confirm and reads the amount the
    next step supplies from the confirmed token balance change.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpc,
        cache: OracleStateCache,
        pipeline: TransactionPipeline,
        swap_client: JupiterSwapClient,
        instructions: InstructionBuilder,
        config: StrategyConfig,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._cache = cache
        self._pipeline = pipeline
        self._swap_client = swap_client
        self._instructions = instructions
        self._book = instructions.book
        self._config = config

    async def load_banks(self) -> list[BankSnapshot]:
        group = self._book.lending_group
        accounts = await self._rpc.get_program_accounts(
            self._book.programs.lending,
            filters=[
                _memcmp(0, BANK_DISCRIMINATOR),
                {"memcmp": {"offset": BANK_GROUP_OFFSET, "bytes": group}},
            ],
        )

        banks: list[BankSnapshot] = []
        for address, data in accounts:
            try:
                banks.append(decode_bank(address, data))
            except AccountLayoutError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="bank_skipped",
                    message="Skipping bank with an unsupported layout",
                    bank=address,
                    error=str(error),
                )
        return banks

    async def load_state(self) -> MarginAccountState:
        accounts = await self._rpc.get_program_accounts(
            self._book.programs.lending,
            filters=[
                _memcmp(0, MARGIN_ACCOUNT_DISCRIMINATOR),
                {"memcmp": {"offset": MARGIN_ACCOUNT_AUTHORITY_OFFSET, "bytes": self._book.wallet}},
            ],
        )
        if not accounts:
            raise StrategyError(f"no margin account exists for wallet {self._book.wallet}")

        address, data = accounts[0]
        raw_account = decode_margin_account(data)
        banks = await self.load_banks()
        state = MarginAccountState.from_chain(address=address, account=raw_account, banks=banks)

        log_event(
            self._logger,
            level="info",
            event="margin_state_loaded",
            message="Loaded margin account and banks",
            margin_account=address,
            bank_count=len(banks),
            active_balances=len(state.active_balances()),
        )
        return state

    def plan_deposit(self, account: ProjectedMarginAccount, instructions: list[Instruction]) -> int:
        mint = self._book.collateral_mint
        bank = account.bank_by_mint(mint)
        if bank is None:
            raise UnresolvedBankError(mint=mint)

        already_deposited = account.deposited_amount(mint)
        if already_deposited >= self._config.collateral_amount:
            return 0

        allowed = max_deposit_amount(bank, Decimal(self._config.collateral_amount - already_deposited))
        amount = to_native_units(allowed)
        if amount <= 0:
            log_event(
                self._logger,
                level="warning",
                event="deposit_capped",
                message="Bank deposit cap leaves no room for collateral",
                mint=mint,
                bank=bank.address,
            )
            return 0

        account.deposit(Decimal(amount), mint)
        instructions.append(self._instructions.lending_deposit(account, mint=mint, amount=amount))
        return amount

    async def plan_borrow(
        self,
        account: ProjectedMarginAccount,
        instructions: list[Instruction],
    ) -> tuple[str, int]:
        requests = account.oracle_requests(extra_mints=self._book.borrow_mints)
        prices = await self._cache.snapshot(requests)

        free_collateral = account.free_collateral(
            prices,
            now=int(time.time()),
            max_age_seconds=self._config.oracle_max_age_seconds,
        )
        mint, bank = best_borrow_target(account, self._book.borrow_mints)
        with fixed_context():
            budget = free_collateral * self._config.borrow_fraction
        amount = to_native_units(usd_to_borrow_amount(bank, prices[bank.oracle_address], budget))

        log_event(
            self._logger,
            level="info",
            event="borrow_planned",
            message="Borrow target selected",
            mint=mint,
            bank=bank.address,
            free_collateral_micro_usd=str(free_collateral),
            amount=amount,
        )
        if amount <= 0:
            return mint, 0

        account.borrow(Decimal(amount), mint)
        instructions.append(self._instructions.lending_borrow(account, mint=mint, amount=amount))
        return mint, amount

    @staticmethod
    def _received(report: ExecutionReport, *, owner: str, mint: str, step: str) -> int:
        confirmed = report.confirmed
        if confirmed is None:
            raise StrategyError(f"{step} did not confirm")
        received = token_balance_change(confirmed.meta, owner=owner, mint=mint, increase=True)
        if received is None or received <= 0:
            raise StrategyError(f"{step} confirmed in {confirmed.signature} without a {mint} balance increase")
        return received

    async def swap_to_quote(self, mint: str, amount: int) -> tuple[int, ExecutionReport]:
        quote = await self._swap_client.quote(
            input_mint=mint,
            output_mint=self._book.quote_mint,
            amount=amount,
            slippage_bps=self._config.slippage_bps,
        )
        swap = await self._swap_client.swap_instructions(quote, user_public_key=self._book.wallet)
        lookup_tables = await self._rpc.get_lookup_tables(list(swap.lookup_table_addresses))

        report = await self._pipeline.execute(
            swap.all_instructions(),
            lookup_tables=lookup_tables,
            label="swap",
        )
        received = self._received(report, owner=self._book.wallet, mint=self._book.quote_mint, step="swap")
        return received, report

    async def supply_pool(self, amount: int) -> tuple[int, ExecutionReport]:
        pool = self._book.pool_for(self._book.quote_mint)
        token_a_amount, token_b_amount = pool.get_token_for_deposit(amount, self._book.quote_mint)
        # TODO: derive the minimum from the pool virtual price instead of a flat haircut.
        minimum = amount * self._config.pool_min_out_bps // 10_000

        instruction = self._instructions.pool_deposit(
            pool,
            minimum_pool_token_amount=minimum,
            token_a_amount=token_a_amount,
            token_b_amount=token_b_amount,
        )
        report = await self._pipeline.execute([instruction], label="pool_deposit")
        received = self._received(report, owner=self._book.wallet, mint=pool.lp_mint, step="pool deposit")
        return received, report

    async def stake(self, lp_amount: int) -> ExecutionReport:
        instruction = self._instructions.farm_deposit(mint=self._book.quote_mint, amount=lp_amount)
        return await self._pipeline.execute([instruction], label="farm_deposit")

    async def run(self) -> StrategyResult:
        result = StrategyResult()
        state = await self.load_state()
        account = state.projected()

        instructions: list[Instruction] = []
        result.deposited_amount = self.plan_deposit(account, instructions)
        result.borrow_mint, result.borrowed_amount = await self.plan_borrow(account, instructions)

        if instructions:
            result.reports.append(await self._pipeline.execute(instructions, label="lending_deposit_borrow"))
        if result.borrowed_amount <= 0:
            log_event(
                self._logger,
                level="warning",
                event="strategy_nothing_to_borrow",
                message="No free collateral to borrow against; stopping after the deposit",
                deposited_amount=result.deposited_amount,
            )
            return result

        if result.borrow_mint != self._book.quote_mint:
            result.pool_supply_amount, report = await self.swap_to_quote(result.borrow_mint, result.borrowed_amount)
            result.reports.append(report)
        else:
            result.pool_supply_amount = result.borrowed_amount

        result.lp_amount, report = await self.supply_pool(result.pool_supply_amount)
        result.reports.append(report)
        result.reports.append(await self.stake(result.lp_amount))

        log_event(
            self._logger,
            level="info",
            event="strategy_completed",
            message="Leverage loop pass completed",
            **{key: value for key, value in result.to_dict().items() if key != "reports"},
            signatures=[signature for report in result.reports for signature in report.signatures],
        )
        return result
