from __future__ import annotations

import hashlib
import json
import logging
import struct
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from account_fixtures import encode_bank, encode_margin_account
from leverloop.execution import Confirmed, ExecutionReport
from leverloop.margin import (
    AccountBalance,
    BankSnapshot,
    InterestRateCurve,
    MarginAccountView,
)
from leverloop.oracles import OracleSetup, PythPriceFeed
from leverloop.strategy import (
    AddressBook,
    AddressBookError,
    InstructionBuilder,
    LeverageLoopStrategy,
    PoolAddresses,
    StrategyConfig,
    StrategyError,
    anchor_discriminator,
    derive_farm_addresses,
    encode_u64,
)
from leverloop.strategy.addresses import BSOL_MINT, FARM_PROGRAM_ID, USDC_MINT, USDT_MINT, UXD_MINT
from leverloop.swap import SwapInstructions, SwapQuote


def _unique() -> str:
    return str(Pubkey.new_unique())


def _pool(*, a_token_mint: str = USDC_MINT, b_token_mint: str = USDT_MINT) -> PoolAddresses:
    return PoolAddresses(
        address=_unique(),
        lp_mint=_unique(),
        a_vault=_unique(),
        b_vault=_unique(),
        a_vault_lp=_unique(),
        b_vault_lp=_unique(),
        vault_a_vault=_unique(),
        vault_b_vault=_unique(),
        vault_a_lp_mint=_unique(),
        vault_b_lp_mint=_unique(),
        a_token_mint=a_token_mint,
        b_token_mint=b_token_mint,
    )


def _bank(*, mint: str, mint_decimals: int, asset_shares: int = 0, liability_shares: int = 0) -> BankSnapshot:
    return BankSnapshot(
        address=_unique(),
        mint=mint,
        mint_decimals=mint_decimals,
        oracle_setup=OracleSetup.PYTH_EMA,
        oracle_address=_unique(),
        liquidity_vault=_unique(),
        asset_weight_init=Decimal("0.75"),
        liability_weight_init=Decimal("1.25"),
        asset_share_value=Decimal(1),
        liability_share_value=Decimal(1),
        total_asset_shares=Decimal(asset_shares),
        total_liability_shares=Decimal(liability_shares),
        total_asset_value_init_limit=0,
        interest_rate=InterestRateCurve(
            optimal_utilization=Decimal("0.75"),
            plateau_rate=Decimal("0.125"),
            max_rate=Decimal("0.5"),
        ),
    )


def _feed(price: int) -> PythPriceFeed:
    return PythPriceFeed(price_mantissa=price, confidence_mantissa=0, exponent=0, updated_at=0, last_update_slot=0)


def _token_balance(owner: str, mint: str, amount: int) -> dict:
    return {"mint": mint, "owner": owner, "uiTokenAmount": {"amount": str(amount), "decimals": 6}}


def _confirmed(label: str, signature: str, meta: dict | None = None) -> ExecutionReport:
    report = ExecutionReport(label=label, status="confirmed")
    report.outcomes.append(Confirmed(signature=signature, meta=meta or {}, slot=1))
    return report


class InstructionEncodingTests(unittest.TestCase):
    def test_anchor_discriminator_is_sighash_prefix(self) -> None:
        self.assertEqual(anchor_discriminator("deposit"), hashlib.sha256(b"global:deposit").digest()[:8])

    def test_u64_arguments_are_little_endian(self) -> None:
        self.assertEqual(encode_u64(1, 258), b"\x01" + bytes(7) + b"\x02\x01" + bytes(6))

    def test_u64_range_is_enforced(self) -> None:
        with self.assertRaises(ValueError):
            encode_u64(-1)
        with self.assertRaises(ValueError):
            encode_u64(1 << 64)


class InstructionBuilderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.wallet = _unique()
        self.pool = _pool()
        self.farm_address = _unique()
        self.book = AddressBook(
            wallet=self.wallet,
            pools={USDC_MINT: self.pool},
            farms={USDC_MINT: derive_farm_addresses(self.wallet, self.farm_address)},
        )
        self.builder = InstructionBuilder(self.book)
        self.bsol = _bank(mint=BSOL_MINT, mint_decimals=9)
        self.usdc = _bank(mint=USDC_MINT, mint_decimals=6)
        self.account = MarginAccountView(
            address=_unique(),
            banks=[self.bsol, self.usdc],
            balances={BSOL_MINT: AccountBalance.from_bank(self.bsol, active=True, asset_shares=Decimal(1))},
        )

    def test_deposit_lists_accounts_and_health_pairs(self) -> None:
        instruction = self.builder.lending_deposit(self.account, mint=BSOL_MINT, amount=5)

        keys = [str(meta.pubkey) for meta in instruction.accounts]
        self.assertEqual(len(keys), 9)
        self.assertEqual(keys[1], self.account.address)
        self.assertEqual(keys[3], self.bsol.address)
        self.assertEqual(keys[4], self.book.token_account(BSOL_MINT))
        self.assertEqual(keys[-2:], [self.bsol.address, self.bsol.oracle_address])
        self.assertTrue(instruction.accounts[2].is_signer)
        self.assertFalse(instruction.accounts[-1].is_writable)
        self.assertEqual(bytes(instruction.data), anchor_discriminator("lending_account_deposit") + struct.pack("<Q", 5))

    def test_borrow_signs_with_the_vault_authority(self) -> None:
        instruction = self.builder.lending_borrow(self.account, mint=USDC_MINT, amount=7)

        keys = [str(meta.pubkey) for meta in instruction.accounts]
        self.assertEqual(keys[5], self.book.liquidity_vault_authority(self.usdc.address))
        self.assertEqual(keys[6], self.usdc.liquidity_vault)
        self.assertEqual(bytes(instruction.data)[:8], anchor_discriminator("lending_account_borrow"))

    def test_pool_deposit_encodes_three_amounts(self) -> None:
        instruction = self.builder.pool_deposit(
            self.pool,
            minimum_pool_token_amount=95,
            token_a_amount=100,
            token_b_amount=0,
        )

        self.assertEqual(len(instruction.accounts), 16)
        self.assertEqual(str(instruction.accounts[0].pubkey), self.pool.address)
        self.assertEqual(bytes(instruction.data)[8:], struct.pack("<3Q", 95, 100, 0))

    def test_farm_deposit_uses_derived_user_account(self) -> None:
        instruction = self.builder.farm_deposit(mint=USDC_MINT, amount=11)

        expected_user, _ = Pubkey.find_program_address(
            [bytes(Pubkey.from_string(self.wallet)), bytes(Pubkey.from_string(self.farm_address))],
            Pubkey.from_string(FARM_PROGRAM_ID),
        )
        self.assertEqual(str(instruction.accounts[2].pubkey), str(expected_user))
        self.assertEqual(str(instruction.accounts[4].pubkey), self.book.token_account(self.pool.lp_mint))


class AddressBookTests(unittest.TestCase):
    def _payload(self) -> dict:
        pool = _pool()
        raw_pool = {key: getattr(pool, key) for key in PoolAddresses.__dataclass_fields__}
        return {
            "pools": [{"input_mint": USDC_MINT, **raw_pool}],
            "farms": [{"input_mint": USDC_MINT, "address": _unique()}],
            "borrow_mints": [USDT_MINT, USDC_MINT],
        }

    def test_from_dict_keys_pools_and_farms_by_input_mint(self) -> None:
        wallet = _unique()

        book = AddressBook.from_dict(self._payload(), wallet=wallet)

        self.assertEqual(book.borrow_mints, (USDT_MINT, USDC_MINT))
        self.assertEqual(book.pool_for(USDC_MINT).a_token_mint, USDC_MINT)
        farm = book.farm_for(USDC_MINT)
        self.assertEqual(farm, derive_farm_addresses(wallet, farm.address))
        with self.assertRaises(AddressBookError):
            book.pool_for(UXD_MINT)

    def test_incomplete_pool_entry_is_rejected(self) -> None:
        payload = self._payload()
        del payload["pools"][0]["lp_mint"]

        with self.assertRaises(AddressBookError):
            AddressBook.from_dict(payload, wallet=_unique())

    def test_load_reads_json_file(self) -> None:
        with tempfile.TemporaryDirectory() as directory:
            path = Path(directory) / "address_book.json"
            path.write_text(json.dumps(self._payload()), encoding="utf-8")

            book = AddressBook.load(path, wallet=_unique())

        self.assertIn(USDC_MINT, book.pools)

    def test_load_rejects_missing_file(self) -> None:
        with self.assertRaises(AddressBookError):
            AddressBook.load("/nonexistent/address_book.json", wallet=_unique())

    def test_pool_side_follows_the_supplied_mint(self) -> None:
        pool = _pool(a_token_mint=USDT_MINT, b_token_mint=USDC_MINT)

        self.assertEqual(pool.get_token_for_deposit(10, USDC_MINT), (0, 10))
        self.assertEqual(pool.get_token_for_deposit(10, USDT_MINT), (10, 0))


class LeverageLoopStrategyTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.wallet = str(Keypair().pubkey())
        self.pool = _pool()
        self.book = AddressBook(
            wallet=self.wallet,
            pools={USDC_MINT: self.pool},
            farms={USDC_MINT: derive_farm_addresses(self.wallet, _unique())},
        )
        self.margin_address = _unique()
        self.rpc = MagicMock()
        self.rpc.get_lookup_tables = AsyncMock(return_value=[])
        self.cache = MagicMock()
        self.pipeline = MagicMock()
        self.swap_client = MagicMock()
        self.executed: list[tuple[str, list]] = []

    def _install_banks(self, *, cheap_mint: str) -> None:
        self.bsol = _bank(mint=BSOL_MINT, mint_decimals=9)
        self.stables = {
            mint: _bank(
                mint=mint,
                mint_decimals=6,
                asset_shares=100,
                liability_shares=0 if mint == cheap_mint else 90,
            )
            for mint in (USDC_MINT, USDT_MINT, UXD_MINT)
        }
        banks = [self.bsol, *self.stables.values()]
        margin_raw = encode_margin_account(
            group=self.book.lending_group,
            authority=self.wallet,
            balances=[],
        )
        self.rpc.get_program_accounts = AsyncMock(
            side_effect=[
                [(self.margin_address, margin_raw)],
                [(bank.address, encode_bank(bank)) for bank in banks],
            ]
        )
        prices = {self.bsol.oracle_address: _feed(20)}
        prices.update({bank.oracle_address: _feed(1) for bank in self.stables.values()})
        self.cache.snapshot = AsyncMock(return_value=prices)

    def _install_pipeline(self, metas: dict[str, dict]) -> None:
        async def execute(instructions, *, lookup_tables=(), label="transaction"):
            self.executed.append((label, list(instructions)))
            return _confirmed(label, f"sig-{label}", metas.get(label))

        self.pipeline.execute = AsyncMock(side_effect=execute)

    def _strategy(self, *, collateral_amount: int = 10_000_000_000) -> LeverageLoopStrategy:
        return LeverageLoopStrategy(
            logger=logging.getLogger("test.strategy"),
            rpc=self.rpc,
            cache=self.cache,
            pipeline=self.pipeline,
            swap_client=self.swap_client,
            instructions=InstructionBuilder(self.book),
            config=StrategyConfig(collateral_amount=collateral_amount),
        )

    async def test_quote_mint_borrow_goes_straight_to_the_pool(self) -> None:
        self._install_banks(cheap_mint=USDC_MINT)
        self._install_pipeline(
            {"pool_deposit": {"preTokenBalances": [], "postTokenBalances": [_token_balance(self.wallet, self.pool.lp_mint, 5_000)]}}
        )

        result = await self._strategy().run()

        # 10 bSOL * 0.75 * 20 USD = 150 USD free, 90% of it over a 1.25 liability weight.
        self.assertEqual(result.deposited_amount, 10_000_000_000)
        self.assertEqual(result.borrow_mint, USDC_MINT)
        self.assertEqual(result.borrowed_amount, 108_000_000)
        self.assertEqual(result.pool_supply_amount, 108_000_000)
        self.assertEqual(result.lp_amount, 5_000)
        self.assertEqual([label for label, _ in self.executed], ["lending_deposit_borrow", "pool_deposit", "farm_deposit"])
        self.assertEqual(len(self.executed[0][1]), 2)
        pool_instruction = self.executed[1][1][0]
        self.assertEqual(bytes(pool_instruction.data)[8:], struct.pack("<3Q", 102_600_000, 108_000_000, 0))
        farm_instruction = self.executed[2][1][0]
        self.assertEqual(bytes(farm_instruction.data)[8:], struct.pack("<Q", 5_000))
        self.swap_client.quote.assert_not_called()

    async def test_other_stable_is_swapped_to_the_quote_mint(self) -> None:
        self._install_banks(cheap_mint=USDT_MINT)
        self._install_pipeline(
            {
                "swap": {
                    "preTokenBalances": [_token_balance(self.wallet, USDC_MINT, 1_000)],
                    "postTokenBalances": [_token_balance(self.wallet, USDC_MINT, 107_001_000)],
                },
                "pool_deposit": {"preTokenBalances": [], "postTokenBalances": [_token_balance(self.wallet, self.pool.lp_mint, 4_000)]},
            }
        )
        quote = SwapQuote(
            input_mint=USDT_MINT,
            output_mint=USDC_MINT,
            amount_in=108_000_000,
            amount_out=107_000_000,
            min_amount_out=106_500_000,
            slippage_bps=50,
            quote_response={},
        )
        self.swap_client.quote = AsyncMock(return_value=quote)
        self.swap_client.swap_instructions = AsyncMock(
            return_value=SwapInstructions(compute_budget=(), instructions=(MagicMock(),), lookup_table_addresses=("table",))
        )

        result = await self._strategy().run()

        self.assertEqual(result.borrow_mint, USDT_MINT)
        self.assertEqual(result.pool_supply_amount, 107_000_000)
        self.assertEqual(result.lp_amount, 4_000)
        self.assertEqual([label for label, _ in self.executed], ["lending_deposit_borrow", "swap", "pool_deposit", "farm_deposit"])
        self.swap_client.quote.assert_awaited_once_with(
            input_mint=USDT_MINT,
            output_mint=USDC_MINT,
            amount=108_000_000,
            slippage_bps=50,
        )
        self.rpc.get_lookup_tables.assert_awaited_once_with(["table"])

    async def test_nothing_to_borrow_stops_after_planning(self) -> None:
        self._install_banks(cheap_mint=USDC_MINT)
        self._install_pipeline({})

        result = await self._strategy(collateral_amount=0).run()

        self.assertEqual(result.deposited_amount, 0)
        self.assertEqual(result.borrowed_amount, 0)
        self.assertEqual(self.executed, [])

    async def test_pool_minimum_applies_when_quote_mint_is_token_b(self) -> None:
        pool = _pool(a_token_mint=USDT_MINT, b_token_mint=USDC_MINT)
        self.book = AddressBook(wallet=self.wallet, pools={USDC_MINT: pool})
        self._install_pipeline(
            {"pool_deposit": {"preTokenBalances": [], "postTokenBalances": [_token_balance(self.wallet, pool.lp_mint, 7)]}}
        )

        received, _ = await self._strategy().supply_pool(108_000_000)

        self.assertEqual(received, 7)
        pool_instruction = self.executed[0][1][0]
        self.assertEqual(bytes(pool_instruction.data)[8:], struct.pack("<3Q", 102_600_000, 0, 108_000_000))

    async def test_pool_deposit_without_lp_increase_is_an_error(self) -> None:
        self._install_banks(cheap_mint=USDC_MINT)
        self._install_pipeline({})

        with self.assertRaises(StrategyError):
            await self._strategy().run()

    async def test_missing_margin_account_is_an_error(self) -> None:
        self.rpc.get_program_accounts = AsyncMock(return_value=[])

        with self.assertRaises(StrategyError):
            await self._strategy().load_state()

    async def test_bank_with_unknown_layout_is_skipped(self) -> None:
        good = _bank(mint=USDC_MINT, mint_decimals=6)
        self.rpc.get_program_accounts = AsyncMock(
            return_value=[(good.address, encode_bank(good)), (_unique(), b"\x00" * 64)]
        )

        banks = await self._strategy().load_banks()

        self.assertEqual([bank.address for bank in banks], [good.address])


if __name__ == "__main__":
    unittest.main()
