from __future__ import annotations

import asyncio
import contextlib
import signal

from dotenv import load_dotenv

from leverloop.bot_runtime import (
    AppSettings,
    bootstrap_dependencies,
    load_keypair,
    run_leverage_loop,
    setup_logger,
)
from leverloop.common import log_event
from leverloop.execution import SolanaRpc, TransactionBuilder, TransactionPipeline
from leverloop.oracles import OracleStateCache
from leverloop.storage import OutcomeJournal
from leverloop.strategy import AddressBook, InstructionBuilder, LeverageLoopStrategy, StrategyConfig
from leverloop.swap import JupiterSwapClient


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    if not app_settings.solana_rpc_url:
        raise RuntimeError("SOLANA_RPC_URL is required.")
    if app_settings.collateral_amount <= 0:
        raise RuntimeError("COLLATERAL_AMOUNT must be a positive native token amount.")

    signer = load_keypair(app_settings.private_key)
    book = AddressBook.load(app_settings.address_book_path, wallet=str(signer.pubkey()))

    rpc = SolanaRpc(
        logger=logger,
        rpc_url=app_settings.solana_rpc_url,
        timeout_seconds=app_settings.rpc_timeout_seconds,
    )
    swap_client = JupiterSwapClient(
        logger=logger,
        api_base_url=app_settings.swap_api_url,
        api_key=app_settings.swap_api_key,
        timeout_seconds=app_settings.rpc_timeout_seconds,
    )
    journal = (
        OutcomeJournal(
            logger=logger,
            redis_url=app_settings.redis_url,
            stream_key=app_settings.redis_outcome_stream,
        )
        if app_settings.redis_url
        else None
    )
    cache = OracleStateCache(logger=logger)
    pipeline = TransactionPipeline(
        logger=logger,
        rpc=rpc,
        builder=TransactionBuilder(
            rpc=rpc,
            signer=signer,
            compute_unit_limit=app_settings.tx_compute_unit_limit,
            compute_unit_price_micro_lamports=app_settings.tx_compute_unit_price_micro_lamports,
        ),
        max_attempts=app_settings.tx_max_attempts,
        poll_interval_seconds=app_settings.tx_poll_interval_seconds,
        validity_seconds=app_settings.tx_validity_seconds,
        journal=journal,
    )
    strategy = LeverageLoopStrategy(
        logger=logger,
        rpc=rpc,
        cache=cache,
        pipeline=pipeline,
        swap_client=swap_client,
        instructions=InstructionBuilder(book),
        config=StrategyConfig(
            collateral_amount=app_settings.collateral_amount,
            borrow_fraction=app_settings.borrow_fraction,
            slippage_bps=app_settings.swap_slippage_bps,
            pool_min_out_bps=app_settings.pool_min_out_bps,
            oracle_max_age_seconds=app_settings.oracle_max_age_seconds,
        ),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        rpc=rpc,
        swap_client=swap_client,
        journal=journal,
    )
    log_event(
        logger,
        level="info",
        event="bot_started",
        message="Leverage loop process started",
        wallet=book.wallet,
        collateral_mint=book.collateral_mint,
        collateral_amount=app_settings.collateral_amount,
        journal_enabled=journal is not None,
    )

    try:
        await run_leverage_loop(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            rpc=rpc,
            cache=cache,
            strategy=strategy,
        )
    finally:
        with contextlib.suppress(Exception):
            await swap_client.close()
        with contextlib.suppress(Exception):
            await rpc.close()
        if journal is not None:
            with contextlib.suppress(Exception):
                await journal.close()

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
