from __future__ import annotations

import asyncio
import contextlib
import logging

from leverloop.common import guarded_call, log_event, wait_with_stop
from leverloop.execution import (
    SolanaRpc,
    TransactionFailedError,
    TransactionRetriesExhaustedError,
)
from leverloop.oracles import OracleStateCache, OracleSubscriber, TrackedOracle
from leverloop.storage import OutcomeJournal
from leverloop.strategy import LeverageLoopStrategy, StrategyResult
from leverloop.swap import JupiterSwapClient

from .settings import AppSettings

STATUS_INTERVAL_SECONDS = 300.0


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    rpc: SolanaRpc,
    swap_client: JupiterSwapClient,
    journal: OutcomeJournal | None,
) -> None:
    attempt = 0
    while not stop_event.is_set():
        attempt += 1
        try:
            await rpc.connect()
            await rpc.healthcheck()
            await swap_client.connect()
            if journal is not None:
                await journal.connect()
                await journal.healthcheck()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                attempt=attempt,
                error=str(error),
            )
            await guarded_call(
                rpc.close,
                logger=logger,
                event="bootstrap_rpc_close_failed",
                message="Failed to close RPC gateway during bootstrap retry",
            )
            await guarded_call(
                swap_client.close,
                logger=logger,
                event="bootstrap_swap_close_failed",
                message="Failed to close swap client during bootstrap retry",
            )
            if journal is not None:
                await guarded_call(
                    journal.close,
                    logger=logger,
                    event="bootstrap_journal_close_failed",
                    message="Failed to close outcome journal during bootstrap retry",
                )

            if attempt >= app_settings.bootstrap_max_attempts:
                raise RuntimeError(f"Dependency bootstrap failed after {attempt} attempts.") from error
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def run_leverage_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    rpc: SolanaRpc,
    cache: OracleStateCache,
    strategy: LeverageLoopStrategy,
) -> StrategyResult | None:
    """Start the oracle feeds, run one strategy pass and keep the feeds alive until shutdown."""
    banks = await strategy.load_banks()
    subscriber = OracleSubscriber(
        logger=logger,
        rpc=rpc,
        cache=cache,
        ws_url=app_settings.solana_ws_url,
        oracles=[TrackedOracle(setup=bank.oracle_setup, address=bank.oracle_address) for bank in banks],
        backoff_seconds=app_settings.subscription_backoff_seconds,
    )

    cache.start()
    stream_task: asyncio.Task[None] | None = None
    result: StrategyResult | None = None
    try:
        await subscriber.connect()
        await subscriber.bootstrap()
        stream_task = asyncio.create_task(subscriber.run(stop_event), name="oracle-subscriber")

        try:
            result = await strategy.run()
        except (TransactionFailedError, TransactionRetriesExhaustedError) as error:
            log_event(
                logger,
                level="error",
                event="strategy_aborted",
                message="Strategy run aborted by a transaction outcome",
                error=str(error),
                signatures=getattr(error, "signatures", None) or [getattr(error, "signature", "")],
            )
            raise
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="strategy_aborted",
                message="Strategy run aborted",
                error=str(error),
            )
            raise

        while not stop_event.is_set():
            log_event(
                logger,
                level="info",
                event="oracle_cache_status",
                message="Oracle feeds running",
                tracked=await cache.tracked(),
            )
            if await wait_with_stop(stop_event, STATUS_INTERVAL_SECONDS):
                break
    finally:
        if stream_task is not None:
            stream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stream_task
        await guarded_call(
            subscriber.close,
            logger=logger,
            event="subscriber_close_failed",
            message="Failed to close oracle subscriber",
        )
        await cache.stop()

    return result
