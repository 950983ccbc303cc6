from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

import aiohttp

from leverloop.common import log_event, wait_with_stop

from .cache import OracleStateCache, OracleUpdate
from .codec import decode_price_feed
from .feeds import OracleDecodeError, OracleSetup, OracleValidationError, PriceFeed

if TYPE_CHECKING:
    from leverloop.execution.rpc import SolanaRpc

MAX_RECONNECT_BACKOFF_SECONDS = 30.0


@dataclass(slots=True, frozen=True)
class TrackedOracle:
    setup: OracleSetup
    address: str


def compute_reconnect_backoff_seconds(
    *,
    failures: int,
    base_seconds: float,
    max_seconds: float = MAX_RECONNECT_BACKOFF_SECONDS,
) -> float:
    if failures <= 0:
        return 0.0
    delay_seconds = min(max_seconds, base_seconds * float(2 ** min(16, failures - 1)))
    jitter_seconds = random.uniform(0.0, max(0.1, delay_seconds * 0.25))
    return min(max_seconds, delay_seconds + jitter_seconds)


class OracleSubscriber:
    """Feeds the oracle cache: one bulk fetch at startup, then one
    ``accountSubscribe`` websocket per oracle partition."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: SolanaRpc,
        cache: OracleStateCache,
        ws_url: str,
        oracles: Iterable[TrackedOracle],
        commitment: str = "confirmed",
        backoff_seconds: float = 1.0,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._cache = cache
        self._ws_url = ws_url
        self._commitment = commitment
        self._backoff_seconds = max(0.1, backoff_seconds)
        self._oracles = list(dict.fromkeys(oracle for oracle in oracles if oracle.setup != OracleSetup.NONE))
        self._request_ids = itertools.count(1)
        self._session: aiohttp.ClientSession | None = None

    @property
    def oracles(self) -> list[TrackedOracle]:
        return list(self._oracles)

    def partitions(self) -> dict[OracleSetup, list[str]]:
        grouped: dict[OracleSetup, list[str]] = {}
        for oracle in self._oracles:
            grouped.setdefault(oracle.setup, []).append(oracle.address)
        return grouped

    async def connect(self) -> None:
        if not self._ws_url:
            raise ValueError("SOLANA_WS_URL is required.")
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _decode(self, setup: OracleSetup, address: str, raw: Any) -> PriceFeed | None:
        try:
            feed = decode_price_feed(setup, raw)
            feed.price_range()
        except (OracleDecodeError, OracleValidationError) as error:
            log_event(
                self._logger,
                level="warning",
                event="oracle_update_dropped",
                message="Oracle payload rejected; dropping update",
                oracle=address,
                setup=setup.name,
                error=str(error),
            )
            return None
        return feed

    async def bootstrap(self) -> int:
        if not self._oracles:
            return 0

        accounts = await self._rpc.get_multiple_accounts([oracle.address for oracle in self._oracles])
        loaded = 0
        for oracle in self._oracles:
            data = accounts.get(oracle.address)
            if data is None:
                log_event(
                    self._logger,
                    level="warning",
                    event="oracle_account_missing",
                    message="Tracked oracle account does not exist",
                    oracle=oracle.address,
                    setup=oracle.setup.name,
                )
                continue
            feed = self._decode(oracle.setup, oracle.address, data)
            if feed is None:
                continue
            await self._cache.apply(OracleUpdate(address=oracle.address, feed=feed))
            loaded += 1

        log_event(
            self._logger,
            level="info",
            event="oracle_bootstrap_completed",
            message="Oracle cache populated from bulk fetch",
            loaded=loaded,
            requested=len(self._oracles),
            tracked=await self._cache.tracked(),
        )
        return loaded

    async def run(self, stop_event: asyncio.Event) -> None:
        await self.connect()
        tasks = [
            asyncio.create_task(
                self._stream_partition(setup, addresses, stop_event),
                name=f"oracle-stream-{setup.name.lower()}",
            )
            for setup, addresses in self.partitions().items()
        ]
        try:
            await stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _stream_partition(
        self,
        setup: OracleSetup,
        addresses: list[str],
        stop_event: asyncio.Event,
    ) -> None:
        failures = 0
        while not stop_event.is_set():
            try:
                delivered = await self._consume(setup, addresses)
                failures = 1 if delivered else failures + 1
                log_event(
                    self._logger,
                    level="warning",
                    event="oracle_stream_closed",
                    message="Oracle subscription stream closed by server",
                    setup=setup.name,
                    delivered=delivered,
                )
            except asyncio.CancelledError:
                raise
            except Exception as error:
                failures += 1
                log_event(
                    self._logger,
                    level="warning",
                    event="oracle_stream_error",
                    message="Oracle subscription stream failed",
                    setup=setup.name,
                    failures=failures,
                    error=str(error),
                )

            delay_seconds = compute_reconnect_backoff_seconds(
                failures=failures,
                base_seconds=self._backoff_seconds,
            )
            if await wait_with_stop(stop_event, delay_seconds):
                return

    async def _consume(self, setup: OracleSetup, addresses: list[str]) -> int:
        if self._session is None:
            raise RuntimeError("Oracle subscriber is not connected.")

        pending: dict[int, str] = {}
        subscriptions: dict[int, str] = {}
        delivered = 0

        async with self._session.ws_connect(self._ws_url, heartbeat=30.0) as ws:
            for address in addresses:
                request_id = next(self._request_ids)
                pending[request_id] = address
                await ws.send_json(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "method": "accountSubscribe",
                        "params": [address, {"encoding": "base64", "commitment": self._commitment}],
                    }
                )
            log_event(
                self._logger,
                level="info",
                event="oracle_stream_connected",
                message="Oracle subscription stream connected",
                setup=setup.name,
                oracles=len(addresses),
            )

            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    try:
                        payload = json.loads(message.data)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(payload, dict) and self.handle_message(
                        setup,
                        payload,
                        pending=pending,
                        subscriptions=subscriptions,
                    ):
                        delivered += 1
                elif message.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break

        return delivered

    def handle_message(
        self,
        setup: OracleSetup,
        payload: dict[str, Any],
        *,
        pending: dict[int, str],
        subscriptions: dict[int, str],
    ) -> bool:
        """Route one websocket frame; returns True when an update was published."""
        request_id = payload.get("id")
        if request_id is not None and request_id in pending:
            address = pending.pop(request_id)
            if payload.get("error") or not isinstance(payload.get("result"), int):
                log_event(
                    self._logger,
                    level="warning",
                    event="oracle_subscribe_rejected",
                    message="Oracle account subscription was rejected",
                    oracle=address,
                    setup=setup.name,
                    error=payload.get("error"),
                )
                return False
            subscriptions[payload["result"]] = address
            return False

        if payload.get("method") != "accountNotification":
            return False
        params = payload.get("params")
        if not isinstance(params, dict):
            return False
        address = subscriptions.get(params.get("subscription"))
        if address is None:
            return False

        result = params.get("result")
        value = result.get("value") if isinstance(result, dict) else None
        feed = self._decode(setup, address, value)
        if feed is None:
            return False
        self._cache.publish(OracleUpdate(address=address, feed=feed))
        return True
