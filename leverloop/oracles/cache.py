from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Iterable

from leverloop.common import log_event

from .feeds import OracleSetup, PriceFeed


class MissingOracleError(LookupError):
    def __init__(self, *, setup: OracleSetup, address: str) -> None:
        super().__init__(f"no price cached for oracle {address} ({setup.name})")
        self.setup = setup
        self.address = address


@dataclass(slots=True, frozen=True)
class OracleUpdate:
    address: str
    feed: PriceFeed

    @property
    def setup(self) -> OracleSetup:
        return self.feed.setup


@dataclass(slots=True)
class _Partition:
    setup: OracleSetup
    entries: dict[str, PriceFeed] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    queue: asyncio.Queue[OracleUpdate] = field(default_factory=asyncio.Queue)
    writer: asyncio.Task[None] | None = None
    applied: int = 0


class OracleStateCache:
    """Latest normalized feed per oracle address, one partition per oracle type.

    Each partition has its own lock and exactly one writer task draining an
    ordered update queue. Readers only ever hold a lock for a single lookup.
    """

    def __init__(self, *, logger: logging.Logger) -> None:
        self._logger = logger
        self._partitions = {
            OracleSetup.PYTH_EMA: _Partition(setup=OracleSetup.PYTH_EMA),
            OracleSetup.SWITCHBOARD_V2: _Partition(setup=OracleSetup.SWITCHBOARD_V2),
        }

    def _partition(self, setup: OracleSetup) -> _Partition:
        partition = self._partitions.get(setup)
        if partition is None:
            raise ValueError(f"oracle setup has no cache partition: {setup!r}")
        return partition

    async def apply(self, update: OracleUpdate) -> None:
        partition = self._partition(update.setup)
        async with partition.lock:
            partition.entries[update.address] = update.feed
            partition.applied += 1

    def publish(self, update: OracleUpdate) -> None:
        self._partition(update.setup).queue.put_nowait(update)

    async def get(self, setup: OracleSetup, address: str) -> PriceFeed | None:
        partition = self._partition(setup)
        async with partition.lock:
            return partition.entries.get(address)

    async def snapshot(self, requests: Iterable[tuple[OracleSetup, str]]) -> dict[str, PriceFeed]:
        prices: dict[str, PriceFeed] = {}
        for setup, address in requests:
            if address in prices:
                continue
            feed = await self.get(setup, address)
            if feed is None:
                raise MissingOracleError(setup=setup, address=address)
            prices[address] = feed
        return prices

    async def tracked(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for setup, partition in self._partitions.items():
            async with partition.lock:
                counts[setup.name.lower()] = len(partition.entries)
        return counts

    def start(self) -> None:
        for partition in self._partitions.values():
            if partition.writer is None or partition.writer.done():
                partition.writer = asyncio.create_task(
                    self._drain(partition),
                    name=f"oracle-cache-writer-{partition.setup.name.lower()}",
                )

    async def stop(self) -> None:
        writers = [partition.writer for partition in self._partitions.values() if partition.writer is not None]
        for writer in writers:
            writer.cancel()
        for writer in writers:
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        for partition in self._partitions.values():
            partition.writer = None

    async def join(self) -> None:
        """Wait until every published update has been applied."""
        for partition in self._partitions.values():
            await partition.queue.join()

    async def _drain(self, partition: _Partition) -> None:
        while True:
            update = await partition.queue.get()
            try:
                await self.apply(update)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="oracle_update_dropped",
                    message="Failed to apply oracle update; dropping it",
                    oracle=update.address,
                    setup=partition.setup.name,
                    error=str(error),
                )
            finally:
                partition.queue.task_done()
