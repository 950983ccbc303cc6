from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from redis import asyncio as redis
from redis.asyncio.client import Redis

from leverloop.common import log_event
from leverloop.execution import ExecutionOutcome, ExecutionReport

DEFAULT_OUTCOME_STREAM = "leverloop:outcomes"
DEFAULT_STREAM_MAXLEN = 10_000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


class OutcomeJournal:
    """Append-only Redis stream of terminal transaction outcomes."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        redis_url: str,
        stream_key: str = DEFAULT_OUTCOME_STREAM,
        maxlen: int = DEFAULT_STREAM_MAXLEN,
    ) -> None:
        self._logger = logger
        self._redis_url = redis_url
        self._stream_key = stream_key
        self._maxlen = max(1, maxlen)
        self._redis: Redis | None = None

    @property
    def stream_key(self) -> str:
        return self._stream_key

    async def connect(self) -> None:
        self._redis = redis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            stream=self._stream_key,
        )

    async def healthcheck(self) -> None:
        await self._require_redis().ping()

    async def record(self, report: ExecutionReport, outcome: ExecutionOutcome | None) -> None:
        redis_client = self._require_redis()
        fields = {
            "label": report.label,
            "status": report.status,
            "signature": outcome.signature if outcome is not None else "",
            "signatures": report.signatures,
            "attempts": len(report.outcomes),
            "report": report.to_dict(),
            "recorded_at": _now_iso(),
        }
        await redis_client.xadd(
            self._stream_key,
            {key: _serialize_for_redis(value) for key, value in fields.items()},
            maxlen=self._maxlen,
            approximate=True,
        )

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
