from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any

import aiohttp
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from leverloop.common import AccountDataError, decode_account_data, log_event

MAX_MULTIPLE_ACCOUNTS = 100
LOOKUP_TABLE_META_SIZE = 56
RETRYABLE_HTTP_STATUSES = {408, 429, 500, 502, 503, 504}
# Node is behind / slot skipped / block not yet available.
RETRYABLE_RPC_CODES = {-32004, -32005, -32007, -32009, -32014, -32016}


class RpcMethodError(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        message: str,
        status: int | None = None,
        code: int | None = None,
        data: Any = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.status = status
        self.code = code
        self.data = data
        if retryable is None:
            retryable = status in RETRYABLE_HTTP_STATUSES or code in RETRYABLE_RPC_CODES
        self.retryable = retryable


def is_retryable_rpc_error(error: BaseException) -> bool:
    if isinstance(error, RpcMethodError):
        return error.retryable
    return isinstance(
        error,
        (
            aiohttp.ClientError,
            asyncio.TimeoutError,
            json.JSONDecodeError,
            SolanaRpcException,
        ),
    )


def _error_payload_to_message(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
    return str(payload)


def decode_lookup_table(address: str, data: bytes) -> AddressLookupTableAccount:
    if len(data) < LOOKUP_TABLE_META_SIZE or (len(data) - LOOKUP_TABLE_META_SIZE) % 32:
        raise AccountDataError(f"invalid address lookup table account {address}: {len(data)} bytes")
    addresses = [
        Pubkey.from_bytes(data[offset : offset + 32])
        for offset in range(LOOKUP_TABLE_META_SIZE, len(data), 32)
    ]
    return AddressLookupTableAccount(Pubkey.from_string(address), addresses)


class SolanaRpc:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        commitment: str = "confirmed",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._commitment = commitment
        self._timeout_seconds = timeout_seconds
        self._request_ids = itertools.count(1)
        self._http_session: aiohttp.ClientSession | None = None
        self._client: AsyncClient | None = None

    @property
    def commitment(self) -> str:
        return self._commitment

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)
        if self._client is None:
            self._client = AsyncClient(
                self._rpc_url,
                commitment=Commitment(self._commitment),
                timeout=self._timeout_seconds,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self.get_latest_blockhash()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params or [],
        }

        try:
            async with self._http_session.post(self._rpc_url, json=payload) as response:
                status_code = response.status
                raw_text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise RpcMethodError(
                method=method,
                message=f"RPC transport error for {method}: {error}",
                retryable=True,
            ) from error

        try:
            body = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError as error:
            raise RpcMethodError(
                method=method,
                status=status_code,
                message=f"RPC returned a non-JSON body for {method}: status={status_code}",
                retryable=True,
            ) from error

        if status_code >= 400:
            raise RpcMethodError(
                method=method,
                status=status_code,
                data=body,
                message=f"RPC call failed: method={method} status={status_code}",
            )
        if not isinstance(body, dict):
            raise RpcMethodError(method=method, message=f"Invalid RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            code = error_payload.get("code") if isinstance(error_payload, dict) else None
            raise RpcMethodError(
                method=method,
                code=code if isinstance(code, int) else None,
                data=error_payload,
                message=f"RPC error for {method}: {_error_payload_to_message(error_payload)}",
            )

        return body.get("result")

    def _require_client(self) -> AsyncClient:
        if self._client is None:
            raise RuntimeError("Solana RPC client is not connected.")
        return self._client

    async def get_latest_blockhash(self) -> tuple[Hash, int]:
        client = self._require_client()
        try:
            response = await client.get_latest_blockhash(commitment=Commitment(self._commitment))
        except (SolanaRpcException, RPCException) as error:
            raise RpcMethodError(
                method="getLatestBlockhash",
                message=f"Failed to fetch latest blockhash: {error}",
                retryable=isinstance(error, SolanaRpcException),
            ) from error
        return response.value.blockhash, response.value.last_valid_block_height

    async def send_transaction(self, transaction: VersionedTransaction, *, max_retries: int = 20) -> str:
        client = self._require_client()
        opts = TxOpts(skip_preflight=True, max_retries=max_retries)
        try:
            response = await client.send_raw_transaction(bytes(transaction), opts=opts)
        except (SolanaRpcException, RPCException) as error:
            raise RpcMethodError(
                method="sendTransaction",
                message=f"Failed to submit transaction: {error}",
                retryable=isinstance(error, SolanaRpcException),
            ) from error
        return str(response.value)

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        result = await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "base64",
                    "commitment": self._commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise RpcMethodError(
                method="getTransaction",
                message=f"Unexpected getTransaction payload: {result}",
                retryable=True,
            )
        return result

    async def get_multiple_accounts(self, addresses: list[str]) -> dict[str, bytes | None]:
        accounts: dict[str, bytes | None] = {}
        for start in range(0, len(addresses), MAX_MULTIPLE_ACCOUNTS):
            chunk = addresses[start : start + MAX_MULTIPLE_ACCOUNTS]
            result = await self.call(
                "getMultipleAccounts",
                [chunk, {"encoding": "base64", "commitment": self._commitment}],
            )
            values = result.get("value") if isinstance(result, dict) else None
            if not isinstance(values, list) or len(values) != len(chunk):
                raise RpcMethodError(
                    method="getMultipleAccounts",
                    message=f"Unexpected getMultipleAccounts payload: {result}",
                )
            for address, value in zip(chunk, values):
                accounts[address] = decode_account_data(value) if isinstance(value, dict) else None
        return accounts

    async def get_program_accounts(
        self,
        program_id: str,
        *,
        filters: list[dict[str, Any]] | None = None,
    ) -> list[tuple[str, bytes]]:
        result = await self.call(
            "getProgramAccounts",
            [
                program_id,
                {
                    "encoding": "base64",
                    "commitment": self._commitment,
                    "filters": filters or [],
                },
            ],
        )
        if not isinstance(result, list):
            raise RpcMethodError(
                method="getProgramAccounts",
                message=f"Unexpected getProgramAccounts payload: {result}",
            )

        accounts: list[tuple[str, bytes]] = []
        for item in result:
            if not isinstance(item, dict) or not isinstance(item.get("account"), dict):
                continue
            accounts.append((str(item.get("pubkey")), decode_account_data(item["account"])))
        return accounts

    async def get_lookup_tables(self, addresses: list[str]) -> list[AddressLookupTableAccount]:
        unique = list(dict.fromkeys(address for address in addresses if address))
        if not unique:
            return []

        raw_accounts = await self.get_multiple_accounts(unique)
        tables: list[AddressLookupTableAccount] = []
        for address in unique:
            data = raw_accounts.get(address)
            if data is None:
                log_event(
                    self._logger,
                    level="warning",
                    event="lookup_table_missing",
                    message="Address lookup table account was not found; skipping it",
                    lookup_table=address,
                )
                continue
            tables.append(decode_lookup_table(address, data))
        return tables
