from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from leverloop.common import log_event

DEFAULT_SWAP_API_URL = "https://api.jup.ag/swap/v1"
RETRYABLE_HTTP_STATUSES = {408, 429, 500, 502, 503, 504}


class SwapApiError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        status: int | None = None,
        data: Any = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status
        self.data = data
        self.retryable = retryable


@dataclass(slots=True, frozen=True)
class SwapQuote:
    input_mint: str
    output_mint: str
    amount_in: int
    amount_out: int
    min_amount_out: int
    slippage_bps: int
    quote_response: dict[str, Any]


@dataclass(slots=True, frozen=True)
class SwapInstructions:
    compute_budget: tuple[Instruction, ...]
    instructions: tuple[Instruction, ...]
    lookup_table_addresses: tuple[str, ...]

    def all_instructions(self) -> list[Instruction]:
        return [*self.compute_budget, *self.instructions]


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "details"):
            message = payload.get(key)
            if message:
                return str(message)
    return str(payload)


def decode_instruction(raw: Any, *, section: str) -> Instruction:
    if not isinstance(raw, dict):
        raise SwapApiError(f"Invalid instruction payload in {section}: {raw}", endpoint=section)

    program_id = str(raw.get("programId") or "").strip()
    if not program_id:
        raise SwapApiError(f"Instruction programId is missing in {section}", endpoint=section)

    raw_accounts = raw.get("accounts")
    if not isinstance(raw_accounts, list):
        raise SwapApiError(f"Instruction accounts are missing in {section}", endpoint=section)

    metas: list[AccountMeta] = []
    for idx, account in enumerate(raw_accounts):
        if not isinstance(account, dict):
            raise SwapApiError(f"Instruction account[{idx}] is invalid in {section}: {account}", endpoint=section)
        pubkey = str(account.get("pubkey") or "").strip()
        if not pubkey:
            raise SwapApiError(f"Instruction account[{idx}] pubkey is missing in {section}", endpoint=section)
        metas.append(
            AccountMeta(
                pubkey=Pubkey.from_string(pubkey),
                is_signer=bool(account.get("isSigner")),
                is_writable=bool(account.get("isWritable")),
            )
        )

    try:
        data = base64.b64decode(str(raw.get("data") or ""), validate=True)
    except (binascii.Error, ValueError) as error:
        raise SwapApiError(f"Instruction data decode failed in {section}: {error}", endpoint=section) from error

    return Instruction(Pubkey.from_string(program_id), data, metas)


def decode_instruction_list(raw: Any, *, section: str) -> list[Instruction]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise SwapApiError(f"Instruction list is invalid in {section}: {raw}", endpoint=section)
    return [decode_instruction(item, section=f"{section}[{index}]") for index, item in enumerate(raw)]


def extract_swap_instructions(payload: dict[str, Any]) -> SwapInstructions:
    compute_budget = decode_instruction_list(
        payload.get("computeBudgetInstructions"),
        section="computeBudgetInstructions",
    )

    instructions: list[Instruction] = []
    token_ledger = payload.get("tokenLedgerInstruction")
    if token_ledger:
        instructions.append(decode_instruction(token_ledger, section="tokenLedgerInstruction"))
    instructions.extend(decode_instruction_list(payload.get("setupInstructions"), section="setupInstructions"))

    swap_instruction = payload.get("swapInstruction")
    if not isinstance(swap_instruction, dict):
        raise SwapApiError("swapInstruction is missing in swap-instructions response", endpoint="swapInstruction")
    instructions.append(decode_instruction(swap_instruction, section="swapInstruction"))

    cleanup_instruction = payload.get("cleanupInstruction")
    if cleanup_instruction:
        instructions.append(decode_instruction(cleanup_instruction, section="cleanupInstruction"))

    lookup_addresses: list[str] = []
    raw_lookup_addresses = payload.get("addressLookupTableAddresses")
    if isinstance(raw_lookup_addresses, list):
        for raw_address in raw_lookup_addresses:
            address = str(raw_address or "").strip()
            if address and address not in lookup_addresses:
                lookup_addresses.append(address)

    return SwapInstructions(
        compute_budget=tuple(compute_budget),
        instructions=tuple(instructions),
        lookup_table_addresses=tuple(lookup_addresses),
    )


class JupiterSwapClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str = DEFAULT_SWAP_API_URL,
        api_key: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._logger = logger
        self._api_base_url = (api_base_url or DEFAULT_SWAP_API_URL).rstrip("/")
        self._api_key = api_key.strip()
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Swap API HTTP session is not initialized.")

        endpoint = f"{self._api_base_url}/{path}"
        try:
            async with self._session.request(
                method,
                endpoint,
                params=params,
                json=json_body,
                headers=self._headers(),
            ) as response:
                status_code = response.status
                raw_text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise SwapApiError(
                f"Swap API network error for {path}: {error}",
                endpoint=endpoint,
                retryable=True,
            ) from error

        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw_text": raw_text[:240]}

        if status_code >= 400:
            raise SwapApiError(
                f"Swap API request failed: path={path} status={status_code} "
                f"error={_error_message_from_payload(parsed)}",
                endpoint=endpoint,
                status=status_code,
                data=parsed,
                retryable=status_code in RETRYABLE_HTTP_STATUSES,
            )
        if not isinstance(parsed, dict):
            raise SwapApiError(f"Unexpected swap API response for {path}: {parsed}", endpoint=endpoint)
        if parsed.get("error"):
            raise SwapApiError(
                f"Swap API error for {path}: {_error_message_from_payload(parsed)}",
                endpoint=endpoint,
                status=status_code,
                data=parsed,
            )
        return parsed

    async def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        if amount <= 0:
            raise ValueError(f"swap amount must be positive: {amount}")

        payload = await self._request(
            "GET",
            "quote",
            params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(amount),
                "slippageBps": str(slippage_bps),
            },
        )
        try:
            amount_out = int(payload.get("outAmount") or 0)
            min_amount_out = int(payload.get("otherAmountThreshold") or 0)
        except (TypeError, ValueError) as error:
            raise SwapApiError(f"Quote amounts are malformed: {error}", endpoint="quote", data=payload) from error
        if amount_out <= 0:
            raise SwapApiError("Quote returned no output amount", endpoint="quote", data=payload)

        log_event(
            self._logger,
            level="info",
            event="swap_quote_received",
            message="Swap quote received",
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount,
            amount_out=amount_out,
            min_amount_out=min_amount_out,
            price_impact_pct=payload.get("priceImpactPct"),
        )
        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount,
            amount_out=amount_out,
            min_amount_out=min_amount_out,
            slippage_bps=slippage_bps,
            quote_response=payload,
        )

    async def swap_instructions(self, quote: SwapQuote, *, user_public_key: str) -> SwapInstructions:
        payload = await self._request(
            "POST",
            "swap-instructions",
            json_body={
                "quoteResponse": quote.quote_response,
                "userPublicKey": user_public_key,
                "wrapAndUnwrapSol": True,
            },
        )
        return extract_swap_instructions(payload)
