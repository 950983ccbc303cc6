from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .types import SignedTransactionEnvelope, TransactionCompileError, TransactionSigningError

if TYPE_CHECKING:
    from .rpc import SolanaRpc

MAX_TRANSACTION_SIZE = 1232
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")


class TransactionBuilder:
    def __init__(
        self,
        *,
        rpc: SolanaRpc,
        signer: Keypair,
        compute_unit_limit: int = 0,
        compute_unit_price_micro_lamports: int = 0,
    ) -> None:
        self._rpc = rpc
        self._signer = signer
        self._compute_unit_limit = max(0, compute_unit_limit)
        self._compute_unit_price = max(0, compute_unit_price_micro_lamports)

    @property
    def payer(self) -> str:
        return str(self._signer.pubkey())

    def prelude(self, instructions: Sequence[Instruction] = ()) -> list[Instruction]:
        # Swap routes ship their own compute budget; a second one fails the transaction.
        if any(instruction.program_id == COMPUTE_BUDGET_PROGRAM_ID for instruction in instructions):
            return []
        prelude: list[Instruction] = []
        if self._compute_unit_limit:
            prelude.append(set_compute_unit_limit(self._compute_unit_limit))
        if self._compute_unit_price:
            prelude.append(set_compute_unit_price(self._compute_unit_price))
        return prelude

    async def build(
        self,
        instructions: Sequence[Instruction],
        *,
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        attempt: int = 0,
    ) -> SignedTransactionEnvelope:
        blockhash, last_valid_block_height = await self._rpc.get_latest_blockhash()
        return self.compile_and_sign(
            instructions,
            lookup_tables=lookup_tables,
            blockhash=blockhash,
            last_valid_block_height=last_valid_block_height,
            attempt=attempt,
        )

    def compile_and_sign(
        self,
        instructions: Sequence[Instruction],
        *,
        lookup_tables: Sequence[AddressLookupTableAccount],
        blockhash: Hash,
        last_valid_block_height: int,
        attempt: int,
    ) -> SignedTransactionEnvelope:
        if not instructions:
            raise TransactionCompileError("cannot build a transaction without instructions")

        payer = self._signer.pubkey()
        try:
            message = MessageV0.try_compile(
                payer,
                [*self.prelude(instructions), *instructions],
                list(lookup_tables),
                blockhash,
            )
        except Exception as error:
            raise TransactionCompileError(f"failed to compile transaction message: {error}") from error

        required_signers = message.header.num_required_signatures
        if required_signers != 1 or message.account_keys[0] != payer:
            raise TransactionSigningError(
                f"message needs {required_signers} signatures; only the payer {payer} can sign"
            )

        signature = self._signer.sign_message(to_bytes_versioned(message))
        transaction = VersionedTransaction.populate(message, [signature])
        if not transaction.signatures:
            raise TransactionSigningError("signed transaction has no signatures")

        size_bytes = len(bytes(transaction))
        if size_bytes > MAX_TRANSACTION_SIZE:
            raise TransactionCompileError(
                f"transaction is oversized: size={size_bytes} bytes max={MAX_TRANSACTION_SIZE}"
            )

        return SignedTransactionEnvelope(
            transaction=transaction,
            signature=str(transaction.signatures[0]),
            instructions=tuple(instructions),
            lookup_tables=tuple(lookup_tables),
            blockhash=str(blockhash),
            last_valid_block_height=last_valid_block_height,
            attempt=attempt,
            size_bytes=size_bytes,
        )
