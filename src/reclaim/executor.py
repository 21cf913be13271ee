"""
Sequential batch executor.

Transactions of a plan go out strictly one at a time: blockhash, compile,
sign, submit, confirm, and only then the next one. A signer rejection stops
the batch as a cancellation; any other failure stops it as an error. Nothing
already confirmed is rolled back.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Union

from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction

from core.client import Ledger
from core.signer import Signer, SignerRejected
from reclaim.config import ReclaimConfig
from reclaim.errors import BatchExecutionError, ConfirmationError, TransactionTooLargeError
from reclaim.models import BatchOutcome, BatchPlan, PlannedTransaction
from utils.logger import get_logger

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
AnyTransaction = Union[Transaction, VersionedTransaction]


class SequentialBatchExecutor:
    def __init__(
        self,
        ledger: Ledger,
        signer: Signer,
        payer: Pubkey,
        config: ReclaimConfig,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.ledger = ledger
        self.signer = signer
        self.payer = payer
        self.config = config
        self.sleep = sleep

    async def compile(self, planned: PlannedTransaction) -> tuple[Transaction, int]:
        """Build an unsigned legacy transaction on a fresh blockhash."""
        blockhash, last_valid_block_height = await self.ledger.get_latest_blockhash()
        message = Message.new_with_blockhash(planned.handles(), self.payer, blockhash)
        return Transaction.new_unsigned(message), last_valid_block_height

    async def sign_and_send(
        self,
        transaction: AnyTransaction,
        last_valid_block_height: Optional[int],
        label: str = "tx",
    ) -> Signature:
        """Sign, size-check, submit and confirm one transaction.

        Raises:
            SignerRejected: holder declined (not wrapped)
            TransactionTooLargeError: signed transaction over the hard limit
            ConfirmationError: failed on-chain or expired unconfirmed
        """
        signed = await self.signer.sign(transaction)

        raw = bytes(signed)
        if len(raw) > self.config.tx_size_limit:
            raise TransactionTooLargeError(len(raw), self.config.tx_size_limit)

        signature = await self.ledger.submit(raw)
        logger.info(f"[EXEC] {label} sent: {str(signature)[:20]}...")

        if not await self.ledger.confirm(signature, last_valid_block_height):
            raise ConfirmationError(f"{label} not confirmed: {signature}")

        logger.info(f"[EXEC] {label} confirmed")
        return signature

    async def execute(self, plan: BatchPlan) -> BatchOutcome:
        """Run every transaction of the plan in order.

        Returns the outcome, with ``cancelled`` set if the signer refused.

        Raises:
            BatchExecutionError: any other failure; carries the outcome so far
        """
        outcome = BatchOutcome()
        total = len(plan.transactions)

        for index, planned in enumerate(plan.transactions):
            label = f"batch {index + 1}/{total}"
            outcome.attempted += 1
            try:
                transaction, last_valid_block_height = await self.compile(planned)
                signature = await self.sign_and_send(transaction, last_valid_block_height, label)
            except SignerRejected:
                logger.info(f"[EXEC] {label} rejected by signer, stopping")
                outcome.cancelled = True
                return outcome
            except Exception as e:
                logger.error(f"[EXEC] {label} failed: {e}")
                outcome.last_error = str(e)
                raise BatchExecutionError(outcome, e) from e

            outcome.confirmed += 1
            outcome.signatures.append(str(signature))
            outcome.confirmed_instructions += len(planned.instructions)
            outcome.confirmed_reclaimed += planned.reclaimed_lamports

            if index + 1 < total and self.config.batch_pause:
                await self.sleep(self.config.batch_pause)

        logger.info(f"[EXEC] {outcome.confirmed}/{total} transaction(s) confirmed")
        return outcome
