"""
Batch packer - greedy first-fit packing of close instructions into the fewest
size-bounded transactions.

Every candidate transaction is measured by a size oracle rather than a
closed-form estimate. ``SolanaSizeOracle`` serializes a real unsigned legacy
transaction; ``ByteCostSizeOracle`` adds up synthetic per-instruction costs.

The fee transfer is only ever attempted on the transaction that ends up last.
If it does not fit there it is dropped for the run; no other transaction is
used as a fallback placement.
"""

from collections import deque
from typing import Any, Callable, Optional, Protocol, Sequence

from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from reclaim.config import ReclaimConfig
from reclaim.errors import InsufficientBalanceError, TransactionTooLargeError
from reclaim.models import BatchPlan, PackedInstruction, PlannedTransaction, lamports_to_sol
from utils.logger import get_logger

logger = get_logger(__name__)

FeeBuilder = Callable[[int], Any]


class SizeOracle(Protocol):
    def measure(self, instructions: Sequence[PackedInstruction], fee_instruction: Any = None) -> int:
        """Unsigned serialized size in bytes of a transaction holding these instructions."""
        ...

    def cost_of(self, handle: Any) -> int: ...


class SolanaSizeOracle:
    """Measures real legacy transactions (signature slots zero-filled)."""

    def __init__(self, payer: Pubkey):
        self.payer = payer

    def measure_handles(self, handles: Sequence[Any]) -> int:
        message = Message(list(handles), self.payer)
        return len(bytes(Transaction.new_unsigned(message)))

    def measure(self, instructions: Sequence[PackedInstruction], fee_instruction: Any = None) -> int:
        handles = [i.handle for i in instructions]
        if fee_instruction is not None:
            handles.append(fee_instruction)
        return self.measure_handles(handles)

    def cost_of(self, handle: Any) -> int:
        """Marginal size of one instruction in an otherwise empty transaction."""
        return self.measure_handles([handle]) - self.measure_handles([])


class ByteCostSizeOracle:
    """Size = fixed envelope + sum of byte costs (+ fee cost)."""

    def __init__(self, envelope_size: int = 0, fee_cost: int = 0, instruction_cost: int = 0):
        self.envelope_size = envelope_size
        self.fee_cost = fee_cost
        self.instruction_cost = instruction_cost

    def cost_of(self, handle: Any) -> int:
        return self.instruction_cost

    def measure(self, instructions: Sequence[PackedInstruction], fee_instruction: Any = None) -> int:
        size = self.envelope_size + sum(i.byte_cost for i in instructions)
        if fee_instruction is not None:
            size += self.fee_cost
        return size


class BatchPacker:
    def __init__(self, oracle: SizeOracle, config: ReclaimConfig):
        self.oracle = oracle
        self.config = config

    @property
    def hard_limit(self) -> int:
        return self.config.tx_size_limit

    @property
    def effective_limit(self) -> int:
        return self.config.effective_size_limit

    def wrap(self, handle: Any, reclaimable_lamports: int, label: str = "") -> PackedInstruction:
        return PackedInstruction(
            handle=handle,
            byte_cost=self.oracle.cost_of(handle),
            reclaimable_lamports=reclaimable_lamports,
            label=label,
        )

    def preflight(self, current_balance: int, total_reclaimed: int, fee: int) -> None:
        """Refuse the whole operation if it would leave the wallet under the floor.

        Raises:
            InsufficientBalanceError: before anything is built or signed
        """
        cost = self.config.tx_cost_estimate_lamports
        floor = self.config.min_balance_floor_lamports
        required = fee + cost + floor
        balance_after = current_balance + total_reclaimed - fee - cost
        if current_balance < required or balance_after < floor:
            logger.warning(
                f"[PACK] Insufficient balance: {lamports_to_sol(current_balance):.6f} SOL, "
                f"need {lamports_to_sol(required):.6f} SOL"
            )
            raise InsufficientBalanceError(current=current_balance, required=required)

    def fee_allowed(self, current_balance: int, total_reclaimed: int, fee: int) -> bool:
        balance_after = current_balance + total_reclaimed - fee - self.config.tx_cost_estimate_lamports
        return balance_after >= self.config.min_balance_floor_lamports

    def pack(
        self,
        instructions: Sequence[PackedInstruction],
        current_balance: int,
        fee_builder: Optional[FeeBuilder] = None,
        enforce_preflight: bool = True,
    ) -> BatchPlan:
        """Pack instructions in order into a BatchPlan.

        Raises:
            InsufficientBalanceError: pre-flight guard failed
            TransactionTooLargeError: a transaction cannot be brought under the hard limit
        """
        if not instructions:
            return BatchPlan()

        total = sum(i.reclaimable_lamports for i in instructions)
        fee = self.config.fee_for(total) if fee_builder is not None else 0
        if enforce_preflight:
            self.preflight(current_balance, total, fee)

        fee_instruction = None
        if fee > 0:
            if self.fee_allowed(current_balance, total, fee):
                fee_instruction = fee_builder(fee)
            else:
                logger.info("[PACK] Fee skipped: would leave wallet under the balance floor")

        plan = BatchPlan(fee_lamports=fee)
        queue = deque(instructions)
        current: list[PackedInstruction] = []

        while True:
            while queue:
                ix = queue.popleft()
                is_last = not queue

                fits = not current or self.oracle.measure(current + [ix]) < self.effective_limit

                if is_last and fee_instruction is not None:
                    if self.oracle.measure(current + [ix], fee_instruction) < self.effective_limit:
                        current.append(ix)
                        trimmed = self._finalize(plan, current, fee_instruction, fee)
                        fee_instruction = None
                        queue.extendleft(reversed(trimmed))
                        current = []
                        continue
                    if fits:
                        fee_instruction = None
                        logger.info("[PACK] Fee transfer won't fit in the last transaction, skipping fee")

                if fits:
                    current.append(ix)
                    continue

                # ix opens the next transaction (and gets the fee retried there if it is last)
                queue.appendleft(ix)
                queue.extendleft(reversed(self._finalize(plan, current, None, fee)))
                current = []

            if not current:
                break
            # anything trimmed off the final transaction goes round again
            queue.extend(self._finalize(plan, current, None, fee))
            current = []

        logger.info(
            f"[PACK] {plan.instruction_count} instruction(s) in {len(plan.transactions)} "
            f"transaction(s), fee {'included' if plan.fee_included else 'not included'}"
        )
        return plan

    def _finalize(
        self,
        plan: BatchPlan,
        instructions: list[PackedInstruction],
        fee_instruction: Any,
        fee: int,
    ) -> list[PackedInstruction]:
        """Append a transaction to the plan after proving it fits the hard limit.

        Returns instructions trimmed off the end, which the caller re-queues.
        """
        instructions = list(instructions)
        trimmed: list[PackedInstruction] = []
        size = self.oracle.measure(instructions, fee_instruction)

        if size > self.hard_limit:
            logger.warning(f"[PACK] Transaction over hard limit ({size} > {self.hard_limit}), trimming")
            while size > self.hard_limit and (fee_instruction is not None or len(instructions) > 1):
                if fee_instruction is not None:
                    fee_instruction = None
                else:
                    trimmed.insert(0, instructions.pop())
                size = self.oracle.measure(instructions, fee_instruction)

            if size > self.hard_limit:
                raise TransactionTooLargeError(size, self.hard_limit)

        plan.transactions.append(PlannedTransaction(
            instructions=instructions,
            fee_instruction=fee_instruction,
            fee_lamports=fee if fee_instruction is not None else 0,
            size=size,
        ))
        return trimmed
