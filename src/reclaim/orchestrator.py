"""
Consolidation orchestrator - drives one wallet session through
scan -> close / convert -> settle -> re-scan.

Each wallet gets its own ConsolidationSession. The session's state machine is
the single-flight guard: a second mutating operation on a busy session raises
InvalidStateError instead of racing the first one.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from core.client import Ledger
from core.instructions import TOKEN_PROGRAM_ID, InstructionFactory
from core.signer import SignerRejected
from reclaim.config import ReclaimConfig
from reclaim.errors import (
    BatchExecutionError,
    InsufficientBalanceError,
    InvalidStateError,
    TransactionTooLargeError,
)
from reclaim.executor import SequentialBatchExecutor
from reclaim.models import (
    BatchOutcome,
    BatchPlan,
    DustCandidate,
    PackedInstruction,
    ScanResult,
    lamports_to_sol,
    sol_to_lamports,
)
from reclaim.packer import BatchPacker
from reclaim.quotes import QuoteFetcher
from reclaim.scanner import AccountScanner
from reclaim.swaps import SwapBuilder
from utils.logger import bind_wallet, get_logger, log_operation_event, reset_wallet, short_address

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]

# Percent of the wallet balance / reclaimed rent swapped at the end of convert-all
BALANCE_SWAP_PCT = 90
RECLAIMED_SWAP_PCT = 95


class SessionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    READY = "ready"
    CLOSING = "closing"
    CONVERTING = "converting"
    SETTLING = "settling"
    ERROR = "error"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.SCANNING}),
    SessionState.SCANNING: frozenset({SessionState.READY, SessionState.ERROR}),
    SessionState.READY: frozenset({SessionState.SCANNING, SessionState.CLOSING, SessionState.CONVERTING}),
    SessionState.CLOSING: frozenset({
        SessionState.CONVERTING, SessionState.SETTLING, SessionState.READY,
        SessionState.ERROR, SessionState.CANCELLED,
    }),
    SessionState.CONVERTING: frozenset({
        SessionState.SETTLING, SessionState.READY, SessionState.ERROR, SessionState.CANCELLED,
    }),
    SessionState.SETTLING: frozenset({SessionState.IDLE, SessionState.ERROR}),
    SessionState.ERROR: frozenset({SessionState.SETTLING, SessionState.IDLE, SessionState.SCANNING}),
    SessionState.CANCELLED: frozenset({SessionState.SETTLING, SessionState.READY}),
}


class OperationStatus(Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    FAILED = "failed"
    NOTHING_TO_DO = "nothing_to_do"


@dataclass
class OperationResult:
    """What the user is told after close / convert / convert-all."""
    operation: str
    status: OperationStatus
    message: str = ""
    outcome: Optional[BatchOutcome] = None
    plan: Optional[BatchPlan] = None
    converted: int = 0
    failed: int = 0
    skipped: int = 0
    signatures: list[str] = field(default_factory=list)
    current_balance: Optional[int] = None
    required_balance: Optional[int] = None
    steps: list["OperationResult"] = field(default_factory=list)

    @property
    def changed_chain(self) -> bool:
        """True when at least one transaction landed."""
        if self.signatures:
            return True
        if self.outcome is not None and self.outcome.confirmed > 0:
            return True
        return any(step.changed_chain for step in self.steps)

    def summary(self) -> str:
        if self.status is OperationStatus.INSUFFICIENT_BALANCE:
            return (
                f"Insufficient balance: {lamports_to_sol(self.current_balance or 0):.6f} SOL, "
                f"need {lamports_to_sol(self.required_balance or 0):.6f} SOL"
            )
        if self.status is OperationStatus.CANCELLED:
            return "Cancelled by user"
        return self.message or self.status.value


@dataclass
class ConsolidationSession:
    """Per-wallet state. Nothing here is shared between wallets."""
    wallet: str
    state: SessionState = SessionState.IDLE
    scan: Optional[ScanResult] = None
    last_result: Optional[OperationResult] = None
    history: list[SessionState] = field(default_factory=list)
    quote_task: Optional[asyncio.Task] = field(default=None, repr=False)
    settle_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateError(
                f"Cannot go from {self.state.value} to {new_state.value} "
                f"for {short_address(self.wallet)}"
            )
        logger.debug(f"[SESSION] {self.state.value} -> {new_state.value}")
        self.history.append(self.state)
        self.state = new_state

    @property
    def busy(self) -> bool:
        return self.state in (
            SessionState.SCANNING, SessionState.CLOSING,
            SessionState.CONVERTING, SessionState.SETTLING,
        )

    async def wait_quotes(self) -> None:
        if self.quote_task is not None:
            await asyncio.gather(self.quote_task, return_exceptions=True)

    async def wait_settled(self) -> None:
        """Wait for the post-operation re-scan (and its quotes) to finish."""
        if self.settle_task is not None:
            await asyncio.gather(self.settle_task, return_exceptions=True)
        await self.wait_quotes()


class ConsolidationOrchestrator:
    def __init__(
        self,
        ledger: Ledger,
        scanner: AccountScanner,
        quote_fetcher: QuoteFetcher,
        packer: BatchPacker,
        executor: SequentialBatchExecutor,
        instruction_factory: InstructionFactory,
        swap_builder: SwapBuilder,
        config: ReclaimConfig,
        sleep: SleepFunc = asyncio.sleep,
        event_logger: Optional[logging.Logger] = None,
        auto_rescan: bool = True,
    ):
        self.ledger = ledger
        self.scanner = scanner
        self.quote_fetcher = quote_fetcher
        self.packer = packer
        self.executor = executor
        self.factory = instruction_factory
        self.swap_builder = swap_builder
        self.config = config
        self.sleep = sleep
        self.event_logger = event_logger
        self.auto_rescan = auto_rescan

    def open_session(self, wallet: str) -> ConsolidationSession:
        return ConsolidationSession(wallet=str(wallet))

    def _event(self, operation: str, session: ConsolidationSession, status: str, **details) -> None:
        log_operation_event(operation, session.wallet, status, details, json_logger=self.event_logger)

    # ------------------------------------------------------------------ scan

    async def scan(self, session: ConsolidationSession, fetch_quotes: bool = True) -> ScanResult:
        """Scan the wallet and start valuing its dust in the background.

        Raises:
            InvalidStateError: session is busy
        """
        session.transition(SessionState.SCANNING)
        token = bind_wallet(session.wallet)
        try:
            await self._stop_quotes(session)
            try:
                result = await self.scanner.scan(session.wallet)
            except Exception as e:
                logger.error(f"[SCAN] Scan failed: {e}")
                session.transition(SessionState.ERROR)
                self._event("scan", session, "error", error=str(e))
                raise

            session.scan = result
            session.transition(SessionState.READY)
            if fetch_quotes and result.dust:
                session.quote_task = asyncio.create_task(self.quote_fetcher.fetch_all(result.dust))

            self._event(
                "scan", session, "ok",
                empty=len(result.empty_accounts),
                dust=len(result.dust),
                reclaimable_lamports=result.total_reclaimable,
            )
            return result
        finally:
            reset_wallet(token)

    async def _stop_quotes(self, session: ConsolidationSession) -> None:
        task = session.quote_task
        session.quote_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ----------------------------------------------------------- operations

    async def plan_close(self, session: ConsolidationSession, enforce_preflight: bool = False) -> BatchPlan:
        """Pack the close batch without signing anything (dry run)."""
        self._require_scan(session)
        instructions = [self._close_instruction(a) for a in session.scan.empty_accounts]
        balance = await self.ledger.get_balance(session.wallet)
        return self.packer.pack(
            instructions, balance,
            fee_builder=self._fee_builder,
            enforce_preflight=enforce_preflight,
        )

    async def close_empty_accounts(self, session: ConsolidationSession) -> OperationResult:
        """Close every empty account of the last scan in as few transactions as fit.

        Raises:
            InvalidStateError: session not READY
            TransactionTooLargeError: a close transaction cannot be made to fit
        """
        self._require_scan(session)
        session.transition(SessionState.CLOSING)
        token = bind_wallet(session.wallet)
        try:
            result = await self._guarded(session, "close", self._close(session))
            return self._finish(session, result)
        finally:
            reset_wallet(token)

    async def convert_dust(
        self,
        session: ConsolidationSession,
        selected: Optional[Iterable[str]] = None,
    ) -> OperationResult:
        """Swap selected dust (mints or account addresses) into the target asset.

        Candidates not worth converting are left out even when selected.
        """
        self._require_scan(session)
        session.transition(SessionState.CONVERTING)
        token = bind_wallet(session.wallet)
        try:
            result = await self._guarded(session, "convert", self._convert(session, selected))
            return self._finish(session, result)
        finally:
            reset_wallet(token)

    async def convert_all(self, session: ConsolidationSession) -> OperationResult:
        """Close empty accounts, convert dust, then swap the reclaimed base asset."""
        self._require_scan(session)
        session.transition(SessionState.CLOSING)
        token = bind_wallet(session.wallet)
        try:
            result = await self._guarded(session, "convert_all", self._convert_all(session))
            return self._finish(session, result)
        finally:
            reset_wallet(token)

    def _require_scan(self, session: ConsolidationSession) -> None:
        if session.state is not SessionState.READY or session.scan is None:
            raise InvalidStateError(
                f"Session for {short_address(session.wallet)} is {session.state.value}, scan first"
            )

    async def _guarded(
        self,
        session: ConsolidationSession,
        operation: str,
        work: Awaitable[OperationResult],
    ) -> OperationResult:
        try:
            return await work
        except TransactionTooLargeError:
            session.transition(SessionState.ERROR)
            session.transition(SessionState.IDLE)
            raise
        except Exception as e:
            logger.exception(f"[{operation.upper()}] Unexpected failure")
            return OperationResult(operation, OperationStatus.FAILED, f"{operation} failed: {e}")

    # ---------------------------------------------------------------- close

    def _close_instruction(self, account) -> PackedInstruction:
        handle = self.factory.build_close_instruction(
            account.address,
            program_id=account.program_id or TOKEN_PROGRAM_ID,
        )
        return self.packer.wrap(handle, account.reclaimable_lamports, label=account.address)

    def _fee_builder(self, amount: int):
        return self.factory.build_fee_transfer(amount, self.config.fee_recipient)

    async def _close(self, session: ConsolidationSession) -> OperationResult:
        accounts = session.scan.empty_accounts
        if not accounts:
            return OperationResult("close", OperationStatus.NOTHING_TO_DO, "No empty accounts to close")

        instructions = []
        failed = skipped = 0
        for account in accounts:
            try:
                allocated = await self.ledger.account_exists(account.address)
            except Exception as e:
                logger.warning(f"[CLOSE] Could not verify {short_address(account.address)}: {e}")
                failed += 1
                continue
            if not allocated:
                skipped += 1
                continue
            instructions.append(self._close_instruction(account))

        if not instructions:
            return OperationResult(
                "close", OperationStatus.NOTHING_TO_DO, "No empty accounts left to close",
                failed=failed, skipped=skipped,
            )

        balance = await self.ledger.get_balance(session.wallet)
        try:
            plan = self.packer.pack(instructions, balance, fee_builder=self._fee_builder)
        except InsufficientBalanceError as e:
            return OperationResult(
                "close", OperationStatus.INSUFFICIENT_BALANCE,
                current_balance=e.current, required_balance=e.required,
                failed=failed, skipped=skipped,
            )

        try:
            outcome = await self.executor.execute(plan)
        except BatchExecutionError as e:
            return OperationResult(
                "close", OperationStatus.FAILED,
                f"Closing failed after {e.outcome.confirmed}/{len(plan.transactions)} transaction(s)",
                outcome=e.outcome, plan=plan, failed=failed, skipped=skipped,
                signatures=list(e.outcome.signatures),
            )

        result = OperationResult(
            "close", OperationStatus.SUCCEEDED,
            outcome=outcome, plan=plan, failed=failed, skipped=skipped,
            signatures=list(outcome.signatures),
        )
        if outcome.cancelled:
            result.status = OperationStatus.CANCELLED
        elif failed:
            result.status = OperationStatus.PARTIAL
        fee = plan.fee_charged if outcome.confirmed == len(plan.transactions) else 0
        result.message = (
            f"Closed {outcome.confirmed_instructions} account(s), "
            f"reclaimed ~{lamports_to_sol(outcome.confirmed_reclaimed - fee):.6f} SOL"
        )
        return result

    # -------------------------------------------------------------- convert

    async def _convert(
        self,
        session: ConsolidationSession,
        selected: Optional[Iterable[str]] = None,
    ) -> OperationResult:
        await session.wait_quotes()

        dust: list[DustCandidate] = list(session.scan.dust)
        if selected is not None:
            wanted = set(selected)
            dust = [d for d in dust if d.mint in wanted or d.address in wanted]
        eligible = [d for d in dust if d.worth_converting]
        excluded = len(dust) - len(eligible)

        if not eligible:
            return OperationResult(
                "convert", OperationStatus.NOTHING_TO_DO, "No dust worth converting", skipped=excluded,
            )

        required = self.config.tx_cost_estimate_lamports + self.config.min_balance_floor_lamports
        result = OperationResult("convert", OperationStatus.SUCCEEDED, skipped=excluded)
        stopped = False
        for index, candidate in enumerate(eligible):
            # re-read before every swap
            balance = await self.ledger.get_balance(session.wallet)
            if balance < required:
                result.current_balance = balance
                result.required_balance = required
                result.skipped += len(eligible) - index
                if index == 0:
                    result.status = OperationStatus.INSUFFICIENT_BALANCE
                    return result
                logger.warning(
                    f"[SWAP] Balance {lamports_to_sol(balance):.6f} SOL fell below "
                    f"{lamports_to_sol(required):.6f} SOL, skipping {len(eligible) - index} token(s)"
                )
                stopped = True
                break

            try:
                signature = await self._swap(
                    session, candidate.mint, candidate.holding.raw_balance,
                    label=f"swap {short_address(candidate.mint)}",
                )
            except SignerRejected:
                logger.info("[SWAP] Rejected by signer, cancelling remaining conversions")
                result.status = OperationStatus.CANCELLED
                break
            except Exception as e:
                logger.warning(f"[SWAP] {short_address(candidate.mint)} failed: {e}")
                result.failed += 1
            else:
                result.converted += 1
                result.signatures.append(str(signature))

            if index + 1 < len(eligible) and self.config.swap_pause:
                await self.sleep(self.config.swap_pause)

        if result.status is not OperationStatus.CANCELLED and (result.failed or stopped):
            result.status = OperationStatus.PARTIAL if result.converted else OperationStatus.FAILED
        result.message = f"Converted {result.converted}/{len(eligible)} token(s)"
        return result

    async def _swap(self, session: ConsolidationSession, input_mint: str, amount: int, label: str):
        quote = await self.quote_fetcher.request_quote(
            input_mint, self.config.target_mint, amount,
            slippage_bps=self.config.swap_slippage_bps,
        )
        swap = await self.swap_builder.build_swap(quote, session.wallet)
        return await self.executor.sign_and_send(swap.transaction, swap.last_valid_block_height, label)

    # ---------------------------------------------------------- convert all

    async def _convert_all(self, session: ConsolidationSession) -> OperationResult:
        result = OperationResult("convert_all", OperationStatus.SUCCEEDED)

        close_result = await self._close(session)
        result.steps.append(close_result)
        if close_result.status is OperationStatus.CANCELLED:
            result.status = OperationStatus.CANCELLED
            return result
        if close_result.status in (OperationStatus.FAILED, OperationStatus.INSUFFICIENT_BALANCE):
            logger.warning(f"[ALL] Closing accounts did not complete: {close_result.summary()}, continuing")

        session.transition(SessionState.CONVERTING)
        if close_result.changed_chain and self.config.settle_delay:
            await self.sleep(self.config.settle_delay)

        convert_result = await self._convert(session)
        result.steps.append(convert_result)
        if convert_result.status is OperationStatus.CANCELLED:
            result.status = OperationStatus.CANCELLED
            return result

        reclaimed = close_result.outcome.confirmed_reclaimed if close_result.outcome else 0
        if reclaimed > 0:
            base_result = await self._swap_reclaimed(session, reclaimed)
            result.steps.append(base_result)
            if base_result.status is OperationStatus.CANCELLED:
                result.status = OperationStatus.CANCELLED
                return result

        attempted = [s for s in result.steps if s.status is not OperationStatus.NOTHING_TO_DO]
        if not attempted:
            result.status = OperationStatus.NOTHING_TO_DO
            result.message = "Nothing to close or convert"
        elif all(s.status is OperationStatus.SUCCEEDED for s in attempted):
            result.message = "Converted all dust and reclaimed SOL"
        elif any(s.changed_chain for s in attempted):
            result.status = OperationStatus.PARTIAL
            result.message = "; ".join(s.summary() for s in attempted)
        else:
            result.status = OperationStatus.FAILED
            result.message = "; ".join(s.summary() for s in attempted)
        return result

    async def _swap_reclaimed(self, session: ConsolidationSession, reclaimed: int) -> OperationResult:
        if self.config.settle_delay:
            await self.sleep(self.config.settle_delay)
        balance = await self.ledger.get_balance(session.wallet)
        amount = min(balance * BALANCE_SWAP_PCT // 100, reclaimed * RECLAIMED_SWAP_PCT // 100)
        if amount <= sol_to_lamports(self.config.min_dust_value_base):
            return OperationResult(
                "swap_reclaimed", OperationStatus.NOTHING_TO_DO,
                f"Reclaimed amount too small to swap ({lamports_to_sol(amount):.6f} SOL)",
            )

        try:
            signature = await self._swap(session, self.config.base_mint, amount, label="swap reclaimed SOL")
        except SignerRejected:
            return OperationResult("swap_reclaimed", OperationStatus.CANCELLED)
        except Exception as e:
            logger.warning(f"[ALL] Swapping reclaimed SOL failed: {e}")
            return OperationResult("swap_reclaimed", OperationStatus.FAILED, f"Swapping reclaimed SOL failed: {e}")

        return OperationResult(
            "swap_reclaimed", OperationStatus.SUCCEEDED,
            f"Swapped {lamports_to_sol(amount):.6f} SOL",
            converted=1, signatures=[str(signature)],
        )

    # ---------------------------------------------------------------- settle

    def _finish(self, session: ConsolidationSession, result: OperationResult) -> OperationResult:
        session.last_result = result
        status = result.status

        if status in (OperationStatus.NOTHING_TO_DO, OperationStatus.INSUFFICIENT_BALANCE):
            session.transition(SessionState.READY)
        elif status is OperationStatus.CANCELLED:
            session.transition(SessionState.CANCELLED)
            if result.changed_chain:
                self._settle(session)
            else:
                session.transition(SessionState.READY)
        elif status is OperationStatus.FAILED:
            session.transition(SessionState.ERROR)
            if result.changed_chain:
                self._settle(session)
            else:
                session.transition(SessionState.IDLE)
        else:
            self._settle(session)

        self._event(
            result.operation, session, status.value,
            message=result.summary(),
            converted=result.converted,
            failed=result.failed,
            signatures=result.signatures,
        )
        logger.info(f"[{result.operation.upper()}] {status.value}: {result.summary()}")
        return result

    def _settle(self, session: ConsolidationSession) -> None:
        session.transition(SessionState.SETTLING)
        session.settle_task = asyncio.create_task(self._rescan_later(session))

    async def _rescan_later(self, session: ConsolidationSession) -> None:
        if self.config.settle_delay:
            await self.sleep(self.config.settle_delay)
        session.transition(SessionState.IDLE)
        if not self.auto_rescan:
            return
        try:
            await self.scan(session)
        except Exception as e:
            logger.error(f"[SESSION] Re-scan after settle failed: {e}")
