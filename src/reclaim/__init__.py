"""Wallet dust consolidation: reclaim rent from empty token accounts and
convert small balances into a single target token."""

from reclaim.config import ReclaimConfig, load_config
from reclaim.errors import (
    BatchExecutionError,
    ConfirmationError,
    InsufficientBalanceError,
    InvalidStateError,
    QuoteTransportError,
    QuoteUnavailableError,
    RateLimitedError,
    ReclaimError,
    SwapBuildError,
    TransactionTooLargeError,
)
from reclaim.executor import SequentialBatchExecutor
from reclaim.models import (
    BatchOutcome,
    BatchPlan,
    DustCandidate,
    EmptyAccountCandidate,
    PackedInstruction,
    PlannedTransaction,
    QuoteResult,
    QuoteState,
    ScanResult,
    TokenHolding,
)
from reclaim.orchestrator import (
    ConsolidationOrchestrator,
    ConsolidationSession,
    OperationResult,
    OperationStatus,
    SessionState,
)
from reclaim.packer import BatchPacker, ByteCostSizeOracle, SizeOracle, SolanaSizeOracle
from reclaim.quotes import JupiterQuoteService, PriceOracle, QuoteFetcher, TokenList
from reclaim.scanner import AccountScanner, Classification, classify_holding
from reclaim.swaps import JupiterSwapBuilder, SwapBuilder, SwapTransaction

__all__ = [
    # Config
    "ReclaimConfig",
    "load_config",
    # Errors
    "ReclaimError",
    "RateLimitedError",
    "QuoteTransportError",
    "QuoteUnavailableError",
    "SwapBuildError",
    "InsufficientBalanceError",
    "TransactionTooLargeError",
    "ConfirmationError",
    "BatchExecutionError",
    "InvalidStateError",
    # Models
    "TokenHolding",
    "EmptyAccountCandidate",
    "DustCandidate",
    "QuoteState",
    "QuoteResult",
    "PackedInstruction",
    "PlannedTransaction",
    "BatchPlan",
    "BatchOutcome",
    "ScanResult",
    # Components
    "AccountScanner",
    "Classification",
    "classify_holding",
    "JupiterQuoteService",
    "PriceOracle",
    "TokenList",
    "QuoteFetcher",
    "JupiterSwapBuilder",
    "SwapBuilder",
    "SwapTransaction",
    "BatchPacker",
    "SizeOracle",
    "SolanaSizeOracle",
    "ByteCostSizeOracle",
    "SequentialBatchExecutor",
    # Orchestration
    "ConsolidationOrchestrator",
    "ConsolidationSession",
    "OperationResult",
    "OperationStatus",
    "SessionState",
]
