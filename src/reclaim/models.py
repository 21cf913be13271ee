"""
Data model for the consolidation engine.

Amounts of the base asset are integer lamports throughout; token balances are
raw integer units plus a display amount scaled by the mint's decimals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

LAMPORTS_PER_SOL = 1_000_000_000


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))


@dataclass(frozen=True)
class TokenHolding:
    """One wallet-owned token account as observed in a single scan pass."""
    mint: str
    address: str
    raw_balance: int
    decimals: int
    display_amount: float
    program_id: str

    @property
    def is_empty(self) -> bool:
        return self.raw_balance == 0 and self.display_amount == 0

    @classmethod
    def from_parsed(cls, pubkey: str, program_id: str, parsed: dict[str, Any]) -> "TokenHolding":
        """Build from a jsonParsed token account.

        Raises:
            KeyError, TypeError, ValueError: on malformed account data
        """
        info = parsed["info"]
        token_amount = info["tokenAmount"]
        raw = int(token_amount["amount"])
        decimals = int(token_amount["decimals"])
        if raw < 0 or decimals < 0:
            raise ValueError(f"Negative amount or decimals in {pubkey}")

        ui_amount = token_amount.get("uiAmount")
        if ui_amount is None:
            ui_string = token_amount.get("uiAmountString")
            ui_amount = float(ui_string) if ui_string else raw / (10 ** decimals)

        return cls(
            mint=str(info["mint"]),
            address=str(pubkey),
            raw_balance=raw,
            decimals=decimals,
            display_amount=float(ui_amount),
            program_id=str(program_id),
        )


@dataclass(frozen=True)
class EmptyAccountCandidate:
    """A zero-balance token account whose rent deposit can be reclaimed."""
    address: str
    reclaimable_lamports: int
    mint: str = ""
    program_id: str = ""


class QuoteState(Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class DustCandidate:
    """A small token balance that may be converted to the target asset.

    Estimates start at zero and are filled in place by the quote fetcher.
    """
    holding: TokenHolding
    estimated_target_amount: float = 0.0
    estimated_fiat_value: float = 0.0
    worth_converting: bool = False
    quote_state: QuoteState = QuoteState.PENDING
    symbol: Optional[str] = None
    name: Optional[str] = None

    @property
    def label(self) -> str:
        """Token symbol, or the first four mint characters when unknown."""
        return self.symbol or self.mint[:4].upper()

    @property
    def mint(self) -> str:
        return self.holding.mint

    @property
    def address(self) -> str:
        return self.holding.address

    def reset_estimate(self) -> None:
        self.estimated_target_amount = 0.0
        self.estimated_fiat_value = 0.0
        self.worth_converting = False


@dataclass(frozen=True)
class QuoteResult:
    """Transient conversion estimate. Amounts are raw output-mint units."""
    requested_amount: int
    output_amount: int
    reference_amount: Optional[int] = None
    route: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class PackedInstruction:
    """A close instruction as seen by the packer."""
    handle: Any
    byte_cost: int
    reclaimable_lamports: int
    label: str = ""


@dataclass
class PlannedTransaction:
    instructions: list[PackedInstruction] = field(default_factory=list)
    fee_instruction: Any = None
    fee_lamports: int = 0
    size: int = 0

    @property
    def has_fee(self) -> bool:
        return self.fee_instruction is not None

    @property
    def reclaimed_lamports(self) -> int:
        return sum(i.reclaimable_lamports for i in self.instructions)

    def handles(self) -> list[Any]:
        handles = [i.handle for i in self.instructions]
        if self.fee_instruction is not None:
            handles.append(self.fee_instruction)
        return handles


@dataclass
class BatchPlan:
    transactions: list[PlannedTransaction] = field(default_factory=list)
    fee_lamports: int = 0

    @property
    def total_reclaimed(self) -> int:
        return sum(tx.reclaimed_lamports for tx in self.transactions)

    @property
    def instruction_count(self) -> int:
        return sum(len(tx.instructions) for tx in self.transactions)

    @property
    def fee_included(self) -> bool:
        return any(tx.has_fee for tx in self.transactions)

    @property
    def fee_charged(self) -> int:
        return self.fee_lamports if self.fee_included else 0

    @property
    def user_received(self) -> int:
        return self.total_reclaimed - self.fee_charged


@dataclass
class BatchOutcome:
    attempted: int = 0
    confirmed: int = 0
    cancelled: bool = False
    last_error: Optional[str] = None
    signatures: list[str] = field(default_factory=list)
    confirmed_instructions: int = 0
    confirmed_reclaimed: int = 0


@dataclass
class ScanResult:
    wallet: str
    empty_accounts: list[EmptyAccountCandidate] = field(default_factory=list)
    dust: list[DustCandidate] = field(default_factory=list)
    skipped_target: int = 0
    skipped_errors: int = 0

    @property
    def total_reclaimable(self) -> int:
        return sum(a.reclaimable_lamports for a in self.empty_accounts)

    def classification(self) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """Addresses of empty and dust accounts, for comparing scans."""
        return (
            tuple(sorted(a.address for a in self.empty_accounts)),
            tuple(sorted(d.address for d in self.dust)),
        )
