"""
Account scanner - enumerates a wallet's token accounts and sorts them into
closable empty accounts and convertible dust.

Classification depends only on the observed balance, so two scans with no
on-chain change in between produce the same lists.
"""

from enum import Enum
from typing import Optional

from core.client import Ledger
from core.instructions import TOKEN_2022_PROGRAM_ID, TOKEN_ACCOUNT_SIZE, TOKEN_PROGRAM_ID
from reclaim.config import ReclaimConfig
from reclaim.models import DustCandidate, EmptyAccountCandidate, ScanResult, TokenHolding
from reclaim.quotes import TokenList
from utils.logger import get_logger, short_address

logger = get_logger(__name__)


class Classification(Enum):
    IGNORE = "ignore"
    EMPTY = "empty"
    DUST = "dust"


def classify_holding(holding: TokenHolding, target_mint: str) -> Classification:
    """Classify a holding by balance. The target asset itself is never touched."""
    if holding.mint == target_mint:
        return Classification.IGNORE
    if holding.is_empty:
        return Classification.EMPTY
    return Classification.DUST


class AccountScanner:
    def __init__(self, ledger: Ledger, config: ReclaimConfig, token_list: Optional[TokenList] = None):
        self.ledger = ledger
        self.config = config
        self.token_list = token_list

    @property
    def token_programs(self) -> list[str]:
        programs = [str(TOKEN_PROGRAM_ID)]
        if self.config.include_token_2022:
            programs.append(str(TOKEN_2022_PROGRAM_ID))
        return programs

    async def rent_per_account(self) -> int:
        if self.config.rent_per_account_lamports is not None:
            return self.config.rent_per_account_lamports
        return await self.ledger.get_min_balance_for_size(TOKEN_ACCOUNT_SIZE)

    async def scan(self, wallet: str) -> ScanResult:
        result = ScanResult(wallet=wallet)
        rent = await self.rent_per_account()

        for program_id in self.token_programs:
            raw_accounts = await self.ledger.list_token_accounts(wallet, program_id)
            logger.info(f"[SCAN] {len(raw_accounts)} account(s) under {short_address(program_id)}")

            for raw in raw_accounts:
                try:
                    holding = TokenHolding.from_parsed(raw.pubkey, raw.program_id, raw.parsed)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"[SCAN] Skipping unparsable account {short_address(raw.pubkey)}: {e!r}")
                    result.skipped_errors += 1
                    continue

                kind = classify_holding(holding, self.config.target_mint)
                if kind is Classification.IGNORE:
                    result.skipped_target += 1
                elif kind is Classification.EMPTY:
                    await self._add_empty(result, holding, rent)
                else:
                    result.dust.append(DustCandidate(holding=holding))

        if self.token_list and result.dust:
            await self.token_list.label(result.dust)

        logger.info(
            f"[SCAN] {len(result.empty_accounts)} empty, {len(result.dust)} dust, "
            f"{result.skipped_target} target, {result.skipped_errors} skipped"
        )
        return result

    async def _add_empty(self, result: ScanResult, holding: TokenHolding, rent: int) -> None:
        try:
            allocated = await self.ledger.account_exists(holding.address)
        except Exception as e:
            logger.warning(f"[SCAN] Could not read {short_address(holding.address)}: {e}")
            result.skipped_errors += 1
            return

        if not allocated:
            logger.debug(f"[SCAN] {short_address(holding.address)} already closed")
            return

        result.empty_accounts.append(EmptyAccountCandidate(
            address=holding.address,
            reclaimable_lamports=rent,
            mint=holding.mint,
            program_id=holding.program_id,
        ))
