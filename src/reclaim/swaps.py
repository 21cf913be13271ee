"""
Swap builder collaborator: turns a quote into a ready-to-sign transaction via
the Jupiter ``/swap`` endpoint. Swap transactions are opaque to the packer and
are always sent one per conversion.
"""

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import aiohttp
from solders.transaction import VersionedTransaction

from reclaim.errors import SwapBuildError
from reclaim.models import QuoteResult
from utils.logger import get_logger, short_address

logger = get_logger(__name__)


@dataclass(frozen=True)
class SwapTransaction:
    transaction: VersionedTransaction
    last_valid_block_height: Optional[int] = None


class SwapBuilder(Protocol):
    async def build_swap(self, quote: QuoteResult, user: str) -> SwapTransaction: ...


class JupiterSwapBuilder:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def build_swap(self, quote: QuoteResult, user: str) -> SwapTransaction:
        if not quote.route:
            raise SwapBuildError("Quote carries no route payload")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key

        body: dict[str, Any] = {
            "quoteResponse": quote.route,
            "userPublicKey": str(user),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        try:
            async with self.session.post(
                f"{self.base_url}/swap", json=body, headers=headers, timeout=self.timeout
            ) as resp:
                if resp.status != 200:
                    err = await resp.text()
                    raise SwapBuildError(f"Swap build failed ({resp.status}): {err[:80]}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SwapBuildError(f"Swap build error: {e!r}") from e

        swap_tx_b64 = data.get("swapTransaction")
        if not swap_tx_b64:
            raise SwapBuildError("No swapTransaction in response")

        try:
            tx = VersionedTransaction.from_bytes(base64.b64decode(swap_tx_b64))
        except Exception as e:
            raise SwapBuildError(f"Undecodable swap transaction: {e}") from e

        logger.debug(f"[SWAP] Built swap for {short_address(user)}: {len(bytes(tx))} bytes")
        return SwapTransaction(
            transaction=tx,
            last_valid_block_height=data.get("lastValidBlockHeight"),
        )
