"""
Dust valuation through the Jupiter quote API.

Each dust candidate is quoted into the target asset and into the base asset
(for a fiat estimate). Calls go through a shared retry policy; candidates are
processed in small staggered groups so no more than ``quote_group_size``
requests are in flight against the quote service at once.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from reclaim.config import ReclaimConfig
from reclaim.errors import QuoteTransportError, QuoteUnavailableError, RateLimitedError, ReclaimError
from reclaim.models import LAMPORTS_PER_SOL, DustCandidate, QuoteResult, QuoteState
from utils.logger import get_logger, short_address

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


def _headers(api_key: Optional[str]) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if api_key:
        headers["x-api-key"] = api_key
    return headers


class JupiterQuoteService:
    """Quoting service collaborator (``GET /quote``)."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(slippage_bps),
        }
        try:
            async with self.session.get(
                f"{self.base_url}/quote",
                params=params,
                headers=_headers(self.api_key),
                timeout=self.timeout,
            ) as resp:
                if resp.status == 429:
                    raise RateLimitedError(f"Quote rate limited for {short_address(input_mint)}")
                if resp.status >= 500:
                    raise QuoteTransportError(f"Quote service error {resp.status}")
                if resp.status != 200:
                    body = await resp.text()
                    raise QuoteUnavailableError(f"Quote failed ({resp.status}): {body[:80]}")
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise QuoteTransportError(f"Quote request failed: {e!r}") from e

        if not isinstance(data, dict) or not data.get("outAmount"):
            raise QuoteUnavailableError(f"No route for {short_address(input_mint)}")
        return data


class PriceOracle:
    """One-shot USD prices for the base and target assets, briefly cached."""

    CACHE_TTL = 60.0

    def __init__(
        self,
        session: aiohttp.ClientSession,
        price_api_url: str,
        base_mint: str,
        target_mint: str,
        fallback_base_price: float,
        api_key: Optional[str] = None,
    ):
        self.session = session
        self.price_api_url = price_api_url
        self.base_mint = base_mint
        self.target_mint = target_mint
        self.fallback_base_price = fallback_base_price
        self.api_key = api_key
        self._cache: dict[str, tuple[float, float]] = {}

    async def _fetch(self) -> None:
        url = f"{self.price_api_url}?ids={self.base_mint},{self.target_mint}"
        try:
            async with self.session.get(
                url, headers=_headers(self.api_key), timeout=aiohttp.ClientTimeout(total=5)
            ) as resp:
                if resp.status != 200:
                    logger.debug(f"[PRICE] Price API returned {resp.status}")
                    return
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"[PRICE] Price API failed: {e!r}")
            return

        now = time.monotonic()
        for mint in (self.base_mint, self.target_mint):
            price = (data.get(mint) or {}).get("usdPrice")
            if price:
                self._cache[mint] = (float(price), now)

    async def _price(self, mint: str) -> Optional[float]:
        cached = self._cache.get(mint)
        if cached and time.monotonic() - cached[1] < self.CACHE_TTL:
            return cached[0]
        await self._fetch()
        cached = self._cache.get(mint)
        return cached[0] if cached else None

    async def base_price_usd(self) -> float:
        price = await self._price(self.base_mint)
        if price is None:
            logger.info(f"[PRICE] Using fallback base price ${self.fallback_base_price:.2f}")
            return self.fallback_base_price
        return price

    async def target_price_usd(self) -> Optional[float]:
        return await self._price(self.target_mint)


class TokenList:
    """Symbol and name for each mint from the Jupiter token list.

    Loaded once; a failed load leaves the list empty and labels fall back
    to the mint prefix.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token_list_url: str,
        api_key: Optional[str] = None,
    ):
        self.session = session
        self.token_list_url = token_list_url
        self.api_key = api_key
        self._tokens: Optional[dict[str, tuple[str, str]]] = None

    async def load(self) -> dict[str, tuple[str, str]]:
        if self._tokens is not None:
            return self._tokens

        self._tokens = {}
        try:
            async with self.session.get(
                self.token_list_url, headers=_headers(self.api_key), timeout=aiohttp.ClientTimeout(total=10)
            ) as resp:
                if resp.status != 200:
                    logger.warning(f"[TOKENS] Token list returned {resp.status}")
                    return self._tokens
                data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[TOKENS] Failed to load token list: {e!r}")
            return self._tokens

        for entry in data if isinstance(data, list) else []:
            if not isinstance(entry, dict):
                continue
            # v2 lists use "id", the legacy list "address"
            mint = entry.get("id") or entry.get("address")
            if not mint:
                continue
            symbol = entry.get("symbol") or mint[:4].upper()
            self._tokens[mint] = (symbol, entry.get("name") or symbol)
        logger.info(f"[TOKENS] Loaded {len(self._tokens)} token(s)")
        return self._tokens

    async def label(self, candidates: list[DustCandidate]) -> None:
        """Set symbol and name on candidates found in the list."""
        tokens = await self.load()
        for candidate in candidates:
            known = tokens.get(candidate.mint)
            if known:
                candidate.symbol, candidate.name = known


def is_worth_converting(fiat_value: float, base_price: float, config: ReclaimConfig) -> bool:
    """Convertible when above the minimum value or a small positive dust amount."""
    if fiat_value <= 0:
        return False
    meets_min = fiat_value >= config.min_dust_value_base * base_price
    small_dust = fiat_value < config.max_dust_value_fiat
    return meets_min or small_dust


class QuoteFetcher:
    def __init__(
        self,
        service: JupiterQuoteService,
        config: ReclaimConfig,
        price_oracle: Optional[PriceOracle] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.service = service
        self.config = config
        self.price_oracle = price_oracle
        self.sleep = sleep
        self.retry = config.quote_retry_policy().with_retry_on(RateLimitedError, QuoteTransportError)

    async def request_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: Optional[int] = None,
    ) -> QuoteResult:
        """Quote with retry. Raises once retries are exhausted."""
        slippage = self.config.estimate_slippage_bps if slippage_bps is None else slippage_bps
        data = await self.retry.run(
            self.service.quote,
            input_mint, output_mint, amount, slippage,
            sleep=self.sleep,
            label=f"quote {short_address(input_mint)}",
        )
        return QuoteResult(
            requested_amount=int(amount),
            output_amount=int(data["outAmount"]),
            route=data,
        )

    async def estimate(
        self,
        candidate: DustCandidate,
        base_price: float,
        target_price: Optional[float] = None,
    ) -> DustCandidate:
        """Fill in the candidate's estimates in place."""
        holding = candidate.holding
        amount = holding.raw_balance

        try:
            target_quote = await self.request_quote(holding.mint, self.config.target_mint, amount)
        except ReclaimError as e:
            logger.info(f"[QUOTE] {short_address(holding.mint)}: no target quote ({e})")
            candidate.reset_estimate()
            candidate.quote_state = QuoteState.FAILED
            return candidate

        if target_quote.output_amount <= 0:
            candidate.reset_estimate()
            candidate.quote_state = QuoteState.FAILED
            return candidate

        target_amount = target_quote.output_amount / (10 ** self.config.target_decimals)

        if self.config.quote_request_gap:
            await self.sleep(self.config.quote_request_gap)

        fiat = 0.0
        try:
            base_quote = await self.request_quote(holding.mint, self.config.base_mint, amount)
            fiat = base_quote.output_amount / LAMPORTS_PER_SOL * base_price
        except ReclaimError as e:
            logger.debug(f"[QUOTE] {short_address(holding.mint)}: no base quote ({e})")
            if target_price:
                fiat = target_amount * target_price

        candidate.estimated_target_amount = target_amount
        candidate.estimated_fiat_value = fiat
        candidate.worth_converting = is_worth_converting(fiat, base_price, self.config)
        candidate.quote_state = QuoteState.RESOLVED
        logger.debug(
            f"[QUOTE] {short_address(holding.mint)}: ~{target_amount:.6f} target, "
            f"${fiat:.4f}, convert={candidate.worth_converting}"
        )
        return candidate

    async def _estimate_staggered(
        self,
        candidate: DustCandidate,
        delay: float,
        base_price: float,
        target_price: Optional[float],
        on_update: Optional[Callable[[DustCandidate], None]],
    ) -> None:
        if delay:
            await self.sleep(delay)
        try:
            await self.estimate(candidate, base_price, target_price)
        except Exception:
            logger.exception(f"[QUOTE] Unexpected error valuing {short_address(candidate.mint)}")
            candidate.reset_estimate()
            candidate.quote_state = QuoteState.FAILED
        if on_update:
            on_update(candidate)

    async def fetch_all(
        self,
        candidates: list[DustCandidate],
        on_update: Optional[Callable[[DustCandidate], None]] = None,
    ) -> list[DustCandidate]:
        """Value all candidates in staggered groups; never raises for a single item."""
        if not candidates:
            return candidates

        base_price = self.config.fallback_base_price_usd
        target_price = None
        if self.price_oracle:
            base_price = await self.price_oracle.base_price_usd()
            target_price = await self.price_oracle.target_price_usd()

        size = self.config.quote_group_size
        groups = [candidates[i:i + size] for i in range(0, len(candidates), size)]
        for index, group in enumerate(groups):
            logger.info(f"[QUOTE] Fetching prices... (Batch {index + 1}/{len(groups)})")
            await asyncio.gather(*(
                self._estimate_staggered(c, pos * self.config.quote_stagger, base_price, target_price, on_update)
                for pos, c in enumerate(group)
            ))
            if index + 1 < len(groups):
                await self.sleep(self.config.quote_group_pause)

        worth = sum(1 for c in candidates if c.worth_converting)
        logger.info(f"[QUOTE] {worth}/{len(candidates)} dust candidate(s) worth converting")
        return candidates
