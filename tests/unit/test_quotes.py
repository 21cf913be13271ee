"""Tests for QuoteFetcher and the dust valuation rule"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from core.instructions import TOKEN_PROGRAM_ID
from reclaim.config import ReclaimConfig
from reclaim.errors import QuoteUnavailableError, RateLimitedError
from reclaim.models import DustCandidate, QuoteState, TokenHolding
from reclaim.quotes import QuoteFetcher, is_worth_converting
from fakes import BASE_MINT, TARGET_MINT, FakeQuoteService, RecordingSleep, make_account


def dust(mint: str, amount: int = 1_000_000) -> DustCandidate:
    raw = make_account(mint, amount)
    return DustCandidate(holding=TokenHolding.from_parsed(raw.pubkey, str(TOKEN_PROGRAM_ID), raw.parsed))


class TestWorthConverting:
    def test_zero_value_never_converts(self):
        assert is_worth_converting(0.0, 150.0, ReclaimConfig()) is False

    def test_small_positive_dust_converts(self):
        # $0.01 is under the minimum (0.001 SOL * $150) but still small dust
        assert is_worth_converting(0.01, 150.0, ReclaimConfig()) is True

    def test_large_value_above_minimum_converts(self):
        assert is_worth_converting(50.0, 150.0, ReclaimConfig()) is True

    def test_large_value_below_minimum_does_not_convert(self):
        config = ReclaimConfig(min_dust_value_base=1.0, max_dust_value_fiat=10.0)
        assert is_worth_converting(20.0, 150.0, config) is False


@pytest.mark.asyncio
async def test_estimate_fills_candidate():
    service = FakeQuoteService(rates={
        ("MintA", TARGET_MINT): 1000,              # 1e9 raw target = 0.01 target (11 decimals)
        ("MintA", BASE_MINT): 10,                  # 1e7 lamports = 0.01 SOL
    })
    fetcher = QuoteFetcher(service, ReclaimConfig(), sleep=RecordingSleep())
    candidate = dust("MintA")

    await fetcher.estimate(candidate, base_price=100.0)

    assert candidate.quote_state is QuoteState.RESOLVED
    assert candidate.estimated_target_amount == pytest.approx(0.01)
    assert candidate.estimated_fiat_value == pytest.approx(1.0)
    assert candidate.worth_converting is True


@pytest.mark.asyncio
async def test_retry_exhaustion_gives_zero_estimate():
    """Rate limited on every call: 1 + 3 calls, then zero estimate, no raise"""
    service = FakeQuoteService(errors={"MintA": RateLimitedError("429")})
    sleep = RecordingSleep()
    fetcher = QuoteFetcher(service, ReclaimConfig(), sleep=sleep)
    candidate = dust("MintA")

    await fetcher.estimate(candidate, base_price=100.0)

    assert len(service.calls) == 4
    assert sleep.delays == [0.5, 1.0, 2.0]
    assert candidate.quote_state is QuoteState.FAILED
    assert candidate.estimated_target_amount == 0.0
    assert candidate.estimated_fiat_value == 0.0
    assert candidate.worth_converting is False


@pytest.mark.asyncio
async def test_no_route_is_not_retried():
    service = FakeQuoteService()
    sleep = RecordingSleep()
    fetcher = QuoteFetcher(service, ReclaimConfig(), sleep=sleep)
    candidate = dust("MintA")

    await fetcher.estimate(candidate, base_price=100.0)

    assert len(service.calls) == 1
    assert sleep.delays == []
    assert candidate.quote_state is QuoteState.FAILED


@pytest.mark.asyncio
async def test_fiat_falls_back_to_target_price():
    service = FakeQuoteService(rates={("MintA", TARGET_MINT): 1000})
    fetcher = QuoteFetcher(service, ReclaimConfig(quote_request_gap=0), sleep=RecordingSleep())
    candidate = dust("MintA")

    await fetcher.estimate(candidate, base_price=100.0, target_price=50.0)

    assert candidate.estimated_fiat_value == pytest.approx(0.5)
    assert candidate.worth_converting is True


@pytest.mark.asyncio
async def test_request_quote_uses_given_slippage():
    service = FakeQuoteService(rates={("MintA", TARGET_MINT): 2})
    fetcher = QuoteFetcher(service, ReclaimConfig(), sleep=RecordingSleep())

    quote = await fetcher.request_quote("MintA", TARGET_MINT, 500, slippage_bps=100)

    assert quote.requested_amount == 500
    assert quote.output_amount == 1000
    assert quote.route["outAmount"] == "1000"
    assert service.calls[0][3] == 100


@pytest.mark.asyncio
async def test_fetch_all_paces_groups():
    rates = {}
    for i in range(7):
        rates[(f"Mint{i}", TARGET_MINT)] = 1000
        rates[(f"Mint{i}", BASE_MINT)] = 10
    service = FakeQuoteService(rates=rates)
    sleep = RecordingSleep()
    config = ReclaimConfig(quote_request_gap=0)
    fetcher = QuoteFetcher(service, config, sleep=sleep)
    candidates = [dust(f"Mint{i}") for i in range(7)]
    updated = []

    await fetcher.fetch_all(candidates, on_update=updated.append)

    # 3 + 3 + 1: stagger 0.3 / 0.6 inside groups, 1s pause between groups
    assert sleep.delays.count(config.quote_group_pause) == 2
    assert sleep.delays.count(pytest.approx(0.3)) == 2
    assert sleep.delays.count(pytest.approx(0.6)) == 2
    assert len(updated) == 7
    assert all(c.quote_state is QuoteState.RESOLVED for c in candidates)


@pytest.mark.asyncio
async def test_fetch_all_survives_unexpected_errors():
    service = MagicMock()
    service.quote = AsyncMock(side_effect=RuntimeError("boom"))
    fetcher = QuoteFetcher(service, ReclaimConfig(), sleep=RecordingSleep())
    candidates = [dust("MintA"), dust("MintB")]

    await fetcher.fetch_all(candidates)

    assert all(c.quote_state is QuoteState.FAILED for c in candidates)
    assert not any(c.worth_converting for c in candidates)


@pytest.mark.asyncio
async def test_price_oracle_prices_are_used():
    service = FakeQuoteService(rates={("MintA", TARGET_MINT): 1000, ("MintA", BASE_MINT): 10})
    oracle = MagicMock()
    oracle.base_price_usd = AsyncMock(return_value=200.0)
    oracle.target_price_usd = AsyncMock(return_value=None)
    fetcher = QuoteFetcher(service, ReclaimConfig(), price_oracle=oracle, sleep=RecordingSleep())
    candidate = dust("MintA")

    await fetcher.fetch_all([candidate])

    assert candidate.estimated_fiat_value == pytest.approx(2.0)


def test_unavailable_is_not_in_retry_set():
    fetcher = QuoteFetcher(FakeQuoteService(), ReclaimConfig())
    assert QuoteUnavailableError not in fetcher.retry.retry_on
