"""Tests for the HTTP and RPC adapters (no network)"""
import asyncio
import base64

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from solders.pubkey import Pubkey
from solders.signature import Signature

from core.client import SolanaLedger
from core.retry import RetryPolicy
from reclaim.errors import QuoteTransportError, QuoteUnavailableError, RateLimitedError, SwapBuildError
from reclaim.models import DustCandidate, QuoteResult, TokenHolding
from reclaim.quotes import JupiterQuoteService, PriceOracle, TokenList
from reclaim.scanner import AccountScanner
from reclaim.swaps import JupiterSwapBuilder

from fakes import RecordingSleep, make_account


def http_session(method: str, status: int = 200, json_data=None, text: str = "", error=None):
    """aiohttp-like session whose get/post returns one canned response"""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=text)

    session = MagicMock()
    call = getattr(session, method)
    if error is not None:
        call.side_effect = error
    else:
        call.return_value.__aenter__.return_value = response
    return session


class TestJupiterQuoteService:
    @pytest.mark.asyncio
    async def test_success(self):
        session = http_session("get", json_data={"outAmount": "42", "inAmount": "10"})
        service = JupiterQuoteService(session, "https://quote.example/", api_key="k")

        data = await service.quote("MintA", "MintB", 10, 50)

        assert data["outAmount"] == "42"
        url = session.get.call_args.args[0]
        kwargs = session.get.call_args.kwargs
        assert url == "https://quote.example/quote"
        assert kwargs["params"]["amount"] == "10"
        assert kwargs["headers"]["x-api-key"] == "k"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (429, RateLimitedError),
        (503, QuoteTransportError),
        (400, QuoteUnavailableError),
    ])
    async def test_status_mapping(self, status, error):
        service = JupiterQuoteService(http_session("get", status=status, text="nope"), "https://q")
        with pytest.raises(error):
            await service.quote("MintA", "MintB", 10, 50)

    @pytest.mark.asyncio
    async def test_missing_out_amount_is_no_route(self):
        service = JupiterQuoteService(http_session("get", json_data={"error": "no route"}), "https://q")
        with pytest.raises(QuoteUnavailableError):
            await service.quote("MintA", "MintB", 10, 50)

    @pytest.mark.asyncio
    async def test_connection_error_is_transport(self):
        session = http_session("get", error=aiohttp.ClientConnectionError("reset"))
        with pytest.raises(QuoteTransportError):
            await JupiterQuoteService(session, "https://q").quote("MintA", "MintB", 10, 50)


class TestPriceOracle:
    @pytest.mark.asyncio
    async def test_prices_and_cache(self):
        session = http_session("get", json_data={"SOL": {"usdPrice": 150.5}, "ORE": {"usdPrice": 2.0}})
        oracle = PriceOracle(session, "https://price", "SOL", "ORE", fallback_base_price=100.0)

        assert await oracle.base_price_usd() == 150.5
        assert await oracle.target_price_usd() == 2.0
        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_fallback_base_price(self):
        session = http_session("get", error=asyncio.TimeoutError())
        oracle = PriceOracle(session, "https://price", "SOL", "ORE", fallback_base_price=100.0)

        assert await oracle.base_price_usd() == 100.0
        assert await oracle.target_price_usd() is None



def dust(mint: str) -> DustCandidate:
    return DustCandidate(holding=TokenHolding(
        mint=mint, address=f"acct-{mint}", raw_balance=5, decimals=0, display_amount=5.0, program_id="p",
    ))


class TestTokenList:
    @pytest.mark.asyncio
    async def test_labels_known_mints(self):
        session = http_session("get", json_data=[
            {"id": "MintA111", "symbol": "AAA", "name": "Token A"},
            {"address": "MintB222", "symbol": "BBB"},
            {"id": "MintC333", "name": ""},
        ])
        candidates = [dust("MintA111"), dust("MintB222"), dust("MintC333"), dust("MintZ999")]

        await TokenList(session, "https://tokens").label(candidates)

        assert [c.label for c in candidates] == ["AAA", "BBB", "MINT", "MINT"]
        assert candidates[0].name == "Token A"
        assert candidates[1].name == "BBB"
        assert candidates[3].symbol is None

    @pytest.mark.asyncio
    async def test_loads_once(self):
        session = http_session("get", json_data=[{"id": "MintA111", "symbol": "AAA"}])
        tokens = TokenList(session, "https://tokens")

        await tokens.load()
        await tokens.load()

        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_load_keeps_mint_labels(self):
        session = http_session("get", error=aiohttp.ClientConnectionError("down"))
        candidate = dust("MintA111")

        await TokenList(session, "https://tokens").label([candidate])

        assert candidate.symbol is None
        assert candidate.label == "MINT"

class TestJupiterSwapBuilder:
    @pytest.mark.asyncio
    async def test_decodes_transaction(self, mock_swap_builder):
        prebuilt = mock_swap_builder.build_swap.return_value.transaction
        encoded = base64.b64encode(bytes(prebuilt)).decode()
        session = http_session("post", json_data={"swapTransaction": encoded, "lastValidBlockHeight": 77})
        builder = JupiterSwapBuilder(session, "https://quote.example")
        quote = QuoteResult(requested_amount=10, output_amount=20, route={"outAmount": "20"})

        swap = await builder.build_swap(quote, "Wallet111")

        assert bytes(swap.transaction) == bytes(prebuilt)
        assert swap.last_valid_block_height == 77
        body = session.post.call_args.kwargs["json"]
        assert body["quoteResponse"] == {"outAmount": "20"}
        assert body["userPublicKey"] == "Wallet111"
        assert body["wrapAndUnwrapSol"] is True

    @pytest.mark.asyncio
    async def test_http_error(self):
        session = http_session("post", status=500, text="server error")
        builder = JupiterSwapBuilder(session, "https://quote.example")
        quote = QuoteResult(requested_amount=10, output_amount=20, route={"outAmount": "20"})

        with pytest.raises(SwapBuildError):
            await builder.build_swap(quote, "Wallet111")

    @pytest.mark.asyncio
    async def test_quote_without_route(self):
        builder = JupiterSwapBuilder(MagicMock(), "https://quote.example")
        with pytest.raises(SwapBuildError):
            await builder.build_swap(QuoteResult(requested_amount=1, output_amount=1), "Wallet111")


class TestSolanaLedger:
    @pytest.fixture
    def ledger(self):
        ledger = SolanaLedger("https://rpc.example", confirm_timeout=5)
        ledger._client = MagicMock()
        return ledger

    @pytest.mark.asyncio
    async def test_list_token_accounts(self, ledger):
        keyed = MagicMock()
        keyed.pubkey = Pubkey.new_unique()
        keyed.account.data.parsed = {"info": {"mint": "M"}}
        ledger._client.get_token_accounts_by_owner_json_parsed = AsyncMock(return_value=MagicMock(value=[keyed]))
        program = str(Pubkey.new_unique())

        accounts = await ledger.list_token_accounts(str(Pubkey.new_unique()), program)

        assert len(accounts) == 1
        assert accounts[0].pubkey == str(keyed.pubkey)
        assert accounts[0].program_id == program
        assert accounts[0].parsed == {"info": {"mint": "M"}}

    @pytest.mark.asyncio
    async def test_confirm_success_and_failure(self, ledger):
        ok = MagicMock(err=None)
        failed = MagicMock(err="InstructionError")
        ledger._client.confirm_transaction = AsyncMock(side_effect=[
            MagicMock(value=[ok]),
            MagicMock(value=[failed]),
            MagicMock(value=[None]),
        ])

        assert await ledger.confirm(Signature.default(), 100) is True
        assert await ledger.confirm(Signature.default(), 100) is False
        assert await ledger.confirm(Signature.default(), 100) is False

    @pytest.mark.asyncio
    async def test_balance_and_blockhash(self, ledger):
        ledger._client.get_balance = AsyncMock(return_value=MagicMock(value=123))
        blockhash = MagicMock(blockhash="hash", last_valid_block_height=999)
        ledger._client.get_latest_blockhash = AsyncMock(return_value=MagicMock(value=blockhash))

        assert await ledger.get_balance(str(Pubkey.new_unique())) == 123
        assert await ledger.get_latest_blockhash() == ("hash", 999)

    @pytest.mark.asyncio
    async def test_close(self, ledger):
        client = ledger._client
        client.close = AsyncMock()
        await ledger.close()
        client.close.assert_awaited_once()
        assert ledger._client is None


class TestSolanaLedgerRetry:
    @pytest.fixture
    def sleep(self):
        return RecordingSleep()

    @pytest.fixture
    def ledger(self, sleep):
        ledger = SolanaLedger(
            "https://rpc.example", confirm_timeout=5,
            retry_policy=RetryPolicy(max_retries=3, base_delay=0.5), sleep=sleep,
        )
        ledger._client = MagicMock()
        return ledger

    @staticmethod
    def keyed_account(raw):
        keyed = MagicMock()
        keyed.pubkey = Pubkey.from_string(raw.pubkey)
        keyed.account.data.parsed = raw.parsed
        return keyed

    @pytest.mark.asyncio
    async def test_list_token_accounts_recovers_from_rate_limit(self, ledger, sleep):
        raw = make_account("MintA", 5)
        ledger._client.get_token_accounts_by_owner_json_parsed = AsyncMock(side_effect=[
            ConnectionError("429 Too Many Requests"),
            MagicMock(value=[self.keyed_account(raw)]),
        ])

        accounts = await ledger.list_token_accounts(str(Pubkey.new_unique()), raw.program_id)

        assert [a.pubkey for a in accounts] == [raw.pubkey]
        assert ledger._client.get_token_accounts_by_owner_json_parsed.await_count == 2
        assert sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_reads_give_up_after_retries(self, ledger, sleep):
        ledger._client.get_balance = AsyncMock(side_effect=ConnectionError("connection reset"))

        with pytest.raises(ConnectionError):
            await ledger.get_balance(str(Pubkey.new_unique()))

        assert ledger._client.get_balance.await_count == 4
        assert sleep.delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_not_retried(self, ledger, sleep):
        ledger._client.get_account_info = AsyncMock(side_effect=ValueError("bad response"))

        with pytest.raises(ValueError):
            await ledger.account_exists(str(Pubkey.new_unique()))

        assert ledger._client.get_account_info.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_blockhash_and_rent_retry(self, ledger):
        blockhash = MagicMock(blockhash="hash", last_valid_block_height=999)
        ledger._client.get_latest_blockhash = AsyncMock(side_effect=[
            asyncio.TimeoutError(), MagicMock(value=blockhash),
        ])
        ledger._client.get_minimum_balance_for_rent_exemption = AsyncMock(side_effect=[
            ConnectionError("429"), MagicMock(value=2_039_280),
        ])

        assert await ledger.get_latest_blockhash() == ("hash", 999)
        assert await ledger.get_min_balance_for_size(165) == 2_039_280

    @pytest.mark.asyncio
    async def test_submit_is_sent_once(self, ledger, sleep):
        ledger._client.send_raw_transaction = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(ConnectionError):
            await ledger.submit(b"raw")

        assert ledger._client.send_raw_transaction.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_scan_survives_one_rate_limited_read(self, ledger, config):
        empty = make_account("MintA", 0)
        dust = make_account("MintB", 1_000)
        ledger._client.get_token_accounts_by_owner_json_parsed = AsyncMock(side_effect=[
            ConnectionError("429 Too Many Requests"),
            MagicMock(value=[self.keyed_account(empty), self.keyed_account(dust)]),
            MagicMock(value=[]),
        ])
        ledger._client.get_account_info = AsyncMock(return_value=MagicMock(value=object()))

        result = await AccountScanner(ledger, config).scan(str(Pubkey.new_unique()))

        assert [c.address for c in result.empty_accounts] == [empty.pubkey]
        assert [d.address for d in result.dust] == [dust.pubkey]
        assert result.skipped_errors == 0
