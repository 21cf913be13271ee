"""Tests for AccountScanner"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from core.instructions import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from reclaim.config import ReclaimConfig
from reclaim.models import QuoteState, TokenHolding
from reclaim.scanner import AccountScanner, Classification, classify_holding
from fakes import RENT, TARGET_MINT, make_account, new_address


class TestClassification:
    def test_zero_balance_is_empty(self):
        holding = TokenHolding.from_parsed(new_address(), str(TOKEN_PROGRAM_ID), make_account("MintA", 0).parsed)
        assert classify_holding(holding, TARGET_MINT) is Classification.EMPTY

    def test_positive_balance_is_dust(self):
        holding = TokenHolding.from_parsed(new_address(), str(TOKEN_PROGRAM_ID), make_account("MintA", 5).parsed)
        assert classify_holding(holding, TARGET_MINT) is Classification.DUST

    def test_target_asset_is_ignored(self):
        holding = TokenHolding.from_parsed(new_address(), str(TOKEN_PROGRAM_ID), make_account(TARGET_MINT, 0).parsed)
        assert classify_holding(holding, TARGET_MINT) is Classification.IGNORE

    def test_ui_amount_falls_back_to_string(self):
        raw = make_account("MintA", 1_500_000, decimals=6)
        raw.parsed["info"]["tokenAmount"]["uiAmount"] = None
        holding = TokenHolding.from_parsed(raw.pubkey, raw.program_id, raw.parsed)
        assert holding.display_amount == 1.5


@pytest.mark.asyncio
async def test_scan_splits_empty_and_dust(fake_ledger, config, wallet):
    empty = fake_ledger.add(make_account("MintEmpty", 0))
    dust = fake_ledger.add(make_account("MintDust", 1234))
    fake_ledger.add(make_account(TARGET_MINT, 99))

    result = await AccountScanner(fake_ledger, config).scan(wallet)

    assert [a.address for a in result.empty_accounts] == [empty.pubkey]
    assert result.empty_accounts[0].reclaimable_lamports == RENT
    assert [d.address for d in result.dust] == [dust.pubkey]
    assert result.dust[0].quote_state is QuoteState.PENDING
    assert result.dust[0].estimated_fiat_value == 0.0
    assert result.skipped_target == 1
    assert result.total_reclaimable == RENT


@pytest.mark.asyncio
async def test_scan_is_idempotent(fake_ledger, config, wallet):
    for i in range(3):
        fake_ledger.add(make_account(f"Empty{i}", 0))
        fake_ledger.add(make_account(f"Dust{i}", i + 1))

    scanner = AccountScanner(fake_ledger, config)
    first = await scanner.scan(wallet)
    second = await scanner.scan(wallet)

    assert first.classification() == second.classification()
    assert first.total_reclaimable == second.total_reclaimable


@pytest.mark.asyncio
async def test_unparsable_account_is_skipped(fake_ledger, config, wallet):
    broken = make_account("MintBroken", 0)
    del broken.parsed["info"]["tokenAmount"]
    fake_ledger.add(broken)
    fake_ledger.add(make_account("MintOk", 0))

    result = await AccountScanner(fake_ledger, config).scan(wallet)

    assert result.skipped_errors == 1
    assert len(result.empty_accounts) == 1


@pytest.mark.asyncio
async def test_closed_and_unreadable_accounts_are_not_candidates(fake_ledger, config, wallet):
    gone = fake_ledger.add(make_account("MintGone", 0))
    flaky = fake_ledger.add(make_account("MintFlaky", 0))
    fake_ledger.missing.add(gone.pubkey)
    fake_ledger.read_errors.add(flaky.pubkey)

    result = await AccountScanner(fake_ledger, config).scan(wallet)

    assert result.empty_accounts == []
    assert result.skipped_errors == 1


@pytest.mark.asyncio
async def test_token_2022_accounts_are_scanned(fake_ledger, config, wallet):
    fake_ledger.add(make_account("Mint2022", 0, program_id=TOKEN_2022_PROGRAM_ID))

    result = await AccountScanner(fake_ledger, config).scan(wallet)

    assert len(result.empty_accounts) == 1
    assert result.empty_accounts[0].program_id == str(TOKEN_2022_PROGRAM_ID)

    legacy_only = ReclaimConfig(rent_per_account_lamports=RENT, include_token_2022=False)
    result = await AccountScanner(fake_ledger, legacy_only).scan(wallet)
    assert result.empty_accounts == []


@pytest.mark.asyncio
async def test_rent_asked_once_per_scan_when_not_configured(fake_ledger, wallet):
    for i in range(4):
        fake_ledger.add(make_account(f"Empty{i}", 0))
    config = ReclaimConfig(rent_per_account_lamports=None)

    result = await AccountScanner(fake_ledger, config).scan(wallet)

    assert fake_ledger.rent_calls == 1
    assert {a.reclaimable_lamports for a in result.empty_accounts} == {fake_ledger.rent}


@pytest.mark.asyncio
async def test_dust_is_labelled_from_token_list(fake_ledger, config, wallet):
    fake_ledger.add(make_account("MintA", 5))
    fake_ledger.add(make_account("MintB", 0))

    async def label(candidates):
        for candidate in candidates:
            candidate.symbol = "AAA"

    token_list = MagicMock()
    token_list.label = AsyncMock(side_effect=label)

    result = await AccountScanner(fake_ledger, config, token_list).scan(wallet)

    token_list.label.assert_awaited_once()
    assert [d.label for d in result.dust] == ["AAA"]
    assert len(result.empty_accounts) == 1


@pytest.mark.asyncio
async def test_token_list_skipped_without_dust(fake_ledger, config, wallet):
    fake_ledger.add(make_account("MintB", 0))
    token_list = MagicMock()
    token_list.label = AsyncMock()

    await AccountScanner(fake_ledger, config, token_list).scan(wallet)

    token_list.label.assert_not_awaited()
