"""
dust-reclaim - close empty token accounts and convert dust into the target token.

Dry run by default: nothing is signed or sent unless --execute is given.

Usage:
    dust-reclaim scan
    dust-reclaim close --execute
    dust-reclaim convert --mint <MINT> --execute
    dust-reclaim all --execute --yes
"""

import argparse
import asyncio
import logging
import os
import sys

import aiohttp
import base58
import uvloop
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from core.client import SolanaLedger
from core.instructions import InstructionFactory
from core.signer import ConfirmingSigner, KeypairSigner
from reclaim.config import ReclaimConfig, load_config
from reclaim.errors import InvalidStateError, TransactionTooLargeError
from reclaim.executor import SequentialBatchExecutor
from reclaim.models import BatchPlan, ScanResult, lamports_to_sol
from reclaim.orchestrator import ConsolidationOrchestrator, OperationStatus
from reclaim.packer import BatchPacker, SolanaSizeOracle
from reclaim.quotes import JupiterQuoteService, PriceOracle, QuoteFetcher, TokenList
from reclaim.scanner import AccountScanner
from reclaim.swaps import JupiterSwapBuilder
from utils.logger import get_logger, setup_console_logging, setup_file_logging

logger = get_logger(__name__)


def _load_keypair() -> Keypair:
    pk = os.getenv("SOLANA_PRIVATE_KEY")
    if not pk:
        raise SystemExit("SOLANA_PRIVATE_KEY is not set")
    return Keypair.from_bytes(base58.b58decode(pk))


async def _ask(description: str) -> bool:
    answer = await asyncio.to_thread(input, f"Sign transaction ({description})? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def _print_scan(scan: ScanResult, config: ReclaimConfig) -> None:
    fee = config.fee_for(scan.total_reclaimable)
    print(f"\n🔍 Wallet {scan.wallet}")
    print(f"🗑️  Empty accounts: {len(scan.empty_accounts)}")
    for account in scan.empty_accounts:
        print(f"  {account.address}  {lamports_to_sol(account.reclaimable_lamports):.6f} SOL  mint {account.mint[:12]}...")
    print(
        f"💰 Reclaimable: {lamports_to_sol(scan.total_reclaimable):.6f} SOL "
        f"(fee {lamports_to_sol(fee):.6f}, you get {lamports_to_sol(scan.total_reclaimable - fee):.6f})"
    )

    print(f"\n🔄 Dust tokens: {len(scan.dust)}")
    for dust in scan.dust:
        mark = "✅" if dust.worth_converting else "  "
        print(
            f"  {mark} {dust.label:<10} {dust.mint[:12]}...  {dust.holding.display_amount:<14g} "
            f"~{dust.estimated_target_amount:.6f} target  ${dust.estimated_fiat_value:.4f}  "
            f"[{dust.quote_state.value}]"
        )
    if scan.skipped_errors:
        print(f"⚠️  {scan.skipped_errors} account(s) could not be read")


def _print_plan(plan: BatchPlan) -> None:
    print(f"\n📦 Close plan: {plan.instruction_count} close(s) in {len(plan.transactions)} transaction(s)")
    for index, tx in enumerate(plan.transactions):
        fee = f" + fee {lamports_to_sol(tx.fee_lamports):.6f} SOL" if tx.has_fee else ""
        print(f"  TX {index + 1}: {len(tx.instructions)} close(s), {tx.size} bytes{fee}")
    if plan.fee_lamports and not plan.fee_included:
        print("  Fee transfer skipped for this run")
    print(
        f"  Total {lamports_to_sol(plan.total_reclaimed):.6f} SOL, "
        f"fee {lamports_to_sol(plan.fee_charged):.6f}, you get {lamports_to_sol(plan.user_received):.6f}"
    )


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.config, args.env_file)

    keypair = None
    if args.execute or not args.wallet:
        keypair = _load_keypair()
    wallet = Pubkey.from_string(args.wallet) if args.wallet else keypair.pubkey()
    if keypair is not None and keypair.pubkey() != wallet:
        raise SystemExit("--wallet does not match SOLANA_PRIVATE_KEY")

    signer = None
    if keypair is not None:
        signer = KeypairSigner(keypair)
        if not args.yes:
            signer = ConfirmingSigner(signer, _ask)

    async with aiohttp.ClientSession() as http, SolanaLedger(
        config.rpc_endpoint, config.confirm_timeout, retry_policy=config.rpc_retry_policy(),
    ) as ledger:
        quote_service = JupiterQuoteService(http, config.quote_api_url, config.jupiter_api_key)
        price_oracle = PriceOracle(
            http, config.price_api_url, config.base_mint, config.target_mint,
            config.fallback_base_price_usd, config.jupiter_api_key,
        )
        orchestrator = ConsolidationOrchestrator(
            ledger=ledger,
            scanner=AccountScanner(
                ledger, config, TokenList(http, config.token_list_url, config.jupiter_api_key),
            ),
            quote_fetcher=QuoteFetcher(quote_service, config, price_oracle),
            packer=BatchPacker(SolanaSizeOracle(wallet), config),
            executor=SequentialBatchExecutor(ledger, signer, wallet, config),
            instruction_factory=InstructionFactory(wallet),
            swap_builder=JupiterSwapBuilder(http, config.quote_api_url, config.jupiter_api_key),
            config=config,
        )

        session = orchestrator.open_session(str(wallet))
        scan = await orchestrator.scan(session)
        await session.wait_quotes()
        _print_scan(scan, config)

        if args.command == "scan":
            return 0

        if not args.execute:
            if args.command in ("close", "all"):
                _print_plan(await orchestrator.plan_close(session))
            if args.command in ("convert", "all"):
                worth = [d for d in scan.dust if d.worth_converting and (not args.mint or d.mint in args.mint)]
                print(f"\n🔄 Would convert {len(worth)} token(s)")
            print("\n⚠️  DRY RUN - nothing executed. Add --execute to run.")
            return 0

        if args.command == "close":
            result = await orchestrator.close_empty_accounts(session)
        elif args.command == "convert":
            result = await orchestrator.convert_dust(session, args.mint or None)
        else:
            result = await orchestrator.convert_all(session)

        icon = {
            OperationStatus.SUCCEEDED: "✅",
            OperationStatus.NOTHING_TO_DO: "✅",
            OperationStatus.CANCELLED: "🛑",
            OperationStatus.PARTIAL: "⚠️ ",
        }.get(result.status, "❌")
        print(f"\n{icon} {result.summary()}")
        for signature in result.signatures:
            print(f"  {signature}")

        await session.wait_settled()
        if session.scan is not None and session.scan is not scan:
            print(
                f"\n📊 After refresh: {len(session.scan.empty_accounts)} empty, "
                f"{len(session.scan.dust)} dust"
            )

        ok = (OperationStatus.SUCCEEDED, OperationStatus.NOTHING_TO_DO, OperationStatus.CANCELLED)
        return 0 if result.status in ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dust-reclaim", description="Reclaim rent and convert dust tokens")
    parser.add_argument("command", choices=["scan", "close", "convert", "all"], help="What to do")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--env-file", help=".env file to load (default: ./.env)")
    parser.add_argument("--wallet", help="Wallet address (dry runs only; default: SOLANA_PRIVATE_KEY owner)")
    parser.add_argument("--mint", action="append", default=[], help="Only convert this mint (repeatable)")
    parser.add_argument("--execute", action="store_true", help="Sign and send transactions")
    parser.add_argument("--yes", action="store_true", help="Do not ask before each signature")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def main() -> None:
    args = build_parser().parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_console_logging(level)
    setup_file_logging("reclaim.log", level)

    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    try:
        code = asyncio.run(run(args))
    except TransactionTooLargeError as e:
        print(f"❌ {e}")
        code = 2
    except (InvalidStateError, ValueError) as e:
        print(f"❌ {e}")
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
