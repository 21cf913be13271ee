"""
Solana ledger client for the reclaim engine.

Wraps ``solana.rpc.async_api.AsyncClient`` behind the small read/write surface
the engine needs: token-account listing, balances, rent constants, blockhashes,
raw submission and confirmation.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import TransactionExpiredBlockheightExceededError
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature

from core.retry import RetryPolicy, SleepFunc
from utils.logger import get_logger

logger = get_logger(__name__)

# Retried on every read; submit is never retried
TRANSIENT_RPC_ERRORS = (SolanaRpcException, ConnectionError, asyncio.TimeoutError)


@dataclass(frozen=True)
class RawTokenAccount:
    """A token account as returned by jsonParsed RPC, not yet validated."""
    pubkey: str
    program_id: str
    parsed: dict[str, Any]


class Ledger(Protocol):
    async def list_token_accounts(self, owner: str, program_id: str) -> list[RawTokenAccount]: ...
    async def account_exists(self, address: str) -> bool: ...
    async def get_balance(self, owner: str) -> int: ...
    async def get_min_balance_for_size(self, size: int) -> int: ...
    async def get_latest_blockhash(self) -> tuple[Hash, int]: ...
    async def submit(self, raw_transaction: bytes) -> Signature: ...
    async def confirm(self, signature: Signature, last_valid_block_height: int | None) -> bool: ...


def _pubkey(value) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))


class SolanaLedger:
    """Ledger read/write collaborator backed by a Solana RPC endpoint.

    Reads and confirmation polling go through ``retry_policy`` on
    ``TRANSIENT_RPC_ERRORS``. ``submit`` is sent once.
    """

    def __init__(
        self,
        rpc_endpoint: str,
        confirm_timeout: float = 90.0,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """Initialize ledger with RPC endpoint.

        Args:
            rpc_endpoint: URL of the Solana RPC endpoint
            confirm_timeout: upper bound for waiting on a confirmation, seconds
            retry_policy: backoff for read calls; its ``retry_on`` is replaced
                with ``TRANSIENT_RPC_ERRORS``
            sleep: awaited between retries
        """
        self.rpc_endpoint = rpc_endpoint
        self.confirm_timeout = confirm_timeout
        self.retry_policy = (retry_policy or RetryPolicy()).with_retry_on(*TRANSIENT_RPC_ERRORS)
        self._sleep = sleep
        self._client: AsyncClient | None = None

    async def get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_endpoint)
        return self._client

    async def close(self):
        """Close the client connection."""
        if self._client:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> "SolanaLedger":
        await self.get_client()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _read(self, label: str, func, *args, **kwargs):
        return await self.retry_policy.run(func, *args, sleep=self._sleep, label=f"rpc.{label}", **kwargs)

    async def list_token_accounts(self, owner: str, program_id: str) -> list[RawTokenAccount]:
        """List token accounts owned by ``owner`` under one token program."""
        client = await self.get_client()
        response = await self._read(
            "list_token_accounts",
            client.get_token_accounts_by_owner_json_parsed,
            _pubkey(owner),
            TokenAccountOpts(program_id=_pubkey(program_id)),
        )
        accounts = []
        for keyed in response.value:
            data = keyed.account.data
            parsed = getattr(data, "parsed", None)
            accounts.append(RawTokenAccount(
                pubkey=str(keyed.pubkey),
                program_id=str(program_id),
                parsed=parsed if isinstance(parsed, dict) else {},
            ))
        return accounts

    async def account_exists(self, address: str) -> bool:
        client = await self.get_client()
        response = await self._read("account_exists", client.get_account_info, _pubkey(address))
        return response.value is not None

    async def get_balance(self, owner: str) -> int:
        client = await self.get_client()
        response = await self._read("get_balance", client.get_balance, _pubkey(owner), commitment=Confirmed)
        return int(response.value)

    async def get_min_balance_for_size(self, size: int) -> int:
        client = await self.get_client()
        response = await self._read(
            "get_min_balance_for_size", client.get_minimum_balance_for_rent_exemption, size
        )
        return int(response.value)

    async def get_latest_blockhash(self) -> tuple[Hash, int]:
        """Return a fresh blockhash and the last block height it stays valid for."""
        client = await self.get_client()
        response = await self._read("get_latest_blockhash", client.get_latest_blockhash, commitment=Confirmed)
        return response.value.blockhash, response.value.last_valid_block_height

    async def submit(self, raw_transaction: bytes) -> Signature:
        client = await self.get_client()
        opts = TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3)
        response = await client.send_raw_transaction(raw_transaction, opts=opts)
        logger.info(f"[RPC] TX sent: {str(response.value)[:20]}...")
        return response.value

    async def confirm(self, signature: Signature, last_valid_block_height: int | None) -> bool:
        """Wait for confirmation until the blockhash expires.

        Returns False when the transaction failed on-chain or its blockhash
        expired before it landed.
        """
        client = await self.get_client()

        async def wait_for_status():
            try:
                return await asyncio.wait_for(
                    client.confirm_transaction(
                        signature,
                        commitment=Confirmed,
                        sleep_seconds=0.5,
                        last_valid_block_height=last_valid_block_height,
                    ),
                    timeout=self.confirm_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"[RPC] Confirmation timeout for {str(signature)[:20]}...")
                return None

        try:
            response = await self._read("confirm", wait_for_status)
        except TransactionExpiredBlockheightExceededError:
            logger.warning(f"[RPC] Blockhash expired before {str(signature)[:20]}... landed")
            return False
        if response is None:
            return False

        statuses = response.value or []
        status = statuses[0] if statuses else None
        if status is None:
            return False
        if status.err is not None:
            logger.warning(f"[RPC] TX {str(signature)[:20]}... failed: {status.err}")
            return False
        return True
