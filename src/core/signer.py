"""
Signer collaborator.

The engine never touches key material: it hands an unsigned transaction to a
Signer and gets a signed one back. Rejections are reported as typed errors so
callers match on the exception class instead of parsing wallet messages.
"""

from typing import Awaitable, Callable, Protocol, Union

from solders.keypair import Keypair
from solders.transaction import Transaction, VersionedTransaction

from utils.logger import get_logger

logger = get_logger(__name__)

AnyTransaction = Union[Transaction, VersionedTransaction]


class SignerError(Exception):
    """Signer failed for a reason other than rejection or transport."""


class SignerRejected(SignerError):
    """The wallet holder declined to sign."""

    def __init__(self, message: str = "Signature request rejected by user", code: int | None = None):
        super().__init__(message)
        self.code = code


class SignerTransportError(SignerError):
    """The signer could not be reached (remote wallet, hardware device)."""


class Signer(Protocol):
    async def sign(self, transaction: AnyTransaction) -> AnyTransaction:
        ...


class KeypairSigner:
    """Signs with a local keypair. Used by the CLI and by tests."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @property
    def pubkey(self):
        return self._keypair.pubkey()

    async def sign(self, transaction: AnyTransaction) -> AnyTransaction:
        if isinstance(transaction, VersionedTransaction):
            return VersionedTransaction(transaction.message, [self._keypair])
        try:
            transaction.sign([self._keypair], transaction.message.recent_blockhash)
        except Exception as e:
            raise SignerError(f"Keypair signing failed: {e}") from e
        return transaction


Prompt = Callable[[str], Awaitable[bool]]


class ConfirmingSigner:
    """Asks the holder before delegating each signature.

    A negative answer becomes ``SignerRejected``, which is the engine's only
    cancellation trigger.
    """

    def __init__(self, inner: Signer, prompt: Prompt):
        self._inner = inner
        self._prompt = prompt
        self.requests = 0

    async def sign(self, transaction: AnyTransaction) -> AnyTransaction:
        self.requests += 1
        description = _describe(transaction)
        if not await self._prompt(description):
            logger.info(f"[SIGN] Request #{self.requests} declined")
            raise SignerRejected()
        return await self._inner.sign(transaction)


def _describe(transaction: AnyTransaction) -> str:
    message = transaction.message
    return f"{len(message.instructions)} instruction(s), {len(bytes(transaction))} bytes"
