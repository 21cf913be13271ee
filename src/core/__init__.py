"""Core blockchain functionality."""

from core.client import TRANSIENT_RPC_ERRORS, Ledger, RawTokenAccount, SolanaLedger
from core.instructions import (
    TOKEN_2022_PROGRAM_ID,
    TOKEN_ACCOUNT_SIZE,
    TOKEN_PROGRAM_ID,
    InstructionFactory,
)
from core.retry import RetryPolicy, with_retry
from core.signer import (
    ConfirmingSigner,
    KeypairSigner,
    Signer,
    SignerError,
    SignerRejected,
    SignerTransportError,
)

__all__ = [
    # Ledger
    "Ledger",
    "RawTokenAccount",
    "SolanaLedger",
    "TRANSIENT_RPC_ERRORS",
    # Instructions
    "InstructionFactory",
    "TOKEN_PROGRAM_ID",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_ACCOUNT_SIZE",
    # Retry
    "RetryPolicy",
    "with_retry",
    # Signer
    "Signer",
    "KeypairSigner",
    "ConfirmingSigner",
    "SignerError",
    "SignerRejected",
    "SignerTransportError",
]
