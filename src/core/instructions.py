"""
Instruction factory for rent reclaim.

Builds SPL CloseAccount instructions (classic Token and Token-2022) and the
system transfer used for the reclaim fee.
"""

from solders.instruction import Instruction
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from spl.token.instructions import CloseAccountParams, close_account

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")

# Size of an SPL token account, the basis of its rent-exempt deposit
TOKEN_ACCOUNT_SIZE = 165


def _pubkey(value) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))


class InstructionFactory:
    """Builds instructions on behalf of a single wallet owner."""

    def __init__(self, owner: Pubkey | str):
        self.owner = _pubkey(owner)

    def build_close_instruction(
        self,
        account: Pubkey | str,
        recipient: Pubkey | str | None = None,
        program_id: Pubkey | str = TOKEN_PROGRAM_ID,
    ) -> Instruction:
        """Close ``account`` and send its rent deposit to ``recipient`` (owner by default)."""
        return close_account(CloseAccountParams(
            program_id=_pubkey(program_id),
            account=_pubkey(account),
            dest=_pubkey(recipient) if recipient is not None else self.owner,
            owner=self.owner,
        ))

    def build_fee_transfer(self, amount: int, recipient: Pubkey | str) -> Instruction:
        if amount <= 0:
            raise ValueError(f"Fee transfer amount must be positive, got {amount}")
        return transfer(TransferParams(
            from_pubkey=self.owner,
            to_pubkey=_pubkey(recipient),
            lamports=int(amount),
        ))
