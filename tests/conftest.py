"""
Pytest fixtures for dust-reclaim tests
"""
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from core.instructions import InstructionFactory
from reclaim.config import ReclaimConfig
from reclaim.swaps import SwapTransaction

from fakes import RENT, FakeLedger, RecordingSleep


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def wallet(keypair):
    return str(keypair.pubkey())


@pytest.fixture
def config():
    """Defaults with a fixed rent so tests never ask the ledger"""
    return ReclaimConfig(rent_per_account_lamports=RENT)


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def factory(wallet):
    return InstructionFactory(wallet)


@pytest.fixture
def event_logger():
    # Отключаем запись событий в logs/ во время тестов
    logger = logging.getLogger("tests.reclaim.events")
    logger.propagate = False
    return logger


@pytest.fixture
def mock_swap_builder(keypair):
    """Swap builder returning a tiny prebuilt versioned transaction"""
    ix = transfer(TransferParams(from_pubkey=keypair.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))
    message = MessageV0.try_compile(keypair.pubkey(), [ix], [], Hash.default())
    tx = VersionedTransaction.populate(message, [Signature.default()])

    builder = MagicMock()
    builder.build_swap = AsyncMock(return_value=SwapTransaction(transaction=tx, last_valid_block_height=500))
    return builder
