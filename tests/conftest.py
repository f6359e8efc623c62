from decimal import Decimal

import pytest

from helpers import RECIPIENT, TX_HASH, FakeChainReader, receipt, transfer_log
from verify_payment import PaymentRequirement


@pytest.fixture
def requirement():
    return PaymentRequirement(recipient=RECIPIENT, amount="0.01", currency="USDC", network="base-sepolia")


@pytest.fixture
def happy_reader():
    # recipient in upper-case hex, 10000 raw = 0.01 USDC
    return FakeChainReader({TX_HASH: receipt(transfer_log("0xABC0000000000000000000000000000000000ABC", 10_000))})


@pytest.fixture
def one_cent():
    return Decimal("0.01")
