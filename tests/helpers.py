from chain_utils import ChainReaderError, LogEntry, Receipt
from erc20_utils import TRANSFER_TOPIC0, USDC_CONTRACTS

USDC_BASE_SEPOLIA = USDC_CONTRACTS["base-sepolia"]
RECIPIENT = "0xabc0000000000000000000000000000000000abc"
PAYER = "0x1111111111111111111111111111111111111111"
OTHER = "0xdef0000000000000000000000000000000000def"

TX_HASH = "0x" + "ab" * 32
TX_HASH_2 = "0x" + "cd" * 32

def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]

def transfer_log(to: str, raw_amount: int, sender: str = PAYER, token: str = USDC_BASE_SEPOLIA) -> LogEntry:
    return LogEntry(
        address=token,
        topics=(TRANSFER_TOPIC0, address_topic(sender), address_topic(to)),
        data="0x" + format(raw_amount, "064x"),
    )

def receipt(*logs: LogEntry, status: int = 1, tx_hash: str = TX_HASH) -> Receipt:
    return Receipt(transaction_hash=tx_hash, status=status, logs=tuple(logs))

class FakeChainReader:
    """Serves canned receipts; raises ChainReaderError for hashes listed in `broken`."""

    def __init__(self, receipts=None, broken=()):
        self.receipts = dict(receipts or {})
        self.broken = set(broken)
        self.calls = []

    def get_transaction_receipt(self, network, tx_hash):
        self.calls.append((network, tx_hash))
        if tx_hash in self.broken:
            raise ChainReaderError("timed out after 10s")
        return self.receipts.get(tx_hash)
