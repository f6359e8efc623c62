# data_provider.py
import logging

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from chain_utils import ChainReaderError, get_web3, log_from_web3, to_hex_str
from erc20_utils import TRANSFER_TOPIC0, TransferDecodeError, decode_transfer_log, resolve_token, token_to_human

logger = logging.getLogger(__name__)


def address_topic(address: str) -> str:
    """20-byte address left-padded to a 32-byte topic."""
    return "0x" + "0" * 24 + Web3.to_checksum_address(address)[2:].lower()


class TransferDataProvider:
    """
    Token transfer history for a wallet, read from Transfer logs with eth_getLogs.
    This is what the paid route serves once the payment gate lets a request through.
    """

    def __init__(self, network: str, currency: str = "USDC", block_range: int = 10_000, w3: Web3 | None = None):
        self.network = network
        self.token = resolve_token(network, currency)
        self.block_range = block_range
        self._w3 = w3

    @property
    def w3(self) -> Web3:
        if self._w3 is None:
            self._w3 = get_web3(self.network)
        return self._w3

    def _fetch(self, topics: list, from_block: int) -> list:
        return self.w3.eth.get_logs({
            "fromBlock": from_block,
            "toBlock": "latest",
            "address": self.token.address,
            "topics": topics,
        })

    def get_token_transfers(self, address: str, max_count: int = 100) -> dict:
        padded = address_topic(address)
        try:
            latest = self.w3.eth.block_number
            from_block = max(latest - self.block_range, 0)
            outgoing = self._fetch([TRANSFER_TOPIC0, padded], from_block)
            incoming = self._fetch([TRANSFER_TOPIC0, None, padded], from_block)
        except (requests.exceptions.RequestException, Web3Exception, ValueError) as e:
            logger.error("get_logs failed on %s for %s: %s", self.network, address, e)
            raise ChainReaderError(f"Transfer query failed on {self.network}: {e}") from e

        # self-transfers match both queries
        unique = {(to_hex_str(log["transactionHash"]), log["logIndex"]): log for log in [*outgoing, *incoming]}
        raw_logs = sorted(unique.values(), key=lambda log: (log["blockNumber"], log["logIndex"]), reverse=True)
        transfers = []
        for raw in raw_logs[:max_count]:
            try:
                event = decode_transfer_log(log_from_web3(raw))
            except TransferDecodeError:
                continue
            transfers.append({
                "blockNumber": raw["blockNumber"],
                "hash": to_hex_str(raw["transactionHash"]),
                "from": event.from_address,
                "to": event.to_address,
                "value": str(token_to_human(event.raw_amount, self.token.decimals)),
                "asset": self.token.symbol,
            })

        return {
            "address": Web3.to_checksum_address(address),
            "network": self.network,
            "fromBlock": from_block,
            "toBlock": latest,
            "transfers": transfers,
            "totalCount": len(transfers),
        }
