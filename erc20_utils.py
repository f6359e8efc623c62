# erc20_utils.py
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable

from web3 import Web3

from chain_utils import LogEntry, UnsupportedNetworkOrCurrency, get_network

# topic0 of Transfer(address indexed from, address indexed to, uint256 value)
TRANSFER_TOPIC0 = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))

USDC_DECIMALS = 6

USDC_CONTRACTS = {
    # Ethereum
    "eth-mainnet": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    "eth-sepolia": "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
    # Base
    "base-mainnet": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    "base-sepolia": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
    # Polygon
    "polygon-mainnet": "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
    "polygon-amoy": "0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582",
    # Arbitrum
    "arbitrum-mainnet": "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    "arbitrum-sepolia": "0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
    # Optimism
    "optimism-mainnet": "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
    "optimism-sepolia": "0x5fd84259d66Cd46123540766Be93DFE6D43130D7",
}


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    network: str
    address: str
    decimals: int


TOKENS = {
    (network, "USDC"): TokenInfo("USDC", network, address, USDC_DECIMALS)
    for network, address in USDC_CONTRACTS.items()
}


def resolve_token(network: str, currency: str, contract_override: str | None = None) -> TokenInfo:
    """
    Look up (network, currency) in the static registry.
    An unknown pair is a configuration error, never a silent default.
    """
    get_network(network)
    symbol = (currency or "").upper()
    token = TOKENS.get((network, symbol))
    if token is None:
        supported = sorted({s for (n, s) in TOKENS if n == network})
        raise UnsupportedNetworkOrCurrency(
            f"Unsupported currency {currency!r} on {network}. Supported: {', '.join(supported)}"
        )
    if contract_override:
        if not Web3.is_address(contract_override):
            raise UnsupportedNetworkOrCurrency(f"Invalid token contract address {contract_override!r}")
        token = TokenInfo(token.symbol, network, Web3.to_checksum_address(contract_override), token.decimals)
    return token


def parse_amount(amount_human: str | Decimal) -> Decimal:
    """Parse a human-readable amount ("0.01") into a positive Decimal."""
    try:
        amt = Decimal(str(amount_human).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount {amount_human!r}")
    if not amt.is_finite() or amt <= 0:
        raise ValueError(f"Amount must be a positive number, got {amount_human!r}")
    return amt


def token_to_human(raw_amount: int, decimals: int) -> Decimal:
    return Decimal(raw_amount) / (Decimal(10) ** decimals)


# ==== Transfer event decoding ====

class TransferDecodeError(ValueError):
    """No qualifying Transfer log, or the qualifying log could not be decoded."""


@dataclass(frozen=True)
class TransferEvent:
    from_address: str
    to_address: str
    raw_amount: int
    token_address: str


def _topic_to_address(topic: str) -> str:
    # 32-byte topic, address is the low 20 bytes
    if len(topic) != 66:
        raise TransferDecodeError(f"Malformed address topic {topic!r}")
    try:
        return Web3.to_checksum_address("0x" + topic[-40:])
    except ValueError as e:
        raise TransferDecodeError(f"Malformed address topic {topic!r}") from e


def decode_transfer_log(log: LogEntry) -> TransferEvent:
    if len(log.topics) < 3:
        raise TransferDecodeError("Transfer log is missing indexed from/to topics")
    data = log.data[2:] if log.data.startswith("0x") else log.data
    if not data:
        raise TransferDecodeError("Transfer log has an empty data payload")
    try:
        raw_amount = int(data, 16)
    except ValueError as e:
        raise TransferDecodeError(f"Transfer log data is not hex: {log.data!r}") from e
    return TransferEvent(
        from_address=_topic_to_address(log.topics[1]),
        to_address=_topic_to_address(log.topics[2]),
        raw_amount=raw_amount,
        token_address=Web3.to_checksum_address(log.address),
    )


def find_transfer_log(logs: Iterable[LogEntry], token_address: str) -> LogEntry | None:
    """First log emitted by token_address whose topic0 is the Transfer signature."""
    token = token_address.lower()
    for log in logs:
        if log.address.lower() != token:
            continue
        if not log.topics or log.topics[0].lower() != TRANSFER_TOPIC0:
            continue
        return log
    return None


def decode_transfer_event(logs: Iterable[LogEntry], token_address: str) -> TransferEvent:
    """
    Decode the token transfer carried by a receipt's logs.
    Only the first qualifying log counts; later transfers are ignored.
    """
    log = find_transfer_log(logs, token_address)
    if log is None:
        raise TransferDecodeError(f"No Transfer event from {token_address} found in logs")
    return decode_transfer_log(log)
