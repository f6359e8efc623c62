# chain_utils.py
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Protocol

import requests
from dotenv import load_dotenv
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

load_dotenv("properties.env")

logger = logging.getLogger(__name__)

DEFAULT_RPC_TIMEOUT = 10.0
NON_PRODUCTION_ENVS = ("development", "test")


class UnsupportedNetworkOrCurrency(ValueError):
    """Configuration error: the network or the (network, currency) pair is unknown."""


class ChainReaderError(RuntimeError):
    """The chain could not be queried (timeout, transport failure, RPC error).

    This means "we don't know", never "the payment is invalid".
    """


@dataclass(frozen=True)
class Network:
    name: str
    chain_id: int
    public_rpc_url: str


NETWORKS = {
    n.name: n
    for n in (
        Network("eth-mainnet", 1, "https://eth.llamarpc.com"),
        Network("eth-sepolia", 11155111, "https://ethereum-sepolia-rpc.publicnode.com"),
        Network("base-mainnet", 8453, "https://mainnet.base.org"),
        Network("base-sepolia", 84532, "https://sepolia.base.org"),
        Network("polygon-mainnet", 137, "https://polygon-rpc.com"),
        Network("polygon-amoy", 80002, "https://rpc-amoy.polygon.technology"),
        Network("arbitrum-mainnet", 42161, "https://arb1.arbitrum.io/rpc"),
        Network("arbitrum-sepolia", 421614, "https://sepolia-rollup.arbitrum.io/rpc"),
        Network("optimism-mainnet", 10, "https://mainnet.optimism.io"),
        Network("optimism-sepolia", 11155420, "https://sepolia.optimism.io"),
    )
}


def get_network(name: str) -> Network:
    network = NETWORKS.get(name)
    if network is None:
        raise UnsupportedNetworkOrCurrency(
            f"Unsupported network {name!r}. Supported networks: {', '.join(NETWORKS)}"
        )
    return network


# ==== environment ====

def get_app_env() -> str:
    return os.getenv("APP_ENV", "").strip().lower()


def is_non_production(app_env: str | None = None) -> bool:
    """True only when the deployment is explicitly marked development/test."""
    env = get_app_env() if app_env is None else app_env.strip().lower()
    return env in NON_PRODUCTION_ENVS


def get_payment_address() -> str:
    addr = os.getenv("PAYMENT_ADDRESS")
    if not addr:
        raise RuntimeError("PAYMENT_ADDRESS not set in .env")
    return addr


def get_payment_network() -> str:
    return os.getenv("PAYMENT_NETWORK", "base-sepolia")


def get_payment_currency() -> str:
    return os.getenv("PAYMENT_CURRENCY", "USDC")


def get_price_per_query() -> str:
    return os.getenv("PAYMENT_PRICE_PER_QUERY", "0.01")


def get_rpc_timeout() -> float:
    return float(os.getenv("RPC_TIMEOUT_SECONDS", str(DEFAULT_RPC_TIMEOUT)))


def get_demo_hashes() -> list[str]:
    raw = os.getenv("DEMO_PAYMENT_HASHES", "demo")
    return [h.strip() for h in raw.split(",") if h.strip()]


def get_cache_ttl() -> float:
    return float(os.getenv("VERIFICATION_CACHE_TTL", "3600"))


def get_rpc_url(network: str) -> str:
    """RPC_URL_BASE_SEPOLIA style override, else the network's public endpoint."""
    net = get_network(network)
    env_key = "RPC_URL_" + net.name.upper().replace("-", "_")
    return os.getenv(env_key) or net.public_rpc_url


def make_http_provider(rpc_url: str, timeout: float) -> Web3.HTTPProvider:
    """HTTP provider whose total wait per call is the timeout, with no retries on top."""
    return Web3.HTTPProvider(
        rpc_url,
        request_kwargs={"timeout": timeout},
        exception_retry_configuration=None,
    )


def get_web3(network: str, timeout: float | None = None) -> Web3:
    rpc_url = get_rpc_url(network)
    if timeout is None:
        timeout = get_rpc_timeout()
    return Web3(make_http_provider(rpc_url, timeout))


# ==== chain reader ====

@dataclass(frozen=True)
class LogEntry:
    """One event log, hex fields normalized to lower-case 0x strings."""
    address: str
    topics: tuple[str, ...]
    data: str


@dataclass(frozen=True)
class Receipt:
    transaction_hash: str
    status: int
    logs: tuple[LogEntry, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainReader(Protocol):
    def get_transaction_receipt(self, network: str, tx_hash: str) -> Receipt | None:
        ...


def to_hex_str(value) -> str:
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value).lower()


def log_from_web3(raw) -> LogEntry:
    return LogEntry(
        address=to_hex_str(raw["address"]),
        topics=tuple(to_hex_str(t) for t in raw["topics"]),
        data=to_hex_str(raw["data"]),
    )


def receipt_from_web3(tx_hash: str, raw) -> Receipt:
    """Convert a web3 receipt (AttributeDict) into a Receipt."""
    try:
        logs = tuple(log_from_web3(log) for log in raw["logs"])
        return Receipt(transaction_hash=tx_hash, status=int(raw["status"]), logs=logs)
    except (KeyError, TypeError, ValueError) as e:
        raise ChainReaderError(f"Malformed receipt for {tx_hash}: {e}") from e


class Web3ChainReader:
    """Fetches transaction receipts over JSON-RPC, one Web3 client per network."""

    def __init__(self, rpc_urls: dict[str, str] | None = None, timeout: float | None = None):
        self.rpc_urls = dict(rpc_urls or {})
        self.timeout = get_rpc_timeout() if timeout is None else timeout
        self._clients: dict[str, Web3] = {}
        self._lock = threading.Lock()

    def web3_for(self, network: str) -> Web3:
        with self._lock:
            w3 = self._clients.get(network)
            if w3 is None:
                rpc_url = self.rpc_urls.get(network) or get_rpc_url(network)
                w3 = Web3(make_http_provider(rpc_url, self.timeout))
                self._clients[network] = w3
            return w3

    def get_transaction_receipt(self, network: str, tx_hash: str) -> Receipt | None:
        w3 = self.web3_for(network)
        try:
            raw = w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (requests.exceptions.RequestException, Web3Exception, ValueError) as e:
            logger.error("get_transaction_receipt failed on %s for %s: %s", network, tx_hash, e)
            raise ChainReaderError(f"RPC query failed on {network}: {e}") from e
        if raw is None:
            return None
        return receipt_from_web3(tx_hash, raw)
