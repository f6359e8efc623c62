# verify_payment.py
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from web3 import Web3

from chain_utils import ChainReader, get_app_env, get_network, is_non_production
from erc20_utils import (
    TokenInfo,
    TransferDecodeError,
    decode_transfer_event,
    parse_amount,
    resolve_token,
    token_to_human,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("0.000001")
DEFAULT_CACHE_TTL = 3600.0

TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class FailureReason(str, Enum):
    # The last two are raised, not returned: UnsupportedNetworkOrCurrency while building
    # a PaymentRequirement or PaymentGate, ChainReaderError (OperationalError) from verify().
    # They are listed so logs and clients share one vocabulary.
    TRANSACTION_NOT_FOUND = "TransactionNotFound"
    TRANSACTION_FAILED = "TransactionFailed"
    NO_TRANSFER_FOUND = "NoTransferFound"
    WRONG_RECIPIENT = "WrongRecipient"
    INSUFFICIENT_AMOUNT = "InsufficientAmount"
    UNSUPPORTED_NETWORK_OR_CURRENCY = "UnsupportedNetworkOrCurrency"
    OPERATIONAL_ERROR = "OperationalError"


class PaymentRequirement(BaseModel):
    """What must be paid to access a resource."""

    model_config = ConfigDict(frozen=True)

    recipient: str
    amount: str
    currency: str
    network: str = "base-sepolia"
    token_contract: Optional[str] = None

    @field_validator("recipient")
    @classmethod
    def _check_recipient(cls, v: str) -> str:
        if not v or not Web3.is_address(v):
            raise ValueError(f"recipient must be a 20-byte hex address, got {v!r}")
        return Web3.to_checksum_address(v)

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, v) -> str:
        if v is None or str(v).strip() == "":
            raise ValueError("amount is required")
        parse_amount(v)
        return str(v).strip()

    @field_validator("currency")
    @classmethod
    def _check_currency(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("currency is required")
        return v.strip().upper()

    @property
    def amount_decimal(self) -> Decimal:
        return parse_amount(self.amount)

    @property
    def chain_id(self) -> int:
        return get_network(self.network).chain_id

    @property
    def token(self) -> TokenInfo:
        return resolve_token(self.network, self.currency, self.token_contract)

    def cache_key(self) -> tuple:
        return (
            self.recipient.lower(),
            str(self.amount_decimal),
            self.currency,
            self.network,
            self.token.address.lower(),
        )


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    proof_hash: str
    failure_reason: Optional[FailureReason] = None
    observed_sender: Optional[str] = None
    observed_recipient: Optional[str] = None
    observed_amount: Optional[Decimal] = None

    @classmethod
    def failed(cls, proof_hash: str, reason: FailureReason, **observed) -> "VerificationResult":
        return cls(verified=False, proof_hash=proof_hash, failure_reason=reason, **observed)


def is_tx_hash(value: str) -> bool:
    return bool(value) and TX_HASH_RE.match(value) is not None


def meets_amount(observed: Decimal, required: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    return observed >= required - tolerance


class PaymentVerifier(ABC):
    """Decides whether a proof satisfies a PaymentRequirement.

    Implementations return a VerificationResult for definitive verdicts and
    raise chain_utils.ChainReaderError when the chain could not be queried.
    """

    @abstractmethod
    def verify(self, proof_hash: str, requirement: PaymentRequirement) -> VerificationResult:
        ...


class ChainVerifier(PaymentVerifier):
    """Verifies a payment by reading the transaction receipt from the chain."""

    def __init__(self, reader: ChainReader, tolerance: Decimal | str = DEFAULT_TOLERANCE):
        self.reader = reader
        self.tolerance = Decimal(str(tolerance))

    def verify(self, proof_hash: str, requirement: PaymentRequirement) -> VerificationResult:
        token = requirement.token
        logger.info(
            "Verifying %s payment hash=%s expected=%s network=%s recipient=%s",
            token.symbol, proof_hash, requirement.amount, requirement.network, requirement.recipient,
        )

        if not is_tx_hash(proof_hash):
            logger.warning("Not a transaction hash: %r", proof_hash)
            return VerificationResult.failed(proof_hash, FailureReason.TRANSACTION_NOT_FOUND)

        # 1. receipt
        receipt = self.reader.get_transaction_receipt(requirement.network, proof_hash)
        if receipt is None:
            logger.warning("Transaction not found hash=%s", proof_hash)
            return VerificationResult.failed(proof_hash, FailureReason.TRANSACTION_NOT_FOUND)

        # 2. execution status
        if not receipt.succeeded:
            logger.warning("Transaction failed hash=%s status=%s", proof_hash, receipt.status)
            return VerificationResult.failed(proof_hash, FailureReason.TRANSACTION_FAILED)

        # 3. Transfer event from the token contract
        try:
            transfer = decode_transfer_event(receipt.logs, token.address)
        except TransferDecodeError as e:
            logger.warning("No %s transfer in hash=%s: %s", token.symbol, proof_hash, e)
            return VerificationResult.failed(proof_hash, FailureReason.NO_TRANSFER_FOUND)

        # 4. smallest unit -> human units
        amount = token_to_human(transfer.raw_amount, token.decimals)
        observed = dict(
            observed_sender=transfer.from_address,
            observed_recipient=transfer.to_address,
            observed_amount=amount,
        )
        logger.debug(
            "Payment details hash=%s to=%s amount=%s expected=%s",
            proof_hash, transfer.to_address, amount, requirement.amount,
        )

        # 5. recipient
        if transfer.to_address.lower() != requirement.recipient.lower():
            logger.warning(
                "Payment sent to wrong address hash=%s expected=%s actual=%s",
                proof_hash, requirement.recipient, transfer.to_address,
            )
            return VerificationResult.failed(proof_hash, FailureReason.WRONG_RECIPIENT, **observed)

        # 6. amount, with tolerance for rounding
        if not meets_amount(amount, requirement.amount_decimal, self.tolerance):
            logger.warning(
                "Payment amount insufficient hash=%s expected=%s actual=%s",
                proof_hash, requirement.amount, amount,
            )
            return VerificationResult.failed(proof_hash, FailureReason.INSUFFICIENT_AMOUNT, **observed)

        logger.info("%s payment verified hash=%s amount=%s", token.symbol, proof_hash, amount)
        return VerificationResult(verified=True, proof_hash=proof_hash, **observed)


class DemoVerifier(PaymentVerifier):
    """
    Development-only verifier: accepts a fixed allow-list of proof values.
    Never accepts anything unless the deployment is explicitly development/test.
    """

    def __init__(self, accepted_hashes: Iterable[str] = ("demo",), app_env: str | None = None):
        self.accepted_hashes = frozenset(accepted_hashes)
        self.app_env = get_app_env() if app_env is None else app_env

    @property
    def active(self) -> bool:
        return is_non_production(self.app_env)

    def accepts(self, proof_hash: str) -> bool:
        if not self.active:
            logger.error(
                "DEMO PAYMENT BYPASS REFUSED: demo verifier invoked outside development "
                "(APP_ENV=%r) hash=%s",
                self.app_env, proof_hash,
            )
            return False
        accepted = proof_hash in self.accepted_hashes
        if accepted:
            logger.warning("Demo payment accepted hash=%s env=%s", proof_hash, self.app_env)
        return accepted

    def verify(self, proof_hash: str, requirement: PaymentRequirement) -> VerificationResult:
        if not self.accepts(proof_hash):
            return VerificationResult.failed(proof_hash, FailureReason.TRANSACTION_NOT_FOUND)
        return VerificationResult(
            verified=True,
            proof_hash=proof_hash,
            observed_recipient=requirement.recipient,
            observed_amount=requirement.amount_decimal,
        )


class VerifierChain(PaymentVerifier):
    """Demo allow-list first, then the real verifier."""

    def __init__(self, demo: DemoVerifier, verifier: PaymentVerifier):
        self.demo = demo
        self.verifier = verifier

    def verify(self, proof_hash: str, requirement: PaymentRequirement) -> VerificationResult:
        if proof_hash in self.demo.accepted_hashes and self.demo.accepts(proof_hash):
            return self.demo.verify(proof_hash, requirement)
        return self.verifier.verify(proof_hash, requirement)


class CachedVerifier(PaymentVerifier):
    """
    Memoizes verdicts per (proof hash, requirement) for ttl_seconds.
    Mined transactions are immutable, so a cached verdict never goes stale,
    except TransactionNotFound: a pending transaction can still be mined.
    """

    def __init__(
        self,
        verifier: PaymentVerifier,
        ttl_seconds: float = DEFAULT_CACHE_TTL,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.verifier = verifier
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: dict[tuple, tuple[float, VerificationResult]] = {}
        self._lock = threading.Lock()

    def _key(self, proof_hash: str, requirement: PaymentRequirement) -> tuple:
        return (proof_hash.lower(),) + requirement.cache_key()

    def verify(self, proof_hash: str, requirement: PaymentRequirement) -> VerificationResult:
        key = self._key(proof_hash, requirement)
        now = self.clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                expires, result = entry
                if expires > now:
                    logger.debug("Verification cache hit hash=%s", proof_hash)
                    return result
                del self._entries[key]

        # concurrent misses on the same hash may both verify; verdicts are identical
        result = self.verifier.verify(proof_hash, requirement)
        if result.failure_reason is not FailureReason.TRANSACTION_NOT_FOUND:
            self._store(key, result, now + self.ttl_seconds)
        return result

    def _store(self, key: tuple, result: VerificationResult, expires: float) -> None:
        with self._lock:
            if len(self._entries) >= self.max_entries:
                now = self.clock()
                for k in [k for k, (exp, _) in self._entries.items() if exp <= now]:
                    del self._entries[k]
                while len(self._entries) >= self.max_entries:
                    del self._entries[next(iter(self._entries))]
            self._entries[key] = (expires, result)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def build_verifier(
    reader: ChainReader,
    app_env: str | None = None,
    demo_hashes: Iterable[str] = ("demo",),
    cache_ttl: float = DEFAULT_CACHE_TTL,
    tolerance: Decimal | str = DEFAULT_TOLERANCE,
) -> PaymentVerifier:
    """Assemble the verifier for a deployment: [demo ->] [cache ->] chain."""
    env = get_app_env() if app_env is None else app_env
    verifier: PaymentVerifier = ChainVerifier(reader, tolerance=tolerance)
    if cache_ttl > 0:
        verifier = CachedVerifier(verifier, ttl_seconds=cache_ttl)
    demo_hashes = list(demo_hashes)
    if demo_hashes and is_non_production(env):
        logger.warning("Demo payment bypass enabled (APP_ENV=%s) for %s", env, demo_hashes)
        verifier = VerifierChain(DemoVerifier(demo_hashes, app_env=env), verifier)
    return verifier
