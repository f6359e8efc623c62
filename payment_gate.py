# payment_gate.py
"""
x402 payment gate for FastAPI routes.

A PaymentGate instance is a route dependency: it answers 402 when no payment
proof header is present, verifies the proof otherwise, and hands the verified
PaymentContext to the route handler.

    gate = PaymentGate(PaymentRequirement(recipient=..., amount="0.01", currency="USDC"), verifier)

    @app.get("/api/data")
    def data(payment: PaymentContext = Depends(gate)):
        ...

install_x402_handlers(app) must be called once so the gate's short-circuit
exceptions are rendered as JSON responses.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from chain_utils import ChainReaderError
from verify_payment import PaymentRequirement, PaymentVerifier, VerificationResult

logger = logging.getLogger(__name__)

X402_PROTOCOL = "x402"
X402_VERSION = "1.0"
DEFAULT_HEADER_NAME = "X-Payment-Hash"
AMOUNT_HEADER_NAME = "X-Payment-Amount"


class X402Error(Exception):
    """Short-circuits a gated request with a JSON response."""

    status_code = 402

    def __init__(self, content: dict[str, Any]):
        super().__init__(content.get("error"))
        self.content = content


class PaymentRequired(X402Error):
    """No payment proof was presented."""


class PaymentRejected(X402Error):
    """A payment proof was presented but did not check out."""


class PaymentVerificationUnavailable(X402Error):
    """The payment could not be checked right now; safe to retry."""

    status_code = 503


async def x402_exception_handler(request: Request, exc: X402Error) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.content)


def install_x402_handlers(app: FastAPI) -> None:
    app.add_exception_handler(X402Error, x402_exception_handler)


class PaymentContext(BaseModel):
    """Verified payment attached to the request (request.state.payment)."""

    hash: str
    amount: str
    currency: str
    network: str
    verified: bool = True
    timestamp: str


def create_payment_instructions(
    endpoint: str,
    requirement: PaymentRequirement,
    method: str = "GET",
    description: str = "Protected resource",
    header_name: str = DEFAULT_HEADER_NAME,
    facilitator_url: Optional[str] = None,
    custom_instructions: Optional[dict] = None,
) -> dict:
    """Build the x402 instructions block for a 402 Payment Required response."""
    price = requirement.amount
    currency = requirement.currency
    instructions = {
        "protocol": X402_PROTOCOL,
        "version": X402_VERSION,
        "payment": {
            "recipient": requirement.recipient,
            "amount": price,
            "currency": currency,
            "network": requirement.network,
            "chainId": requirement.chain_id,
        },
        "resource": {
            "endpoint": endpoint,
            "method": method,
            "description": description,
        },
    }
    if facilitator_url:
        instructions["facilitator"] = {"url": facilitator_url, "verification": "auto"}

    instructions["instructions"] = custom_instructions or {
        "message": f"Pay {price} {currency} to access this resource",
        "steps": [
            f"1. Send {price} {currency} payment to {requirement.recipient} on {requirement.network}",
            f"2. Include the transaction hash in the {header_name} header",
            "3. Retry request with payment proof",
        ],
    }
    return instructions


class PaymentGate:
    """Per-route "verified payment before access" dependency."""

    def __init__(
        self,
        requirement: PaymentRequirement,
        verifier: Optional[PaymentVerifier] = None,
        *,
        required: bool = True,
        header_name: str = DEFAULT_HEADER_NAME,
        description: str = "Protected resource",
        facilitator_url: Optional[str] = None,
        custom_instructions: Optional[dict] = None,
        on_verified: Optional[Callable[[Request, PaymentContext], None]] = None,
        on_rejected: Optional[Callable[[Request, str], None]] = None,
    ):
        if not isinstance(requirement, PaymentRequirement):
            raise ValueError("x402: recipient, amount and currency are required")
        if required and verifier is None:
            raise ValueError("x402: a payment verifier is required")
        # fail fast on an unsupported network/currency
        self.token = requirement.token
        self.chain_id = requirement.chain_id

        self.requirement = requirement
        self.verifier = verifier
        self.required = required
        self.header_name = header_name
        self.description = description
        self.facilitator_url = facilitator_url
        self.custom_instructions = custom_instructions
        self.on_verified = on_verified
        self.on_rejected = on_rejected

    def payment_required_body(self, request: Request) -> dict:
        instructions = create_payment_instructions(
            endpoint=request.url.path,
            requirement=self.requirement,
            method=request.method,
            description=self.description,
            header_name=self.header_name,
            facilitator_url=self.facilitator_url,
            custom_instructions=self.custom_instructions,
        )
        return {"error": "Payment Required", "status": 402, **instructions}

    def payment_rejected_body(self, proof_hash: str, claimed_amount: Optional[str], result: VerificationResult) -> dict:
        received = {"hash": proof_hash}
        if claimed_amount:
            received["amount"] = claimed_amount
        return {
            "error": "Invalid Payment",
            "status": 402,
            "message": "Payment could not be verified",
            "reason": result.failure_reason.value if result.failure_reason else None,
            "received": received,
            "expected": {
                "amount": self.requirement.amount,
                "currency": self.requirement.currency,
                "recipient": self.requirement.recipient,
                "network": self.requirement.network,
            },
        }

    def __call__(self, request: Request) -> Optional[PaymentContext]:
        path = request.url.path

        if not self.required:
            logger.info("[x402] Payment check skipped (not required) endpoint=%s", path)
            return None

        proof_hash = (request.headers.get(self.header_name) or "").strip()
        if not proof_hash:
            logger.info(
                "[x402] Payment required endpoint=%s amount=%s currency=%s",
                path, self.requirement.amount, self.requirement.currency,
            )
            raise PaymentRequired(self.payment_required_body(request))

        try:
            result = self.verifier.verify(proof_hash, self.requirement)
        except ChainReaderError as e:
            logger.error(
                "[x402] Payment verification error hash=%s endpoint=%s: %s",
                proof_hash, path, e, exc_info=True,
            )
            if self.on_rejected:
                self.on_rejected(request, "verification_error")
            raise PaymentVerificationUnavailable({
                "error": "Payment Verification Error",
                "status": 503,
                "message": "Failed to verify payment",
            }) from e

        if not result.verified:
            reason = result.failure_reason.value if result.failure_reason else "verification_failed"
            logger.warning(
                "[x402] Payment rejected hash=%s amount=%s endpoint=%s reason=%s",
                proof_hash, self.requirement.amount, path, reason,
            )
            if self.on_rejected:
                self.on_rejected(request, reason)
            raise PaymentRejected(
                self.payment_rejected_body(proof_hash, request.headers.get(AMOUNT_HEADER_NAME), result)
            )

        amount = result.observed_amount if result.observed_amount is not None else self.requirement.amount
        context = PaymentContext(
            hash=proof_hash,
            amount=str(amount),
            currency=self.requirement.currency,
            network=self.requirement.network,
            verified=True,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        request.state.payment = context
        logger.info(
            "[x402] Payment verified hash=%s amount=%s endpoint=%s",
            proof_hash, context.amount, path,
        )
        if self.on_verified:
            self.on_verified(request, context)
        return context
