# app_x402.py
import logging
import os
import time
from datetime import datetime, timezone

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from chain_utils import (
    ChainReaderError,
    Web3ChainReader,
    get_app_env,
    get_cache_ttl,
    get_demo_hashes,
    get_payment_address,
    get_payment_currency,
    get_payment_network,
    get_price_per_query,
)
from data_provider import TransferDataProvider
from payment_gate import DEFAULT_HEADER_NAME, AMOUNT_HEADER_NAME, PaymentContext, PaymentGate, install_x402_handlers
from verify_payment import PaymentRequirement, PaymentVerifier, build_verifier

API_VERSION = "1.0.0"
SERVICE_NAME = "x402-vend"

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def requirement_from_env() -> PaymentRequirement:
    return PaymentRequirement(
        recipient=get_payment_address(),
        amount=get_price_per_query(),
        currency=get_payment_currency(),
        network=get_payment_network(),
    )


def create_app(
    requirement: PaymentRequirement | None = None,
    verifier: PaymentVerifier | None = None,
    data_provider=None,
    payment_required: bool = True,
) -> FastAPI:
    """
    Build the API. Every collaborator defaults to the environment configuration;
    tests pass fakes instead.
    """
    configure_logging()
    started = time.monotonic()

    if requirement is None:
        requirement = requirement_from_env()
    if verifier is None:
        verifier = build_verifier(
            Web3ChainReader(),
            app_env=get_app_env(),
            demo_hashes=get_demo_hashes(),
            cache_ttl=get_cache_ttl(),
        )
    if data_provider is None:
        data_provider = TransferDataProvider(requirement.network, requirement.currency)

    transfers_gate = PaymentGate(
        requirement,
        verifier,
        required=payment_required,
        description="Transaction history query",
    )

    app = FastAPI(title="x402 Vend API (USDC)", version=API_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_x402_handlers(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "Request completed method=%s path=%s status=%s duration=%.0fms",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - start) * 1000,
        )
        return response

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - started, 3),
        }

    @app.get("/")
    def root():
        return {
            "name": SERVICE_NAME,
            "version": API_VERSION,
            "description": "Blockchain data behind x402 USDC micropayments",
            "protocol": "x402",
            "endpoints": {
                "health": "GET /health",
                "transfers": "GET /api/transfers",
                "transfersInfo": "GET /api/transfers/info",
            },
        }

    @app.get("/api/transfers")
    def transfers(
        address: str = Query(..., min_length=42, max_length=42),
        max_count: int = Query(100, ge=1, le=1000),
        payment: PaymentContext | None = Depends(transfers_gate),
    ):
        try:
            result = data_provider.get_token_transfers(address, max_count=max_count)
        except ChainReaderError as e:
            logger.error("Transfer history query failed for %s: %s", address, e)
            raise HTTPException(status_code=502, detail="Blockchain data provider unavailable")
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid address {address!r}")

        return {
            "success": True,
            "data": result,
            "payment": {
                "hash": payment.hash if payment else None,
                "amount": payment.amount if payment else None,
                "timestamp": payment.timestamp if payment else None,
            },
        }

    @app.get("/api/transfers/info")
    def transfers_info():
        return {
            "endpoint": "/api/transfers",
            "description": "USDC transfer history for a wallet address",
            "payment": {
                "required": payment_required,
                "price": f"{requirement.amount} {requirement.currency}",
                "currency": requirement.currency,
                "network": requirement.network,
                "chainId": requirement.chain_id,
                "recipient": requirement.recipient,
            },
            "parameters": {
                "address": "Wallet address to query (sender or recipient)",
                "max_count": "Max results (1-1000, default: 100)",
            },
            "headers": {
                DEFAULT_HEADER_NAME: "Transaction hash of your payment (required)",
                AMOUNT_HEADER_NAME: "Amount paid (optional)",
            },
        }

    return app


if __name__ == "__main__":
    port = int(os.getenv("PORT", "3000"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
