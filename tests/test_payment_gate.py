import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from chain_utils import UnsupportedNetworkOrCurrency
from helpers import OTHER, RECIPIENT, TX_HASH, TX_HASH_2, FakeChainReader, receipt, transfer_log
from payment_gate import PaymentContext, PaymentGate, create_payment_instructions, install_x402_handlers
from verify_payment import ChainVerifier, DemoVerifier, PaymentRequirement, VerifierChain


class SpyVerifier:
    def __init__(self):
        self.calls = []

    def verify(self, proof_hash, requirement):
        self.calls.append(proof_hash)
        raise AssertionError("verifier must not be called")


def make_client(gate: PaymentGate):
    app = FastAPI()
    install_x402_handlers(app)
    handled = []

    @app.get("/api/data")
    def data(request: Request, payment: PaymentContext | None = Depends(gate)):
        handled.append(payment)
        state_payment = getattr(request.state, "payment", None)
        return {"ok": True, "payment": payment.model_dump() if payment else None,
                "state": state_payment is payment}

    return TestClient(app), handled


@pytest.fixture
def reader():
    return FakeChainReader(
        {
            TX_HASH: receipt(transfer_log(RECIPIENT.upper().replace("0X", "0x"), 10_000)),
            TX_HASH_2: receipt(transfer_log(OTHER, 10_000), tx_hash=TX_HASH_2),
        },
        broken=["0x" + "ee" * 32],
    )


@pytest.fixture
def gate(requirement, reader):
    return PaymentGate(requirement, ChainVerifier(reader))


def test_no_proof_header_returns_402_instructions(gate, requirement):
    client, handled = make_client(gate)
    resp = client.get("/api/data")
    assert resp.status_code == 402
    body = resp.json()
    assert body["error"] == "Payment Required"
    assert body["status"] == 402
    assert body["protocol"] == "x402"
    assert body["version"] == "1.0"
    assert body["payment"] == {
        "recipient": requirement.recipient,
        "amount": "0.01",
        "currency": "USDC",
        "network": "base-sepolia",
        "chainId": 84532,
    }
    assert body["resource"]["endpoint"] == "/api/data"
    assert body["resource"]["method"] == "GET"
    assert len(body["instructions"]["steps"]) == 3
    assert handled == []


def test_empty_proof_header_is_treated_as_absent(gate):
    client, handled = make_client(gate)
    resp = client.get("/api/data", headers={"X-Payment-Hash": "  "})
    assert resp.status_code == 402
    assert resp.json()["error"] == "Payment Required"
    assert handled == []


def test_valid_payment_reaches_handler(gate, caplog):
    client, handled = make_client(gate)
    with caplog.at_level("INFO"):
        resp = client.get("/api/data", headers={"x-payment-hash": TX_HASH})
    assert resp.status_code == 200
    body = resp.json()
    assert body["payment"]["hash"] == TX_HASH
    assert body["payment"]["amount"] == "0.01"
    assert body["payment"]["currency"] == "USDC"
    assert body["payment"]["verified"] is True
    assert body["state"] is True
    assert len(handled) == 1
    assert any("Payment verified" in r.getMessage() and TX_HASH in r.getMessage() for r in caplog.records)


def test_invalid_payment_is_rejected(gate):
    client, handled = make_client(gate)
    resp = client.get("/api/data", headers={"X-Payment-Hash": TX_HASH_2, "X-Payment-Amount": "0.01"})
    assert resp.status_code == 402
    body = resp.json()
    assert body["error"] == "Invalid Payment"
    assert body["message"] == "Payment could not be verified"
    assert body["reason"] == "WrongRecipient"
    assert body["received"] == {"hash": TX_HASH_2, "amount": "0.01"}
    assert body["expected"]["amount"] == "0.01"
    assert body["expected"]["network"] == "base-sepolia"
    assert "payment" not in body
    assert handled == []


def test_unreachable_rpc_returns_503(gate, caplog):
    broken = "0x" + "ee" * 32
    client, handled = make_client(gate)
    with caplog.at_level("ERROR"):
        resp = client.get("/api/data", headers={"X-Payment-Hash": broken})
    assert resp.status_code == 503
    body = resp.json()
    assert body["error"] == "Payment Verification Error"
    assert "expected" not in body and "received" not in body
    assert handled == []
    assert any(broken in r.getMessage() for r in caplog.records if r.levelname == "ERROR")


def test_not_required_never_calls_verifier(requirement):
    spy = SpyVerifier()
    client, handled = make_client(PaymentGate(requirement, spy, required=False))
    resp = client.get("/api/data")
    assert resp.status_code == 200
    assert resp.json()["payment"] is None
    assert spy.calls == []
    assert handled == [None]


def test_demo_bypass_in_development(requirement, reader):
    verifier = VerifierChain(DemoVerifier(["demo"], app_env="development"), ChainVerifier(reader))
    client, handled = make_client(PaymentGate(requirement, verifier))
    resp = client.get("/api/data", headers={"X-Payment-Hash": "demo"})
    assert resp.status_code == 200
    assert resp.json()["payment"]["hash"] == "demo"
    assert reader.calls == []


def test_demo_token_rejected_in_production(requirement, reader):
    verifier = VerifierChain(DemoVerifier(["demo"], app_env="production"), ChainVerifier(reader))
    client, _ = make_client(PaymentGate(requirement, verifier))
    resp = client.get("/api/data", headers={"X-Payment-Hash": "demo"})
    assert resp.status_code == 402
    assert resp.json()["reason"] == "TransactionNotFound"


def test_custom_header_and_hooks(requirement, reader):
    verified, rejected = [], []
    gate = PaymentGate(
        requirement,
        ChainVerifier(reader),
        header_name="X-Payment",
        on_verified=lambda req, ctx: verified.append(ctx.hash),
        on_rejected=lambda req, reason: rejected.append(reason),
    )
    client, _ = make_client(gate)
    assert client.get("/api/data", headers={"X-Payment-Hash": TX_HASH}).status_code == 402
    assert client.get("/api/data", headers={"X-Payment": TX_HASH}).status_code == 200
    assert client.get("/api/data", headers={"X-Payment": TX_HASH_2}).status_code == 402
    assert client.get("/api/data", headers={"X-Payment": "0x" + "ee" * 32}).status_code == 503
    assert verified == [TX_HASH]
    assert rejected == ["WrongRecipient", "verification_error"]


def test_gate_fails_fast_on_misconfiguration(reader):
    verifier = ChainVerifier(reader)
    with pytest.raises(UnsupportedNetworkOrCurrency):
        PaymentGate(PaymentRequirement(recipient=RECIPIENT, amount="0.01", currency="DAI"), verifier)
    with pytest.raises(UnsupportedNetworkOrCurrency):
        PaymentGate(PaymentRequirement(recipient=RECIPIENT, amount="0.01", currency="USDC", network="x"), verifier)
    with pytest.raises(ValueError):
        PaymentGate(None, verifier)
    with pytest.raises(ValueError):
        PaymentGate(PaymentRequirement(recipient=RECIPIENT, amount="0.01", currency="USDC"), None)


def test_per_route_prices(reader):
    cheap = PaymentGate(PaymentRequirement(recipient=RECIPIENT, amount="0.01", currency="USDC"), ChainVerifier(reader))
    pricey = PaymentGate(PaymentRequirement(recipient=RECIPIENT, amount="0.05", currency="USDC"), ChainVerifier(reader))
    app = FastAPI()
    install_x402_handlers(app)

    @app.get("/cheap")
    def cheap_route(payment=Depends(cheap)):
        return {"ok": True}

    @app.get("/pricey")
    def pricey_route(payment=Depends(pricey)):
        return {"ok": True}

    client = TestClient(app)
    assert client.get("/cheap", headers={"X-Payment-Hash": TX_HASH}).status_code == 200
    resp = client.get("/pricey", headers={"X-Payment-Hash": TX_HASH})
    assert resp.status_code == 402
    assert resp.json()["reason"] == "InsufficientAmount"
    assert client.get("/pricey").json()["payment"]["amount"] == "0.05"


def test_create_payment_instructions_options(requirement):
    instructions = create_payment_instructions(
        "/api/x",
        requirement,
        method="POST",
        description="Premium",
        facilitator_url="https://facilitator.example",
        custom_instructions={"message": "pay up", "steps": []},
    )
    assert instructions["facilitator"] == {"url": "https://facilitator.example", "verification": "auto"}
    assert instructions["resource"] == {"endpoint": "/api/x", "method": "POST", "description": "Premium"}
    assert instructions["instructions"] == {"message": "pay up", "steps": []}
