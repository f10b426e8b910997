import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.adapters.card_funding import CardFundingOutbox
from core.orchestrator import Orchestrator
from core.rules import get_chain_config

from fakes import ADDRESS_A, PAYEE, FakeBankAdapter, FakeReader, FakeWallet


@pytest.fixture
def bank():
    return FakeBankAdapter()


@pytest.fixture
def client(bank):
    outbox = CardFundingOutbox()
    orch = Orchestrator(
        reader=FakeReader({ADDRESS_A: 42_500_000}),
        wallet=FakeWallet(),
        bank_adapter=bank,
        card_handoff=outbox,
        chain=get_chain_config("base"),
        settlement_payee=PAYEE,
        poll_interval=3600,
    )
    with TestClient(create_app(orch, card_outbox=outbox)) as test_client:
        yield test_client
        test_client.post("/logout")


def login(client):
    resp = client.post("/session", json={"ready": True, "authenticated": True, "wallet_address": ADDRESS_A})
    assert resp.status_code == 200
    assert resp.json()["active"] is True


def test_actions_require_a_session(client):
    assert client.post("/bills/1/pay").status_code == 401
    assert client.post("/funding/bank", json={"amount": "5"}).status_code == 401
    dashboard = client.get("/dashboard").json()
    assert dashboard["session"]["active"] is False
    assert dashboard["bills"] == []


def test_dashboard_after_login(client):
    login(client)
    client.post("/balance/refresh")
    data = client.get("/dashboard").json()
    assert data["balance"]["display_amount"] == "42.50"
    assert [b["id"] for b in data["bills"]] == ["1", "2", "3"]
    assert data["summary"]["pending_invoices"] == 3

    notes = client.get("/notifications").json()["notifications"]
    assert notes[0]["title"] == "Fund Your Wallet"
    assert notes[0]["action"]["payload"]["amount"] == "1.00"


def test_bank_funding_status_codes(client, bank):
    login(client)
    ok = client.post("/funding/bank", json={"amount": "25"})
    assert ok.status_code == 200
    assert ok.json()["top_up"]["method"] == "ACH"
    assert ok.json()["top_up"]["status"] == "PENDING"

    assert client.post("/funding/bank", json={"amount": "-3"}).status_code == 400

    bank.accept = False
    assert client.post("/funding/bank", json={"amount": "25"}).status_code == 502
    assert len(client.get("/funding/top-ups").json()["top_ups"]) == 1


def test_card_funding_hands_off_to_outbox(client):
    login(client)
    resp = client.post("/funding/card", json={"amount": "1.00"})
    assert resp.status_code == 200
    assert resp.json()["handoff"] == "unknown"
    top_up_id = resp.json()["top_up"]["id"]

    handoffs = client.get("/funding/card/handoffs").json()["handoffs"]
    assert len(handoffs) == 1
    assert handoffs[0]["top_up_id"] == top_up_id
    assert handoffs[0]["chain"] == "base"
    assert client.get("/funding/card/handoffs").json()["handoffs"] == []


def test_top_up_reconciliation(client):
    login(client)
    top_up_id = client.post("/funding/card", json={"amount": "10"}).json()["top_up"]["id"]

    done = client.post(f"/funding/top-ups/{top_up_id}/status", json={"status": "COMPLETED"})
    assert done.status_code == 200
    assert done.json()["top_up"]["status"] == "COMPLETED"

    again = client.post(f"/funding/top-ups/{top_up_id}/status", json={"status": "FAILED"})
    assert again.status_code == 409
    assert client.post("/funding/top-ups/missing/status", json={"status": "FAILED"}).status_code == 400
    assert client.post(f"/funding/top-ups/{top_up_id}/status", json={"status": "PENDING"}).status_code == 422


def test_bill_payment_flow(client):
    login(client)
    paid = client.post("/bills/1/pay")
    assert paid.status_code == 200
    assert paid.json()["tx_hash"].startswith("0x")
    assert paid.json()["bill"]["status"] == "PENDING"

    assert client.post("/bills/404/pay").status_code == 400
    assert client.post("/bills/1/confirm").status_code == 200
    assert client.post("/bills/1/pay").status_code == 409

    bills = client.get("/bills").json()
    assert bills["bills"][0]["status"] == "PAID"
    assert bills["in_flight_bill_ids"] == []
    assert client.get("/dashboard").json()["summary"]["total_paid"] == "89.99"


def test_logout_discards_state(client):
    login(client)
    client.post("/funding/card", json={"amount": "10"})
    resp = client.post("/logout")
    assert resp.json()["active"] is False
    assert client.get("/funding/top-ups").json()["top_ups"] == []
    assert client.get("/health").json()["ok"] is True


def test_logout_drops_undelivered_card_handoffs(client):
    login(client)
    client.post("/funding/card", json={"amount": "50"})
    client.post("/logout")
    login(client)
    assert client.get("/funding/card/handoffs").json()["handoffs"] == []
