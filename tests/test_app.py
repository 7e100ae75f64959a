"""Tests for ledger/app.py -- HTTP binding of the ledger (FastAPI TestClient).

All mutating requests are Ed25519-signed; the caller's wallet comes from the
signing key.
"""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import json
import queue
import pytest
from starlette.testclient import TestClient

from ledger.app import create_app
from crypto import sign_request_ed25519
from agreement import build_term_request
from conftest import (
    signed_post, T0, ONE, HALF, RECIPIENT,
    CREATOR, ALICE, BOB, OUTSIDER,
    CREATOR_PRIV, ALICE_PRIV, BOB_PRIV, OUTSIDER_PRIV,
    CREATOR_PUB_HEX, ALICE_PUB_HEX, BOB_PUB_HEX, OUTSIDER_PUB_HEX,
)


AS_CREATOR = (CREATOR_PUB_HEX, CREATOR_PRIV)
AS_ALICE = (ALICE_PUB_HEX, ALICE_PRIV)
AS_BOB = (BOB_PUB_HEX, BOB_PRIV)
AS_OUTSIDER = (OUTSIDER_PUB_HEX, OUTSIDER_PRIV)


@pytest.fixture
def app(ledger):
    return create_app(controller=ledger)


@pytest.fixture
def client(app):
    return TestClient(app)


def _post(client, path, data, who):
    return signed_post(client, path, data, *who)


def _create(client, auto_enforce=False):
    resp = _post(client, "/agreements", {
        "title": "Website build",
        "description": "Alice builds, Bob pays",
        "party_wallets": [ALICE, BOB],
        "party_names": ["Alice", "Bob"],
        "auto_enforce": auto_enforce,
    }, AS_CREATOR)
    assert resp.status_code == 200, resp.text
    return resp.json()["agreement_id"]


def _activate(client, collateral_a="0", collateral_b="0", auto_enforce=False):
    aid = _create(client, auto_enforce)
    assert _post(client, f"/agreements/{aid}/sign", {"collateral": collateral_a}, AS_ALICE).status_code == 200
    assert _post(client, f"/agreements/{aid}/sign", {"collateral": collateral_b}, AS_BOB).status_code == 200
    return aid


# --- Info ---

def test_server_pubkey(client, app):
    resp = client.get("/server_pubkey")
    assert resp.status_code == 200
    assert resp.json()["ledger_id"] == app.state.store.ledger_id


def test_platform_info(client):
    info = client.get("/platform_info").json()
    assert info["base_units_per_unit"] == str(ONE)
    assert info["statuses"]["3"] == "Breached"


def test_default_app_builds_its_own_ledger(tmp_path):
    db_path = str(tmp_path / "data" / "covenant.db")
    app = create_app(db_path=db_path)
    c = TestClient(app)
    assert c.get("/agreements/total").json() == {"total": 0}
    assert os.path.exists(db_path)


# --- Authentication ---

def test_unsigned_request_rejected(client):
    resp = client.post("/agreements", json={
        "title": "T", "party_wallets": [ALICE, BOB], "party_names": ["A", "B"],
    })
    assert resp.status_code == 401


def test_tampered_body_rejected(client):
    body = json.dumps({"title": "T", "party_wallets": [ALICE, BOB], "party_names": ["A", "B"]})
    headers = sign_request_ed25519(CREATOR_PRIV, CREATOR_PUB_HEX, "POST", "/agreements", body)
    tampered = body.replace('"T"', '"X"')
    resp = client.post("/agreements", content=tampered, headers={"Content-Type": "application/json", **headers})
    assert resp.status_code == 401


def test_replayed_request_rejected(client):
    body = json.dumps({"title": "T", "party_wallets": [ALICE, BOB], "party_names": ["A", "B"]})
    headers = {"Content-Type": "application/json",
               **sign_request_ed25519(CREATOR_PRIV, CREATOR_PUB_HEX, "POST", "/agreements", body)}
    assert client.post("/agreements", content=body, headers=headers).status_code == 200
    resp = client.post("/agreements", content=body, headers=headers)
    assert resp.status_code == 401
    assert "Replay" in resp.json()["detail"]
    assert client.get("/agreements/total").json()["total"] == 1


def test_creator_is_signing_wallet(client):
    aid = _create(client)
    assert client.get(f"/agreements/{aid}").json()["agreement"][3] == CREATOR


# --- Lifecycle over HTTP ---

def test_full_lifecycle(client, clock):
    aid = _create(client)
    resp = _post(client, f"/agreements/{aid}/terms", {
        "description": "deliver site", "responsible_party": 0, "deadline": T0 + 100,
    }, AS_CREATOR)
    assert resp.json() == {"agreement_id": aid, "term_index": 0}

    _post(client, f"/agreements/{aid}/sign", {"collateral": str(ONE)}, AS_ALICE)
    resp = _post(client, f"/agreements/{aid}/sign", {"collateral": str(HALF)}, AS_BOB)
    assert resp.json()["activated"] is True

    data = client.get(f"/agreements/{aid}").json()
    assert data["status_label"] == "Active"
    assert data["agreement"][7] == str(ONE + HALF)

    resp = _post(client, f"/agreements/{aid}/terms/0/resolve", {}, AS_BOB)
    assert resp.json()["completed"] is True

    resp = _post(client, f"/agreements/{aid}/parties/0/withdraw", {}, AS_ALICE)
    assert resp.json()["amount"] == str(ONE)
    resp = _post(client, f"/agreements/{aid}/parties/0/withdraw", {}, AS_ALICE)
    assert resp.status_code == 409
    assert resp.json()["error"] == "NotWithdrawable"

    party = client.get(f"/agreements/{aid}/parties/0").json()["party"]
    assert party == [ALICE, "Alice", True, "0", True]


def test_term_builder_payload_accepted(client):
    aid = _create(client)
    payload = build_term_request("deliver site", 0, T0 + 100, penalty="0.1", penalty_recipient=RECIPIENT)
    resp = _post(client, f"/agreements/{aid}/terms", payload, AS_CREATOR)
    assert resp.status_code == 200, resp.text
    term = client.get(f"/agreements/{aid}/terms/0").json()["term"]
    assert term[5] == str(ONE // 10)
    assert term[6] == RECIPIENT


def test_auto_enforced_breach(client, clock):
    aid = _activate(client, collateral_a="100", auto_enforce=True)
    _post(client, f"/agreements/{aid}/terms", {
        "description": "deliver", "responsible_party": 0, "deadline": T0 + 5,
        "penalty_amount": "30", "penalty_recipient": RECIPIENT,
    }, AS_BOB)
    clock.advance(10)
    resp = _post(client, f"/agreements/{aid}/terms/0/evaluate", {}, AS_OUTSIDER)
    assert resp.status_code == 200
    assert resp.json()["enforced"] is True
    assert client.get(f"/agreements/{aid}").json()["status_label"] == "Breached"
    term = client.get(f"/agreements/{aid}/terms/0").json()["term"]
    assert term[4] is True and term[5] == "30"

    escrow = client.get(f"/agreements/{aid}/escrow").json()
    assert [e["kind"] for e in escrow["entries"]] == ["deposit", "penalty"]
    assert escrow["reconcile"]["balanced"] is True


def test_explicit_enforcement_and_dispute_gate(client, clock):
    aid = _activate(client, collateral_a="100")
    _post(client, f"/agreements/{aid}/terms", {
        "description": "deliver", "responsible_party": 0, "deadline": T0 + 5, "penalty_amount": "10",
    }, AS_CREATOR)
    resp = _post(client, f"/agreements/{aid}/terms/0/dispute", {"reason": "scope changed"}, AS_ALICE)
    assert resp.json()["state"] == "open"
    clock.advance(10)

    resp = _post(client, f"/agreements/{aid}/terms/0/enforce", {}, AS_BOB)
    assert resp.status_code == 409
    assert resp.json()["error"] == "InvalidStateTransition"

    resp = _post(client, f"/agreements/{aid}/terms/0/dispute/resolve", {"upheld": False}, AS_BOB)
    assert resp.json()["state"] == "rejected"
    resp = _post(client, f"/agreements/{aid}/terms/0/enforce", {}, AS_BOB)
    assert resp.status_code == 200
    assert client.get(f"/agreements/{aid}/parties/1").json()["party"][3] == "10"
    assert client.get(f"/agreements/{aid}/terms/0/dispute").json()["dispute"]["resolved_by"] == BOB


def test_cancel_and_complete(client):
    aid = _create(client)
    assert _post(client, f"/agreements/{aid}/cancel", {}, AS_ALICE).status_code == 403
    assert _post(client, f"/agreements/{aid}/cancel", {}, AS_CREATOR).json()["status"] == 4
    assert client.get(f"/agreements/{aid}").json()["status_label"] == "Cancelled"

    aid2 = _activate(client)
    assert _post(client, f"/agreements/{aid2}/cancel", {}, AS_CREATOR).status_code == 409
    assert _post(client, f"/agreements/{aid2}/complete", {}, AS_BOB).json()["status"] == 2


# --- Error mapping ---

def test_outsider_cannot_sign(client):
    aid = _create(client)
    resp = _post(client, f"/agreements/{aid}/sign", {}, AS_OUTSIDER)
    assert resp.status_code == 403
    assert resp.json() == {"error": "NotAParty", "detail": resp.json()["detail"]}


def test_double_sign(client):
    aid = _create(client)
    _post(client, f"/agreements/{aid}/sign", {}, AS_ALICE)
    resp = _post(client, f"/agreements/{aid}/sign", {}, AS_ALICE)
    assert resp.status_code == 409
    assert resp.json()["error"] == "AlreadySigned"


def test_invalid_party_list(client):
    resp = _post(client, "/agreements", {
        "title": "T", "party_wallets": [ALICE], "party_names": ["A"],
    }, AS_CREATOR)
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidPartyList"


def test_bad_collateral_string(client):
    aid = _create(client)
    resp = _post(client, f"/agreements/{aid}/sign", {"collateral": "1.5"}, AS_ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidInput"
    assert client.get(f"/agreements/{aid}/parties/0").json()["party"][2] is False


def test_non_ascii_digits_in_collateral(client):
    aid = _create(client)
    for amount in ("²", "١٢", "5²"):
        resp = _post(client, f"/agreements/{aid}/sign", {"collateral": amount}, AS_ALICE)
        assert resp.status_code == 400, amount
        assert resp.json()["error"] == "InvalidInput"


def test_oversized_deadline_is_invalid_input(client):
    aid = _create(client)
    resp = _post(client, f"/agreements/{aid}/terms", {
        "description": "deliver", "responsible_party": 0, "deadline": 10**20,
    }, AS_CREATOR)
    assert resp.status_code == 400
    assert resp.json()["error"] == "InvalidInput"
    assert client.get(f"/agreements/{aid}").json()["agreement"][10] == 0


def test_not_found(client):
    resp = client.get("/agreements/99")
    assert resp.status_code == 404
    assert resp.json()["error"] == "AgreementNotFound"
    huge = client.get("/agreements/99999999999999999999")
    assert huge.status_code == 404
    assert huge.json()["error"] == "AgreementNotFound"
    aid = _create(client)
    assert client.get(f"/agreements/{aid}/terms/0").json()["error"] == "TermNotFound"


# --- Queries ---

def test_user_agreements_and_total(client):
    a0 = _create(client)
    a1 = _create(client)
    assert client.get(f"/users/{ALICE}/agreements").json() == {"agreement_ids": [a0, a1]}
    assert client.get(f"/users/{OUTSIDER}/agreements").json() == {"agreement_ids": []}
    assert client.get("/users/nope/agreements").status_code == 400
    assert client.get("/agreements/total").json() == {"total": 2}


def test_journal_routes(client):
    aid = _activate(client)
    entries = client.get(f"/agreements/{aid}/journal").json()["entries"]
    assert [e["type"] for e in entries] == ["agreement_created", "agreement_signed", "agreement_signed"]
    assert len(client.get("/journal").json()["entries"]) == 3
    assert client.get("/journal/verify").json() == {"valid": True, "error": ""}


# --- SSE bus ---

def test_lifecycle_events_reach_subscribers(client, app):
    q = queue.Queue()
    app.state.sse_subscribers.append(q)
    _activate(client)

    events = []
    while not q.empty():
        events.append(q.get_nowait())
    assert [e["event"] for e in events] == [
        "agreement_created", "agreement_signed", "agreement_signed", "status_changed",
    ]
    assert events[-1]["status_label"] == "Active"


def test_full_subscriber_queue_dropped(app):
    q = queue.Queue(maxsize=1)
    app.state.sse_subscribers.append(q)
    app.state.sse_publish("term_added", {"agreement_id": 0})
    app.state.sse_publish("term_added", {"agreement_id": 0})
    assert q not in app.state.sse_subscribers
