"""Tests for client.py against a mock transport."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
import httpx

from client import CovenantClient, Transport, HTTPTransport, raise_for_error
from crypto import HEADER_PUBKEY, HEADER_SIGNATURE, HEADER_TIMESTAMP, verify_request_ed25519
from protocol import NotAParty, AgreementNotFound, InsufficientValue, InvalidInput, InvalidPartyList
from conftest import ALICE, BOB, ALICE_PRIV, ALICE_PUB_HEX


AGREEMENT_TUPLE = [0, "Website", "desc", ALICE, 100, 0, 1, "1500", False, 2, 1]


class MockTransport(Transport):
    def __init__(self):
        self.calls = []

    async def post(self, path, data):
        self.calls.append(("POST", path, data))
        if path == "/agreements":
            return {"agreement_id": 7, "status": "Pending"}
        if path.endswith("/terms"):
            return {"agreement_id": 7, "term_index": 2}
        if path.endswith("/sign"):
            return {"agreement_id": 7, "party_index": 0, "status": 0, "activated": False}
        return {"ok": True}

    async def get(self, path, params=None):
        self.calls.append(("GET", path, params))
        if path == "/agreements/total":
            return {"total": 3}
        if path.startswith("/users/"):
            return {"agreement_ids": [0, 7]}
        if "/parties/" in path:
            return {"party": [BOB, "Bob", True, "500", False]}
        if path.endswith("/dispute"):
            return {"dispute": None}
        if "/terms/" in path:
            return {"term": ["deliver", 0, 1000, False, True, "30", ""]}
        if path in ("/journal", "/agreements/7/journal"):
            return {"entries": []}
        if path == "/journal/verify":
            return {"valid": True, "error": ""}
        return {"agreement": AGREEMENT_TUPLE, "status_label": "Active"}


@pytest.fixture
def mock_transport():
    return MockTransport()


@pytest.fixture
def covenant_client(mock_transport):
    return CovenantClient(transport=mock_transport, privkey_bytes=ALICE_PRIV)


# --- Transport ABC ---

def test_transport_is_abstract():
    """Transport ABC cannot be instantiated directly."""
    with pytest.raises(TypeError):
        Transport()


def test_client_address_from_key(covenant_client):
    assert covenant_client.address == ALICE


def test_client_without_key_has_no_address():
    assert CovenantClient(transport=MockTransport()).address == ""


# --- Mutating calls ---

@pytest.mark.asyncio
async def test_create_agreement(covenant_client, mock_transport):
    aid = await covenant_client.create_agreement("Website", "desc", [ALICE, BOB], ["Alice", "Bob"])
    assert aid == 7
    assert mock_transport.calls[-1] == (
        "POST", "/agreements",
        {"title": "Website", "description": "desc", "party_wallets": [ALICE, BOB],
         "party_names": ["Alice", "Bob"], "auto_enforce": False},
    )


@pytest.mark.asyncio
async def test_create_agreement_validates_before_sending(covenant_client, mock_transport):
    with pytest.raises(InvalidPartyList):
        await covenant_client.create_agreement("Website", "desc", [ALICE, BOB], ["Alice"])
    with pytest.raises(InvalidPartyList):
        await covenant_client.create_agreement("Website", "desc", [ALICE, ALICE], ["A", "B"])
    with pytest.raises(InvalidInput):
        await covenant_client.create_agreement("", "desc", [ALICE, BOB], ["Alice", "Bob"])
    assert mock_transport.calls == []


@pytest.mark.asyncio
async def test_sign_sends_collateral_as_string(covenant_client, mock_transport):
    result = await covenant_client.sign_agreement(7, collateral=10**18)
    assert result["activated"] is False
    assert mock_transport.calls[-1] == ("POST", "/agreements/7/sign", {"collateral": "1000000000000000000"})


@pytest.mark.asyncio
async def test_add_term(covenant_client, mock_transport):
    idx = await covenant_client.add_term(7, "deliver", 0, 1000, penalty_amount=30, penalty_recipient=BOB)
    assert idx == 2
    assert mock_transport.calls[-1][2] == {
        "description": "deliver", "responsible_party": 0, "deadline": 1000,
        "penalty_amount": "30", "penalty_recipient": BOB,
    }


@pytest.mark.asyncio
async def test_term_and_agreement_actions_hit_their_routes(covenant_client, mock_transport):
    await covenant_client.resolve_term(7, 1)
    await covenant_client.evaluate_term(7, 1)
    await covenant_client.enforce_breach(7, 1)
    await covenant_client.complete_agreement(7)
    await covenant_client.cancel_agreement(7)
    await covenant_client.withdraw_collateral(7, 0)
    assert [c[1] for c in mock_transport.calls] == [
        "/agreements/7/terms/1/resolve",
        "/agreements/7/terms/1/evaluate",
        "/agreements/7/terms/1/enforce",
        "/agreements/7/complete",
        "/agreements/7/cancel",
        "/agreements/7/parties/0/withdraw",
    ]


@pytest.mark.asyncio
async def test_disputes(covenant_client, mock_transport):
    await covenant_client.raise_dispute(7, 0, reason="late delivery")
    assert mock_transport.calls[-1] == ("POST", "/agreements/7/terms/0/dispute", {"reason": "late delivery"})
    await covenant_client.resolve_dispute(7, 0, upheld=True)
    assert mock_transport.calls[-1] == ("POST", "/agreements/7/terms/0/dispute/resolve", {"upheld": True})
    assert await covenant_client.get_dispute(7, 0) is None


# --- Queries ---

@pytest.mark.asyncio
async def test_get_agreement_decodes_tuple(covenant_client):
    a = await covenant_client.get_agreement(0)
    assert a["creator"] == ALICE
    assert a["total_collateral"] == 1500
    assert a["status_label"] == "Active"
    assert a["term_count"] == 1


@pytest.mark.asyncio
async def test_get_party_and_term(covenant_client):
    party = await covenant_client.get_party(7, 1)
    assert party["wallet"] == BOB
    assert party["deposit_amount"] == 500
    term = await covenant_client.get_term(7, 0)
    assert term["is_breached"] is True
    assert term["penalty_amount"] == 30


@pytest.mark.asyncio
async def test_user_agreements_default_to_own_wallet(covenant_client, mock_transport):
    assert await covenant_client.get_user_agreements() == [0, 7]
    assert mock_transport.calls[-1] == ("GET", f"/users/{ALICE}/agreements", None)
    await covenant_client.get_user_agreements(BOB)
    assert mock_transport.calls[-1][1] == f"/users/{BOB}/agreements"


@pytest.mark.asyncio
async def test_total_and_journal(covenant_client):
    assert await covenant_client.get_total_agreements() == 3
    assert await covenant_client.get_journal(7) == []
    assert (await covenant_client.verify_journal())["valid"] is True


@pytest.mark.asyncio
async def test_empty_journal_verifies_locally(covenant_client):
    assert await covenant_client.verify_journal_locally() == (True, "")


# --- Error mapping ---

def test_raise_for_error_maps_codes():
    with pytest.raises(NotAParty):
        raise_for_error(403, {"error": "NotAParty", "detail": "no"})
    with pytest.raises(AgreementNotFound) as exc:
        raise_for_error(404, {"error": "AgreementNotFound", "detail": "Agreement 9 not found"})
    assert exc.value.message == "Agreement 9 not found"


def test_raise_for_error_ignores_success_and_unknown():
    raise_for_error(200, {"error": "NotAParty"})
    raise_for_error(401, {"detail": "Replay detected"})
    raise_for_error(500, None)


def test_handle_raises_ledger_error():
    resp = httpx.Response(402, json={"error": "InsufficientValue", "detail": "short"},
                          request=httpx.Request("POST", "http://ledger/x"))
    with pytest.raises(InsufficientValue):
        HTTPTransport._handle(resp)


def test_handle_falls_back_to_http_error():
    resp = httpx.Response(401, json={"detail": "Signed request required"},
                          request=httpx.Request("POST", "http://ledger/x"))
    with pytest.raises(httpx.HTTPStatusError):
        HTTPTransport._handle(resp)


# --- HTTPTransport ---

def test_http_transport_default():
    t = HTTPTransport()
    assert t.base_url == "http://localhost:8000"
    assert t.pubkey_hex == ""


def test_http_transport_strips_trailing_slash():
    t = HTTPTransport(base_url="http://example.com/")
    assert t.base_url == "http://example.com"


def test_http_transport_signed_headers():
    t = HTTPTransport(privkey_bytes=ALICE_PRIV)
    assert t.pubkey_hex == ALICE_PUB_HEX
    headers = t._headers("POST", "/agreements/0/sign", '{"collateral": "0"}')
    ok, err = verify_request_ed25519(
        "POST", "/agreements/0/sign", '{"collateral": "0"}',
        headers[HEADER_TIMESTAMP], headers[HEADER_SIGNATURE], headers[HEADER_PUBKEY],
    )
    assert ok, err


def test_http_transport_headers_no_key():
    headers = HTTPTransport()._headers()
    assert HEADER_SIGNATURE not in headers
    assert headers["Content-Type"] == "application/json"
