import sys
import os
import json

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from crypto import (
    generate_ed25519_keypair, pubkey_to_address, sign_request_ed25519,
)
from protocol import BASE_UNITS_PER_UNIT
from ledger.payments import StubBackend, SimBackend
from ledger.lifecycle import build_ledger


ONE = BASE_UNITS_PER_UNIT
HALF = BASE_UNITS_PER_UNIT // 2

# Fixed start time for the fake clock: 2026-01-01T00:00:00Z
T0 = 1767225600


class FakeClock:
    """Injectable clock. Call it for the current time, advance() to move it."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


# Monotonic counter so repeated identical requests still sign differently
_nonce_counter = 0

# Pre-generated test keypairs
_CREATOR_PRIV, _CREATOR_PUB = generate_ed25519_keypair()
_ALICE_PRIV, _ALICE_PUB = generate_ed25519_keypair()
_BOB_PRIV, _BOB_PUB = generate_ed25519_keypair()
_CAROL_PRIV, _CAROL_PUB = generate_ed25519_keypair()
_OUTSIDER_PRIV, _OUTSIDER_PUB = generate_ed25519_keypair()
_SERVER_PRIV, _SERVER_PUB = generate_ed25519_keypair()

CREATOR_PRIV = _CREATOR_PRIV
ALICE_PRIV = _ALICE_PRIV
BOB_PRIV = _BOB_PRIV
CAROL_PRIV = _CAROL_PRIV
OUTSIDER_PRIV = _OUTSIDER_PRIV
SERVER_PRIV = _SERVER_PRIV

CREATOR_PUB_HEX = _CREATOR_PUB.hex()
ALICE_PUB_HEX = _ALICE_PUB.hex()
BOB_PUB_HEX = _BOB_PUB.hex()
CAROL_PUB_HEX = _CAROL_PUB.hex()
OUTSIDER_PUB_HEX = _OUTSIDER_PUB.hex()

CREATOR = pubkey_to_address(_CREATOR_PUB)
ALICE = pubkey_to_address(_ALICE_PUB)
BOB = pubkey_to_address(_BOB_PUB)
CAROL = pubkey_to_address(_CAROL_PUB)
OUTSIDER = pubkey_to_address(_OUTSIDER_PUB)
RECIPIENT = "0x" + "ab" * 20


def signed_post(client, path, data, pub_hex, privkey_bytes):
    """Make an Ed25519-signed POST request for tests.

    Embeds a nonce in the body so the same endpoint+body can be called
    several times in one second without tripping the replay guard.
    """
    global _nonce_counter
    _nonce_counter += 1
    data_with_nonce = {**data, "_nonce": _nonce_counter}
    body = json.dumps(data_with_nonce)
    auth_headers = sign_request_ed25519(privkey_bytes, pub_hex, "POST", path, body)
    return client.post(path, content=body, headers={
        "Content-Type": "application/json",
        **auth_headers,
    })


def make_active(ledger, collateral_a=0, collateral_b=0, auto_enforce=False, creator=CREATOR):
    """Create a two-party agreement (ALICE, BOB) and have both sign. Returns its id."""
    aid = ledger.create_agreement(
        creator, "Delivery", "Alice delivers, Bob pays",
        [ALICE, BOB], ["Alice", "Bob"], auto_enforce,
    )
    ledger.sign_agreement(ALICE, aid, collateral_a)
    ledger.sign_agreement(BOB, aid, collateral_b)
    return aid


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def payments():
    return StubBackend()


@pytest.fixture
def ledger(clock, payments):
    controller = build_ledger(":memory:", signer_privkey=SERVER_PRIV,
                              payment_backend=payments, clock=clock)
    yield controller
    controller.store.close()


@pytest.fixture
def sim():
    backend = SimBackend()
    yield backend
    backend.close()


@pytest.fixture
def sim_ledger(clock, sim):
    controller = build_ledger(":memory:", signer_privkey=SERVER_PRIV,
                              payment_backend=sim, clock=clock)
    yield controller
    controller.store.close()
