#!/usr/bin/env python3
"""Covenant ledger server with a background deadline keeper.

Configuration from env vars:
    COVENANT_DB               SQLite path for the ledger (default /var/lib/covenant/covenant.db)
    COVENANT_PORT             HTTP port (default 8000)
    COVENANT_SERVER_KEY       32-byte Ed25519 journal key file (created if missing)
    COVENANT_PAYMENTS         "stub" or "sim" (default stub)
    COVENANT_KEEPER_INTERVAL  seconds between deadline sweeps, 0 disables (default 30)
"""

import os, sys, time, threading
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from ledger.app import create_app
from ledger.lifecycle import LifecycleController, build_ledger
from ledger.payments import StubBackend, SimBackend
from crypto import (
    generate_ed25519_keypair, load_ed25519_key, save_ed25519_key,
    ed25519_privkey_to_pubkey, pubkey_to_address,
)
from protocol import DEFAULT_DB_PATH, DEFAULT_PORT, CovenantError

DB_PATH = DEFAULT_DB_PATH
PORT = int(os.environ.get("COVENANT_PORT", str(DEFAULT_PORT)))
KEY_PATH = os.environ.get("COVENANT_SERVER_KEY", os.path.expanduser("~/.covenant/server.key"))
PAYMENTS = os.environ.get("COVENANT_PAYMENTS", "stub")
KEEPER_INTERVAL = int(os.environ.get("COVENANT_KEEPER_INTERVAL", "30"))


def load_or_create_key(path: str) -> bytes:
    """Persistent journal key: entries must stay verifiable across restarts."""
    if os.path.exists(path):
        return load_ed25519_key(path)
    privkey, _ = generate_ed25519_keypair()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    save_ed25519_key(path, privkey)
    print(f"[server] Generated new journal key at {path}")
    return privkey


def make_payment_backend(kind: str, db_path: str):
    if kind == "stub":
        return StubBackend()
    if kind == "sim":
        sim_db = ":memory:" if db_path == ":memory:" else db_path.replace(".db", "_sim.db")
        return SimBackend(db_path=sim_db)
    raise ValueError(f"Unknown COVENANT_PAYMENTS backend: {kind!r} (expected 'stub' or 'sim')")


def keeper_pass(controller: LifecycleController, keeper: str) -> list[dict]:
    """Evaluate every overdue term once. Returns the evaluation results.

    Evaluation is a state-mutating call, so autoEnforce agreements are
    enforced here; reads never enforce.
    """
    results = []
    for agreement_id, term_index in controller.store.overdue_terms(controller.store.now()):
        try:
            result = controller.evaluate_term(keeper, agreement_id, term_index)
        except CovenantError as e:
            print(f"[keeper] Agreement {agreement_id} term {term_index}: {e.code}: {e.message}")
            continue
        results.append(result)
        outcome = "enforced" if result["enforced"] else "recorded"
        print(f"[keeper] Breach {outcome} on agreement {agreement_id} term {term_index}")
    return results


def run_keeper(controller: LifecycleController, keeper: str, interval: int):
    """Background thread: sweep deadlines forever."""
    while True:
        time.sleep(interval)
        try:
            keeper_pass(controller, keeper)
        except Exception as e:
            print(f"[keeper] Error: {e}")


def main():
    if DB_PATH != ":memory:":
        os.makedirs(os.path.dirname(DB_PATH) or ".", exist_ok=True)

    privkey = load_or_create_key(KEY_PATH)
    keeper = pubkey_to_address(ed25519_privkey_to_pubkey(privkey))
    payments = make_payment_backend(PAYMENTS, DB_PATH)
    controller = build_ledger(DB_PATH, signer_privkey=privkey, payment_backend=payments)

    app = create_app(controller=controller)

    if KEEPER_INTERVAL > 0:
        keeper_thread = threading.Thread(
            target=run_keeper, args=(controller, keeper, KEEPER_INTERVAL), daemon=True,
        )
        keeper_thread.start()
        print(f"[server] Deadline keeper running every {KEEPER_INTERVAL}s")
    print(f"[server] Ledger {controller.store.ledger_id[:16]}... at {DB_PATH}")
    print(f"[server] Payments: {PAYMENTS}")
    print(f"[server] Listening on :{PORT}")

    uvicorn.run(app, host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()
