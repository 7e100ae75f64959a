# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the covenant ledger (FastAPI).

Endpoints for the agreement lifecycle: create, sign, add/resolve/evaluate
terms, enforce breaches, complete, cancel, withdraw collateral, disputes,
plus read-only queries and the signed journal.

Ed25519 authentication: every mutating request must be signed. The caller's
wallet address is derived from the verified public key, never taken from
the request body.

Read routes return the ledger's fixed tuples as JSON arrays. Amounts are
decimal strings of integer base units.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json as json_mod
import re
import queue as _queue_mod
import threading

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.responses import StreamingResponse
from pydantic import BaseModel

from ledger.lifecycle import LifecycleController, build_ledger
from crypto import (
    verify_request_ed25519, generate_ed25519_keypair, load_ed25519_key,
    pubkey_to_address, ReplayGuard,
    HEADER_TIMESTAMP, HEADER_SIGNATURE, HEADER_PUBKEY,
)
from protocol import (
    PROTOCOL_VERSION, CURRENCY, BASE_UNITS_PER_UNIT, DEFAULT_DB_PATH,
    STATUS_LABELS, CovenantError, InvalidInput, status_label,
)


# --- Request models ---

class CreateAgreementRequest(BaseModel):
    title: str
    description: str = ""
    party_wallets: list[str]
    party_names: list[str]
    auto_enforce: bool = False

class SignRequest(BaseModel):
    collateral: str = "0"  # base units

class AddTermRequest(BaseModel):
    description: str
    responsible_party: int
    deadline: int
    penalty_amount: str = "0"  # base units
    penalty_recipient: str = ""

class DisputeRequest(BaseModel):
    reason: str = ""

class ResolveDisputeRequest(BaseModel):
    upheld: bool


MAX_SSE_SUBSCRIBERS = 1000


def _parse_amount(value: str, field: str) -> int:
    """Decimal string of base units -> int. Raises InvalidInput."""
    text = str(value).strip()
    if not re.fullmatch(r"[0-9]+", text):
        raise InvalidInput(f"{field} must be a non-negative integer of base units, got {value!r}")
    return int(text)


async def _authenticate(request: Request) -> str:
    """Verify an Ed25519-signed request and return the caller's wallet address.

    Requires X-Covenant-Timestamp, X-Covenant-Signature and X-Covenant-Pubkey.
    The signature covers: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    timestamp = request.headers.get(HEADER_TIMESTAMP, "")
    signature = request.headers.get(HEADER_SIGNATURE, "")
    pubkey_hex = request.headers.get(HEADER_PUBKEY, "")

    if not timestamp or not signature or not pubkey_hex:
        raise HTTPException(
            401,
            f"Signed request required ({HEADER_TIMESTAMP} + {HEADER_SIGNATURE} + {HEADER_PUBKEY} headers)",
        )

    body = (await request.body()).decode("utf-8", errors="replace")
    ok, err = verify_request_ed25519(
        request.method, request.url.path, body,
        timestamp, signature, pubkey_hex,
    )
    if not ok:
        raise HTTPException(401, f"Authentication failed: {err}")

    # Replay protection
    replay_guard = getattr(request.app.state, "replay_guard", None)
    if replay_guard and not replay_guard.check_and_record(signature):
        raise HTTPException(401, "Replay detected")

    return pubkey_to_address(bytes.fromhex(pubkey_hex))


def _agreement_json(values: tuple) -> list:
    out = list(values)
    out[7] = str(out[7])  # totalCollateral
    return out


def _party_json(values: tuple) -> list:
    out = list(values)
    out[3] = str(out[3])  # depositAmount
    return out


def _term_json(values: tuple) -> list:
    out = list(values)
    out[5] = str(out[5])  # penaltyAmount
    return out


# --- App factory ---

def create_app(
    controller: LifecycleController | None = None,
    server_privkey: bytes | None = None,
    db_path: str = DEFAULT_DB_PATH,
) -> FastAPI:
    """Create FastAPI app with an injected lifecycle controller.

    Without a controller, a ledger is built on db_path (COVENANT_DB) and signed
    with server_privkey, the key file named by COVENANT_SERVER_KEY, or a
    freshly generated key.
    """

    app = FastAPI(title="Covenant Ledger", version=f"{PROTOCOL_VERSION}.0")

    if controller is None:
        if not server_privkey:
            key_path = os.environ.get("COVENANT_SERVER_KEY", "")
            if key_path and os.path.exists(key_path):
                server_privkey = load_ed25519_key(key_path)
            else:
                server_privkey, _ = generate_ed25519_keypair()
        controller = build_ledger(db_path, signer_privkey=server_privkey)

    _ledger = controller

    # --- SSE event bus for lifecycle subscribers ---
    # threading queues: TestClient drives the app from another thread
    _sse_subscribers: list[_queue_mod.Queue] = []
    _sse_lock = threading.Lock()

    def _sse_publish(event_type: str, data: dict):
        """Push an event to all connected SSE subscribers."""
        payload = {"event": event_type, **data}
        with _sse_lock:
            dead = []
            for q in _sse_subscribers:
                try:
                    q.put_nowait(payload)
                except _queue_mod.Full:
                    dead.append(q)
            for q in dead:
                _sse_subscribers.remove(q)

    _ledger.subscribe(_sse_publish)

    # Expose for testing
    app.state.replay_guard = ReplayGuard()
    app.state.controller = _ledger
    app.state.store = _ledger.store
    app.state.sse_publish = _sse_publish
    app.state.sse_subscribers = _sse_subscribers

    @app.exception_handler(CovenantError)
    async def covenant_error_handler(request: Request, exc: CovenantError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    # --- Info ---

    @app.get("/server_pubkey")
    async def get_server_pubkey():
        return {
            "pubkey": _ledger.store.signer_pubkey.hex(),
            "ledger_id": _ledger.store.ledger_id,
        }

    @app.get("/platform_info")
    async def platform_info():
        return {
            "protocol_version": PROTOCOL_VERSION,
            "currency": CURRENCY,
            "base_units_per_unit": str(BASE_UNITS_PER_UNIT),
            "statuses": {int(k): v for k, v in STATUS_LABELS.items()},
            "total_agreements": _ledger.get_total_agreements(),
        }

    # --- Agreements ---

    @app.post("/agreements")
    async def create_agreement(req: CreateAgreementRequest, request: Request):
        """Create a Pending agreement. The signed caller becomes its creator."""
        caller = await _authenticate(request)
        agreement_id = _ledger.create_agreement(
            caller, req.title, req.description,
            req.party_wallets, req.party_names, req.auto_enforce,
        )
        return {"agreement_id": agreement_id, "status": "Pending"}

    @app.get("/agreements/total")
    async def total_agreements():
        return {"total": _ledger.get_total_agreements()}

    @app.get("/agreements/stream")
    async def stream_agreements(agreement_id: int | None = None):
        """SSE stream of lifecycle events.

        Optional filter: agreement_id (only forward events for that agreement).

        Usage:
            curl -N http://localhost:8000/agreements/stream?agreement_id=0

        Events:
            data: {"event": "agreement_created", "agreement_id": 0, "title": "...", ...}
            data: {"event": "status_changed", "agreement_id": 0, "status": 1, "status_label": "Active"}
            data: {"event": "term_breached", "agreement_id": 0, "term_index": 0, ...}
        """
        q = _queue_mod.Queue(maxsize=256)
        with _sse_lock:
            if len(_sse_subscribers) >= MAX_SSE_SUBSCRIBERS:
                raise HTTPException(503, "Too many SSE subscribers")
            _sse_subscribers.append(q)

        async def event_generator():
            try:
                while True:
                    try:
                        event = q.get(timeout=15.0)
                        if agreement_id is not None and event.get("agreement_id") != agreement_id:
                            continue
                        yield f"data: {json_mod.dumps(event)}\n\n"
                    except _queue_mod.Empty:
                        yield ": keepalive\n\n"
            finally:
                with _sse_lock:
                    if q in _sse_subscribers:
                        _sse_subscribers.remove(q)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/agreements/{agreement_id}")
    async def get_agreement(agreement_id: int):
        values = _ledger.get_agreement(agreement_id)
        return {"agreement": _agreement_json(values), "status_label": status_label(values[6])}

    @app.get("/agreements/{agreement_id}/parties/{party_index}")
    async def get_party(agreement_id: int, party_index: int):
        return {"party": _party_json(_ledger.get_party(agreement_id, party_index))}

    @app.get("/agreements/{agreement_id}/terms/{term_index}")
    async def get_term(agreement_id: int, term_index: int):
        return {"term": _term_json(_ledger.get_term(agreement_id, term_index))}

    @app.get("/agreements/{agreement_id}/terms/{term_index}/dispute")
    async def get_dispute(agreement_id: int, term_index: int):
        return {"dispute": _ledger.get_dispute(agreement_id, term_index)}

    @app.get("/agreements/{agreement_id}/escrow")
    async def get_escrow(agreement_id: int):
        """Escrow movements plus a reconciliation against the payment backend."""
        return {
            "entries": _ledger.get_escrow_entries(agreement_id),
            "reconcile": _ledger.reconcile(agreement_id),
        }

    @app.get("/agreements/{agreement_id}/journal")
    async def get_agreement_journal(agreement_id: int):
        _ledger.get_agreement(agreement_id)
        return {"entries": _ledger.get_journal(agreement_id)}

    @app.get("/journal")
    async def get_journal():
        """Whole journal chain, oldest first, for independent verification."""
        return {"entries": _ledger.get_journal()}

    @app.get("/journal/verify")
    async def verify_journal():
        ok, err = _ledger.verify_journal()
        return {"valid": ok, "error": err}

    @app.get("/users/{wallet}/agreements")
    async def get_user_agreements(wallet: str):
        return {"agreement_ids": _ledger.get_user_agreements(wallet)}

    # --- Signatures & collateral ---

    @app.post("/agreements/{agreement_id}/sign")
    async def sign_agreement(agreement_id: int, req: SignRequest, request: Request):
        caller = await _authenticate(request)
        collateral = _parse_amount(req.collateral, "collateral")
        return _ledger.sign_agreement(caller, agreement_id, collateral)

    @app.post("/agreements/{agreement_id}/parties/{party_index}/withdraw")
    async def withdraw_collateral(agreement_id: int, party_index: int, request: Request):
        caller = await _authenticate(request)
        return _ledger.withdraw_collateral(caller, agreement_id, party_index)

    @app.post("/agreements/{agreement_id}/cancel")
    async def cancel_agreement(agreement_id: int, request: Request):
        caller = await _authenticate(request)
        return _ledger.cancel_agreement(caller, agreement_id)

    @app.post("/agreements/{agreement_id}/complete")
    async def complete_agreement(agreement_id: int, request: Request):
        caller = await _authenticate(request)
        return _ledger.complete_agreement(caller, agreement_id)

    # --- Terms ---

    @app.post("/agreements/{agreement_id}/terms")
    async def add_term(agreement_id: int, req: AddTermRequest, request: Request):
        caller = await _authenticate(request)
        penalty = _parse_amount(req.penalty_amount, "penalty_amount")
        term_index = _ledger.add_term(
            caller, agreement_id, req.description, req.responsible_party,
            req.deadline, penalty, req.penalty_recipient,
        )
        return {"agreement_id": agreement_id, "term_index": term_index}

    @app.post("/agreements/{agreement_id}/terms/{term_index}/resolve")
    async def resolve_term(agreement_id: int, term_index: int, request: Request):
        caller = await _authenticate(request)
        return _ledger.resolve_term(caller, agreement_id, term_index)

    @app.post("/agreements/{agreement_id}/terms/{term_index}/evaluate")
    async def evaluate_term(agreement_id: int, term_index: int, request: Request):
        caller = await _authenticate(request)
        return _ledger.evaluate_term(caller, agreement_id, term_index)

    @app.post("/agreements/{agreement_id}/terms/{term_index}/enforce")
    async def enforce_breach(agreement_id: int, term_index: int, request: Request):
        caller = await _authenticate(request)
        return _ledger.enforce_breach(caller, agreement_id, term_index)

    # --- Disputes ---

    @app.post("/agreements/{agreement_id}/terms/{term_index}/dispute")
    async def raise_dispute(agreement_id: int, term_index: int, req: DisputeRequest,
                            request: Request):
        caller = await _authenticate(request)
        return _ledger.raise_dispute(caller, agreement_id, term_index, req.reason)

    @app.post("/agreements/{agreement_id}/terms/{term_index}/dispute/resolve")
    async def resolve_dispute(agreement_id: int, term_index: int, req: ResolveDisputeRequest,
                              request: Request):
        caller = await _authenticate(request)
        return _ledger.resolve_dispute(caller, agreement_id, term_index, req.upheld)

    return app
