"""Covenant ledger API client.

Thin HTTP client with a pluggable transport interface.
Default transport: HTTP with Ed25519 authentication.

The ledger derives the caller's wallet from the signing key, so the same
key must be used for every action taken as one party. Ledger errors come
back as the matching CovenantError subclass.
"""

import json
import secrets
from abc import ABC, abstractmethod

import httpx

from crypto import sign_request_ed25519, ed25519_privkey_to_pubkey, pubkey_to_address, verify_chain
from protocol import ERRORS_BY_CODE, InvalidInput, InvalidPartyList
from agreement import (
    build_agreement_request, build_term_request, check_party_list,
    validate_agreement_request, decode_agreement, decode_party, decode_term,
)


class Transport(ABC):
    """Override this to talk to the ledger some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None) -> dict:
        ...


def raise_for_error(status_code: int, body) -> None:
    """Turn an error response into the ledger's exception, if it names one."""
    if status_code < 400:
        return
    if isinstance(body, dict) and body.get("error") in ERRORS_BY_CODE:
        raise ERRORS_BY_CODE[body["error"]](body.get("detail", ""))


class HTTPTransport(Transport):
    """Default. Talks to a covenant ledger server over HTTP with Ed25519 auth."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        privkey_bytes: bytes | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.privkey_bytes = privkey_bytes
        self.timeout = timeout
        if privkey_bytes:
            self.pubkey_hex = ed25519_privkey_to_pubkey(privkey_bytes).hex()
        else:
            self.pubkey_hex = ""

    def _headers(self, method: str = "GET", path: str = "", body: str = "") -> dict:
        h = {"Content-Type": "application/json"}
        if self.privkey_bytes:
            auth = sign_request_ed25519(
                self.privkey_bytes, self.pubkey_hex, method, path, body
            )
            h.update(auth)
        return h

    @staticmethod
    def _handle(resp: httpx.Response) -> dict:
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            raise_for_error(resp.status_code, body)
            resp.raise_for_status()
        return resp.json()

    async def post(self, path: str, data: dict) -> dict:
        # Nonce keeps signatures unique when the same call repeats within a second
        body = json.dumps({**data, "_nonce": secrets.token_hex(8)})
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                content=body,
                headers=self._headers("POST", path, body),
                timeout=self.timeout,
            )
            return self._handle(resp)

    async def get(self, path: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                f"{self.base_url}{path}",
                params=params,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
            return self._handle(resp)


class CovenantClient:
    """High-level client for the covenant ledger."""

    def __init__(self, transport: Transport | None = None, base_url: str = "http://localhost:8000",
                 privkey_bytes: bytes | None = None):
        self.privkey_bytes = privkey_bytes
        if privkey_bytes:
            self.address = pubkey_to_address(ed25519_privkey_to_pubkey(privkey_bytes))
        else:
            self.address = ""
        if transport:
            self.transport = transport
        else:
            self.transport = HTTPTransport(base_url, privkey_bytes=privkey_bytes)

    # --- Mutating calls ---

    async def create_agreement(self, title: str, description: str, party_wallets: list[str],
                               party_names: list[str], auto_enforce: bool = False) -> int:
        """Create an agreement. Returns its id.

        The payload is checked locally first, so a malformed party list fails
        with InvalidPartyList before anything is signed or sent.
        """
        errors = check_party_list(party_wallets, party_names)
        if errors:
            raise InvalidPartyList("; ".join(errors))
        request = build_agreement_request(title, description, zip(party_wallets, party_names), auto_enforce)
        ok, errors = validate_agreement_request(request)
        if not ok:
            raise InvalidInput("; ".join(errors))
        resp = await self.transport.post("/agreements", request)
        return resp["agreement_id"]

    async def sign_agreement(self, agreement_id: int, collateral: int = 0) -> dict:
        """Sign as this client's wallet, attaching collateral in base units."""
        return await self.transport.post(f"/agreements/{agreement_id}/sign", {
            "collateral": str(collateral),
        })

    async def add_term(self, agreement_id: int, description: str, responsible_party: int,
                       deadline: int, penalty_amount: int = 0, penalty_recipient: str = "") -> int:
        """Add a term. Returns its index."""
        resp = await self.transport.post(
            f"/agreements/{agreement_id}/terms",
            build_term_request(description, responsible_party, deadline, penalty_amount, penalty_recipient),
        )
        return resp["term_index"]

    async def resolve_term(self, agreement_id: int, term_index: int) -> dict:
        return await self.transport.post(f"/agreements/{agreement_id}/terms/{term_index}/resolve", {})

    async def evaluate_term(self, agreement_id: int, term_index: int) -> dict:
        return await self.transport.post(f"/agreements/{agreement_id}/terms/{term_index}/evaluate", {})

    async def enforce_breach(self, agreement_id: int, term_index: int) -> dict:
        return await self.transport.post(f"/agreements/{agreement_id}/terms/{term_index}/enforce", {})

    async def complete_agreement(self, agreement_id: int) -> dict:
        return await self.transport.post(f"/agreements/{agreement_id}/complete", {})

    async def cancel_agreement(self, agreement_id: int) -> dict:
        return await self.transport.post(f"/agreements/{agreement_id}/cancel", {})

    async def withdraw_collateral(self, agreement_id: int, party_index: int) -> dict:
        return await self.transport.post(
            f"/agreements/{agreement_id}/parties/{party_index}/withdraw", {},
        )

    async def raise_dispute(self, agreement_id: int, term_index: int, reason: str = "") -> dict:
        return await self.transport.post(
            f"/agreements/{agreement_id}/terms/{term_index}/dispute", {"reason": reason},
        )

    async def resolve_dispute(self, agreement_id: int, term_index: int, upheld: bool) -> dict:
        return await self.transport.post(
            f"/agreements/{agreement_id}/terms/{term_index}/dispute/resolve", {"upheld": upheld},
        )

    # --- Queries ---

    async def get_agreement(self, agreement_id: int) -> dict:
        """Agreement as a labelled dict (status_label is 'Unknown' for unknown statuses)."""
        resp = await self.transport.get(f"/agreements/{agreement_id}")
        return decode_agreement(resp["agreement"])

    async def get_party(self, agreement_id: int, party_index: int) -> dict:
        resp = await self.transport.get(f"/agreements/{agreement_id}/parties/{party_index}")
        return decode_party(resp["party"])

    async def get_term(self, agreement_id: int, term_index: int) -> dict:
        resp = await self.transport.get(f"/agreements/{agreement_id}/terms/{term_index}")
        return decode_term(resp["term"])

    async def get_dispute(self, agreement_id: int, term_index: int) -> dict | None:
        resp = await self.transport.get(f"/agreements/{agreement_id}/terms/{term_index}/dispute")
        return resp["dispute"]

    async def get_user_agreements(self, wallet: str = "") -> list[int]:
        """Agreement ids for a wallet (defaults to this client's own)."""
        resp = await self.transport.get(f"/users/{wallet or self.address}/agreements")
        return resp["agreement_ids"]

    async def get_total_agreements(self) -> int:
        resp = await self.transport.get("/agreements/total")
        return resp["total"]

    async def get_escrow(self, agreement_id: int) -> dict:
        return await self.transport.get(f"/agreements/{agreement_id}/escrow")

    async def get_journal(self, agreement_id: int) -> list[dict]:
        resp = await self.transport.get(f"/agreements/{agreement_id}/journal")
        return resp["entries"]

    async def get_server_pubkey(self) -> dict:
        """Get the ledger's Ed25519 journal key."""
        return await self.transport.get("/server_pubkey")

    async def verify_journal(self) -> dict:
        """Ask the server to verify its whole journal chain."""
        return await self.transport.get("/journal/verify")

    async def get_full_journal(self) -> list[dict]:
        """Every journal entry, for local verification with verify_chain."""
        resp = await self.transport.get("/journal")
        return resp["entries"]

    async def verify_journal_locally(self) -> tuple[bool, str]:
        """Fetch the whole journal and check signatures and linkage client-side."""
        return verify_chain(await self.get_full_journal())

    async def stream_events(self, agreement_id: int | None = None, callback=None):
        """Subscribe to SSE lifecycle events.

        Args:
            agreement_id: Only receive events for this agreement
            callback: async callable(event_dict) called for each event

        Usage:
            async def on_event(event):
                if event["event"] == "status_changed":
                    print(f"Agreement {event['agreement_id']} is now {event['status_label']}")

            await client.stream_events(agreement_id=0, callback=on_event)
        """
        base = self.transport.base_url if hasattr(self.transport, "base_url") else "http://localhost:8000"
        params = {"agreement_id": agreement_id} if agreement_id is not None else None

        async with httpx.AsyncClient() as client:
            async with client.stream("GET", f"{base}/agreements/stream", params=params,
                                     timeout=None) as resp:
                async for line in resp.aiter_lines():
                    if line.startswith("data: "):
                        event = json.loads(line[6:])
                        if callback:
                            await callback(event)
