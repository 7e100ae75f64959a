"""Agreement lifecycle controller.

Owns the agreement state machine and every mutating entry point of the
ledger. Each entry point is one store transaction:

    validate -> write records -> journal -> check invariants -> settle value

Value is settled last, so a refused payment rolls the whole call back.
Lifecycle events are handed to subscribers only after the transaction
commits.

    Pending --all signed--> Active --all terms resolved--> Completed
       |                       |
       +--creator cancels--> Cancelled   +--breach enforced--> Breached

Completed, Breached and Cancelled are terminal.
"""

import os
import time

from protocol import (
    AgreementStatus, DisputeState, EscrowKind, status_label,
    InvalidInput, InvalidStateTransition, Unauthorized, NotAParty,
    AlreadyResolved, TermNotFound,
)
from crypto import normalize_address
from ledger.store import LedgerStore, Agreement, Term, Dispute
from ledger.escrow import CollateralEscrow, Transfer
from ledger.payments import PaymentBackend
from ledger.parties import PartyManager
from ledger.terms import TermTracker, is_breached_at


class LifecycleController:
    """Single entry point for every agreement operation.

    Every mutating method takes the calling wallet first. The controller
    trusts the caller identity it is given; the HTTP layer derives it from
    a verified request signature.
    """

    def __init__(self, store: LedgerStore, escrow: CollateralEscrow | None = None):
        self.store = store
        self.escrow = escrow or CollateralEscrow(store)
        self.parties = PartyManager(store, self.escrow)
        self.terms = TermTracker(store)
        self._subscribers = []

    # --- Events ---

    def subscribe(self, callback):
        """Register callback(event_type, data), called after each commit."""
        self._subscribers.append(callback)

    def _publish(self, events: list[tuple[str, dict]]):
        for event_type, data in events:
            for callback in self._subscribers:
                callback(event_type, data)

    # --- Internal steps ---

    def _finish(self, agreement_id: int, entry_type: str, data: dict,
                transfers: list[Transfer], now: int) -> list[dict]:
        """Journal, check invariants, then move value. Runs inside the transaction."""
        self.store.append_journal(entry_type, agreement_id, data, now)
        self.store.check_invariants(agreement_id)
        return self.escrow.settle(transfers, now)

    def _require_member(self, agreement: Agreement, caller: str) -> str:
        """Caller must be the creator or one of the parties."""
        wallet = _address(caller, Unauthorized)
        if wallet != agreement.creator and not self.parties.is_party(agreement.id, wallet):
            raise Unauthorized(f"{wallet} is neither creator nor party of agreement {agreement.id}")
        return wallet

    def _open_dispute(self, agreement_id: int, term_index: int) -> Dispute | None:
        dispute = self.store.get_dispute(agreement_id, term_index)
        return dispute if dispute and dispute.is_open else None

    def _enforce(self, agreement: Agreement, term: Term) -> list[Transfer]:
        """Breach path: apply the term's penalty and move the agreement to Breached."""
        parties = self.store.list_parties(agreement.id)
        transfers = self.escrow.apply_penalty(agreement.id, term, parties)
        self.store.set_status(agreement.id, AgreementStatus.BREACHED)
        return transfers

    def _complete(self, agreement: Agreement):
        self.store.set_status(agreement.id, AgreementStatus.COMPLETED)

    @staticmethod
    def _status_event(agreement_id: int, status: AgreementStatus) -> tuple[str, dict]:
        return ("status_changed", {
            "agreement_id": agreement_id,
            "status": int(status),
            "status_label": status_label(status),
        })

    @staticmethod
    def _penalty(transfers: list[Transfer]) -> str:
        return str(sum(t.amount for t in transfers if t.kind == EscrowKind.PENALTY))

    # --- Mutating entry points ---

    def create_agreement(self, caller: str, title: str, description: str,
                         party_wallets: list, party_names: list,
                         auto_enforce: bool = False) -> int:
        """Create a Pending agreement. The caller becomes its creator."""
        with self.store.transaction():
            now = self.store.now()
            agreement_id = self.parties.register(
                caller, title, description, party_wallets, party_names,
                bool(auto_enforce), now,
            )
            agreement = self.store.require_agreement(agreement_id)
            self._finish(agreement_id, "agreement_created", {
                "title": title,
                "creator": agreement.creator,
                "parties": [p.wallet for p in self.store.list_parties(agreement_id)],
                "auto_enforce": agreement.auto_enforce,
            }, [], now)

        self._publish([("agreement_created", {
            "agreement_id": agreement_id,
            "title": title,
            "creator": agreement.creator,
            "party_count": agreement.party_count,
        })])
        return agreement_id

    def sign_agreement(self, caller: str, agreement_id: int, collateral: int = 0) -> dict:
        """Sign with optional collateral. The last signature activates the agreement."""
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            party, transfers, activated = self.parties.admit_signature(
                agreement, caller, collateral, now,
            )
            status = AgreementStatus.ACTIVE if activated else agreement.status
            self._finish(agreement_id, "agreement_signed", {
                "party_index": party.index,
                "collateral": str(collateral),
                "status": int(status),
            }, transfers, now)

        events = [("agreement_signed", {
            "agreement_id": agreement_id,
            "party_index": party.index,
            "collateral": str(collateral),
        })]
        if activated:
            events.append(self._status_event(agreement_id, status))
        self._publish(events)
        return {"agreement_id": agreement_id, "party_index": party.index,
                "status": int(status), "activated": activated}

    def add_term(self, caller: str, agreement_id: int, description: str,
                 responsible_party: int, deadline: int, penalty_amount: int = 0,
                 penalty_recipient: str = "") -> int:
        """Append a term while the agreement is Pending or Active. Returns its index."""
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            self._require_member(agreement, caller)
            index = self.terms.add(
                agreement, description, responsible_party, deadline,
                penalty_amount, penalty_recipient,
            )
            term = self.store.get_term(agreement_id, index)
            self._finish(agreement_id, "term_added", {
                "term_index": index,
                "responsible_party": term.responsible_party,
                "deadline": term.deadline,
                "penalty_amount": str(term.penalty_amount),
                "penalty_recipient": term.penalty_recipient,
            }, [], now)

        self._publish([("term_added", {
            "agreement_id": agreement_id,
            "term_index": index,
            "responsible_party": term.responsible_party,
            "deadline": term.deadline,
        })])
        return index

    def resolve_term(self, caller: str, agreement_id: int, term_index: int) -> dict:
        """A counterparty attests the obligation was met before its deadline.

        Resolving the last open term completes the agreement. A disputed term
        is settled through resolve_dispute instead.
        """
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            term = self.terms.require_term(agreement_id, term_index)
            if agreement.status != AgreementStatus.ACTIVE:
                raise InvalidStateTransition(f"Agreement {agreement_id} is not Active")
            party = self.parties.require_party(agreement_id, caller)
            if party.index == term.responsible_party:
                raise Unauthorized("The responsible party cannot resolve its own term")
            if self._open_dispute(agreement_id, term.index):
                raise InvalidStateTransition(
                    f"Term {term.index} is under an open dispute; resolve the dispute instead"
                )

            self.terms.resolve(agreement, term, now)
            completed = self.terms.all_resolved(agreement_id)
            if completed:
                self._complete(agreement)
            status = AgreementStatus.COMPLETED if completed else agreement.status
            self._finish(agreement_id, "term_resolved", {
                "term_index": term.index,
                "resolved_by": party.wallet,
                "status": int(status),
            }, [], now)

        events = [("term_resolved", {
            "agreement_id": agreement_id,
            "term_index": term.index,
            "resolved_by": party.wallet,
        })]
        if completed:
            events.append(self._status_event(agreement_id, status))
        self._publish(events)
        return {"agreement_id": agreement_id, "term_index": term.index,
                "status": int(status), "completed": completed}

    def evaluate_term(self, caller: str, agreement_id: int, term_index: int) -> dict:
        """Check a term against the clock and record a breach if its deadline passed.

        Under autoEnforce a recorded breach runs the breach path at once,
        unless the term is under an open dispute. Resolved or already
        breached terms are a no-op.
        """
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            term = self.terms.require_term(agreement_id, term_index)
            result = {"agreement_id": agreement_id, "term_index": term.index,
                      "breached": term.is_breached, "enforced": False,
                      "status": int(agreement.status), "escrow": []}
            if term.is_resolved or term.is_breached:
                return result
            if agreement.status != AgreementStatus.ACTIVE:
                raise InvalidStateTransition(f"Agreement {agreement_id} is not Active")

            if not self.terms.evaluate(agreement, term, now):
                return result

            transfers = []
            enforced = agreement.auto_enforce and self._open_dispute(agreement_id, term.index) is None
            if enforced:
                transfers = self._enforce(agreement, term)
            status = AgreementStatus.BREACHED if enforced else agreement.status
            settled = self._finish(agreement_id, "term_breached", {
                "term_index": term.index,
                "enforced": enforced,
                "penalty": self._penalty(transfers),
                "status": int(status),
            }, transfers, now)

        events = [("term_breached", {
            "agreement_id": agreement_id,
            "term_index": term.index,
            "responsible_party": term.responsible_party,
        })]
        if enforced:
            events.append(self._status_event(agreement_id, status))
        self._publish(events)
        result.update(breached=True, enforced=enforced, status=int(status), escrow=settled)
        return result

    def enforce_breach(self, caller: str, agreement_id: int, term_index: int) -> dict:
        """Explicitly run the breach path for a term whose deadline has passed.

        Works with or without autoEnforce. Fails if the term is resolved,
        not in breach, or under an open dispute.
        """
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            term = self.terms.require_term(agreement_id, term_index)
            if term.is_resolved:
                raise AlreadyResolved(f"Term {term.index} of agreement {agreement_id} is resolved")
            if agreement.status != AgreementStatus.ACTIVE:
                raise InvalidStateTransition(f"Agreement {agreement_id} is not Active")
            if self._open_dispute(agreement_id, term.index):
                raise InvalidStateTransition(f"Term {term.index} is under an open dispute")

            newly_breached = False
            if not term.is_breached:
                if not is_breached_at(term, now):
                    raise InvalidStateTransition(f"Term {term.index} is not in breach")
                newly_breached = self.terms.evaluate(agreement, term, now)

            transfers = self._enforce(agreement, term)
            settled = self._finish(agreement_id, "agreement_breached", {
                "term_index": term.index,
                "penalty": self._penalty(transfers),
                "status": int(AgreementStatus.BREACHED),
            }, transfers, now)

        events = []
        if newly_breached:
            events.append(("term_breached", {
                "agreement_id": agreement_id,
                "term_index": term.index,
                "responsible_party": term.responsible_party,
            }))
        events.append(self._status_event(agreement_id, AgreementStatus.BREACHED))
        self._publish(events)
        return {"agreement_id": agreement_id, "term_index": term.index,
                "status": int(AgreementStatus.BREACHED), "escrow": settled}

    def complete_agreement(self, caller: str, agreement_id: int) -> dict:
        """Move an Active agreement whose terms are all resolved to Completed."""
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            self._require_member(agreement, caller)
            if agreement.status != AgreementStatus.ACTIVE:
                raise InvalidStateTransition(f"Agreement {agreement_id} is not Active")
            if not self.terms.all_resolved(agreement_id):
                raise InvalidStateTransition(f"Agreement {agreement_id} has unresolved terms")
            self._complete(agreement)
            self._finish(agreement_id, "agreement_completed", {
                "status": int(AgreementStatus.COMPLETED),
            }, [], now)

        self._publish([self._status_event(agreement_id, AgreementStatus.COMPLETED)])
        return {"agreement_id": agreement_id, "status": int(AgreementStatus.COMPLETED)}

    def cancel_agreement(self, caller: str, agreement_id: int) -> dict:
        """Creator cancels a Pending agreement. Deposits come back via withdrawal."""
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            if _address(caller, Unauthorized) != agreement.creator:
                raise Unauthorized(f"Only the creator can cancel agreement {agreement_id}")
            if agreement.status != AgreementStatus.PENDING:
                raise InvalidStateTransition(
                    f"Agreement {agreement_id} can only be cancelled while Pending"
                )
            self.store.set_status(agreement_id, AgreementStatus.CANCELLED)
            self._finish(agreement_id, "agreement_cancelled", {
                "status": int(AgreementStatus.CANCELLED),
            }, [], now)

        self._publish([self._status_event(agreement_id, AgreementStatus.CANCELLED)])
        return {"agreement_id": agreement_id, "status": int(AgreementStatus.CANCELLED)}

    def withdraw_collateral(self, caller: str, agreement_id: int, party_index: int) -> dict:
        """Pay a party its remaining deposit once the agreement is over. Once per party."""
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            transfers = self.parties.withdraw(agreement, party_index, caller)
            amount = sum(t.amount for t in transfers)
            settled = self._finish(agreement_id, "collateral_withdrawn", {
                "party_index": party_index,
                "amount": str(amount),
            }, transfers, now)

        self._publish([("collateral_withdrawn", {
            "agreement_id": agreement_id,
            "party_index": party_index,
            "amount": str(amount),
        })])
        return {"agreement_id": agreement_id, "party_index": party_index,
                "amount": str(amount), "escrow": settled}

    # --- Disputes ---

    def raise_dispute(self, caller: str, agreement_id: int, term_index: int,
                      reason: str = "") -> dict:
        """A party contests a term. While open, the term cannot drive a breach."""
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            term = self.terms.require_term(agreement_id, term_index)
            party = self.parties.require_party(agreement_id, caller)
            if term.is_resolved:
                raise AlreadyResolved(f"Term {term.index} of agreement {agreement_id} is resolved")
            if agreement.status != AgreementStatus.ACTIVE:
                raise InvalidStateTransition(f"Agreement {agreement_id} is not Active")
            if not isinstance(reason, str):
                raise InvalidInput("reason must be a string")

            dispute = Dispute(
                agreement_id=agreement_id,
                term_index=term.index,
                raised_by=party.wallet,
                reason=reason,
                raised_at=now,
            )
            self.store.insert_dispute(dispute)
            self._finish(agreement_id, "dispute_raised", {
                "term_index": term.index,
                "raised_by": party.wallet,
                "reason": reason,
            }, [], now)

        self._publish([("dispute_raised", {
            "agreement_id": agreement_id,
            "term_index": term.index,
            "raised_by": party.wallet,
        })])
        return dispute.to_dict()

    def resolve_dispute(self, caller: str, agreement_id: int, term_index: int,
                        upheld: bool) -> dict:
        """Close an open dispute.

        Upheld: the term counts as met (its breach flag stays as history) and
        the agreement completes if nothing else is open. Only the creator or
        a party other than the raiser and the responsible party may uphold.
        Rejected: under autoEnforce a breach of the term runs the breach path.
        """
        with self.store.transaction():
            now = self.store.now()
            agreement = self.store.require_agreement(agreement_id)
            term = self.terms.require_term(agreement_id, term_index)
            dispute = self._open_dispute(agreement_id, term.index)
            if dispute is None:
                raise InvalidStateTransition(f"No open dispute on term {term.index}")
            wallet = self._require_member(agreement, caller)
            if wallet == dispute.raised_by:
                raise Unauthorized("The party that raised a dispute cannot resolve it")
            # Upholding attests the obligation was met: counterparties only
            responsible = self.store.get_party(agreement_id, term.responsible_party)
            if upheld and wallet == responsible.wallet:
                raise Unauthorized("The responsible party cannot uphold a dispute on its own term")

            state = DisputeState.UPHELD if upheld else DisputeState.REJECTED
            self.store.close_dispute(agreement_id, term.index, state, wallet, now)

            transfers = []
            status = agreement.status
            active = agreement.status == AgreementStatus.ACTIVE
            if active and upheld and not term.is_resolved:
                self.terms.mark_resolved(agreement, term, now)
                if self.terms.all_resolved(agreement_id):
                    self._complete(agreement)
                    status = AgreementStatus.COMPLETED
            elif active and not upheld and not term.is_resolved and agreement.auto_enforce:
                if term.is_breached or self.terms.evaluate(agreement, term, now):
                    transfers = self._enforce(agreement, term)
                    status = AgreementStatus.BREACHED

            settled = self._finish(agreement_id, "dispute_resolved", {
                "term_index": term.index,
                "state": state,
                "resolved_by": wallet,
                "status": int(status),
            }, transfers, now)

        events = [("dispute_resolved", {
            "agreement_id": agreement_id,
            "term_index": term.index,
            "state": state,
        })]
        if status != agreement.status:
            events.append(self._status_event(agreement_id, status))
        self._publish(events)
        result = self.store.get_dispute(agreement_id, term.index).to_dict()
        result.update(status=int(status), escrow=settled)
        return result

    # --- Queries (read-only; never enforce) ---

    def get_agreement(self, agreement_id: int) -> tuple:
        return self.store.require_agreement(agreement_id).as_tuple()

    def get_party(self, agreement_id: int, party_index: int) -> tuple:
        with self.store.reading():
            self.store.require_agreement(agreement_id)
            party = self.store.get_party(agreement_id, party_index)
        if party is None:
            raise NotAParty(f"Agreement {agreement_id} has no party {party_index}")
        return party.as_tuple()

    def get_term(self, agreement_id: int, term_index: int) -> tuple:
        with self.store.reading():
            self.store.require_agreement(agreement_id)
            term = self.store.get_term(agreement_id, term_index)
        if term is None:
            raise TermNotFound(f"Agreement {agreement_id} has no term {term_index}")
        return term.as_tuple()

    def get_user_agreements(self, wallet: str) -> list[int]:
        return self.store.user_agreement_ids(_address(wallet, InvalidInput))

    def get_total_agreements(self) -> int:
        return self.store.total_agreements()

    def get_dispute(self, agreement_id: int, term_index: int) -> dict | None:
        with self.store.reading():
            self.store.require_agreement(agreement_id)
            dispute = self.store.get_dispute(agreement_id, term_index)
        return dispute.to_dict() if dispute else None

    def get_escrow_entries(self, agreement_id: int) -> list[dict]:
        with self.store.reading():
            self.store.require_agreement(agreement_id)
            return [e.to_dict() for e in self.store.list_escrow_entries(agreement_id)]

    def get_journal(self, agreement_id: int | None = None) -> list[dict]:
        return self.store.list_journal(agreement_id)

    def verify_journal(self) -> tuple[bool, str]:
        return self.store.verify_journal()

    def reconcile(self, agreement_id: int) -> dict:
        with self.store.reading():
            return self.escrow.reconcile(agreement_id)


def _address(wallet: str, error):
    try:
        return normalize_address(wallet)
    except ValueError as e:
        raise error(str(e))


def build_ledger(db_path: str = ":memory:", signer_privkey: bytes | None = None,
                 payment_backend: PaymentBackend | None = None,
                 clock=time.time) -> LifecycleController:
    """Wire one store, escrow and controller for a deployment."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    store = LedgerStore(db_path, signer_privkey=signer_privkey, clock=clock)
    escrow = CollateralEscrow(store, payment_backend)
    return LifecycleController(store, escrow)
