"""Term and deadline tracking.

A term is one obligation of one party, due by a deadline. The tracker
appends terms, decides breach against a single clock reading, and records
resolutions. It never moves value; breaches are handed to the lifecycle
controller, which decides whether to enforce.
"""

from protocol import (
    TERM_EDITABLE_STATES, MAX_DESCRIPTION_LENGTH, MAX_STORED_INT, ZERO_ADDRESS,
    InvalidInput, InvalidStateTransition, TermNotFound,
    AlreadyResolved, DeadlinePassed,
)
from crypto import normalize_address
from ledger.store import LedgerStore, Agreement, Term


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_breached_at(term: Term, now: int) -> bool:
    """Breach = deadline elapsed and obligation unmet."""
    return not term.is_resolved and now > term.deadline


class TermTracker:
    def __init__(self, store: LedgerStore):
        self.store = store

    def require_term(self, agreement_id: int, index) -> Term:
        term = self.store.get_term(agreement_id, index) if _is_int(index) else None
        if term is None:
            raise TermNotFound(f"Agreement {agreement_id} has no term {index}")
        return term

    def add(self, agreement: Agreement, description: str, responsible_party, deadline,
            penalty_amount=0, penalty_recipient: str = "") -> int:
        """Append a term. Returns its index."""
        if agreement.status not in TERM_EDITABLE_STATES:
            raise InvalidStateTransition(
                f"Terms cannot be added to agreement {agreement.id} in its current state"
            )
        if not isinstance(description, str) or not description.strip():
            raise InvalidInput("term description is required")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidInput(f"term description longer than {MAX_DESCRIPTION_LENGTH} characters")
        if not _is_int(responsible_party) or not 0 <= responsible_party < agreement.party_count:
            raise InvalidInput(f"responsible party {responsible_party!r} is not a party index")
        if not _is_int(deadline) or not 0 <= deadline <= MAX_STORED_INT:
            raise InvalidInput(f"deadline must be an integer between 0 and {MAX_STORED_INT}, got {deadline!r}")
        if not _is_int(penalty_amount) or penalty_amount < 0:
            raise InvalidInput(f"penalty must be a non-negative integer, got {penalty_amount!r}")

        recipient = ""
        if penalty_recipient:
            try:
                recipient = normalize_address(penalty_recipient)
            except ValueError as e:
                raise InvalidInput(f"penalty recipient: {e}")
            if recipient == ZERO_ADDRESS:
                raise InvalidInput("penalty recipient cannot be the zero address")

        return self.store.insert_term(
            agreement.id, description, responsible_party, deadline, penalty_amount, recipient,
        )

    def evaluate(self, agreement: Agreement, term: Term, now: int) -> bool:
        """Record a breach if the deadline has passed. Returns True if one was recorded.

        Resolved or already-breached terms are left alone.
        """
        if term.is_resolved or term.is_breached:
            return False
        if not is_breached_at(term, now):
            return False
        self.store.mark_term_breached(agreement.id, term.index, now)
        return True

    def resolve(self, agreement: Agreement, term: Term, now: int) -> None:
        """Mark a term fulfilled. Late or breached terms cannot be resolved."""
        if term.is_resolved:
            raise AlreadyResolved(f"Term {term.index} of agreement {agreement.id} is already resolved")
        if term.is_breached or now > term.deadline:
            raise DeadlinePassed(f"Term {term.index} of agreement {agreement.id} is past its deadline")
        self.store.mark_term_resolved(agreement.id, term.index, now)

    def mark_resolved(self, agreement: Agreement, term: Term, now: int) -> None:
        """Resolve without the deadline check (an upheld dispute)."""
        if term.is_resolved:
            raise AlreadyResolved(f"Term {term.index} of agreement {agreement.id} is already resolved")
        self.store.mark_term_resolved(agreement.id, term.index, now)

    def all_resolved(self, agreement_id: int) -> bool:
        return all(t.is_resolved for t in self.store.list_terms(agreement_id))
