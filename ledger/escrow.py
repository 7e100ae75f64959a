"""Collateral escrow for the covenant ledger.

The only component allowed to change a party's deposit or an agreement's
total collateral. Three call sites touch balances:

- deposit: collateral attached to a signature
- apply_penalty: breach of a term moves value away from the breaching party
- release: withdrawal after the agreement reaches a terminal state

Each call updates the ledger balances and returns Transfer records. Value
only moves when the controller hands those transfers to settle() as the
last step of its transaction, so a refused transfer rolls back the whole
call and leaves no trace in the ledger.
"""

from dataclasses import dataclass

from protocol import EscrowKind, InvalidInput, WITHDRAWABLE_STATES, NotWithdrawable
from ledger.store import LedgerStore, EscrowEntry, Party, Term
from ledger.payments import PaymentBackend, StubBackend


def calculate_penalty(penalty_amount: int, deposit: int) -> int:
    """Penalty is absolute (not percentage). Capped at the breaching party's deposit."""
    return max(min(penalty_amount, deposit), 0)


def split_forfeit(amount: int, recipients: list[int]) -> dict[int, int]:
    """Split a forfeited penalty equally. Remainder goes to the lowest index."""
    if not recipients:
        return {}
    share, remainder = divmod(amount, len(recipients))
    ordered = sorted(recipients)
    shares = {idx: share for idx in ordered}
    shares[ordered[0]] += remainder
    return shares


# Transfer directions
IN = "in"
OUT = "out"
INTERNAL = "internal"


@dataclass
class Transfer:
    """A value movement staged by the escrow, executed by settle()."""
    agreement_id: int
    party_index: int
    kind: str
    amount: int
    direction: str
    counterparty: str = ""


class CollateralEscrow:
    """Holds value keyed by agreement and party; routes it via a PaymentBackend."""

    def __init__(self, store: LedgerStore, payment_backend: PaymentBackend | None = None):
        self.store = store
        self.payment = payment_backend or StubBackend()

    def deposit(self, agreement_id: int, party: Party, amount: int) -> list[Transfer]:
        """Credit collateral attached to a signature."""
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise InvalidInput(f"Collateral must be a non-negative integer, got {amount!r}")
        if amount == 0:
            return []
        self.store.adjust_balance(agreement_id, party.index, amount)
        return [Transfer(agreement_id, party.index, EscrowKind.DEPOSIT, amount, IN, party.wallet)]

    def release(self, agreement_id: int, status, party: Party) -> list[Transfer]:
        """Pay a party's remaining deposit back to its wallet, exactly once."""
        if status not in WITHDRAWABLE_STATES:
            raise NotWithdrawable(f"Agreement {agreement_id} is not in a withdrawable state")
        if party.has_withdrawn:
            raise NotWithdrawable(f"Party {party.index} of agreement {agreement_id} already withdrew")

        amount = party.deposit_amount
        if amount:
            self.store.adjust_balance(agreement_id, party.index, -amount)
        self.store.mark_withdrawn(agreement_id, party.index)
        return [Transfer(agreement_id, party.index, EscrowKind.WITHDRAWAL, amount, OUT, party.wallet)]

    def apply_penalty(self, agreement_id: int, term: Term, parties: list[Party]) -> list[Transfer]:
        """Move the term's penalty away from the breaching party.

        With a recipient, the penalty is sent out of escrow. Without one it is
        forfeited to the other parties, credited to their deposits.
        """
        breacher = next(p for p in parties if p.index == term.responsible_party)
        amount = calculate_penalty(term.penalty_amount, breacher.deposit_amount)

        if amount:
            self.store.adjust_balance(agreement_id, breacher.index, -amount)

        if term.penalty_recipient:
            return [Transfer(agreement_id, breacher.index, EscrowKind.PENALTY, amount, OUT,
                             term.penalty_recipient)]

        transfers = [Transfer(agreement_id, breacher.index, EscrowKind.PENALTY, amount, INTERNAL)]
        others = [p.index for p in parties if p.index != breacher.index]
        for idx, share in split_forfeit(amount, others).items():
            if share:
                self.store.adjust_balance(agreement_id, idx, share)
            transfers.append(Transfer(agreement_id, idx, EscrowKind.FORFEIT, share, INTERNAL,
                                      breacher.wallet))
        return transfers

    def settle(self, transfers: list[Transfer], timestamp: int) -> list[dict]:
        """Execute staged transfers and record them as escrow entries.

        Must run inside the caller's transaction; a backend failure propagates
        and the transaction rolls back.
        """
        settled = []
        for t in transfers:
            tx_hash = ""
            if t.amount > 0 and t.direction == IN:
                tx_hash = self.payment.collect(t.agreement_id, t.counterparty, t.amount)
            elif t.amount > 0 and t.direction == OUT:
                tx_hash = self.payment.send(t.agreement_id, t.counterparty, t.amount)

            entry = EscrowEntry(
                agreement_id=t.agreement_id,
                party_index=t.party_index,
                kind=t.kind,
                amount=t.amount,
                counterparty=t.counterparty,
                tx_hash=tx_hash,
                timestamp=timestamp,
            )
            self.store.insert_escrow_entry(entry)
            settled.append(entry.to_dict())
        return settled

    def escrow_account(self, agreement_id: int) -> str:
        return self.payment.create_escrow_account(agreement_id).get("account", "")

    def reconcile(self, agreement_id: int) -> dict:
        """Compare the ledger's total collateral with what the backend holds."""
        agreement = self.store.require_agreement(agreement_id)
        held = self.payment.get_balance(agreement_id)
        return {
            "agreement_id": agreement_id,
            "total_collateral": str(agreement.total_collateral),
            "backend_balance": str(held),
            "balanced": held == agreement.total_collateral,
        }
