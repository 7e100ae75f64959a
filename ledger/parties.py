"""Party and signature management.

Registers the named parties of a new agreement, admits their signatures
(with optional collateral routed through the escrow) and pays collateral
back out once the agreement is over.
"""

from protocol import (
    AgreementStatus, InvalidPartyList, InvalidInput, NotAParty,
    AlreadySigned, InvalidStateTransition,
)
from crypto import normalize_address
from agreement import check_party_list, check_text_fields
from ledger.store import LedgerStore, Agreement, Party
from ledger.escrow import CollateralEscrow, Transfer


class PartyManager:
    def __init__(self, store: LedgerStore, escrow: CollateralEscrow):
        self.store = store
        self.escrow = escrow

    def register(self, creator: str, title: str, description: str,
                 wallets: list, names: list, auto_enforce: bool, now: int) -> int:
        """Create a Pending agreement with its parties. Returns the agreement id."""
        errors = check_party_list(wallets, names)
        if errors:
            raise InvalidPartyList("; ".join(errors))
        errors = check_text_fields(title, description)
        if errors:
            raise InvalidInput("; ".join(errors))

        try:
            creator = normalize_address(creator)
        except ValueError as e:
            raise InvalidInput(f"creator: {e}")

        agreement_id = self.store.insert_agreement(
            title, description, creator, now, auto_enforce,
        )
        for wallet, name in zip(wallets, names):
            self.store.insert_party(agreement_id, normalize_address(wallet), name)
        return agreement_id

    def require_party(self, agreement_id: int, wallet: str) -> Party:
        party = self.store.find_party(agreement_id, _caller(wallet))
        if party is None:
            raise NotAParty(f"{wallet} is not a party to agreement {agreement_id}")
        return party

    def is_party(self, agreement_id: int, wallet: str) -> bool:
        try:
            self.require_party(agreement_id, wallet)
        except NotAParty:
            return False
        return True

    def admit_signature(self, agreement: Agreement, wallet: str, collateral: int,
                        now: int) -> tuple[Party, list[Transfer], bool]:
        """Record a party's signature and stage its collateral.

        Returns (party, transfers, activated). activated is True when this
        was the last missing signature and the agreement is now Active.
        """
        party = self.require_party(agreement.id, wallet)
        if party.has_signed:
            raise AlreadySigned(f"Party {party.index} already signed agreement {agreement.id}")
        if agreement.status != AgreementStatus.PENDING:
            raise InvalidStateTransition(
                f"Agreement {agreement.id} is not Pending; signatures are closed"
            )

        self.store.mark_signed(agreement.id, party.index, now)
        transfers = self.escrow.deposit(agreement.id, party, collateral)

        activated = False
        if self.store.count_unsigned(agreement.id) == 0:
            self.store.set_status(agreement.id, AgreementStatus.ACTIVE, activated_at=now)
            activated = True

        return self.store.get_party(agreement.id, party.index), transfers, activated

    def withdraw(self, agreement: Agreement, party_index: int, wallet: str) -> list[Transfer]:
        """Release the caller's remaining deposit. Caller must own party_index."""
        party = self.store.get_party(agreement.id, party_index)
        if party is None or party.wallet != _caller(wallet):
            raise NotAParty(f"{wallet} is not party {party_index} of agreement {agreement.id}")
        return self.escrow.release(agreement.id, agreement.status, party)


def _caller(wallet: str) -> str:
    try:
        return normalize_address(wallet)
    except ValueError:
        raise NotAParty(f"{wallet!r} is not a valid wallet address")
