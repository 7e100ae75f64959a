"""Agreement storage for the covenant ledger.

SQLite-backed append-only records for agreements, parties, terms, escrow
movements, disputes and the signed journal. Records are addressed by
agreement id, or by (agreement id, index); nothing is ever deleted and no
id is reused.

Every mutating entry point runs inside `transaction()`: writes become
visible together on commit, or not at all. The store lock is held for
the whole transaction and for every read, so readers never observe a
half-applied transition.
"""

import sqlite3
import json
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass

from protocol import (
    AgreementStatus, STATE_TRANSITIONS, DisputeState, MAX_STORED_INT,
    InvalidStateTransition, InvariantViolation, AgreementNotFound,
)
from crypto import (
    generate_ed25519_keypair, ed25519_privkey_to_pubkey, pubkey_to_ledger_id,
    build_chain_entry, chain_entry_hash, hash_chain_init, verify_chain,
)


def _addressable(*keys) -> bool:
    """True if every key is an int SQLite can compare against a stored id."""
    return all(
        isinstance(k, int) and not isinstance(k, bool) and -MAX_STORED_INT <= k <= MAX_STORED_INT
        for k in keys
    )


# --- Records ---

@dataclass
class Agreement:
    id: int
    title: str
    description: str
    creator: str
    created_at: int
    activated_at: int = 0
    status: int = AgreementStatus.PENDING
    total_collateral: int = 0
    auto_enforce: bool = False
    party_count: int = 0
    term_count: int = 0

    def as_tuple(self) -> tuple:
        return (
            self.id, self.title, self.description, self.creator,
            self.created_at, self.activated_at, int(self.status),
            self.total_collateral, self.auto_enforce,
            self.party_count, self.term_count,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "creator": self.creator,
            "created_at": self.created_at,
            "activated_at": self.activated_at,
            "status": int(self.status),
            "total_collateral": str(self.total_collateral),
            "auto_enforce": self.auto_enforce,
            "party_count": self.party_count,
            "term_count": self.term_count,
        }


@dataclass
class Party:
    agreement_id: int
    index: int
    wallet: str
    name: str
    has_signed: bool = False
    deposit_amount: int = 0
    has_withdrawn: bool = False

    def as_tuple(self) -> tuple:
        return (self.wallet, self.name, self.has_signed, self.deposit_amount, self.has_withdrawn)


@dataclass
class Term:
    agreement_id: int
    index: int
    description: str
    responsible_party: int
    deadline: int
    is_resolved: bool = False
    is_breached: bool = False
    penalty_amount: int = 0
    penalty_recipient: str = ""

    def as_tuple(self) -> tuple:
        return (
            self.description, self.responsible_party, self.deadline,
            self.is_resolved, self.is_breached,
            self.penalty_amount, self.penalty_recipient,
        )


@dataclass
class Dispute:
    agreement_id: int
    term_index: int
    raised_by: str
    reason: str
    state: str = DisputeState.OPEN
    raised_at: int = 0
    resolved_by: str = ""
    resolved_at: int = 0

    @property
    def is_open(self) -> bool:
        return self.state == DisputeState.OPEN

    def to_dict(self) -> dict:
        return {
            "agreement_id": self.agreement_id,
            "term_index": self.term_index,
            "raised_by": self.raised_by,
            "reason": self.reason,
            "state": self.state,
            "raised_at": self.raised_at,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at,
        }


@dataclass
class EscrowEntry:
    agreement_id: int
    party_index: int
    kind: str
    amount: int
    counterparty: str = ""
    tx_hash: str = ""
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {
            "agreement_id": self.agreement_id,
            "party_index": self.party_index,
            "kind": self.kind,
            "amount": str(self.amount),
            "counterparty": self.counterparty,
            "tx_hash": self.tx_hash,
            "timestamp": self.timestamp,
        }


class LedgerStore:
    """SQLite-backed agreement ledger with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:", signer_privkey: bytes | None = None,
                 clock=time.time):
        # Autocommit mode: transactions are opened explicitly in transaction()
        self.db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.clock = clock

        if signer_privkey is None:
            signer_privkey, _ = generate_ed25519_keypair()
        self._signer_privkey = signer_privkey
        self.signer_pubkey = ed25519_privkey_to_pubkey(signer_privkey)
        self.ledger_id = pubkey_to_ledger_id(self.signer_pubkey)

        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS agreements (
                id INTEGER PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                creator TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                activated_at INTEGER NOT NULL DEFAULT 0,
                status INTEGER NOT NULL DEFAULT 0,
                total_collateral TEXT NOT NULL DEFAULT '0',
                auto_enforce INTEGER NOT NULL DEFAULT 0,
                party_count INTEGER NOT NULL DEFAULT 0,
                term_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS parties (
                agreement_id INTEGER NOT NULL,
                idx INTEGER NOT NULL,
                wallet TEXT NOT NULL,
                name TEXT NOT NULL,
                has_signed INTEGER NOT NULL DEFAULT 0,
                signed_at INTEGER NOT NULL DEFAULT 0,
                deposit_amount TEXT NOT NULL DEFAULT '0',
                has_withdrawn INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (agreement_id, idx),
                UNIQUE (agreement_id, wallet)
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS terms (
                agreement_id INTEGER NOT NULL,
                idx INTEGER NOT NULL,
                description TEXT NOT NULL,
                responsible_party INTEGER NOT NULL,
                deadline INTEGER NOT NULL,
                is_resolved INTEGER NOT NULL DEFAULT 0,
                is_breached INTEGER NOT NULL DEFAULT 0,
                penalty_amount TEXT NOT NULL DEFAULT '0',
                penalty_recipient TEXT NOT NULL DEFAULT '',
                resolved_at INTEGER NOT NULL DEFAULT 0,
                breached_at INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (agreement_id, idx)
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS escrow_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agreement_id INTEGER NOT NULL,
                party_index INTEGER NOT NULL,
                kind TEXT NOT NULL,
                amount TEXT NOT NULL,
                counterparty TEXT NOT NULL DEFAULT '',
                tx_hash TEXT NOT NULL DEFAULT '',
                timestamp INTEGER NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS disputes (
                agreement_id INTEGER NOT NULL,
                term_index INTEGER NOT NULL,
                raised_by TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                state TEXT NOT NULL DEFAULT 'open',
                raised_at INTEGER NOT NULL,
                resolved_by TEXT NOT NULL DEFAULT '',
                resolved_at INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (agreement_id, term_index)
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS journal (
                seq INTEGER PRIMARY KEY,
                agreement_id INTEGER,
                entry TEXT NOT NULL,
                hash TEXT NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_party_wallet ON parties(wallet)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_creator ON agreements(creator)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_escrow_agreement ON escrow_entries(agreement_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_journal_agreement ON journal(agreement_id)")

    # --- Transactions ---

    def now(self) -> int:
        """Current ledger time in integer seconds."""
        return int(self.clock())

    @contextmanager
    def transaction(self):
        """All-or-nothing unit of work. Nested calls join the outer transaction."""
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self.db.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self.db.execute("ROLLBACK")
                raise
            else:
                self.db.execute("COMMIT")
            finally:
                self._tx_depth = 0

    @contextmanager
    def reading(self):
        """Hold the store lock for a consistent multi-row read."""
        with self._lock:
            yield self

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _require_tx(self):
        if not self._tx_depth:
            raise RuntimeError("ledger writes must run inside LedgerStore.transaction()")

    # --- Agreements ---

    def insert_agreement(self, title: str, description: str, creator: str,
                         created_at: int, auto_enforce: bool) -> int:
        """Append a new Pending agreement. Returns its id."""
        self._require_tx()
        row = self.db.execute("SELECT COUNT(*) AS n FROM agreements").fetchone()
        agreement_id = row["n"]
        self.db.execute(
            "INSERT INTO agreements (id, title, description, creator, created_at, auto_enforce) VALUES (?, ?, ?, ?, ?, ?)",
            (agreement_id, title, description, creator, created_at, int(bool(auto_enforce))),
        )
        return agreement_id

    def get_agreement(self, agreement_id: int) -> Agreement | None:
        if not _addressable(agreement_id):
            return None
        with self._lock:
            row = self.db.execute("SELECT * FROM agreements WHERE id = ?", (agreement_id,)).fetchone()
        if not row:
            return None
        return self._row_to_agreement(row)

    def require_agreement(self, agreement_id: int) -> Agreement:
        agreement = self.get_agreement(agreement_id)
        if agreement is None:
            raise AgreementNotFound(f"Agreement {agreement_id} not found")
        return agreement

    def set_status(self, agreement_id: int, status: AgreementStatus,
                   activated_at: int | None = None) -> None:
        """Move an agreement to a new status with state machine enforcement."""
        self._require_tx()
        row = self.db.execute("SELECT status FROM agreements WHERE id = ?", (agreement_id,)).fetchone()
        if not row:
            raise AgreementNotFound(f"Agreement {agreement_id} not found")

        current = AgreementStatus(row["status"])
        valid_next = STATE_TRANSITIONS.get(current, set())
        if status not in valid_next:
            raise InvalidStateTransition(
                f"Invalid state transition: {current.name} -> {AgreementStatus(status).name}"
            )

        if activated_at is not None:
            cursor = self.db.execute(
                "UPDATE agreements SET status = ?, activated_at = ? WHERE id = ? AND status = ? AND activated_at = 0",
                (int(status), activated_at, agreement_id, int(current)),
            )
        else:
            cursor = self.db.execute(
                "UPDATE agreements SET status = ? WHERE id = ? AND status = ?",
                (int(status), agreement_id, int(current)),
            )
        if cursor.rowcount == 0:
            raise InvalidStateTransition(f"Concurrent modification of agreement {agreement_id}")

    def total_agreements(self) -> int:
        with self._lock:
            row = self.db.execute("SELECT COUNT(*) AS n FROM agreements").fetchone()
        return row["n"]

    def user_agreement_ids(self, wallet: str) -> list[int]:
        """Ids of agreements where wallet is a party or the creator, oldest first."""
        with self._lock:
            rows = self.db.execute(
                "SELECT agreement_id AS id FROM parties WHERE wallet = ? "
                "UNION SELECT id FROM agreements WHERE creator = ? ORDER BY id",
                (wallet, wallet),
            ).fetchall()
        return [r["id"] for r in rows]

    # --- Parties ---

    def insert_party(self, agreement_id: int, wallet: str, name: str) -> int:
        """Append a party and bump the agreement's party_count together."""
        self._require_tx()
        row = self.db.execute("SELECT party_count FROM agreements WHERE id = ?", (agreement_id,)).fetchone()
        if not row:
            raise AgreementNotFound(f"Agreement {agreement_id} not found")
        idx = row["party_count"]
        try:
            self.db.execute(
                "INSERT INTO parties (agreement_id, idx, wallet, name) VALUES (?, ?, ?, ?)",
                (agreement_id, idx, wallet, name),
            )
        except sqlite3.IntegrityError:
            raise InvariantViolation(f"Duplicate party wallet {wallet} in agreement {agreement_id}")
        self.db.execute(
            "UPDATE agreements SET party_count = party_count + 1 WHERE id = ?",
            (agreement_id,),
        )
        return idx

    def get_party(self, agreement_id: int, index: int) -> Party | None:
        if not _addressable(agreement_id, index):
            return None
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM parties WHERE agreement_id = ? AND idx = ?",
                (agreement_id, index),
            ).fetchone()
        return self._row_to_party(row) if row else None

    def find_party(self, agreement_id: int, wallet: str) -> Party | None:
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM parties WHERE agreement_id = ? AND wallet = ?",
                (agreement_id, wallet),
            ).fetchone()
        return self._row_to_party(row) if row else None

    def list_parties(self, agreement_id: int) -> list[Party]:
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM parties WHERE agreement_id = ? ORDER BY idx",
                (agreement_id,),
            ).fetchall()
        return [self._row_to_party(r) for r in rows]

    def mark_signed(self, agreement_id: int, index: int, signed_at: int) -> None:
        self._require_tx()
        cursor = self.db.execute(
            "UPDATE parties SET has_signed = 1, signed_at = ? WHERE agreement_id = ? AND idx = ? AND has_signed = 0",
            (signed_at, agreement_id, index),
        )
        if cursor.rowcount == 0:
            raise InvariantViolation(f"Party {index} of agreement {agreement_id} cannot be marked signed")

    def count_unsigned(self, agreement_id: int) -> int:
        with self._lock:
            row = self.db.execute(
                "SELECT COUNT(*) AS n FROM parties WHERE agreement_id = ? AND has_signed = 0",
                (agreement_id,),
            ).fetchone()
        return row["n"]

    # --- Balances (escrow only) ---

    def adjust_balance(self, agreement_id: int, index: int, delta: int) -> int:
        """Shift a party's deposit and the agreement's total by delta together.

        Returns the party's new deposit. Only the escrow calls this.
        """
        self._require_tx()
        party = self.db.execute(
            "SELECT deposit_amount FROM parties WHERE agreement_id = ? AND idx = ?",
            (agreement_id, index),
        ).fetchone()
        agreement = self.db.execute(
            "SELECT total_collateral FROM agreements WHERE id = ?",
            (agreement_id,),
        ).fetchone()
        if not party or not agreement:
            raise InvariantViolation(f"No balance for party {index} of agreement {agreement_id}")

        new_deposit = int(party["deposit_amount"]) + delta
        new_total = int(agreement["total_collateral"]) + delta
        if new_deposit < 0 or new_total < 0:
            raise InvariantViolation(f"Balance of party {index} of agreement {agreement_id} would go negative")

        self.db.execute(
            "UPDATE parties SET deposit_amount = ? WHERE agreement_id = ? AND idx = ?",
            (str(new_deposit), agreement_id, index),
        )
        self.db.execute(
            "UPDATE agreements SET total_collateral = ? WHERE id = ?",
            (str(new_total), agreement_id),
        )
        return new_deposit

    def mark_withdrawn(self, agreement_id: int, index: int) -> None:
        self._require_tx()
        cursor = self.db.execute(
            "UPDATE parties SET has_withdrawn = 1 WHERE agreement_id = ? AND idx = ? AND has_withdrawn = 0",
            (agreement_id, index),
        )
        if cursor.rowcount == 0:
            raise InvariantViolation(f"Party {index} of agreement {agreement_id} already withdrawn")

    def insert_escrow_entry(self, entry: EscrowEntry) -> None:
        self._require_tx()
        self.db.execute(
            "INSERT INTO escrow_entries (agreement_id, party_index, kind, amount, counterparty, tx_hash, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (entry.agreement_id, entry.party_index, entry.kind, str(entry.amount),
             entry.counterparty, entry.tx_hash, entry.timestamp),
        )

    def list_escrow_entries(self, agreement_id: int) -> list[EscrowEntry]:
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM escrow_entries WHERE agreement_id = ? ORDER BY id",
                (agreement_id,),
            ).fetchall()
        return [
            EscrowEntry(
                agreement_id=r["agreement_id"], party_index=r["party_index"],
                kind=r["kind"], amount=int(r["amount"]), counterparty=r["counterparty"],
                tx_hash=r["tx_hash"], timestamp=r["timestamp"],
            )
            for r in rows
        ]

    # --- Terms ---

    def insert_term(self, agreement_id: int, description: str, responsible_party: int,
                    deadline: int, penalty_amount: int, penalty_recipient: str) -> int:
        """Append a term and bump the agreement's term_count together."""
        self._require_tx()
        row = self.db.execute("SELECT term_count FROM agreements WHERE id = ?", (agreement_id,)).fetchone()
        if not row:
            raise AgreementNotFound(f"Agreement {agreement_id} not found")
        idx = row["term_count"]
        self.db.execute(
            "INSERT INTO terms (agreement_id, idx, description, responsible_party, deadline, penalty_amount, penalty_recipient) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (agreement_id, idx, description, responsible_party, deadline, str(penalty_amount), penalty_recipient),
        )
        self.db.execute(
            "UPDATE agreements SET term_count = term_count + 1 WHERE id = ?",
            (agreement_id,),
        )
        return idx

    def get_term(self, agreement_id: int, index: int) -> Term | None:
        if not _addressable(agreement_id, index):
            return None
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM terms WHERE agreement_id = ? AND idx = ?",
                (agreement_id, index),
            ).fetchone()
        return self._row_to_term(row) if row else None

    def list_terms(self, agreement_id: int) -> list[Term]:
        with self._lock:
            rows = self.db.execute(
                "SELECT * FROM terms WHERE agreement_id = ? ORDER BY idx",
                (agreement_id,),
            ).fetchall()
        return [self._row_to_term(r) for r in rows]

    def overdue_terms(self, now: int) -> list[tuple[int, int]]:
        """(agreement_id, term_index) of unflagged, unresolved terms past deadline on Active agreements."""
        with self._lock:
            rows = self.db.execute(
                "SELECT t.agreement_id, t.idx FROM terms t JOIN agreements a ON a.id = t.agreement_id "
                "WHERE a.status = ? AND t.is_resolved = 0 AND t.is_breached = 0 AND t.deadline < ? "
                "ORDER BY t.agreement_id, t.idx",
                (int(AgreementStatus.ACTIVE), now),
            ).fetchall()
        return [(r["agreement_id"], r["idx"]) for r in rows]

    def mark_term_resolved(self, agreement_id: int, index: int, resolved_at: int) -> None:
        self._require_tx()
        cursor = self.db.execute(
            "UPDATE terms SET is_resolved = 1, resolved_at = ? WHERE agreement_id = ? AND idx = ? AND is_resolved = 0",
            (resolved_at, agreement_id, index),
        )
        if cursor.rowcount == 0:
            raise InvariantViolation(f"Term {index} of agreement {agreement_id} already resolved")

    def mark_term_breached(self, agreement_id: int, index: int, breached_at: int) -> None:
        """Set the breach flag. It can be set exactly once."""
        self._require_tx()
        cursor = self.db.execute(
            "UPDATE terms SET is_breached = 1, breached_at = ? WHERE agreement_id = ? AND idx = ? AND is_breached = 0 AND is_resolved = 0",
            (breached_at, agreement_id, index),
        )
        if cursor.rowcount == 0:
            raise InvariantViolation(f"Term {index} of agreement {agreement_id} cannot be marked breached")

    # --- Disputes ---

    def insert_dispute(self, dispute: Dispute) -> None:
        self._require_tx()
        try:
            self.db.execute(
                "INSERT INTO disputes (agreement_id, term_index, raised_by, reason, state, raised_at) VALUES (?, ?, ?, ?, ?, ?)",
                (dispute.agreement_id, dispute.term_index, dispute.raised_by,
                 dispute.reason, dispute.state, dispute.raised_at),
            )
        except sqlite3.IntegrityError:
            raise InvalidStateTransition(
                f"A dispute was already raised for term {dispute.term_index} of agreement {dispute.agreement_id}"
            )

    def get_dispute(self, agreement_id: int, term_index: int) -> Dispute | None:
        if not _addressable(agreement_id, term_index):
            return None
        with self._lock:
            row = self.db.execute(
                "SELECT * FROM disputes WHERE agreement_id = ? AND term_index = ?",
                (agreement_id, term_index),
            ).fetchone()
        if not row:
            return None
        return Dispute(
            agreement_id=row["agreement_id"], term_index=row["term_index"],
            raised_by=row["raised_by"], reason=row["reason"], state=row["state"],
            raised_at=row["raised_at"], resolved_by=row["resolved_by"],
            resolved_at=row["resolved_at"],
        )

    def close_dispute(self, agreement_id: int, term_index: int, state: str,
                      resolved_by: str, resolved_at: int) -> None:
        self._require_tx()
        cursor = self.db.execute(
            "UPDATE disputes SET state = ?, resolved_by = ?, resolved_at = ? WHERE agreement_id = ? AND term_index = ? AND state = ?",
            (state, resolved_by, resolved_at, agreement_id, term_index, DisputeState.OPEN),
        )
        if cursor.rowcount == 0:
            raise InvalidStateTransition(f"No open dispute on term {term_index} of agreement {agreement_id}")

    # --- Journal ---

    def append_journal(self, entry_type: str, agreement_id: int | None, data: dict,
                       timestamp: int) -> dict:
        """Append a ledger-signed chain entry recording a committed transition."""
        self._require_tx()
        row = self.db.execute("SELECT seq, hash FROM journal ORDER BY seq DESC LIMIT 1").fetchone()
        seq = row["seq"] + 1 if row else 0
        prev_hash = row["hash"] if row else hash_chain_init()

        entry = build_chain_entry(
            entry_type=entry_type,
            data={"agreement_id": agreement_id, **data},
            seq=seq,
            author=self.ledger_id,
            prev_hash=prev_hash,
            privkey_bytes=self._signer_privkey,
            timestamp=timestamp,
        )
        self.db.execute(
            "INSERT INTO journal (seq, agreement_id, entry, hash) VALUES (?, ?, ?, ?)",
            (seq, agreement_id, json.dumps(entry), chain_entry_hash(entry)),
        )
        return entry

    def list_journal(self, agreement_id: int | None = None) -> list[dict]:
        with self._lock:
            if agreement_id is None:
                rows = self.db.execute("SELECT entry FROM journal ORDER BY seq").fetchall()
            elif not _addressable(agreement_id):
                rows = []
            else:
                rows = self.db.execute(
                    "SELECT entry FROM journal WHERE agreement_id = ? ORDER BY seq",
                    (agreement_id,),
                ).fetchall()
        return [json.loads(r["entry"]) for r in rows]

    def verify_journal(self) -> tuple[bool, str]:
        """Check signatures, seq ordering and hash linkage of the whole journal."""
        return verify_chain(self.list_journal())

    # --- Invariants ---

    def check_invariants(self, agreement_id: int) -> None:
        """Raise InvariantViolation if derived counts or balances disagree with records."""
        with self._lock:
            agreement = self.db.execute(
                "SELECT party_count, term_count, total_collateral FROM agreements WHERE id = ?",
                (agreement_id,),
            ).fetchone()
            if not agreement:
                raise AgreementNotFound(f"Agreement {agreement_id} not found")
            parties = self.db.execute(
                "SELECT deposit_amount FROM parties WHERE agreement_id = ?",
                (agreement_id,),
            ).fetchall()
            n_terms = self.db.execute(
                "SELECT COUNT(*) AS n FROM terms WHERE agreement_id = ?",
                (agreement_id,),
            ).fetchone()["n"]

        if agreement["party_count"] != len(parties):
            raise InvariantViolation(
                f"Agreement {agreement_id}: party_count {agreement['party_count']} != {len(parties)} parties"
            )
        if agreement["term_count"] != n_terms:
            raise InvariantViolation(
                f"Agreement {agreement_id}: term_count {agreement['term_count']} != {n_terms} terms"
            )
        deposits = [int(p["deposit_amount"]) for p in parties]
        if any(d < 0 for d in deposits):
            raise InvariantViolation(f"Agreement {agreement_id}: negative deposit")
        total = int(agreement["total_collateral"])
        if sum(deposits) != total:
            raise InvariantViolation(
                f"Agreement {agreement_id}: deposits sum {sum(deposits)} != total_collateral {total}"
            )

    # --- Row mapping ---

    def _row_to_agreement(self, row) -> Agreement:
        return Agreement(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            creator=row["creator"],
            created_at=row["created_at"],
            activated_at=row["activated_at"],
            status=AgreementStatus(row["status"]),
            total_collateral=int(row["total_collateral"]),
            auto_enforce=bool(row["auto_enforce"]),
            party_count=row["party_count"],
            term_count=row["term_count"],
        )

    def _row_to_party(self, row) -> Party:
        return Party(
            agreement_id=row["agreement_id"],
            index=row["idx"],
            wallet=row["wallet"],
            name=row["name"],
            has_signed=bool(row["has_signed"]),
            deposit_amount=int(row["deposit_amount"]),
            has_withdrawn=bool(row["has_withdrawn"]),
        )

    def _row_to_term(self, row) -> Term:
        return Term(
            agreement_id=row["agreement_id"],
            index=row["idx"],
            description=row["description"],
            responsible_party=row["responsible_party"],
            deadline=row["deadline"],
            is_resolved=bool(row["is_resolved"]),
            is_breached=bool(row["is_breached"]),
            penalty_amount=int(row["penalty_amount"]),
            penalty_recipient=row["penalty_recipient"],
        )

    def close(self):
        self.db.close()
