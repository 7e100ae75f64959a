"""Payment backends for the covenant ledger.

The escrow never moves value itself: it asks a PaymentBackend to collect a
signer's collateral into the agreement's escrow account, or to send value
out of it. Amounts are integer base units.

StubBackend always succeeds (tests, dry runs). SimBackend keeps real
balances in SQLite and refuses overdrafts, so failed transfers can be
exercised end to end.
"""

import hashlib
import sqlite3
import threading
import time
from abc import ABC, abstractmethod

from protocol import ADDRESS_PREFIX, ADDRESS_HEX_LENGTH, InsufficientValue


def escrow_address(seed: bytes, agreement_id: int) -> str:
    """Deterministic escrow account address for an agreement."""
    digest = hashlib.sha3_256(seed + str(agreement_id).encode()).hexdigest()
    return ADDRESS_PREFIX + digest[-ADDRESS_HEX_LENGTH:]


class PaymentBackend(ABC):
    """Abstract payment backend. The ledger injects one of these into the escrow."""

    @abstractmethod
    def create_escrow_account(self, agreement_id: int) -> dict:
        """Create/derive the escrow account for an agreement.
        Returns {"account": "0x..."}
        """
        ...

    @abstractmethod
    def collect(self, agreement_id: int, from_wallet: str, amount: int) -> str:
        """Move amount from a signer's wallet into the escrow account.
        Returns transaction hash. Raises InsufficientValue if the wallet cannot cover it.
        """
        ...

    @abstractmethod
    def send(self, agreement_id: int, to_wallet: str, amount: int) -> str:
        """Move amount out of the escrow account.
        Returns transaction hash. Raises InsufficientValue if escrow cannot cover it.
        """
        ...

    @abstractmethod
    def get_balance(self, agreement_id: int) -> int:
        """Escrow account balance in base units."""
        ...


class StubBackend(PaymentBackend):
    """No-op backend for testing. All operations succeed immediately."""

    def __init__(self):
        self.accounts: dict[int, dict] = {}
        self.collects: list[dict] = []  # log of deposits for test assertions
        self.sends: list[dict] = []  # log of sends for test assertions

    def create_escrow_account(self, agreement_id: int) -> dict:
        account = escrow_address(b"stub", agreement_id)
        self.accounts.setdefault(agreement_id, {"account": account, "balance": 0})
        return {"account": account}

    def collect(self, agreement_id: int, from_wallet: str, amount: int) -> str:
        self.create_escrow_account(agreement_id)
        self.accounts[agreement_id]["balance"] += amount
        self.collects.append({
            "agreement_id": agreement_id,
            "from": from_wallet,
            "amount": amount,
        })
        return f"stub_collect_{len(self.collects)}"

    def send(self, agreement_id: int, to_wallet: str, amount: int) -> str:
        self.create_escrow_account(agreement_id)
        self.accounts[agreement_id]["balance"] -= amount
        self.sends.append({
            "agreement_id": agreement_id,
            "to": to_wallet,
            "amount": amount,
        })
        return f"stub_send_{len(self.sends)}"

    def get_balance(self, agreement_id: int) -> int:
        return self.accounts.get(agreement_id, {}).get("balance", 0)


class SimBackend(PaymentBackend):
    """Simulated payment backend for development/integration testing.

    Tracks real balances in SQLite. Enforces:
    - No zero-amount transfers
    - Insufficient balance errors (InsufficientValue)
    - Full transaction log with deterministic hashes

    Usage:
        sim = SimBackend()
        sim.fund("0x...", 10**18)          # give a wallet 1 unit
        sim.collect(0, "0x...", 10**18)    # signer deposits into agreement 0
        sim.send(0, "0x...", 10**18)       # escrow pays out
    """

    def __init__(self, seed: bytes = b"covenant-sim", db_path: str = ":memory:"):
        self._seed = seed
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._tx_counter = 0
        self._init_db()

    def _init_db(self):
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_accounts (
                address TEXT PRIMARY KEY,
                balance TEXT NOT NULL DEFAULT '0'
            )
        """)
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS sim_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                hash TEXT NOT NULL UNIQUE,
                from_account TEXT NOT NULL,
                to_account TEXT NOT NULL,
                amount TEXT NOT NULL,
                agreement_id INTEGER,
                tx_type TEXT NOT NULL,
                timestamp REAL NOT NULL
            )
        """)
        self._db.commit()

    def _get_balance(self, address: str) -> int:
        row = self._db.execute(
            "SELECT balance FROM sim_accounts WHERE address = ?",
            (address,),
        ).fetchone()
        return int(row["balance"]) if row else 0

    def _set_balance(self, address: str, amount: int):
        self._db.execute(
            "INSERT INTO sim_accounts (address, balance) VALUES (?, ?) "
            "ON CONFLICT(address) DO UPDATE SET balance = ?",
            (address, str(amount), str(amount)),
        )

    def _record_tx(self, from_acc: str, to_acc: str, amount: int,
                   agreement_id: int | None, tx_type: str) -> str:
        self._tx_counter += 1
        tx_hash = "0x" + hashlib.sha256(
            f"{self._tx_counter}:{from_acc}:{to_acc}:{amount}".encode()
        ).hexdigest()
        self._db.execute(
            "INSERT INTO sim_transactions (hash, from_account, to_account, "
            "amount, agreement_id, tx_type, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (tx_hash, from_acc, to_acc, str(amount), agreement_id, tx_type, time.time()),
        )
        return tx_hash

    def _transfer(self, from_acc: str, to_acc: str, amount: int,
                  agreement_id: int, tx_type: str) -> str:
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")
        with self._lock:
            balance = self._get_balance(from_acc)
            if balance < amount:
                raise InsufficientValue(
                    f"Insufficient balance in {from_acc}: have {balance}, need {amount}"
                )
            self._set_balance(from_acc, balance - amount)
            self._set_balance(to_acc, self._get_balance(to_acc) + amount)
            tx_hash = self._record_tx(from_acc, to_acc, amount, agreement_id, tx_type)
            self._db.commit()
            return tx_hash

    # --- PaymentBackend interface ---

    def create_escrow_account(self, agreement_id: int) -> dict:
        return {"account": escrow_address(self._seed, agreement_id)}

    def collect(self, agreement_id: int, from_wallet: str, amount: int) -> str:
        account = escrow_address(self._seed, agreement_id)
        return self._transfer(from_wallet, account, amount, agreement_id, "collect")

    def send(self, agreement_id: int, to_wallet: str, amount: int) -> str:
        account = escrow_address(self._seed, agreement_id)
        return self._transfer(account, to_wallet, amount, agreement_id, "send")

    def get_balance(self, agreement_id: int) -> int:
        with self._lock:
            return self._get_balance(escrow_address(self._seed, agreement_id))

    # --- SimBackend-only methods (for test setup) ---

    def fund(self, address: str, amount: int):
        """Credit a wallet with funds (simulates an external deposit)."""
        with self._lock:
            self._set_balance(address, self._get_balance(address) + amount)
            self._record_tx("faucet", address, amount, None, "fund")
            self._db.commit()

    def drain(self, agreement_id: int, amount: int):
        """Remove funds from an escrow account (simulates an outside failure)."""
        with self._lock:
            account = escrow_address(self._seed, agreement_id)
            self._set_balance(account, max(self._get_balance(account) - amount, 0))
            self._db.commit()

    def get_account_balance(self, address: str) -> int:
        """Balance of any address (not just escrow)."""
        with self._lock:
            return self._get_balance(address)

    def get_transactions(self, agreement_id: int | None = None) -> list[dict]:
        """Transaction log, optionally filtered by agreement."""
        with self._lock:
            if agreement_id is not None:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions WHERE agreement_id = ? ORDER BY id",
                    (agreement_id,),
                ).fetchall()
            else:
                rows = self._db.execute(
                    "SELECT * FROM sim_transactions ORDER BY id"
                ).fetchall()
            return [dict(r) for r in rows]

    def close(self):
        self._db.close()
