"""Shared constants and interfaces for the covenant ledger.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import IntEnum

# --- Protocol Constants ---

PROTOCOL_VERSION = 1

BASE_UNITS_PER_UNIT = 10**18
CURRENCY = "ETH"

ADDRESS_PREFIX = "0x"
ADDRESS_HEX_LENGTH = 40
ZERO_ADDRESS = ADDRESS_PREFIX + "0" * ADDRESS_HEX_LENGTH

MIN_PARTIES = 2
MAX_PARTIES = 64
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_NAME_LENGTH = 100

# Largest value a SQLite INTEGER column holds (ids, indexes, timestamps)
MAX_STORED_INT = 2**63 - 1

# Ledger identity prefix for journal authors: cov_<64 hex pubkey>
LEDGER_ID_PREFIX = "cov_"

# Server defaults (overridable via env in run_server.py)
DEFAULT_DB_PATH = os.environ.get("COVENANT_DB", os.path.expanduser("~/.covenant/covenant.db"))
DEFAULT_PORT = 8000


# --- State Machine ---

class AgreementStatus(IntEnum):
    PENDING = 0
    ACTIVE = 1
    COMPLETED = 2
    BREACHED = 3
    CANCELLED = 4


STATUS_LABELS = {
    AgreementStatus.PENDING: "Pending",
    AgreementStatus.ACTIVE: "Active",
    AgreementStatus.COMPLETED: "Completed",
    AgreementStatus.BREACHED: "Breached",
    AgreementStatus.CANCELLED: "Cancelled",
}

UNKNOWN_STATUS_LABEL = "Unknown"

# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    AgreementStatus.PENDING: {AgreementStatus.ACTIVE, AgreementStatus.CANCELLED},
    AgreementStatus.ACTIVE: {AgreementStatus.COMPLETED, AgreementStatus.BREACHED},
    AgreementStatus.COMPLETED: set(),
    AgreementStatus.BREACHED: set(),
    AgreementStatus.CANCELLED: set(),
}

# Terminal states in which deposits may be withdrawn
WITHDRAWABLE_STATES = {
    AgreementStatus.COMPLETED,
    AgreementStatus.CANCELLED,
    AgreementStatus.BREACHED,
}

# States in which terms may be added
TERM_EDITABLE_STATES = {AgreementStatus.PENDING, AgreementStatus.ACTIVE}


def status_label(value) -> str:
    """Human label for a status integer. Out-of-range values are Unknown."""
    try:
        return STATUS_LABELS[AgreementStatus(int(value))]
    except (ValueError, TypeError):
        return UNKNOWN_STATUS_LABEL


# --- Escrow movement kinds ---

class EscrowKind:
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PENALTY = "penalty"
    FORFEIT = "forfeit"


# --- Dispute states ---

class DisputeState:
    OPEN = "open"
    UPHELD = "upheld"
    REJECTED = "rejected"


# --- Journal entry types ---

JOURNAL_ENTRY_TYPES = {
    "agreement_created", "agreement_signed", "agreement_cancelled",
    "agreement_completed", "agreement_breached",
    "term_added", "term_resolved", "term_breached",
    "collateral_withdrawn", "dispute_raised", "dispute_resolved",
}


# --- Error taxonomy ---

class CovenantError(Exception):
    """Base for every failure raised by a ledger entry point.

    `code` is stable and exposed over the API; `http_status` is what the
    HTTP layer answers with.
    """

    code = "CovenantError"
    http_status = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidPartyList(CovenantError):
    code = "InvalidPartyList"
    http_status = 400


class InvalidInput(CovenantError):
    code = "InvalidInput"
    http_status = 400


class AgreementNotFound(CovenantError):
    code = "AgreementNotFound"
    http_status = 404


class TermNotFound(CovenantError):
    code = "TermNotFound"
    http_status = 404


class NotAParty(CovenantError):
    code = "NotAParty"
    http_status = 403


class Unauthorized(CovenantError):
    code = "Unauthorized"
    http_status = 403


class AlreadySigned(CovenantError):
    code = "AlreadySigned"
    http_status = 409


class AlreadyResolved(CovenantError):
    code = "AlreadyResolved"
    http_status = 409


class DeadlinePassed(CovenantError):
    code = "DeadlinePassed"
    http_status = 409


class InvalidStateTransition(CovenantError):
    code = "InvalidStateTransition"
    http_status = 409


class NotWithdrawable(CovenantError):
    code = "NotWithdrawable"
    http_status = 409


class InsufficientValue(CovenantError):
    code = "InsufficientValue"
    http_status = 402


class InvariantViolation(CovenantError):
    code = "InvariantViolation"
    http_status = 500


ERRORS_BY_CODE = {
    cls.code: cls for cls in (
        InvalidPartyList, InvalidInput, AgreementNotFound, TermNotFound,
        NotAParty, Unauthorized, AlreadySigned, AlreadyResolved,
        DeadlinePassed, InvalidStateTransition, NotWithdrawable,
        InsufficientValue, InvariantViolation,
    )
}
