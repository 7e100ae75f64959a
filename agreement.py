"""Agreement request builder, validator and tuple decoder.

Builds and validates the payloads callers send to the ledger, converts
between display units and integer base units, and turns the fixed read
tuples returned by the ledger back into labelled dicts.
"""

from decimal import Decimal, InvalidOperation

from protocol import (
    BASE_UNITS_PER_UNIT, MIN_PARTIES, MAX_PARTIES, MAX_TITLE_LENGTH,
    MAX_DESCRIPTION_LENGTH, MAX_NAME_LENGTH, ZERO_ADDRESS, status_label,
)
from crypto import normalize_address


# --- Units ---

def to_base_units(amount) -> int:
    """Convert a display amount ("1.5", Decimal, int) to integer base units."""
    try:
        value = Decimal(str(amount)) * BASE_UNITS_PER_UNIT
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")
    if value < 0:
        raise ValueError(f"Amount cannot be negative: {amount!r}")
    if value != value.to_integral_value():
        raise ValueError(f"Amount has more precision than one base unit: {amount!r}")
    return int(value)


def from_base_units(raw) -> Decimal:
    """Convert integer base units to a display Decimal."""
    return Decimal(str(raw)) / BASE_UNITS_PER_UNIT


def format_units(raw, places: int = 4) -> str:
    """Fixed-precision display string, e.g. 1500000000000000000 -> '1.5000'."""
    return f"{from_base_units(raw):.{places}f}"


def format_address(address: str) -> str:
    """Short display form: 0x1234...abcd"""
    if not address:
        return ""
    return f"{address[:6]}...{address[-4:]}"


# --- Validation ---

def check_party_list(wallets, names) -> list[str]:
    """Return every problem with a party list. Empty list means valid.

    Rules: at least MIN_PARTIES wallets, one name per wallet, every wallet
    a well-formed non-zero address, no wallet listed twice.
    """
    errors = []
    if not isinstance(wallets, list) or not isinstance(names, list):
        return ["party wallets and names must be lists"]
    if len(wallets) != len(names):
        errors.append(f"{len(wallets)} wallets but {len(names)} names")
    if len(wallets) < MIN_PARTIES:
        errors.append(f"at least {MIN_PARTIES} parties required, got {len(wallets)}")
    if len(wallets) > MAX_PARTIES:
        errors.append(f"at most {MAX_PARTIES} parties allowed, got {len(wallets)}")

    seen = set()
    for i, wallet in enumerate(wallets):
        try:
            addr = normalize_address(wallet)
        except ValueError as e:
            errors.append(f"party {i}: {e}")
            continue
        if addr == ZERO_ADDRESS:
            errors.append(f"party {i}: zero address")
        if addr in seen:
            errors.append(f"party {i}: duplicate wallet {addr}")
        seen.add(addr)

    for i, name in enumerate(names):
        if not isinstance(name, str):
            errors.append(f"party {i}: name must be a string")
        elif len(name) > MAX_NAME_LENGTH:
            errors.append(f"party {i}: name longer than {MAX_NAME_LENGTH} characters")

    return errors


def check_text_fields(title, description) -> list[str]:
    errors = []
    if not isinstance(title, str) or not title.strip():
        errors.append("title is required")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(f"title longer than {MAX_TITLE_LENGTH} characters")
    if not isinstance(description, str):
        errors.append("description must be a string")
    elif len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"description longer than {MAX_DESCRIPTION_LENGTH} characters")
    return errors


# --- Builders ---

def build_agreement_request(title, description, parties, auto_enforce=False):
    """Build a createAgreement payload.

    Args:
        title: Agreement title.
        description: Free text, stored as-is.
        parties: List of (wallet, name) pairs or {"wallet", "name"} dicts.
        auto_enforce: Run the breach path as soon as an evaluation finds a breach.

    Returns:
        Request dict.
    """
    wallets, names = [], []
    for p in parties:
        if isinstance(p, dict):
            wallets.append(p.get("wallet", ""))
            names.append(p.get("name", ""))
        else:
            wallet, name = p
            wallets.append(wallet)
            names.append(name)

    return {
        "title": title,
        "description": description,
        "party_wallets": wallets,
        "party_names": names,
        "auto_enforce": bool(auto_enforce),
    }


def build_term_request(description, responsible_party, deadline, penalty=0, penalty_recipient=""):
    """Build an addTerm payload. penalty accepts display units ("0.1") or base-unit ints.

    Amounts go over JSON as decimal strings of base units.
    """
    if isinstance(penalty, int) and not isinstance(penalty, bool):
        penalty_amount = penalty
    else:
        penalty_amount = to_base_units(penalty)
    return {
        "description": description,
        "responsible_party": responsible_party,
        "deadline": int(deadline),
        "penalty_amount": str(penalty_amount),
        "penalty_recipient": penalty_recipient,
    }


def validate_agreement_request(request):
    """Validate a createAgreement payload.

    Returns:
        (True, []) if valid, (False, [errors]) otherwise.
    """
    if not isinstance(request, dict):
        return False, ["request is not a dict"]

    errors = check_text_fields(request.get("title"), request.get("description", ""))
    errors.extend(check_party_list(request.get("party_wallets"), request.get("party_names")))
    if not isinstance(request.get("auto_enforce", False), bool):
        errors.append("auto_enforce must be a bool")

    return (len(errors) == 0, errors)


# --- Tuple decoding ---

AGREEMENT_FIELDS = (
    "id", "title", "description", "creator", "created_at", "activated_at",
    "status", "total_collateral", "auto_enforce", "party_count", "term_count",
)
PARTY_FIELDS = ("wallet", "name", "has_signed", "deposit_amount", "has_withdrawn")
TERM_FIELDS = (
    "description", "responsible_party", "deadline", "is_resolved",
    "is_breached", "penalty_amount", "penalty_recipient",
)


def decode_agreement(values) -> dict:
    """Label an agreement tuple. Unknown status integers decode to 'Unknown'."""
    d = dict(zip(AGREEMENT_FIELDS, values))
    d["total_collateral"] = int(d["total_collateral"])
    d["status_label"] = status_label(d["status"])
    return d


def decode_party(values) -> dict:
    d = dict(zip(PARTY_FIELDS, values))
    d["deposit_amount"] = int(d["deposit_amount"])
    return d


def decode_term(values) -> dict:
    d = dict(zip(TERM_FIELDS, values))
    d["penalty_amount"] = int(d["penalty_amount"])
    return d
