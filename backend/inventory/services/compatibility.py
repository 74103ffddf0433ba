"""
Static ABO/Rh compatibility lookups.

Advisory only: allocation always reserves the exact requested type. These
helpers back donor-eligibility queries and substitute suggestions.
"""
from __future__ import annotations

from typing import Dict, FrozenSet, List

from inventory import rules
from inventory.exceptions import ValidationError

# -------- Blood compatibility (donor groups allowed for recipient) --------
COMPATIBLE_DONORS: Dict[str, FrozenSet[str]] = {
    "O-": frozenset({"O-"}),
    "O+": frozenset({"O-", "O+"}),
    "A-": frozenset({"O-", "A-"}),
    "A+": frozenset({"O-", "O+", "A-", "A+"}),
    "B-": frozenset({"O-", "B-"}),
    "B+": frozenset({"O-", "O+", "B-", "B+"}),
    "AB-": frozenset({"O-", "A-", "B-", "AB-"}),
    "AB+": frozenset(rules.BLOOD_TYPES),
}

# Inverse view: recipients each donor group may give to.
COMPATIBLE_RECIPIENTS: Dict[str, FrozenSet[str]] = {
    donor: frozenset(
        recipient
        for recipient, donors in COMPATIBLE_DONORS.items()
        if donor in donors
    )
    for donor in rules.BLOOD_TYPES
}


def normalize_blood_type(value: object) -> str:
    blood_type = str(value or "").strip().upper()
    if blood_type not in COMPATIBLE_DONORS:
        raise ValidationError(
            f"Invalid blood type {value!r}, expected one of: {', '.join(rules.BLOOD_TYPES)}.",
            field="blood_type",
        )
    return blood_type


def compatibility(blood_type: str) -> Dict[str, FrozenSet[str]]:
    normalized = normalize_blood_type(blood_type)
    return {
        "can_receive_from": COMPATIBLE_DONORS[normalized],
        "can_donate_to": COMPATIBLE_RECIPIENTS[normalized],
    }


def can_receive_from(recipient_type: str, donor_type: str) -> bool:
    return normalize_blood_type(donor_type) in COMPATIBLE_DONORS[normalize_blood_type(recipient_type)]


def compatible_donor_types(recipient_type: str) -> List[str]:
    allowed = COMPATIBLE_DONORS[normalize_blood_type(recipient_type)]
    return [blood_type for blood_type in rules.BLOOD_TYPES if blood_type in allowed]


def compatible_recipient_types(donor_type: str) -> List[str]:
    allowed = COMPATIBLE_RECIPIENTS[normalize_blood_type(donor_type)]
    return [blood_type for blood_type in rules.BLOOD_TYPES if blood_type in allowed]


def suggest_substitutes(
    blood_type: str,
    units_needed: int,
    stock_levels: Dict[str, int],
) -> Dict[str, object]:
    """
    Report which compatible types could cover a shortfall of ``blood_type``.

    ``stock_levels`` maps blood type to allocatable units. Nothing is reserved;
    substitution remains a clinical decision.
    """
    normalized = normalize_blood_type(blood_type)
    exact_available = int(stock_levels.get(normalized, 0))
    shortfall = max(int(units_needed) - exact_available, 0)
    candidates = [
        {"blood_type": donor_type, "available_units": int(stock_levels.get(donor_type, 0))}
        for donor_type in compatible_donor_types(normalized)
        if donor_type != normalized and int(stock_levels.get(donor_type, 0)) > 0
    ]
    # O- last so universal donors are held back.
    candidates.sort(key=lambda item: (item["blood_type"] == "O-", -item["available_units"]))
    return {
        "blood_type": normalized,
        "units_needed": int(units_needed),
        "exact_available": exact_available,
        "shortfall": shortfall,
        "substitutes": candidates if shortfall else [],
    }
