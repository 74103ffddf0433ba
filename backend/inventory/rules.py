from datetime import timedelta
from typing import Dict, FrozenSet

from django.conf import settings

BLOOD_TYPES = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")

TEST_MARKERS = ("hiv", "hepatitis_b", "hepatitis_c", "syphilis")

# Shelf life per blood component, in days.
SHELF_LIFE_DAYS: Dict[str, int] = {
    "whole_blood": 35,
    "red_cells": 42,
    "platelets": 5,
    "plasma": 365,
    "cryoprecipitate": 365,
}
DEFAULT_COMPONENT = "whole_blood"

# Minimum available units per blood type before a low-stock alert fires.
LOW_STOCK_THRESHOLDS: Dict[str, int] = {
    "O-": 10,
    "O+": 15,
    "A-": 8,
    "A+": 12,
    "B-": 6,
    "B+": 10,
    "AB-": 4,
    "AB+": 6,
}
DEFAULT_LOW_STOCK_THRESHOLD = 5

UNIT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "available": frozenset({"reserved", "expired"}),
    "reserved": frozenset({"available", "used"}),
    "used": frozenset(),
    "expired": frozenset(),
}

# Unit statuses that block hard deletion of the record.
UNIT_COMMITTED_STATUSES = frozenset({"reserved", "used"})

REQUEST_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"approved", "rejected", "cancelled"}),
    "approved": frozenset({"fulfilled", "partially_fulfilled", "cancelled"}),
    "partially_fulfilled": frozenset({"fulfilled", "cancelled"}),
    "fulfilled": frozenset(),
    "rejected": frozenset(),
    "cancelled": frozenset(),
}

REQUEST_TERMINAL_STATUSES = frozenset(
    status for status, targets in REQUEST_TRANSITIONS.items() if not targets
)

# action -> statuses the action may start from
REQUEST_ACTIONS: Dict[str, FrozenSet[str]] = {
    "approve": frozenset({"pending"}),
    "reject": frozenset({"pending"}),
    "fulfill": frozenset({"approved", "partially_fulfilled"}),
    "cancel": frozenset({"pending", "approved", "partially_fulfilled"}),
}

# Requests in these statuses cannot be hard-deleted.
REQUEST_UNDELETABLE_STATUSES = frozenset({"fulfilled", "partially_fulfilled"})

URGENCY_RANK: Dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}
URGENT_LEVELS = frozenset({"high", "critical"})
URGENT_OPEN_STATUSES = frozenset({"pending", "approved"})
URGENT_LIST_LIMIT = 20

SYSTEM_ACTOR = "system"


def shelf_life(component: str) -> timedelta:
    if component not in SHELF_LIFE_DAYS:
        raise ValueError(f"invalid component, expected one of: {list(SHELF_LIFE_DAYS)}")
    return timedelta(days=SHELF_LIFE_DAYS[component])


def low_stock_threshold(blood_type: str) -> int:
    overrides = getattr(settings, "BLOODBANK_LOW_STOCK_THRESHOLDS", None) or {}
    if blood_type in overrides:
        return int(overrides[blood_type])
    return LOW_STOCK_THRESHOLDS.get(blood_type, DEFAULT_LOW_STOCK_THRESHOLD)


def auto_approve_urgency() -> str:
    return str(getattr(settings, "BLOODBANK_AUTO_APPROVE_URGENCY", "low") or "low").lower()


def expiry_warning_days() -> int:
    return int(getattr(settings, "BLOODBANK_EXPIRY_WARNING_DAYS", 7))


def expiry_urgent_days() -> int:
    return int(getattr(settings, "BLOODBANK_EXPIRY_URGENT_DAYS", 3))


def page_bounds() -> tuple[int, int]:
    default = int(getattr(settings, "BLOODBANK_PAGE_SIZE", 10))
    maximum = int(getattr(settings, "BLOODBANK_MAX_PAGE_SIZE", 100))
    return default, maximum
