"""
FEFO allocation of blood lots against a request.

Selection is a plain read; correctness rests on the per-unit conditional
write in ``UnitStore.transition``. A lot lost to a concurrent writer is
skipped and the next eligible lot is tried. A final shortfall releases every
lot reserved in the attempt before InsufficientStockError is raised.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from django.utils import timezone

from inventory.exceptions import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from inventory.models import BloodRequest, UnitStatus
from inventory.services.unit_store import UnitStore

logger = logging.getLogger(__name__)

AllocationEntry = Dict[str, Any]


class AllocationEngine:
    def __init__(self, store: UnitStore):
        self.store = store

    def allocate(
        self,
        request: BloodRequest,
        units_needed: int,
        actor: str,
        accept_partial: bool = False,
        now: Optional[datetime] = None,
    ) -> List[AllocationEntry]:
        """
        Reserve lots of exactly ``request.blood_type`` until ``units_needed``
        is covered, earliest expiry first.

        Returns the new allocation entries; the caller stores them on the
        request. Without ``accept_partial`` a shortfall found at selection time
        fails before any write. With it, whatever is eligible is reserved, but
        zero eligible stock still fails.
        """
        if units_needed < 1:
            raise ValidationError("units_needed must be at least 1.", field="units")
        now = now or timezone.now()
        candidates = list(self.store.allocatable(request.blood_type, now=now))

        eligible = 0
        for unit in candidates:
            if eligible >= units_needed:
                break
            eligible += unit.units
        if eligible < units_needed and (not accept_partial or eligible == 0):
            raise InsufficientStockError(request.blood_type, units_needed, eligible)

        entries: List[AllocationEntry] = []
        credited = 0
        for unit in candidates:
            if credited >= units_needed:
                break
            try:
                self.store.transition(
                    unit.unit_id,
                    UnitStatus.AVAILABLE,
                    UnitStatus.RESERVED,
                    actor,
                    request_id=request.request_id,
                    now=now,
                )
            except (ConflictError, NotFoundError):
                logger.warning(
                    "Skipping lot lost to a concurrent write unit_id=%s request_id=%s",
                    unit.unit_id,
                    request.request_id,
                )
                continue
            # A lot is indivisible; credit only what the request still needs.
            credit = min(unit.units, units_needed - credited)
            entries.append(
                {
                    "unit_id": unit.unit_id,
                    "units": credit,
                    "lot_units": unit.units,
                    "allocation_date": now.isoformat(),
                }
            )
            credited += credit

        if credited < units_needed and (not accept_partial or credited == 0):
            self.release_entries(request, entries, actor)
            raise InsufficientStockError(request.blood_type, units_needed, credited)

        logger.info(
            "Allocated request_id=%s blood_type=%s credited=%s needed=%s lots=%s",
            request.request_id,
            request.blood_type,
            credited,
            units_needed,
            [entry["unit_id"] for entry in entries],
        )
        return entries

    def release_entries(
        self,
        request: BloodRequest,
        entries: Iterable[AllocationEntry],
        actor: str,
    ) -> List[int]:
        """Return reserved lots to available. Lots no longer held are skipped."""
        released: List[int] = []
        for entry in entries:
            try:
                self.store.transition(
                    entry["unit_id"],
                    UnitStatus.RESERVED,
                    UnitStatus.AVAILABLE,
                    actor,
                    request_id=request.request_id,
                )
            except (ConflictError, NotFoundError):
                logger.warning(
                    "Release skipped unit_id=%s request_id=%s",
                    entry["unit_id"],
                    request.request_id,
                )
                continue
            released.append(entry["unit_id"])
        return released

    def release(self, request: BloodRequest, actor: str) -> List[int]:
        held = set(
            self.store.query(status=UnitStatus.RESERVED)
            .filter(reserved_for_id=request.request_id)
            .values_list("unit_id", flat=True)
        )
        entries = [entry for entry in request.allocated_blood or [] if entry["unit_id"] in held]
        return self.release_entries(request, entries, actor)

    def fulfill(self, request: BloodRequest, actor: str) -> List[int]:
        """Consume every lot still reserved for the request (reserved -> used)."""
        consumed: List[int] = []
        held = self.store.query(status=UnitStatus.RESERVED).filter(
            reserved_for_id=request.request_id
        )
        for unit_id in list(held.values_list("unit_id", flat=True)):
            self.store.transition(
                unit_id,
                UnitStatus.RESERVED,
                UnitStatus.USED,
                actor,
                request_id=request.request_id,
            )
            consumed.append(unit_id)
        return consumed
