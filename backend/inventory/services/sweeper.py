from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Optional

from django.utils import timezone

from inventory import rules
from inventory.exceptions import ConflictError, NotFoundError
from inventory.models import UnitStatus
from inventory.notifications import Notifier
from inventory.services.stock import StockMonitor
from inventory.services.unit_store import UnitStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("bloodbank.audit")


class ExpirySweeper:
    """
    Moves available units whose expiry date has passed to expired.

    Reserved and used units are never touched, even past expiry. Each unit goes
    through the same conditional write allocation uses, so a unit reserved
    mid-sweep is simply skipped.
    """

    def __init__(self, store: UnitStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.monitor = StockMonitor(store, notifier)

    def sweep_expired(self, now: Optional[datetime] = None, actor: str = rules.SYSTEM_ACTOR) -> int:
        now = now or timezone.now()
        stale = list(
            self.store.query(status=UnitStatus.AVAILABLE).filter(expiry_date__lt=now)
        )
        if not stale:
            logger.debug("Expiry sweep found nothing to expire at %s", now.isoformat())
            return 0

        # Stock still on the shelf as available until this sweep lapsed it.
        lapsed: Dict[str, int] = defaultdict(int)
        count = 0
        for unit in stale:
            try:
                self.store.transition(unit.unit_id, UnitStatus.AVAILABLE, UnitStatus.EXPIRED, actor, now=now)
            except (ConflictError, NotFoundError):
                logger.info("Expiry sweep skipped unit_id=%s (changed concurrently)", unit.unit_id)
                continue
            count += 1
            if unit.tests_passed:
                lapsed[unit.blood_type] += unit.units

        if lapsed:
            current = self.store.stock_levels(lapsed.keys(), now=now)
            before = {blood_type: current[blood_type] + units for blood_type, units in lapsed.items()}
            self.monitor.notify_crossings(before, context="expiry_sweep")

        audit_logger.info(
            "expiry_sweep_completed",
            extra={
                "event_type": "STATE_CHANGE",
                "expired_count": count,
                "candidates": len(stale),
                "user_id": actor,
            },
        )
        return count
