from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from inventory import notifications, rules
from inventory.notifications import Notifier
from inventory.services.unit_store import UnitStore

logger = logging.getLogger(__name__)


class StockMonitor:
    """Detects available stock falling through a blood type's minimum."""

    def __init__(self, store: UnitStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier or store.notifier

    def snapshot(self, blood_types: Iterable[str]) -> Dict[str, int]:
        return self.store.stock_levels(blood_types)

    def notify_crossings(self, before: Dict[str, int], context: str = "") -> List[str]:
        """
        Compare ``before`` against current stock and emit ``low_stock`` for
        every type that went from at/above its minimum to below it.
        """
        if not before:
            return []
        after = self.store.stock_levels(before.keys())
        crossed: List[str] = []
        for blood_type, previous in before.items():
            minimum = rules.low_stock_threshold(blood_type)
            current = after.get(blood_type, 0)
            if previous >= minimum > current:
                crossed.append(blood_type)
                logger.warning(
                    "Low stock blood_type=%s available=%s minimum=%s context=%s",
                    blood_type,
                    current,
                    minimum,
                    context,
                )
                self.notifier.notify(
                    notifications.LOW_STOCK,
                    {
                        "blood_type": blood_type,
                        "available_units": current,
                        "min_required": minimum,
                        "previous_units": previous,
                        "context": context,
                    },
                )
        return crossed
