"""
Hand-off to the external notification dispatcher.

The core only decides *when* to notify. Delivery is whatever callable
``BLOODBANK_NOTIFY_HANDLER`` points at; events are queued until the current
transaction commits so a rolled-back transition never produces a message.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)

UNIT_ADDED = "unit_added"
REQUEST_APPROVED = "request_approved"
REQUEST_REJECTED = "request_rejected"
REQUEST_FULFILLED = "request_fulfilled"
REQUEST_PARTIALLY_FULFILLED = "request_partially_fulfilled"
LOW_STOCK = "low_stock"

NotifyHandler = Callable[[str, Dict[str, Any]], None]


def log_notification(event: str, payload: Dict[str, Any]) -> None:
    logger.info("notification event=%s payload=%s", event, payload)


def _configured_handler() -> NotifyHandler:
    path = getattr(settings, "BLOODBANK_NOTIFY_HANDLER", "") or "inventory.notifications.log_notification"
    return import_string(path)


class Notifier:
    def __init__(self, handler: NotifyHandler | None = None):
        self._handler = handler

    @property
    def handler(self) -> NotifyHandler:
        if self._handler is None:
            self._handler = _configured_handler()
        return self._handler

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        transaction.on_commit(lambda: self._dispatch(event, dict(payload)))

    def _dispatch(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            self.handler(event, payload)
        except Exception:
            # The write is already committed; delivery failures are the dispatcher's problem.
            logger.exception("Notification dispatch failed event=%s", event)
