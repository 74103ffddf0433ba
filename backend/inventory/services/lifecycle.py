"""
Blood request state machine.

Transition legality comes from ``rules.REQUEST_ACTIONS`` and
``rules.REQUEST_TRANSITIONS`` only. Every status write is conditional on the
status read at the start of the call, so a concurrent writer surfaces as a
ConflictError instead of a silently overwritten request.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import Case, F, IntegerField, Q, Value, When
from django.utils import timezone

from inventory import notifications, rules
from inventory.exceptions import ConflictError, NotFoundError, ValidationError
from inventory.models import BloodRequest, BloodUnit, RequestStatus, UrgencyLevel
from inventory.notifications import Notifier
from inventory.services.allocation import AllocationEngine
from inventory.services.compatibility import normalize_blood_type
from inventory.services.stock import StockMonitor
from inventory.services.unit_store import (
    UnitStore,
    parse_datetime_field,
    parse_positive_int,
    paginate,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("bloodbank.audit")

_UPDATABLE_FIELDS = {
    "units_required": "units_required",
    "urgency_level": "urgency_level",
    "reason": "reason",
    "patient_condition": "patient_condition",
    "required_by": "required_by",
    "notes": "notes_text",
}


def serialize_request(req: BloodRequest) -> Dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "request_id": req.request_id,
        "hospital_id": req.hospital_id,
        "requested_by": req.requested_by,
        "recipient_id": req.recipient_id,
        "blood_type": req.blood_type,
        "units_required": req.units_required,
        "urgency_level": req.urgency_level,
        "required_by": _iso(req.required_by),
        "reason": req.reason,
        "patient_condition": req.patient_condition or "",
        "status_code": req.status_code,
        "allocated_blood": list(req.allocated_blood or []),
        "allocated_units": req.allocated_units,
        "remaining_units": req.remaining_units,
        "auto_approved": req.auto_approved,
        "is_urgent": req.is_urgent,
        "is_overdue": req.is_overdue,
        "processed_by": req.processed_by,
        "processed_at": _iso(req.processed_at),
        "approved_by": req.approved_by,
        "approved_at": _iso(req.approved_at),
        "fulfilled_by": req.fulfilled_by,
        "fulfilled_at": _iso(req.fulfilled_at),
        "cancelled_by": req.cancelled_by,
        "cancelled_at": _iso(req.cancelled_at),
        "rejection_reason": req.rejection_reason,
        "notes_text": req.notes_text or "",
        "create_by_id": req.create_by_id,
        "create_dtime": _iso(req.create_dtime),
        "update_by_id": req.update_by_id,
        "update_dtime": _iso(req.update_dtime),
        "version_nbr": req.version_nbr,
    }


def _required_text(value: Any, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required.", field=field)
    return text


def _clean_urgency(value: Any) -> str:
    urgency = str(value or UrgencyLevel.MEDIUM).strip().lower()
    if urgency not in UrgencyLevel.values:
        raise ValidationError(
            f"Invalid urgency {value!r}, expected one of: {', '.join(UrgencyLevel.values)}.",
            field="urgency_level",
        )
    return urgency


def _future_datetime(value: Any, field: str = "required_by") -> datetime:
    parsed = parse_datetime_field(value, field)
    if parsed <= timezone.now():
        raise ValidationError(f"{field} must be in the future.", field=field)
    return parsed


class RequestLifecycle:
    def __init__(
        self,
        engine: AllocationEngine,
        store: Optional[UnitStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.engine = engine
        self.store = store or engine.store
        self.notifier = notifier or self.store.notifier
        self.monitor = StockMonitor(self.store, self.notifier)

    # ── Reads ───────────────────────────────────────────────────────────────

    def get_request(self, request_id: Any) -> BloodRequest:
        try:
            return BloodRequest.objects.get(pk=int(request_id))
        except (TypeError, ValueError, BloodRequest.DoesNotExist):
            raise NotFoundError(f"Blood request {request_id} not found.", field="request_id")

    def list_requests(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        filters = filters or {}
        queryset = BloodRequest.objects.all()
        status = filters.get("status")
        if status:
            if status not in RequestStatus.values:
                raise ValidationError(
                    f"Invalid status {status!r}, expected one of: {', '.join(RequestStatus.values)}.",
                    field="status",
                )
            queryset = queryset.filter(status_code=status)
        if filters.get("urgency_level"):
            queryset = queryset.filter(urgency_level=_clean_urgency(filters["urgency_level"]))
        if filters.get("blood_type"):
            queryset = queryset.filter(blood_type=normalize_blood_type(filters["blood_type"]))
        if filters.get("hospital_id"):
            queryset = queryset.filter(hospital_id=str(filters["hospital_id"]))
        search = str(filters.get("search") or "").strip()
        if search:
            queryset = queryset.filter(
                Q(reason__icontains=search)
                | Q(patient_condition__icontains=search)
                | Q(notes_text__icontains=search)
            )
        return paginate(queryset.order_by("-create_dtime", "-request_id"), page, limit)

    def urgent_requests(self, limit: int = rules.URGENT_LIST_LIMIT) -> List[BloodRequest]:
        """Open high/critical requests, most urgent first, then newest."""
        urgency_rank = Case(
            *[When(urgency_level=level, then=Value(rank)) for level, rank in rules.URGENCY_RANK.items()],
            output_field=IntegerField(),
        )
        queryset = (
            BloodRequest.objects.filter(
                urgency_level__in=rules.URGENT_LEVELS,
                status_code__in=rules.URGENT_OPEN_STATUSES,
            )
            .annotate(urgency_rank=urgency_rank)
            .order_by("-urgency_rank", "-create_dtime", "-request_id")
        )
        return list(queryset[:limit])

    # ── Creation and edits ──────────────────────────────────────────────────

    @transaction.atomic
    def create_request(
        self,
        *,
        hospital_id: Any,
        blood_type: Any,
        units: Any,
        required_by: Any,
        reason: Any,
        requested_by: str,
        urgency: Any = None,
        recipient_id: Optional[str] = None,
        patient_condition: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BloodRequest:
        """
        Submit a request. Low-urgency requests that current stock can cover
        are approved immediately without reserving; fulfillment allocates.
        """
        hospital = _required_text(hospital_id, "hospital_id")
        requester = _required_text(requested_by, "requested_by")
        normalized_type = normalize_blood_type(blood_type)
        units_required = parse_positive_int(units, "units_required")
        urgency_level = _clean_urgency(urgency)
        deadline = _future_datetime(required_by)
        reason_text = _required_text(reason, "reason")

        fields: Dict[str, Any] = {}
        if urgency_level == rules.auto_approve_urgency():
            available = self.store.available_units(normalized_type)
            if available >= units_required:
                now = timezone.now()
                fields = {
                    "status_code": RequestStatus.APPROVED,
                    "auto_approved": True,
                    "approved_by": rules.SYSTEM_ACTOR,
                    "approved_at": now,
                    "processed_by": rules.SYSTEM_ACTOR,
                    "processed_at": now,
                }

        req = BloodRequest.objects.create(
            hospital_id=hospital,
            requested_by=requester,
            recipient_id=(str(recipient_id).strip() or None) if recipient_id else None,
            blood_type=normalized_type,
            units_required=units_required,
            urgency_level=urgency_level,
            required_by=deadline,
            reason=reason_text,
            patient_condition=patient_condition or "",
            notes_text=notes or None,
            create_by_id=requester,
            update_by_id=requester,
            **fields,
        )
        audit_logger.info(
            "blood_request_created",
            extra={
                "event_type": "CREATE",
                "request_id": req.request_id,
                "blood_type": req.blood_type,
                "units_required": req.units_required,
                "urgency_level": req.urgency_level,
                "status": req.status_code,
                "user_id": requester,
            },
        )
        if req.auto_approved:
            self.notifier.notify(notifications.REQUEST_APPROVED, self._event_payload(req))
        return req

    @transaction.atomic
    def update_request(self, request_id: Any, updates: Dict[str, Any], actor: str) -> BloodRequest:
        req = self.get_request(request_id)
        if req.status_code != RequestStatus.PENDING:
            raise ConflictError(
                f"Only pending requests can be edited; request is {req.status_code}.",
                current_status=req.status_code,
            )
        unknown = set(updates) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}.",
                field="fields",
            )
        cleaners = {
            "units_required": lambda value: parse_positive_int(value, "units_required"),
            "urgency_level": _clean_urgency,
            "reason": lambda value: _required_text(value, "reason"),
            "patient_condition": lambda value: str(value or ""),
            "required_by": _future_datetime,
            "notes": lambda value: str(value) if value is not None else None,
        }
        fields = {
            _UPDATABLE_FIELDS[key]: cleaners[key](value) for key, value in updates.items()
        }
        if not fields:
            return req
        self._write_status(req, RequestStatus.PENDING, RequestStatus.PENDING, actor, **fields)
        return self.get_request(req.request_id)

    @transaction.atomic
    def delete_request(self, request_id: Any, actor: str) -> None:
        req = self.get_request(request_id)
        if req.status_code in rules.REQUEST_UNDELETABLE_STATUSES:
            raise ConflictError(
                f"Cannot delete a {req.status_code} request.",
                current_status=req.status_code,
            )
        if BloodUnit.objects.filter(used_for_id=req.request_id).exists():
            raise ConflictError(
                "Cannot delete a request that has consumed blood units.",
                current_status=req.status_code,
            )
        released = self.engine.release(req, actor)
        deleted, _ = BloodRequest.objects.filter(
            pk=req.request_id, status_code=req.status_code
        ).delete()
        if not deleted:
            raise self._lost_race(req.request_id, req.status_code)
        audit_logger.info(
            "blood_request_deleted",
            extra={
                "event_type": "DELETE",
                "request_id": req.request_id,
                "released_units": released,
                "user_id": actor,
            },
        )

    # ── State machine ───────────────────────────────────────────────────────

    @transaction.atomic
    def transition_request(
        self,
        request_id: Any,
        action: str,
        actor: str,
        reason: Optional[str] = None,
        accept_partial: bool = False,
    ) -> BloodRequest:
        action = str(action or "").strip().lower()
        if action not in rules.REQUEST_ACTIONS:
            raise ValidationError(
                f"Unknown action {action!r}, expected one of: {', '.join(sorted(rules.REQUEST_ACTIONS))}.",
                field="action",
            )
        actor = _required_text(actor, "actor")
        req = self.get_request(request_id)
        if req.status_code not in rules.REQUEST_ACTIONS[action]:
            raise ConflictError(
                f"Cannot {action} a {req.status_code} request.",
                current_status=req.status_code,
            )

        handler = getattr(self, f"_{action}")
        if action == "reject":
            return handler(req, actor, reason)
        if action == "cancel":
            return handler(req, actor)
        return handler(req, actor, accept_partial)

    def _approve(self, req: BloodRequest, actor: str, accept_partial: bool) -> BloodRequest:
        before = self.monitor.snapshot([req.blood_type])
        entries = self.engine.allocate(req, req.remaining_units, actor, accept_partial=accept_partial)
        now = timezone.now()
        try:
            self._write_status(
                req,
                RequestStatus.PENDING,
                RequestStatus.APPROVED,
                actor,
                allocated_blood=list(req.allocated_blood or []) + entries,
                approved_by=actor,
                approved_at=now,
                processed_by=actor,
                processed_at=now,
            )
        except ConflictError:
            self.engine.release_entries(req, entries, actor)
            raise
        req = self.get_request(req.request_id)
        self.notifier.notify(notifications.REQUEST_APPROVED, self._event_payload(req))
        self.monitor.notify_crossings(before, context=f"request:{req.request_id}:approve")
        return req

    def _reject(self, req: BloodRequest, actor: str, reason: Optional[str]) -> BloodRequest:
        rejection_reason = str(reason or "").strip()
        if not rejection_reason:
            raise ValidationError("A rejection reason is required.", field="reason")
        self._write_status(
            req,
            RequestStatus.PENDING,
            RequestStatus.REJECTED,
            actor,
            rejection_reason=rejection_reason,
            processed_by=actor,
            processed_at=timezone.now(),
        )
        req = self.get_request(req.request_id)
        payload = self._event_payload(req)
        payload["rejection_reason"] = rejection_reason
        self.notifier.notify(notifications.REQUEST_REJECTED, payload)
        return req

    def _cancel(self, req: BloodRequest, actor: str) -> BloodRequest:
        now = timezone.now()
        self._write_status(
            req,
            req.status_code,
            RequestStatus.CANCELLED,
            actor,
            cancelled_by=actor,
            cancelled_at=now,
            processed_by=actor,
            processed_at=now,
        )
        released = self.engine.release(req, actor)
        logger.info("Cancelled request_id=%s released=%s", req.request_id, released)
        return self.get_request(req.request_id)

    def _fulfill(self, req: BloodRequest, actor: str, accept_partial: bool) -> BloodRequest:
        before = self.monitor.snapshot([req.blood_type])
        from_status = req.status_code
        entries: List[Dict[str, Any]] = []
        if from_status == RequestStatus.PARTIALLY_FULFILLED or not req.allocated_blood:
            if req.remaining_units > 0:
                # partially_fulfilled cannot land on itself again.
                entries = self.engine.allocate(
                    req,
                    req.remaining_units,
                    actor,
                    accept_partial=accept_partial and from_status == RequestStatus.APPROVED,
                )

        allocated = list(req.allocated_blood or []) + entries
        total = sum(int(entry["units"]) for entry in allocated)
        to_status = (
            RequestStatus.FULFILLED if total == req.units_required else RequestStatus.PARTIALLY_FULFILLED
        )
        now = timezone.now()
        try:
            self._write_status(
                req,
                from_status,
                to_status,
                actor,
                allocated_blood=allocated,
                fulfilled_by=actor,
                fulfilled_at=now,
                processed_by=actor,
                processed_at=now,
            )
        except ConflictError:
            self.engine.release_entries(req, entries, actor)
            raise
        consumed = self.engine.fulfill(req, actor)
        req = self.get_request(req.request_id)
        event = (
            notifications.REQUEST_FULFILLED
            if to_status == RequestStatus.FULFILLED
            else notifications.REQUEST_PARTIALLY_FULFILLED
        )
        payload = self._event_payload(req)
        payload["consumed_units"] = consumed
        self.notifier.notify(event, payload)
        self.monitor.notify_crossings(before, context=f"request:{req.request_id}:fulfill")
        return req

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _write_status(
        self,
        req: BloodRequest,
        expected: str,
        to: str,
        actor: str,
        **fields: Any,
    ) -> None:
        if to != expected and to not in rules.REQUEST_TRANSITIONS.get(expected, frozenset()):
            raise ConflictError(
                f"Cannot move a request from {expected} to {to}.",
                current_status=expected,
            )
        updated = BloodRequest.objects.filter(pk=req.request_id, status_code=expected).update(
            status_code=to,
            update_by_id=actor,
            update_dtime=timezone.now(),
            version_nbr=F("version_nbr") + 1,
            **fields,
        )
        if updated != 1:
            raise self._lost_race(req.request_id, expected)
        if to != expected:
            audit_logger.info(
                "blood_request_status_changed",
                extra={
                    "event_type": "STATE_CHANGE",
                    "request_id": req.request_id,
                    "from_status": expected,
                    "to_status": to,
                    "user_id": actor,
                },
            )

    def _lost_race(self, request_id: int, expected: str) -> Exception:
        current = (
            BloodRequest.objects.filter(pk=request_id).values_list("status_code", flat=True).first()
        )
        if current is None:
            return NotFoundError(f"Blood request {request_id} not found.", field="request_id")
        logger.warning(
            "Conditional request write lost request_id=%s expected=%s current=%s",
            request_id,
            expected,
            current,
        )
        return ConflictError(
            f"Blood request {request_id} is {current}, expected {expected}.",
            current_status=current,
        )

    @staticmethod
    def _event_payload(req: BloodRequest) -> Dict[str, Any]:
        return {
            "request_id": req.request_id,
            "hospital_id": req.hospital_id,
            "requested_by": req.requested_by,
            "blood_type": req.blood_type,
            "units_required": req.units_required,
            "allocated_units": req.allocated_units,
            "urgency_level": req.urgency_level,
            "status": req.status_code,
            "auto_approved": req.auto_approved,
        }
