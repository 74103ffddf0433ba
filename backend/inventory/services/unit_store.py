"""
InventoryUnit store.

All status changes go through ``transition``, a single conditional UPDATE
(``... WHERE status_code = expected``). Allocation and the expiry sweeper race
on the same rows and rely on this primitive alone; there is no table lock.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction
from django.db.models import Count, F, Q, QuerySet, Sum
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from inventory import notifications, rules
from inventory.exceptions import (
    ConflictError,
    IntegrityError,
    NotFoundError,
    ValidationError,
)
from inventory.models import BloodUnit, Component, Donor, ScreeningResult, UnitStatus
from inventory.notifications import Notifier
from inventory.services.compatibility import normalize_blood_type

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("bloodbank.audit")

_STORAGE_FIELDS = ("section", "shelf", "position")
_SCREENING_VALUES = frozenset(ScreeningResult.values)


def _tests_passed_q() -> Q:
    return Q(**{f"test_{marker}": ScreeningResult.NEGATIVE for marker in rules.TEST_MARKERS})


def parse_datetime_field(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = parse_datetime(value.strip())
        except ValueError:
            parsed = None
        if parsed is None:
            raise ValidationError(f"{field} must be an ISO 8601 datetime.", field=field)
    else:
        raise ValidationError(f"{field} is required.", field=field)
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def parse_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{field} must be a positive integer.", field=field)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer.", field=field)
    if number < 1:
        raise ValidationError(f"{field} must be a positive integer.", field=field)
    return number


def _clean_panel(panel: Any) -> Dict[str, str]:
    if panel is None:
        return {}
    if not isinstance(panel, dict):
        raise ValidationError("test_results must be an object.", field="test_results")
    cleaned: Dict[str, str] = {}
    for marker, value in panel.items():
        if marker not in rules.TEST_MARKERS:
            raise ValidationError(
                f"Unknown test marker {marker!r}, expected one of: {', '.join(rules.TEST_MARKERS)}.",
                field="test_results",
            )
        result = str(value or "").strip().lower()
        if result not in _SCREENING_VALUES:
            raise ValidationError(
                f"Invalid result {value!r} for {marker}, expected one of: {', '.join(sorted(_SCREENING_VALUES))}.",
                field="test_results",
            )
        cleaned[marker] = result
    return cleaned


def _clean_storage(location: Any) -> Dict[str, Optional[str]]:
    if location is None:
        return {}
    if not isinstance(location, dict):
        raise ValidationError("storage_location must be an object.", field="storage_location")
    unknown = set(location) - set(_STORAGE_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unknown storage_location keys: {', '.join(sorted(unknown))}.",
            field="storage_location",
        )
    return {
        f"storage_{key}": (str(value).strip() or None) if value is not None else None
        for key, value in location.items()
    }


def paginate(queryset: QuerySet, page: Any = None, limit: Any = None) -> Dict[str, Any]:
    """Slice a queryset into one page using the configured default and maximum size."""
    default_limit, max_limit = rules.page_bounds()
    try:
        page_number = max(int(page or 1), 1)
        page_size = int(limit or default_limit)
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers.", field="page")
    page_size = min(max(page_size, 1), max_limit)

    total = queryset.count()
    offset = (page_number - 1) * page_size
    return {
        "items": list(queryset[offset:offset + page_size]),
        "count": total,
        "page": page_number,
        "limit": page_size,
        "pages": (total + page_size - 1) // page_size,
    }


def serialize_unit(unit: BloodUnit) -> Dict[str, Any]:
    return {
        "unit_id": unit.unit_id,
        "blood_type": unit.blood_type,
        "component": unit.component,
        "units": unit.units,
        "collection_date": unit.collection_date.isoformat(),
        "expiry_date": unit.expiry_date.isoformat(),
        "days_until_expiry": unit.days_until_expiry,
        "donor_id": unit.donor_id,
        "status_code": unit.status_code,
        "test_results": unit.test_results,
        "tests_passed": unit.tests_passed,
        "storage_location": {
            "section": unit.storage_section,
            "shelf": unit.storage_shelf,
            "position": unit.storage_position,
        },
        "notes_text": unit.notes_text or "",
        "reserved_for": unit.reserved_for_id,
        "used_for": unit.used_for_id,
        "create_by_id": unit.create_by_id,
        "create_dtime": unit.create_dtime.isoformat() if unit.create_dtime else None,
        "update_by_id": unit.update_by_id,
        "update_dtime": unit.update_dtime.isoformat() if unit.update_dtime else None,
        "version_nbr": unit.version_nbr,
    }


class UnitStore:
    """Persistence for blood units, exposing conditional status writes only."""

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or Notifier()

    def get(self, unit_id: Any) -> BloodUnit:
        try:
            return BloodUnit.objects.get(pk=int(unit_id))
        except (TypeError, ValueError, BloodUnit.DoesNotExist):
            raise NotFoundError(f"Blood unit {unit_id} not found.", field="unit_id")

    @transaction.atomic
    def add(
        self,
        *,
        donor_id: Any,
        blood_type: Any,
        collection_date: Any,
        actor: str,
        units: Any = 1,
        component: Any = None,
        test_results: Any = None,
        storage_location: Any = None,
        notes: Optional[str] = None,
    ) -> BloodUnit:
        """
        Record a collected lot.

        The donor of record must exist, be eligible and carry the same blood
        type. Expiry is derived from the component shelf life.
        """
        normalized_type = normalize_blood_type(blood_type)
        collected = parse_datetime_field(collection_date, "collection_date")
        if collected > timezone.now() + timedelta(minutes=5):
            raise ValidationError("collection_date cannot be in the future.", field="collection_date")
        lot_size = parse_positive_int(units, "units")
        component_code = str(component or rules.DEFAULT_COMPONENT).strip().lower()
        if component_code not in Component.values:
            raise ValidationError(
                f"Invalid component {component!r}, expected one of: {', '.join(Component.values)}.",
                field="component",
            )
        panel = _clean_panel(test_results)
        storage = _clean_storage(storage_location)

        try:
            donor = Donor.objects.get(pk=int(donor_id))
        except (TypeError, ValueError, Donor.DoesNotExist):
            raise NotFoundError(f"Donor {donor_id} not found.", field="donor_id")
        if not donor.is_eligible:
            raise ValidationError(f"Donor {donor.donor_id} is not eligible to donate.", field="donor_id")
        if donor.blood_type != normalized_type:
            raise IntegrityError(
                f"Blood type {normalized_type} does not match donor {donor.donor_id} "
                f"blood type {donor.blood_type}.",
                field="blood_type",
            )

        unit = BloodUnit.objects.create(
            blood_type=normalized_type,
            component=component_code,
            units=lot_size,
            collection_date=collected,
            expiry_date=collected + rules.shelf_life(component_code),
            donor=donor,
            notes_text=notes or None,
            create_by_id=actor,
            update_by_id=actor,
            **{f"test_{marker}": value for marker, value in panel.items()},
            **storage,
        )
        audit_logger.info(
            "blood_unit_added",
            extra={
                "event_type": "CREATE",
                "unit_id": unit.unit_id,
                "blood_type": unit.blood_type,
                "units": unit.units,
                "user_id": actor,
            },
        )
        self.notifier.notify(
            notifications.UNIT_ADDED,
            {
                "unit_id": unit.unit_id,
                "blood_type": unit.blood_type,
                "component": unit.component,
                "units": unit.units,
                "expiry_date": unit.expiry_date.isoformat(),
                "added_by": actor,
            },
        )
        return unit

    def transition(
        self,
        unit_id: int,
        from_expected: str,
        to: str,
        actor: str,
        request_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> BloodUnit:
        """
        Move a unit from ``from_expected`` to ``to`` with one conditional UPDATE.

        Reserving tags ``reserved_for``; releasing clears it; consuming moves
        the tag to ``used_for``. Moves into reserved/used also require a fully
        negative screening panel, and reserving requires an unexpired unit.
        Raises ConflictError carrying the observed status when the write
        matches no row.
        """
        if to not in rules.UNIT_TRANSITIONS.get(from_expected, frozenset()):
            raise ConflictError(
                f"Cannot move a unit from {from_expected} to {to}.",
                current_status=from_expected,
            )
        now = now or timezone.now()
        queryset = BloodUnit.objects.filter(pk=unit_id, status_code=from_expected)
        updates: Dict[str, Any] = {
            "status_code": to,
            "update_by_id": actor,
            "update_dtime": now,
            "version_nbr": F("version_nbr") + 1,
        }

        if to in (UnitStatus.RESERVED, UnitStatus.USED):
            queryset = queryset.filter(_tests_passed_q())
        if to == UnitStatus.RESERVED:
            if request_id is None:
                raise ValidationError("A request is required to reserve a unit.", field="request_id")
            queryset = queryset.filter(expiry_date__gt=now)
            updates["reserved_for_id"] = request_id
        elif from_expected == UnitStatus.RESERVED:
            if request_id is not None:
                queryset = queryset.filter(reserved_for_id=request_id)
            updates["reserved_for_id"] = None
            if to == UnitStatus.USED:
                updates["used_for_id"] = request_id if request_id is not None else F("reserved_for_id")
        elif to == UnitStatus.EXPIRED:
            queryset = queryset.filter(expiry_date__lt=now)

        if queryset.update(**updates) != 1:
            raise self._conflict(unit_id, from_expected, to, request_id, now)

        audit_logger.info(
            "blood_unit_status_changed",
            extra={
                "event_type": "STATE_CHANGE",
                "unit_id": unit_id,
                "from_status": from_expected,
                "to_status": to,
                "request_id": request_id,
                "user_id": actor,
            },
        )
        return self.get(unit_id)

    def _conflict(
        self,
        unit_id: int,
        from_expected: str,
        to: str,
        request_id: Optional[int],
        now: datetime,
    ) -> Exception:
        unit = BloodUnit.objects.filter(pk=unit_id).first()
        if unit is None:
            return NotFoundError(f"Blood unit {unit_id} not found.", field="unit_id")
        if unit.status_code != from_expected:
            message = f"Blood unit {unit_id} is {unit.status_code}, expected {from_expected}."
        elif to in (UnitStatus.RESERVED, UnitStatus.USED) and not unit.tests_passed:
            message = f"Blood unit {unit_id} has not passed screening."
        elif to == UnitStatus.RESERVED and unit.expiry_date <= now:
            message = f"Blood unit {unit_id} has expired."
        elif to == UnitStatus.EXPIRED:
            message = f"Blood unit {unit_id} has not reached its expiry date."
        elif request_id is not None and unit.reserved_for_id != request_id:
            message = f"Blood unit {unit_id} is reserved for another request."
        else:
            message = f"Blood unit {unit_id} changed concurrently."
        logger.warning(
            "Conditional unit write lost unit_id=%s from=%s to=%s current=%s",
            unit_id,
            from_expected,
            to,
            unit.status_code,
        )
        return ConflictError(message, current_status=unit.status_code)

    def query(
        self,
        blood_type: Optional[str] = None,
        status: Optional[str] = None,
        tests_passed: Optional[bool] = None,
        not_expired: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> QuerySet:
        """Units matching the filters, earliest expiry first (ties by id)."""
        queryset = BloodUnit.objects.all()
        if blood_type:
            queryset = queryset.filter(blood_type=normalize_blood_type(blood_type))
        if status:
            queryset = queryset.filter(status_code=status)
        if tests_passed is True:
            queryset = queryset.filter(_tests_passed_q())
        elif tests_passed is False:
            queryset = queryset.exclude(_tests_passed_q())
        if not_expired:
            queryset = queryset.filter(expiry_date__gt=now or timezone.now())
        return queryset.order_by("expiry_date", "unit_id")

    def allocatable(self, blood_type: str, now: Optional[datetime] = None) -> QuerySet:
        return self.query(
            blood_type=blood_type,
            status=UnitStatus.AVAILABLE,
            tests_passed=True,
            not_expired=True,
            now=now,
        )

    @transaction.atomic
    def update_test_results(self, unit_id: Any, panel: Any, actor: str) -> BloodUnit:
        cleaned = _clean_panel(panel)
        if not cleaned:
            raise ValidationError("At least one test result is required.", field="test_results")
        unit = self.get(unit_id)
        updated = BloodUnit.objects.filter(
            pk=unit.unit_id,
            status_code__in=(UnitStatus.AVAILABLE, UnitStatus.RESERVED),
        ).update(
            update_by_id=actor,
            update_dtime=timezone.now(),
            version_nbr=F("version_nbr") + 1,
            **{f"test_{marker}": value for marker, value in cleaned.items()},
        )
        if updated != 1:
            current = self.get(unit.unit_id).status_code
            raise ConflictError(
                f"Cannot update test results of a {current} unit.",
                current_status=current,
            )
        unit = self.get(unit.unit_id)
        if unit.status_code == UnitStatus.RESERVED and not unit.tests_passed:
            logger.warning(
                "Reserved unit failed screening unit_id=%s request_id=%s results=%s",
                unit.unit_id,
                unit.reserved_for_id,
                unit.test_results,
            )
        audit_logger.info(
            "blood_unit_tests_updated",
            extra={
                "event_type": "UPDATE",
                "unit_id": unit.unit_id,
                "test_results": cleaned,
                "user_id": actor,
            },
        )
        return unit

    @transaction.atomic
    def update_details(
        self,
        unit_id: Any,
        actor: str,
        storage_location: Any = None,
        notes: Optional[str] = None,
    ) -> BloodUnit:
        unit = self.get(unit_id)
        fields = _clean_storage(storage_location)
        if notes is not None:
            fields["notes_text"] = str(notes)
        if not fields:
            return unit
        BloodUnit.objects.filter(pk=unit.unit_id).update(
            update_by_id=actor,
            update_dtime=timezone.now(),
            version_nbr=F("version_nbr") + 1,
            **fields,
        )
        return self.get(unit.unit_id)

    @transaction.atomic
    def update(
        self,
        unit_id: Any,
        actor: str,
        test_results: Any = None,
        storage_location: Any = None,
        notes: Optional[str] = None,
    ) -> BloodUnit:
        """
        Apply a combined test-result and details edit as one unit of work.

        All input is cleaned before the first write, so a rejected edit leaves
        the unit untouched.
        """
        _clean_storage(storage_location)
        if test_results is not None:
            if not _clean_panel(test_results):
                raise ValidationError("At least one test result is required.", field="test_results")
            self.update_test_results(unit_id, test_results, actor)
        return self.update_details(
            unit_id, actor, storage_location=storage_location, notes=notes
        )

    @transaction.atomic
    def delete(self, unit_id: Any, actor: str) -> None:
        unit = self.get(unit_id)
        deleted, _ = BloodUnit.objects.filter(pk=unit.unit_id).exclude(
            status_code__in=rules.UNIT_COMMITTED_STATUSES
        ).delete()
        if not deleted:
            current = self.get(unit.unit_id).status_code
            raise ConflictError(
                f"Cannot delete a {current} blood unit.",
                current_status=current,
            )
        audit_logger.info(
            "blood_unit_deleted",
            extra={"event_type": "DELETE", "unit_id": unit.unit_id, "user_id": actor},
        )

    def list(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: Any = None,
        limit: Any = None,
    ) -> Dict[str, Any]:
        """Paged unit listing. ``expiring_within_days`` implies status=available."""
        filters = filters or {}
        queryset = self.query(
            blood_type=filters.get("blood_type") or None,
            status=filters.get("status") or None,
        )
        if filters.get("status") and filters["status"] not in UnitStatus.values:
            raise ValidationError(
                f"Invalid status {filters['status']!r}, expected one of: {', '.join(UnitStatus.values)}.",
                field="status",
            )
        if filters.get("component"):
            queryset = queryset.filter(component=filters["component"])
        if filters.get("section"):
            queryset = queryset.filter(storage_section=filters["section"])
        search = str(filters.get("search") or "").strip()
        if search:
            queryset = queryset.filter(
                Q(storage_section__icontains=search) | Q(blood_type__icontains=search)
            )
        within = filters.get("expiring_within_days")
        if within not in (None, ""):
            try:
                days = int(within)
            except (TypeError, ValueError):
                raise ValidationError(
                    "expiring_within_days must be an integer.", field="expiring_within_days"
                )
            if days < 0:
                raise ValidationError(
                    "expiring_within_days must not be negative.", field="expiring_within_days"
                )
            now = timezone.now()
            queryset = queryset.filter(
                status_code=UnitStatus.AVAILABLE,
                expiry_date__gt=now,
                expiry_date__lte=now + timedelta(days=days),
            )
        return paginate(queryset, page, limit)

    def available_units(self, blood_type: str, now: Optional[datetime] = None) -> int:
        """Sum of lot sizes that allocation could reserve right now."""
        total = self.allocatable(blood_type, now=now).aggregate(total=Sum("units"))["total"]
        return int(total or 0)

    def stock_levels(
        self,
        blood_types: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        types = list(blood_types) if blood_types is not None else list(rules.BLOOD_TYPES)
        levels = {blood_type: 0 for blood_type in types}
        rows = (
            BloodUnit.objects.filter(
                _tests_passed_q(),
                blood_type__in=types,
                status_code=UnitStatus.AVAILABLE,
                expiry_date__gt=now or timezone.now(),
            )
            .values("blood_type")
            .annotate(total=Sum("units"))
        )
        for row in rows:
            levels[row["blood_type"]] = int(row["total"] or 0)
        return levels

    def summary(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or timezone.now()
        warning_cutoff = now + timedelta(days=rules.expiry_warning_days())
        urgent_cutoff = now + timedelta(days=rules.expiry_urgent_days())

        by_status = {status: 0 for status in UnitStatus.values}
        for row in BloodUnit.objects.values("status_code").annotate(total=Count("unit_id")):
            by_status[row["status_code"]] = row["total"]

        levels = self.stock_levels(now=now)
        expiring_by_type: Dict[str, int] = {}
        for row in (
            BloodUnit.objects.filter(
                status_code=UnitStatus.AVAILABLE,
                expiry_date__gt=now,
                expiry_date__lte=warning_cutoff,
            )
            .values("blood_type")
            .annotate(total=Count("unit_id"))
        ):
            expiring_by_type[row["blood_type"]] = row["total"]

        blood_types: List[Dict[str, Any]] = []
        low_stock: List[Dict[str, Any]] = []
        for blood_type in rules.BLOOD_TYPES:
            minimum = rules.low_stock_threshold(blood_type)
            entry = {
                "blood_type": blood_type,
                "available_units": levels[blood_type],
                "expiring_soon": expiring_by_type.get(blood_type, 0),
                "min_required": minimum,
                "is_low": levels[blood_type] < minimum,
            }
            blood_types.append(entry)
            if entry["is_low"]:
                low_stock.append(
                    {
                        "blood_type": blood_type,
                        "available_units": levels[blood_type],
                        "min_required": minimum,
                        "shortage": minimum - levels[blood_type],
                    }
                )

        available = BloodUnit.objects.filter(status_code=UnitStatus.AVAILABLE, expiry_date__gt=now)
        return {
            "by_status": by_status,
            "total_units": sum(by_status.values()),
            "blood_types": blood_types,
            "expiring": {
                "within_urgent_days": available.filter(expiry_date__lte=urgent_cutoff).count(),
                "within_warning_days": available.filter(expiry_date__lte=warning_cutoff).count(),
                "urgent_days": rules.expiry_urgent_days(),
                "warning_days": rules.expiry_warning_days(),
            },
            "expired_count": by_status[UnitStatus.EXPIRED],
            "low_stock": low_stock,
        }
