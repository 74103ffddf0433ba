"""
Django models for the blood inventory and request-allocation module.

Donor records are owned by the donor registry; only the fields the inventory
core reads are modelled here. Hospitals, users and recipients are opaque
references stored as strings.
"""

from django.core.validators import MinValueValidator
from django.db import models
from django.utils import timezone

from inventory import rules


# =============================================================================
# Base Model with Audit Fields
# =============================================================================

class AuditedModel(models.Model):
    """
    Abstract base model providing common audit fields.
    version_nbr is bumped on every conditional status write.
    """
    create_by_id = models.CharField(max_length=64)
    create_dtime = models.DateTimeField(auto_now_add=True)
    update_by_id = models.CharField(max_length=64)
    update_dtime = models.DateTimeField(auto_now=True)
    version_nbr = models.IntegerField(default=1)

    class Meta:
        abstract = True


# =============================================================================
# Closed status domains
# =============================================================================

class BloodType(models.TextChoices):
    A_POS = "A+", "A+"
    A_NEG = "A-", "A-"
    B_POS = "B+", "B+"
    B_NEG = "B-", "B-"
    AB_POS = "AB+", "AB+"
    AB_NEG = "AB-", "AB-"
    O_POS = "O+", "O+"
    O_NEG = "O-", "O-"


class Component(models.TextChoices):
    WHOLE_BLOOD = "whole_blood", "Whole Blood"
    RED_CELLS = "red_cells", "Red Cells"
    PLATELETS = "platelets", "Platelets"
    PLASMA = "plasma", "Plasma"
    CRYOPRECIPITATE = "cryoprecipitate", "Cryoprecipitate"


class UnitStatus(models.TextChoices):
    AVAILABLE = "available", "Available"
    RESERVED = "reserved", "Reserved"
    USED = "used", "Used"
    EXPIRED = "expired", "Expired"


class ScreeningResult(models.TextChoices):
    PENDING = "pending", "Pending"
    NEGATIVE = "negative", "Negative"
    POSITIVE = "positive", "Positive"


class UrgencyLevel(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    CRITICAL = "critical", "Critical"


class RequestStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    APPROVED = "approved", "Approved"
    PARTIALLY_FULFILLED = "partially_fulfilled", "Partially Fulfilled"
    FULFILLED = "fulfilled", "Fulfilled"
    REJECTED = "rejected", "Rejected"
    CANCELLED = "cancelled", "Cancelled"


# =============================================================================
# Donor registry (external collaborator)
# =============================================================================

class Donor(models.Model):
    donor_id = models.AutoField(primary_key=True)
    full_name = models.CharField(max_length=120, blank=True, default="")
    blood_type = models.CharField(max_length=3, choices=BloodType.choices)
    is_eligible = models.BooleanField(default=True)

    class Meta:
        db_table = 'donor'
        ordering = ['donor_id']

    def __str__(self):
        return f"Donor {self.donor_id} ({self.blood_type})"


# =============================================================================
# Blood Requests
# =============================================================================

class BloodRequest(AuditedModel):
    """
    A clinical request for units of one blood type.

    allocated_blood holds the ordered allocation entries:
    {"unit_id", "units", "lot_units", "allocation_date"}. ``units`` is the
    amount credited to this request, ``lot_units`` the physical lot reserved.
    """
    request_id = models.AutoField(primary_key=True)
    hospital_id = models.CharField(max_length=64)
    requested_by = models.CharField(max_length=64)
    recipient_id = models.CharField(max_length=64, null=True, blank=True)
    blood_type = models.CharField(max_length=3, choices=BloodType.choices)
    units_required = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    urgency_level = models.CharField(
        max_length=10, choices=UrgencyLevel.choices, default=UrgencyLevel.MEDIUM
    )
    required_by = models.DateTimeField()
    reason = models.TextField()
    patient_condition = models.TextField(blank=True, default="")
    status_code = models.CharField(
        max_length=20, choices=RequestStatus.choices, default=RequestStatus.PENDING
    )
    allocated_blood = models.JSONField(default=list, blank=True)
    auto_approved = models.BooleanField(default=False)

    # Workflow timestamps
    processed_by = models.CharField(max_length=64, null=True, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    approved_by = models.CharField(max_length=64, null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)
    fulfilled_by = models.CharField(max_length=64, null=True, blank=True)
    fulfilled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(max_length=64, null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    rejection_reason = models.TextField(null=True, blank=True)
    notes_text = models.TextField(null=True, blank=True)

    class Meta:
        db_table = 'blood_request'
        ordering = ['-create_dtime']
        indexes = [
            models.Index(fields=['status_code']),
            models.Index(fields=['blood_type', 'status_code']),
            models.Index(fields=['hospital_id']),
        ]

    def __str__(self):
        return f"Request {self.request_id} {self.blood_type} x{self.units_required} ({self.status_code})"

    @property
    def allocated_units(self) -> int:
        return sum(int(entry.get("units") or 0) for entry in self.allocated_blood or [])

    @property
    def remaining_units(self) -> int:
        return max(self.units_required - self.allocated_units, 0)

    @property
    def is_urgent(self) -> bool:
        return self.urgency_level in rules.URGENT_LEVELS

    @property
    def is_overdue(self) -> bool:
        return timezone.now() > self.required_by and self.status_code != RequestStatus.FULFILLED

    @property
    def is_terminal(self) -> bool:
        return self.status_code in rules.REQUEST_TERMINAL_STATUSES


# =============================================================================
# Blood Units (inventory lots)
# =============================================================================

class BloodUnit(AuditedModel):
    """
    One collected lot. A lot may bundle several physical units and is never
    split across requests.
    """
    unit_id = models.AutoField(primary_key=True)
    blood_type = models.CharField(max_length=3, choices=BloodType.choices)
    component = models.CharField(
        max_length=20, choices=Component.choices, default=Component.WHOLE_BLOOD
    )
    units = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    collection_date = models.DateTimeField()
    expiry_date = models.DateTimeField()
    donor = models.ForeignKey(Donor, on_delete=models.PROTECT, related_name='blood_units')
    status_code = models.CharField(
        max_length=10, choices=UnitStatus.choices, default=UnitStatus.AVAILABLE
    )

    # Screening panel
    test_hiv = models.CharField(max_length=10, choices=ScreeningResult.choices, default=ScreeningResult.PENDING)
    test_hepatitis_b = models.CharField(max_length=10, choices=ScreeningResult.choices, default=ScreeningResult.PENDING)
    test_hepatitis_c = models.CharField(max_length=10, choices=ScreeningResult.choices, default=ScreeningResult.PENDING)
    test_syphilis = models.CharField(max_length=10, choices=ScreeningResult.choices, default=ScreeningResult.PENDING)

    storage_section = models.CharField(max_length=40, null=True, blank=True)
    storage_shelf = models.CharField(max_length=40, null=True, blank=True)
    storage_position = models.CharField(max_length=40, null=True, blank=True)
    notes_text = models.TextField(null=True, blank=True)

    reserved_for = models.ForeignKey(
        BloodRequest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='reserved_units',
    )
    used_for = models.ForeignKey(
        BloodRequest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='used_units',
    )

    class Meta:
        db_table = 'blood_unit'
        ordering = ['expiry_date', 'unit_id']
        indexes = [
            models.Index(fields=['blood_type', 'status_code']),
            models.Index(fields=['status_code', 'expiry_date']),
        ]

    def __str__(self):
        return f"Unit {self.unit_id} {self.blood_type} x{self.units} ({self.status_code})"

    @property
    def test_results(self) -> dict:
        return {marker: getattr(self, f"test_{marker}") for marker in rules.TEST_MARKERS}

    @property
    def tests_complete(self) -> bool:
        return all(value != ScreeningResult.PENDING for value in self.test_results.values())

    @property
    def tests_passed(self) -> bool:
        return all(value == ScreeningResult.NEGATIVE for value in self.test_results.values())

    @property
    def is_expired(self) -> bool:
        return timezone.now() > self.expiry_date

    @property
    def days_until_expiry(self) -> int:
        delta = self.expiry_date - timezone.now()
        return delta.days + (1 if delta.seconds or delta.microseconds else 0)
