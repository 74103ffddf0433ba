from datetime import timedelta
from io import StringIO
from unittest.mock import Mock, patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from inventory import notifications, rules
from inventory.exceptions import (
    ConflictError,
    InsufficientStockError,
    IntegrityError,
    NotFoundError,
    ValidationError,
)
from inventory.models import (
    BloodRequest,
    BloodUnit,
    Donor,
    RequestStatus,
    ScreeningResult,
    UnitStatus,
)
from inventory.notifications import Notifier
from inventory.services import compatibility
from inventory.services.allocation import AllocationEngine
from inventory.services.lifecycle import RequestLifecycle, serialize_request
from inventory.services.sweeper import ExpirySweeper
from inventory.services.unit_store import UnitStore, serialize_unit


def _donor(blood_type: str = "O+", eligible: bool = True) -> Donor:
    return Donor.objects.create(full_name="Donor", blood_type=blood_type, is_eligible=eligible)


def _unit(
    donor: Donor,
    expires_in_days: float,
    *,
    units: int = 1,
    status: str = UnitStatus.AVAILABLE,
    result: str = ScreeningResult.NEGATIVE,
    reserved_for: BloodRequest | None = None,
    **panel: str,
) -> BloodUnit:
    expiry = timezone.now() + timedelta(days=expires_in_days)
    results = {f"test_{marker}": result for marker in rules.TEST_MARKERS}
    results.update({f"test_{marker}": value for marker, value in panel.items()})
    return BloodUnit.objects.create(
        blood_type=donor.blood_type,
        units=units,
        collection_date=expiry - timedelta(days=35),
        expiry_date=expiry,
        donor=donor,
        status_code=status,
        reserved_for=reserved_for,
        create_by_id="seed",
        update_by_id="seed",
        **results,
    )


def _request(
    blood_type: str,
    units: int,
    *,
    urgency: str = "medium",
    status: str = RequestStatus.PENDING,
    **extra,
) -> BloodRequest:
    return BloodRequest.objects.create(
        hospital_id="H-1",
        requested_by="clerk-1",
        blood_type=blood_type,
        units_required=units,
        urgency_level=urgency,
        required_by=timezone.now() + timedelta(days=1),
        reason="Scheduled surgery",
        status_code=status,
        create_by_id="clerk-1",
        update_by_id="clerk-1",
        **extra,
    )


def _services(handler=None):
    notifier = Notifier(handler=handler or Mock())
    store = UnitStore(notifier)
    engine = AllocationEngine(store)
    return store, engine, RequestLifecycle(engine, store, notifier)


# ── Compatibility and rules ─────────────────────────────────────────────────


class CompatibilityTests(SimpleTestCase):
    def test_o_negative_receives_only_o_negative(self) -> None:
        table = compatibility.compatibility("O-")

        self.assertEqual(table["can_receive_from"], frozenset({"O-"}))
        self.assertEqual(table["can_donate_to"], frozenset(rules.BLOOD_TYPES))

    def test_ab_positive_is_universal_recipient(self) -> None:
        table = compatibility.compatibility("ab+")

        self.assertEqual(table["can_receive_from"], frozenset(rules.BLOOD_TYPES))
        self.assertEqual(table["can_donate_to"], frozenset({"AB+"}))

    def test_can_receive_from(self) -> None:
        self.assertTrue(compatibility.can_receive_from("A+", "O-"))
        self.assertTrue(compatibility.can_receive_from("B-", "B-"))
        self.assertFalse(compatibility.can_receive_from("B-", "B+"))
        self.assertFalse(compatibility.can_receive_from("O+", "A+"))

    def test_donor_and_recipient_lists_follow_blood_type_order(self) -> None:
        self.assertEqual(compatibility.compatible_donor_types("A+"), ["A+", "A-", "O+", "O-"])
        self.assertEqual(compatibility.compatible_recipient_types("B-"), ["B+", "B-", "AB+", "AB-"])

    def test_unknown_blood_type_is_validation_error(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            compatibility.compatibility("C+")

        self.assertEqual(ctx.exception.field, "blood_type")

    def test_suggest_substitutes_keeps_o_negative_last(self) -> None:
        suggestion = compatibility.suggest_substitutes(
            "A+",
            5,
            {"A+": 2, "O+": 4, "O-": 10, "A-": 1, "B+": 9},
        )

        self.assertEqual(suggestion["exact_available"], 2)
        self.assertEqual(suggestion["shortfall"], 3)
        self.assertEqual(
            [item["blood_type"] for item in suggestion["substitutes"]],
            ["O+", "A-", "O-"],
        )

    def test_suggest_substitutes_empty_without_shortfall(self) -> None:
        suggestion = compatibility.suggest_substitutes("O+", 2, {"O+": 5, "O-": 3})

        self.assertEqual(suggestion["shortfall"], 0)
        self.assertEqual(suggestion["substitutes"], [])


class RulesTests(SimpleTestCase):
    def test_terminal_statuses_have_no_outgoing_transitions(self) -> None:
        self.assertEqual(
            rules.REQUEST_TERMINAL_STATUSES,
            frozenset({"fulfilled", "rejected", "cancelled"}),
        )

    def test_every_action_starts_from_a_non_terminal_status(self) -> None:
        for action, sources in rules.REQUEST_ACTIONS.items():
            with self.subTest(action=action):
                self.assertFalse(sources & rules.REQUEST_TERMINAL_STATUSES)

    def test_shelf_life_per_component(self) -> None:
        self.assertEqual(rules.shelf_life("whole_blood"), timedelta(days=35))
        self.assertEqual(rules.shelf_life("platelets"), timedelta(days=5))
        with self.assertRaises(ValueError):
            rules.shelf_life("serum")

    @override_settings(BLOODBANK_LOW_STOCK_THRESHOLDS={"O-": 3})
    def test_low_stock_threshold_override(self) -> None:
        self.assertEqual(rules.low_stock_threshold("O-"), 3)
        self.assertEqual(rules.low_stock_threshold("O+"), 15)


# ── InventoryUnit store ─────────────────────────────────────────────────────


class UnitStoreTests(TestCase):
    def setUp(self) -> None:
        self.handler = Mock()
        self.store = UnitStore(Notifier(handler=self.handler))
        self.donor = _donor("O+")

    def test_add_derives_expiry_from_component_shelf_life(self) -> None:
        collected = timezone.now() - timedelta(days=1)

        whole = self.store.add(
            donor_id=self.donor.donor_id,
            blood_type="o+",
            collection_date=collected,
            actor="tech-1",
        )
        platelets = self.store.add(
            donor_id=self.donor.donor_id,
            blood_type="O+",
            collection_date=collected.isoformat(),
            component="platelets",
            units=2,
            actor="tech-1",
        )

        self.assertEqual(whole.blood_type, "O+")
        self.assertEqual(whole.expiry_date - whole.collection_date, timedelta(days=35))
        self.assertEqual(platelets.expiry_date - platelets.collection_date, timedelta(days=5))
        self.assertEqual(platelets.units, 2)
        for unit in BloodUnit.objects.all():
            self.assertGreater(unit.expiry_date, unit.collection_date)
        self.assertEqual(whole.status_code, UnitStatus.AVAILABLE)
        self.assertFalse(whole.tests_complete)

    def test_add_rejects_blood_type_mismatch(self) -> None:
        with self.assertRaises(IntegrityError):
            self.store.add(
                donor_id=self.donor.donor_id,
                blood_type="A+",
                collection_date=timezone.now(),
                actor="tech-1",
            )

        self.assertFalse(BloodUnit.objects.exists())

    def test_add_requires_known_eligible_donor(self) -> None:
        with self.assertRaises(NotFoundError):
            self.store.add(donor_id=9999, blood_type="O+", collection_date=timezone.now(), actor="tech-1")

        ineligible = _donor("O+", eligible=False)
        with self.assertRaises(ValidationError):
            self.store.add(
                donor_id=ineligible.donor_id,
                blood_type="O+",
                collection_date=timezone.now(),
                actor="tech-1",
            )

    def test_add_validates_fields(self) -> None:
        cases = [
            {"collection_date": timezone.now() + timedelta(days=2)},
            {"collection_date": "not-a-date"},
            {"units": 0},
            {"units": 1.5},
            {"component": "serum"},
            {"test_results": {"hiv": "maybe"}},
            {"test_results": {"malaria": "negative"}},
            {"storage_location": {"room": "4"}},
        ]
        for overrides in cases:
            kwargs = {
                "donor_id": self.donor.donor_id,
                "blood_type": "O+",
                "collection_date": timezone.now(),
                "actor": "tech-1",
            }
            kwargs.update(overrides)
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    self.store.add(**kwargs)

    def test_add_notifies_after_commit(self) -> None:
        with self.captureOnCommitCallbacks(execute=True):
            unit = self.store.add(
                donor_id=self.donor.donor_id,
                blood_type="O+",
                collection_date=timezone.now(),
                actor="tech-1",
                test_results={"hiv": "negative"},
                storage_location={"section": "A", "shelf": "2"},
            )

        self.handler.assert_called_once()
        event, payload = self.handler.call_args.args
        self.assertEqual(event, notifications.UNIT_ADDED)
        self.assertEqual(payload["unit_id"], unit.unit_id)
        self.assertEqual(unit.test_hiv, ScreeningResult.NEGATIVE)
        self.assertEqual(unit.storage_section, "A")

    def test_transition_reserve_tags_request_and_bumps_version(self) -> None:
        unit = _unit(self.donor, 10)
        req = _request("O+", 1)

        with self.assertLogs("bloodbank.audit", level="INFO"):
            reserved = self.store.transition(
                unit.unit_id,
                UnitStatus.AVAILABLE,
                UnitStatus.RESERVED,
                "tech-1",
                request_id=req.request_id,
            )

        self.assertEqual(reserved.status_code, UnitStatus.RESERVED)
        self.assertEqual(reserved.reserved_for_id, req.request_id)
        self.assertEqual(reserved.version_nbr, unit.version_nbr + 1)
        self.assertEqual(reserved.update_by_id, "tech-1")

    def test_transition_conflict_carries_current_status(self) -> None:
        req = _request("O+", 1)
        unit = _unit(self.donor, 10, status=UnitStatus.RESERVED, reserved_for=req)

        with self.assertRaises(ConflictError) as ctx:
            self.store.transition(unit.unit_id, UnitStatus.AVAILABLE, UnitStatus.EXPIRED, "sweeper")

        self.assertEqual(ctx.exception.current_status, UnitStatus.RESERVED)
        unit.refresh_from_db()
        self.assertEqual(unit.status_code, UnitStatus.RESERVED)

    def test_transition_outside_table_is_conflict(self) -> None:
        unit = _unit(self.donor, 10, status=UnitStatus.USED)

        with self.assertRaises(ConflictError):
            self.store.transition(unit.unit_id, UnitStatus.USED, UnitStatus.AVAILABLE, "tech-1")
        with self.assertRaises(ConflictError):
            self.store.transition(unit.unit_id, UnitStatus.EXPIRED, UnitStatus.AVAILABLE, "tech-1")

    def test_reserve_requires_negative_screening(self) -> None:
        req = _request("O+", 1)
        pending = _unit(self.donor, 10, result=ScreeningResult.PENDING)
        positive = _unit(self.donor, 10, hiv=ScreeningResult.POSITIVE)

        for unit in (pending, positive):
            with self.subTest(unit=unit.unit_id):
                with self.assertRaises(ConflictError) as ctx:
                    self.store.transition(
                        unit.unit_id,
                        UnitStatus.AVAILABLE,
                        UnitStatus.RESERVED,
                        "tech-1",
                        request_id=req.request_id,
                    )
                self.assertEqual(ctx.exception.current_status, UnitStatus.AVAILABLE)
                unit.refresh_from_db()
                self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)

    def test_transition_unknown_unit_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.store.transition(4242, UnitStatus.AVAILABLE, UnitStatus.EXPIRED, "tech-1")

    def test_query_orders_by_expiry_then_id(self) -> None:
        late = _unit(self.donor, 20)
        early = _unit(self.donor, 5)
        tie = BloodUnit.objects.create(
            blood_type="O+",
            collection_date=early.collection_date,
            expiry_date=early.expiry_date,
            donor=self.donor,
            create_by_id="seed",
            update_by_id="seed",
        )

        ordered = list(self.store.query(blood_type="O+").values_list("unit_id", flat=True))

        self.assertEqual(ordered, [early.unit_id, tie.unit_id, late.unit_id])
        passed = list(self.store.query(tests_passed=True).values_list("unit_id", flat=True))
        self.assertEqual(passed, [early.unit_id, late.unit_id])

    def test_update_test_results_is_partial(self) -> None:
        unit = _unit(self.donor, 10, result=ScreeningResult.PENDING)

        updated = self.store.update_test_results(unit.unit_id, {"hiv": "negative", "syphilis": "NEGATIVE"}, "lab-1")

        self.assertEqual(updated.test_hiv, ScreeningResult.NEGATIVE)
        self.assertEqual(updated.test_syphilis, ScreeningResult.NEGATIVE)
        self.assertEqual(updated.test_hepatitis_b, ScreeningResult.PENDING)
        self.assertFalse(updated.tests_complete)

    def test_update_test_results_refused_on_used_and_expired(self) -> None:
        for status in (UnitStatus.USED, UnitStatus.EXPIRED):
            unit = _unit(self.donor, 10, status=status)
            with self.subTest(status=status):
                with self.assertRaises(ConflictError) as ctx:
                    self.store.update_test_results(unit.unit_id, {"hiv": "positive"}, "lab-1")
                self.assertEqual(ctx.exception.current_status, status)

    def test_positive_result_on_reserved_unit_is_logged(self) -> None:
        req = _request("O+", 1)
        unit = _unit(self.donor, 10, status=UnitStatus.RESERVED, reserved_for=req)

        with self.assertLogs("inventory.services.unit_store", level="WARNING"):
            self.store.update_test_results(unit.unit_id, {"hepatitis_c": "positive"}, "lab-1")

    def test_update_details(self) -> None:
        unit = _unit(self.donor, 10)

        updated = self.store.update_details(
            unit.unit_id,
            "tech-2",
            storage_location={"section": "B", "shelf": "1", "position": "7"},
            notes="Moved to fridge B",
        )

        self.assertEqual(updated.storage_position, "7")
        self.assertEqual(updated.notes_text, "Moved to fridge B")
        self.assertEqual(serialize_unit(updated)["storage_location"]["section"], "B")

    def test_transition_to_used_records_consuming_request(self) -> None:
        req = _request("O+", 1)
        unit = _unit(self.donor, 10, status=UnitStatus.RESERVED, reserved_for=req)

        self.store.transition(unit.unit_id, UnitStatus.RESERVED, UnitStatus.USED, "nurse-1", request_id=req.request_id)

        unit.refresh_from_db()
        self.assertEqual(unit.status_code, UnitStatus.USED)
        self.assertIsNone(unit.reserved_for_id)
        self.assertEqual(unit.used_for_id, req.request_id)

    def test_update_rejects_bad_location_before_writing_tests(self) -> None:
        unit = _unit(self.donor, 10, hiv=ScreeningResult.PENDING)

        with self.assertRaises(ValidationError):
            self.store.update(
                unit.unit_id,
                "lab-1",
                test_results={"hiv": "positive"},
                storage_location={"bogus": "x"},
            )

        unit.refresh_from_db()
        self.assertEqual(unit.test_hiv, ScreeningResult.PENDING)
        self.assertEqual(unit.version_nbr, 1)

    def test_update_applies_tests_and_details_together(self) -> None:
        unit = _unit(self.donor, 10, hiv=ScreeningResult.PENDING)

        updated = self.store.update(
            unit.unit_id,
            "lab-1",
            test_results={"hiv": "negative"},
            storage_location={"section": "C"},
        )

        self.assertEqual(updated.test_hiv, ScreeningResult.NEGATIVE)
        self.assertEqual(updated.storage_section, "C")
        self.assertTrue(updated.tests_passed)

    def test_delete_blocked_for_committed_units(self) -> None:
        req = _request("O+", 1)
        reserved = _unit(self.donor, 10, status=UnitStatus.RESERVED, reserved_for=req)
        used = _unit(self.donor, 10, status=UnitStatus.USED)
        expired = _unit(self.donor, -1, status=UnitStatus.EXPIRED)

        for unit in (reserved, used):
            with self.subTest(status=unit.status_code):
                with self.assertRaises(ConflictError):
                    self.store.delete(unit.unit_id, "tech-1")
        self.store.delete(expired.unit_id, "tech-1")

        self.assertEqual(BloodUnit.objects.count(), 2)

    def test_list_expiring_within_days(self) -> None:
        soon = _unit(self.donor, 2)
        _unit(self.donor, 30)
        _unit(self.donor, 1, status=UnitStatus.USED)

        page = self.store.list({"expiring_within_days": "3"})

        self.assertEqual([unit.unit_id for unit in page["items"]], [soon.unit_id])
        self.assertEqual(page["count"], 1)

    @override_settings(BLOODBANK_PAGE_SIZE=2, BLOODBANK_MAX_PAGE_SIZE=3)
    def test_list_is_paged_and_capped(self) -> None:
        for days in range(1, 6):
            _unit(self.donor, days)

        first = self.store.list()
        capped = self.store.list(limit=50, page=2)

        self.assertEqual(first["limit"], 2)
        self.assertEqual(first["pages"], 3)
        self.assertEqual(capped["limit"], 3)
        self.assertEqual(len(capped["items"]), 2)

    def test_list_search_matches_section_and_blood_type(self) -> None:
        fridge = _unit(self.donor, 10)
        BloodUnit.objects.filter(pk=fridge.unit_id).update(storage_section="Fridge-North")
        _unit(self.donor, 12)
        other = _unit(_donor("AB-"), 15)

        by_section = self.store.list({"search": "north"})
        by_type = self.store.list({"search": "ab"})

        self.assertEqual([unit.unit_id for unit in by_section["items"]], [fridge.unit_id])
        self.assertEqual([unit.unit_id for unit in by_type["items"]], [other.unit_id])

    def test_list_rejects_unknown_status(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.list({"status": "lost"})

    def test_available_units_counts_only_allocatable_lots(self) -> None:
        _unit(self.donor, 10, units=3)
        _unit(self.donor, 10, units=2, hepatitis_b=ScreeningResult.POSITIVE)
        _unit(self.donor, -1, units=4)
        _unit(self.donor, 10, units=5, status=UnitStatus.USED)

        self.assertEqual(self.store.available_units("O+"), 3)
        self.assertEqual(self.store.stock_levels(["O+", "A-"]), {"O+": 3, "A-": 0})

    def test_summary(self) -> None:
        _unit(self.donor, 2)
        _unit(self.donor, 6)
        _unit(self.donor, 20)
        _unit(self.donor, -3, status=UnitStatus.EXPIRED)

        summary = self.store.summary()

        self.assertEqual(summary["by_status"][UnitStatus.AVAILABLE], 3)
        self.assertEqual(summary["expired_count"], 1)
        self.assertEqual(summary["expiring"]["within_urgent_days"], 1)
        self.assertEqual(summary["expiring"]["within_warning_days"], 2)
        o_pos = next(entry for entry in summary["blood_types"] if entry["blood_type"] == "O+")
        self.assertEqual(o_pos["available_units"], 3)
        self.assertTrue(o_pos["is_low"])
        self.assertIn("O+", [item["blood_type"] for item in summary["low_stock"]])


# ── Allocation ──────────────────────────────────────────────────────────────


class AllocationEngineTests(TestCase):
    def setUp(self) -> None:
        self.store, self.engine, _ = _services()
        self.donor = _donor("O+")

    def test_fefo_selects_earliest_expiring_lots(self) -> None:
        day20 = _unit(self.donor, 20)
        day5 = _unit(self.donor, 5)
        day10 = _unit(self.donor, 10)
        req = _request("O+", 2)

        entries = self.engine.allocate(req, 2, "approver-1")

        self.assertEqual([entry["unit_id"] for entry in entries], [day5.unit_id, day10.unit_id])
        day20.refresh_from_db()
        self.assertEqual(day20.status_code, UnitStatus.AVAILABLE)
        for unit in (day5, day10):
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.RESERVED)
            self.assertEqual(unit.reserved_for_id, req.request_id)

    def test_indivisible_lot_credits_only_remaining_need(self) -> None:
        small = _unit(self.donor, 3, units=1)
        large = _unit(self.donor, 4, units=3)
        req = _request("O+", 2)

        entries = self.engine.allocate(req, 2, "approver-1")

        self.assertEqual(
            [(entry["unit_id"], entry["units"], entry["lot_units"]) for entry in entries],
            [(small.unit_id, 1, 1), (large.unit_id, 1, 3)],
        )
        self.assertLessEqual(sum(entry["units"] for entry in entries), req.units_required)

    def test_exact_type_only(self) -> None:
        _unit(_donor("O-"), 5, units=4)
        req = _request("O+", 1)

        with self.assertRaises(InsufficientStockError) as ctx:
            self.engine.allocate(req, 1, "approver-1")

        self.assertEqual(ctx.exception.available, 0)

    def test_positive_marker_is_never_allocated(self) -> None:
        flagged = _unit(self.donor, 1, hepatitis_b=ScreeningResult.POSITIVE)
        clean = _unit(self.donor, 9)
        req = _request("O+", 1)

        entries = self.engine.allocate(req, 1, "approver-1")

        self.assertEqual([entry["unit_id"] for entry in entries], [clean.unit_id])
        self.assertNotIn(flagged.unit_id, self.store.allocatable("O+").values_list("unit_id", flat=True))

    def test_shortfall_fails_without_mutation(self) -> None:
        units = [_unit(self.donor, days) for days in (3, 6)]
        req = _request("O+", 5)

        with self.assertRaises(InsufficientStockError) as ctx:
            self.engine.allocate(req, 5, "approver-1")

        self.assertEqual(ctx.exception.available, 2)
        self.assertEqual(ctx.exception.shortfall, 3)
        for unit in units:
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)
            self.assertEqual(unit.version_nbr, 1)

    def test_accept_partial_reserves_what_is_eligible(self) -> None:
        _unit(self.donor, 3)
        req = _request("O+", 4)

        entries = self.engine.allocate(req, 4, "approver-1", accept_partial=True)

        self.assertEqual(sum(entry["units"] for entry in entries), 1)

    def test_accept_partial_with_no_stock_still_fails(self) -> None:
        req = _request("O+", 1)

        with self.assertRaises(InsufficientStockError):
            self.engine.allocate(req, 1, "approver-1", accept_partial=True)

    def test_lost_race_skips_to_next_lot(self) -> None:
        first = _unit(self.donor, 2)
        second = _unit(self.donor, 4)
        third = _unit(self.donor, 8)
        req = _request("O+", 2)
        real_transition = self.store.transition

        def contended(unit_id, from_expected, to, actor, **kwargs):
            if unit_id == first.unit_id and to == UnitStatus.RESERVED:
                raise ConflictError("taken", current_status=UnitStatus.RESERVED)
            return real_transition(unit_id, from_expected, to, actor, **kwargs)

        with patch.object(self.store, "transition", side_effect=contended):
            with self.assertLogs("inventory.services.allocation", level="WARNING"):
                entries = self.engine.allocate(req, 2, "approver-1")

        self.assertEqual([entry["unit_id"] for entry in entries], [second.unit_id, third.unit_id])

    def test_lost_race_shortfall_releases_attempt(self) -> None:
        first = _unit(self.donor, 2)
        second = _unit(self.donor, 4)
        req = _request("O+", 2)
        real_transition = self.store.transition

        def contended(unit_id, from_expected, to, actor, **kwargs):
            if unit_id == second.unit_id and to == UnitStatus.RESERVED:
                raise ConflictError("taken", current_status=UnitStatus.RESERVED)
            return real_transition(unit_id, from_expected, to, actor, **kwargs)

        with patch.object(self.store, "transition", side_effect=contended):
            with self.assertRaises(InsufficientStockError) as ctx:
                self.engine.allocate(req, 2, "approver-1")

        self.assertEqual(ctx.exception.available, 1)
        first.refresh_from_db()
        self.assertEqual(first.status_code, UnitStatus.AVAILABLE)
        self.assertIsNone(first.reserved_for_id)

    def test_release_and_fulfill(self) -> None:
        lots = [_unit(self.donor, days) for days in (2, 4)]
        req = _request("O+", 2)
        req.allocated_blood = self.engine.allocate(req, 2, "approver-1")
        req.save()

        consumed = self.engine.fulfill(req, "nurse-1")

        self.assertEqual(sorted(consumed), sorted(unit.unit_id for unit in lots))
        for unit in lots:
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.USED)
            self.assertEqual(unit.used_for_id, req.request_id)
            self.assertIsNone(unit.reserved_for_id)
        self.assertEqual(self.engine.release(req, "nurse-1"), [])


# ── Request lifecycle ───────────────────────────────────────────────────────


class RequestLifecycleTests(TestCase):
    def setUp(self) -> None:
        self.handler = Mock()
        self.store, self.engine, self.lifecycle = _services(self.handler)

    def _create(self, blood_type: str, units: int, urgency: str = "medium") -> BloodRequest:
        return self.lifecycle.create_request(
            hospital_id="H-7",
            blood_type=blood_type,
            units=units,
            urgency=urgency,
            required_by=timezone.now() + timedelta(hours=6),
            reason="Trauma",
            requested_by="clerk-9",
        )

    def test_low_urgency_request_with_stock_auto_approves_and_fulfills_fefo(self) -> None:
        donor = _donor("O+")
        day5 = _unit(donor, 5)
        day10 = _unit(donor, 10)
        day20 = _unit(donor, 20)

        req = self._create("O+", 2, urgency="low")

        self.assertEqual(req.status_code, RequestStatus.APPROVED)
        self.assertTrue(req.auto_approved)
        self.assertEqual(req.approved_by, rules.SYSTEM_ACTOR)
        self.assertEqual(req.allocated_blood, [])
        self.assertFalse(BloodUnit.objects.filter(status_code=UnitStatus.RESERVED).exists())

        fulfilled = self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1")

        self.assertEqual(fulfilled.status_code, RequestStatus.FULFILLED)
        self.assertEqual(
            [entry["unit_id"] for entry in fulfilled.allocated_blood],
            [day5.unit_id, day10.unit_id],
        )
        day20.refresh_from_db()
        self.assertEqual(day20.status_code, UnitStatus.AVAILABLE)
        self.assertEqual(
            set(BloodUnit.objects.filter(used_for=req).values_list("unit_id", flat=True)),
            {day5.unit_id, day10.unit_id},
        )

    def test_auto_approval_needs_low_urgency_and_stock(self) -> None:
        _unit(_donor("A+"), 5)

        self.assertEqual(self._create("A+", 1, urgency="medium").status_code, RequestStatus.PENDING)
        self.assertEqual(self._create("A+", 2, urgency="low").status_code, RequestStatus.PENDING)

    def test_auto_approved_request_can_still_run_short(self) -> None:
        unit = _unit(_donor("B+"), 5)
        req = self._create("B+", 1, urgency="low")
        BloodUnit.objects.filter(pk=unit.pk).update(status_code=UnitStatus.USED)

        with self.assertRaises(InsufficientStockError):
            self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1")

        req.refresh_from_db()
        self.assertEqual(req.status_code, RequestStatus.APPROVED)

    def test_shortfall_on_approval_keeps_request_pending(self) -> None:
        donor = _donor("AB-")
        lots = [_unit(donor, 5), _unit(donor, 6)]
        req = self._create("AB-", 5, urgency="high")

        with self.assertRaises(InsufficientStockError) as ctx:
            self.lifecycle.transition_request(req.request_id, "approve", "approver-1")

        self.assertEqual(ctx.exception.available, 2)
        req.refresh_from_db()
        self.assertEqual(req.status_code, RequestStatus.PENDING)
        for unit in lots:
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)

        approved = self.lifecycle.transition_request(
            req.request_id, "approve", "approver-1", accept_partial=True
        )
        self.assertEqual(approved.status_code, RequestStatus.APPROVED)
        self.assertEqual(approved.allocated_units, 2)
        self.assertEqual(approved.remaining_units, 3)

        partial = self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1")
        self.assertEqual(partial.status_code, RequestStatus.PARTIALLY_FULFILLED)

        more = [_unit(donor, 7) for _ in range(3)]
        completed = self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1")
        self.assertEqual(completed.status_code, RequestStatus.FULFILLED)
        self.assertEqual(completed.allocated_units, completed.units_required)
        for unit in lots + more:
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.USED)

    def test_partially_fulfilled_request_will_not_accept_another_partial(self) -> None:
        donor = _donor("B-")
        _unit(donor, 5)
        req = self._create("B-", 3)
        self.lifecycle.transition_request(req.request_id, "approve", "approver-1", accept_partial=True)
        self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1")
        _unit(donor, 6)

        with self.assertRaises(InsufficientStockError):
            self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1", accept_partial=True)

        req.refresh_from_db()
        self.assertEqual(req.status_code, RequestStatus.PARTIALLY_FULFILLED)

    def test_cancel_releases_reserved_lots(self) -> None:
        donor = _donor("A-")
        lots = [_unit(donor, 3), _unit(donor, 8)]
        req = self._create("A-", 2)
        self.lifecycle.transition_request(req.request_id, "approve", "approver-1")
        for unit in lots:
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.RESERVED)

        cancelled = self.lifecycle.transition_request(req.request_id, "cancel", "clerk-9")

        self.assertEqual(cancelled.status_code, RequestStatus.CANCELLED)
        self.assertEqual(cancelled.cancelled_by, "clerk-9")
        for unit in lots:
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)
            self.assertIsNone(unit.reserved_for_id)

    def test_reject_requires_reason(self) -> None:
        req = self._create("O-", 1)

        with self.assertRaises(ValidationError):
            self.lifecycle.transition_request(req.request_id, "reject", "approver-1")

        rejected = self.lifecycle.transition_request(
            req.request_id, "reject", "approver-1", reason="Duplicate request"
        )
        self.assertEqual(rejected.status_code, RequestStatus.REJECTED)
        self.assertEqual(rejected.rejection_reason, "Duplicate request")
        self.assertEqual(rejected.processed_by, "approver-1")

    def test_no_transition_out_of_terminal_states(self) -> None:
        for status in rules.REQUEST_TERMINAL_STATUSES:
            req = _request("O+", 1, status=status)
            for action in rules.REQUEST_ACTIONS:
                with self.subTest(status=status, action=action):
                    with self.assertRaises(ConflictError) as ctx:
                        self.lifecycle.transition_request(
                            req.request_id, action, "approver-1", reason="x"
                        )
                    self.assertEqual(ctx.exception.current_status, status)

    def test_unknown_action_and_request(self) -> None:
        req = self._create("O+", 1)

        with self.assertRaises(ValidationError):
            self.lifecycle.transition_request(req.request_id, "archive", "approver-1")
        with self.assertRaises(NotFoundError):
            self.lifecycle.transition_request(999999, "approve", "approver-1")

    def test_lost_status_race_compensates_reservation(self) -> None:
        donor = _donor("O+")
        unit = _unit(donor, 5)
        req = self._create("O+", 1)
        real_allocate = self.engine.allocate

        def allocate_then_cancel(request, *args, **kwargs):
            entries = real_allocate(request, *args, **kwargs)
            BloodRequest.objects.filter(pk=request.pk).update(status_code=RequestStatus.CANCELLED)
            return entries

        with patch.object(self.engine, "allocate", side_effect=allocate_then_cancel):
            with self.assertRaises(ConflictError) as ctx:
                self.lifecycle.transition_request(req.request_id, "approve", "approver-1")

        self.assertEqual(ctx.exception.current_status, RequestStatus.CANCELLED)
        unit.refresh_from_db()
        self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)
        self.assertIsNone(unit.reserved_for_id)

    def test_allocation_sum_never_exceeds_units_required(self) -> None:
        donor = _donor("O+")
        _unit(donor, 5, units=4)
        req = self._create("O+", 3)

        approved = self.lifecycle.transition_request(req.request_id, "approve", "approver-1")
        fulfilled = self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1")

        self.assertEqual(approved.allocated_units, 3)
        self.assertEqual(approved.allocated_blood[0]["lot_units"], 4)
        self.assertEqual(fulfilled.status_code, RequestStatus.FULFILLED)

    def test_create_validation(self) -> None:
        base = {
            "hospital_id": "H-7",
            "blood_type": "O+",
            "units": 1,
            "required_by": timezone.now() + timedelta(hours=1),
            "reason": "Trauma",
            "requested_by": "clerk-9",
        }
        cases = [
            {"required_by": timezone.now() - timedelta(minutes=1)},
            {"units": 0},
            {"blood_type": "Z"},
            {"urgency": "whenever"},
            {"reason": "  "},
            {"hospital_id": ""},
        ]
        for overrides in cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ValidationError):
                    self.lifecycle.create_request(**{**base, **overrides})
        self.assertFalse(BloodRequest.objects.exists())

    def test_update_request_only_while_pending(self) -> None:
        req = self._create("O+", 1)

        updated = self.lifecycle.update_request(
            req.request_id,
            {"units_required": 3, "urgency_level": "critical", "notes": "Call ward 4"},
            "clerk-9",
        )

        self.assertEqual(updated.units_required, 3)
        self.assertEqual(updated.urgency_level, "critical")
        self.assertEqual(updated.notes_text, "Call ward 4")
        with self.assertRaises(ValidationError):
            self.lifecycle.update_request(req.request_id, {"status_code": "approved"}, "clerk-9")

        self.lifecycle.transition_request(req.request_id, "reject", "approver-1", reason="No")
        with self.assertRaises(ConflictError):
            self.lifecycle.update_request(req.request_id, {"reason": "Edited"}, "clerk-9")

    def test_delete_request_releases_reservations(self) -> None:
        unit = _unit(_donor("O+"), 5)
        req = self._create("O+", 1)
        self.lifecycle.transition_request(req.request_id, "approve", "approver-1")

        self.lifecycle.delete_request(req.request_id, "clerk-9")

        self.assertFalse(BloodRequest.objects.filter(pk=req.request_id).exists())
        unit.refresh_from_db()
        self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)
        self.assertIsNone(unit.reserved_for_id)

    def test_delete_fulfilled_request_is_conflict(self) -> None:
        req = _request("O+", 1, status=RequestStatus.FULFILLED)

        with self.assertRaises(ConflictError):
            self.lifecycle.delete_request(req.request_id, "clerk-9")

    def test_delete_request_with_consumed_units_is_conflict(self) -> None:
        req = _request("O+", 2, status=RequestStatus.CANCELLED)
        unit = _unit(_donor("O+"), 5, status=UnitStatus.USED)
        BloodUnit.objects.filter(pk=unit.unit_id).update(used_for=req)

        with self.assertRaises(ConflictError):
            self.lifecycle.delete_request(req.request_id, "clerk-9")

        unit.refresh_from_db()
        self.assertEqual(unit.used_for_id, req.request_id)
        self.assertTrue(BloodRequest.objects.filter(pk=req.request_id).exists())

    def test_urgent_requests_order(self) -> None:
        high = _request("O+", 1, urgency="high")
        critical = _request("O+", 1, urgency="critical")
        newer_high = _request("O+", 1, urgency="high", status=RequestStatus.APPROVED)
        _request("O+", 1, urgency="critical", status=RequestStatus.FULFILLED)
        _request("O+", 1, urgency="low")

        urgent = self.lifecycle.urgent_requests()

        self.assertEqual(
            [req.request_id for req in urgent],
            [critical.request_id, newer_high.request_id, high.request_id],
        )
        self.assertEqual(len(self.lifecycle.urgent_requests(limit=1)), 1)

    @override_settings(BLOODBANK_PAGE_SIZE=2)
    def test_list_requests_filters_and_pages(self) -> None:
        for _ in range(3):
            _request("A+", 1)
        _request("B+", 1, status=RequestStatus.APPROVED)

        page = self.lifecycle.list_requests({"blood_type": "a+"})
        approved = self.lifecycle.list_requests({"status": "approved"})

        self.assertEqual(page["count"], 3)
        self.assertEqual(len(page["items"]), 2)
        self.assertEqual(approved["count"], 1)
        with self.assertRaises(ValidationError):
            self.lifecycle.list_requests({"status": "archived"})

    def test_list_requests_search(self) -> None:
        trauma = _request("O+", 1, patient_condition="Multiple trauma")
        noted = _request("A+", 1, notes_text="Call ward 4 on arrival")
        _request("B+", 1)

        by_condition = self.lifecycle.list_requests({"search": "TRAUMA"})
        by_notes = self.lifecycle.list_requests({"search": "ward 4"})
        by_reason = self.lifecycle.list_requests({"search": "surgery"})

        self.assertEqual([req.request_id for req in by_condition["items"]], [trauma.request_id])
        self.assertEqual([req.request_id for req in by_notes["items"]], [noted.request_id])
        self.assertEqual(by_reason["count"], 3)

    def test_serialize_request(self) -> None:
        req = self._create("O+", 2)

        payload = serialize_request(req)

        self.assertEqual(payload["status_code"], RequestStatus.PENDING)
        self.assertEqual(payload["remaining_units"], 2)
        self.assertFalse(payload["is_urgent"])
        self.assertFalse(payload["is_overdue"])


class RequestNotificationTests(TestCase):
    def setUp(self) -> None:
        self.handler = Mock()
        self.store, self.engine, self.lifecycle = _services(self.handler)

    def _events(self):
        return [call.args[0] for call in self.handler.call_args_list]

    def test_approval_and_fulfillment_events(self) -> None:
        _unit(_donor("A+"), 5, units=2)
        req = _request("A+", 2)

        with self.captureOnCommitCallbacks(execute=True):
            self.lifecycle.transition_request(req.request_id, "approve", "approver-1")
        with self.captureOnCommitCallbacks(execute=True):
            self.lifecycle.transition_request(req.request_id, "fulfill", "nurse-1")

        self.assertIn(notifications.REQUEST_APPROVED, self._events())
        self.assertIn(notifications.REQUEST_FULFILLED, self._events())

    def test_partial_fulfillment_and_rejection_events(self) -> None:
        _unit(_donor("A+"), 5)
        partial = _request("A+", 2)
        rejected = _request("A+", 1)

        with self.captureOnCommitCallbacks(execute=True):
            self.lifecycle.transition_request(
                partial.request_id, "approve", "approver-1", accept_partial=True
            )
            self.lifecycle.transition_request(partial.request_id, "fulfill", "nurse-1")
            self.lifecycle.transition_request(
                rejected.request_id, "reject", "approver-1", reason="Out of scope"
            )

        self.assertIn(notifications.REQUEST_PARTIALLY_FULFILLED, self._events())
        self.assertIn(notifications.REQUEST_REJECTED, self._events())

    def test_low_stock_fires_only_on_crossing(self) -> None:
        donor = _donor("O-")
        for days in range(1, 11):
            _unit(donor, days + 2)
        first = _request("O-", 1)
        second = _request("O-", 1)

        with self.captureOnCommitCallbacks(execute=True):
            self.lifecycle.transition_request(first.request_id, "approve", "approver-1")
        with self.captureOnCommitCallbacks(execute=True):
            self.lifecycle.transition_request(second.request_id, "approve", "approver-1")

        low_stock = [call.args[1] for call in self.handler.call_args_list if call.args[0] == notifications.LOW_STOCK]
        self.assertEqual(len(low_stock), 1)
        self.assertEqual(low_stock[0]["blood_type"], "O-")
        self.assertEqual(low_stock[0]["available_units"], 9)
        self.assertEqual(low_stock[0]["min_required"], 10)

    def test_no_events_when_transition_fails(self) -> None:
        req = _request("AB+", 3)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(InsufficientStockError):
                self.lifecycle.transition_request(req.request_id, "approve", "approver-1")

        self.assertEqual(callbacks, [])
        self.handler.assert_not_called()

    def test_handler_failure_is_logged_not_raised(self) -> None:
        self.handler.side_effect = RuntimeError("smtp down")
        req = _request("O+", 1)

        with self.assertLogs("inventory.notifications", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                rejected = self.lifecycle.transition_request(
                    req.request_id, "reject", "approver-1", reason="No stock expected"
                )

        self.assertEqual(rejected.status_code, RequestStatus.REJECTED)

    @override_settings(BLOODBANK_NOTIFY_HANDLER="inventory.notifications.log_notification")
    def test_default_handler_logs_events(self) -> None:
        notifier = Notifier()

        with self.assertLogs("inventory.notifications", level="INFO") as logs:
            with self.captureOnCommitCallbacks(execute=True):
                notifier.notify(notifications.LOW_STOCK, {"blood_type": "O-"})

        self.assertIn("event=low_stock", logs.output[0])


# ── Expiry sweeper ──────────────────────────────────────────────────────────


class ExpirySweeperTests(TestCase):
    def setUp(self) -> None:
        self.handler = Mock()
        store, _, _ = _services(self.handler)
        self.store = store
        self.sweeper = ExpirySweeper(store)
        self.donor = _donor("B+")

    def test_sweep_expires_only_available_units(self) -> None:
        req = _request("B+", 1, status=RequestStatus.APPROVED)
        available = _unit(self.donor, 1)
        reserved = _unit(self.donor, 1, status=UnitStatus.RESERVED, reserved_for=req)
        fresh = _unit(self.donor, 10)

        count = self.sweeper.sweep_expired(now=timezone.now() + timedelta(days=3))

        self.assertEqual(count, 1)
        available.refresh_from_db()
        reserved.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(available.status_code, UnitStatus.EXPIRED)
        self.assertEqual(available.update_by_id, rules.SYSTEM_ACTOR)
        self.assertEqual(reserved.status_code, UnitStatus.RESERVED)
        self.assertEqual(fresh.status_code, UnitStatus.AVAILABLE)

    def test_sweep_is_idempotent(self) -> None:
        _unit(self.donor, -2)
        _unit(self.donor, -1, hiv=ScreeningResult.PENDING)

        self.assertEqual(self.sweeper.sweep_expired(), 2)
        self.assertEqual(self.sweeper.sweep_expired(), 0)

    def test_sweep_skips_units_lost_to_concurrent_writes(self) -> None:
        unit = _unit(self.donor, -1)

        with patch.object(
            self.store,
            "transition",
            side_effect=ConflictError("taken", current_status=UnitStatus.RESERVED),
        ):
            self.assertEqual(self.sweeper.sweep_expired(), 0)

        unit.refresh_from_db()
        self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)

    @override_settings(BLOODBANK_LOW_STOCK_THRESHOLDS={"B+": 2})
    def test_sweep_reports_low_stock_crossing(self) -> None:
        _unit(self.donor, -1)
        _unit(self.donor, 5)

        with self.captureOnCommitCallbacks(execute=True):
            self.sweeper.sweep_expired()

        self.handler.assert_called_once()
        event, payload = self.handler.call_args.args
        self.assertEqual(event, notifications.LOW_STOCK)
        self.assertEqual(payload["previous_units"], 2)
        self.assertEqual(payload["available_units"], 1)

    def test_sweep_leaves_allocation_possible_for_fresh_units(self) -> None:
        _unit(self.donor, -1)
        fresh = _unit(self.donor, 4)
        self.sweeper.sweep_expired()
        req = _request("B+", 1)

        entries = AllocationEngine(self.store).allocate(req, 1, "approver-1")

        self.assertEqual([entry["unit_id"] for entry in entries], [fresh.unit_id])

    def test_management_command(self) -> None:
        unit = _unit(self.donor, -1)
        out = StringIO()

        call_command("sweep_expired_units", stdout=out)

        self.assertIn("Expired 1 blood unit(s)", out.getvalue())
        unit.refresh_from_db()
        self.assertEqual(unit.status_code, UnitStatus.EXPIRED)

    def test_management_command_as_of(self) -> None:
        _unit(self.donor, 2)
        out = StringIO()

        as_of = (timezone.now() + timedelta(days=5)).isoformat()
        call_command("sweep_expired_units", "--as-of", as_of, stdout=out)

        self.assertIn("Expired 1 blood unit(s)", out.getvalue())
        with self.assertRaises(CommandError):
            call_command("sweep_expired_units", "--as-of", "yesterday")
