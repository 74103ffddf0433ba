from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from inventory import rules
from inventory.models import BloodRequest, BloodUnit, Donor, RequestStatus, ScreeningResult, UnitStatus

_NEGATIVE_PANEL = {marker: "negative" for marker in rules.TEST_MARKERS}


def _donor(blood_type: str) -> Donor:
    return Donor.objects.create(full_name="Donor", blood_type=blood_type)


def _unit(donor: Donor, expires_in_days: int, status: str = UnitStatus.AVAILABLE, **extra) -> BloodUnit:
    expiry = timezone.now() + timedelta(days=expires_in_days)
    fields = {f"test_{marker}": ScreeningResult.NEGATIVE for marker in rules.TEST_MARKERS}
    fields.update(extra)
    return BloodUnit.objects.create(
        blood_type=donor.blood_type,
        collection_date=expiry - timedelta(days=35),
        expiry_date=expiry,
        donor=donor,
        status_code=status,
        create_by_id="seed",
        update_by_id="seed",
        **fields,
    )


@override_settings(BLOODBANK_NOTIFY_HANDLER="inventory.notifications.log_notification")
class BloodUnitApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.client.credentials(HTTP_X_ACTOR_ID="tech-1")
        self.donor = _donor("A+")

    def test_add_unit(self) -> None:
        response = self.client.post(
            "/api/v1/inventory/units/",
            {
                "donor_id": self.donor.donor_id,
                "blood_type": "A+",
                "collection_date": (timezone.now() - timedelta(hours=2)).isoformat(),
                "component": "red_cells",
                "units": 2,
                "test_results": _NEGATIVE_PANEL,
                "storage_location": {"section": "F1", "shelf": "3"},
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status_code"], "available")
        self.assertEqual(body["create_by_id"], "tech-1")
        self.assertTrue(body["tests_passed"])
        self.assertEqual(body["storage_location"]["section"], "F1")
        self.assertEqual(body["days_until_expiry"], 42)

    def test_add_unit_requires_actor(self) -> None:
        client = APIClient()
        response = client.post(
            "/api/v1/inventory/units/",
            {"donor_id": self.donor.donor_id, "blood_type": "A+", "collection_date": timezone.now().isoformat()},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("actor", response.json()["errors"])

    def test_add_unit_actor_from_body(self) -> None:
        client = APIClient()
        response = client.post(
            "/api/v1/inventory/units/",
            {
                "donor_id": self.donor.donor_id,
                "blood_type": "A+",
                "collection_date": timezone.now().isoformat(),
                "actor": "tech-body",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["create_by_id"], "tech-body")

    def test_add_unit_blood_type_mismatch(self) -> None:
        response = self.client.post(
            "/api/v1/inventory/units/",
            {"donor_id": self.donor.donor_id, "blood_type": "B+", "collection_date": timezone.now().isoformat()},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "integrity_error")
        self.assertFalse(BloodUnit.objects.exists())

    def test_add_unit_unknown_donor(self) -> None:
        response = self.client.post(
            "/api/v1/inventory/units/",
            {"donor_id": 9876, "blood_type": "A+", "collection_date": timezone.now().isoformat()},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["errors"], {"donor_id": "Donor 9876 not found."})

    def test_list_units_with_filters(self) -> None:
        soon = _unit(self.donor, 2)
        _unit(self.donor, 25)
        _unit(_donor("O-"), 2)

        response = self.client.get(
            "/api/v1/inventory/units/?blood_type=A%2B&expiring_within_days=7"
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["results"][0]["unit_id"], soon.unit_id)
        self.assertEqual(body["limit"], 10)

    def test_list_units_invalid_filter(self) -> None:
        response = self.client.get("/api/v1/inventory/units/?expiring_within_days=soon")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_unit_detail_not_found(self) -> None:
        response = self.client.get("/api/v1/inventory/units/424242")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_patch_unit_tests_and_location(self) -> None:
        unit = _unit(self.donor, 10, test_hiv=ScreeningResult.PENDING)

        response = self.client.patch(
            f"/api/v1/inventory/units/{unit.unit_id}",
            {"test_results": {"hiv": "positive"}, "notes": "Quarantine"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["test_results"]["hiv"], "positive")
        self.assertFalse(body["tests_passed"])
        self.assertEqual(body["notes_text"], "Quarantine")

    def test_rejected_patch_leaves_unit_unchanged(self) -> None:
        unit = _unit(self.donor, 10, test_hiv=ScreeningResult.PENDING)

        response = self.client.patch(
            f"/api/v1/inventory/units/{unit.unit_id}",
            {"test_results": {"hiv": "positive"}, "storage_location": {"bogus": "x"}},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("storage_location", response.json()["errors"])
        unit.refresh_from_db()
        self.assertEqual(unit.test_hiv, ScreeningResult.PENDING)
        self.assertIsNone(unit.storage_section)
        self.assertEqual(unit.version_nbr, 1)

    def test_rejected_post_creates_nothing(self) -> None:
        response = self.client.post(
            "/api/v1/inventory/units/",
            {
                "donor_id": self.donor.donor_id,
                "blood_type": "A+",
                "collection_date": timezone.now().isoformat(),
                "test_results": _NEGATIVE_PANEL,
                "storage_location": {"bogus": "x"},
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(BloodUnit.objects.exists())

    def test_list_units_search(self) -> None:
        unit = _unit(self.donor, 10, storage_section="Cold-Room-2")
        _unit(self.donor, 12)

        response = self.client.get("/api/v1/inventory/units/?search=cold-room")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["unit_id"] for row in response.json()["results"]], [unit.unit_id])

    def test_patch_used_unit_test_results_conflict(self) -> None:
        unit = _unit(self.donor, 10, status=UnitStatus.USED)

        response = self.client.patch(
            f"/api/v1/inventory/units/{unit.unit_id}",
            {"test_results": {"hiv": "negative"}},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["current_status"], "used")

    def test_delete_unit(self) -> None:
        unit = _unit(self.donor, 10)
        reserved = _unit(self.donor, 10, status=UnitStatus.RESERVED)

        blocked = self.client.delete(f"/api/v1/inventory/units/{reserved.unit_id}")
        deleted = self.client.delete(f"/api/v1/inventory/units/{unit.unit_id}")

        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(list(BloodUnit.objects.values_list("unit_id", flat=True)), [reserved.unit_id])

    def test_stats(self) -> None:
        _unit(self.donor, 2)
        _unit(self.donor, -1, status=UnitStatus.EXPIRED)

        response = self.client.get("/api/v1/inventory/stats")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["by_status"]["available"], 1)
        self.assertEqual(body["expired_count"], 1)
        self.assertEqual(len(body["blood_types"]), 8)
        self.assertEqual(body["expiring"]["within_urgent_days"], 1)

    def test_compatibility_with_substitutes(self) -> None:
        _unit(_donor("O-"), 5)
        _unit(_donor("A-"), 5)

        response = self.client.get("/api/v1/inventory/compatibility/A+?units=2")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["can_receive_from"], ["A+", "A-", "O+", "O-"])
        self.assertEqual(body["can_donate_to"], ["A+", "AB+"])
        self.assertEqual(body["substitution"]["shortfall"], 2)
        self.assertEqual(
            [item["blood_type"] for item in body["substitution"]["substitutes"]],
            ["A-", "O-"],
        )

    def test_compatibility_unknown_type(self) -> None:
        response = self.client.get("/api/v1/inventory/compatibility/Q")

        self.assertEqual(response.status_code, 400)

    def test_sweep_expired_endpoint(self) -> None:
        unit = _unit(self.donor, -1)

        first = self.client.post("/api/v1/inventory/sweep-expired", {}, format="json")
        second = self.client.post("/api/v1/inventory/sweep-expired", {}, format="json")

        self.assertEqual(first.json(), {"expired_count": 1})
        self.assertEqual(second.json(), {"expired_count": 0})
        unit.refresh_from_db()
        self.assertEqual(unit.update_by_id, "tech-1")


@override_settings(BLOODBANK_NOTIFY_HANDLER="inventory.notifications.log_notification")
class BloodRequestApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        self.client.credentials(HTTP_X_ACTOR_ID="clerk-1")

    def _create(self, blood_type: str = "O+", units: int = 1, urgency: str = "medium") -> dict:
        response = self.client.post(
            "/api/v1/inventory/requests/",
            {
                "hospital_id": "H-22",
                "blood_type": blood_type,
                "units_required": units,
                "urgency_level": urgency,
                "required_by": (timezone.now() + timedelta(hours=4)).isoformat(),
                "reason": "Post-partum haemorrhage",
                "patient_condition": "Stable",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def test_create_request(self) -> None:
        body = self._create()

        self.assertEqual(body["status_code"], "pending")
        self.assertEqual(body["requested_by"], "clerk-1")
        self.assertEqual(body["allocated_blood"], [])

    def test_create_request_auto_approves(self) -> None:
        _unit(_donor("O+"), 5)

        body = self._create(urgency="low")

        self.assertEqual(body["status_code"], "approved")
        self.assertTrue(body["auto_approved"])
        self.assertEqual(body["approved_by"], "system")

    def test_create_request_validation(self) -> None:
        response = self.client.post(
            "/api/v1/inventory/requests/",
            {
                "hospital_id": "H-22",
                "blood_type": "O+",
                "units_required": 1,
                "required_by": (timezone.now() - timedelta(days=1)).isoformat(),
                "reason": "Late",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("required_by", response.json()["errors"])

    def test_approve_fulfill_flow(self) -> None:
        donor = _donor("O+")
        first = _unit(donor, 3)
        _unit(donor, 9)
        created = self._create(units=1)
        url = f"/api/v1/inventory/requests/{created['request_id']}"

        self.client.credentials(HTTP_X_ACTOR_ID="approver-1")
        approved = self.client.post(f"{url}/approve", {}, format="json")
        self.client.credentials(HTTP_X_ACTOR_ID="nurse-1")
        fulfilled = self.client.post(f"{url}/fulfill", {}, format="json")

        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()["approved_by"], "approver-1")
        self.assertEqual(approved.json()["allocated_blood"][0]["unit_id"], first.unit_id)
        self.assertEqual(fulfilled.status_code, 200)
        self.assertEqual(fulfilled.json()["status_code"], "fulfilled")
        first.refresh_from_db()
        self.assertEqual(first.status_code, UnitStatus.USED)

    def test_approve_shortfall_returns_available(self) -> None:
        _unit(_donor("AB-"), 3)
        _unit(_donor("AB-"), 4)
        created = self._create(blood_type="AB-", units=5, urgency="high")

        response = self.client.post(
            f"/api/v1/inventory/requests/{created['request_id']}/approve",
            {},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["code"], "insufficient_stock")
        self.assertEqual(body["available"], 2)
        self.assertEqual(body["shortfall"], 3)
        self.assertEqual(
            BloodRequest.objects.get(pk=created["request_id"]).status_code,
            RequestStatus.PENDING,
        )

        partial = self.client.post(
            f"/api/v1/inventory/requests/{created['request_id']}/approve",
            {"accept_partial": True},
            format="json",
        )
        self.assertEqual(partial.status_code, 200)
        self.assertEqual(partial.json()["allocated_units"], 2)

    def test_cancel_releases_units(self) -> None:
        donor = _donor("B+")
        units = [_unit(donor, 3), _unit(donor, 5)]
        created = self._create(blood_type="B+", units=2)
        self.client.post(f"/api/v1/inventory/requests/{created['request_id']}/approve", {}, format="json")

        response = self.client.post(
            f"/api/v1/inventory/requests/{created['request_id']}/cancel",
            {},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status_code"], "cancelled")
        for unit in units:
            unit.refresh_from_db()
            self.assertEqual(unit.status_code, UnitStatus.AVAILABLE)
            self.assertIsNone(unit.reserved_for_id)

    def test_reject_then_terminal_conflict(self) -> None:
        created = self._create()
        url = f"/api/v1/inventory/requests/{created['request_id']}"

        missing_reason = self.client.post(f"{url}/reject", {}, format="json")
        rejected = self.client.post(f"{url}/reject", {"reason": "Duplicate"}, format="json")
        reopened = self.client.post(f"{url}/approve", {}, format="json")

        self.assertEqual(missing_reason.status_code, 400)
        self.assertEqual(rejected.status_code, 200)
        self.assertEqual(rejected.json()["rejection_reason"], "Duplicate")
        self.assertEqual(reopened.status_code, 409)
        self.assertEqual(reopened.json()["current_status"], "rejected")

    def test_unknown_action(self) -> None:
        created = self._create()

        response = self.client.post(
            f"/api/v1/inventory/requests/{created['request_id']}/archive",
            {},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("action", response.json()["errors"])

    def test_transition_refusal_is_logged(self) -> None:
        with self.assertLogs("inventory.views", level="INFO"):
            response = self.client.post("/api/v1/inventory/requests/9999/approve", {}, format="json")

        self.assertEqual(response.status_code, 404)

    def test_request_detail_update_and_delete(self) -> None:
        created = self._create()
        url = f"/api/v1/inventory/requests/{created['request_id']}"

        fetched = self.client.get(url)
        updated = self.client.patch(url, {"units_required": 4, "urgency_level": "high"}, format="json")
        bad = self.client.patch(url, {"blood_type": "A+"}, format="json")
        deleted = self.client.delete(url)
        missing = self.client.get(url)

        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(updated.json()["units_required"], 4)
        self.assertTrue(updated.json()["is_urgent"])
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(missing.status_code, 404)

    @override_settings(BLOODBANK_PAGE_SIZE=2)
    def test_list_and_urgent(self) -> None:
        self._create(urgency="high")
        critical = self._create(urgency="critical")
        self._create(urgency="medium")

        listing = self.client.get("/api/v1/inventory/requests/?page=2")
        urgent = self.client.get("/api/v1/inventory/requests/urgent")
        filtered = self.client.get("/api/v1/inventory/requests/?urgency_level=critical")

        self.assertEqual(listing.json()["count"], 3)
        self.assertEqual(len(listing.json()["results"]), 1)
        self.assertEqual(urgent.json()["count"], 2)
        self.assertEqual(urgent.json()["results"][0]["request_id"], critical["request_id"])
        self.assertEqual(filtered.json()["count"], 1)

    def test_list_requests_search(self) -> None:
        created = self._create()
        self.client.patch(
            f"/api/v1/inventory/requests/{created['request_id']}",
            {"notes": "Crossmatch pending"},
            format="json",
        )
        self._create(blood_type="A+")

        by_notes = self.client.get("/api/v1/inventory/requests/?search=crossmatch")
        by_reason = self.client.get("/api/v1/inventory/requests/?search=haemorrhage")

        self.assertEqual(by_notes.json()["count"], 1)
        self.assertEqual(by_notes.json()["results"][0]["request_id"], created["request_id"])
        self.assertEqual(by_reason.json()["count"], 2)

    def test_notification_dispatched_after_commit(self) -> None:
        _unit(_donor("O+"), 5)
        created = self._create()

        with patch("inventory.notifications.log_notification") as handler:
            with self.captureOnCommitCallbacks(execute=True):
                self.client.post(
                    f"/api/v1/inventory/requests/{created['request_id']}/approve",
                    {},
                    format="json",
                )

        events = [call.args[0] for call in handler.call_args_list]
        self.assertIn("request_approved", events)
