from django.db import DatabaseError
from django.test import TestCase
from rest_framework.test import APIClient
from unittest.mock import patch


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "database": "ok"})

    @patch("api.views.connection")
    def test_health_reports_database_failure(self, mocked_connection) -> None:
        mocked_connection.cursor.side_effect = DatabaseError("connection refused")
        client = APIClient()

        with self.assertLogs("api.views", level="ERROR"):
            response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["database"], "unavailable")

    def test_health_rejects_post(self) -> None:
        client = APIClient()
        response = client.post("/api/v1/health/", {}, format="json")

        self.assertEqual(response.status_code, 405)
