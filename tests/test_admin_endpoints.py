from __future__ import annotations

import unittest
from datetime import datetime, time, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import func, select

from qrattend.db import get_db
from qrattend.main import app
from qrattend.models import AttendanceEvent, AttendanceEventType, DeviceBinding, DeviceFingerprint
from qrattend.security import reset_attempts
from qrattend.services.devices import bind_device, store_fingerprint
from qrattend.settings import Settings

from support import (
    MANAGER_PASSWORD,
    OWNER_PASSWORD,
    make_session_factory,
    override_get_db,
    seed_employee,
    seed_event,
    seed_manager,
    seed_owner,
    seed_workplace,
)


class AdminEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_attempts()
        settings_patcher = patch(
            "qrattend.security.get_settings",
            return_value=Settings(jwt_secret="unit-test-secret", login_max_attempts=3),
        )
        settings_patcher.start()
        self.addCleanup(settings_patcher.stop)

        self.factory = make_session_factory()
        self.today = datetime.now(timezone.utc).date()
        with self.factory() as db:
            owner = seed_owner(db)
            workplace = seed_workplace(db, owner)
            annex = seed_workplace(db, owner, public_id="wp-annex", name="Annex")
            employee = seed_employee(db, workplace)
            outsider = seed_employee(db, annex, email="ravi@example.com")
            seed_manager(db, owner, email="assigned@example.com", workplaces=(workplace,))
            seed_manager(db, owner, email="annex@example.com", workplaces=(annex,))
            bind_device(db, employee_id=employee.id, device_token="e" * 48)
            store_fingerprint(db, employee_id=employee.id, fp_hash="f" * 64)
            todays = datetime.combine(self.today, time(0, 30), tzinfo=timezone.utc)
            seed_event(db, workplace=workplace, employee=employee, event_type=AttendanceEventType.CHECKIN, ts_utc=todays)
            seed_event(
                db,
                workplace=workplace,
                employee=employee,
                event_type=AttendanceEventType.DENIED_GPS,
                ts_utc=todays + timedelta(minutes=1),
            )
            seed_event(
                db,
                workplace=workplace,
                employee=employee,
                event_type=AttendanceEventType.CHECKIN,
                ts_utc=todays - timedelta(days=120),
            )
            self.workplace_id = workplace.id
            self.annex_id = annex.id
            self.employee_id = employee.id
            self.outsider_id = outsider.id

        app.dependency_overrides[get_db] = override_get_db(self.factory)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        reset_attempts()

    def _token(self, email: str = "owner@example.com", password: str = OWNER_PASSWORD) -> str:
        response = self.client.post("/api/admin/auth/login", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["access_token"]

    def _auth(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    def test_owner_and_manager_can_log_in(self) -> None:
        owner = self.client.post("/api/admin/auth/login", json={"email": "owner@example.com", "password": OWNER_PASSWORD})
        manager = self.client.post(
            "/api/admin/auth/login",
            json={"email": "assigned@example.com", "password": MANAGER_PASSWORD},
        )
        self.assertEqual(owner.json()["role"], "owner")
        self.assertEqual(manager.json()["role"], "manager")
        self.assertEqual(owner.json()["token_type"], "bearer")

    def test_failed_logins_are_rate_limited(self) -> None:
        for _ in range(3):
            response = self.client.post("/api/admin/auth/login", json={"email": "owner@example.com", "password": "bad"})
            self.assertEqual(response.json()["error"]["code"], "INVALID_CREDENTIALS")
        blocked = self.client.post("/api/admin/auth/login", json={"email": "owner@example.com", "password": OWNER_PASSWORD})
        self.assertEqual(blocked.status_code, 429)

    def test_event_listing_purges_expired_rows(self) -> None:
        response = self.client.get(
            f"/api/admin/workplaces/{self.workplace_id}/events",
            params={"day": self.today.isoformat()},
            headers=self._auth(self._token()),
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["purged"], 1)
        self.assertEqual([item["event_type"] for item in body["events"]], ["denied_gps", "checkin"])
        self.assertEqual(body["events"][0]["employee_email"], "asha@example.com")
        with self.factory() as db:
            self.assertEqual(db.scalar(select(func.count()).select_from(AttendanceEvent)), 2)

    def test_event_listing_requires_token(self) -> None:
        response = self.client.get(f"/api/admin/workplaces/{self.workplace_id}/events")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")

    def test_manager_only_sees_assigned_workplaces(self) -> None:
        token = self._token("annex@example.com", MANAGER_PASSWORD)

        forbidden = self.client.get(f"/api/admin/workplaces/{self.workplace_id}/events", headers=self._auth(token))
        allowed = self.client.get(f"/api/admin/workplaces/{self.annex_id}/events", headers=self._auth(token))

        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(forbidden.json()["error"]["code"], "FORBIDDEN")
        self.assertEqual(allowed.status_code, 200)

    def test_device_reset_clears_binding_and_fingerprint(self) -> None:
        token = self._token("assigned@example.com", MANAGER_PASSWORD)
        url = f"/api/admin/workplaces/{self.workplace_id}/employees/{self.employee_id}/device/reset"

        first = self.client.post(url, headers=self._auth(token))
        second = self.client.post(url, headers=self._auth(token))

        self.assertEqual(first.json(), {"ok": True, "employee_id": self.employee_id, "had_device": True})
        self.assertFalse(second.json()["had_device"])
        with self.factory() as db:
            self.assertIsNone(db.get(DeviceBinding, self.employee_id))
            self.assertIsNone(db.get(DeviceFingerprint, self.employee_id))

    def test_device_reset_rejects_employee_of_other_workplace(self) -> None:
        response = self.client.post(
            f"/api/admin/workplaces/{self.workplace_id}/employees/{self.outsider_id}/device/reset",
            headers=self._auth(self._token()),
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["code"], "EMPLOYEE_NOT_FOUND")

    def test_health_reports_schema_guard(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertIn("schema_guard", response.json())


if __name__ == "__main__":
    unittest.main()
