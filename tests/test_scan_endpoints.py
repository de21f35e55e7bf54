from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import delete, select

from qrattend.db import get_db
from qrattend.main import app
from qrattend.models import AttendanceEvent, AttendanceEventType, AuditLog, DeviceBinding, DeviceFingerprint
from qrattend.security import reset_attempts
from qrattend.services.devices import hash_device_token
from qrattend.settings import Settings

from support import (
    EMPLOYEE_PIN,
    FAR_LAT,
    FINGERPRINT,
    OTHER_FINGERPRINT,
    OWNER_PASSWORD,
    WORKPLACE_LAT,
    WORKPLACE_LON,
    device_cookie_from,
    make_session_factory,
    override_get_db,
    seed_employee,
    seed_owner,
    seed_workplace,
)


class ScanEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_attempts()
        self.factory = make_session_factory()
        with self.factory() as db:
            owner = seed_owner(db)
            workplace = seed_workplace(db, owner)
            self.employee_id = seed_employee(db, workplace).id
        app.dependency_overrides[get_db] = override_get_db(self.factory)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        reset_attempts()

    def _scan(self, *, token: str | None = None, **overrides):
        body = {
            "email": "asha@example.com",
            "pin": EMPLOYEE_PIN,
            "lat": WORKPLACE_LAT,
            "lon": WORKPLACE_LON,
            **FINGERPRINT,
        }
        body.update(overrides)
        headers = {"Cookie": f"qrattend_device={token}"} if token else {}
        return self.client.post("/api/scan/wp-main", json=body, headers=headers)

    def _events(self) -> list[AttendanceEvent]:
        with self.factory() as db:
            return list(db.scalars(select(AttendanceEvent).order_by(AttendanceEvent.id)).all())

    def test_unknown_workplace_uses_error_envelope(self) -> None:
        response = self.client.get("/api/scan/nope", headers={"X-Request-Id": "req-42"})

        self.assertEqual(response.status_code, 404)
        error = response.json()["error"]
        self.assertEqual(error["code"], "WORKPLACE_NOT_FOUND")
        self.assertEqual(error["request_id"], "req-42")
        self.assertEqual(response.headers["X-Request-Id"], "req-42")

    def test_first_scan_binds_device_and_checks_in(self) -> None:
        page = self.client.get("/api/scan/wp-main")
        self.assertEqual(page.json()["mode"], "first")

        response = self._scan()

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["outcome"], "RECORDED")
        self.assertEqual(body["event_type"], "checkin")
        token = device_cookie_from(response)
        self.assertEqual(len(token), 48)
        cookie_header = response.headers["set-cookie"].lower()
        self.assertIn("httponly", cookie_header)
        self.assertIn("samesite=lax", cookie_header)
        self.assertIn("path=/", cookie_header)

        page = self.client.get("/api/scan/wp-main", headers={"Cookie": f"qrattend_device={token}"})
        self.assertEqual(page.json()["mode"], "pin")

    def test_trusted_device_flows_into_choice(self) -> None:
        token = device_cookie_from(self._scan())

        prompt = self._scan(token=token, email=None)
        self.assertEqual(prompt.status_code, 200)
        self.assertEqual(prompt.json()["outcome"], "NEEDS_CHOICE")
        self.assertEqual(prompt.json()["choices"], ["break", "checkout"])
        self.assertIsNone(device_cookie_from(prompt))

        chosen = self.client.post(
            "/api/scan/wp-main/choice",
            json={"choice": "break", "lat": WORKPLACE_LAT, "lon": WORKPLACE_LON},
            headers={"Cookie": f"qrattend_device={token}"},
        )
        self.assertEqual(chosen.status_code, 200)
        self.assertEqual(chosen.json()["event_type"], "break_start")
        self.assertEqual(chosen.json()["mode"], "ON_BREAK")

        illegal = self.client.post(
            "/api/scan/wp-main/choice",
            json={"choice": "break", "lat": WORKPLACE_LAT, "lon": WORKPLACE_LON},
            headers={"Cookie": f"qrattend_device={token}"},
        )
        self.assertEqual(illegal.status_code, 422)
        self.assertEqual(illegal.json()["error"]["code"], "INVALID_CHOICE")
        self.assertEqual(illegal.json()["error"]["choices"], ["resume", "checkout"])

    def test_choice_requires_registered_device(self) -> None:
        response = self.client.post(
            "/api/scan/wp-main/choice",
            json={"choice": "checkout", "lat": WORKPLACE_LAT, "lon": WORKPLACE_LON},
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "DEVICE_NOT_REGISTERED")

    def test_choice_requires_gps(self) -> None:
        token = device_cookie_from(self._scan())
        response = self.client.post(
            "/api/scan/wp-main/choice",
            json={"choice": "checkout"},
            headers={"Cookie": f"qrattend_device={token}"},
        )
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "GPS_REQUIRED")

    def test_outside_geofence_still_keeps_new_binding(self) -> None:
        response = self._scan(lat=FAR_LAT)

        self.assertEqual(response.status_code, 403)
        error = response.json()["error"]
        self.assertEqual(error["code"], "OUTSIDE_GEOFENCE")
        self.assertEqual(error["radius_m"], 70)
        self.assertGreater(error["distance_m"], 1000)
        token = device_cookie_from(response)
        with self.factory() as db:
            binding = db.get(DeviceBinding, self.employee_id)
            self.assertEqual(binding.device_token_hash, hash_device_token(token))
        self.assertEqual([event.event_type for event in self._events()], [AttendanceEventType.DENIED_GPS])

    def test_missing_gps_is_rejected_before_binding_a_device(self) -> None:
        response = self._scan(lat=None, lon=None)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "GPS_REQUIRED")
        self.assertIsNone(device_cookie_from(response))
        self.assertEqual(self._events(), [])
        with self.factory() as db:
            self.assertIsNone(db.get(DeviceBinding, self.employee_id))
            self.assertIsNone(db.get(DeviceFingerprint, self.employee_id))

    def test_missing_gps_on_unknown_device_writes_no_denial(self) -> None:
        self._scan()

        response = self._scan(lat=None, lon=None, **OTHER_FINGERPRINT)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "GPS_REQUIRED")
        self.assertEqual([event.event_type for event in self._events()], [AttendanceEventType.CHECKIN])

    def test_missing_pin_is_a_validation_error(self) -> None:
        response = self.client.post("/api/scan/wp-main", json={"email": "asha@example.com"})
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_stale_cookie_is_cleared_on_rejection(self) -> None:
        response = self._scan(token="d" * 48, email=None)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "EMAIL_REQUIRED")
        self.assertEqual(device_cookie_from(response), "")

    def test_repeated_wrong_pin_is_rate_limited(self) -> None:
        with patch("qrattend.security.get_settings", return_value=Settings(login_max_attempts=2)):
            first = self._scan(pin="0000")
            second = self._scan(pin="0001")
            third = self._scan()

        self.assertEqual(first.json()["error"]["code"], "INVALID_PIN")
        self.assertEqual(second.status_code, 401)
        self.assertEqual(third.status_code, 429)
        self.assertEqual(third.json()["error"]["code"], "TOO_MANY_ATTEMPTS")

    def test_new_device_needs_approval_then_gets_credited(self) -> None:
        self._scan()
        with self.factory() as db:
            db.execute(delete(AttendanceEvent))
            db.commit()

        pending = self._scan(**OTHER_FINGERPRINT)
        self.assertEqual(pending.status_code, 202)
        self.assertEqual(pending.json()["outcome"], "NEEDS_APPROVAL")
        denial_id = pending.json()["denial_id"]
        self.assertIsNotNone(denial_id)

        approved = self.client.post(
            "/api/scan/wp-main/device-approval",
            json={
                "employee_email": "asha@example.com",
                "approver_email": "owner@example.com",
                "approver_password": OWNER_PASSWORD,
                "lat": WORKPLACE_LAT,
                "lon": WORKPLACE_LON,
                "denial_id": denial_id,
                **OTHER_FINGERPRINT,
            },
        )
        self.assertEqual(approved.status_code, 200)
        self.assertTrue(approved.json()["credited"])
        self.assertEqual(approved.json()["approver_role"], "owner")
        self.assertEqual(approved.json()["event_type"], "checkin")
        self.assertEqual(len(device_cookie_from(approved)), 48)
        self.assertEqual([event.event_type for event in self._events()], [AttendanceEventType.CHECKIN])

        repeat = self.client.post(
            "/api/scan/wp-main/device-approval",
            json={
                "employee_email": "asha@example.com",
                "approver_email": "owner@example.com",
                "approver_password": OWNER_PASSWORD,
                "denial_id": denial_id,
            },
        )
        self.assertEqual(repeat.status_code, 409)
        self.assertEqual(repeat.json()["error"]["code"], "DENIAL_ALREADY_RESOLVED")

        with self.factory() as db:
            actions = [row.action for row in db.scalars(select(AuditLog).order_by(AuditLog.id)).all()]
        self.assertIn("DEVICE_APPROVAL_REQUIRED", actions)
        self.assertIn("DEVICE_APPROVED", actions)
        self.assertIn("DEVICE_APPROVAL_REJECTED", actions)

    def test_bad_approver_credentials_are_rejected(self) -> None:
        response = self.client.post(
            "/api/scan/wp-main/device-approval",
            json={
                "employee_email": "asha@example.com",
                "approver_email": "owner@example.com",
                "approver_password": "nope",
            },
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "APPROVER_INVALID_CREDENTIALS")
        self.assertIsNone(device_cookie_from(response))


if __name__ == "__main__":
    unittest.main()
