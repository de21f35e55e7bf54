from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from qrattend.errors import ApiError
from qrattend.models import Employee, Workplace
from qrattend.security import verify_password
from qrattend.services.devices import (
    bind_device,
    find_employee_by_device_token,
    get_device_binding,
    get_stored_fingerprint_hash,
    new_device_token,
    store_fingerprint,
)
from qrattend.services.fingerprint import (
    FingerprintMatch,
    FingerprintTraits,
    compare_fingerprints,
    fingerprint_hash,
)
from qrattend.services.ledger import log_denied_device
from qrattend.settings import get_settings

logger = logging.getLogger("qrattend.identity")


class IdentityOutcome(str, enum.Enum):
    RESOLVED = "RESOLVED"
    NEEDS_APPROVAL = "NEEDS_APPROVAL"


class IdentityPath(str, enum.Enum):
    TRUSTED_DEVICE = "TRUSTED_DEVICE"
    FIRST_DEVICE = "FIRST_DEVICE"
    FINGERPRINT_REBIND = "FINGERPRINT_REBIND"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"


class IdentityRejectedError(ApiError):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        *,
        stale_device_cookie: bool = False,
        employee_id: int | None = None,
    ):
        super().__init__(status_code=status_code, code=code, message=message)
        self.stale_device_cookie = stale_device_cookie
        self.employee_id = employee_id


@dataclass(slots=True)
class IdentityResolution:
    outcome: IdentityOutcome
    employee: Employee
    layer: int
    path: IdentityPath
    issued_device_token: str | None = None
    denial_event_id: int | None = None
    stale_device_cookie: bool = False

    def log_fields(self) -> dict[str, Any]:
        return {
            "identity_outcome": self.outcome.value,
            "identity_layer": self.layer,
            "identity_path": self.path.value,
            "employee_id": self.employee.id,
            "denial_id": self.denial_event_id,
            "stale_device_cookie": self.stale_device_cookie,
        }


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def find_active_employee_by_email(db: Session, *, workplace_id: int, email: str | None) -> Employee | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.scalar(
        select(Employee).where(
            Employee.workplace_id == workplace_id,
            func.lower(Employee.email) == normalized,
            Employee.is_active.is_(True),
        )
    )


def resolve_scan_identity(
    db: Session,
    *,
    workplace: Workplace,
    device_token: str | None,
    email: str | None,
    pin: str | None,
    fingerprint: FingerprintTraits,
    lat: Any = None,
    lon: Any = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> IdentityResolution:
    """Work out which employee is scanning.

    Layer 1 trusts a bound device cookie (PIN still required). Layer 2 falls
    back to email + PIN and binds a first device, or rebinds silently when the
    stored fingerprint matches exactly. Anything else logs a ``denied_device``
    row and asks for owner/manager approval (layer 3).
    """
    current_fp_hash = fingerprint_hash(fingerprint)
    stale_cookie = False

    token = (device_token or "").strip()
    if token:
        employee = find_employee_by_device_token(db, workplace_id=workplace.id, device_token=token)
        if employee is not None:
            if not verify_password(pin or "", employee.pin_hash):
                raise IdentityRejectedError(
                    status_code=401,
                    code="INVALID_PIN",
                    message="Incorrect PIN.",
                    employee_id=employee.id,
                )
            store_fingerprint(db, employee_id=employee.id, fp_hash=current_fp_hash)
            return IdentityResolution(
                outcome=IdentityOutcome.RESOLVED,
                employee=employee,
                layer=1,
                path=IdentityPath.TRUSTED_DEVICE,
            )
        stale_cookie = True
        logger.info("stale_device_cookie", extra={"workplace_id": workplace.id})

    if not normalize_email(email):
        raise IdentityRejectedError(
            status_code=422,
            code="EMAIL_REQUIRED",
            message="Email is required on a new device.",
            stale_device_cookie=stale_cookie,
        )

    employee = find_active_employee_by_email(db, workplace_id=workplace.id, email=email)
    if employee is None:
        raise IdentityRejectedError(
            status_code=404,
            code="EMPLOYEE_NOT_FOUND",
            message="Employee not found for this workplace.",
            stale_device_cookie=stale_cookie,
        )
    if not verify_password(pin or "", employee.pin_hash):
        raise IdentityRejectedError(
            status_code=401,
            code="INVALID_PIN",
            message="Incorrect PIN.",
            stale_device_cookie=stale_cookie,
            employee_id=employee.id,
        )

    binding = get_device_binding(db, employee_id=employee.id)
    if binding is None:
        issued = new_device_token()
        bind_device(db, employee_id=employee.id, device_token=issued)
        store_fingerprint(db, employee_id=employee.id, fp_hash=current_fp_hash)
        return IdentityResolution(
            outcome=IdentityOutcome.RESOLVED,
            employee=employee,
            layer=2,
            path=IdentityPath.FIRST_DEVICE,
            issued_device_token=issued,
            stale_device_cookie=stale_cookie,
        )

    stored_fp_hash = get_stored_fingerprint_hash(db, employee_id=employee.id)
    match = compare_fingerprints(current_fp_hash, stored_fp_hash)
    if match == FingerprintMatch.EXACT_MATCH and get_settings().fingerprint_auto_rebind_enabled:
        issued = new_device_token()
        bind_device(db, employee_id=employee.id, device_token=issued)
        store_fingerprint(db, employee_id=employee.id, fp_hash=current_fp_hash)
        return IdentityResolution(
            outcome=IdentityOutcome.RESOLVED,
            employee=employee,
            layer=2,
            path=IdentityPath.FINGERPRINT_REBIND,
            issued_device_token=issued,
            stale_device_cookie=stale_cookie,
        )

    denial = log_denied_device(
        db,
        workplace_id=workplace.id,
        employee_id=employee.id,
        lat=lat,
        lon=lon,
        ip=ip,
        user_agent=user_agent,
    )
    logger.info(
        "device_approval_required",
        extra={
            "employee_id": employee.id,
            "workplace_id": workplace.id,
            "denial_id": denial.id,
            "fingerprint_match": match.value,
        },
    )
    return IdentityResolution(
        outcome=IdentityOutcome.NEEDS_APPROVAL,
        employee=employee,
        layer=3,
        path=IdentityPath.APPROVAL_REQUIRED,
        denial_event_id=denial.id,
        stale_device_cookie=stale_cookie,
    )
