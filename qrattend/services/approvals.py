from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from qrattend.errors import ApiError
from qrattend.models import (
    AccountUser,
    AttendanceEvent,
    AttendanceEventType,
    Employee,
    Manager,
    ManagerWorkplace,
    Workplace,
)
from qrattend.security import verify_password
from qrattend.services.attendance import AttendanceStep, decide_next_step
from qrattend.services.devices import bind_device, new_device_token, store_fingerprint
from qrattend.services.fingerprint import FingerprintTraits, fingerprint_hash
from qrattend.services.identity import find_active_employee_by_email, normalize_email
from qrattend.services.ledger import find_uncredited_denial, is_uncredited_denial
from qrattend.services.location import coerce_coordinate, evaluate_geofence
from qrattend.services.time_status import compute_checkin_time_status, normalize_ts

logger = logging.getLogger("qrattend.approvals")

ApproverKind = Literal["owner", "manager"]


@dataclass(frozen=True, slots=True)
class Approver:
    kind: ApproverKind
    id: int
    email: str

    @property
    def user_id(self) -> int | None:
        return self.id if self.kind == "owner" else None

    @property
    def manager_id(self) -> int | None:
        return self.id if self.kind == "manager" else None

    @property
    def actor_id(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(slots=True)
class CreditResult:
    denial: AttendanceEvent
    credited: bool
    reason: str


@dataclass(slots=True)
class ApprovalResult:
    employee: Employee
    approver: Approver
    device_token: str
    credit: CreditResult | None = None

    def log_fields(self) -> dict[str, Any]:
        return {
            "employee_id": self.employee.id,
            "approver": self.approver.actor_id,
            "denial_id": self.credit.denial.id if self.credit is not None else None,
            "credited": self.credit.credited if self.credit is not None else False,
            "credit_reason": self.credit.reason if self.credit is not None else None,
        }


def _invalid_approver() -> ApiError:
    return ApiError(
        status_code=401,
        code="APPROVER_INVALID_CREDENTIALS",
        message="Approver email or password is incorrect.",
    )


def authenticate_approver(
    db: Session,
    *,
    workplace: Workplace,
    email: str | None,
    password: str | None,
) -> Approver:
    """Owner of the workplace, or an active manager of that owner assigned to it."""
    normalized = normalize_email(email)
    if not normalized or not password:
        raise _invalid_approver()

    owner = db.get(AccountUser, workplace.owner_user_id)
    if (
        owner is not None
        and owner.is_active
        and normalize_email(owner.email) == normalized
        and verify_password(password, owner.password_hash)
    ):
        return Approver(kind="owner", id=owner.id, email=owner.email)

    manager = db.scalar(
        select(Manager)
        .join(ManagerWorkplace, ManagerWorkplace.manager_id == Manager.id)
        .where(
            Manager.owner_user_id == workplace.owner_user_id,
            func.lower(Manager.email) == normalized,
            Manager.is_active.is_(True),
            ManagerWorkplace.workplace_id == workplace.id,
        )
    )
    if manager is not None and verify_password(password, manager.password_hash):
        return Approver(kind="manager", id=manager.id, email=manager.email)

    raise _invalid_approver()


def resolve_denial_for_approval(
    db: Session,
    *,
    workplace: Workplace,
    employee: Employee,
    denial_id: int | None,
) -> AttendanceEvent | None:
    if denial_id is None:
        return find_uncredited_denial(db, workplace_id=workplace.id, employee_id=employee.id)

    denial = db.scalar(
        select(AttendanceEvent).where(AttendanceEvent.id == denial_id).with_for_update()
    )
    if (
        denial is None
        or denial.workplace_id != workplace.id
        or denial.employee_id != employee.id
        or denial.event_type != AttendanceEventType.DENIED_DEVICE
    ):
        raise ApiError(
            status_code=404,
            code="DENIAL_NOT_FOUND",
            message="Denied scan not found for this employee.",
        )
    if denial.resolved_at is not None:
        raise ApiError(
            status_code=409,
            code="DENIAL_ALREADY_RESOLVED",
            message="This denied scan has already been resolved.",
            details={"denial_id": denial.id},
        )
    return denial


def credit_denial(
    db: Session,
    *,
    workplace: Workplace,
    denial: AttendanceEvent,
    approver: Approver,
    snapshot_lat: Any = None,
    snapshot_lon: Any = None,
    now_utc: datetime | None = None,
) -> CreditResult:
    """Consume a ``denied_device`` row, converting it into the day's check-in when it qualifies.

    The row keeps its original ``ts_utc``. It becomes a check-in only when its
    coordinates are inside the fence and the employee has not checked in on
    that local day yet; otherwise it is marked resolved as-is.
    """
    if not is_uncredited_denial(denial):
        raise ApiError(
            status_code=409,
            code="DENIAL_ALREADY_RESOLVED",
            message="This denied scan has already been resolved.",
            details={"denial_id": denial.id},
        )

    now = normalize_ts(now_utc)
    lat = coerce_coordinate(denial.lat)
    lon = coerce_coordinate(denial.lon)
    if lat is None or lon is None:
        lat = coerce_coordinate(snapshot_lat)
        lon = coerce_coordinate(snapshot_lon)

    geofence = evaluate_geofence(workplace.lat, workplace.lon, workplace.radius_m, lat, lon)
    decision = decide_next_step(
        db,
        workplace=workplace,
        employee_id=denial.employee_id,
        now_utc=denial.ts_utc,
    )

    if not geofence.within_fence:
        reason = "OUTSIDE_GEOFENCE"
    elif decision.step != AttendanceStep.CHECKIN:
        reason = "DAY_ALREADY_STARTED"
    else:
        reason = "CREDITED"

    denial.resolved_at = now
    denial.approved_by_user_id = approver.user_id
    denial.approved_by_manager_id = approver.manager_id
    if reason == "CREDITED":
        time_status = compute_checkin_time_status(workplace, now)
        denial.event_type = AttendanceEventType.CHECKIN
        denial.device_ok = True
        denial.gps_ok = True
        denial.lat = lat
        denial.lon = lon
        denial.time_status = time_status.time_status
        denial.minutes_late = time_status.minutes_late
    db.commit()
    db.refresh(denial)

    logger.info(
        "denial_resolved",
        extra={
            "denial_id": denial.id,
            "employee_id": denial.employee_id,
            "workplace_id": workplace.id,
            "credited": reason == "CREDITED",
            "reason": reason,
            "distance_m": geofence.distance_m,
        },
    )
    return CreditResult(denial=denial, credited=reason == "CREDITED", reason=reason)


def approve_device_change(
    db: Session,
    *,
    workplace: Workplace,
    employee_email: str | None,
    approver_email: str | None,
    approver_password: str | None,
    fingerprint: FingerprintTraits,
    lat: Any = None,
    lon: Any = None,
    denial_id: int | None = None,
    now_utc: datetime | None = None,
) -> ApprovalResult:
    approver = authenticate_approver(
        db,
        workplace=workplace,
        email=approver_email,
        password=approver_password,
    )
    employee = find_active_employee_by_email(db, workplace_id=workplace.id, email=employee_email)
    if employee is None:
        raise ApiError(
            status_code=404,
            code="EMPLOYEE_NOT_FOUND",
            message="Employee not found for this workplace.",
        )

    denial = resolve_denial_for_approval(db, workplace=workplace, employee=employee, denial_id=denial_id)

    device_token = new_device_token()
    bind_device(db, employee_id=employee.id, device_token=device_token)
    store_fingerprint(db, employee_id=employee.id, fp_hash=fingerprint_hash(fingerprint))

    credit = None
    if denial is not None:
        credit = credit_denial(
            db,
            workplace=workplace,
            denial=denial,
            approver=approver,
            snapshot_lat=lat,
            snapshot_lon=lon,
            now_utc=now_utc,
        )

    return ApprovalResult(
        employee=employee,
        approver=approver,
        device_token=device_token,
        credit=credit,
    )
