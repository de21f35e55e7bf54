from datetime import date, datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from qrattend.audit import log_audit
from qrattend.db import get_db
from qrattend.errors import ApiError
from qrattend.models import AccountUser, AuditActorType, Employee, Manager, ManagerWorkplace, Workplace
from qrattend.schemas import (
    AdminAuthResponse,
    AdminLoginRequest,
    AttendanceEventRead,
    DeviceResetResponse,
    WorkplaceEventsResponse,
)
from qrattend.security import (
    AdminRole,
    attempt_key,
    create_access_token,
    ensure_attempt_allowed,
    register_attempt_failure,
    register_attempt_success,
    require_admin,
    verify_password,
)
from qrattend.services.devices import reset_device_binding
from qrattend.services.ledger import list_workplace_events, purge_expired_events
from qrattend.services.time_status import local_day

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def _authenticate_admin(db: Session, *, email: str, password: str) -> tuple[AdminRole, int, str] | None:
    normalized = email.strip().lower()
    owner = db.scalar(select(AccountUser).where(func.lower(AccountUser.email) == normalized))
    if owner is not None and owner.is_active and verify_password(password, owner.password_hash):
        return "owner", owner.id, owner.email

    managers = db.scalars(
        select(Manager)
        .where(func.lower(Manager.email) == normalized, Manager.is_active.is_(True))
        .order_by(Manager.id.asc())
    ).all()
    for manager in managers:
        if verify_password(password, manager.password_hash):
            return "manager", manager.id, manager.email
    return None


def _authorized_workplace(db: Session, *, claims: dict[str, Any], workplace_id: int) -> Workplace:
    workplace = db.get(Workplace, workplace_id)
    if workplace is None:
        raise ApiError(status_code=404, code="WORKPLACE_NOT_FOUND", message="Workplace not found.")

    subject_id = claims["subject_id"]
    if claims["role"] == "owner":
        if workplace.owner_user_id == subject_id:
            return workplace
    else:
        link = db.scalar(
            select(ManagerWorkplace)
            .join(Manager, Manager.id == ManagerWorkplace.manager_id)
            .where(
                ManagerWorkplace.manager_id == subject_id,
                ManagerWorkplace.workplace_id == workplace.id,
                Manager.owner_user_id == workplace.owner_user_id,
                Manager.is_active.is_(True),
            )
        )
        if link is not None:
            return workplace
    raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")


@router.post("/auth/login", response_model=AdminAuthResponse)
def admin_login(
    payload: AdminLoginRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AdminAuthResponse:
    ip = _client_ip(request)
    limiter_key = attempt_key("admin_login", ip)
    ensure_attempt_allowed(limiter_key)

    identity = _authenticate_admin(db, email=payload.email, password=payload.password)
    if identity is None:
        register_attempt_failure(limiter_key)
        log_audit(
            db,
            actor_type=AuditActorType.ADMIN,
            actor_id=payload.email.strip().lower(),
            action="ADMIN_LOGIN_FAIL",
            success=False,
            ip=ip,
            user_agent=_user_agent(request),
            request_id=getattr(request.state, "request_id", None),
        )
        raise ApiError(status_code=401, code="INVALID_CREDENTIALS", message="Invalid email or password.")

    register_attempt_success(limiter_key)
    role, subject_id, email = identity
    token, expires_in, claims = create_access_token(role=role, subject_id=subject_id, email=email)
    request.state.actor = role
    request.state.actor_id = claims["sub"]
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=claims["sub"],
        action="ADMIN_LOGIN_SUCCESS",
        success=True,
        ip=ip,
        user_agent=_user_agent(request),
        details={"jti": claims["jti"]},
        request_id=getattr(request.state, "request_id", None),
    )
    return AdminAuthResponse(access_token=token, expires_in=expires_in, role=role)


@router.get("/workplaces/{workplace_id}/events", response_model=WorkplaceEventsResponse)
def workplace_events(
    workplace_id: int,
    request: Request,
    day: date | None = Query(default=None),
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> WorkplaceEventsResponse:
    workplace = _authorized_workplace(db, claims=claims, workplace_id=workplace_id)
    target_day = day or local_day(workplace, datetime.now(timezone.utc))
    purged = purge_expired_events(db, workplace_id=workplace.id)
    events = list_workplace_events(db, workplace=workplace, day=target_day)
    return WorkplaceEventsResponse(
        workplace_id=workplace.id,
        day=target_day,
        purged=purged,
        events=[
            AttendanceEventRead.model_validate(event).model_copy(
                update={"employee_email": event.employee.email if event.employee is not None else None}
            )
            for event in events
        ],
    )


@router.post(
    "/workplaces/{workplace_id}/employees/{employee_id}/device/reset",
    response_model=DeviceResetResponse,
)
def reset_employee_device(
    workplace_id: int,
    employee_id: int,
    request: Request,
    claims: dict[str, Any] = Depends(require_admin),
    db: Session = Depends(get_db),
) -> DeviceResetResponse:
    workplace = _authorized_workplace(db, claims=claims, workplace_id=workplace_id)
    employee = db.get(Employee, employee_id)
    if employee is None or employee.workplace_id != workplace.id:
        raise ApiError(status_code=404, code="EMPLOYEE_NOT_FOUND", message="Employee not found for this workplace.")

    had_device = reset_device_binding(db, employee_id=employee.id)
    request.state.employee_id = employee.id
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(claims["sub"]),
        action="EMPLOYEE_DEVICE_RESET",
        success=True,
        entity_type="employee",
        entity_id=str(employee.id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details={"workplace_id": workplace.id, "had_device": had_device},
        request_id=getattr(request.state, "request_id", None),
    )
    return DeviceResetResponse(ok=True, employee_id=employee.id, had_device=had_device)
