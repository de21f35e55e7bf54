from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from qrattend.audit import log_audit
from qrattend.db import get_db
from qrattend.errors import ApiError, error_response
from qrattend.models import AuditActorType, Workplace
from qrattend.schemas import (
    ChoiceRequest,
    DeviceApprovalRequest,
    DeviceApprovalResponse,
    ScanPageResponse,
    ScanRequest,
    ScanResponse,
    WorkplaceSummary,
)
from qrattend.security import (
    attempt_key,
    ensure_attempt_allowed,
    register_attempt_failure,
    register_attempt_success,
)
from qrattend.services.approvals import approve_device_change
from qrattend.services.attendance import ScanOutcome, record_choice, record_scan, require_coordinates
from qrattend.services.devices import find_employee_by_device_token
from qrattend.services.fingerprint import FingerprintTraits
from qrattend.services.identity import (
    IdentityOutcome,
    IdentityRejectedError,
    IdentityResolution,
    resolve_scan_identity,
)
from qrattend.settings import get_settings

router = APIRouter(prefix="/api/scan", tags=["attendance"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _device_cookie(request: Request) -> str | None:
    return request.cookies.get(get_settings().device_cookie_name)


def _set_device_cookie(response: Response, device_token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.device_cookie_name,
        value=device_token,
        max_age=settings.device_cookie_max_age_days * 24 * 60 * 60,
        path="/",
        samesite="lax",
        secure=settings.device_cookie_secure,
        httponly=True,
    )


def _clear_device_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=settings.device_cookie_name,
        path="/",
        samesite="lax",
        secure=settings.device_cookie_secure,
        httponly=True,
    )


def _apply_identity_cookie(response: Response, identity: IdentityResolution) -> None:
    if identity.issued_device_token:
        _set_device_cookie(response, identity.issued_device_token)
    elif identity.stale_device_cookie:
        _clear_device_cookie(response)


def _get_workplace(db: Session, public_id: str) -> Workplace:
    workplace = db.scalar(select(Workplace).where(Workplace.public_id == public_id.strip()))
    if workplace is None:
        raise ApiError(status_code=404, code="WORKPLACE_NOT_FOUND", message="Workplace not found.")
    return workplace


def _scan_response(outcome: ScanOutcome) -> ScanResponse:
    event = outcome.event
    return ScanResponse(
        outcome=outcome.kind.value,
        message=outcome.message,
        mode=outcome.mode.value,
        choices=[choice.value for choice in outcome.choices],
        event_id=event.id if event is not None else None,
        event_type=event.event_type if event is not None else None,
        ts_utc=event.ts_utc if event is not None else None,
        time_status=event.time_status if event is not None else None,
        minutes_late=event.minutes_late if event is not None else None,
    )


def _audit_employee(
    db: Session,
    request: Request,
    *,
    employee_id: int | None,
    action: str,
    success: bool,
    workplace: Workplace,
    details: dict[str, Any],
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.EMPLOYEE,
        actor_id=str(employee_id) if employee_id is not None else "unknown",
        action=action,
        success=success,
        entity_type="workplace",
        entity_id=str(workplace.id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details=details,
        request_id=_request_id(request),
    )


@router.get("/{public_id}", response_model=ScanPageResponse)
def scan_page(
    public_id: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> ScanPageResponse:
    request.state.actor = "employee"
    workplace = _get_workplace(db, public_id)
    token = _device_cookie(request)
    employee = find_employee_by_device_token(db, workplace_id=workplace.id, device_token=token)
    if employee is None and token:
        _clear_device_cookie(response)
    if employee is not None:
        request.state.employee_id = employee.id
    return ScanPageResponse(
        workplace=WorkplaceSummary.model_validate(workplace),
        mode="pin" if employee is not None else "first",
    )


@router.post(
    "/{public_id}",
    response_model=ScanResponse,
    responses={202: {"model": ScanResponse}},
)
def submit_scan(
    public_id: str,
    payload: ScanRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    request.state.actor = "employee"
    workplace = _get_workplace(db, public_id)
    ip = _client_ip(request)
    user_agent = _user_agent(request)
    limiter_key = attempt_key("scan", ip)
    ensure_attempt_allowed(limiter_key)

    try:
        require_coordinates(payload.lat, payload.lon)
    except ApiError as exc:
        request.state.outcome = exc.code
        _audit_employee(
            db,
            request,
            employee_id=None,
            action="SCAN_REJECTED",
            success=False,
            workplace=workplace,
            details={"code": exc.code},
        )
        raise

    try:
        identity = resolve_scan_identity(
            db,
            workplace=workplace,
            device_token=_device_cookie(request),
            email=payload.email,
            pin=payload.pin,
            fingerprint=FingerprintTraits.from_payload(payload.model_dump()),
            lat=payload.lat,
            lon=payload.lon,
            ip=ip,
            user_agent=user_agent,
        )
    except IdentityRejectedError as exc:
        if exc.code == "INVALID_PIN":
            register_attempt_failure(limiter_key)
        request.state.employee_id = exc.employee_id
        request.state.outcome = exc.code
        _audit_employee(
            db,
            request,
            employee_id=exc.employee_id,
            action="SCAN_IDENTITY_REJECTED",
            success=False,
            workplace=workplace,
            details={"code": exc.code},
        )
        error = error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)
        if exc.stale_device_cookie:
            _clear_device_cookie(error)
        return error

    register_attempt_success(limiter_key)
    request.state.employee_id = identity.employee.id

    if identity.outcome == IdentityOutcome.NEEDS_APPROVAL:
        request.state.event_id = identity.denial_event_id
        request.state.outcome = identity.outcome.value
        _audit_employee(
            db,
            request,
            employee_id=identity.employee.id,
            action="DEVICE_APPROVAL_REQUIRED",
            success=False,
            workplace=workplace,
            details=identity.log_fields(),
        )
        body = ScanResponse(
            outcome=identity.outcome.value,
            message="This device is not registered. Ask your manager to approve it.",
            denial_id=identity.denial_event_id,
        )
        pending = JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(mode="json"))
        _apply_identity_cookie(pending, identity)
        return pending

    try:
        outcome = record_scan(
            db,
            workplace=workplace,
            employee=identity.employee,
            lat=payload.lat,
            lon=payload.lon,
            ip=ip,
            user_agent=user_agent,
        )
    except ApiError as exc:
        request.state.outcome = exc.code
        _audit_employee(
            db,
            request,
            employee_id=identity.employee.id,
            action="SCAN_REJECTED",
            success=False,
            workplace=workplace,
            details={"code": exc.code, **identity.log_fields(), **exc.details},
        )
        error = error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
        # A device bound during this request stays bound even if presence failed.
        _apply_identity_cookie(error, identity)
        return error

    request.state.event_id = outcome.event.id if outcome.event is not None else None
    request.state.outcome = outcome.kind.value
    _audit_employee(
        db,
        request,
        employee_id=identity.employee.id,
        action="SCAN_COMPLETED",
        success=True,
        workplace=workplace,
        details={**identity.log_fields(), **outcome.log_fields()},
    )
    result = JSONResponse(content=_scan_response(outcome).model_dump(mode="json"))
    _apply_identity_cookie(result, identity)
    return result


@router.post("/{public_id}/choice", response_model=ScanResponse)
def submit_choice(
    public_id: str,
    payload: ChoiceRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ScanResponse:
    request.state.actor = "employee"
    workplace = _get_workplace(db, public_id)
    employee = find_employee_by_device_token(
        db,
        workplace_id=workplace.id,
        device_token=_device_cookie(request),
    )
    if employee is None:
        raise ApiError(
            status_code=401,
            code="DEVICE_NOT_REGISTERED",
            message="This device is not registered. Scan the QR code again.",
        )
    request.state.employee_id = employee.id

    try:
        outcome = record_choice(
            db,
            workplace=workplace,
            employee=employee,
            choice=payload.choice,
            lat=payload.lat,
            lon=payload.lon,
            ip=_client_ip(request),
            user_agent=_user_agent(request),
        )
    except ApiError as exc:
        request.state.outcome = exc.code
        _audit_employee(
            db,
            request,
            employee_id=employee.id,
            action="SCAN_CHOICE_REJECTED",
            success=False,
            workplace=workplace,
            details={"code": exc.code, "choice": payload.choice, **exc.details},
        )
        raise

    request.state.event_id = outcome.event.id if outcome.event is not None else None
    request.state.outcome = outcome.kind.value
    _audit_employee(
        db,
        request,
        employee_id=employee.id,
        action="SCAN_CHOICE_COMPLETED",
        success=True,
        workplace=workplace,
        details={"choice": payload.choice, **outcome.log_fields()},
    )
    return _scan_response(outcome)


@router.post("/{public_id}/device-approval", response_model=DeviceApprovalResponse)
def approve_device(
    public_id: str,
    payload: DeviceApprovalRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
) -> DeviceApprovalResponse:
    request.state.actor = "approver"
    workplace = _get_workplace(db, public_id)
    limiter_key = attempt_key("approval", _client_ip(request))
    ensure_attempt_allowed(limiter_key)

    try:
        result = approve_device_change(
            db,
            workplace=workplace,
            employee_email=payload.employee_email,
            approver_email=payload.approver_email,
            approver_password=payload.approver_password,
            fingerprint=FingerprintTraits.from_payload(payload.model_dump()),
            lat=payload.lat,
            lon=payload.lon,
            denial_id=payload.denial_id,
        )
    except ApiError as exc:
        if exc.code == "APPROVER_INVALID_CREDENTIALS":
            register_attempt_failure(limiter_key)
        request.state.outcome = exc.code
        log_audit(
            db,
            actor_type=AuditActorType.APPROVER,
            actor_id=payload.approver_email.strip().lower(),
            action="DEVICE_APPROVAL_REJECTED",
            success=False,
            entity_type="workplace",
            entity_id=str(workplace.id),
            ip=_client_ip(request),
            user_agent=_user_agent(request),
            details={"code": exc.code, "denial_id": payload.denial_id},
            request_id=_request_id(request),
        )
        raise

    register_attempt_success(limiter_key)
    request.state.actor_id = result.approver.actor_id
    request.state.employee_id = result.employee.id
    credit = result.credit
    request.state.event_id = credit.denial.id if credit is not None else None
    request.state.outcome = "APPROVED"
    log_audit(
        db,
        actor_type=AuditActorType.APPROVER,
        actor_id=result.approver.actor_id,
        action="DEVICE_APPROVED",
        success=True,
        entity_type="employee",
        entity_id=str(result.employee.id),
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details=result.log_fields(),
        request_id=_request_id(request),
    )
    _set_device_cookie(response, result.device_token)
    return DeviceApprovalResponse(
        ok=True,
        employee_id=result.employee.id,
        approver_role=result.approver.kind,
        denial_id=credit.denial.id if credit is not None else None,
        credited=credit.credited if credit is not None else False,
        credit_reason=credit.reason if credit is not None else None,
        event_type=credit.denial.event_type if credit is not None else None,
        time_status=credit.denial.time_status if credit is not None else None,
        minutes_late=credit.denial.minutes_late if credit is not None else None,
    )
