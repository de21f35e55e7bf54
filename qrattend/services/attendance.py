from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from qrattend.errors import ApiError
from qrattend.models import (
    SUCCESS_EVENT_TYPES,
    AttendanceEvent,
    AttendanceEventType,
    Employee,
    Workplace,
)
from qrattend.services.ledger import append_event, log_denied_gps
from qrattend.services.location import coerce_coordinate, evaluate_geofence
from qrattend.services.time_status import (
    CheckinTimeStatus,
    compute_checkin_time_status,
    local_day_bounds_utc,
    normalize_ts,
)
from qrattend.settings import get_settings

logger = logging.getLogger("qrattend.attendance")


class AttendanceStep(str, enum.Enum):
    CHECKIN = "CHECKIN"
    NEED_CHOICE = "NEED_CHOICE"
    ALREADY_CHECKED_OUT = "ALREADY_CHECKED_OUT"


class WorkMode(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    CHECKED_IN = "CHECKED_IN"
    ON_BREAK = "ON_BREAK"
    CHECKED_OUT = "CHECKED_OUT"


class AttendanceChoice(str, enum.Enum):
    CHECKIN = "checkin"
    BREAK = "break"
    RESUME = "resume"
    CHECKOUT = "checkout"


class ScanOutcomeKind(str, enum.Enum):
    RECORDED = "RECORDED"
    ALREADY_RECORDED = "ALREADY_RECORDED"
    ALREADY_CHECKED_OUT = "ALREADY_CHECKED_OUT"
    NEEDS_CHOICE = "NEEDS_CHOICE"


_CHOICE_EVENT_TYPES: dict[AttendanceChoice, AttendanceEventType] = {
    AttendanceChoice.CHECKIN: AttendanceEventType.CHECKIN,
    AttendanceChoice.BREAK: AttendanceEventType.BREAK_START,
    AttendanceChoice.RESUME: AttendanceEventType.BREAK_END,
    AttendanceChoice.CHECKOUT: AttendanceEventType.CHECKOUT,
}

_LEGAL_CHOICES: dict[WorkMode, tuple[AttendanceChoice, ...]] = {
    WorkMode.NOT_STARTED: (AttendanceChoice.CHECKIN,),
    WorkMode.CHECKED_IN: (AttendanceChoice.BREAK, AttendanceChoice.CHECKOUT),
    WorkMode.ON_BREAK: (AttendanceChoice.RESUME, AttendanceChoice.CHECKOUT),
    WorkMode.CHECKED_OUT: (),
}


@dataclass(frozen=True, slots=True)
class DayDecision:
    step: AttendanceStep
    mode: WorkMode
    last_event: AttendanceEvent | None = None

    @property
    def choices(self) -> tuple[AttendanceChoice, ...]:
        return legal_choices(self.mode)


@dataclass(slots=True)
class ScanOutcome:
    kind: ScanOutcomeKind
    mode: WorkMode
    event: AttendanceEvent | None = None
    choices: list[AttendanceChoice] = field(default_factory=list)
    message: str = ""

    def log_fields(self) -> dict[str, Any]:
        return {
            "outcome": self.kind.value,
            "mode": self.mode.value,
            "event_id": self.event.id if self.event is not None else None,
            "event_type": self.event.event_type.value if self.event is not None else None,
        }


def legal_choices(mode: WorkMode) -> tuple[AttendanceChoice, ...]:
    return _LEGAL_CHOICES[mode]


def choice_to_event_type(choice: AttendanceChoice) -> AttendanceEventType:
    return _CHOICE_EVENT_TYPES[choice]


def latest_event_for_day(
    db: Session,
    *,
    workplace: Workplace,
    employee_id: int,
    reference_ts_utc: datetime,
) -> AttendanceEvent | None:
    day_start, day_end = local_day_bounds_utc(workplace, reference_ts_utc)
    return db.scalar(
        select(AttendanceEvent)
        .where(
            AttendanceEvent.workplace_id == workplace.id,
            AttendanceEvent.employee_id == employee_id,
            AttendanceEvent.event_type.in_(SUCCESS_EVENT_TYPES),
            AttendanceEvent.ts_utc >= day_start,
            AttendanceEvent.ts_utc < day_end,
        )
        .order_by(AttendanceEvent.ts_utc.desc(), AttendanceEvent.id.desc())
        .limit(1)
    )


def decision_from_last_event(last_event: AttendanceEvent | None) -> DayDecision:
    if last_event is None:
        return DayDecision(step=AttendanceStep.CHECKIN, mode=WorkMode.NOT_STARTED)
    if last_event.event_type == AttendanceEventType.CHECKOUT:
        return DayDecision(step=AttendanceStep.ALREADY_CHECKED_OUT, mode=WorkMode.CHECKED_OUT, last_event=last_event)
    if last_event.event_type == AttendanceEventType.BREAK_START:
        return DayDecision(step=AttendanceStep.NEED_CHOICE, mode=WorkMode.ON_BREAK, last_event=last_event)
    return DayDecision(step=AttendanceStep.NEED_CHOICE, mode=WorkMode.CHECKED_IN, last_event=last_event)


def decide_next_step(
    db: Session,
    *,
    workplace: Workplace,
    employee_id: int,
    now_utc: datetime | None = None,
) -> DayDecision:
    last_event = latest_event_for_day(
        db,
        workplace=workplace,
        employee_id=employee_id,
        reference_ts_utc=normalize_ts(now_utc),
    )
    return decision_from_last_event(last_event)


def is_recent_submission(last_event: AttendanceEvent | None, now_utc: datetime) -> bool:
    if last_event is None or last_event.ts_utc is None:
        return False
    window = timedelta(seconds=max(0, get_settings().scan_resubmit_window_seconds))
    elapsed = normalize_ts(now_utc) - normalize_ts(last_event.ts_utc)
    return timedelta(0) <= elapsed < window


def require_coordinates(lat: Any, lon: Any) -> tuple[float, float]:
    lat_value = coerce_coordinate(lat)
    lon_value = coerce_coordinate(lon)
    if lat_value is None or lon_value is None:
        raise ApiError(
            status_code=422,
            code="GPS_REQUIRED",
            message="GPS not captured. Allow location and refresh.",
        )
    return lat_value, lon_value


def ensure_within_geofence(
    db: Session,
    *,
    workplace: Workplace,
    employee: Employee,
    lat: float,
    lon: float,
    ip: str | None,
    user_agent: str | None,
) -> int | None:
    geofence = evaluate_geofence(workplace.lat, workplace.lon, workplace.radius_m, lat, lon)
    if geofence.within_fence:
        return geofence.distance_m

    denial = log_denied_gps(
        db,
        workplace_id=workplace.id,
        employee_id=employee.id,
        lat=lat,
        lon=lon,
        ip=ip,
        user_agent=user_agent,
    )
    distance_text = f"{geofence.distance_m}m" if geofence.distance_m is not None else "unknown"
    raise ApiError(
        status_code=403,
        code="OUTSIDE_GEOFENCE",
        message=(
            "You are not at the workplace location. "
            f"Distance {distance_text} (allowed {workplace.radius_m}m)."
        ),
        details={
            "distance_m": geofence.distance_m,
            "radius_m": workplace.radius_m,
            "denial_id": denial.id,
        },
    )


def record_scan(
    db: Session,
    *,
    workplace: Workplace,
    employee: Employee,
    lat: Any,
    lon: Any,
    ip: str | None = None,
    user_agent: str | None = None,
    now_utc: datetime | None = None,
) -> ScanOutcome:
    """Geofence, then advance the day's state for an already-identified employee."""
    now = normalize_ts(now_utc)
    lat_value, lon_value = require_coordinates(lat, lon)
    ensure_within_geofence(
        db,
        workplace=workplace,
        employee=employee,
        lat=lat_value,
        lon=lon_value,
        ip=ip,
        user_agent=user_agent,
    )

    decision = decide_next_step(db, workplace=workplace, employee_id=employee.id, now_utc=now)
    if decision.step != AttendanceStep.NEED_CHOICE and is_recent_submission(decision.last_event, now):
        logger.info(
            "scan_resubmission_ignored",
            extra={"employee_id": employee.id, "workplace_id": workplace.id},
        )
        return ScanOutcome(
            kind=ScanOutcomeKind.ALREADY_RECORDED,
            mode=decision.mode,
            event=decision.last_event,
            message="Already recorded. Please wait a moment before scanning again.",
        )

    if decision.step == AttendanceStep.ALREADY_CHECKED_OUT:
        return ScanOutcome(
            kind=ScanOutcomeKind.ALREADY_CHECKED_OUT,
            mode=decision.mode,
            message="You have already checked out for today.",
        )

    if decision.step == AttendanceStep.NEED_CHOICE:
        return ScanOutcome(
            kind=ScanOutcomeKind.NEEDS_CHOICE,
            mode=decision.mode,
            choices=list(decision.choices),
            message="Choose your next action.",
        )

    time_status = compute_checkin_time_status(workplace, now)
    event = append_event(
        db,
        workplace_id=workplace.id,
        employee_id=employee.id,
        event_type=AttendanceEventType.CHECKIN,
        device_ok=True,
        gps_ok=True,
        lat=lat_value,
        lon=lon_value,
        ip=ip,
        user_agent=user_agent,
        time_status=time_status.time_status,
        minutes_late=time_status.minutes_late,
        ts_utc=now,
    )
    return ScanOutcome(
        kind=ScanOutcomeKind.RECORDED,
        mode=WorkMode.CHECKED_IN,
        event=event,
        message="Checked in.",
    )


def _parse_choice(raw_choice: Any) -> AttendanceChoice | None:
    try:
        return AttendanceChoice(str(raw_choice or "").strip().lower())
    except ValueError:
        return None


_RECORDED_MESSAGES: dict[AttendanceEventType, tuple[WorkMode, str]] = {
    AttendanceEventType.CHECKIN: (WorkMode.CHECKED_IN, "Checked in."),
    AttendanceEventType.BREAK_START: (
        WorkMode.ON_BREAK,
        "Break recorded. Scan again when you return to resume work.",
    ),
    AttendanceEventType.BREAK_END: (WorkMode.CHECKED_IN, "Break ended. You are back to work."),
    AttendanceEventType.CHECKOUT: (WorkMode.CHECKED_OUT, "Checked out."),
}


def record_choice(
    db: Session,
    *,
    workplace: Workplace,
    employee: Employee,
    choice: Any,
    lat: Any,
    lon: Any,
    ip: str | None = None,
    user_agent: str | None = None,
    now_utc: datetime | None = None,
) -> ScanOutcome:
    now = normalize_ts(now_utc)
    lat_value, lon_value = require_coordinates(lat, lon)
    ensure_within_geofence(
        db,
        workplace=workplace,
        employee=employee,
        lat=lat_value,
        lon=lon_value,
        ip=ip,
        user_agent=user_agent,
    )

    decision = decide_next_step(db, workplace=workplace, employee_id=employee.id, now_utc=now)
    if decision.step == AttendanceStep.ALREADY_CHECKED_OUT:
        return ScanOutcome(
            kind=ScanOutcomeKind.ALREADY_CHECKED_OUT,
            mode=decision.mode,
            message="You have already checked out for today.",
        )

    parsed = _parse_choice(choice)
    allowed = decision.choices
    if parsed is None or parsed not in allowed:
        raise ApiError(
            status_code=422,
            code="INVALID_CHOICE",
            message="Invalid option. Please choose again.",
            details={
                "mode": decision.mode.value,
                "choices": [item.value for item in allowed],
            },
        )

    event_type = choice_to_event_type(parsed)
    time_status = (
        compute_checkin_time_status(workplace, now)
        if event_type == AttendanceEventType.CHECKIN
        else CheckinTimeStatus(time_status=None, minutes_late=None)
    )
    event = append_event(
        db,
        workplace_id=workplace.id,
        employee_id=employee.id,
        event_type=event_type,
        device_ok=True,
        gps_ok=True,
        lat=lat_value,
        lon=lon_value,
        ip=ip,
        user_agent=user_agent,
        time_status=time_status.time_status,
        minutes_late=time_status.minutes_late,
        ts_utc=now,
    )
    mode, message = _RECORDED_MESSAGES[event_type]
    return ScanOutcome(
        kind=ScanOutcomeKind.RECORDED,
        mode=mode,
        event=event,
        message=message,
    )
