from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from qrattend.models import AttendanceEvent, AttendanceEventType, TimeStatus, Workplace
from qrattend.services.location import coerce_coordinate
from qrattend.services.time_status import day_bounds_utc, normalize_ts
from qrattend.settings import get_settings

logger = logging.getLogger("qrattend.ledger")


def append_event(
    db: Session,
    *,
    workplace_id: int,
    employee_id: int | None,
    event_type: AttendanceEventType,
    device_ok: bool,
    gps_ok: bool,
    lat: float | None,
    lon: float | None,
    ip: str | None = None,
    user_agent: str | None = None,
    time_status: TimeStatus | None = None,
    minutes_late: int | None = None,
    ts_utc: datetime | None = None,
) -> AttendanceEvent:
    event = AttendanceEvent(
        workplace_id=workplace_id,
        employee_id=employee_id,
        event_type=event_type,
        device_ok=device_ok,
        gps_ok=gps_ok,
        lat=coerce_coordinate(lat),
        lon=coerce_coordinate(lon),
        time_status=time_status,
        minutes_late=minutes_late,
        ip=ip,
        user_agent=(user_agent or "")[:512] or None,
        ts_utc=normalize_ts(ts_utc),
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info(
        "attendance_event_recorded",
        extra={
            "event_id": event.id,
            "workplace_id": workplace_id,
            "employee_id": employee_id,
            "event_type": event_type.value,
        },
    )
    return event


def log_denied_device(
    db: Session,
    *,
    workplace_id: int,
    employee_id: int,
    lat: float | None,
    lon: float | None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> AttendanceEvent:
    return append_event(
        db,
        workplace_id=workplace_id,
        employee_id=employee_id,
        event_type=AttendanceEventType.DENIED_DEVICE,
        device_ok=False,
        gps_ok=True,
        lat=lat,
        lon=lon,
        ip=ip,
        user_agent=user_agent,
    )


def log_denied_gps(
    db: Session,
    *,
    workplace_id: int,
    employee_id: int,
    lat: float | None,
    lon: float | None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> AttendanceEvent:
    return append_event(
        db,
        workplace_id=workplace_id,
        employee_id=employee_id,
        event_type=AttendanceEventType.DENIED_GPS,
        device_ok=True,
        gps_ok=False,
        lat=lat,
        lon=lon,
        ip=ip,
        user_agent=user_agent,
    )


def is_uncredited_denial(event: AttendanceEvent) -> bool:
    return event.event_type == AttendanceEventType.DENIED_DEVICE and event.resolved_at is None


def find_uncredited_denial(
    db: Session,
    *,
    workplace_id: int,
    employee_id: int,
) -> AttendanceEvent | None:
    return db.scalar(
        select(AttendanceEvent)
        .where(
            AttendanceEvent.workplace_id == workplace_id,
            AttendanceEvent.employee_id == employee_id,
            AttendanceEvent.event_type == AttendanceEventType.DENIED_DEVICE,
            AttendanceEvent.resolved_at.is_(None),
        )
        .order_by(AttendanceEvent.ts_utc.desc(), AttendanceEvent.id.desc())
        .limit(1)
    )


def purge_expired_events(
    db: Session,
    *,
    workplace_id: int,
    now_utc: datetime | None = None,
) -> int:
    retention_days = max(1, get_settings().attendance_log_retention_days)
    cutoff = normalize_ts(now_utc) - timedelta(days=retention_days)
    result = db.execute(
        delete(AttendanceEvent).where(
            AttendanceEvent.workplace_id == workplace_id,
            AttendanceEvent.ts_utc < cutoff,
        )
    )
    db.commit()
    purged = int(result.rowcount or 0)
    if purged:
        logger.info(
            "attendance_events_purged",
            extra={"workplace_id": workplace_id, "purged": purged, "retention_days": retention_days},
        )
    return purged


def list_workplace_events(
    db: Session,
    *,
    workplace: Workplace,
    day: date,
) -> list[AttendanceEvent]:
    day_start, day_end = day_bounds_utc(workplace, day)
    return list(
        db.scalars(
            select(AttendanceEvent)
            .options(selectinload(AttendanceEvent.employee))
            .where(
                AttendanceEvent.workplace_id == workplace.id,
                AttendanceEvent.ts_utc >= day_start,
                AttendanceEvent.ts_utc < day_end,
            )
            .order_by(AttendanceEvent.ts_utc.desc(), AttendanceEvent.id.desc())
        ).all()
    )
