from __future__ import annotations

from collections.abc import Generator
from datetime import datetime
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from qrattend.db import Base
from qrattend.models import (
    AccountUser,
    AttendanceEvent,
    AttendanceEventType,
    Employee,
    Manager,
    ManagerWorkplace,
    Workplace,
)
from qrattend.security import hash_password

WORKPLACE_LAT = 12.9716
WORKPLACE_LON = 77.5946
FAR_LAT = WORKPLACE_LAT + 0.01
EMPLOYEE_PIN = "4821"
OWNER_PASSWORD = "owner-pass-123"
MANAGER_PASSWORD = "manager-pass-123"
FINGERPRINT = {
    "fp_tz": "Asia/Kolkata",
    "fp_sw": "390",
    "fp_sh": "844",
    "fp_dpr": "3",
    "fp_lang": "en-IN",
    "fp_platform": "iPhone",
}
OTHER_FINGERPRINT = {**FINGERPRINT, "fp_sw": "412", "fp_platform": "Linux armv8l"}


def make_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_get_db(factory: sessionmaker[Session]):
    def _override() -> Generator[Session, None, None]:
        db = factory()
        try:
            yield db
        finally:
            db.close()

    return _override


@lru_cache(maxsize=None)
def _hashed(secret: str) -> str:
    return hash_password(secret)


def seed_owner(db: Session, *, email: str = "owner@example.com", is_active: bool = True) -> AccountUser:
    owner = AccountUser(email=email, password_hash=_hashed(OWNER_PASSWORD), is_active=is_active)
    db.add(owner)
    db.commit()
    return owner


def seed_workplace(db: Session, owner: AccountUser, **overrides) -> Workplace:
    values = {
        "public_id": "wp-main",
        "name": "Main Office",
        "lat": WORKPLACE_LAT,
        "lon": WORKPLACE_LON,
        "radius_m": 70,
        "open_time": "09:00",
        "grace_enabled": True,
        "grace_minutes": 10,
        "timezone_name": "UTC",
    }
    values.update(overrides)
    workplace = Workplace(owner_user_id=owner.id, **values)
    db.add(workplace)
    db.commit()
    return workplace


def seed_employee(
    db: Session,
    workplace: Workplace,
    *,
    email: str = "asha@example.com",
    is_active: bool = True,
) -> Employee:
    employee = Employee(
        workplace_id=workplace.id,
        email=email,
        pin_hash=_hashed(EMPLOYEE_PIN),
        is_active=is_active,
    )
    db.add(employee)
    db.commit()
    return employee


def seed_manager(
    db: Session,
    owner: AccountUser,
    *,
    email: str = "manager@example.com",
    workplaces: tuple[Workplace, ...] = (),
    is_active: bool = True,
) -> Manager:
    manager = Manager(
        owner_user_id=owner.id,
        email=email,
        password_hash=_hashed(MANAGER_PASSWORD),
        is_active=is_active,
    )
    db.add(manager)
    db.flush()
    for workplace in workplaces:
        db.add(ManagerWorkplace(manager_id=manager.id, workplace_id=workplace.id))
    db.commit()
    return manager


def seed_event(
    db: Session,
    *,
    workplace: Workplace,
    employee: Employee,
    event_type: AttendanceEventType,
    ts_utc: datetime,
    lat: float | None = WORKPLACE_LAT,
    lon: float | None = WORKPLACE_LON,
) -> AttendanceEvent:
    event = AttendanceEvent(
        workplace_id=workplace.id,
        employee_id=employee.id,
        event_type=event_type,
        device_ok=event_type != AttendanceEventType.DENIED_DEVICE,
        gps_ok=event_type != AttendanceEventType.DENIED_GPS,
        lat=lat,
        lon=lon,
        ts_utc=ts_utc,
    )
    db.add(event)
    db.commit()
    return event


def device_cookie_from(response) -> str | None:
    """Token from the response's ``qrattend_device`` Set-Cookie header (empty when cleared)."""
    for header in response.headers.get_list("set-cookie"):
        name, _, rest = header.partition("=")
        if name.strip() == "qrattend_device":
            return rest.split(";", 1)[0].strip().strip('"')
    return None
