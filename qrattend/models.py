from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from qrattend.db import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class AttendanceEventType(str, enum.Enum):
    CHECKIN = "checkin"
    CHECKOUT = "checkout"
    BREAK_START = "break_start"
    BREAK_END = "break_end"
    DENIED_DEVICE = "denied_device"
    DENIED_GPS = "denied_gps"


SUCCESS_EVENT_TYPES: tuple[AttendanceEventType, ...] = (
    AttendanceEventType.CHECKIN,
    AttendanceEventType.CHECKOUT,
    AttendanceEventType.BREAK_START,
    AttendanceEventType.BREAK_END,
)


class TimeStatus(str, enum.Enum):
    ON_TIME = "ON_TIME"
    LATE = "LATE"


class AuditActorType(str, enum.Enum):
    EMPLOYEE = "EMPLOYEE"
    APPROVER = "APPROVER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountUser(Base):
    __tablename__ = "account_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    workplaces: Mapped[list[Workplace]] = relationship(back_populates="owner")
    managers: Mapped[list[Manager]] = relationship(back_populates="owner")


class Manager(Base):
    __tablename__ = "managers"
    __table_args__ = (UniqueConstraint("owner_user_id", "email", name="uq_managers_owner_email"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_user_id: Mapped[int] = mapped_column(
        ForeignKey("account_users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    owner: Mapped[AccountUser] = relationship(back_populates="managers")
    workplace_links: Mapped[list[ManagerWorkplace]] = relationship(
        back_populates="manager",
        cascade="all, delete-orphan",
    )


class Workplace(Base):
    __tablename__ = "workplaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    public_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    owner_user_id: Mapped[int] = mapped_column(
        ForeignKey("account_users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    radius_m: Mapped[int] = mapped_column(Integer, nullable=False, default=70, server_default=text("70"))
    open_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    grace_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    grace_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timezone_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    owner: Mapped[AccountUser] = relationship(back_populates="workplaces")
    employees: Mapped[list[Employee]] = relationship(
        back_populates="workplace",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    manager_links: Mapped[list[ManagerWorkplace]] = relationship(
        back_populates="workplace",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ManagerWorkplace(Base):
    __tablename__ = "manager_workplaces"
    __table_args__ = (UniqueConstraint("manager_id", "workplace_id", name="uq_manager_workplaces_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    manager_id: Mapped[int] = mapped_column(ForeignKey("managers.id", ondelete="CASCADE"), nullable=False)
    workplace_id: Mapped[int] = mapped_column(
        ForeignKey("workplaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    manager: Mapped[Manager] = relationship(back_populates="workplace_links")
    workplace: Mapped[Workplace] = relationship(back_populates="manager_links")


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (UniqueConstraint("workplace_id", "email", name="uq_employees_workplace_email"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workplace_id: Mapped[int] = mapped_column(
        ForeignKey("workplaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    pin_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    workplace: Mapped[Workplace] = relationship(back_populates="employees")
    device_binding: Mapped[DeviceBinding | None] = relationship(
        back_populates="employee",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    device_fingerprint: Mapped[DeviceFingerprint | None] = relationship(
        back_populates="employee",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    attendance_events: Mapped[list[AttendanceEvent]] = relationship(back_populates="employee")


class DeviceBinding(Base):
    __tablename__ = "employee_devices"

    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        primary_key=True,
    )
    device_token_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    employee: Mapped[Employee] = relationship(back_populates="device_binding")


class DeviceFingerprint(Base):
    __tablename__ = "employee_device_fingerprints"

    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        primary_key=True,
    )
    fp_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    employee: Mapped[Employee] = relationship(back_populates="device_fingerprint")


class AttendanceEvent(Base):
    __tablename__ = "attendance_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workplace_id: Mapped[int] = mapped_column(
        ForeignKey("workplaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    event_type: Mapped[AttendanceEventType] = mapped_column(
        Enum(
            AttendanceEventType,
            name="attendance_event_type",
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    device_ok: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gps_ok: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    time_status: Mapped[TimeStatus | None] = mapped_column(
        Enum(TimeStatus, name="attendance_time_status"),
        nullable=True,
    )
    minutes_late: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("account_users.id", ondelete="SET NULL"),
        nullable=True,
    )
    approved_by_manager_id: Mapped[int | None] = mapped_column(
        ForeignKey("managers.id", ondelete="SET NULL"),
        nullable=True,
    )

    employee: Mapped[Employee | None] = relationship(back_populates="attendance_events")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actor_type: Mapped[AuditActorType] = mapped_column(Enum(AuditActorType, name="audit_actor_type"), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
