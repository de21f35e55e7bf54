from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from qrattend.models import AttendanceEventType


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "workplaces": {"id", "public_id", "lat", "lon", "radius_m", "open_time", "grace_enabled", "timezone_name"},
    "employees": {"id", "workplace_id", "email", "pin_hash", "is_active"},
    "employee_devices": {"employee_id", "device_token_hash"},
    "employee_device_fingerprints": {"employee_id", "fp_hash"},
    "attendance_events": {
        "id",
        "event_type",
        "time_status",
        "minutes_late",
        "resolved_at",
        "approved_by_user_id",
        "approved_by_manager_id",
    },
    "manager_workplaces": {"manager_id", "workplace_id"},
}

# Only PostgreSQL reports named enums; other dialects skip this check.
REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "attendance_event_type": {item.value for item in AttendanceEventType},
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    if engine.dialect.name != "postgresql":
        return SchemaGuardResult(ok=not issues, checked_at_utc=checked_at_utc, issues=issues, warnings=warnings)

    try:
        enums = inspector.get_enums() or []
    except SQLAlchemyError as exc:
        warnings.append(f"ENUM_INSPECTION_FAILED:{exc.__class__.__name__}")
        enums = []

    enum_values_by_name = {
        str(item.get("name")): {str(label) for label in item.get("labels") or []}
        for item in enums
        if item.get("name")
    }
    for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
        if enum_name not in enum_values_by_name:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
        if missing_values:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
