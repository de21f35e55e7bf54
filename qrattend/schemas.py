from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from qrattend.models import AttendanceEventType, TimeStatus

FingerprintValue = str | int | float | None


class FingerprintSnapshot(BaseModel):
    fp_tz: FingerprintValue = None
    fp_sw: FingerprintValue = None
    fp_sh: FingerprintValue = None
    fp_dpr: FingerprintValue = None
    fp_lang: FingerprintValue = None
    fp_platform: FingerprintValue = None


class ScanRequest(FingerprintSnapshot):
    email: str | None = Field(default=None, max_length=255)
    pin: str = Field(min_length=1, max_length=32)
    lat: float | None = None
    lon: float | None = None


class ChoiceRequest(BaseModel):
    choice: str = Field(min_length=1, max_length=32)
    lat: float | None = None
    lon: float | None = None


class DeviceApprovalRequest(FingerprintSnapshot):
    employee_email: str = Field(min_length=3, max_length=255)
    approver_email: str = Field(min_length=3, max_length=255)
    approver_password: str = Field(min_length=1, max_length=255)
    lat: float | None = None
    lon: float | None = None
    denial_id: int | None = Field(default=None, ge=1)


class WorkplaceSummary(BaseModel):
    public_id: str
    name: str
    radius_m: int
    open_time: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ScanPageResponse(BaseModel):
    workplace: WorkplaceSummary
    mode: Literal["pin", "first"]


class ScanResponse(BaseModel):
    outcome: str
    message: str
    mode: str | None = None
    choices: list[str] = Field(default_factory=list)
    event_id: int | None = None
    event_type: AttendanceEventType | None = None
    ts_utc: datetime | None = None
    time_status: TimeStatus | None = None
    minutes_late: int | None = None
    denial_id: int | None = None


class DeviceApprovalResponse(BaseModel):
    ok: bool
    employee_id: int
    approver_role: Literal["owner", "manager"]
    denial_id: int | None = None
    credited: bool = False
    credit_reason: str | None = None
    event_type: AttendanceEventType | None = None
    time_status: TimeStatus | None = None
    minutes_late: int | None = None


class AdminLoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class AdminAuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    role: Literal["owner", "manager"]


class AttendanceEventRead(BaseModel):
    id: int
    employee_id: int | None
    employee_email: str | None = None
    event_type: AttendanceEventType
    device_ok: bool
    gps_ok: bool
    lat: float | None
    lon: float | None
    time_status: TimeStatus | None
    minutes_late: int | None
    ip: str | None
    ts_utc: datetime
    resolved_at: datetime | None = None
    approved_by_user_id: int | None = None
    approved_by_manager_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class WorkplaceEventsResponse(BaseModel):
    workplace_id: int
    day: date
    purged: int
    events: list[AttendanceEventRead]


class DeviceResetResponse(BaseModel):
    ok: bool
    employee_id: int
    had_device: bool
