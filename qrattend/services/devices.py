from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from qrattend.models import DeviceBinding, DeviceFingerprint, Employee

logger = logging.getLogger("qrattend.devices")

DEVICE_TOKEN_BYTES = 24


def new_device_token() -> str:
    return secrets.token_hex(DEVICE_TOKEN_BYTES)


def hash_device_token(token: str) -> str:
    return hashlib.sha256(str(token or "").encode("utf-8")).hexdigest()


def find_employee_by_device_token(
    db: Session,
    *,
    workplace_id: int,
    device_token: str | None,
) -> Employee | None:
    normalized = (device_token or "").strip()
    if not normalized:
        return None
    return db.scalar(
        select(Employee)
        .join(DeviceBinding, DeviceBinding.employee_id == Employee.id)
        .where(
            DeviceBinding.device_token_hash == hash_device_token(normalized),
            Employee.workplace_id == workplace_id,
            Employee.is_active.is_(True),
        )
    )


def _upsert_by_employee(db: Session, model, *, employee_id: int, values: dict) -> None:
    """Insert the employee's row or overwrite it in one statement (last write wins)."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql_insert(model)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model)
    else:
        raise RuntimeError(f"Unsupported database dialect for device upsert: {dialect}")
    stmt = stmt.values(employee_id=employee_id, **values)
    db.execute(
        stmt.on_conflict_do_update(
            index_elements=[model.employee_id],
            set_={name: stmt.excluded[name] for name in values},
        )
    )
    loaded = db.identity_map.get(db.identity_key(model, employee_id))
    if loaded is not None:
        db.expire(loaded)


def get_device_binding(db: Session, *, employee_id: int) -> DeviceBinding | None:
    return db.get(DeviceBinding, employee_id)


def bind_device(db: Session, *, employee_id: int, device_token: str) -> DeviceBinding:
    """Trust `device_token` for the employee, replacing any previous device."""
    replaced = db.scalar(select(DeviceBinding.employee_id).where(DeviceBinding.employee_id == employee_id)) is not None
    _upsert_by_employee(
        db,
        DeviceBinding,
        employee_id=employee_id,
        values={
            "device_token_hash": hash_device_token(device_token),
            "updated_at": datetime.now(timezone.utc),
        },
    )
    db.commit()
    logger.info(
        "device_bound",
        extra={"employee_id": employee_id, "replaced_previous": replaced},
    )
    return db.get(DeviceBinding, employee_id)


def reset_device_binding(db: Session, *, employee_id: int) -> bool:
    binding = db.get(DeviceBinding, employee_id)
    fingerprint = db.get(DeviceFingerprint, employee_id)
    if binding is None and fingerprint is None:
        return False
    if binding is not None:
        db.delete(binding)
    if fingerprint is not None:
        db.delete(fingerprint)
    db.commit()
    logger.info("device_binding_reset", extra={"employee_id": employee_id})
    return True


def get_stored_fingerprint_hash(db: Session, *, employee_id: int) -> str | None:
    row = db.get(DeviceFingerprint, employee_id)
    if row is None:
        return None
    return row.fp_hash or None


def store_fingerprint(db: Session, *, employee_id: int, fp_hash: str | None) -> None:
    if not fp_hash:
        return
    _upsert_by_employee(
        db,
        DeviceFingerprint,
        employee_id=employee_id,
        values={"fp_hash": fp_hash, "updated_at": datetime.now(timezone.utc)},
    )
    db.commit()
