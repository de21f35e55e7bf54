from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qrattend.models import AuditActorType, AuditLog

logger = logging.getLogger("qrattend.audit")


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Persist one audit row and mirror it to the structured log.

    A failed audit write is logged and rolled back; it never fails the
    request that triggered it.
    """
    audit = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=ip,
        user_agent=(user_agent or "")[:512] or None,
        success=success,
        details=details or {},
    )
    db.add(audit)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": actor_id,
            },
        )
        return

    log_method = logger.info if success else logger.warning
    log_method(
        action.lower(),
        extra={
            "request_id": request_id,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "ip": ip,
            "success": success,
            "details": details or {},
        },
    )
