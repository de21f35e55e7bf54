#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone

from sqlalchemy import create_engine, inspect, text

from qrattend.db import Base
from qrattend.services.schema_guard import verify_runtime_schema
from qrattend.settings import get_settings

import qrattend.models  # noqa: F401  registers tables on Base.metadata


def run(*, create_schema: bool = False) -> dict:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    if create_schema:
        Base.metadata.create_all(bind=engine)

    report: dict = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "created_schema": create_schema,
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append({"name": name, "status": status, "details": details})

    guard = verify_runtime_schema(engine)
    add("schema_guard", "ok" if guard.ok else "fail", guard.to_dict())

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        if "employee_devices" in tables:
            shared_tokens = conn.execute(
                text(
                    """
                    select device_token_hash, count(*)
                    from employee_devices
                    group by device_token_hash
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "shared_device_token",
                "fail" if shared_tokens else "ok",
                {"rows": [list(row) for row in shared_tokens]},
            )

        if "attendance_events" in tables:
            uncredited = conn.execute(
                text(
                    """
                    select count(*)
                    from attendance_events
                    where event_type = 'denied_device' and resolved_at is null
                    """
                )
            ).scalar()
            add("uncredited_device_denials", "warn" if uncredited else "ok", {"count": int(uncredited or 0)})

            orphan_employees = conn.execute(
                text(
                    """
                    select a.id
                    from attendance_events a
                    left join employees e on e.id = a.employee_id
                    where a.employee_id is not null and e.id is null
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "attendance_orphan_employee",
                "fail" if orphan_employees else "ok",
                {"sample_ids": [row[0] for row in orphan_employees]},
            )

    return report


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Check (and optionally create) the attendance schema.")
    parser.add_argument("--create-schema", action="store_true", help="create missing tables before checking")
    args = parser.parse_args()
    print(json.dumps(run(create_schema=args.create_schema), ensure_ascii=False, indent=2))
