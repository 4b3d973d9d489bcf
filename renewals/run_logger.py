# renewals/run_logger.py
"""
Run Logger
----------
Persists one Runs row per batch job (reminders, sweeper) with its summary.
"""

from __future__ import annotations

import json
from typing import Dict

from renewals.datastore import CONNECTOR, create_record
from renewals.runtime import get_logger, iso_now
from renewals.schema import runs_field_map

logger = get_logger("run_logger")

F = runs_field_map()


def log_run(run_type: str, processed: int = 0, breakdown: dict | str | None = None, status: str = "OK") -> Dict:
    """
    Log a job run into the Runs table.
    Example:
        log_run("RENEWAL_REMINDERS", processed=12, breakdown=summary)
    """
    record = {
        F["TYPE"]: run_type,
        F["PROCESSED"]: processed,
        F["BREAKDOWN"]: breakdown if isinstance(breakdown, str) else json.dumps(breakdown or {}, default=str),
        F["STATUS"]: status,
        F["TIMESTAMP"]: iso_now(),
    }
    created = create_record(CONNECTOR.runs(), record)
    if not created:
        logger.error(f"❌ log_run failed: {run_type}")
        return {"ok": False, "type": run_type, "status": status}
    logger.info(f"📝 Logged run: {run_type} | {status} | processed={processed}")
    return {"ok": True, "action": "created", "type": run_type, "status": status, "id": created["id"]}
