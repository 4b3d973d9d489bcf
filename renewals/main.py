"""
Listing Renewal SMS Engine (FastAPI entrypoint)
- /renewals/sms          inbound replies from the SMS transport
- /jobs/...              CRON-triggered reminder + cleanup runs
- /health, /ping         liveness
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI

from renewals.config import settings
from renewals.routes.jobs import router as jobs_router
from renewals.runtime import SystemClock, get_logger, local_now
from renewals.webhook import router as renewal_router

VERSION = "1.0.0"

logger = get_logger("main")

app = FastAPI(title="Listing Renewal SMS Engine", version=VERSION)
app.include_router(renewal_router)  # → /renewals/sms
app.include_router(jobs_router)     # → /jobs/...


def _iso_ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


@app.on_event("startup")
async def startup_checks():
    s = settings()
    missing: list[str] = []
    if not s.store_configured:
        missing.append("AIRTABLE_API_KEY|LISTINGS_BASE")
    if not (s.transport_configured or s.SMS_DRY_RUN):
        missing.append("SMS_ACCOUNT_SID|SMS_AUTH_TOKEN|SMS_FROM_NUMBER")
    if missing:
        logger.error(f"🚨 Missing env vars → {', '.join(missing)}")
    else:
        logger.info("✅ Startup checks passed")


@app.get("/ping")
async def ping():
    return {"ok": True, "pong": True, "time": _iso_ts()}


@app.get("/health")
async def health():
    s = settings()
    local = local_now(SystemClock(), s.RENEWAL_TZ)
    return {
        "ok": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "local_time": local.isoformat(),
        "quiet_day": local.weekday() in s.QUIET_DAYS,
        "dry_run": s.SMS_DRY_RUN,
        "version": VERSION,
    }
