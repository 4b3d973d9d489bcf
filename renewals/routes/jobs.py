# renewals/routes/jobs.py
"""
Scheduled Job Router
--------------------
CRON-triggered endpoints for the two renewal batch jobs.
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from starlette.concurrency import run_in_threadpool

from renewals.config import ConfigurationError, settings
from renewals.expiry_sweeper import sweep_expired_conversations
from renewals.reminder_scheduler import run_renewal_reminders

log = logging.getLogger("jobs")

router = APIRouter(prefix="/jobs", tags=["jobs"])


# -------------------------------------------------------------------
# Auth Guard
# -------------------------------------------------------------------
def _extract_token(request: Request, qp_token: str | None, h_cron: str | None) -> str:
    if qp_token:
        return qp_token
    if h_cron:
        return h_cron
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1]
    return ""


def require_cron(
    request: Request,
    token: str | None = Query(default=None),
    x_cron_token: str | None = Header(default=None),
) -> None:
    """Require CRON_TOKEN in header, query, or bearer token."""
    expected = settings().CRON_TOKEN
    if not expected:
        return
    if _extract_token(request, token, x_cron_token) != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


# -------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------
@router.post("/send-renewal-reminders", dependencies=[Depends(require_cron)])
async def send_renewal_reminders():
    try:
        return await run_in_threadpool(run_renewal_reminders)
    except ConfigurationError as e:
        log.error(f"❌ Renewal reminders not configured: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cleanup-expired-renewals", dependencies=[Depends(require_cron)])
async def cleanup_expired_renewals():
    try:
        return await run_in_threadpool(sweep_expired_conversations)
    except ConfigurationError as e:
        log.error(f"❌ Renewal cleanup not configured: {e}")
        raise HTTPException(status_code=500, detail=str(e))
