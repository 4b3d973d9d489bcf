# renewals/sms_sender.py
"""
SMS Sender: Twilio-compatible transport + message audit log
- POSTs form data to {SMS_API_BASE}/Accounts/{SID}/Messages.json
- Raises TransportError on any failure so callers decide the outcome
- Writes an SMS Messages row for every attempt (best-effort)
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from renewals.config import settings
from renewals.message_log import log_outbound
from renewals.runtime import get_logger, normalize_phone
from renewals.schema import MessageSource

logger = get_logger("sms_sender")

MAX_BODY_LEN = 1600
OK_STATUSES = {"queued", "accepted", "submitted", "sending", "sent", "delivered"}


class TransportError(RuntimeError):
    """Send failure carrying HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.payload = payload

    def __str__(self) -> str:
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


# =========================
# Small helpers
# =========================
def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _validate_payload(payload: Dict[str, Any]) -> None:
    problems: List[str] = []
    for field in ("To", "From", "Body"):
        if not _has_value(payload.get(field)):
            problems.append(f"{field} is required")
    if len(str(payload.get("Body") or "")) > MAX_BODY_LEN:
        problems.append(f"Body exceeds {MAX_BODY_LEN} characters")
    if problems:
        raise TransportError("Invalid SMS payload: " + "; ".join(problems), payload=dict(payload))


def _extract_error_body(resp: Any) -> Any:
    if resp is None:
        return None
    try:
        return resp.json()
    except ValueError:
        return (getattr(resp, "text", "") or "").strip()


def _summarize_error_body(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "error_message"):
            if _has_value(body.get(key)):
                return str(body[key])
    return "" if body is None else str(body)


def _http_post(url: str, data: Dict[str, Any], auth: Tuple[str, str], timeout: int = 15) -> Dict[str, Any]:
    try:
        resp = httpx.post(url, data=data, auth=auth, timeout=timeout)
    except httpx.HTTPError as exc:
        raise TransportError(f"SMS transport unreachable: {exc}", payload=data) from exc

    if resp.status_code == 429:
        raise TransportError(
            f"429 rate limited; retry_after={resp.headers.get('Retry-After')}",
            status_code=429,
            body=resp.headers.get("Retry-After"),
            payload=data,
        )
    if resp.is_error:
        logger.error("SMS provider %s error body: %s", resp.status_code, resp.text)
        body = _extract_error_body(resp)
        message = f"SMS HTTP {resp.status_code}"
        summary = _summarize_error_body(body)
        if summary:
            message = f"{message}: {summary}"
        raise TransportError(message, status_code=resp.status_code, body=body, payload=data)
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text}


# =========================
# Core Sender
# =========================
def send_message(
    *,
    to: str,
    message: str,
    from_number: Optional[str] = None,
    conversation_id: Optional[str] = None,
    listing_id: Optional[str] = None,
    source: MessageSource = MessageSource.SYSTEM_RESPONSE,
) -> Dict[str, Any]:
    """
    Send one SMS and log it. Returns ``{"status": "sent", "sid": ..., "raw": ...}``.
    Raises TransportError when credentials are missing or the provider refuses.
    """
    s = settings()
    recipient = normalize_phone(to) or to
    body = (message or "").strip()
    data = {"To": recipient, "From": (from_number or s.SMS_FROM_NUMBER or "").strip(), "Body": body}
    log_kw = {"conversation_id": conversation_id, "listing_id": listing_id}

    try:
        _validate_payload(data)
        if s.SMS_DRY_RUN:
            logger.info("[DRY RUN] SMS → %s: %s", recipient, body[:60])
            resp: Dict[str, Any] = {"sid": f"SM_dry_{int(time.time() * 1000)}", "status": "queued"}
        else:
            if not s.transport_configured:
                raise TransportError("SMS credentials missing", payload=data)
            logger.info("📤 Sending SMS → %s: %s...", recipient, body[:60])
            resp = _http_post(
                s.messages_url(),
                data=data,
                auth=(s.SMS_ACCOUNT_SID, s.SMS_AUTH_TOKEN),
                timeout=s.SMS_TIMEOUT_SEC,
            )
        provider_status = str((resp or {}).get("status") or "sent").lower()
        if provider_status not in OK_STATUSES:
            raise TransportError(f"SMS provider status {provider_status}", body=resp, payload=data)
    except TransportError as exc:
        log_outbound(phone=recipient, body=body, source=source, sid=None, status="failed", error=str(exc), **log_kw)
        raise

    sid = (resp or {}).get("sid") or (resp or {}).get("messageSid")
    log_outbound(phone=recipient, body=body, source=source, sid=sid, status="sent", **log_kw)
    return {"status": "sent", "sid": sid, "raw": resp}
