"""SMS Messages audit table: one row per inbound or outbound renewal text."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from renewals.datastore import CONNECTOR, create_record, eq_formula, list_records
from renewals.runtime import get_logger, iso_now
from renewals.schema import MessageDirection, MessageSource, sms_messages_field_map

logger = get_logger("message_log")

F = sms_messages_field_map()


def log_message(
    *,
    direction: MessageDirection,
    phone: str,
    body: str,
    source: MessageSource,
    sid: Optional[str] = None,
    listing_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    status: Optional[str] = None,
    error: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Best-effort write; a failed log never interrupts the conversation."""
    payload = {
        F["DIRECTION"]: direction.value,
        F["PHONE_NUMBER"]: phone,
        F["MESSAGE_BODY"]: body,
        F["MESSAGE_SOURCE"]: source.value,
        F["MESSAGE_SID"]: sid,
        F["LISTING_ID"]: listing_id,
        F["CONVERSATION_ID"]: conversation_id,
        F["STATUS"]: status,
        F["ERROR"]: error,
        F["CREATED_AT"]: iso_now(),
    }
    try:
        return create_record(CONNECTOR.sms_messages(), payload)
    except Exception as exc:
        logger.warning("SMS log write failed for %s: %s", phone, exc)
        return None


def log_outbound(*, phone: str, body: str, source: MessageSource, sid: Optional[str], status: str, **kw):
    return log_message(direction=MessageDirection.OUTBOUND, phone=phone, body=body, source=source, sid=sid, status=status, **kw)


def log_inbound(*, phone: str, body: str, sid: Optional[str], **kw):
    return log_message(
        direction=MessageDirection.INBOUND,
        phone=phone,
        body=body,
        source=MessageSource.INBOUND_REPLY,
        sid=sid,
        status="received",
        **kw,
    )


def messages_for_phone(phone: str) -> List[Dict[str, Any]]:
    return list_records(CONNECTOR.sms_messages(), formula=eq_formula({F["PHONE_NUMBER"]: phone}))
