"""
Renewal SMS Webhook
-------------------
Inbound replies from the SMS transport. The sender's phone is the only
correlation key: the reply is applied to the most recently updated
conversation awaiting an answer from that phone.

    awaiting_availability      YES  → completed/extended   (+ advance batch)
                               NO   → awaiting_hadirot_question (listing off)
                               HELP → context resent, no change
                               else → clarification, no change
    awaiting_hadirot_question  YES/NO → completed/deactivated (+ advance batch)
                               else   → clarification, no change
    any awaiting_*, past expires_at → expired_link

The HTTP endpoint always answers with empty TwiML; outcomes are only logged.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Header, Query, Request, Response
from starlette.concurrency import run_in_threadpool

from renewals import config, templates
from renewals.alerts import notify_operator
from renewals.classifier import ReplyIntent, classify_reply
from renewals.config import Settings
from renewals.conversation_store import ConversationStore, RenewalConversation
from renewals.idempotency import IdempotencyStore, get_store
from renewals.listings import Listing, ListingStore
from renewals.message_log import log_inbound
from renewals.runtime import SystemClock, get_logger, normalize_phone
from renewals.schema import ActionTaken, ConversationState, MessageSource, can_transition
from renewals.sms_sender import TransportError, send_message

logger = get_logger("renewal_webhook")

router = APIRouter(prefix="/renewals", tags=["renewals"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'

FROM_KEYS = ("From", "from", "phone")
BODY_KEYS = ("Body", "body", "message")
SID_KEYS = ("MessageSid", "SmsSid", "messageSid", "sid")

SendFn = Callable[..., Dict[str, Any]]


def _pick(payload: Dict[str, Any], keys) -> str:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return ""


class _Turn:
    """State shared while one inbound message is handled."""

    def __init__(self, conv, body, intent, now, s, send, conversations, listings):
        self.conv: RenewalConversation = conv
        self.body: str = body
        self.intent: ReplyIntent = intent
        self.now: datetime = now
        self.s: Settings = s
        self.send: SendFn = send
        self.conversations: ConversationStore = conversations
        self.listings: ListingStore = listings
        self.action: Optional[str] = None

    def reply(self, text: str, *, conv: Optional[RenewalConversation] = None) -> Optional[str]:
        target = conv or self.conv
        try:
            result = self.send(
                to=target.phone_number,
                message=text,
                conversation_id=target.id,
                listing_id=target.listing_id,
                source=MessageSource.SYSTEM_RESPONSE,
            )
        except TransportError as exc:
            logger.error("Reply to %s failed: %s", target.phone_number, exc)
            return None
        return (result or {}).get("sid")

    def move(self, conv: RenewalConversation, target: ConversationState, **changes) -> RenewalConversation:
        updated = self.conversations.transition(conv, target, now=self.now, **changes)
        if updated is None:
            raise RuntimeError(f"store rejected {target.value} for conversation {conv.id}")
        if conv.id == self.conv.id:
            self.conv = updated
        return updated


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------
def _on_availability(turn: _Turn, listing: Listing) -> None:
    conv = turn.conv
    if turn.intent == ReplyIntent.YES:
        new_expires_at = turn.now + timedelta(days=turn.s.RENEWAL_EXTENSION_DAYS)
        if not turn.listings.extend_listing(listing.id, new_expires_at, turn.now):
            turn.action = "extension_failed"
            turn.reply(templates.extension_failed_reply(dashboard_url=turn.s.DASHBOARD_URL))
            notify_operator(f"Listing {listing.id} extension failed (conversation {conv.id}, {conv.phone_number})")
            return
        turn.move(
            conv,
            ConversationState.COMPLETED,
            action_taken=ActionTaken.EXTENDED,
            reply_received_at=turn.now,
            reply_text=turn.body,
        )
        turn.action = ActionTaken.EXTENDED.value
        turn.reply(
            templates.extended_reply(new_expires_at, days=turn.s.RENEWAL_EXTENSION_DAYS, tz_name=turn.s.RENEWAL_TZ)
        )
        _advance_batch(turn)

    elif turn.intent == ReplyIntent.NO:
        if not turn.listings.deactivate_listing(listing.id, turn.now):
            notify_operator(f"Listing {listing.id} deactivation failed (conversation {conv.id})")
        turn.move(
            conv,
            ConversationState.AWAITING_HADIROT_QUESTION,
            reply_received_at=turn.now,
            reply_text=turn.body,
        )
        turn.action = "deactivation_requested"
        turn.reply(templates.deactivated_reply(listing, brand=turn.s.BRAND_NAME))

    elif turn.intent == ReplyIntent.HELP:
        turn.action = "help"
        if conv.is_batched:
            open_rows = turn.conversations.list_batch_open(conv.batch_id)
            batch = []
            for row in open_rows:
                row_listing = turn.listings.get(row.listing_id)
                if row_listing is not None:
                    batch.append((row.listing_index, row_listing))
            if batch:
                turn.reply(templates.batch_help(batch, conv.listing_index))
                return
        turn.reply(templates.single_help(listing, days=turn.s.REMINDER_DAYS_BEFORE))

    else:
        turn.action = "clarify"
        turn.reply(templates.availability_clarification(listing))


def _on_attribution(turn: _Turn, listing: Listing) -> None:
    if turn.intent not in (ReplyIntent.YES, ReplyIntent.NO):
        turn.action = "clarify"
        turn.reply(templates.attribution_clarification(brand=turn.s.BRAND_NAME))
        return

    converted = turn.intent == ReplyIntent.YES
    if not turn.listings.set_conversion_flag(listing.id, converted):
        notify_operator(f"Listing {listing.id} conversion flag not saved (conversation {turn.conv.id})")
    turn.move(
        turn.conv,
        ConversationState.COMPLETED,
        action_taken=ActionTaken.DEACTIVATED,
        hadirot_conversion=converted,
        reply_received_at=turn.now,
        reply_text=turn.body,
    )
    turn.action = ActionTaken.DEACTIVATED.value
    turn.reply(templates.attribution_thanks(brand=turn.s.BRAND_NAME))
    _advance_batch(turn)


def _advance_batch(turn: _Turn) -> Optional[RenewalConversation]:
    """Prompt the next pending listing of the batch, if any."""
    conv = turn.conv
    if not (conv.batch_id and conv.listing_index):
        return None

    after = conv.listing_index
    while True:
        nxt = turn.conversations.find_next_pending_in_batch(conv.batch_id, after)
        if nxt is None:
            logger.info("Batch %s finished", conv.batch_id)
            return None
        listing = turn.listings.get(nxt.listing_id)
        if listing is not None:
            break
        logger.error("Listing %s vanished; closing conversation %s", nxt.listing_id, nxt.id)
        turn.move(nxt, ConversationState.ERROR)
        after = nxt.listing_index or after + 1

    remaining = (nxt.total_in_batch or conv.total_in_batch or 0) - (nxt.listing_index or 0) + 1
    sid = turn.reply(templates.batch_next_prompt(listing, remaining), conv=nxt)
    return turn.move(
        nxt,
        ConversationState.AWAITING_AVAILABILITY,
        message_sent_at=turn.now,
        message_sid=sid,
    )


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------
def handle_inbound(
    payload: Dict[str, Any],
    *,
    clock=None,
    send: Optional[SendFn] = None,
    conversations: Optional[ConversationStore] = None,
    listings: Optional[ListingStore] = None,
    settings: Optional[Settings] = None,
    idempotency: Optional[IdempotencyStore] = None,
) -> Dict[str, Any]:
    """Apply one inbound SMS. Never raises; the outcome dict is for logs and tests."""
    s = settings or config.settings()
    clock = clock or SystemClock()
    send = send or send_message
    conversations = conversations or ConversationStore()
    listings = listings or ListingStore()
    idempotency = idempotency or get_store()

    sender = _pick(payload, FROM_KEYS)
    body = _pick(payload, BODY_KEYS)
    sid = _pick(payload, SID_KEYS) or None

    if not sender or not body:
        logger.warning("Inbound renewal SMS missing From or Body: %s", payload)
        return {"status": "ignored", "reason": "missing_fields"}
    if idempotency.seen(sid):
        logger.info("Duplicate inbound %s ignored", sid)
        return {"status": "duplicate", "message_sid": sid}

    phone = normalize_phone(sender) or sender
    conv = conversations.find_active_for_phone(phone)
    if conv is None:
        logger.info("No active renewal conversation for %s", phone)
        return {"status": "no_conversation", "phone": phone}

    log_inbound(phone=phone, body=body, sid=sid, conversation_id=conv.id, listing_id=conv.listing_id)
    now = clock.now()
    turn = _Turn(conv, body, ReplyIntent.UNKNOWN, now, s, send, conversations, listings)

    try:
        if conv.is_expired(now):
            turn.move(
                conv,
                ConversationState.EXPIRED_LINK,
                action_taken=ActionTaken.EXPIRED_LINK,
                reply_received_at=now,
                reply_text=body,
            )
            turn.action = ActionTaken.EXPIRED_LINK.value
            turn.reply(templates.expired_link_reply(brand=s.BRAND_NAME, dashboard_url=s.DASHBOARD_URL))
            return _outcome(turn, intent=None)

        listing = listings.get(conv.listing_id)
        if listing is None:
            raise LookupError(f"listing {conv.listing_id} not found")

        turn.intent = classify_reply(body)
        if conv.state == ConversationState.AWAITING_AVAILABILITY:
            _on_availability(turn, listing)
        else:
            _on_attribution(turn, listing)
        return _outcome(turn, intent=turn.intent)

    except Exception as exc:
        logger.exception("Renewal webhook failed for conversation %s", turn.conv.id)
        current = turn.conversations.get(turn.conv.id) or turn.conv
        if can_transition(current.state, ConversationState.ERROR):
            conversations.transition(
                current,
                ConversationState.ERROR,
                now=now,
                reply_received_at=now,
                reply_text=body,
            )
        notify_operator(f"Renewal webhook error for {phone} (conversation {turn.conv.id}): {exc}")
        return {"status": "error", "conversation_id": turn.conv.id, "error": str(exc)}


def _outcome(turn: _Turn, *, intent: Optional[ReplyIntent]) -> Dict[str, Any]:
    return {
        "status": "processed",
        "conversation_id": turn.conv.id,
        "state": turn.conv.state.value,
        "intent": intent.value if intent else None,
        "action": turn.action,
    }


# ----------------------------------------------------------------------
# HTTP
# ----------------------------------------------------------------------
def _twiml() -> Response:
    return Response(content=EMPTY_TWIML, media_type="text/xml")


def _is_authorized(header_token: Optional[str], query_token: Optional[str]) -> bool:
    expected = config.settings().WEBHOOK_TOKEN
    if not expected:
        return True  # auth disabled
    return expected in (header_token, query_token)


async def _parse_body(request: Request) -> Dict[str, Any]:
    """Parse JSON or form bodies into a flat dict."""
    content_type = request.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        body = await request.json()
        return dict(body) if isinstance(body, dict) else {}
    form = await request.form()
    return {k: (v if isinstance(v, str) else str(v)) for k, v in form.items()}


@router.post("/sms")
async def renewal_sms_webhook(
    request: Request,
    x_webhook_token: Optional[str] = Header(None, alias="X-Webhook-Token"),
    token: Optional[str] = Query(None),
):
    """Inbound SMS from the transport. Always acknowledged with empty TwiML."""
    if not _is_authorized(x_webhook_token, token):
        logger.warning("Rejected renewal webhook call with bad token")
        return _twiml()
    try:
        data = await _parse_body(request)
    except Exception as exc:
        logger.warning("Failed to parse renewal webhook body: %s", exc)
        return _twiml()
    try:
        outcome = await run_in_threadpool(handle_inbound, data)
        logger.info("Renewal webhook outcome: %s", outcome)
    except Exception:
        logger.exception("Renewal webhook crashed")
    return _twiml()
