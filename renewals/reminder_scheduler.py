"""
Reminder Scheduler
------------------
Daily batch job: find listings expiring ``REMINDER_DAYS_BEFORE`` local days
from now, group them by contact phone and open renewal conversations.

- One listing per phone → one conversation, prompted immediately.
- Several listings per phone → a batch (capped at ``MAX_BATCH_SIZE``); only
  index 1 is prompted, the rest wait in ``pending`` for the webhook to
  advance the batch.
- Quiet days (local weekday names in ``QUIET_DAYS``) make the run a no-op.
- A phone that still has an open conversation is left alone this run.

Each conversation row is written before its prompt goes out, then moved to
``awaiting_availability`` (sent) or ``error``/``sms_failed`` (transport failed).
"""

from __future__ import annotations

import json
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from renewals import config, templates
from renewals.alerts import notify_operator
from renewals.config import Settings, WEEKDAYS, require_batch_config
from renewals.conversation_store import ConversationStore, RenewalConversation
from renewals.listings import Listing, ListingStore
from renewals.run_logger import log_run
from renewals.runtime import SystemClock, get_logger, local_day_bounds, local_now, normalize_phone, timed, to_iso
from renewals.schema import ActionTaken, ConversationState, MessageSource
from renewals.sms_sender import TransportError, send_message

logger = get_logger("reminders")

RUN_TYPE = "RENEWAL_REMINDERS"

SendFn = Callable[..., Dict[str, Any]]


def _empty_summary(now: datetime) -> Dict[str, Any]:
    return {
        "totalExpiring": 0,
        "uniquePhones": 0,
        "sent": 0,
        "errors": 0,
        "skippedDuplicates": 0,
        "skippedActivePhones": 0,
        "timestamp": to_iso(now),
    }


def group_by_phone(listings: List[Listing]) -> "OrderedDict[str, List[Listing]]":
    """Normalized phone → listings ordered by (expires_at, id)."""
    groups: "OrderedDict[str, List[Listing]]" = OrderedDict()
    for listing in listings:
        phone = normalize_phone(listing.contact_phone)
        if not phone:
            logger.warning("Listing %s has unusable contact phone %r", listing.id, listing.contact_phone)
            continue
        groups.setdefault(phone, []).append(listing)
    for group in groups.values():
        group.sort(key=lambda l: (l.expires_at, l.id))
    return groups


def _fail_rows(conversations: ConversationStore, rows: List[RenewalConversation], now: datetime) -> None:
    """Move every row of a group whose prompt never went out to error/sms_failed."""
    for conv in rows:
        conversations.transition(conv, ConversationState.ERROR, now=now, action_taken=ActionTaken.SMS_FAILED)


def _open_phone(
    phone: str,
    group: List[Listing],
    *,
    now: datetime,
    today_start: datetime,
    s: Settings,
    send: SendFn,
    conversations: ConversationStore,
    summary: Dict[str, Any],
) -> None:
    capped = group[: s.MAX_BATCH_SIZE]
    fresh = [l for l in capped if not conversations.exists_for_listing_since(l.id, today_start)]
    summary["skippedDuplicates"] += len(capped) - len(fresh)
    if not fresh:
        return

    is_batch = len(fresh) > 1
    batch_id = str(uuid.uuid4()) if is_batch else None
    total_in_batch = len(fresh) if is_batch else None
    hours = s.BATCH_TIMEOUT_HOURS if is_batch else s.SINGLE_TIMEOUT_HOURS
    expires_at = now + timedelta(hours=hours)

    rows: List[RenewalConversation] = []
    for idx, listing in enumerate(fresh, start=1):
        conv = conversations.create(
            listing_id=listing.id,
            user_id=listing.user_id,
            phone_number=phone,
            expires_at=expires_at,
            state=ConversationState.PENDING,
            now=now,
            batch_id=batch_id,
            listing_index=idx if is_batch else None,
            total_in_batch=total_in_batch,
        )
        if conv is None:
            _fail_rows(conversations, rows, now)
            raise RuntimeError(f"conversation insert failed for listing {listing.id}")
        rows.append(conv)

    head, first = rows[0], fresh[0]
    copy = {"brand": s.BRAND_NAME, "days": s.REMINDER_DAYS_BEFORE}
    if is_batch:
        found = len(group) if len(group) > s.MAX_BATCH_SIZE else len(fresh)
        message = templates.batch_first_prompt(first, found, s.MAX_BATCH_SIZE, **copy)
    else:
        message = templates.single_prompt(first, **copy)

    try:
        result = send(
            to=phone,
            message=message,
            conversation_id=head.id,
            listing_id=first.id,
            source=MessageSource.RENEWAL_REMINDER,
        )
    except TransportError as exc:
        logger.error("Reminder to %s failed for listing %s: %s", phone, first.id, exc)
        _fail_rows(conversations, rows, now)
        summary["errors"] += 1
        return

    conversations.transition(
        head,
        ConversationState.AWAITING_AVAILABILITY,
        now=now,
        message_sent_at=now,
        message_sid=(result or {}).get("sid"),
    )
    summary["sent"] += 1
    logger.info(
        "Reminder sent to %s for listing %s (%s)",
        phone,
        first.id,
        f"batch {batch_id} of {total_in_batch}" if is_batch else "single",
    )


@timed("renewal_reminders")
def run_renewal_reminders(
    *,
    clock=None,
    send: Optional[SendFn] = None,
    conversations: Optional[ConversationStore] = None,
    listings: Optional[ListingStore] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    s = require_batch_config(settings or config.settings())
    clock = clock or SystemClock()
    send = send or send_message
    conversations = conversations or ConversationStore()
    listings = listings or ListingStore()

    now = clock.now()
    local = local_now(clock, s.RENEWAL_TZ)
    summary = _empty_summary(now)

    if local.weekday() in s.QUIET_DAYS:
        day = WEEKDAYS[local.weekday()].capitalize()
        logger.info("Skipping renewal reminders: %s is a quiet day", day)
        log_run(RUN_TYPE, processed=0, breakdown={"skipped": "quiet_day", "day": day}, status="SKIPPED")
        return {"ok": True, "skipped": "quiet_day", "day": day, "summary": summary}

    window_start, window_end = local_day_bounds(local.date() + timedelta(days=s.REMINDER_DAYS_BEFORE), s.RENEWAL_TZ)
    today_start, _ = local_day_bounds(local.date(), s.RENEWAL_TZ)
    logger.info("Looking for listings expiring between %s and %s", to_iso(window_start), to_iso(window_end))

    eligible = listings.list_expiring(window_start, window_end)
    groups = group_by_phone(eligible)
    summary["totalExpiring"] = len(eligible)
    summary["uniquePhones"] = len(groups)

    for phone, group in groups.items():
        try:
            if conversations.has_open_for_phone(phone):
                logger.info("Phone %s still has an open renewal conversation; skipping", phone)
                summary["skippedActivePhones"] += 1
                continue
            _open_phone(
                phone,
                group,
                now=now,
                today_start=today_start,
                s=s,
                send=send,
                conversations=conversations,
                summary=summary,
            )
        except Exception as exc:
            logger.exception("Renewal reminder failed for %s", phone)
            summary["errors"] += 1
            notify_operator(f"Renewal reminder failed for {phone}: {exc}")

    status = "OK" if summary["errors"] == 0 else "PARTIAL"
    logger.info("Renewal reminders completed: %s", summary)
    log_run(RUN_TYPE, processed=summary["sent"], breakdown=summary, status=status)
    return {"ok": True, "summary": summary}


if __name__ == "__main__":
    print(json.dumps(run_renewal_reminders(), indent=2))
