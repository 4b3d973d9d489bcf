from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import renewals.webhook as webhook
from renewals.classifier import ReplyIntent
from renewals.conversation_store import ConversationStore
from renewals.datastore import list_records
from renewals.idempotency import IdempotencyStore
from renewals.listings import ListingStore
from renewals.message_log import messages_for_phone
from renewals.reminder_scheduler import run_renewal_reminders
from renewals.schema import ActionTaken, ConversationState, MessageDirection

from conftest import IN_WINDOW, WEDNESDAY

PHONE = "+15551112222"


def _reply(body, clock, sender, sid=None, **kw):
    payload = {"From": PHONE, "Body": body}
    if sid:
        payload["MessageSid"] = sid
    return webhook.handle_inbound(payload, clock=clock, send=sender, idempotency=IdempotencyStore(redis_url=""), **kw)


def _conv(listing_id):
    store = ConversationStore()
    for record in list_records(store.handle):
        conv = store.get(record["id"])
        if conv.listing_id == listing_id:
            return conv
    raise AssertionError(f"no conversation for {listing_id}")


@pytest.fixture
def single(clock, sender, make_listing):
    lid = make_listing()
    run_renewal_reminders(clock=clock, send=sender)
    sender.calls.clear()
    return lid


@pytest.fixture
def batch(clock, sender, make_listing):
    ids = [make_listing(location=f"Street {n}") for n in ("A", "B", "C")]
    run_renewal_reminders(clock=clock, send=sender)
    sender.calls.clear()
    return ids


def test_yes_extends_listing(single, clock, sender):
    clock.advance(hours=1)
    out = _reply("YES", clock, sender)

    assert out["intent"] == ReplyIntent.YES.value
    conv = _conv(single)
    assert conv.state == ConversationState.COMPLETED
    assert conv.action_taken == ActionTaken.EXTENDED
    assert conv.reply_text == "YES"

    listing = ListingStore().get(single)
    assert listing.is_active is True
    assert listing.expires_at == clock.now() + timedelta(days=14)
    assert len(sender.calls) == 1
    assert sender.messages[0].startswith("Extended 14 days. New expiration: Jan 29, 2025.")


def test_no_then_yes_records_conversion(single, clock, sender):
    _reply("no", clock, sender)
    conv = _conv(single)
    assert conv.state == ConversationState.AWAITING_HADIROT_QUESTION
    assert ListingStore().get(single).is_active is False
    assert "Did the tenant find you through Hadirot?" in sender.messages[-1]

    _reply("yes", clock, sender)
    conv = _conv(single)
    assert conv.state == ConversationState.COMPLETED
    assert conv.action_taken == ActionTaken.DEACTIVATED
    assert conv.hadirot_conversion is True
    listing = ListingStore().get(single)
    assert listing.is_active is False
    assert listing.hadirot_conversion is True
    assert sender.messages[-1].startswith("Thank you!")


def test_attribution_question_only_accepts_yes_or_no(single, clock, sender):
    _reply("nope", clock, sender)
    out = _reply("what?", clock, sender)
    assert out["action"] == "clarify"
    assert _conv(single).state == ConversationState.AWAITING_HADIROT_QUESTION
    assert sender.messages[-1] == "Please reply YES if they found you via Hadirot, or NO."


def test_help_and_unknown_do_not_change_state(single, clock, sender):
    _reply("help", clock, sender)
    assert sender.messages[-1].startswith("Your listing at Ave J & E 12th for $2,500/month expires in 5 days.")
    _reply("maybe", clock, sender)
    assert sender.messages[-1] == "Please reply YES if available or NO if rented."
    assert _conv(single).state == ConversationState.AWAITING_AVAILABILITY


def test_reply_after_deadline_is_expired_link(single, clock, sender):
    clock.advance(hours=25)
    out = _reply("yes", clock, sender)

    conv = _conv(single)
    assert out["state"] == ConversationState.EXPIRED_LINK.value
    assert conv.state == ConversationState.EXPIRED_LINK
    assert conv.action_taken == ActionTaken.EXPIRED_LINK
    assert conv.reply_text == "yes"
    listing = ListingStore().get(single)
    assert listing.expires_at == IN_WINDOW
    assert listing.is_active is True
    assert "renewal link has expired" in sender.messages[-1]


def test_expired_reply_leaves_listing_untouched(single, clock, sender):
    before = ListingStore().get(single)
    clock.advance(days=2)
    _reply("no", clock, sender)
    after = ListingStore().get(single)
    assert after.is_active == before.is_active
    assert after.expires_at == before.expires_at
    assert after.deactivated_at is None


def test_extension_failure_keeps_conversation_open(single, clock, sender, monkeypatch):
    alerts = []
    monkeypatch.setattr(ListingStore, "extend_listing", lambda self, *a, **k: None)
    monkeypatch.setattr(webhook, "notify_operator", alerts.append)

    out = _reply("yes", clock, sender)

    assert out["action"] == "extension_failed"
    conv = _conv(single)
    assert conv.state == ConversationState.AWAITING_AVAILABILITY
    assert conv.expires_at == WEDNESDAY + timedelta(hours=24)
    assert "error extending your listing" in sender.messages[-1]
    assert alerts and single in alerts[0]


def test_batch_advances_to_next_listing(batch, clock, sender):
    a, b, c = batch
    _reply("yes", clock, sender)

    assert _conv(a).state == ConversationState.COMPLETED
    assert _conv(b).state == ConversationState.AWAITING_AVAILABILITY
    assert _conv(b).message_sent_at == clock.now()
    assert _conv(c).state == ConversationState.PENDING
    assert sender.messages[-1].startswith("Next (2 remaining): Is the one at Street B")

    out = _reply("no", clock, sender)
    assert out["conversation_id"] == _conv(b).id


def test_batch_advances_after_attribution(batch, clock, sender):
    a, b, _ = batch
    _reply("no", clock, sender)
    assert _conv(b).state == ConversationState.PENDING
    _reply("no", clock, sender)
    assert _conv(a).state == ConversationState.COMPLETED
    assert _conv(a).hadirot_conversion is False
    assert _conv(b).state == ConversationState.AWAITING_AVAILABILITY


def test_batch_help_lists_open_listings(batch, clock, sender):
    _reply("show me the others", clock, sender)
    msg = sender.messages[-1]
    assert "1. Street A" in msg and "3. Street C" in msg
    assert "Currently asking about listing 1." in msg


def test_batch_help_numbers_match_batch_positions(batch, clock, sender):
    _reply("yes", clock, sender)
    _reply("help", clock, sender)
    msg = sender.messages[-1]
    assert "2. Street B" in msg and "3. Street C" in msg
    assert "1. " not in msg
    assert "Currently asking about listing 2." in msg


def test_last_in_batch_finishes(batch, clock, sender):
    for _ in range(3):
        _reply("yes", clock, sender)
    assert all(_conv(lid).state == ConversationState.COMPLETED for lid in batch)
    assert _reply("yes", clock, sender)["status"] == "no_conversation"


def test_unknown_phone_is_discarded(clock, sender):
    out = webhook.handle_inbound({"From": "+15550000000", "Body": "yes"}, clock=clock, send=sender)
    assert out["status"] == "no_conversation"
    assert sender.calls == []


def test_duplicate_message_sid_is_ignored(single, clock, sender):
    idem = IdempotencyStore(redis_url="")
    payload = {"From": PHONE, "Body": "no", "MessageSid": "SM_dup"}
    webhook.handle_inbound(payload, clock=clock, send=sender, idempotency=idem)
    out = webhook.handle_inbound(dict(payload, Body="yes"), clock=clock, send=sender, idempotency=idem)
    assert out["status"] == "duplicate"
    assert _conv(single).state == ConversationState.AWAITING_HADIROT_QUESTION


def test_internal_fault_moves_conversation_to_error(single, clock, sender, monkeypatch):
    alerts = []
    monkeypatch.setattr(webhook, "notify_operator", alerts.append)

    def boom(self, *a, **k):
        raise RuntimeError("store exploded")

    monkeypatch.setattr(ListingStore, "deactivate_listing", boom)
    out = _reply("no", clock, sender)

    assert out["status"] == "error"
    conv = _conv(single)
    assert conv.state == ConversationState.ERROR
    assert conv.reply_text == "no"
    assert alerts


def test_inbound_message_is_logged(single, clock, sender):
    _reply("maybe", clock, sender, sid="SM_in_1")
    rows = [r["fields"] for r in messages_for_phone(PHONE)]
    inbound = [f for f in rows if f.get("Direction") == MessageDirection.INBOUND.value]
    assert inbound and inbound[0]["Message SID"] == "SM_in_1"
    assert inbound[0]["Conversation ID"] == _conv(single).id


def test_http_endpoint_always_returns_empty_twiml(single, monkeypatch):
    from renewals.main import app

    seen = []
    monkeypatch.setattr(webhook, "handle_inbound", lambda data: seen.append(data) or {"status": "processed"})
    client = TestClient(app)

    resp = client.post("/renewals/sms", data={"From": PHONE, "Body": "YES", "MessageSid": "SM1"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")
    assert resp.text == webhook.EMPTY_TWIML
    assert seen[0]["Body"] == "YES"

    monkeypatch.setattr(webhook, "handle_inbound", lambda data: 1 / 0)
    resp = client.post("/renewals/sms", data={"From": PHONE, "Body": "YES"})
    assert resp.status_code == 200
    assert resp.text == webhook.EMPTY_TWIML


def test_http_endpoint_bad_token_still_acknowledged(monkeypatch):
    from renewals.config import refresh_settings
    from renewals.main import app

    monkeypatch.setenv("WEBHOOK_TOKEN", "secret")
    refresh_settings()
    called = []
    monkeypatch.setattr(webhook, "handle_inbound", lambda data: called.append(data))
    client = TestClient(app)

    resp = client.post("/renewals/sms?token=wrong", data={"From": PHONE, "Body": "YES"})
    assert resp.status_code == 200
    assert resp.text == webhook.EMPTY_TWIML
    assert called == []

    client.post("/renewals/sms", data={"From": PHONE, "Body": "YES"}, headers={"X-Webhook-Token": "secret"})
    assert len(called) == 1
