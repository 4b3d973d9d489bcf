from datetime import timedelta

import pytest

from renewals.conversation_store import ConversationStore, InvalidTransition
from renewals.schema import TERMINAL_STATES, ActionTaken, ConversationState, can_transition

from conftest import WEDNESDAY


def _create(store, *, listing_id="L1", phone="+15551112222", state=ConversationState.AWAITING_AVAILABILITY, **kw):
    return store.create(
        listing_id=listing_id,
        user_id="u1",
        phone_number=phone,
        expires_at=kw.pop("expires_at", WEDNESDAY + timedelta(hours=24)),
        state=state,
        now=kw.pop("now", WEDNESDAY),
        **kw,
    )


def test_create_and_get_roundtrip_fields():
    store = ConversationStore()
    conv = _create(store, batch_id="b1", listing_index=1, total_in_batch=2, message_sid="SM1", message_sent_at=WEDNESDAY)
    loaded = store.get(conv.id)
    assert loaded.listing_id == "L1"
    assert loaded.state == ConversationState.AWAITING_AVAILABILITY
    assert loaded.batch_id == "b1"
    assert loaded.listing_index == 1
    assert loaded.total_in_batch == 2
    assert loaded.message_sid == "SM1"
    assert loaded.expires_at == WEDNESDAY + timedelta(hours=24)
    assert loaded.conversation_type == "renewal"


def test_find_active_for_phone_prefers_most_recently_updated():
    store = ConversationStore()
    older = _create(store, listing_id="L1", now=WEDNESDAY)
    newer = _create(store, listing_id="L2", now=WEDNESDAY + timedelta(minutes=5))
    _create(store, listing_id="L3", state=ConversationState.PENDING, now=WEDNESDAY + timedelta(minutes=9))

    assert store.find_active_for_phone("(555) 111-2222").id == newer.id

    store.transition(older, ConversationState.AWAITING_HADIROT_QUESTION, now=WEDNESDAY + timedelta(minutes=10))
    assert store.find_active_for_phone("5551112222").id == older.id


def test_find_active_for_unknown_phone_is_none():
    assert ConversationStore().find_active_for_phone("+15550000000") is None


def test_next_pending_in_batch_by_index():
    store = ConversationStore()
    _create(store, listing_id="A", batch_id="b1", listing_index=1, total_in_batch=3)
    c = _create(store, listing_id="C", batch_id="b1", listing_index=3, total_in_batch=3, state=ConversationState.PENDING)
    b = _create(store, listing_id="B", batch_id="b1", listing_index=2, total_in_batch=3, state=ConversationState.PENDING)

    assert store.find_next_pending_in_batch("b1", 1).id == b.id
    assert store.find_next_pending_in_batch("b1", 2).id == c.id
    assert store.find_next_pending_in_batch("b1", 3) is None
    assert [x.listing_id for x in store.list_batch_open("b1")] == ["A", "B", "C"]


def test_terminal_states_never_transition():
    store = ConversationStore()
    conv = _create(store)
    done = store.transition(conv, ConversationState.COMPLETED, now=WEDNESDAY, action_taken=ActionTaken.EXTENDED)
    assert done.action_taken == ActionTaken.EXTENDED

    with pytest.raises(InvalidTransition):
        store.transition(done, ConversationState.AWAITING_AVAILABILITY, now=WEDNESDAY)
    with pytest.raises(InvalidTransition):
        store.transition(done, ConversationState.TIMEOUT, now=WEDNESDAY)


def test_pending_cannot_jump_to_completed():
    store = ConversationStore()
    conv = _create(store, state=ConversationState.PENDING)
    with pytest.raises(InvalidTransition):
        store.transition(conv, ConversationState.COMPLETED, now=WEDNESDAY)


def test_expires_at_is_fixed():
    store = ConversationStore()
    conv = _create(store)
    with pytest.raises(ValueError):
        store.transition(conv, ConversationState.TIMEOUT, now=WEDNESDAY, expires_at=WEDNESDAY)


def test_exists_for_listing_since_uses_creation_time():
    store = ConversationStore()
    _create(store, listing_id="L9", now=WEDNESDAY)
    assert store.exists_for_listing_since("L9", WEDNESDAY - timedelta(hours=1))
    assert not store.exists_for_listing_since("L9", WEDNESDAY + timedelta(hours=1))
    assert not store.exists_for_listing_since("other", WEDNESDAY - timedelta(hours=1))


def test_list_expired_open_skips_terminal_rows():
    store = ConversationStore()
    stale = _create(store, listing_id="L1", expires_at=WEDNESDAY - timedelta(hours=1))
    done = _create(store, listing_id="L2", expires_at=WEDNESDAY - timedelta(hours=1))
    store.transition(done, ConversationState.COMPLETED, now=WEDNESDAY)
    _create(store, listing_id="L3", expires_at=WEDNESDAY + timedelta(hours=1))

    assert [c.id for c in store.list_expired_open(WEDNESDAY)] == [stale.id]


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
def test_terminal_states_have_no_exits(terminal):
    assert not any(can_transition(terminal, target) for target in ConversationState)
