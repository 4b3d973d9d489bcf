"""
Renewal conversation repository.

One row per listing under discussion. Rows sharing a ``Batch ID`` belong to
the same phone and are prompted one at a time in ``Listing Index`` order.
Rows are never deleted; state only moves forward (see ``ALLOWED_TRANSITIONS``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from renewals.datastore import CONNECTOR, TableHandle, create_record, eq_formula, get_record, list_records, update_record
from renewals.runtime import get_logger, normalize_phone, parse_ts, to_iso
from renewals.schema import (
    OPEN_STATES,
    REPLYABLE_STATES,
    ActionTaken,
    ConversationState,
    can_transition,
    renewal_conversations_field_map,
)

logger = get_logger("conversations")

F = renewal_conversations_field_map()

DEFAULT_CONVERSATION_TYPE = "renewal"

# Keyword -> logical field for the columns ``transition`` may touch
_TRANSITION_FIELDS = {
    "action_taken": "ACTION_TAKEN",
    "reply_received_at": "REPLY_RECEIVED_AT",
    "reply_text": "REPLY_TEXT",
    "hadirot_conversion": "HADIROT_CONVERSION",
    "message_sent_at": "MESSAGE_SENT_AT",
    "message_sid": "MESSAGE_SID",
}


class InvalidTransition(ValueError):
    """Raised when a state change would move a conversation backwards."""

    def __init__(self, conversation_id: str, current: ConversationState, target: ConversationState):
        super().__init__(f"Conversation {conversation_id}: {current.value} -> {target.value} not allowed")
        self.conversation_id = conversation_id
        self.current = current
        self.target = target


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _bool_or_none(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes")


def _state(value: Any) -> ConversationState:
    try:
        return ConversationState(str(value))
    except ValueError:
        logger.warning("Unknown conversation state %r, treating as error", value)
        return ConversationState.ERROR


def _action(value: Any) -> Optional[ActionTaken]:
    if not value:
        return None
    try:
        return ActionTaken(str(value))
    except ValueError:
        return None


def _serialise(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, (ConversationState, ActionTaken)):
        return value.value
    return value


@dataclass
class RenewalConversation:
    id: str
    listing_id: str
    user_id: Optional[str]
    phone_number: str
    expires_at: datetime
    state: ConversationState
    batch_id: Optional[str] = None
    listing_index: Optional[int] = None
    total_in_batch: Optional[int] = None
    message_sent_at: Optional[datetime] = None
    message_sid: Optional[str] = None
    action_taken: Optional[ActionTaken] = None
    reply_received_at: Optional[datetime] = None
    reply_text: Optional[str] = None
    hadirot_conversion: Optional[bool] = None
    conversation_type: str = DEFAULT_CONVERSATION_TYPE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_batched(self) -> bool:
        return bool(self.batch_id)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "RenewalConversation":
        f = record.get("fields", {}) or {}
        created = parse_ts(f.get(F["CREATED_AT"])) or parse_ts(record.get("createdTime"))
        return cls(
            id=record["id"],
            listing_id=f.get(F["LISTING_ID"]),
            user_id=f.get(F["USER_ID"]),
            phone_number=f.get(F["PHONE_NUMBER"]),
            expires_at=parse_ts(f.get(F["EXPIRES_AT"])),
            state=_state(f.get(F["STATE"])),
            batch_id=f.get(F["BATCH_ID"]) or None,
            listing_index=_int_or_none(f.get(F["LISTING_INDEX"])),
            total_in_batch=_int_or_none(f.get(F["TOTAL_IN_BATCH"])),
            message_sent_at=parse_ts(f.get(F["MESSAGE_SENT_AT"])),
            message_sid=f.get(F["MESSAGE_SID"]) or None,
            action_taken=_action(f.get(F["ACTION_TAKEN"])),
            reply_received_at=parse_ts(f.get(F["REPLY_RECEIVED_AT"])),
            reply_text=f.get(F["REPLY_TEXT"]),
            hadirot_conversion=_bool_or_none(f.get(F["HADIROT_CONVERSION"])),
            conversation_type=f.get(F["CONVERSATION_TYPE"]) or DEFAULT_CONVERSATION_TYPE,
            created_at=created,
            updated_at=parse_ts(f.get(F["UPDATED_AT"])) or created,
        )


def _sort_key_recent(conv: RenewalConversation):
    stamp = conv.updated_at or conv.created_at
    return (stamp.timestamp() if stamp else 0.0, conv.id)


class ConversationStore:
    """Repository over the Renewal Conversations table."""

    def __init__(self, handle: Optional[TableHandle] = None):
        self._handle = handle

    @property
    def handle(self) -> TableHandle:
        return self._handle or CONNECTOR.renewal_conversations()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _query(self, **conditions: Any) -> List[RenewalConversation]:
        formula = eq_formula({F[key]: value for key, value in conditions.items()})
        return [RenewalConversation.from_record(r) for r in list_records(self.handle, formula=formula)]

    def get(self, conversation_id: str) -> Optional[RenewalConversation]:
        record = get_record(self.handle, conversation_id)
        return RenewalConversation.from_record(record) if record else None

    def for_phone(self, phone: str, states: Iterable[ConversationState]) -> List[RenewalConversation]:
        normalized = normalize_phone(phone)
        if not normalized:
            return []
        wanted = set(states)
        return [c for c in self._query(PHONE_NUMBER=normalized) if c.state in wanted]

    def find_active_for_phone(self, phone: str) -> Optional[RenewalConversation]:
        """Most recently updated conversation awaiting a reply from ``phone``."""
        candidates = self.for_phone(phone, REPLYABLE_STATES)
        if not candidates:
            return None
        return max(candidates, key=_sort_key_recent)

    def has_open_for_phone(self, phone: str) -> bool:
        return bool(self.for_phone(phone, OPEN_STATES))

    def find_next_pending_in_batch(self, batch_id: str, after_index: int) -> Optional[RenewalConversation]:
        pending = [
            c
            for c in self._query(BATCH_ID=batch_id)
            if c.state == ConversationState.PENDING and (c.listing_index or 0) > after_index
        ]
        if not pending:
            return None
        return min(pending, key=lambda c: c.listing_index or 0)

    def list_batch_open(self, batch_id: str) -> List[RenewalConversation]:
        """Pending and awaiting-availability rows of a batch in prompt order."""
        wanted = {ConversationState.PENDING, ConversationState.AWAITING_AVAILABILITY}
        rows = [c for c in self._query(BATCH_ID=batch_id) if c.state in wanted]
        return sorted(rows, key=lambda c: c.listing_index or 0)

    def exists_for_listing_since(self, listing_id: str, since: datetime) -> bool:
        for conv in self._query(LISTING_ID=listing_id):
            if conv.created_at and conv.created_at >= since:
                return True
        return False

    def list_expired_open(self, now: datetime) -> List[RenewalConversation]:
        out: List[RenewalConversation] = []
        for record in list_records(self.handle):
            conv = RenewalConversation.from_record(record)
            if conv.state in OPEN_STATES and conv.expires_at is not None and conv.expires_at < now:
                out.append(conv)
        return out

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(
        self,
        *,
        listing_id: str,
        user_id: Optional[str],
        phone_number: str,
        expires_at: datetime,
        state: ConversationState,
        now: datetime,
        batch_id: Optional[str] = None,
        listing_index: Optional[int] = None,
        total_in_batch: Optional[int] = None,
        message_sent_at: Optional[datetime] = None,
        message_sid: Optional[str] = None,
        action_taken: Optional[ActionTaken] = None,
        conversation_type: str = DEFAULT_CONVERSATION_TYPE,
    ) -> Optional[RenewalConversation]:
        fields = {
            F["LISTING_ID"]: listing_id,
            F["USER_ID"]: user_id,
            F["PHONE_NUMBER"]: phone_number,
            F["BATCH_ID"]: batch_id,
            F["LISTING_INDEX"]: listing_index,
            F["TOTAL_IN_BATCH"]: total_in_batch,
            F["MESSAGE_SENT_AT"]: message_sent_at,
            F["MESSAGE_SID"]: message_sid,
            F["EXPIRES_AT"]: expires_at,
            F["STATE"]: state,
            F["ACTION_TAKEN"]: action_taken,
            F["CONVERSATION_TYPE"]: conversation_type,
            F["CREATED_AT"]: now,
            F["UPDATED_AT"]: now,
        }
        record = create_record(self.handle, {k: _serialise(v) for k, v in fields.items()})
        if not record:
            logger.error("Failed to create conversation for listing %s (%s)", listing_id, phone_number)
            return None
        return RenewalConversation.from_record(record)

    def transition(
        self,
        conversation: RenewalConversation,
        target: ConversationState,
        *,
        now: datetime,
        **changes: Any,
    ) -> Optional[RenewalConversation]:
        """Move ``conversation`` to ``target`` and write the given columns.

        Raises ``InvalidTransition`` for backwards moves. Returns ``None`` if
        the store rejected the write.
        """
        if "expires_at" in changes:
            raise ValueError("expires_at is fixed at creation")
        unknown = set(changes) - set(_TRANSITION_FIELDS)
        if unknown:
            raise TypeError(f"Unsupported conversation fields: {sorted(unknown)}")
        if not can_transition(conversation.state, target):
            raise InvalidTransition(conversation.id, conversation.state, target)

        fields = {F["STATE"]: target.value, F["UPDATED_AT"]: to_iso(now)}
        for key, value in changes.items():
            fields[F[_TRANSITION_FIELDS[key]]] = _serialise(value)

        record = update_record(self.handle, conversation.id, fields)
        if not record:
            logger.error("Failed to move conversation %s to %s", conversation.id, target.value)
            return None
        logger.info("Conversation %s: %s -> %s", conversation.id, conversation.state.value, target.value)
        return RenewalConversation.from_record(record)
