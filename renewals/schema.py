from __future__ import annotations

"""
Central Airtable schema definitions and helpers.

Keeps the canonical field names for the Listings, Renewal Conversations,
SMS Messages and Runs tables together so business logic can import
lightweight helpers instead of hard-coding strings. Environment variables can
still override individual field names (to align with custom base copies), but
the defaults here should always reflect the live schema.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Tuple


# ---------------------------------------------------------------------------
# Core data containers
# ---------------------------------------------------------------------------


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    v = value.strip()
    return v if v else None


@dataclass(frozen=True)
class FieldDefinition:
    """
    Represents an Airtable column.

    Args:
        default: Canonical field name in Airtable.
        env_vars: Ordered list of env vars that can override the field name
                  (first non-empty wins).
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)

    def resolve(self) -> str:
        """Return the active field name (env override or default)."""
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default


@dataclass(frozen=True)
class TableDefinition:
    """
    Airtable table metadata with helpers to resolve field names.

    Args:
        default: Human-readable table name in Airtable.
        env_vars: Env vars that can rename the table.
        fields: Mapping of logical keys → FieldDefinition.
    """

    default: str
    env_vars: Tuple[str, ...] = field(default_factory=tuple)
    fields: Dict[str, FieldDefinition] = field(default_factory=dict)

    def name(self) -> str:
        for env in self.env_vars:
            override = _clean(os.getenv(env))
            if override:
                return override
        return self.default

    def field_name(self, key: str) -> str:
        return self.fields[key].resolve()

    def field_names(self) -> Dict[str, str]:
        return {key: f.resolve() for key, f in self.fields.items()}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ListingType(str, Enum):
    RENTAL = "rental"
    SALE = "sale"


class ConversationState(str, Enum):
    PENDING = "pending"
    AWAITING_AVAILABILITY = "awaiting_availability"
    AWAITING_HADIROT_QUESTION = "awaiting_hadirot_question"
    COMPLETED = "completed"
    EXPIRED_LINK = "expired_link"
    TIMEOUT = "timeout"
    ERROR = "error"


class ActionTaken(str, Enum):
    EXTENDED = "extended"
    DEACTIVATED = "deactivated"
    SMS_FAILED = "sms_failed"
    EXPIRED_LINK = "expired_link"
    TIMEOUT = "timeout"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageSource(str, Enum):
    RENEWAL_REMINDER = "renewal_reminder"
    SYSTEM_RESPONSE = "system_response"
    INBOUND_REPLY = "inbound_reply"
    ADMIN_ALERT = "admin_alert"


# States a reply can be routed to
REPLYABLE_STATES: Tuple[ConversationState, ...] = (
    ConversationState.AWAITING_AVAILABILITY,
    ConversationState.AWAITING_HADIROT_QUESTION,
)

# States the expiry sweeper reclaims
OPEN_STATES: Tuple[ConversationState, ...] = (
    ConversationState.PENDING,
    ConversationState.AWAITING_AVAILABILITY,
    ConversationState.AWAITING_HADIROT_QUESTION,
)

TERMINAL_STATES: FrozenSet[ConversationState] = frozenset(
    {
        ConversationState.COMPLETED,
        ConversationState.EXPIRED_LINK,
        ConversationState.TIMEOUT,
        ConversationState.ERROR,
    }
)

ALLOWED_TRANSITIONS: Dict[ConversationState, FrozenSet[ConversationState]] = {
    ConversationState.PENDING: frozenset(
        {ConversationState.AWAITING_AVAILABILITY, ConversationState.TIMEOUT, ConversationState.ERROR}
    ),
    ConversationState.AWAITING_AVAILABILITY: frozenset(
        {
            ConversationState.COMPLETED,
            ConversationState.AWAITING_HADIROT_QUESTION,
            ConversationState.EXPIRED_LINK,
            ConversationState.TIMEOUT,
            ConversationState.ERROR,
        }
    ),
    ConversationState.AWAITING_HADIROT_QUESTION: frozenset(
        {
            ConversationState.COMPLETED,
            ConversationState.EXPIRED_LINK,
            ConversationState.TIMEOUT,
            ConversationState.ERROR,
        }
    ),
}


def can_transition(current: ConversationState, target: ConversationState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

LISTINGS_TABLE = TableDefinition(
    default="Listings",
    env_vars=("LISTINGS_TABLE",),
    fields={
        "USER_ID": FieldDefinition("User ID", ("LISTING_USER_ID_FIELD",)),
        "LISTING_TYPE": FieldDefinition("Listing Type", ("LISTING_TYPE_FIELD",)),
        "IS_ACTIVE": FieldDefinition("Is Active", ("LISTING_ACTIVE_FIELD",)),
        "APPROVED": FieldDefinition("Approved", ("LISTING_APPROVED_FIELD",)),
        "EXPIRES_AT": FieldDefinition("Expires At", ("LISTING_EXPIRES_AT_FIELD",)),
        "CONTACT_PHONE": FieldDefinition("Contact Phone", ("LISTING_PHONE_FIELD",)),
        "LOCATION": FieldDefinition("Location", ("LISTING_LOCATION_FIELD",)),
        "FULL_ADDRESS": FieldDefinition("Full Address", ("LISTING_ADDRESS_FIELD",)),
        "NEIGHBORHOOD": FieldDefinition("Neighborhood", ("LISTING_NEIGHBORHOOD_FIELD",)),
        "PRICE": FieldDefinition("Price", ("LISTING_PRICE_FIELD",)),
        "DEACTIVATED_AT": FieldDefinition("Deactivated At"),
        "LAST_PUBLISHED_AT": FieldDefinition("Last Published At"),
        "UPDATED_AT": FieldDefinition("Updated At"),
        "HADIROT_CONVERSION": FieldDefinition("Hadirot Conversion", ("LISTING_CONVERSION_FIELD",)),
    },
)


def listings_field_map() -> Dict[str, str]:
    return LISTINGS_TABLE.field_names()


# ---------------------------------------------------------------------------
# Renewal Conversations
# ---------------------------------------------------------------------------

RENEWAL_CONVERSATIONS_TABLE = TableDefinition(
    default="Renewal Conversations",
    env_vars=("RENEWAL_CONVERSATIONS_TABLE",),
    fields={
        "LISTING_ID": FieldDefinition("Listing ID"),
        "USER_ID": FieldDefinition("User ID"),
        "PHONE_NUMBER": FieldDefinition("Phone Number"),
        "BATCH_ID": FieldDefinition("Batch ID"),
        "LISTING_INDEX": FieldDefinition("Listing Index"),
        "TOTAL_IN_BATCH": FieldDefinition("Total In Batch"),
        "MESSAGE_SENT_AT": FieldDefinition("Message Sent At"),
        "MESSAGE_SID": FieldDefinition("Message SID"),
        "EXPIRES_AT": FieldDefinition("Expires At"),
        "STATE": FieldDefinition("State"),
        "ACTION_TAKEN": FieldDefinition("Action Taken"),
        "REPLY_RECEIVED_AT": FieldDefinition("Reply Received At"),
        "REPLY_TEXT": FieldDefinition("Reply Text"),
        "HADIROT_CONVERSION": FieldDefinition("Hadirot Conversion"),
        "CONVERSATION_TYPE": FieldDefinition("Conversation Type"),
        "CREATED_AT": FieldDefinition("Created At"),
        "UPDATED_AT": FieldDefinition("Updated At"),
    },
)


def renewal_conversations_field_map() -> Dict[str, str]:
    return RENEWAL_CONVERSATIONS_TABLE.field_names()


# ---------------------------------------------------------------------------
# SMS Messages (audit log)
# ---------------------------------------------------------------------------

SMS_MESSAGES_TABLE = TableDefinition(
    default="SMS Messages",
    env_vars=("SMS_MESSAGES_TABLE",),
    fields={
        "CONVERSATION_ID": FieldDefinition("Conversation ID"),
        "DIRECTION": FieldDefinition("Direction"),
        "PHONE_NUMBER": FieldDefinition("Phone Number"),
        "MESSAGE_BODY": FieldDefinition("Message Body"),
        "MESSAGE_SID": FieldDefinition("Message SID"),
        "MESSAGE_SOURCE": FieldDefinition("Message Source"),
        "LISTING_ID": FieldDefinition("Listing ID"),
        "STATUS": FieldDefinition("Status"),
        "ERROR": FieldDefinition("Error"),
        "CREATED_AT": FieldDefinition("Created At"),
    },
)


def sms_messages_field_map() -> Dict[str, str]:
    return SMS_MESSAGES_TABLE.field_names()


# ---------------------------------------------------------------------------
# Runs (job summaries)
# ---------------------------------------------------------------------------

RUNS_TABLE = TableDefinition(
    default="Runs",
    env_vars=("RUNS_TABLE",),
    fields={
        "TYPE": FieldDefinition("Type"),
        "PROCESSED": FieldDefinition("Processed"),
        "BREAKDOWN": FieldDefinition("Breakdown"),
        "STATUS": FieldDefinition("Status"),
        "TIMESTAMP": FieldDefinition("Timestamp"),
    },
)


def runs_field_map() -> Dict[str, str]:
    return RUNS_TABLE.field_names()
