import os
import sys
from datetime import datetime, timezone

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from renewals.config import refresh_settings
from renewals.datastore import CONNECTOR, create_record, reset_state
from renewals.idempotency import reset_store
from renewals.runtime import FixedClock, to_iso
from renewals.schema import listings_field_map
from renewals.sms_sender import TransportError

# Wednesday 2025-01-15 10:00 America/New_York
WEDNESDAY = datetime(2025, 1, 15, 15, 0, tzinfo=timezone.utc)
# Friday 2025-01-17 10:00 America/New_York
FRIDAY = datetime(2025, 1, 17, 15, 0, tzinfo=timezone.utc)
# Inside the local day five days after WEDNESDAY (2025-01-20 New York)
IN_WINDOW = datetime(2025, 1, 20, 17, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_datastore():
    for key in [
        "AIRTABLE_API_KEY",
        "LISTINGS_BASE",
        "AIRTABLE_LISTINGS_BASE_ID",
        "SMS_ACCOUNT_SID",
        "SMS_AUTH_TOKEN",
        "SMS_FROM_NUMBER",
        "TWILIO_ACCOUNT_SID",
        "TWILIO_AUTH_TOKEN",
        "TWILIO_PHONE_NUMBER",
        "QUIET_DAYS",
        "RENEWAL_TZ",
        "MAX_BATCH_SIZE",
        "CRON_TOKEN",
        "WEBHOOK_TOKEN",
        "ALERT_PHONE",
        "ALERT_WEBHOOK",
        "REDIS_URL",
        "UPSTASH_REDIS_URL",
    ]:
        os.environ.pop(key, None)
    os.environ["SMS_FORCE_IN_MEMORY"] = "1"
    os.environ["SMS_DRY_RUN"] = "1"
    reset_state()
    reset_store()
    refresh_settings()
    yield
    refresh_settings()


class FakeSender:
    """Stands in for sms_sender.send_message and records every call."""

    def __init__(self):
        self.calls = []
        self.fail_for = set()
        self._n = 0

    def __call__(self, *, to, message, **kwargs):
        self.calls.append({"to": to, "message": message, **kwargs})
        if to in self.fail_for:
            raise TransportError("SMS HTTP 400: invalid number", status_code=400)
        self._n += 1
        return {"status": "sent", "sid": f"SM{self._n:04d}"}

    @property
    def messages(self):
        return [c["message"] for c in self.calls]


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def clock():
    return FixedClock(WEDNESDAY)


@pytest.fixture
def make_listing():
    F = listings_field_map()

    def _make(
        *,
        phone="(555) 111-2222",
        expires_at=IN_WINDOW,
        listing_type="rental",
        price=2500,
        location="Ave J & E 12th",
        neighborhood="Midwood",
        full_address=None,
        active=True,
        approved=True,
        user_id="user_1",
    ):
        record = create_record(
            CONNECTOR.listings(),
            {
                F["USER_ID"]: user_id,
                F["LISTING_TYPE"]: listing_type,
                F["IS_ACTIVE"]: active,
                F["APPROVED"]: approved,
                F["EXPIRES_AT"]: to_iso(expires_at),
                F["CONTACT_PHONE"]: phone,
                F["LOCATION"]: location,
                F["NEIGHBORHOOD"]: neighborhood,
                F["FULL_ADDRESS"]: full_address,
                F["PRICE"]: price,
            },
        )
        return record["id"]

    return _make
