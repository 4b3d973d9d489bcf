"""
Listings Store Adapter
----------------------
Read access to marketplace listings plus the three mutations the renewal
flow is allowed to make: extend, deactivate, and record the conversion flag.
Mutations return the updated record, or ``None`` when the store rejected the
write, so callers can tell a failed extension apart from a successful one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from renewals.datastore import CONNECTOR, TableHandle, get_record, list_records, update_record
from renewals.runtime import get_logger, parse_ts, to_iso
from renewals.schema import ListingType, listings_field_map

logger = get_logger("listings")

F = listings_field_map()


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "checked")


def _price(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(str(value).replace(",", "").replace("$", ""))
    except ValueError:
        return None


@dataclass
class Listing:
    id: str
    user_id: Optional[str]
    listing_type: ListingType
    is_active: bool
    approved: bool
    expires_at: Optional[datetime]
    contact_phone: Optional[str]
    location: Optional[str] = None
    full_address: Optional[str] = None
    neighborhood: Optional[str] = None
    price: Optional[float] = None
    deactivated_at: Optional[datetime] = None
    hadirot_conversion: Optional[bool] = None

    @property
    def is_sale(self) -> bool:
        return self.listing_type == ListingType.SALE

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Listing":
        f = record.get("fields", {}) or {}
        raw_type = str(f.get(F["LISTING_TYPE"]) or "").strip().lower()
        conversion = f.get(F["HADIROT_CONVERSION"])
        return cls(
            id=record["id"],
            user_id=f.get(F["USER_ID"]),
            listing_type=ListingType.SALE if raw_type == ListingType.SALE.value else ListingType.RENTAL,
            is_active=_truthy(f.get(F["IS_ACTIVE"])),
            approved=_truthy(f.get(F["APPROVED"])),
            expires_at=parse_ts(f.get(F["EXPIRES_AT"])),
            contact_phone=f.get(F["CONTACT_PHONE"]) or None,
            location=f.get(F["LOCATION"]) or None,
            full_address=f.get(F["FULL_ADDRESS"]) or None,
            neighborhood=f.get(F["NEIGHBORHOOD"]) or None,
            price=_price(f.get(F["PRICE"])),
            deactivated_at=parse_ts(f.get(F["DEACTIVATED_AT"])),
            hadirot_conversion=None if conversion is None else _truthy(conversion),
        )


class ListingStore:
    """Listings table access used by the scheduler and the webhook."""

    def __init__(self, handle: Optional[TableHandle] = None):
        self._handle = handle

    @property
    def handle(self) -> TableHandle:
        return self._handle or CONNECTOR.listings()

    def get(self, listing_id: str) -> Optional[Listing]:
        record = get_record(self.handle, listing_id)
        return Listing.from_record(record) if record else None

    def list_expiring(self, window_start: datetime, window_end: datetime) -> List[Listing]:
        """Active, approved listings with a contact phone expiring inside the window."""
        out: List[Listing] = []
        for record in list_records(self.handle):
            listing = Listing.from_record(record)
            if not (listing.is_active and listing.approved and listing.contact_phone):
                continue
            if listing.expires_at is None:
                continue
            if window_start <= listing.expires_at <= window_end:
                out.append(listing)
        return out

    def extend_listing(self, listing_id: str, new_expires_at: datetime, now: datetime) -> Optional[Dict[str, Any]]:
        updated = update_record(
            self.handle,
            listing_id,
            {
                F["IS_ACTIVE"]: True,
                F["LAST_PUBLISHED_AT"]: to_iso(now),
                F["EXPIRES_AT"]: to_iso(new_expires_at),
                F["DEACTIVATED_AT"]: None,
                F["UPDATED_AT"]: to_iso(now),
            },
        )
        if not updated:
            logger.error("Listing %s extension rejected by store", listing_id)
        return updated

    def deactivate_listing(self, listing_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        updated = update_record(
            self.handle,
            listing_id,
            {
                F["IS_ACTIVE"]: False,
                F["DEACTIVATED_AT"]: to_iso(now),
                F["UPDATED_AT"]: to_iso(now),
            },
        )
        if not updated:
            logger.error("Listing %s deactivation rejected by store", listing_id)
        return updated

    def set_conversion_flag(self, listing_id: str, converted: bool) -> Optional[Dict[str, Any]]:
        updated = update_record(self.handle, listing_id, {F["HADIROT_CONVERSION"]: bool(converted)})
        if not updated:
            logger.error("Listing %s conversion flag rejected by store", listing_id)
        return updated
