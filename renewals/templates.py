# renewals/templates.py
"""
Message Formatter
-----------------
Outbound SMS copy for the renewal flow. Every function here is pure: it takes
a listing (or plain values) and returns text. Brand, dashboard URL and the
reminder lead time default to the active settings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence, Tuple

from renewals.config import settings
from renewals.listings import Listing
from renewals.runtime import load_tz

FALLBACK_LOCATION = "your listing"
NO_PRICE = "Call for price"


# -------------------------------
# Vocabulary
# -------------------------------
def plural(count: int, singular: str, many: Optional[str] = None) -> str:
    word = singular if count == 1 else (many or singular + "s")
    return f"{count} {word}"


def outcome_word(listing: Listing) -> str:
    return "sold" if listing.is_sale else "rented"


def counterparty_word(listing: Listing) -> str:
    return "buyer" if listing.is_sale else "tenant"


def _brand(brand: Optional[str]) -> str:
    return brand or settings().BRAND_NAME


def _lead_days(days: Optional[int]) -> str:
    return plural(settings().REMINDER_DAYS_BEFORE if days is None else days, "day")


# -------------------------------
# Listing display
# -------------------------------
def format_price(listing: Listing) -> str:
    price = listing.price
    if not price:
        return NO_PRICE
    if listing.is_sale:
        if price >= 1_000_000:
            return f"${price / 1_000_000:.1f}M"
        return f"${round(price / 1000)}K"
    return f"${price:,.0f}/month"


def format_location(listing: Listing) -> str:
    """Sale listings may show the street address; rentals never do."""
    if listing.is_sale and listing.full_address:
        return listing.full_address
    return listing.location or listing.neighborhood or FALLBACK_LOCATION


def format_listing_identifier(listing: Listing) -> str:
    return f"{format_location(listing)} for {format_price(listing)}"


def format_expiration_date(when: datetime, tz_name: Optional[str] = None) -> str:
    local = when.astimezone(load_tz(tz_name or settings().RENEWAL_TZ))
    return f"{local:%b} {local.day}, {local.year}"


# -------------------------------
# Prompts
# -------------------------------
def single_prompt(listing: Listing, *, brand: Optional[str] = None, days: Optional[int] = None) -> str:
    return (
        f"{_brand(brand)} Alert: Your listing at {format_listing_identifier(listing)} "
        f"expires in {_lead_days(days)}. Is the listing still available? Reply YES or NO."
    )


def batch_first_prompt(
    listing: Listing,
    total_found: int,
    cap: int,
    *,
    brand: Optional[str] = None,
    days: Optional[int] = None,
) -> str:
    """Opening message of a batch; ``total_found`` counts listings before the cap."""
    head = f"{_brand(brand)} Alert: "
    if total_found > cap:
        head += (
            f"You have {total_found}+ listings expiring in {_lead_days(days)}. "
            f"Let's go through the first {cap}. "
        )
    else:
        head += f"You have {plural(total_found, 'listing')} expiring in {_lead_days(days)}. "
    return head + f"Is the one at {format_listing_identifier(listing)} still available? Reply YES or NO."


def batch_next_prompt(listing: Listing, remaining: int) -> str:
    return (
        f"Next ({remaining} remaining): Is the one at {format_listing_identifier(listing)} "
        f"still available? Reply YES or NO if {outcome_word(listing)}."
    )


# -------------------------------
# Replies
# -------------------------------
def extended_reply(new_expires_at: datetime, *, days: Optional[int] = None, tz_name: Optional[str] = None) -> str:
    n = settings().RENEWAL_EXTENSION_DAYS if days is None else days
    return f"Extended {plural(n, 'day')}. New expiration: {format_expiration_date(new_expires_at, tz_name)}."


def deactivated_reply(listing: Listing, *, brand: Optional[str] = None) -> str:
    return (
        f"Listing deactivated. Did the {counterparty_word(listing)} find you through "
        f"{_brand(brand)}? Reply YES or NO."
    )


def attribution_thanks(*, brand: Optional[str] = None) -> str:
    return f"Thank you! Your feedback helps us improve {_brand(brand)}."


def batch_help(entries: Sequence[Tuple[int, Listing]], current_index: Optional[int]) -> str:
    """``entries`` are (listing_index, listing) pairs; lines keep the batch numbering."""
    lines = [f"{i}. {format_location(l)} ({format_price(l)})" for i, l in entries]
    return (
        "Your expiring listings:\n"
        + "\n".join(lines)
        + f"\n\nCurrently asking about listing {current_index}. Reply YES or NO."
    )


def single_help(listing: Listing, *, days: Optional[int] = None) -> str:
    return (
        f"Your listing at {format_listing_identifier(listing)} expires in {_lead_days(days)}. "
        f"Reply YES to extend or NO if {outcome_word(listing)}."
    )


def availability_clarification(listing: Listing) -> str:
    return f"Please reply YES if available or NO if {outcome_word(listing)}."


def attribution_clarification(*, brand: Optional[str] = None) -> str:
    return f"Please reply YES if they found you via {_brand(brand)}, or NO."


def expired_link_reply(*, brand: Optional[str] = None, dashboard_url: Optional[str] = None) -> str:
    url = dashboard_url or settings().DASHBOARD_URL
    return (
        f"This renewal link has expired. Please log into your {_brand(brand)} dashboard "
        f"at {url} to manage your listings."
    )


def extension_failed_reply(*, dashboard_url: Optional[str] = None) -> str:
    url = dashboard_url or settings().DASHBOARD_URL
    return f"Sorry, there was an error extending your listing. Please try again via {url}."
