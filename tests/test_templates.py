from datetime import datetime, timezone

from renewals import templates
from renewals.listings import Listing
from renewals.schema import ListingType


def _listing(**overrides):
    base = dict(
        id="rec1",
        user_id="u1",
        listing_type=ListingType.RENTAL,
        is_active=True,
        approved=True,
        expires_at=None,
        contact_phone="+15551112222",
        location="Ave J & E 12th",
        full_address="1234 East 12th St",
        neighborhood="Midwood",
        price=2500.0,
    )
    base.update(overrides)
    return Listing(**base)


def test_rental_price_and_location_hide_address():
    listing = _listing()
    assert templates.format_price(listing) == "$2,500/month"
    assert templates.format_location(listing) == "Ave J & E 12th"
    assert templates.format_listing_identifier(listing) == "Ave J & E 12th for $2,500/month"


def test_sale_prices_are_abbreviated():
    assert templates.format_price(_listing(listing_type=ListingType.SALE, price=1_250_000)) == "$1.2M"
    assert templates.format_price(_listing(listing_type=ListingType.SALE, price=450_400)) == "$450K"


def test_sale_with_address_shows_it():
    listing = _listing(listing_type=ListingType.SALE, price=899_000)
    assert templates.format_listing_identifier(listing) == "1234 East 12th St for $899K"


def test_missing_price_and_location_fallbacks():
    listing = _listing(price=None, location=None, neighborhood=None)
    assert templates.format_listing_identifier(listing) == "your listing for Call for price"
    assert templates.format_location(_listing(location=None)) == "Midwood"


def test_vocabulary_follows_listing_type():
    rental = _listing()
    sale = _listing(listing_type=ListingType.SALE)
    assert "NO if rented" in templates.availability_clarification(rental)
    assert "NO if sold" in templates.availability_clarification(sale)
    assert "Did the tenant find you" in templates.deactivated_reply(rental, brand="Hadirot")
    assert "Did the buyer find you" in templates.deactivated_reply(sale, brand="Hadirot")


def test_single_prompt():
    msg = templates.single_prompt(_listing(), brand="Hadirot", days=5)
    assert msg == (
        "Hadirot Alert: Your listing at Ave J & E 12th for $2,500/month expires in 5 days. "
        "Is the listing still available? Reply YES or NO."
    )


def test_batch_first_prompt_counts_and_cap():
    listing = _listing()
    assert "You have 3 listings expiring in 5 days." in templates.batch_first_prompt(listing, 3, 10, days=5)
    over = templates.batch_first_prompt(listing, 12, 10, days=5)
    assert "You have 12+ listings" in over
    assert "Let's go through the first 10." in over


def test_singular_day_count():
    assert "expires in 1 day." in templates.single_prompt(_listing(), days=1)


def test_batch_next_prompt_remaining():
    msg = templates.batch_next_prompt(_listing(), 2)
    assert msg.startswith("Next (2 remaining): Is the one at Ave J & E 12th for $2,500/month")


def test_extended_reply_uses_local_date():
    when = datetime(2025, 2, 3, 3, 0, tzinfo=timezone.utc)  # Feb 2 evening in New York
    assert templates.extended_reply(when, days=14, tz_name="America/New_York") == (
        "Extended 14 days. New expiration: Feb 2, 2025."
    )


def test_batch_help_enumerates():
    msg = templates.batch_help([(1, _listing()), (2, _listing(location="Ocean Pkwy", price=3100))], 1)
    assert "1. Ave J & E 12th ($2,500/month)" in msg
    assert "2. Ocean Pkwy ($3,100/month)" in msg
    assert "Currently asking about listing 1." in msg


def test_expired_and_failure_messages_point_to_dashboard():
    assert "hadirot.com/dashboard" in templates.expired_link_reply(brand="Hadirot", dashboard_url="hadirot.com/dashboard")
    assert "try again via example.com/d" in templates.extension_failed_reply(dashboard_url="example.com/d")


def test_batch_help_keeps_batch_positions():
    msg = templates.batch_help([(2, _listing(location="Street B")), (3, _listing(location="Street C"))], 2)
    assert "2. Street B" in msg and "3. Street C" in msg
    assert "1. " not in msg
    assert "Currently asking about listing 2." in msg
