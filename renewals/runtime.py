"""
Renewal Engine Runtime Core
---------------------------
Logging, retries, clocks, timezone and phone helpers.

Batch jobs and the webhook read time through a clock object (SystemClock in
production, FixedClock in tests).
"""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from datetime import date, datetime, timedelta, timezone
from functools import wraps
from typing import Callable, Iterable, Optional, Tuple, TypeVar

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

T = TypeVar("T")

# Internal state flags
_LOGGING_CONFIGURED = False
_GLOBAL_HOOK_INSTALLED = False
_CORE_ENV_LOGGED = False
_DIGIT_PATTERN = re.compile(r"\d+")


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def _mask_env_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    """Normalize string or int log level."""
    if value is None:
        env_level = os.getenv("SMS_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True
    _log_core_env()


def get_logger(name: str = "renewals") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


# ────────────────────────────────────────────────
# GLOBAL EXCEPTION HOOK
# ────────────────────────────────────────────────
def install_global_exception_hook() -> None:
    """Install a catch-all global exception hook (logs full traceback)."""
    global _GLOBAL_HOOK_INSTALLED
    if _GLOBAL_HOOK_INSTALLED:
        return

    def _hook(exc_type, exc, tb):
        logger = get_logger("uncaught")
        logger.error("Uncaught exception (%s): %s", exc_type.__name__, exc, exc_info=(exc_type, exc, tb))

    sys.excepthook = _hook
    _GLOBAL_HOOK_INSTALLED = True
    _log_core_env()


# ────────────────────────────────────────────────
# CORE ENV LOGGING
# ────────────────────────────────────────────────
def _log_core_env() -> None:
    """Logs masked environment variables for observability."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    _CORE_ENV_LOGGED = True
    logger = logging.getLogger("env")

    listings_base = os.getenv("LISTINGS_BASE") or os.getenv("AIRTABLE_LISTINGS_BASE_ID") or "<missing>"
    sms_sid = os.getenv("SMS_ACCOUNT_SID") or os.getenv("TWILIO_ACCOUNT_SID")
    redis_tcp = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")
    quiet_days = os.getenv("QUIET_DAYS", "Friday,Saturday")
    renewal_tz = os.getenv("RENEWAL_TZ", "America/New_York")

    logger.info(
        "Core env summary:\n"
        "• Airtable Key=%s | ListingsBase=%s | InMemory=%s\n"
        "• SMS Account=%s | DryRun=%s | Redis=%s\n"
        "• QuietDays=%s (%s)",
        _mask_env_value(os.getenv("AIRTABLE_API_KEY")),
        listings_base,
        os.getenv("SMS_FORCE_IN_MEMORY", "false"),
        _mask_env_value(sms_sid),
        os.getenv("SMS_DRY_RUN", "false"),
        bool(redis_tcp),
        quiet_days,
        renewal_tz,
    )


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """ISO8601 UTC timestamp with millisecond precision and Z suffix."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_now() -> str:
    return to_iso(utc_now())


def parse_ts(value) -> Optional[datetime]:
    """Parse an Airtable/ISO timestamp into an aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def load_tz(name: Optional[str]) -> timezone | ZoneInfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logging.getLogger("runtime").warning("Unknown timezone %r, falling back to UTC", name)
        return timezone.utc


# ────────────────────────────────────────────────
# CLOCKS
# ────────────────────────────────────────────────
class SystemClock:
    """Wall clock. Every time-dependent decision goes through a clock."""

    def now(self) -> datetime:
        return utc_now()


class FixedClock:
    """Clock pinned to a single instant; ``advance`` moves it forward."""

    def __init__(self, when: datetime):
        self._now = when if when.tzinfo else when.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


def local_now(clock, tz_name: Optional[str]) -> datetime:
    return clock.now().astimezone(load_tz(tz_name))


def local_day_bounds(day: date, tz_name: Optional[str]) -> Tuple[datetime, datetime]:
    """Return [start, end] of a local calendar day as aware UTC datetimes."""
    tz = load_tz(tz_name)
    start = datetime(day.year, day.month, day.day, tzinfo=tz)
    end = start + timedelta(days=1) - timedelta(microseconds=1000)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


# ────────────────────────────────────────────────
# PHONE UTILITIES
# ────────────────────────────────────────────────
def only_digits(value: str | None) -> str:
    """Extract all digits from a string."""
    if value is None:
        return ""
    return "".join(_DIGIT_PATTERN.findall(str(value)))


def normalize_phone(value: str | None) -> Optional[str]:
    """Normalize US phone numbers to +E.164 format."""
    if not value:
        return None
    digits = only_digits(value)
    if not digits:
        return None
    if len(digits) == 10:
        digits = "1" + digits
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if str(value).strip().startswith("+"):
        return f"+{digits}"
    return None


# ────────────────────────────────────────────────
# TIMING DECORATOR
# ────────────────────────────────────────────────
def timed(label: str):
    """Decorator to log how long a sync job took."""
    def deco(func: Callable[..., T]):
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            start = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                dur = round(time.time() - start, 3)
                get_logger(label).info("⏱ %s took %ss", label, dur)
        return wrapper
    return deco


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
def retry(
    func: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry a callable with exponential backoff."""
    log = logger or get_logger(__name__)
    exceptions = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return func()
        except exceptions as exc:
            if attempt >= retries:
                log.error("Retry exhausted after %s attempts: %s", attempt + 1, exc, exc_info=exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable error (%s/%s): %s; sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            time.sleep(delay)
            attempt += 1


# ────────────────────────────────────────────────
# INIT (auto install global hook)
# ────────────────────────────────────────────────
install_global_exception_hook()
