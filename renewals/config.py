from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

# -----------------------------
# .env Loader
# -----------------------------
from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=True)


class ConfigurationError(RuntimeError):
    """Missing transport or store credentials. Fatal for a batch run."""


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


def first_env(*keys: str) -> Optional[str]:
    for key in keys:
        v = env_str(key)
        if v:
            return v
    return None


# -----------------------------
# Quiet days
# -----------------------------
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_weekdays(raw: Optional[str]) -> Tuple[int, ...]:
    """'Friday, Sat' -> (4, 5). Unknown names are ignored."""
    if not raw:
        return ()
    days = []
    for part in raw.split(","):
        token = part.strip().lower()
        if not token:
            continue
        for idx, name in enumerate(WEEKDAYS):
            if name == token or (len(token) >= 3 and name.startswith(token)):
                if idx not in days:
                    days.append(idx)
                break
    return tuple(sorted(days))


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    AIRTABLE_API_KEY: Optional[str]
    LISTINGS_BASE: Optional[str]
    FORCE_IN_MEMORY: bool
    SMS_ACCOUNT_SID: Optional[str]
    SMS_AUTH_TOKEN: Optional[str]
    SMS_FROM_NUMBER: Optional[str]
    SMS_API_BASE: str
    SMS_DRY_RUN: bool
    SMS_TIMEOUT_SEC: int
    RENEWAL_TZ: str
    QUIET_DAYS: Tuple[int, ...]
    REMINDER_DAYS_BEFORE: int
    RENEWAL_EXTENSION_DAYS: int
    MAX_BATCH_SIZE: int
    SINGLE_TIMEOUT_HOURS: int
    BATCH_TIMEOUT_HOURS: int
    BRAND_NAME: str
    DASHBOARD_URL: str
    CRON_TOKEN: Optional[str]
    WEBHOOK_TOKEN: Optional[str]
    ALERT_PHONE: Optional[str]
    ALERT_WEBHOOK: Optional[str]
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    AIRTABLE_THROTTLE_SEC: float

    @property
    def transport_configured(self) -> bool:
        return bool(self.SMS_ACCOUNT_SID and self.SMS_AUTH_TOKEN and self.SMS_FROM_NUMBER)

    @property
    def store_configured(self) -> bool:
        return self.FORCE_IN_MEMORY or bool(self.AIRTABLE_API_KEY and self.LISTINGS_BASE)

    def messages_url(self) -> Optional[str]:
        if not self.SMS_ACCOUNT_SID:
            return None
        return f"{self.SMS_API_BASE.rstrip('/')}/Accounts/{self.SMS_ACCOUNT_SID}/Messages.json"


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        AIRTABLE_API_KEY=env_str("AIRTABLE_API_KEY"),
        LISTINGS_BASE=first_env("LISTINGS_BASE", "AIRTABLE_LISTINGS_BASE_ID"),
        FORCE_IN_MEMORY=env_bool("SMS_FORCE_IN_MEMORY"),
        SMS_ACCOUNT_SID=first_env("SMS_ACCOUNT_SID", "TWILIO_ACCOUNT_SID"),
        SMS_AUTH_TOKEN=first_env("SMS_AUTH_TOKEN", "TWILIO_AUTH_TOKEN"),
        SMS_FROM_NUMBER=first_env("SMS_FROM_NUMBER", "TWILIO_PHONE_NUMBER"),
        SMS_API_BASE=env_str("SMS_API_BASE", "https://api.twilio.com/2010-04-01"),
        SMS_DRY_RUN=env_bool("SMS_DRY_RUN"),
        SMS_TIMEOUT_SEC=env_int("SMS_TIMEOUT_SEC", 15),
        RENEWAL_TZ=env_str("RENEWAL_TZ", "America/New_York"),
        QUIET_DAYS=parse_weekdays(env_str("QUIET_DAYS", "Friday,Saturday")),
        REMINDER_DAYS_BEFORE=env_int("REMINDER_DAYS_BEFORE", 5),
        RENEWAL_EXTENSION_DAYS=env_int("RENEWAL_EXTENSION_DAYS", 14),
        MAX_BATCH_SIZE=max(env_int("MAX_BATCH_SIZE", 10), 1),
        SINGLE_TIMEOUT_HOURS=env_int("SINGLE_TIMEOUT_HOURS", 24),
        BATCH_TIMEOUT_HOURS=env_int("BATCH_TIMEOUT_HOURS", 48),
        BRAND_NAME=env_str("BRAND_NAME", "Hadirot"),
        DASHBOARD_URL=env_str("DASHBOARD_URL", "hadirot.com/dashboard"),
        CRON_TOKEN=env_str("CRON_TOKEN"),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN"),
        ALERT_PHONE=env_str("ALERT_PHONE"),
        ALERT_WEBHOOK=env_str("ALERT_WEBHOOK"),
        REDIS_URL=first_env("REDIS_URL", "UPSTASH_REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", True),
        AIRTABLE_THROTTLE_SEC=env_float("AIRTABLE_THROTTLE_SEC", 0.25),
    )


def refresh_settings() -> Settings:
    settings.cache_clear()
    return settings()


def require_batch_config(s: Optional[Settings] = None, *, need_transport: bool = True) -> Settings:
    """Raise ConfigurationError when a batch job cannot possibly succeed."""
    s = s or settings()
    missing: list[str] = []
    if need_transport and not (s.transport_configured or s.SMS_DRY_RUN):
        missing.append("SMS_ACCOUNT_SID|SMS_AUTH_TOKEN|SMS_FROM_NUMBER")
    if not s.store_configured:
        missing.append("AIRTABLE_API_KEY|LISTINGS_BASE")
    if missing:
        raise ConfigurationError(f"Missing env vars → {', '.join(missing)}")
    return s
