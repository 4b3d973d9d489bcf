"""Operator notifications for failures that need a human."""

from __future__ import annotations

import requests

from renewals.config import settings
from renewals.runtime import get_logger
from renewals.schema import MessageSource
from renewals.sms_sender import TransportError, send_message

logger = get_logger("alerts")


def notify_operator(msg: str) -> None:
    """Log, then fan out to ALERT_PHONE / ALERT_WEBHOOK when configured."""
    s = settings()
    logger.warning(f"🚨 ALERT: {msg}")

    if s.ALERT_PHONE:
        try:
            send_message(to=s.ALERT_PHONE, message=msg, source=MessageSource.ADMIN_ALERT)
        except TransportError as e:
            logger.warning(f"❌ SMS alert failed: {e}")

    if s.ALERT_WEBHOOK and s.ALERT_WEBHOOK.startswith(("http://", "https://")):
        try:
            requests.post(s.ALERT_WEBHOOK, json={"text": msg}, timeout=10)
        except requests.RequestException as e:
            logger.warning(f"❌ Webhook alert failed: {e}")
