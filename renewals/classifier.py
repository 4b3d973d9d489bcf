"""
Reply Classifier
----------------
Keyword rules that reduce an inbound renewal reply to a closed intent.

YES and NO count only when they are the whole reply ("Yes", "nope!").
Anything longer ("not ok", "no problem, keep it up") is not an answer and
gets a clarification, since an answer extends or deactivates a listing.

Help detection is a plain substring match ("list" also matches "listing").
"""

from __future__ import annotations

from enum import Enum

YES_WORDS = frozenset({"yes", "y", "yeah", "yup", "yep", "sure", "ok", "okay"})
NO_WORDS = frozenset({"no", "n", "nope", "nah"})
HELP_MARKERS = ("what", "other", "list", "show", "help", "?")


class ReplyIntent(str, Enum):
    YES = "yes"
    NO = "no"
    HELP = "help"
    UNKNOWN = "unknown"


def _norm(text: str) -> str:
    return (text or "").strip().lower()


def _has_help_marker(text: str) -> bool:
    return any(marker in text for marker in HELP_MARKERS)


def classify_reply(body: str | None) -> ReplyIntent:
    """Return the intent of a renewal reply body."""
    text = _norm(body or "")
    if not text:
        return ReplyIntent.UNKNOWN

    bare = text.rstrip(".!").strip()
    if bare in YES_WORDS:
        return ReplyIntent.YES
    if bare in NO_WORDS:
        return ReplyIntent.NO

    if _has_help_marker(text):
        return ReplyIntent.HELP
    return ReplyIntent.UNKNOWN
