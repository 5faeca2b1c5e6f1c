"""Keyword filtering and send-eligibility rules (core domain).

The poll path and the live path decide "should this be forwarded?" with two
different policies: the live path only looks at the code flag and the text
length, while the batch path also checks the code length and URL scheme.
"""

from __future__ import annotations

from typing import Iterable, List

from core.config import MessagingSettings
from core.extraction import CODE_MIN_LENGTH, is_url_line, split_lines
from core.models import PersistedMessage

FORMAT_KEYWORD = "promo_format"
PROMO_MIN_LINES = 2
PROMO_MAX_LINES = 5


def match_keywords(text: str, keywords: Iterable[str]) -> List[str]:
    """Return the configured keywords found in the text (case-insensitive).

    Keywords are returned as configured, in config order.
    """

    lowered = text.lower()
    return [keyword for keyword in keywords if keyword and keyword.lower() in lowered]


def looks_like_promo(text: str) -> bool:
    """Cheap format check used before the poll path persists a message.

    A promo post is short (2-5 non-empty lines) and carries at least one
    URL-looking line.
    """

    lines = split_lines(text)
    if not PROMO_MIN_LINES <= len(lines) <= PROMO_MAX_LINES:
        return False
    return any(is_url_line(line) for line in lines)


def batch_send_policy(message: PersistedMessage) -> bool:
    """Send-eligibility for messages found by the periodic channel scan."""

    record = message.record
    if not record.has_code or not record.has_url:
        return False
    if not record.primary_code or len(record.primary_code.strip()) < CODE_MIN_LENGTH:
        return False
    if not record.destination_url or not record.destination_url.startswith("http"):
        return False
    return True


def live_send_policy(message: PersistedMessage, settings: MessagingSettings) -> bool:
    """Send-eligibility for messages pushed by the live listener."""

    if settings.only_with_code and not message.record.has_code:
        return False
    if len(message.text) < settings.min_message_length:
        return False
    return True
