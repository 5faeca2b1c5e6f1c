"""Per-destination message templates.

Both the poll and live paths render through here.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Dict

from core.extraction import CODE_DELIMITER
from core.models import PersistedMessage

PLACEHOLDERS = (
    "{channelName}",
    "{bonusCode}",
    "{allBonusCodes}",
    "{websiteUrl}",
    "{messageText}",
    "{messageDate}",
    "{keywords}",
)

ELLIPSIS = "..."

_PLACEHOLDER = re.compile(r"\{[A-Za-z]+\}")


def truncate_text(text: str, limit: int) -> str:
    """Clip text to `limit` characters, ellipsis included."""

    if len(text) <= limit:
        return text
    return text[: max(limit - len(ELLIPSIS), 0)] + ELLIPSIS


def format_date(value: datetime) -> str:
    return value.astimezone().strftime("%d.%m.%Y %H:%M")


def format_codes(message: PersistedMessage) -> str:
    codes = list(message.record.all_codes)
    if not codes and message.record.primary_code:
        codes = [message.record.primary_code]
    return "\n".join(f"{CODE_DELIMITER}{code}{CODE_DELIMITER}" for code in codes)


def build_replacements(
    message: PersistedMessage,
    text_limit: int = 200,
    missing_value: str = "Not found",
) -> Dict[str, str]:
    record = message.record
    return {
        "{channelName}": message.channel_name,
        "{bonusCode}": record.primary_code or missing_value,
        "{allBonusCodes}": format_codes(message),
        "{websiteUrl}": record.destination_url or missing_value,
        "{messageText}": truncate_text(message.text, text_limit),
        "{messageDate}": format_date(message.message_date),
        "{keywords}": ", ".join(message.matched_keywords),
    }


def render_template(
    template: str,
    message: PersistedMessage,
    text_limit: int = 200,
    missing_value: str = "Not found",
) -> str:
    """Substitute the known placeholders. Unknown ones are left as they are."""

    replacements = build_replacements(message, text_limit, missing_value)
    # One pass, so placeholder-looking text inside a value is never expanded.
    return _PLACEHOLDER.sub(lambda match: replacements.get(match.group(0), match.group(0)), template)
