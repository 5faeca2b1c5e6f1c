"""Helpers for working with channel handles and message keys."""

from __future__ import annotations

from typing import Tuple

KEY_SEPARATOR = "#msg:"


def normalize_handle(handle: str) -> str:
    """Return the canonical form of a channel handle (lowercase, no '@').

    t.me links are accepted too, so config entries can be pasted verbatim.
    """

    value = (handle or "").strip()
    for prefix in ("https://t.me/", "http://t.me/", "t.me/"):
        if value.lower().startswith(prefix):
            value = value[len(prefix):]
            break
    return value.lstrip("@").rstrip("/").lower()


def build_message_key(channel_handle: str, message_id: int) -> str:
    """Return the uniqueness key for a (channel, message id) pair."""

    return f"{normalize_handle(channel_handle)}{KEY_SEPARATOR}{message_id}"


def split_message_key(key: str) -> Tuple[str, int]:
    """Split a message key into (channel_handle, message_id)."""

    handle, sep, message_part = key.rpartition(KEY_SEPARATOR)
    if not sep:
        raise ValueError(f"Not a message key: {key!r}")
    return handle, int(message_part)
