"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core pipeline.
"""

from __future__ import annotations

from typing import Any, Optional

from telethon.tl.custom import Message
from telethon.tl.types import PeerChannel, PeerChat

from core.models import SourceMessage
from core.source_keys import normalize_handle


def channel_id_from_message(message: Message) -> Optional[str]:
    """Return the bare channel/chat id, matching ResolvedChannel.channel_id."""

    peer_id = getattr(message, "peer_id", None)
    if isinstance(peer_id, PeerChannel):
        return str(peer_id.channel_id)
    if isinstance(peer_id, PeerChat):
        return str(peer_id.chat_id)
    chat_id = getattr(message, "chat_id", None)
    return str(chat_id) if chat_id is not None else None


def handle_from_message(message: Message) -> Optional[str]:
    chat = getattr(message, "chat", None)
    username = getattr(chat, "username", None)
    if isinstance(username, str) and username:
        return normalize_handle(username)
    return None


def _raw_payload(message: Message) -> dict[str, Any]:
    from_id = getattr(message, "from_id", None)
    return {
        "id": message.id,
        "date": message.date.isoformat() if message.date else None,
        "from_id": str(from_id) if from_id is not None else None,
        "views": getattr(message, "views", None),
        "forwards": getattr(message, "forwards", None),
    }


def to_source_message(message: Message) -> SourceMessage:
    """Build a core SourceMessage from a Telethon Message.

    `message.text` is used instead of `raw_text`: it keeps inline code
    entities as backtick spans, which is where promo codes usually live.
    """

    return SourceMessage(
        message_id=message.id,
        channel_id=channel_id_from_message(message),
        channel_handle=handle_from_message(message),
        text=message.text or "",
        date=message.date,
        raw=_raw_payload(message),
    )
