"""Telegram client factory for promorelay.

We explicitly manage the client's lifecycle (connect/run/disconnect) so it is
obvious when the session is created and when it ends.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from telethon import TelegramClient
from telethon.sessions import StringSession


def build_client() -> TelegramClient:
    """Create a Telethon client from environment variables.

    We read API_ID/API_HASH via python-dotenv to keep secrets out of the repo.
    SESSION_STRING (from `promorelay login`) wins over a local .session file,
    whose name defaults to "promorelay".
    """

    load_dotenv()

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    session_string = os.getenv("SESSION_STRING")
    session_name = os.getenv("SESSION_NAME", "promorelay")

    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")

    logging.getLogger(__name__).info("Initializing Telegram client")

    session = StringSession(session_string) if session_string else session_name
    return TelegramClient(
        session,
        int(api_id),
        api_hash,
        connection_retries=int(os.getenv("CONNECTION_RETRIES", "5")),
        retry_delay=5,
        auto_reconnect=True,
        flood_sleep_threshold=0,
    )
