"""SQLite storage adapter.

Implements the core StoragePort using a simple SQLite database.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional

from core.errors import DuplicateKeyError
from core.models import ExtractedRecord, PersistedMessage
from core.source_keys import normalize_handle


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - messages: one row per (channel_handle, message_id), extracted promo
          data and the monotonic delivered flag
        """

        with self._connect() as conn:
            # The UNIQUE constraint is the only dedup mechanism: a second insert
            # for the same key fails and is reported as "already known".
            # Fields:
            # - channel_handle: normalized username (no '@', lowercase)
            # - message_id: Telegram message id within the channel
            # - raw / all_codes / matched_keywords: JSON-encoded
            # - delivered: 0 until the first successful send, never reset
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL,
                    channel_id TEXT,
                    channel_handle TEXT NOT NULL,
                    channel_name TEXT NOT NULL,
                    text TEXT NOT NULL,
                    raw TEXT,
                    primary_code TEXT,
                    all_codes TEXT NOT NULL DEFAULT '[]',
                    destination_url TEXT,
                    has_code INTEGER NOT NULL DEFAULT 0,
                    has_url INTEGER NOT NULL DEFAULT 0,
                    matched_keywords TEXT NOT NULL DEFAULT '[]',
                    message_date TIMESTAMP NOT NULL,
                    discovered_at TIMESTAMP,
                    scraped_at TIMESTAMP,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (channel_handle, message_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_date ON messages (message_date DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_channel_date ON messages (channel_handle, message_date DESC)"
            )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> PersistedMessage:
        return PersistedMessage(
            id=int(row["id"]),
            message_id=int(row["message_id"]),
            channel_id=row["channel_id"],
            channel_handle=row["channel_handle"],
            channel_name=row["channel_name"],
            text=row["text"],
            raw=json.loads(row["raw"]) if row["raw"] else None,
            record=ExtractedRecord(
                primary_code=row["primary_code"],
                all_codes=tuple(json.loads(row["all_codes"])),
                destination_url=row["destination_url"],
                has_code=bool(row["has_code"]),
                has_url=bool(row["has_url"]),
            ),
            matched_keywords=tuple(json.loads(row["matched_keywords"])),
            message_date=_from_iso(row["message_date"]),
            discovered_at=_from_iso(row["discovered_at"]),
            scraped_at=_from_iso(row["scraped_at"]),
            delivered=bool(row["delivered"]),
        )

    def find_by_key(self, channel_handle: str, message_id: int) -> Optional[PersistedMessage]:
        """Return the stored message for a (channel, message id) pair, if any."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE channel_handle = ? AND message_id = ?",
                (normalize_handle(channel_handle), message_id),
            ).fetchone()
        return self._row_to_message(row) if row else None

    def insert(self, message: PersistedMessage) -> PersistedMessage:
        """Insert a new message and return it with its row id.

        Raises DuplicateKeyError when the (channel, message id) pair exists.
        """

        record = message.record
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO messages (
                        message_id,
                        channel_id,
                        channel_handle,
                        channel_name,
                        text,
                        raw,
                        primary_code,
                        all_codes,
                        destination_url,
                        has_code,
                        has_url,
                        matched_keywords,
                        message_date,
                        discovered_at,
                        scraped_at,
                        delivered
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.message_id,
                        message.channel_id,
                        normalize_handle(message.channel_handle),
                        message.channel_name,
                        message.text,
                        json.dumps(message.raw, default=str) if message.raw is not None else None,
                        record.primary_code,
                        json.dumps(list(record.all_codes)),
                        record.destination_url,
                        int(record.has_code),
                        int(record.has_url),
                        json.dumps(list(message.matched_keywords)),
                        _to_iso(message.message_date),
                        _to_iso(message.discovered_at),
                        _to_iso(message.scraped_at),
                        int(message.delivered),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateKeyError(f"{message.key} already stored") from exc
        return replace(message, id=cur.lastrowid)

    def mark_delivered(self, message_pk: int) -> None:
        """Set delivered=1. The flag is never reset."""

        with self._connect() as conn:
            conn.execute(
                "UPDATE messages SET delivered = 1 WHERE id = ? AND delivered = 0",
                (message_pk,),
            )

    def latest_deliverable(self) -> Optional[PersistedMessage]:
        """Return the newest message carrying both a code and a URL."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM messages
                WHERE has_code = 1 AND has_url = 1
                ORDER BY message_date DESC
                LIMIT 1
                """
            ).fetchone()
        return self._row_to_message(row) if row else None

    def counts(self) -> dict[str, Any]:
        """Return message totals for status output."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(has_code = 1 AND has_url = 1), 0) AS deliverable,
                    COALESCE(SUM(delivered), 0) AS delivered
                FROM messages
                """
            ).fetchone()
        return {"total": row["total"], "deliverable": row["deliverable"], "delivered": row["delivered"]}
