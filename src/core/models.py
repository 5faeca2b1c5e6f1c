"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Tuple

from core.config import DestinationConfig
from core.source_keys import build_message_key


@dataclass(frozen=True)
class SourceMessage:
    """A message as fetched from, or pushed by, the source platform."""

    message_id: int
    channel_id: Optional[str]
    channel_handle: Optional[str]
    text: str
    date: datetime
    raw: Optional[dict[str, Any]] = None

    @property
    def key(self) -> str:
        return build_message_key(self.channel_handle or "", self.message_id)


@dataclass(frozen=True)
class ExtractedRecord:
    """Structured promo data pulled out of free-form text."""

    primary_code: Optional[str] = None
    all_codes: Tuple[str, ...] = ()
    destination_url: Optional[str] = None
    has_code: bool = False
    has_url: bool = False

    @property
    def deliverable(self) -> bool:
        return self.has_code and self.has_url


@dataclass(frozen=True)
class PersistedMessage:
    """Stored message: source fields, extracted data, and delivery state."""

    message_id: int
    channel_id: Optional[str]
    channel_handle: str
    channel_name: str
    text: str
    message_date: datetime
    record: ExtractedRecord
    matched_keywords: Tuple[str, ...] = ()
    raw: Optional[dict[str, Any]] = None
    delivered: bool = False
    discovered_at: Optional[datetime] = None
    scraped_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def key(self) -> str:
        return build_message_key(self.channel_handle, self.message_id)


@dataclass
class DeliveryJob:
    """One rendered message bound for one destination. Lives only in memory."""

    destination: DestinationConfig
    handle: Any
    text: str
    message: PersistedMessage
    enqueued_at: datetime
    attempts: int = 0


@dataclass(frozen=True)
class ResolvedChannel:
    """A channel or group handle resolved by the source client."""

    channel_id: str
    entity: Any = field(default=None, compare=False)
    title: Optional[str] = None
