"""Dedup gate (core domain).

The store's (channel, message id) uniqueness constraint is the only dedup
mechanism. The gate classifies inbound messages against it and turns a losing
insert race into an "already known" verdict instead of an error.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from core.errors import DuplicateKeyError
from core.models import PersistedMessage, SourceMessage
from core.ports import StoragePort
from core.source_keys import normalize_handle

LOGGER = logging.getLogger(__name__)


class DedupVerdict(enum.Enum):
    NEW = "new"
    ALREADY_DELIVERED = "already_delivered"
    ALREADY_KNOWN_UNDELIVERED = "already_known_undelivered"
    ALREADY_KNOWN_INELIGIBLE = "already_known_ineligible"


@dataclass(frozen=True)
class DedupResult:
    verdict: DedupVerdict
    message: Optional[PersistedMessage] = None


def classify_existing(existing: PersistedMessage) -> DedupResult:
    """Classify a message that the store already knows about."""

    if existing.delivered:
        return DedupResult(DedupVerdict.ALREADY_DELIVERED, existing)
    if existing.record.deliverable:
        return DedupResult(DedupVerdict.ALREADY_KNOWN_UNDELIVERED, existing)
    return DedupResult(DedupVerdict.ALREADY_KNOWN_INELIGIBLE, existing)


class DedupGate:
    """Decide whether a source message is new, a resend candidate, or noise."""

    def __init__(self, storage: StoragePort) -> None:
        self._storage = storage

    def check(self, message: SourceMessage) -> DedupResult:
        existing = self._storage.find_by_key(normalize_handle(message.channel_handle or ""), message.message_id)
        if existing is None:
            return DedupResult(DedupVerdict.NEW)
        return classify_existing(existing)

    def admit(self, candidate: PersistedMessage) -> DedupResult:
        """Insert a new message, resolving insert races as "already known"."""

        try:
            stored = self._storage.insert(candidate)
        except DuplicateKeyError:
            LOGGER.info("Message %s already exists (concurrent insert)", candidate.key)
            existing = self._storage.find_by_key(candidate.channel_handle, candidate.message_id)
            if existing is None:
                # The colliding row vanished between insert and read; treat it as known.
                return DedupResult(DedupVerdict.ALREADY_KNOWN_INELIGIBLE)
            return classify_existing(existing)
        return DedupResult(DedupVerdict.NEW, stored)
