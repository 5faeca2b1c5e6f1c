"""Error taxonomy shared by the core and its adapters.

Adapters translate transport- and storage-specific exceptions into these
types so the core never has to import Telethon or sqlite3.
"""

from __future__ import annotations

import re
from typing import Optional

FLOOD_WAIT_PATTERN = re.compile(r"FLOOD_WAIT_(\d+)")
DEFAULT_FLOOD_WAIT_SECONDS = 60


def parse_flood_wait(message: str, default: int = DEFAULT_FLOOD_WAIT_SECONDS) -> int:
    """Return the wait embedded in a FLOOD_WAIT_<n> message, or the default."""

    match = FLOOD_WAIT_PATTERN.search(message or "")
    return int(match.group(1)) if match else default


class PromoRelayError(Exception):
    """Base class for every error raised by promorelay."""


class TransientNetworkError(PromoRelayError):
    """Network hiccup worth retrying after a delay."""


class NotConnectedError(TransientNetworkError):
    """The source client is not connected."""


class RateLimitedError(PromoRelayError):
    """The remote side asked us to wait before calling again."""

    def __init__(self, message: str, wait_seconds: Optional[int] = None) -> None:
        super().__init__(message)
        self.wait_seconds = wait_seconds if wait_seconds is not None else parse_flood_wait(message)


class DuplicateKeyError(PromoRelayError):
    """An insert collided with an existing (channel, message id) pair."""


class MalformedConfigError(PromoRelayError):
    """Configuration could not be parsed into the expected shape."""


class ExhaustedRetriesError(PromoRelayError):
    """A bounded retry loop gave up."""
