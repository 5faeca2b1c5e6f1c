"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

DEFAULT_MESSAGE_TEMPLATE = (
    "{channelName}\n\n"
    "{allBonusCodes}\n\n"
    "{websiteUrl}"
)


@dataclass(frozen=True)
class ChannelConfig:
    """A source channel to scan and, optionally, listen to live."""

    name: str
    username: str
    active: bool = True
    live_enabled: bool = False
    keywords: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DestinationConfig:
    """A group that receives forwarded promos."""

    id: str
    name: str
    username: str
    active: bool = True
    message_template: str = DEFAULT_MESSAGE_TEMPLATE


@dataclass(frozen=True)
class ScrapeSettings:
    """Batch polling settings."""

    check_interval: float = 300.0
    max_age_hours: float = 24.0
    max_messages_per_check: int = 50
    channel_delay: float = 2.0


@dataclass(frozen=True)
class MessagingSettings:
    """Delivery queue and send-policy settings."""

    batch_size: int = 5
    send_delay: float = 1.0
    drain_interval: float = 1.0
    max_job_retries: int = 5
    only_with_code: bool = True
    min_message_length: int = 10
    text_limit: int = 200
    missing_value: str = "Not found"


@dataclass(frozen=True)
class RealTimeSettings:
    """Live-push listener settings."""

    enabled: bool = True
    heartbeat_interval: float = 30.0
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 5.0
    inbox_size: int = 1000
    live_poll_interval: float = 0.5


@dataclass(frozen=True)
class AppConfig:
    """Read-only snapshot of everything the core needs."""

    channels: List[ChannelConfig] = field(default_factory=list)
    destinations: List[DestinationConfig] = field(default_factory=list)
    scraping: ScrapeSettings = field(default_factory=ScrapeSettings)
    messaging: MessagingSettings = field(default_factory=MessagingSettings)
    realtime: RealTimeSettings = field(default_factory=RealTimeSettings)

    def active_channels(self) -> List[ChannelConfig]:
        return [channel for channel in self.channels if channel.active]

    def live_channels(self) -> List[ChannelConfig]:
        return [channel for channel in self.channels if channel.active and channel.live_enabled]

    def active_destinations(self) -> List[DestinationConfig]:
        return [destination for destination in self.destinations if destination.active]

    def destination(self, destination_id: str) -> DestinationConfig:
        for destination in self.destinations:
            if destination.id == destination_id:
                return destination
        raise KeyError(destination_id)
