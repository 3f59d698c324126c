"""Channel kinds, channel handles and channel configurations."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .errors import (
    ChannelAlreadyClosedError,
    FullQueueError,
    InternalChannelClosedError,
    MaxChannelsCountReachedError,
)
from .protocol import DEFAULT_MAX_RELIABLE_FRAME_LEN, MAX_CHANNEL_COUNT, ChannelId


class CloseReason(enum.Enum):
    """Why the background tasks of a connection are asked to stop."""

    LOCAL_ORDER = enum.auto()
    PEER_CLOSED = enum.auto()


class ChannelKind:
    """Base of the channel types, each offering its own delivery guarantees."""

    __slots__ = ()


@dataclass(frozen=True)
class OrderedReliable(ChannelKind):
    """Messages are delivered and processed in the order they were sent."""

    max_frame_size: int = DEFAULT_MAX_RELIABLE_FRAME_LEN


@dataclass(frozen=True)
class UnorderedReliable(ChannelKind):
    """Messages are delivered, possibly out of order."""

    max_frame_size: int = DEFAULT_MAX_RELIABLE_FRAME_LEN


@dataclass(frozen=True)
class Unreliable(ChannelKind):
    """Messages are sent as datagrams that may be lost or reordered."""


def default_channel_kind() -> ChannelKind:
    """Return the kind used when none is specified."""
    return OrderedReliable(max_frame_size=DEFAULT_MAX_RELIABLE_FRAME_LEN)


class ChannelAsyncMessage(enum.Enum):
    """Messages sent by channel tasks back to the synchronous side."""

    LOST_CONNECTION = enum.auto()


@dataclass
class CreateChannel:
    """Request for the channel task spawner to start a new channel."""

    id: ChannelId
    kind: ChannelKind
    bytes_to_channel_recv: asyncio.Queue
    channel_close_recv: asyncio.Queue


@dataclass
class Channel:
    """Sending half of an opened channel."""

    id: ChannelId
    sender: asyncio.Queue
    close_sender: asyncio.Queue
    _closed: bool = field(default=False, init=False, repr=False)

    def send_payload(self, payload: bytes) -> None:
        """Queue ``payload`` for sending without blocking."""
        if self._closed:
            raise InternalChannelClosedError()
        try:
            self.sender.put_nowait(bytes(payload))
        except asyncio.QueueFull:
            raise FullQueueError() from None

    def close(self) -> None:
        """Signal the channel task to flush its queue and stop."""
        if self._closed:
            raise ChannelAlreadyClosedError()
        try:
            self.close_sender.put_nowait(None)
        except asyncio.QueueFull:
            raise ChannelAlreadyClosedError() from None
        self._closed = True


@dataclass
class ChannelsConfiguration:
    """Ordered list of channels to open; ids are assigned from 0 upwards."""

    channels: List[ChannelKind] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.channels = list(self.channels)
        if len(self.channels) > MAX_CHANNEL_COUNT:
            raise MaxChannelsCountReachedError()

    @classmethod
    def default(cls) -> "ChannelsConfiguration":
        """Configuration with a single ordered reliable channel."""
        return cls([default_channel_kind()])

    @classmethod
    def from_types(cls, channel_types: Iterable[ChannelKind]) -> "ChannelsConfiguration":
        """Build a configuration keeping the order of ``channel_types``."""
        return cls(list(channel_types))

    def add(self, channel_type: ChannelKind) -> Optional[ChannelId]:
        """Append a channel and return its id, or None when full."""
        if len(self.channels) >= MAX_CHANNEL_COUNT:
            return None
        self.channels.append(channel_type)
        return len(self.channels) - 1

    def configs(self) -> List[ChannelKind]:
        """Return the configured channel kinds in id order."""
        return list(self.channels)