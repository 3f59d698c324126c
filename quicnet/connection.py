"""Server-side view of a client connection, with its events and configuration."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Union

from .channels import Channel, ChannelKind, CloseReason, CreateChannel
from .errors import (
    ChannelAlreadyClosedError,
    ChannelClosedError,
    ConnectionClosedError,
    EndpointConnectionAlreadyClosed,
    FullQueueError,
    InternalChannelClosedError,
    InvalidChannelIdError,
)
from .protocol import (
    DEFAULT_KILL_MESSAGE_QUEUE_SIZE,
    DEFAULT_MESSAGE_QUEUE_SIZE,
    ChannelId,
    ClientId,
)

logger = logging.getLogger(__name__)

IpAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_MAX_PORT = 0xFFFF


@dataclass(frozen=True)
class ConnectionEvent:
    """Raised when a client just connected to the server."""

    id: ClientId


@dataclass(frozen=True)
class ConnectionLostEvent:
    """Raised when a client is considered disconnected from the server."""

    id: ClientId


@dataclass(frozen=True)
class ClientConnected:
    """A new connection reported by the asynchronous side."""

    connection: "ServerSideConnection"


@dataclass(frozen=True)
class ClientConnectionClosed:
    """The underlying connection of a client was closed."""

    client_id: ClientId


@dataclass(frozen=True)
class ClientConnectedAck:
    """The synchronous side accepted a connection under ``client_id``."""

    client_id: ClientId


def _parse_port(text: str) -> int:
    if not text or not text.isascii() or not text.isdigit():
        raise ValueError(f"invalid port: {text!r}")
    port = int(text)
    if port > _MAX_PORT:
        raise ValueError(f"port out of range: {port}")
    return port


def _check_port(port: int) -> int:
    if not 0 <= port <= _MAX_PORT:
        raise ValueError(f"port out of range: {port}")
    return port


@dataclass(frozen=True)
class ServerEndpointConfiguration:
    """Local address and port the server endpoint binds to."""

    ip: IpAddress
    port: int

    @classmethod
    def from_string(cls, local_bind_addr_str: str) -> "ServerEndpointConfiguration":
        """Parse ``"a.b.c.d:port"`` or ``"[v6]:port"``; raise ValueError if invalid."""
        if local_bind_addr_str.startswith("["):
            host, sep, port = local_bind_addr_str[1:].partition("]:")
            if not sep:
                raise ValueError(f"invalid socket address: {local_bind_addr_str!r}")
            ip: IpAddress = ipaddress.IPv6Address(host)
        else:
            host, sep, port = local_bind_addr_str.rpartition(":")
            if not sep:
                raise ValueError(f"invalid socket address: {local_bind_addr_str!r}")
            ip = ipaddress.IPv4Address(host)
        return cls(ip, _parse_port(port))

    @classmethod
    def from_ip(
        cls, local_bind_ip: Union[str, int, IpAddress], local_bind_port: int
    ) -> "ServerEndpointConfiguration":
        """Build from an IP address and a port."""
        return cls(ipaddress.ip_address(local_bind_ip), _check_port(local_bind_port))

    @classmethod
    def from_addr(
        cls, local_bind_addr: Tuple[Union[str, IpAddress], int]
    ) -> "ServerEndpointConfiguration":
        """Build from a ``(host, port)`` pair."""
        host, port = local_bind_addr
        return cls.from_ip(host, port)

    @property
    def local_bind_addr(self) -> Tuple[str, int]:
        """The address as a ``(host, port)`` pair suitable for sockets."""
        return str(self.ip), self.port

    def __str__(self) -> str:
        if isinstance(self.ip, ipaddress.IPv6Address):
            return f"[{self.ip}]:{self.port}"
        return f"{self.ip}:{self.port}"


@dataclass
class EndpointStats:
    """Basic statistics about a server endpoint."""

    received_messages_count: int = 0
    connect_count: int = 0
    disconnect_count: int = 0


class ServerSideConnection:
    """A connection from a client to the server's endpoint, seen by the server.

    ``connection_handle`` must offer ``max_datagram_size()`` and ``stats()``.
    ``close_sender`` is the future shared with the connection's background
    tasks; setting its result asks them to stop.
    """

    def __init__(
        self,
        connection_handle: Any,
        bytes_from_client_recv: asyncio.Queue,
        close_sender: asyncio.Future,
        to_connection_send: asyncio.Queue,
        from_channels_recv: asyncio.Queue,
        to_channels_send: asyncio.Queue,
    ) -> None:
        self.connection_handle = connection_handle
        self.bytes_from_client_recv = bytes_from_client_recv
        self.close_sender = close_sender
        self.to_connection_send = to_connection_send
        self.from_channels_recv = from_channels_recv
        self.to_channels_send = to_channels_send
        self._channels: List[Optional[Channel]] = []
        self._received_bytes = 0
        self._sent_bytes = 0

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(channels={len(self._channels)}, "
            f"closed={self.close_sender.done()})"
        )

    # --- channels -------------------------------------------------------------

    def close_channel(self, channel_id: ChannelId) -> None:
        """Stop new messages on a channel and ask it to flush and close."""
        if not 0 <= channel_id < len(self._channels):
            raise InvalidChannelIdError(channel_id)
        channel = self._channels[channel_id]
        self._channels[channel_id] = None
        if channel is None:
            raise ChannelAlreadyClosedError()
        channel.close()

    def create_connection_channel(self, channel_id: ChannelId, kind: ChannelKind) -> None:
        """Create a channel and register it on this connection."""
        channel = self.create_unregistered_connection_channel(channel_id, kind)
        self.register_connection_channel(channel)

    def create_unregistered_connection_channel(
        self, channel_id: ChannelId, kind: ChannelKind
    ) -> Channel:
        """Ask the background tasks to start a channel and return its handle."""
        if self.close_sender.done():
            raise InternalChannelClosedError()
        bytes_queue: asyncio.Queue = asyncio.Queue(maxsize=DEFAULT_MESSAGE_QUEUE_SIZE)
        close_queue: asyncio.Queue = asyncio.Queue(
            maxsize=DEFAULT_KILL_MESSAGE_QUEUE_SIZE
        )
        request = CreateChannel(
            id=channel_id,
            kind=kind,
            bytes_to_channel_recv=bytes_queue,
            channel_close_recv=close_queue,
        )
        try:
            self.to_channels_send.put_nowait(request)
        except asyncio.QueueFull:
            raise FullQueueError() from None
        return Channel(channel_id, bytes_queue, close_queue)

    def register_connection_channel(self, channel: Channel) -> None:
        """Store ``channel`` at the slot of its id, growing the table if needed."""
        index = channel.id
        if index >= len(self._channels):
            self._channels.extend([None] * (index + 1 - len(self._channels)))
        self._channels[index] = channel

    def send_payload_on(self, channel_id: ChannelId, payload: bytes) -> None:
        """Queue ``payload`` on one of this connection's channels."""
        if not 0 <= channel_id < len(self._channels):
            raise InvalidChannelIdError(channel_id)
        channel = self._channels[channel_id]
        if channel is None:
            raise ChannelClosedError()
        self._sent_bytes += len(payload)
        channel.send_payload(payload)

    def receive_payload(self) -> Optional[Tuple[ChannelId, bytes]]:
        """Pop the next ``(channel id, payload)`` received, or None if none is waiting.

        Raises ConnectionClosedError once the connection is closed and drained.
        """
        try:
            message = self.bytes_from_client_recv.get_nowait()
        except asyncio.QueueEmpty:
            if self.close_sender.done():
                raise ConnectionClosedError() from None
            return None
        self._received_bytes += len(message[1])
        return message

    # --- closing --------------------------------------------------------------

    def close_with(self, reason: CloseReason) -> None:
        """Signal the background tasks to stop for ``reason``."""
        if self.close_sender.done():
            raise EndpointConnectionAlreadyClosed()
        self.close_sender.set_result(reason)

    def close(self) -> None:
        """Ask every background task to flush its channels and stop."""
        self.close_with(CloseReason.LOCAL_ORDER)

    def try_close(self) -> None:
        """Like :meth:`close`, but log failures instead of raising."""
        try:
            self.close()
        except EndpointConnectionAlreadyClosed as err:
            logger.error("Failed to properly close connection: %s", err)

    # --- statistics -------------------------------------------------------------

    def max_datagram_size(self) -> Optional[int]:
        """Largest datagram currently sendable on this connection, if any."""
        return self.connection_handle.max_datagram_size()

    def connection_stats(self) -> Any:
        """Statistics of the underlying connection."""
        return self.connection_handle.stats()

    def clear_received_bytes_count(self) -> int:
        """Return the received byte count and reset it to 0."""
        count, self._received_bytes = self._received_bytes, 0
        return count

    def received_bytes_count(self) -> int:
        """Bytes received since the count was last cleared."""
        return self._received_bytes

    def clear_sent_bytes_count(self) -> int:
        """Return the sent byte count and reset it to 0."""
        count, self._sent_bytes = self._sent_bytes, 0
        return count

    def sent_bytes_count(self) -> int:
        """Bytes sent since the count was last cleared."""
        return self._sent_bytes