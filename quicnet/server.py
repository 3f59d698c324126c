"""The server: owns the endpoint and turns asynchronous connection activity into events.

The server does not implement QUIC itself. It binds the UDP socket for the
configured address and retrieves the certificate. The transport layer hands
each accepted QUIC connection to :meth:`QuinnetServer.accept_connection`.
Besides the interface described in :mod:`quicnet.tasks`, such a connection
must offer ``await closed()``, which returns once the connection is gone,
``remote_address()``, ``max_datagram_size()`` and ``stats()``.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Iterator, List, Optional, Set, Tuple, Union

from .certificate import CertificateRetrievalMode, ServerCertificate, retrieve_certificate
from .channels import ChannelAsyncMessage, ChannelsConfiguration
from .connection import (
    ClientConnected,
    ClientConnectedAck,
    ClientConnectionClosed,
    ConnectionEvent,
    ConnectionLostEvent,
    ServerEndpointConfiguration,
    ServerSideConnection,
)
from .endpoint import Endpoint
from .errors import (
    EndpointAlreadyClosed,
    EndpointCertificateError,
    EndpointStartError,
    QuinnetError,
)
from .protocol import (
    DEFAULT_INTERNAL_MESSAGES_CHANNEL_SIZE,
    DEFAULT_KEEP_ALIVE_INTERVAL_S,
    DEFAULT_MESSAGE_QUEUE_SIZE,
    DEFAULT_QCHANNEL_MESSAGES_CHANNEL_SIZE,
    ClientId,
)
from .tasks import (
    client_id_sender,
    reliable_channels_receiver_task,
    send_channels_tasks_spawner,
    unreliable_channel_receiver_task,
)

logger = logging.getLogger(__name__)

ServerEvent = Union[ConnectionEvent, ConnectionLostEvent]

# Detached tasks must be referenced somewhere or they may be collected.
_background: Set[asyncio.Task] = set()


def _spawn(coro: Awaitable[Any]) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)
    return task


def _drain(queue: asyncio.Queue) -> Iterator[Any]:
    while True:
        try:
            yield queue.get_nowait()
        except asyncio.QueueEmpty:
            return


def _bind(config: ServerEndpointConfiguration) -> socket.socket:
    family = socket.AF_INET6 if config.ip.version == 6 else socket.AF_INET
    try:
        sock = socket.socket(family, socket.SOCK_DGRAM)
    except OSError as err:
        raise EndpointStartError(f"I/O error: {err}") from err
    try:
        sock.bind(config.local_bind_addr)
        sock.setblocking(False)
    except OSError as err:
        sock.close()
        raise EndpointStartError(f"I/O error: {err}") from err
    return sock


async def _wait_for_ack(
    to_connection: asyncio.Queue, close_future: asyncio.Future
) -> Optional[ClientId]:
    ack_task = asyncio.ensure_future(to_connection.get())
    try:
        await asyncio.wait({ack_task, close_future}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not ack_task.done():
            ack_task.cancel()
            await asyncio.gather(ack_task, return_exceptions=True)
    if ack_task.done() and not ack_task.cancelled():
        message = ack_task.result()
        if isinstance(message, ClientConnectedAck):
            return message.client_id
    return None


async def _watch_closed(
    connection_handle: Any, client_id: ClientId, to_sync_endpoint_send: asyncio.Queue
) -> None:
    reason = await connection_handle.closed()
    logger.info("Connection %s closed: %s", client_id, reason)
    await to_sync_endpoint_send.put(ClientConnectionClosed(client_id))


async def client_connection_task(
    connection_handle: Any, to_sync_endpoint_send: asyncio.Queue
) -> Optional[ClientId]:
    """Announce a new connection to the endpoint and, once accepted, run it.

    Returns the client id assigned by the endpoint, or None if refused.
    """
    loop = asyncio.get_running_loop()
    client_close: asyncio.Future = loop.create_future()
    bytes_from_client: asyncio.Queue = asyncio.Queue(maxsize=DEFAULT_MESSAGE_QUEUE_SIZE)
    to_connection: asyncio.Queue = asyncio.Queue(
        maxsize=DEFAULT_INTERNAL_MESSAGES_CHANNEL_SIZE
    )
    from_channels: asyncio.Queue = asyncio.Queue(
        maxsize=DEFAULT_INTERNAL_MESSAGES_CHANNEL_SIZE
    )
    to_channels: asyncio.Queue = asyncio.Queue(
        maxsize=DEFAULT_QCHANNEL_MESSAGES_CHANNEL_SIZE
    )

    connection = ServerSideConnection(
        connection_handle,
        bytes_from_client,
        client_close,
        to_connection,
        from_channels,
        to_channels,
    )
    await to_sync_endpoint_send.put(ClientConnected(connection))

    client_id = await _wait_for_ack(to_connection, client_close)
    if client_id is None:
        logger.info("Connection from %s refused", connection_handle.remote_address())
        return None

    logger.info(
        "New connection from %s, client_id: %s",
        connection_handle.remote_address(),
        client_id,
    )
    _spawn(client_id_sender(connection_handle, client_id, from_channels))
    _spawn(_watch_closed(connection_handle, client_id, to_sync_endpoint_send))
    _spawn(
        reliable_channels_receiver_task(
            client_id, connection_handle, client_close, bytes_from_client
        )
    )
    _spawn(
        unreliable_channel_receiver_task(
            client_id, connection_handle, client_close, bytes_from_client
        )
    )
    _spawn(
        send_channels_tasks_spawner(
            connection_handle, client_close, to_channels, from_channels
        )
    )
    return client_id


class QuinnetServer:
    """A server listening to connections from multiple clients.

    Without an explicit event loop, the running loop is used when the
    endpoint starts, or a new loop if none is running.
    """

    keep_alive_interval: float = DEFAULT_KEEP_ALIVE_INTERVAL_S

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._endpoint: Optional[Endpoint] = None
        self._socket: Optional[socket.socket] = None
        self._certificate: Optional[ServerCertificate] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(listening={self.is_listening()})"

    def _resolve_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                self._loop = asyncio.new_event_loop()
        return self._loop

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        """The event loop the connection tasks run on, once known."""
        return self._loop

    @property
    def socket(self) -> Optional[socket.socket]:
        """The UDP socket bound for the endpoint, if listening."""
        return self._socket

    @property
    def local_addr(self) -> Optional[Tuple[Any, ...]]:
        """The address the endpoint is bound to, if listening."""
        return None if self._socket is None else self._socket.getsockname()

    @property
    def certificate(self) -> Optional[ServerCertificate]:
        """The certificate of the running endpoint, if listening."""
        return self._certificate if self._endpoint is not None else None

    def endpoint(self) -> Endpoint:
        """The server's endpoint; raises EndpointAlreadyClosed if not opened."""
        if self._endpoint is None:
            raise EndpointAlreadyClosed()
        return self._endpoint

    def get_endpoint(self) -> Optional[Endpoint]:
        """The server's endpoint, or None if not opened."""
        return self._endpoint

    def start_endpoint(
        self,
        config: ServerEndpointConfiguration,
        cert_mode: CertificateRetrievalMode,
        channels_config: Optional[ChannelsConfiguration] = None,
    ) -> ServerCertificate:
        """Bind the endpoint, open the configured channels and return the certificate.

        Raises EndpointStartError if the certificate cannot be obtained or
        the address cannot be bound.
        """
        if channels_config is None:
            channels_config = ChannelsConfiguration.default()
        try:
            server_cert = retrieve_certificate(cert_mode)
        except EndpointCertificateError as err:
            raise EndpointStartError(f"Certificate error: {err}") from err

        loop = self._resolve_loop()
        sock = _bind(config)
        logger.info("Starting endpoint on: %s ...", config)

        endpoint = Endpoint(
            loop.create_future(),
            asyncio.Queue(maxsize=DEFAULT_INTERNAL_MESSAGES_CHANNEL_SIZE),
        )
        try:
            for channel_type in channels_config.configs():
                endpoint.open_channel(channel_type)
        except QuinnetError:
            sock.close()
            raise

        if self._endpoint is not None:
            try:
                self.stop_endpoint()
            except EndpointAlreadyClosed:
                pass
        self._endpoint = endpoint
        self._socket = sock
        self._certificate = server_cert
        return server_cert

    def stop_endpoint(self) -> None:
        """Disconnect every client and stop accepting connections.

        Raises EndpointAlreadyClosed if the endpoint is not opened.
        """
        endpoint, self._endpoint = self._endpoint, None
        if endpoint is None:
            raise EndpointAlreadyClosed()
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        endpoint.disconnect_all_clients()
        try:
            endpoint._close_incoming_connections_handler()
        except QuinnetError:
            raise EndpointAlreadyClosed() from None

    def is_listening(self) -> bool:
        """True while the endpoint is opened."""
        return self._endpoint is not None

    def accept_connection(self, connection: Any) -> asyncio.Task:
        """Start handling a connection accepted by the transport.

        Returns the task running :func:`client_connection_task`.
        Raises EndpointAlreadyClosed if the endpoint is not opened.
        """
        endpoint = self.endpoint()
        loop = self._resolve_loop()
        task = loop.create_task(
            client_connection_task(connection, endpoint.from_async_endpoint_recv)
        )
        _background.add(task)
        task.add_done_callback(_background.discard)
        return task

    def update(self) -> List[ServerEvent]:
        """Apply what the connection tasks reported and return the resulting events."""
        endpoint = self._endpoint
        if endpoint is None:
            return []
        events: List[ServerEvent] = []
        stats = endpoint.endpoint_stats()

        for message in _drain(endpoint.from_async_endpoint_recv):
            if isinstance(message, ClientConnected):
                try:
                    client_id = endpoint.handle_connection(message.connection)
                except QuinnetError:
                    logger.error(
                        "Failed to handle connection of a client, already disconnected"
                    )
                    continue
                stats.connect_count += 1
                events.append(ConnectionEvent(client_id))
            elif isinstance(message, ClientConnectionClosed):
                if endpoint.get_connection(message.client_id) is not None:
                    stats.disconnect_count += 1
                    endpoint._try_disconnect_closed_client(message.client_id)
                    events.append(ConnectionLostEvent(message.client_id))

        lost: List[ClientId] = []
        for client_id in endpoint.clients():
            connection = endpoint.get_connection(client_id)
            if connection is None:
                continue
            for message in _drain(connection.from_channels_recv):
                if message is ChannelAsyncMessage.LOST_CONNECTION and client_id not in lost:
                    lost.append(client_id)
                    events.append(ConnectionLostEvent(client_id))
        for client_id in lost:
            endpoint.try_disconnect_client(client_id)
        return events


def server_listening(server: Optional[QuinnetServer]) -> bool:
    """True if the server exists and its endpoint is opened."""
    return server is not None and server.is_listening()


@dataclass
class ListeningState:
    """Remembers whether a server was listening at the previous check."""

    was_listening: bool = False

    def just_opened(self, server: Optional[QuinnetServer]) -> bool:
        """True if the server listens now but did not at the previous check."""
        listening = server_listening(server)
        opened = not self.was_listening and listening
        self.was_listening = listening
        return opened

    def just_closed(self, server: Optional[QuinnetServer]) -> bool:
        """True if the server does not listen now but did at the previous check."""
        closed = not server_listening(server)
        result = self.was_listening and closed
        self.was_listening = not closed
        return result