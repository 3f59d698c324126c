"""Server endpoint: the set of connected clients and the channels opened on them."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import msgpack

from .channels import Channel, ChannelKind, CloseReason
from .connection import ClientConnectedAck, EndpointStats, ServerSideConnection
from .errors import (
    AsyncChannelError,
    ChannelCloseError,
    ClientAlreadyDisconnectedError,
    DeserializationError,
    EndpointConnectionAlreadyClosed,
    InternalChannelClosedError,
    InvalidChannelIdError,
    MaxChannelsCountReachedError,
    NoDefaultChannelError,
    QuinnetError,
    SerializationError,
    ServerGroupSendError,
    ServerSendError,
    UnknownClientError,
)
from .protocol import ChannelId, ClientId

logger = logging.getLogger(__name__)

# Channel ids handed out by an endpoint.
_ENDPOINT_CHANNEL_IDS = range(255)


def _serialize(message: Any) -> bytes:
    try:
        return msgpack.packb(message, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as err:
        raise SerializationError() from err


def _deserialize(payload: bytes) -> Any:
    try:
        return msgpack.unpackb(payload, raw=False)
    except ValueError as err:
        raise DeserializationError() from err


class Endpoint:
    """Connected clients and the channels opened for all of them.

    The first channel opened becomes the default channel, used by the
    methods that do not take a channel id.
    """

    def __init__(
        self, close_sender: asyncio.Future, from_async_endpoint_recv: asyncio.Queue
    ) -> None:
        self._clients: Dict[ClientId, ServerSideConnection] = {}
        self._client_id_gen: ClientId = 0
        self._opened_channels: Dict[ChannelId, ChannelKind] = {}
        self._available_channel_ids: Set[ChannelId] = set(_ENDPOINT_CHANNEL_IDS)
        self._default_channel: Optional[ChannelId] = None
        self._close_sender = close_sender
        self.from_async_endpoint_recv = from_async_endpoint_recv
        self._stats = EndpointStats()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(clients={sorted(self._clients)}, "
            f"channels={sorted(self._opened_channels)}, "
            f"default_channel={self._default_channel})"
        )

    def clients(self) -> List[ClientId]:
        """Ids of every connected client."""
        return list(self._clients)

    # --- receiving --------------------------------------------------------------

    def receive_message_from(self, client_id: ClientId) -> Optional[Tuple[ChannelId, Any]]:
        """Return the next ``(channel id, message)`` from a client, or None."""
        received = self.receive_payload_from(client_id)
        if received is None:
            return None
        channel_id, payload = received
        return channel_id, _deserialize(payload)

    def try_receive_message_from(
        self, client_id: ClientId
    ) -> Optional[Tuple[ChannelId, Any]]:
        """Like :meth:`receive_message_from`, logging errors and returning None."""
        try:
            return self.receive_message_from(client_id)
        except QuinnetError as err:
            logger.error("try_receive_message: %s", err)
            return None

    def receive_payload_from(
        self, client_id: ClientId
    ) -> Optional[Tuple[ChannelId, bytes]]:
        """Return the next ``(channel id, payload)`` from a client, or None.

        Raises UnknownClientError or ConnectionClosedError.
        """
        connection = self._clients.get(client_id)
        if connection is None:
            raise UnknownClientError(client_id)
        message = connection.receive_payload()
        if message is not None:
            self._stats.received_messages_count += 1
        return message

    def try_receive_payload_from(
        self, client_id: ClientId
    ) -> Optional[Tuple[ChannelId, bytes]]:
        """Like :meth:`receive_payload_from`, logging errors and returning None."""
        try:
            return self.receive_payload_from(client_id)
        except QuinnetError as err:
            logger.error("try_receive_payload: %s", err)
            return None

    # --- sending to one client ------------------------------------------------------

    def _require_default_channel(self) -> ChannelId:
        if self._default_channel is None:
            raise NoDefaultChannelError()
        return self._default_channel

    def send_message(self, client_id: ClientId, message: Any) -> None:
        """Send a message to a client on the default channel."""
        self.send_message_on(client_id, self._require_default_channel(), message)

    def send_message_on(
        self, client_id: ClientId, channel_id: ChannelId, message: Any
    ) -> None:
        """Serialize a message and send it to a client on a channel."""
        self.send_payload_on(client_id, channel_id, _serialize(message))

    def try_send_message(self, client_id: ClientId, message: Any) -> None:
        """Like :meth:`send_message`, logging errors instead of raising."""
        try:
            self.send_message(client_id, message)
        except QuinnetError as err:
            logger.error("try_send_message: %s", err)

    def try_send_message_on(
        self, client_id: ClientId, channel_id: ChannelId, message: Any
    ) -> None:
        """Like :meth:`send_message_on`, logging errors instead of raising."""
        try:
            self.send_message_on(client_id, channel_id, message)
        except QuinnetError as err:
            logger.error("try_send_message: %s", err)

    def send_payload(self, client_id: ClientId, payload: bytes) -> None:
        """Send a payload to a client on the default channel."""
        self.send_payload_on(client_id, self._require_default_channel(), payload)

    def send_payload_on(
        self, client_id: ClientId, channel_id: ChannelId, payload: bytes
    ) -> None:
        """Send a payload to a client on a channel.

        Raises UnknownClientError, InvalidChannelIdError, ChannelClosedError
        or an AsyncChannelError.
        """
        connection = self._clients.get(client_id)
        if connection is None:
            raise UnknownClientError(client_id)
        connection.send_payload_on(channel_id, bytes(payload))

    def try_send_payload(self, client_id: ClientId, payload: bytes) -> None:
        """Like :meth:`send_payload`, logging errors instead of raising."""
        try:
            self.send_payload(client_id, payload)
        except QuinnetError as err:
            logger.error("try_send_payload: %s", err)

    def try_send_payload_on(
        self, client_id: ClientId, channel_id: ChannelId, payload: bytes
    ) -> None:
        """Like :meth:`send_payload_on`, logging errors instead of raising."""
        try:
            self.send_payload_on(client_id, channel_id, payload)
        except QuinnetError as err:
            logger.error("try_send_payload_on: %s", err)

    # --- sending to groups ------------------------------------------------------

    def _send_to_group(
        self, client_ids: Iterable[ClientId], channel_id: ChannelId, payload: bytes
    ) -> None:
        errors: List[Tuple[ClientId, ServerSendError]] = []
        for client_id in client_ids:
            try:
                self.send_payload_on(client_id, channel_id, payload)
            except ServerSendError as err:
                errors.append((client_id, err))
        if errors:
            raise ServerGroupSendError(errors)

    def send_group_message(self, client_ids: Iterable[ClientId], message: Any) -> None:
        """Send a message to several clients on the default channel."""
        self.send_group_message_on(client_ids, self._require_default_channel(), message)

    def send_group_message_on(
        self, client_ids: Iterable[ClientId], channel_id: ChannelId, message: Any
    ) -> None:
        """Send a message to several clients on a channel.

        Tries every client; raises ServerGroupSendError listing the failures.
        """
        self._send_to_group(client_ids, channel_id, _serialize(message))

    def try_send_group_message(
        self, client_ids: Iterable[ClientId], message: Any
    ) -> None:
        """Like :meth:`send_group_message`, logging errors instead of raising."""
        try:
            self.send_group_message(client_ids, message)
        except QuinnetError as err:
            logger.error("try_send_group_message: %s", err)

    def try_send_group_message_on(
        self, client_ids: Iterable[ClientId], channel_id: ChannelId, message: Any
    ) -> None:
        """Like :meth:`send_group_message_on`, logging errors instead of raising."""
        try:
            self.send_group_message_on(client_ids, channel_id, message)
        except QuinnetError as err:
            logger.error("try_send_group_message: %s", err)

    def send_group_payload(self, client_ids: Iterable[ClientId], payload: bytes) -> None:
        """Send a payload to several clients on the default channel."""
        self.send_group_payload_on(client_ids, self._require_default_channel(), payload)

    def try_send_group_payload(
        self, client_ids: Iterable[ClientId], payload: bytes
    ) -> None:
        """Like :meth:`send_group_payload`, logging errors instead of raising."""
        try:
            self.send_group_payload(client_ids, payload)
        except QuinnetError as err:
            logger.error("try_send_group_payload: %s", err)

    def send_group_payload_on(
        self, client_ids: Iterable[ClientId], channel_id: ChannelId, payload: bytes
    ) -> None:
        """Send a payload to several clients on a channel.

        Tries every client; raises ServerGroupSendError listing the failures.
        """
        self._send_to_group(client_ids, channel_id, bytes(payload))

    def try_send_group_payload_on(
        self, client_ids: Iterable[ClientId], channel_id: ChannelId, payload: bytes
    ) -> None:
        """Like :meth:`send_group_payload_on`, logging errors instead of raising."""
        try:
            self.send_group_payload_on(client_ids, channel_id, payload)
        except QuinnetError as err:
            logger.error("try_send_group_payload_on: %s", err)

    def broadcast_message(self, message: Any) -> None:
        """Send a message to every client on the default channel."""
        self.broadcast_message_on(self._require_default_channel(), message)

    def broadcast_message_on(self, channel_id: ChannelId, message: Any) -> None:
        """Serialize a message and send it to every client on a channel."""
        self.broadcast_payload_on(channel_id, _serialize(message))

    def try_broadcast_message(self, message: Any) -> None:
        """Like :meth:`broadcast_message`, logging errors instead of raising."""
        try:
            self.broadcast_message(message)
        except QuinnetError as err:
            logger.error("try_broadcast_message: %s", err)

    def try_broadcast_message_on(self, channel_id: ChannelId, message: Any) -> None:
        """Like :meth:`broadcast_message_on`, logging errors instead of raising."""
        try:
            self.broadcast_message_on(channel_id, message)
        except QuinnetError as err:
            logger.error("try_broadcast_message: %s", err)

    def broadcast_payload(self, payload: bytes) -> None:
        """Send a payload to every client on the default channel."""
        self.broadcast_payload_on(self._require_default_channel(), payload)

    def broadcast_payload_on(self, channel_id: ChannelId, payload: bytes) -> None:
        """Send a payload to every connected client on a channel.

        Tries every client; raises ServerGroupSendError listing the failures.
        """
        self._send_to_group(list(self._clients), channel_id, bytes(payload))

    def try_broadcast_payload(self, payload: bytes) -> None:
        """Like :meth:`broadcast_payload`, logging errors instead of raising."""
        try:
            self.broadcast_payload(payload)
        except QuinnetError as err:
            logger.error("try_broadcast_payload: %s", err)

    def try_broadcast_payload_on(self, channel_id: ChannelId, payload: bytes) -> None:
        """Like :meth:`broadcast_payload_on`, logging errors instead of raising."""
        try:
            self.broadcast_payload_on(channel_id, payload)
        except QuinnetError as err:
            logger.error("try_broadcast_payload_on: %s", err)

    # --- disconnection ----------------------------------------------------------

    def _disconnect(self, client_id: ClientId, reason: CloseReason) -> None:
        connection = self._clients.pop(client_id, None)
        if connection is None:
            raise UnknownClientError(client_id)
        try:
            connection.close_with(reason)
        except EndpointConnectionAlreadyClosed:
            raise ClientAlreadyDisconnectedError(client_id) from None

    def _try_disconnect_closed_client(self, client_id: ClientId) -> None:
        """Remove a client whose connection was closed by the peer."""
        try:
            self._disconnect(client_id, CloseReason.PEER_CLOSED)
        except QuinnetError as err:
            logger.error("Failed to properly disconnect client %s: %s", client_id, err)

    def disconnect_client(self, client_id: ClientId) -> None:
        """Remove a client and ask its connection to flush and close.

        Raises UnknownClientError or ClientAlreadyDisconnectedError.
        """
        self._disconnect(client_id, CloseReason.LOCAL_ORDER)

    def try_disconnect_client(self, client_id: ClientId) -> None:
        """Like :meth:`disconnect_client`, logging errors instead of raising."""
        try:
            self.disconnect_client(client_id)
        except QuinnetError as err:
            logger.error("Failed to properly disconnect client %s: %s", client_id, err)

    def disconnect_all_clients(self) -> None:
        """Disconnect every client, ignoring those already closed."""
        clients, self._clients = self._clients, {}
        for connection in clients.values():
            try:
                connection.close_with(CloseReason.LOCAL_ORDER)
            except EndpointConnectionAlreadyClosed:
                pass

    # --- inspection ---------------------------------------------------------------

    def get_connection_stats(self, client_id: ClientId) -> Optional[Any]:
        """Statistics of a client's connection, or None if it is not connected."""
        connection = self._clients.get(client_id)
        return None if connection is None else connection.connection_stats()

    def get_connection(self, client_id: ClientId) -> Optional[ServerSideConnection]:
        """The connection of a client, or None if it is not connected."""
        return self._clients.get(client_id)

    def endpoint_stats(self) -> EndpointStats:
        """Statistics about this endpoint."""
        return self._stats

    # --- channels -----------------------------------------------------------------

    def open_channel(self, channel_type: ChannelKind) -> ChannelId:
        """Open a channel on every connection and return its id.

        The first channel opened while no default exists becomes the default.
        Raises MaxChannelsCountReachedError or an AsyncChannelError.
        """
        if not self._available_channel_ids:
            raise MaxChannelsCountReachedError()
        return self._open_channel_unchecked(channel_type)

    def _open_channel_unchecked(self, channel_type: ChannelKind) -> ChannelId:
        """Open a channel, assuming an id is available."""
        channel_id = min(self._available_channel_ids)
        self._available_channel_ids.discard(channel_id)
        try:
            self._create_endpoint_channel(channel_id, channel_type)
        except AsyncChannelError:
            self._available_channel_ids.add(channel_id)
            raise
        return channel_id

    def _create_endpoint_channel(
        self, channel_id: ChannelId, channel_type: ChannelKind
    ) -> None:
        created: Dict[ClientId, Channel] = {}
        try:
            for client_id, connection in self._clients.items():
                created[client_id] = connection.create_unregistered_connection_channel(
                    channel_id, channel_type
                )
        except AsyncChannelError:
            for channel in created.values():
                try:
                    channel.close()
                except ChannelCloseError:
                    pass
            raise
        # Changes are committed only once every channel has been created.
        for client_id, channel in created.items():
            self._clients[client_id].register_connection_channel(channel)
        self._opened_channels[channel_id] = channel_type
        if self._default_channel is None:
            self._default_channel = channel_id

    def close_channel(self, channel_id: ChannelId) -> None:
        """Close a channel on every connection once its queued messages are sent.

        Clears the default channel if it is the one closed.
        Raises InvalidChannelIdError if the channel is not open.
        """
        if channel_id not in self._opened_channels:
            raise InvalidChannelIdError(channel_id)
        del self._opened_channels[channel_id]
        if self._default_channel == channel_id:
            self._default_channel = None
        for connection in self._clients.values():
            connection.close_channel(channel_id)
        self._available_channel_ids.add(channel_id)

    def set_default_channel(self, channel_id: ChannelId) -> None:
        """Use ``channel_id`` as the default channel."""
        self._default_channel = channel_id

    def get_default_channel(self) -> Optional[ChannelId]:
        """The default channel id, if any."""
        return self._default_channel

    # --- connections ---------------------------------------------------------------

    def _close_incoming_connections_handler(self) -> None:
        """Stop accepting connections; raises if already stopped."""
        if self._close_sender.done():
            raise InternalChannelClosedError()
        self._close_sender.set_result(None)

    def handle_connection(self, connection: ServerSideConnection) -> ClientId:
        """Open every endpoint channel on a new connection and register it.

        Returns the id assigned to the client. On failure the connection is
        closed and an AsyncChannelError is raised.
        """
        try:
            for channel_id, channel_type in self._opened_channels.items():
                connection.create_connection_channel(channel_id, channel_type)
        except AsyncChannelError:
            connection.try_close()
            raise

        self._client_id_gen += 1
        client_id = self._client_id_gen
        try:
            connection.to_connection_send.put_nowait(ClientConnectedAck(client_id))
        except asyncio.QueueFull:
            connection.try_close()
            raise InternalChannelClosedError() from None
        self._clients[client_id] = connection
        return client_id