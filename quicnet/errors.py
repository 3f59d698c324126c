"""Exception hierarchy for channels, endpoints and certificates.

Variants that one error type converts into another (for instance, an
asynchronous channel failure surfacing while sending to a client) are
modelled as subclasses, so callers can catch the broadest error they
care about.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple


class QuinnetError(Exception):
    """Base class of every error raised by this package."""

    default_message = "Quinnet error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(self.default_message if message is None else message)


# --- Errors raised while sending, by increasing specificity -----------------


class ServerPayloadSendError(QuinnetError):
    """Error while sending a payload on the server."""

    default_message = "Error when sending data"


class ServerMessageSendError(QuinnetError):
    """Error while sending a message that must be serialized first."""

    default_message = "Error when sending data"


class ServerGroupPayloadSendError(QuinnetError):
    """Error while sending a payload to a group of clients."""

    default_message = "Error while sending data to a group of clients"


class ServerGroupMessageSendError(QuinnetError):
    """Error while sending a message to a group of clients."""

    default_message = "Error while sending data to a group of clients"


class ServerSendError(ServerPayloadSendError, ServerMessageSendError):
    """Error when sending data to one client."""

    default_message = "Error when sending data"


class ChannelCreationError(QuinnetError):
    """Error while creating a channel."""

    default_message = "Quinnet async channel error"


class EndpointStartError(QuinnetError):
    """Error while starting an endpoint."""

    default_message = "Endpoint start error"


class AsyncChannelError(ServerSendError, ChannelCreationError, EndpointStartError):
    """Internal error in the communication between sync and async sides."""

    default_message = "Quinnet async channel error"


class FullQueueError(AsyncChannelError):
    """The internal queue is full and sending would require blocking."""

    default_message = (
        "The data could not be sent on the channel because the channel is "
        "currently full and sending would require blocking"
    )


class InternalChannelClosedError(AsyncChannelError):
    """The receiving half of an internal queue was closed or dropped."""

    default_message = (
        "The receiving half of the internal channel was explicitly closed "
        "or has been dropped"
    )


# --- Channel management -----------------------------------------------------


class ChannelCloseError(QuinnetError):
    """Error while closing a channel."""

    default_message = "Channel close error"


class ChannelAlreadyClosedError(ChannelCloseError):
    """The channel was closed already."""

    default_message = "Channel is closed already"


class InvalidChannelIdError(ChannelCloseError, ServerSendError):
    """A channel id does not designate a known channel."""

    def __init__(self, channel_id: int) -> None:
        self.channel_id = channel_id
        super().__init__(f"Channel with id `{channel_id}` is invalid")


class ChannelConfigError(QuinnetError):
    """Error while configuring channels."""

    default_message = "The maximum number of configured channels has been reached"


class MaxChannelsCountReachedError(ChannelCreationError, ChannelConfigError):
    """Too many channels are opened or configured."""

    default_message = (
        "The maximum number of simultaneously opened channels has been reached"
    )


class ChannelClosedError(ServerSendError):
    """The channel used for sending is closed."""

    default_message = "Channel is closed"


# --- Default channel and serialization --------------------------------------


class NoDefaultChannelError(
    ServerPayloadSendError,
    ServerMessageSendError,
    ServerGroupPayloadSendError,
    ServerGroupMessageSendError,
):
    """No default channel is set."""

    default_message = "There is no default channel"


class SerializationError(ServerMessageSendError, ServerGroupMessageSendError):
    """A message could not be serialized."""

    default_message = "Failed serialization"


class ServerGroupSendError(ServerGroupPayloadSendError, ServerGroupMessageSendError):
    """Sending failed for at least one client of a group."""

    default_message = "Error while sending to multiple recipients"

    def __init__(self, errors: Sequence[Tuple[int, ServerSendError]] = ()) -> None:
        self.errors = list(errors)
        super().__init__()


# --- Receiving ---------------------------------------------------------------


class ServerMessageReceiveError(QuinnetError):
    """Error while receiving a message that must be deserialized."""

    default_message = "Error while receiving data"


class DeserializationError(ServerMessageReceiveError):
    """A received payload could not be deserialized."""

    default_message = "Failed deserialization"


class ServerReceiveError(ServerMessageReceiveError):
    """Error while receiving data on the server."""

    default_message = "Error while receiving data"


class ConnectionClosedError(ServerReceiveError):
    """The connection is closed."""

    default_message = "The connection is closed"


# --- Disconnection -----------------------------------------------------------


class ServerDisconnectError(QuinnetError):
    """Error while disconnecting a client."""

    default_message = "Error while disconnecting a client"


class UnknownClientError(ServerSendError, ServerReceiveError, ServerDisconnectError):
    """A client id is unknown."""

    def __init__(self, client_id: int) -> None:
        self.client_id = client_id
        super().__init__(f"Client with id `{client_id}` is unknown")


class ClientAlreadyDisconnectedError(ServerDisconnectError):
    """The client is already disconnected."""

    def __init__(self, client_id: int) -> None:
        self.client_id = client_id
        super().__init__(f"Client with id `{client_id}` is already disconnected")


# --- Endpoint ----------------------------------------------------------------


class EndpointAlreadyClosed(QuinnetError):
    """The endpoint is already closed."""

    default_message = "Endpoint is already closed"


class EndpointCertificateError(EndpointStartError):
    """Error while retrieving the server certificate."""

    default_message = "Certificate error"


class EndpointConnectionAlreadyClosed(QuinnetError):
    """The connection of an endpoint is already closed."""

    default_message = "Endpoint connection is already closed"


class FrameSizeError(QuinnetError, ValueError):
    """A frame is larger than the allowed maximum."""

    default_message = "frame size too big"