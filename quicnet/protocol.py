"""Wire format shared by the reliable, unreliable and client-id streams.

Reliable frames are laid out as ``LENGTH (4 bytes, big endian) | CHANNEL ID
(1 byte) | PAYLOAD`` where the length counts the channel id and the payload.
Datagrams are ``CHANNEL ID | PAYLOAD``.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from .errors import FrameSizeError

ClientId = int
ChannelId = int

DEFAULT_MESSAGE_QUEUE_SIZE = 150
DEFAULT_KEEP_ALIVE_INTERVAL_S = 4.0
DEFAULT_INTERNAL_MESSAGES_CHANNEL_SIZE = 100
MAX_CHANNEL_COUNT = 256
DEFAULT_QCHANNEL_MESSAGES_CHANNEL_SIZE = 2 * MAX_CHANNEL_COUNT
DEFAULT_KILL_MESSAGE_QUEUE_SIZE = 10

CLIENT_ID_LEN = 8
CHANNEL_ID_LEN = 1
PROTOCOL_HEADER_LEN = CHANNEL_ID_LEN

DEFAULT_MAX_RELIABLE_FRAME_LEN = 8 * 1024 * 1024
RELIABLE_FRAME_LENGTH_FIELD_LEN = 4
RELIABLE_FRAME_TOTAL_HEADER_LEN = RELIABLE_FRAME_LENGTH_FIELD_LEN + PROTOCOL_HEADER_LEN

_LENGTH_DELIMITER_LEN = 4


def _check_channel_id(channel_id: int) -> None:
    if not 0 <= channel_id < MAX_CHANNEL_COUNT:
        raise ValueError(f"channel id {channel_id} out of range")


class ProtocolCodecEncoder:
    """Encodes payloads into reliable frames for one channel."""

    def __init__(self, raw_channel_id: int, max_frame_len: int) -> None:
        _check_channel_id(raw_channel_id)
        self.raw_channel_id = raw_channel_id
        self.max_frame_len = max_frame_len

    def encode(self, frame: bytes) -> bytes:
        """Return the framed bytes for ``frame``.

        Raises FrameSizeError if the payload exceeds the maximum frame length.
        """
        if len(frame) > self.max_frame_len:
            raise FrameSizeError()
        header = (PROTOCOL_HEADER_LEN + len(frame)).to_bytes(
            RELIABLE_FRAME_LENGTH_FIELD_LEN, "big"
        )
        return header + bytes((self.raw_channel_id,)) + bytes(frame)


class ProtocolCodecDecoder:
    """Incremental decoder of reliable frames.

    Each decoded frame still starts with its channel id byte.
    """

    def __init__(self, max_frame_len: int = DEFAULT_MAX_RELIABLE_FRAME_LEN) -> None:
        self.max_frame_len = max_frame_len
        self._buffer = bytearray()
        self._pending: Optional[int] = None

    def feed(self, data: bytes) -> List[bytes]:
        """Add received bytes and return every frame now complete.

        Raises FrameSizeError if an announced frame is larger than allowed.
        """
        buffer = self._buffer
        buffer.extend(data)
        frames: List[bytes] = []
        while True:
            if self._pending is None:
                if len(buffer) < RELIABLE_FRAME_TOTAL_HEADER_LEN:
                    break
                length = int.from_bytes(
                    buffer[:RELIABLE_FRAME_LENGTH_FIELD_LEN], "big"
                )
                if length > self.max_frame_len:
                    raise FrameSizeError()
                del buffer[:RELIABLE_FRAME_LENGTH_FIELD_LEN]
                self._pending = length
            if len(buffer) < self._pending:
                break
            frames.append(bytes(buffer[: self._pending]))
            del buffer[: self._pending]
            self._pending = None
        return frames


def decode_incoming_reliable_message(msg_bytes: bytes) -> Tuple[ChannelId, bytes]:
    """Split a decoded reliable frame into its channel id and payload."""
    if len(msg_bytes) < CHANNEL_ID_LEN:
        raise ValueError("reliable message is missing its channel id")
    return msg_bytes[0], bytes(msg_bytes[CHANNEL_ID_LEN:])


def encode_datagram(channel_id: ChannelId, payload: bytes) -> bytes:
    """Prefix ``payload`` with its channel id for unreliable sending."""
    _check_channel_id(channel_id)
    return bytes((channel_id,)) + bytes(payload)


def decode_datagram(datagram: bytes) -> Optional[Tuple[ChannelId, bytes]]:
    """Split a datagram into channel id and payload.

    Datagrams carrying no payload are ignored and yield None.
    """
    if len(datagram) <= CHANNEL_ID_LEN:
        return None
    return datagram[0], bytes(datagram[CHANNEL_ID_LEN:])


def encode_client_id(client_id: ClientId) -> bytes:
    """Return the length-delimited frame announcing ``client_id`` to a client."""
    if not 0 <= client_id < 1 << (8 * CLIENT_ID_LEN):
        raise ValueError(f"client id {client_id} out of range")
    body = client_id.to_bytes(CLIENT_ID_LEN, "big")
    return len(body).to_bytes(_LENGTH_DELIMITER_LEN, "big") + body


def decode_client_id(data: bytes) -> ClientId:
    """Parse a frame produced by :func:`encode_client_id`."""
    if len(data) != _LENGTH_DELIMITER_LEN + CLIENT_ID_LEN:
        raise ValueError("client id frame has the wrong size")
    declared = int.from_bytes(data[:_LENGTH_DELIMITER_LEN], "big")
    if declared != CLIENT_ID_LEN:
        raise ValueError("client id frame declares the wrong length")
    return int.from_bytes(data[_LENGTH_DELIMITER_LEN:], "big")