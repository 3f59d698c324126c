"""Background tasks that move channel data over a QUIC connection.

The tasks only rely on a small connection interface:

* ``await connection.open_uni()`` returns a send stream,
* ``await connection.open_bi()`` returns a ``(send_stream, recv_stream)`` pair,
* ``await connection.accept_uni()`` returns a receive stream and raises
  :class:`ConnectionError` once the connection is gone,
* ``connection.send_datagram(data)`` raises :class:`ConnectionError` when the
  connection is lost and :class:`ValueError` or :class:`OSError` when the
  datagram cannot be sent for another reason (too large, unsupported, ...),
* ``await connection.read_datagram()`` returns the next datagram and raises
  :class:`ConnectionError` once the connection is gone,
* ``connection.close(code, reason)`` closes the connection.

A send stream offers ``await write(data)`` and ``finish()``; a receive stream
offers ``await read()``, which returns ``b""`` at the end of the stream.

A close signal (``close_recv``) is an :class:`asyncio.Future` whose result is
a :class:`~quicnet.channels.CloseReason`; any number of tasks may watch it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Iterator, Optional, Set

from .channels import (
    ChannelAsyncMessage,
    CloseReason,
    CreateChannel,
    OrderedReliable,
    UnorderedReliable,
    Unreliable,
)
from .errors import FrameSizeError
from .protocol import (
    DEFAULT_MAX_RELIABLE_FRAME_LEN,
    ChannelId,
    ClientId,
    ProtocolCodecDecoder,
    ProtocolCodecEncoder,
    decode_datagram,
    decode_incoming_reliable_message,
    encode_client_id,
    encode_datagram,
)

logger = logging.getLogger(__name__)

_STREAM_ERRORS = (OSError, FrameSizeError)
_DATAGRAM_ERRORS = (ValueError, OSError)

# Detached tasks must be referenced somewhere or they may be collected.
_detached: Set[asyncio.Task] = set()


@dataclass
class SendChannelTask:
    """Everything a sending channel task needs to run."""

    connection: Any
    id: ChannelId
    channels_keepalive: Set[asyncio.Task]
    from_channels_send: asyncio.Queue
    close_recv: asyncio.Future
    channel_close_recv: asyncio.Queue
    bytes_recv: asyncio.Queue


def _track(tasks: Set[asyncio.Task], coro: Awaitable[Any]) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


def _close_reason(close_recv: asyncio.Future) -> CloseReason:
    if close_recv.cancelled() or close_recv.exception() is not None:
        return CloseReason.LOCAL_ORDER
    reason = close_recv.result()
    return reason if isinstance(reason, CloseReason) else CloseReason.LOCAL_ORDER


async def _race(
    work: Awaitable[Any],
    close_recv: asyncio.Future,
    channel_close_recv: Optional[asyncio.Queue] = None,
    label: str = "task",
) -> CloseReason:
    """Run ``work`` until it ends or a close signal arrives.

    Returns the reason for stopping; anything but a connection-wide close
    counts as a local order.
    """
    if close_recv.done():
        if asyncio.iscoroutine(work):
            work.close()
        logger.debug("%s received a close signal", label)
        return _close_reason(close_recv)

    work_task = asyncio.ensure_future(work)
    channel_wait = (
        asyncio.ensure_future(channel_close_recv.get())
        if channel_close_recv is not None
        else None
    )
    waiters = {work_task, close_recv}
    if channel_wait is not None:
        waiters.add(channel_wait)
    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        leftovers = [t for t in (work_task, channel_wait) if t is not None and not t.done()]
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)

    if close_recv in done:
        logger.debug("%s received a close signal", label)
        return _close_reason(close_recv)
    if channel_wait is not None and channel_wait in done:
        logger.debug("%s received a channel close signal", label)
        return CloseReason.LOCAL_ORDER
    work_task.result()
    logger.debug("%s ended", label)
    return CloseReason.LOCAL_ORDER


def _drain(queue: asyncio.Queue) -> Iterator[Any]:
    while True:
        try:
            yield queue.get_nowait()
        except asyncio.QueueEmpty:
            return


def _finish(stream: Any, label: str) -> None:
    try:
        stream.finish()
    except _STREAM_ERRORS as err:
        logger.warning("Failed to shutdown %s stream gracefully: %s", label, err)


async def ordered_reliable_channel_task(
    channel_task: SendChannelTask, max_frame_len: int
) -> None:
    """Send every payload of the channel, in order, on a single stream."""
    label = "Ordered Reliable Channel"
    stream = await channel_task.connection.open_uni()
    encoder = ProtocolCodecEncoder(channel_task.id, max_frame_len)

    async def pump() -> None:
        while True:
            payload = await channel_task.bytes_recv.get()
            try:
                await stream.write(encoder.encode(payload))
            except _STREAM_ERRORS as err:
                logger.error("Error while sending on %s, %s", label, err)
                await channel_task.from_channels_send.put(
                    ChannelAsyncMessage.LOST_CONNECTION
                )

    reason = await _race(
        pump(), channel_task.close_recv, channel_task.channel_close_recv, label
    )
    # Flushing is pointless when the peer is known to be gone.
    if reason is CloseReason.PEER_CLOSED:
        return
    for payload in _drain(channel_task.bytes_recv):
        try:
            await stream.write(encoder.encode(payload))
        except _STREAM_ERRORS as err:
            logger.warning("Failed to send a remaining message on %s, %s", label, err)
    _finish(stream, label)


async def _send_on_new_stream(
    channel_task: SendChannelTask, max_frame_len: int, payload: bytes, flushing: bool
) -> None:
    label = "Unordered Reliable Channel"
    stream = await channel_task.connection.open_uni()
    encoder = ProtocolCodecEncoder(channel_task.id, max_frame_len)
    try:
        await stream.write(encoder.encode(payload))
    except _STREAM_ERRORS as err:
        if flushing:
            logger.warning("Failed to send a remaining message on %s, %s", label, err)
        else:
            logger.error("Error while sending on %s, %s", label, err)
            await channel_task.from_channels_send.put(
                ChannelAsyncMessage.LOST_CONNECTION
            )
    _finish(stream, label)


async def unordered_reliable_channel_task(
    channel_task: SendChannelTask, max_frame_len: int
) -> None:
    """Send each payload of the channel on its own stream."""
    label = "Unordered Reliable Channel"

    async def pump() -> None:
        while True:
            payload = await channel_task.bytes_recv.get()
            _track(
                channel_task.channels_keepalive,
                _send_on_new_stream(channel_task, max_frame_len, payload, False),
            )

    reason = await _race(
        pump(), channel_task.close_recv, channel_task.channel_close_recv, label
    )
    if reason is CloseReason.PEER_CLOSED:
        return
    for payload in _drain(channel_task.bytes_recv):
        _track(
            channel_task.channels_keepalive,
            _send_on_new_stream(channel_task, max_frame_len, payload, True),
        )


async def unreliable_channel_task(task: SendChannelTask) -> None:
    """Send each payload of the channel as a datagram."""
    label = "Unreliable Channel"

    async def pump() -> None:
        while True:
            payload = await task.bytes_recv.get()
            try:
                task.connection.send_datagram(encode_datagram(task.id, payload))
            except ConnectionError as err:
                logger.error("Error while sending message on %s, %s", label, err)
                await task.from_channels_send.put(ChannelAsyncMessage.LOST_CONNECTION)
            except _DATAGRAM_ERRORS as err:
                logger.error("Error while sending message on %s, %s", label, err)

    reason = await _race(pump(), task.close_recv, task.channel_close_recv, label)
    if reason is CloseReason.PEER_CLOSED:
        return
    for payload in _drain(task.bytes_recv):
        try:
            task.connection.send_datagram(encode_datagram(task.id, payload))
        except _DATAGRAM_ERRORS as err:
            logger.warning("Failed to send a remaining message on %s, %s", label, err)


async def send_channels_tasks_spawner(
    connection: Any,
    close_recv: asyncio.Future,
    to_channels_recv: asyncio.Queue,
    from_channels_send: asyncio.Queue,
) -> None:
    """Start a sending task for every channel creation request.

    Once a close signal arrives, waits for every channel to flush and then
    closes the connection.
    """
    tasks: Set[asyncio.Task] = set()

    async def listen() -> None:
        while True:
            request: CreateChannel = await to_channels_recv.get()
            channel_task = SendChannelTask(
                connection=connection,
                id=request.id,
                channels_keepalive=tasks,
                from_channels_send=from_channels_send,
                close_recv=close_recv,
                channel_close_recv=request.channel_close_recv,
                bytes_recv=request.bytes_to_channel_recv,
            )
            kind = request.kind
            if isinstance(kind, OrderedReliable):
                coro = ordered_reliable_channel_task(channel_task, kind.max_frame_size)
            elif isinstance(kind, UnorderedReliable):
                coro = unordered_reliable_channel_task(channel_task, kind.max_frame_size)
            elif isinstance(kind, Unreliable):
                coro = unreliable_channel_task(channel_task)
            else:
                raise TypeError(f"unsupported channel kind: {kind!r}")
            _track(tasks, coro)

    await _race(listen(), close_recv, label="Connection Channels listener")

    while tasks:
        await asyncio.gather(*list(tasks), return_exceptions=True)

    connection.close(0, b"closed")


async def _reliable_stream_receiver_task(
    recv: Any, close_recv: asyncio.Future, bytes_incoming_send: asyncio.Queue
) -> None:
    async def read_frames() -> None:
        decoder = ProtocolCodecDecoder(DEFAULT_MAX_RELIABLE_FRAME_LEN)
        while True:
            try:
                data = await recv.read()
            except OSError:
                return
            if not data:
                return
            try:
                frames = decoder.feed(data)
            except FrameSizeError:
                return
            for frame in frames:
                await bytes_incoming_send.put(decode_incoming_reliable_message(frame))

    await _race(read_frames(), close_recv, label="Reliable stream receiver")


async def reliable_channels_receiver_task(
    task_id: Any,
    connection: Any,
    close_recv: asyncio.Future,
    bytes_incoming_send: asyncio.Queue,
) -> None:
    """Accept incoming streams and forward their ``(channel id, payload)`` pairs."""

    async def accept() -> None:
        while True:
            try:
                recv = await connection.accept_uni()
            except OSError:
                return
            _track(
                _detached,
                _reliable_stream_receiver_task(recv, close_recv, bytes_incoming_send),
            )

    await _race(
        accept(),
        close_recv,
        label=f"Listener for new Unidirectional Receiving Streams with id {task_id}",
    )


async def unreliable_channel_receiver_task(
    task_id: Any,
    connection: Any,
    close_recv: asyncio.Future,
    bytes_incoming_send: asyncio.Queue,
) -> None:
    """Forward incoming datagrams as ``(channel id, payload)`` pairs."""

    async def receive() -> None:
        while True:
            try:
                datagram = await connection.read_datagram()
            except OSError:
                return
            decoded = decode_datagram(datagram)
            if decoded is not None:
                await bytes_incoming_send.put(decoded)

    await _race(
        receive(),
        close_recv,
        label=f"Listener for unreliable datagrams with id {task_id}",
    )


async def client_id_sender(
    connection: Any, client_id: ClientId, from_channels_send: asyncio.Queue
) -> None:
    """Announce ``client_id`` to the client on a new bidirectional stream."""
    stream, _ = await connection.open_bi()
    try:
        await stream.write(encode_client_id(client_id))
    except OSError as err:
        logger.error(
            "Error while sending client Id %s on Quinnet Protocol Channel, %s",
            client_id,
            err,
        )
        await from_channels_send.put(ChannelAsyncMessage.LOST_CONNECTION)
        return
    try:
        stream.finish()
    except OSError:
        pass