import asyncio
import socket

import msgpack
import pytest

from quicnet.certificate import CertificateFingerprint, GenerateSelfSigned, LoadFromFile
from quicnet.channels import ChannelAsyncMessage, ChannelsConfiguration
from quicnet.connection import (
    ClientConnected,
    ClientConnectedAck,
    ConnectionEvent,
    ConnectionLostEvent,
    ServerEndpointConfiguration,
)
from quicnet.errors import EndpointAlreadyClosed, EndpointStartError
from quicnet.protocol import (
    DEFAULT_MAX_RELIABLE_FRAME_LEN,
    ProtocolCodecDecoder,
    ProtocolCodecEncoder,
    decode_client_id,
    decode_incoming_reliable_message,
    encode_datagram,
)
from quicnet.server import (
    ListeningState,
    QuinnetServer,
    client_connection_task,
    server_listening,
)

SERVER_HOST = "::1"


class FakeSendStream:
    def __init__(self):
        self.data = bytearray()
        self.finished = False

    async def write(self, data):
        self.data += data

    def finish(self):
        self.finished = True


class FakeRecvStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    async def read(self):
        return self._chunks.pop(0) if self._chunks else b""


class FakeConnection:
    def __init__(self):
        self.uni_out = []
        self.bi_out = []
        self.incoming_uni = asyncio.Queue()
        self.incoming_datagrams = asyncio.Queue()
        self.datagrams = []
        self.closed_event = asyncio.Event()
        self.close_calls = []

    async def open_uni(self):
        stream = FakeSendStream()
        self.uni_out.append(stream)
        return stream

    async def open_bi(self):
        stream = FakeSendStream()
        self.bi_out.append(stream)
        return stream, FakeRecvStream([])

    async def accept_uni(self):
        item = await self.incoming_uni.get()
        if item is None:
            raise ConnectionError("closed")
        return item

    def send_datagram(self, data):
        self.datagrams.append(bytes(data))

    async def read_datagram(self):
        item = await self.incoming_datagrams.get()
        if item is None:
            raise ConnectionError("closed")
        return item

    def close(self, code, reason):
        self.close_calls.append((code, reason))
        self.closed_event.set()

    async def closed(self):
        await self.closed_event.wait()
        return "closed"

    def remote_address(self):
        return ("::1", 50000)

    def max_datagram_size(self):
        return 1200

    def stats(self):
        return {"lost_packets": 0}


async def settle(rounds=50):
    for _ in range(rounds):
        await asyncio.sleep(0)


def start_server():
    server = QuinnetServer()
    cert = server.start_endpoint(
        ServerEndpointConfiguration.from_ip("127.0.0.1", 0),
        GenerateSelfSigned(server_hostname=SERVER_HOST),
        ChannelsConfiguration.default(),
    )
    return server, cert


async def wait_for_client_connected(server):
    for _ in range(100):
        await settle(5)
        for event in server.update():
            if isinstance(event, ConnectionEvent):
                return event.id
    raise AssertionError("no client connected")


async def shutdown(server):
    if server.is_listening():
        server.stop_endpoint()
    await settle()


@pytest.mark.asyncio
async def test_connection_and_messages_both_ways():
    server, _ = start_server()
    assert server.is_listening()
    conn = FakeConnection()
    server.accept_connection(conn)

    client_id = await wait_for_client_connected(server)
    endpoint = server.endpoint()
    assert endpoint.clients() == [client_id]
    assert endpoint.endpoint_stats().connect_count == 1
    await settle()
    assert decode_client_id(bytes(conn.bi_out[0].data)) == client_id

    sent_client_message = ["TestMessage", "Test message content"]
    frame = ProtocolCodecEncoder(0, DEFAULT_MAX_RELIABLE_FRAME_LEN).encode(
        msgpack.packb(sent_client_message)
    )
    conn.incoming_uni.put_nowait(FakeRecvStream([frame]))
    await settle()
    assert endpoint.receive_message_from(client_id) == (0, sent_client_message)
    assert endpoint.endpoint_stats().received_messages_count == 1

    sent_server_message = ["TestMessage", "Server response"]
    endpoint.broadcast_message(sent_server_message)
    await settle()
    frames = ProtocolCodecDecoder().feed(bytes(conn.uni_out[0].data))
    assert len(frames) == 1
    channel_id, payload = decode_incoming_reliable_message(frames[0])
    assert channel_id == 0
    assert msgpack.unpackb(payload) == sent_server_message

    await shutdown(server)


@pytest.mark.asyncio
async def test_reconnection_assigns_new_client_id():
    server, _ = start_server()
    conn1 = FakeConnection()
    server.accept_connection(conn1)
    client_id_1 = await wait_for_client_connected(server)

    conn1.closed_event.set()
    await settle()
    events = server.update()
    assert events == [ConnectionLostEvent(client_id_1)]
    assert server.endpoint().clients() == []
    assert server.endpoint().endpoint_stats().disconnect_count == 1

    conn2 = FakeConnection()
    server.accept_connection(conn2)
    client_id_2 = await wait_for_client_connected(server)
    assert client_id_2 != client_id_1
    assert server.endpoint().endpoint_stats().connect_count == 2

    await shutdown(server)


@pytest.mark.asyncio
async def test_datagram_is_received():
    server, _ = start_server()
    conn = FakeConnection()
    server.accept_connection(conn)
    client_id = await wait_for_client_connected(server)

    conn.incoming_datagrams.put_nowait(encode_datagram(3, b"hello"))
    await settle()
    endpoint = server.endpoint()
    assert endpoint.receive_payload_from(client_id) == (3, b"hello")
    assert endpoint.get_connection(client_id).received_bytes_count() == 5

    await shutdown(server)


@pytest.mark.asyncio
async def test_lost_connection_from_channels_disconnects_client():
    server, _ = start_server()
    conn = FakeConnection()
    server.accept_connection(conn)
    client_id = await wait_for_client_connected(server)

    endpoint = server.endpoint()
    endpoint.get_connection(client_id).from_channels_recv.put_nowait(
        ChannelAsyncMessage.LOST_CONNECTION
    )
    endpoint.get_connection(client_id).from_channels_recv.put_nowait(
        ChannelAsyncMessage.LOST_CONNECTION
    )
    assert server.update() == [ConnectionLostEvent(client_id)]
    assert endpoint.clients() == []
    assert endpoint.endpoint_stats().disconnect_count == 0
    await settle()
    assert conn.close_calls == [(0, b"closed")]

    await shutdown(server)


@pytest.mark.asyncio
async def test_stop_endpoint_closes_connections():
    server, _ = start_server()
    conn = FakeConnection()
    server.accept_connection(conn)
    await wait_for_client_connected(server)

    server.stop_endpoint()
    assert not server.is_listening()
    assert server.get_endpoint() is None
    await settle()
    assert conn.close_calls == [(0, b"closed")]
    with pytest.raises(EndpointAlreadyClosed):
        server.stop_endpoint()


@pytest.mark.asyncio
async def test_endpoint_requires_started_server():
    server = QuinnetServer()
    assert server.get_endpoint() is None
    assert server.update() == []
    with pytest.raises(EndpointAlreadyClosed):
        server.endpoint()
    with pytest.raises(EndpointAlreadyClosed):
        server.accept_connection(FakeConnection())


@pytest.mark.asyncio
async def test_start_endpoint_returns_certificate_and_default_channel():
    server, cert = start_server()
    assert cert.fingerprint == CertificateFingerprint.from_der(cert.cert_chain[0])
    assert server.certificate is cert
    assert server.endpoint().get_default_channel() == 0
    assert server.local_addr[1] > 0
    await shutdown(server)


@pytest.mark.asyncio
async def test_start_endpoint_missing_certificate_files(tmp_path):
    server = QuinnetServer()
    with pytest.raises(EndpointStartError):
        server.start_endpoint(
            ServerEndpointConfiguration.from_ip("127.0.0.1", 0),
            LoadFromFile(str(tmp_path / "cert.pem"), str(tmp_path / "key.pem")),
            ChannelsConfiguration.default(),
        )
    assert not server.is_listening()


@pytest.mark.asyncio
async def test_start_endpoint_address_in_use():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    port = blocker.getsockname()[1]
    try:
        server = QuinnetServer()
        with pytest.raises(EndpointStartError):
            server.start_endpoint(
                ServerEndpointConfiguration.from_ip("127.0.0.1", port),
                GenerateSelfSigned(server_hostname=SERVER_HOST),
                ChannelsConfiguration.default(),
            )
        assert not server.is_listening()
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_client_connection_task_refused_when_closed():
    queue = asyncio.Queue()
    conn = FakeConnection()
    task = asyncio.ensure_future(client_connection_task(conn, queue))
    message = await queue.get()
    assert isinstance(message, ClientConnected)
    message.connection.close()
    assert await task is None
    assert conn.bi_out == []


@pytest.mark.asyncio
async def test_client_connection_task_accepted_sends_client_id():
    queue = asyncio.Queue()
    conn = FakeConnection()
    task = asyncio.ensure_future(client_connection_task(conn, queue))
    message = await queue.get()
    message.connection.to_connection_send.put_nowait(ClientConnectedAck(7))
    assert await task == 7
    await settle()
    assert decode_client_id(bytes(conn.bi_out[0].data)) == 7
    message.connection.close()
    await settle()
    assert conn.close_calls == [(0, b"closed")]


@pytest.mark.asyncio
async def test_server_listening_and_listening_state():
    assert server_listening(None) is False
    opened = ListeningState()
    closed = ListeningState()
    assert opened.just_opened(None) is False
    assert closed.just_closed(None) is False

    server, _ = start_server()
    assert server_listening(server) is True
    assert opened.just_opened(server) is True
    assert opened.just_opened(server) is False
    assert closed.just_closed(server) is False

    server.stop_endpoint()
    assert server_listening(server) is False
    assert closed.just_closed(server) is True
    assert closed.just_closed(server) is False
    assert opened.just_opened(server) is False
    await settle()