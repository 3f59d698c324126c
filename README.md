# quicnet

The server side of a client/server multiplayer game. It provides:

- a server endpoint that keeps track of connected clients,
- numbered channels, each with its own delivery guarantees,
- a length-prefixed wire protocol,
- asyncio tasks that move channel data over a connection,
- server certificate handling: self-signed generation and PEM files.

## Installation

```
pip install quicnet
```

To run the test suite:

```
pip install "quicnet[test]"
pytest
```

## What this package does not do

- **No QUIC transport.** `QuinnetServer.start_endpoint` binds a UDP socket for
  the configured address and obtains a certificate. It does not run a QUIC
  stack on that socket. A transport layer must accept the QUIC connections
  and pass each one to `QuinnetServer.accept_connection`.
- **No client.** The package does not open connections to a server. Client
  ids, channels and messages are handled only from the server's side.

## Concepts

- **Channels.** Every message travels on a channel with an id from 0 to 255.
  The kinds are in `quicnet.channels`:
  - `OrderedReliable(max_frame_size=...)`: every message arrives, in the
    order it was sent, on one stream.
  - `UnorderedReliable(max_frame_size=...)`: every message arrives, on its
    own stream, possibly out of order.
  - `Unreliable()`: datagrams that may be lost or reordered.

  `max_frame_size` defaults to 8 MiB (`DEFAULT_MAX_RELIABLE_FRAME_LEN`).
  `default_channel_kind()` returns an `OrderedReliable` with that size.
- **Configuration.** `ChannelsConfiguration` lists the channels to open when
  an endpoint starts. They get ids 0, 1, 2, … in list order.
  - `ChannelsConfiguration.default()` holds a single ordered reliable channel.
  - `ChannelsConfiguration.from_types([...])` keeps the order of the list.
  - `add(kind)` returns the new id, or `None` once 256 channels are
    configured.
  - A configuration with more than 256 channels raises
    `MaxChannelsCountReachedError`.
- **Default channel.** The first channel opened becomes the default channel.
  Methods without an `_on` suffix send on it. After the default channel is
  closed, these methods raise `NoDefaultChannelError` until
  `set_default_channel` is called.
- **Messages and payloads.** A *payload* is raw `bytes`. A *message* is any
  value that msgpack can serialise.
  - A message that cannot be serialised raises `SerializationError`.
  - A payload that cannot be deserialised raises `DeserializationError`.
- **Errors.** The endpoint, channels and certificates raise subclasses of
  `quicnet.errors.QuinnetError`. The one exception is an invalid address or
  port, which raises `ValueError`. Every send, receive, broadcast and
  disconnect method has a `try_` counterpart that logs the error instead of
  raising it.

## Server

```python
from quicnet.server import QuinnetServer
from quicnet.connection import ServerEndpointConfiguration
from quicnet.certificate import GenerateSelfSigned
from quicnet.channels import ChannelsConfiguration

server = QuinnetServer()
cert = server.start_endpoint(
    ServerEndpointConfiguration.from_string("0.0.0.0:6000"),
    GenerateSelfSigned(server_hostname="localhost"),
    ChannelsConfiguration.default(),
)
print("certificate fingerprint:", cert.fingerprint.to_base64())

# Once per tick:
for event in server.update():
    print(event)

endpoint = server.endpoint()
for client_id in endpoint.clients():
    while (received := endpoint.try_receive_message_from(client_id)) is not None:
        channel_id, message = received
        endpoint.send_message(client_id, {"echo": message})

endpoint.broadcast_message("hello everyone")
server.stop_endpoint()
```

### Configuring the address

`ServerEndpointConfiguration` sets the address the endpoint binds to. It can
be built in three ways:

- `from_string("a.b.c.d:port")` or `from_string("[v6]:port")`,
- `from_ip(ip, port)`,
- `from_addr((host, port))`.

### Accepting connections

`accept_connection(connection)` schedules `client_connection_task` on the
server's event loop and returns the task. The connection must offer:

- `open_uni()`, `open_bi()`, `accept_uni()`, `read_datagram()`,
  `send_datagram(data)` and `close(code, reason)`, as described in
  `quicnet.tasks`,
- `closed()`, `remote_address()`, `max_datagram_size()` and `stats()`.

`QuinnetServer(loop=...)` chooses the event loop. Without one, the server
uses the loop that is running when the endpoint starts, or creates a new
loop if none is running.

### Events

`update()` applies what the connection tasks reported since the previous
call. It returns a list of events:

- `ConnectionEvent(id)` for each new client,
- `ConnectionLostEvent(id)` for each client whose connection closed or was
  lost.

`endpoint()` returns the open endpoint and raises `EndpointAlreadyClosed` if
there is none. `get_endpoint()` returns `None` instead.

`server_listening(server)` tells whether an endpoint is open. A
`ListeningState` records the state between checks and detects changes with
`just_opened(server)` and `just_closed(server)`.

### Channels at runtime

```python
from quicnet.channels import Unreliable

channel_id = endpoint.open_channel(Unreliable())
endpoint.send_payload_on(client_id, channel_id, b"\x01\x02")
endpoint.close_channel(channel_id)
```

An endpoint hands out channel ids 0 to 254, always the lowest free one. When
all are in use, `open_channel` raises `MaxChannelsCountReachedError`.

When a channel is closed, no new messages can be queued on it. Messages
already queued are still sent.

### Group sends

The group sends are `send_group_message`, `send_group_payload`,
`broadcast_message`, `broadcast_payload` and their `_on` variants. Each one
tries every recipient before it returns. If any recipient fails, it raises
`ServerGroupSendError`, whose `errors` attribute lists
`(client_id, error)` pairs.

### Disconnecting

- `disconnect_client(client_id)` removes a client and asks its connection to
  flush its channels and close.
- `disconnect_all_clients()` does the same for every client.

### Statistics

- `endpoint.endpoint_stats()` returns an `EndpointStats` with
  `received_messages_count`, `connect_count` and `disconnect_count`.
- `endpoint.get_connection(client_id)` returns the client's
  `ServerSideConnection`. It counts the bytes sent and received on that
  connection. `clear_sent_bytes_count()` and `clear_received_bytes_count()`
  return the count and reset it to zero.

## Certificates

`quicnet.certificate` offers three retrieval modes for `start_endpoint`:

- `GenerateSelfSigned(server_hostname=...)` creates a new self-signed ECDSA
  P-256 certificate on every start.
- `LoadFromFile(cert_file=..., key_file=...)` loads a PEM certificate chain
  and a PEM private key.
- `LoadFromFileOrGenerateSelfSigned(cert_file=..., key_file=...,
  save_on_disk=..., server_hostname=...)` loads the files if both exist.
  Otherwise it generates a certificate. If `save_on_disk` is set, it also
  writes the certificate and key to those paths and creates any missing
  directories.

If a mode fails, it raises `EndpointCertificateError`, and `start_endpoint`
raises `EndpointStartError`.

`ServerCertificate` holds:

- the DER certificate chain,
- the PKCS#8 DER private key,
- a `CertificateFingerprint`: the SHA-256 of the first certificate.
  `to_base64()` and `str()` give the fingerprint in base64.

## Wire format

`quicnet.protocol` implements the framing:

- **Reliable frames** are a 4-byte big-endian length, a 1-byte channel id,
  then the payload. The length counts the channel id and the payload.
  - `ProtocolCodecEncoder(channel_id, max_frame_len).encode(payload)` writes
    a frame.
  - `ProtocolCodecDecoder(max_frame_len).feed(data)` takes bytes
    incrementally and returns the frames completed so far.
  - `decode_incoming_reliable_message` splits a decoded frame into its
    channel id and payload.
  - A frame larger than the limit raises `FrameSizeError`.
- **Datagrams** are a 1-byte channel id followed by the payload
  (`encode_datagram`, `decode_datagram`). `decode_datagram` returns `None`
  for a datagram with no payload.
- **The client id** is sent as a 4-byte big-endian length (8), followed by
  the id as an 8-byte big-endian integer (`encode_client_id`,
  `decode_client_id`).