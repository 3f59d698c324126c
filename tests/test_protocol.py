import pytest

from quicnet import protocol
from quicnet.errors import FrameSizeError


def test_encode_pinned_bytes():
    encoder = protocol.ProtocolCodecEncoder(3, 16)
    assert encoder.encode(b"abc") == b"\x00\x00\x00\x04\x03abc"


def test_encode_header_length_invariant():
    encoder = protocol.ProtocolCodecEncoder(1, 100)
    payload = b"x" * 37
    framed = encoder.encode(payload)
    assert len(framed) == protocol.RELIABLE_FRAME_TOTAL_HEADER_LEN + len(payload)
    assert int.from_bytes(framed[:4], "big") == len(payload) + 1


def test_encode_rejects_oversized_frame():
    encoder = protocol.ProtocolCodecEncoder(0, 4)
    assert encoder.encode(b"abcd").endswith(b"abcd")
    with pytest.raises(FrameSizeError):
        encoder.encode(b"abcde")


def test_encoder_rejects_bad_channel_id():
    with pytest.raises(ValueError):
        protocol.ProtocolCodecEncoder(256, 10)


def test_round_trip_through_decoder():
    encoder = protocol.ProtocolCodecEncoder(9, 1024)
    decoder = protocol.ProtocolCodecDecoder(1024)
    frames = decoder.feed(encoder.encode(b"hello"))
    assert [protocol.decode_incoming_reliable_message(f) for f in frames] == [
        (9, b"hello")
    ]


def test_decoder_byte_by_byte():
    encoder = protocol.ProtocolCodecEncoder(2, 1024)
    data = encoder.encode(b"payload") + encoder.encode(b"second")
    decoder = protocol.ProtocolCodecDecoder(1024)
    frames = []
    for byte in data:
        frames.extend(decoder.feed(bytes((byte,))))
    assert [protocol.decode_incoming_reliable_message(f) for f in frames] == [
        (2, b"payload"),
        (2, b"second"),
    ]


def test_decoder_many_frames_in_one_chunk():
    encoder = protocol.ProtocolCodecEncoder(5, 1024)
    payloads = [b"a", b"bb", b"", b"dddd"]
    decoder = protocol.ProtocolCodecDecoder(1024)
    frames = decoder.feed(b"".join(encoder.encode(p) for p in payloads))
    assert [protocol.decode_incoming_reliable_message(f)[1] for f in frames] == payloads


def test_decoder_needs_full_header_before_reading_length():
    decoder = protocol.ProtocolCodecDecoder(1024)
    assert decoder.feed(b"\x00\x00\x00\x01") == []
    assert decoder.feed(b"\x07") == [b"\x07"]


def test_decoder_rejects_oversized_length():
    decoder = protocol.ProtocolCodecDecoder(4)
    encoder = protocol.ProtocolCodecEncoder(0, 4)
    with pytest.raises(FrameSizeError):
        decoder.feed(encoder.encode(b"abcd"))


def test_decode_incoming_empty_message_raises():
    with pytest.raises(ValueError):
        protocol.decode_incoming_reliable_message(b"")


def test_datagram_round_trip():
    datagram = protocol.encode_datagram(12, b"data")
    assert datagram[0] == 12
    assert protocol.decode_datagram(datagram) == (12, b"data")


def test_datagram_without_payload_is_ignored():
    assert protocol.decode_datagram(b"\x01") is None
    assert protocol.decode_datagram(b"") is None


def test_client_id_round_trip():
    for client_id in (0, 1, 123456789, (1 << 64) - 1):
        frame = protocol.encode_client_id(client_id)
        assert len(frame) == 4 + protocol.CLIENT_ID_LEN
        assert protocol.decode_client_id(frame) == client_id


def test_client_id_out_of_range():
    with pytest.raises(ValueError):
        protocol.encode_client_id(1 << 64)
    with pytest.raises(ValueError):
        protocol.encode_client_id(-1)


def test_decode_client_id_rejects_malformed_frames():
    frame = protocol.encode_client_id(5)
    with pytest.raises(ValueError):
        protocol.decode_client_id(frame[:-1])
    with pytest.raises(ValueError):
        protocol.decode_client_id(b"\x00\x00\x00\x07" + frame[4:])