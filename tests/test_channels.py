import asyncio

import pytest

from quicnet.channels import (
    Channel,
    ChannelsConfiguration,
    OrderedReliable,
    Unreliable,
    UnorderedReliable,
    default_channel_kind,
)
from quicnet.errors import (
    ChannelAlreadyClosedError,
    ChannelConfigError,
    FullQueueError,
    InternalChannelClosedError,
    MaxChannelsCountReachedError,
)
from quicnet.protocol import DEFAULT_MAX_RELIABLE_FRAME_LEN, MAX_CHANNEL_COUNT


def _channel(capacity=4):
    return Channel(id=3, sender=asyncio.Queue(capacity), close_sender=asyncio.Queue(10))


def test_default_kind_is_ordered_reliable():
    assert default_channel_kind() == OrderedReliable(
        max_frame_size=DEFAULT_MAX_RELIABLE_FRAME_LEN
    )


def test_default_kind_frame_size_is_eight_mebibytes():
    assert default_channel_kind().max_frame_size == 8 * 1024 * 1024


def test_default_configuration_has_one_channel():
    assert ChannelsConfiguration.default().configs() == [default_channel_kind()]


def test_empty_configuration():
    assert ChannelsConfiguration().configs() == []


def test_add_assigns_sequential_ids():
    config = ChannelsConfiguration()
    ids = [
        config.add(OrderedReliable(8 * 1024 * 1024)),
        config.add(UnorderedReliable(10 * 1024)),
        config.add(OrderedReliable(10 * 1024)),
    ]
    assert ids == [0, 1, 2]
    assert config.configs()[1] == UnorderedReliable(10 * 1024)


def test_from_types_keeps_order():
    kinds = [Unreliable(), OrderedReliable(10), UnorderedReliable(20)]
    assert ChannelsConfiguration.from_types(kinds).configs() == kinds


def test_from_types_too_many():
    with pytest.raises(MaxChannelsCountReachedError):
        ChannelsConfiguration.from_types([Unreliable()] * (MAX_CHANNEL_COUNT + 1))
    with pytest.raises(ChannelConfigError):
        ChannelsConfiguration.from_types([Unreliable()] * (MAX_CHANNEL_COUNT + 1))


def test_add_returns_none_when_full():
    config = ChannelsConfiguration.from_types([Unreliable()] * MAX_CHANNEL_COUNT)
    assert config.add(Unreliable()) is None
    assert len(config.configs()) == MAX_CHANNEL_COUNT


def test_configs_is_a_copy():
    config = ChannelsConfiguration.default()
    config.configs().append(Unreliable())
    assert len(config.configs()) == 1


def test_send_payload_queues_bytes():
    channel = _channel()
    channel.send_payload(b"abc")
    assert channel.sender.get_nowait() == b"abc"


def test_send_payload_full_queue():
    channel = _channel(capacity=1)
    channel.send_payload(b"a")
    with pytest.raises(FullQueueError):
        channel.send_payload(b"b")


def test_close_signals_and_rejects_twice():
    channel = _channel()
    channel.close()
    assert channel.close_sender.qsize() == 1
    with pytest.raises(ChannelAlreadyClosedError):
        channel.close()


def test_send_after_close_fails():
    channel = _channel()
    channel.close()
    with pytest.raises(InternalChannelClosedError):
        channel.send_payload(b"late")