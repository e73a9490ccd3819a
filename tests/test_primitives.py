from __future__ import annotations

import asyncio

import pytest

from aiomqttlive import (
    CancellableSleep,
    ConnectionState,
    ConnectionStatus,
    ConnectMessage,
    ConnectReturnCode,
    EventBus,
    MessageBuffer,
    MqttMessage,
    MqttStats,
    MqttWsConnection,
    NoConnectionError,
    Timer,
)


@pytest.mark.asyncio
async def test_timer_fires_once():
    calls = []
    timer = Timer(10, lambda: calls.append(True))
    assert timer.is_active

    await asyncio.sleep(0.05)

    assert calls == [True]
    assert timer.fired
    assert not timer.is_active
    timer.cancel()
    assert not timer.cancelled


@pytest.mark.asyncio
async def test_timer_cancel_prevents_callback():
    calls = []
    timer = Timer(10, lambda: calls.append(True))
    timer.cancel()
    timer.cancel()

    await asyncio.sleep(0.05)

    assert calls == []
    assert timer.cancelled
    assert not timer.is_active


@pytest.mark.asyncio
async def test_cancellable_sleep_completes():
    sleeper = CancellableSleep(10)
    assert await sleeper.sleep() is True
    assert not sleeper.is_running


@pytest.mark.asyncio
async def test_cancellable_sleep_cancelled_returns_promptly():
    sleeper = CancellableSleep(10_000)
    asyncio.get_running_loop().call_later(0.01, sleeper.cancel)

    completed = await asyncio.wait_for(sleeper.sleep(), timeout=2)

    assert completed is False
    assert not sleeper.is_running


@pytest.mark.asyncio
async def test_cancellable_sleep_cancel_when_idle_is_noop():
    sleeper = CancellableSleep(10)
    sleeper.cancel()
    assert await sleeper.sleep() is True


@pytest.mark.asyncio
async def test_event_bus_fire_on_off():
    bus = EventBus()
    calls = []

    def handler(*args):
        calls.append(args)

    bus.on("x", handler)
    bus.fire("x", 1, 2)
    bus.fire("y")
    bus.off("x", handler)
    bus.off("x", handler)
    bus.fire("x")

    assert calls == [(1, 2)]


@pytest.mark.asyncio
async def test_event_bus_failing_handler_does_not_stop_others():
    bus = EventBus()
    calls = []

    def boom():
        raise RuntimeError("boom")

    async def later():
        calls.append("async")

    bus.on("x", boom)
    bus.on("x", later)
    bus.on("x", lambda: calls.append("sync"))
    bus.fire("x")
    await asyncio.sleep(0)

    assert calls == ["sync", "async"]


def test_connection_status_defaults_and_update():
    status = ConnectionStatus()
    assert status.snapshot() == (ConnectionState.DISCONNECTED, ConnectReturnCode.NONE_SPECIFIED)

    status.update(ConnectionState.CONNECTED, ConnectReturnCode.ACCEPTED)
    assert status.state == ConnectionState.CONNECTED
    assert status.return_code == ConnectReturnCode.ACCEPTED

    status.update(ConnectionState.DISCONNECTING)
    assert status.return_code == ConnectReturnCode.ACCEPTED
    assert str(status) == "Connection status is disconnecting with return code of ACCEPTED"


def test_no_connection_error_payload():
    silent = NoConnectionError("no answer")
    assert not silent.broker_responded
    assert silent.message == "no answer"
    assert isinstance(silent, ConnectionError)

    rejected = NoConnectionError("rejected", ConnectReturnCode.IDENTIFIER_REJECTED, 3)
    assert rejected.broker_responded
    assert rejected.max_attempts == 3
    assert str(rejected) == "aiomqttlive::NoConnectionError: rejected"


def test_message_encode_short_and_long():
    assert MqttMessage.ping_request().encode() == b"\xc0\x00"
    assert MqttMessage.ping_response().encode() == b"\xd0\x00"
    assert MqttMessage.disconnect().encode() == b"\xe0\x00"

    encoded = MqttMessage(MqttMessage.PUBLISH, b"x" * 200).encode()
    assert encoded[:3] == b"\x30\xc8\x01"
    assert len(encoded) == 203


def test_message_buffer_handles_partial_and_batched_input():
    buffer = MessageBuffer()
    long_publish = MqttMessage(MqttMessage.PUBLISH, b"y" * 300).encode()

    assert buffer.feed(long_publish[:2]) == []
    assert buffer.feed(long_publish[2:100]) == []
    messages = buffer.feed(long_publish[100:] + b"\xd0\x00\x20\x02\x00\x00")

    assert [m.message_type for m in messages] == [
        MqttMessage.PUBLISH,
        MqttMessage.PINGRESP,
        MqttMessage.CONNACK,
    ]
    assert messages[0].payload == b"y" * 300
    assert messages[2].return_code == ConnectReturnCode.ACCEPTED
    assert len(buffer) == 0


def test_message_buffer_rejects_overlong_remaining_length():
    with pytest.raises(ValueError):
        MessageBuffer().feed(b"\x30\xff\xff\xff\xff\x01")


def test_connack_return_codes():
    refused = MqttMessage(MqttMessage.CONNACK, b"\x00\x04")
    assert refused.return_code == ConnectReturnCode.BAD_USERNAME_OR_PASSWORD
    assert MqttMessage(MqttMessage.CONNACK, b"\x00\x42").return_code == 0x42
    assert MqttMessage(MqttMessage.CONNACK, b"").return_code == ConnectReturnCode.NONE_SPECIFIED
    assert MqttMessage.ping_response().return_code == ConnectReturnCode.NONE_SPECIFIED


def test_connect_message_layout():
    message = ConnectMessage("cid", user="u", password="p", keepalive=30)
    payload = message.payload

    assert message.message_type == MqttMessage.CONNECT
    assert payload[:7] == b"\x00\x04MQTT\x04"
    assert payload[7] == 0x02 | 0x80 | 0x40
    assert payload[8:10] == b"\x00\x1e"
    assert payload[10:] == b"\x00\x03cid\x00\x01u\x00\x01p"


def test_connect_message_will_and_password_without_user():
    message = ConnectMessage(
        "cid",
        password="ignored",
        clean_session=False,
        will_topic="t",
        will_message="bye",
        will_qos=1,
        will_retain=True,
    )
    flags = message.payload[7]
    assert flags == 0x04 | (1 << 3) | 0x20
    assert message.payload[10:] == b"\x00\x03cid\x00\x01t\x00\x03bye"


@pytest.mark.parametrize(
    "host, secure, expected",
    [
        ("broker.local", False, "ws://broker.local:8080/mqtt"),
        ("broker.local", True, "wss://broker.local:8080/mqtt"),
        ("ws://broker.local", False, "ws://broker.local:8080/mqtt"),
        ("wss://broker.local/custom", False, "wss://broker.local:8080/custom"),
        ("ws://broker.local:9001/p", False, "ws://broker.local:8080/p"),
    ],
)
def test_websocket_uri(host, secure, expected):
    connection = MqttWsConnection(security_context=object() if secure else None)
    assert connection.build_uri(host, 8080) == expected


def test_websocket_uri_rejects_other_schemes():
    with pytest.raises(NoConnectionError):
        MqttWsConnection().build_uri("http://broker.local", 80)


def test_websocket_path_is_normalised():
    connection = MqttWsConnection(websocket_path="ws")
    assert connection.build_uri("h", 1) == "ws://h:1/ws"


def test_stats_keep_recent_rtt_samples():
    stats = MqttStats()
    stats.connect()
    stats.connect_fail()
    stats.auto_reconnect()
    stats.ping_sent()
    for rtt in range(20):
        stats.ping_received(rtt)

    result = stats.get_stats()
    assert result["connections_sent"] == 1
    assert result["connections_failed"] == 1
    assert result["auto_reconnect_count"] == 1
    assert result["ping_sent_count"] == 1
    assert result["ping_received_count"] == 20
    assert result["ping_rtt_ms"] == int(sum(range(10, 20)) / 10)

    stats.reset()
    assert stats.get_stats()["ping_rtt_ms"] == 0
