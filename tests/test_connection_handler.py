from __future__ import annotations

import asyncio

import pytest

from aiomqttlive import (
    AUTO_RECONNECT,
    AUTO_RECONNECTED,
    ConnectionState,
    ConnectMessage,
    ConnectReturnCode,
    EventBus,
    MqttConnectionHandler,
    MqttMessage,
    MqttNormalConnection,
    MqttSecureConnection,
    MqttWs2Connection,
    MqttWsConnection,
    NoConnectionError,
)
from tests.fakes import FakeBrokerConnection

HOST = "broker.local"
PORT = 1883


def make_handler(connection, **kwargs):
    kwargs.setdefault("reconnect_time_period", 10)
    handler = MqttConnectionHandler(EventBus(), **kwargs)
    created = []

    def factory():
        created.append(connection)
        return connection

    handler._create_connection = factory
    return handler, created


def connect_message():
    return ConnectMessage("test-client", keepalive=30)


@pytest.mark.asyncio
async def test_never_acknowledged_raises_after_max_attempts():
    fake = FakeBrokerConnection(ack_on_attempt=None)
    handler, _ = make_handler(fake, max_connection_attempts=3)

    with pytest.raises(NoConnectionError) as exc_info:
        await handler.connect(HOST, PORT, connect_message())

    err = exc_info.value
    assert fake.handshakes == 3
    assert err.return_code == ConnectReturnCode.NONE_SPECIFIED
    assert not err.broker_responded
    assert err.max_attempts == 3
    assert "Missing Connection Acknowledgement" in str(err)
    assert str(err).startswith("aiomqttlive::NoConnectionError:")
    assert handler.connection_status.state == ConnectionState.FAULTED


@pytest.mark.asyncio
async def test_never_acknowledged_with_callback_faults():
    fake = FakeBrokerConnection(ack_on_attempt=None)
    handler, _ = make_handler(fake, max_connection_attempts=3)
    attempts = []
    handler.on_failed_connection_attempt = attempts.append

    status = await handler.connect(HOST, PORT, connect_message())

    assert status.state == ConnectionState.FAULTED
    assert attempts == [1, 2, 3]
    assert fake.handshakes == 3
    assert handler.initial_connection_complete


@pytest.mark.asyncio
async def test_acknowledged_on_second_attempt():
    fake = FakeBrokerConnection(ack_on_attempt=2)
    handler, _ = make_handler(fake, max_connection_attempts=3)
    attempts = []
    handler.on_failed_connection_attempt = attempts.append

    status = await handler.connect(HOST, PORT, connect_message())

    assert status.state == ConnectionState.CONNECTED
    assert status.return_code == ConnectReturnCode.ACCEPTED
    assert attempts == [1]
    assert fake.handshakes == 2


@pytest.mark.asyncio
async def test_rejected_connection_reports_return_code():
    fake = FakeBrokerConnection(ack_on_attempt=1, return_code=5)
    handler, _ = make_handler(fake, max_connection_attempts=2)

    with pytest.raises(NoConnectionError) as exc_info:
        await handler.connect(HOST, PORT, connect_message())

    err = exc_info.value
    assert err.return_code == ConnectReturnCode.NOT_AUTHORIZED
    assert err.broker_responded
    assert "The return code is NOT_AUTHORIZED" in str(err)
    assert fake.handshakes == 2


@pytest.mark.asyncio
async def test_transport_failure_on_initial_connect_is_fatal():
    fake = FakeBrokerConnection(connect_failures=1)
    handler, _ = make_handler(fake, max_connection_attempts=3)
    attempts = []
    handler.on_failed_connection_attempt = attempts.append

    with pytest.raises(NoConnectionError, match="connection refused"):
        await handler.connect(HOST, PORT, connect_message())

    assert fake.connect_calls == 1
    assert fake.handshakes == 0
    assert attempts == []
    assert handler.connection_status.state == ConnectionState.FAULTED


@pytest.mark.asyncio
async def test_transport_allocated_once_per_connect_call():
    fake = FakeBrokerConnection(ack_on_attempt=3)
    handler, created = make_handler(fake, max_connection_attempts=3)
    handler.on_failed_connection_attempt = lambda attempt: None

    await handler.connect(HOST, PORT, connect_message())

    assert len(created) == 1
    assert fake.connect_calls == 3
    assert fake.on_message == handler._message_received
    assert fake.on_disconnected == handler._on_connection_lost


@pytest.mark.asyncio
async def test_connack_cuts_the_wait_short():
    fake = FakeBrokerConnection(ack_on_attempt=1)
    handler, _ = make_handler(fake, reconnect_time_period=10_000)

    status = await asyncio.wait_for(handler.connect(HOST, PORT, connect_message()), timeout=2)

    assert status.state == ConnectionState.CONNECTED
    assert not handler.connect_timer.is_running


async def connected_handler(fake, **kwargs):
    handler, created = make_handler(fake, **kwargs)
    await handler.connect(HOST, PORT, connect_message())
    assert handler.connection_status.state == ConnectionState.CONNECTED
    return handler, created


@pytest.mark.asyncio
async def test_auto_reconnect_swallows_transport_failure():
    fake = FakeBrokerConnection(ack_on_attempt=1)
    handler, created = await connected_handler(fake, max_connection_attempts=3)
    attempts = []
    handler.on_failed_connection_attempt = attempts.append
    events = []
    handler.event_bus.on(AUTO_RECONNECT, lambda: events.append(AUTO_RECONNECT))
    handler.event_bus.on(AUTO_RECONNECTED, lambda: events.append(AUTO_RECONNECTED))
    fake.connect_failures = 1

    status = await handler.auto_reconnect(HOST, PORT, connect_message())

    assert status.state == ConnectionState.CONNECTED
    assert fake.connect_auto_calls == 2
    assert fake.handshakes == 2
    assert attempts == []
    assert len(created) == 1
    assert events == [AUTO_RECONNECT, AUTO_RECONNECTED]
    assert not handler.auto_reconnect_in_progress


@pytest.mark.asyncio
async def test_auto_reconnect_exhausted_does_not_raise():
    fake = FakeBrokerConnection(ack_on_attempt=1)
    handler, _ = await connected_handler(fake, max_connection_attempts=2)
    attempts = []
    handler.on_failed_connection_attempt = attempts.append
    events = []
    handler.event_bus.on(AUTO_RECONNECTED, lambda: events.append(AUTO_RECONNECTED))
    fake.connect_failures = 5

    status = await handler.auto_reconnect(HOST, PORT, connect_message())

    assert status.state == ConnectionState.CONNECTING
    assert fake.connect_auto_calls == 2
    assert attempts == []
    assert events == []
    assert not handler.auto_reconnect_in_progress


@pytest.mark.asyncio
async def test_auto_reconnect_requires_initial_connection():
    fake = FakeBrokerConnection()
    handler, created = make_handler(fake)

    status = await handler.auto_reconnect(HOST, PORT, connect_message())

    assert status.state == ConnectionState.DISCONNECTED
    assert created == []
    assert fake.connect_auto_calls == 0


@pytest.mark.asyncio
async def test_message_dispatch_and_sent_observers():
    fake = FakeBrokerConnection()
    handler, _ = await connected_handler(fake)
    received = []
    sent = []
    handler.register_for_message(MqttMessage.PUBLISH, received.append)
    handler.register_for_all_sent_messages(sent.append)

    publish = MqttMessage(MqttMessage.PUBLISH | 0x01, b"\x00\x01t")
    fake.deliver(publish)
    fake.deliver(MqttMessage(MqttMessage.SUBACK, b"\x00\x01\x00"))
    ping = MqttMessage.ping_request()
    handler.send_message(ping)

    assert received == [publish]
    assert sent == [ping]
    assert fake.sent_types()[-1] == MqttMessage.PINGREQ

    handler.unregister_for_message(MqttMessage.PUBLISH)
    handler.unregister_for_all_sent_messages(sent.append)
    fake.deliver(publish)
    handler.send_message(ping)
    assert received == [publish]
    assert sent == [ping]


@pytest.mark.asyncio
async def test_failing_message_handler_is_contained():
    fake = FakeBrokerConnection()
    handler, _ = await connected_handler(fake)

    def boom(message):
        raise RuntimeError("boom")

    handler.register_for_message(MqttMessage.PUBLISH, boom)
    fake.deliver(MqttMessage(MqttMessage.PUBLISH, b"\x00\x01t"))
    assert handler.connection_status.state == ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_send_without_connection_raises():
    handler = MqttConnectionHandler(EventBus())
    with pytest.raises(ConnectionError):
        handler.send_message(MqttMessage.ping_request())


@pytest.mark.asyncio
async def test_disconnect_sends_disconnect_and_closes():
    fake = FakeBrokerConnection()
    handler, _ = await connected_handler(fake)

    status = await handler.disconnect()

    assert status.state == ConnectionState.DISCONNECTED
    assert fake.sent_types()[-1] == MqttMessage.DISCONNECT
    assert fake.close_calls == 1


@pytest.mark.asyncio
async def test_connection_lost_marks_disconnected_and_notifies():
    fake = FakeBrokerConnection()
    handler, _ = await connected_handler(fake)
    lost = []
    handler.on_disconnected = lambda: lost.append(True)

    fake.drop()

    assert handler.connection_status.state == ConnectionState.DISCONNECTED
    assert lost == [True]


@pytest.mark.asyncio
async def test_connection_lost_ignored_while_not_connected():
    fake = FakeBrokerConnection()
    handler, _ = make_handler(fake)
    lost = []
    handler.on_disconnected = lambda: lost.append(True)

    handler._on_connection_lost()

    assert lost == []
    assert handler.connection_status.state == ConnectionState.DISCONNECTED


def test_create_connection_selects_transport():
    handler = MqttConnectionHandler(EventBus(), websocket_path="/ws")
    assert isinstance(handler._create_connection(), MqttNormalConnection)

    handler.secure = True
    connection = handler._create_connection()
    assert isinstance(connection, MqttSecureConnection)

    handler.use_websocket = True
    handler.websocket_protocols = ["mqtt"]
    handler.websocket_headers = {"Authorization": "Bearer x"}
    connection = handler._create_connection()
    assert type(connection) is MqttWsConnection
    assert connection.protocols == ["mqtt"]
    assert connection.headers == {"Authorization": "Bearer x"}
    assert connection.websocket_path == "/ws"

    handler.use_alternate_websocket_implementation = True
    connection = handler._create_connection()
    assert isinstance(connection, MqttWs2Connection)
    assert connection.protocols == ["mqtt"]


@pytest.mark.asyncio
async def test_failed_connect_closes_transport():
    fake = FakeBrokerConnection(ack_on_attempt=None)
    handler, _ = make_handler(fake, max_connection_attempts=1)

    with pytest.raises(NoConnectionError):
        await handler.connect(HOST, PORT, connect_message())

    assert fake.close_calls == 1
    assert not fake.is_open


@pytest.mark.asyncio
async def test_faulted_connect_closes_transport():
    fake = FakeBrokerConnection(ack_on_attempt=None)
    handler, _ = make_handler(fake, max_connection_attempts=2)
    handler.on_failed_connection_attempt = lambda attempt: None

    status = await handler.connect(HOST, PORT, connect_message())

    assert status.state == ConnectionState.FAULTED
    assert fake.close_calls == 1


@pytest.mark.asyncio
async def test_new_connect_closes_previous_transport():
    first = FakeBrokerConnection()
    second = FakeBrokerConnection()
    transports = [first, second]
    handler = MqttConnectionHandler(EventBus(), reconnect_time_period=10)
    handler._create_connection = lambda: transports.pop(0)

    await handler.connect(HOST, PORT, connect_message())
    await handler.connect(HOST, PORT, connect_message())

    assert first.close_calls == 1
    assert not first.is_open
    assert handler.connection is second
    assert second.is_open


@pytest.mark.asyncio
async def test_disconnect_during_connack_wait_stops_the_sequence():
    fake = FakeBrokerConnection(ack_on_attempt=None)
    handler, _ = make_handler(fake, max_connection_attempts=3, reconnect_time_period=10_000)
    attempts = []
    handler.on_failed_connection_attempt = attempts.append

    task = asyncio.ensure_future(handler.connect(HOST, PORT, connect_message()))
    await asyncio.sleep(0.01)
    await handler.disconnect()
    status = await asyncio.wait_for(task, timeout=2)

    assert status.state == ConnectionState.DISCONNECTED
    assert fake.connect_calls == 1
    assert fake.handshakes == 1
    assert attempts == []
    assert not fake.is_open
