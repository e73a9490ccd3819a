"""
Asynchronous MQTT connection core for CPython.

This module provides the connection lifecycle of an MQTT client: opening a
broker connection over TCP, TLS or WebSockets, the synchronous connect/retry
sequence that waits for the broker's acknowledgement, and the keep-alive
monitor that pings the broker, tracks round-trip latency and signals when the
broker stops answering.
"""
import asyncio
import binascii
import random
import ssl
import struct
import threading
from enum import Enum, IntEnum
from time import gmtime, monotonic, strftime, time

import aiohttp
import websockets
from rich.console import Console

console = Console()

__version__ = "1.0.0"

# Signals published on a client's EventBus
NO_PING_RESPONSE = "disconnect:no-ping-response"
NO_MESSAGE_SENT = "disconnect:no-message-sent"
AUTO_RECONNECT = "auto-reconnect"
AUTO_RECONNECTED = "auto-reconnected"

_background_tasks = set()


def ticks_ms() -> int:
    return int(monotonic() * 1000)


def ticks_diff(ticks1: int, ticks2: int) -> int:
    return ticks1 - ticks2


def log(msg: str = ""):
    now = time()
    utc = strftime("%Y-%m-%d %H:%M:%S", gmtime(now))
    ms = int(now * 1000) % 1000
    print(f"{utc}.{ms:03d} {msg}")


def dump_array(data, header=None, length=16):
    if data is None:
        return
    try:
        _dump_array_aux(data, header, length)
    except Exception as e:
        len_data = len(data) if data else 0
        log(f"ERROR - dump_array - {data} ({len_data} bytes) - {e}")


def _dump_array_aux(data, header, length):
    if not data:
        return
    s = f"{header} ({len(data)} bytes)" if header is not None else ""
    print_table = "".join(
        (len(repr(chr(x))) == 3) and chr(x) or "." for x in range(256)
    )
    lines = []
    for c in range(0, len(data), length):
        chars = data[c : c + length]
        hex_string = " ".join("%02x" % x for x in chars)
        printable = "".join(f"{(x <= 127 and print_table[x]) or '.'}" for x in chars)
        lines.append("%04d  %-*s  %s\n" % (c, length * 3, hex_string, printable))
    log(f"{s}\n{''.join(lines)}")


def generate_client_id():
    rnd = random.getrandbits(32)
    return f"aiomqttlive_{binascii.hexlify(rnd.to_bytes(4, 'big')).decode()}"


def _spawn(coro) -> asyncio.Task:
    """Runs a coroutine in the background, keeping a reference until it is done."""
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def _invoke_callback(callback, *args):
    """
    Invokes an optional user callback.

    Plain functions run synchronously; coroutine functions are scheduled on
    the running loop. A failing callback is reported and never propagates
    into the connection machinery.
    """
    if callback is None:
        return None
    try:
        result = callback(*args)
    except Exception as e:
        console.print_exception()
        name = getattr(callback, "__name__", repr(callback))
        log(f"Callback {name} failed: {type(e).__name__}: {e}")
        return None
    if asyncio.iscoroutine(result):
        return _spawn(result)
    return result


def _truncating_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAULTED = "faulted"


class ConnectReturnCode(IntEnum):
    """CONNACK return codes (MQTT v3.1.1 section 3.2.2.3)."""

    ACCEPTED = 0
    UNACCEPTABLE_PROTOCOL_VERSION = 1
    IDENTIFIER_REJECTED = 2
    BROKER_UNAVAILABLE = 3
    BAD_USERNAME_OR_PASSWORD = 4
    NOT_AUTHORIZED = 5
    NONE_SPECIFIED = 0xFF

    @classmethod
    def from_byte(cls, value: int):
        """Maps a raw CONNACK byte, keeping unknown codes as plain ints."""
        try:
            return cls(value)
        except ValueError:
            return value


def _return_code_name(return_code) -> str:
    return getattr(return_code, "name", str(return_code))


class ConnectionStatus:
    """
    Current connection state and the broker's last handshake return code.

    Both fields are written under one lock so readers never observe a
    half-applied transition. The return code is only meaningful once the
    state has left CONNECTING.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._return_code = ConnectReturnCode.NONE_SPECIFIED

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @state.setter
    def state(self, value: ConnectionState):
        with self._lock:
            self._state = value

    @property
    def return_code(self):
        with self._lock:
            return self._return_code

    @return_code.setter
    def return_code(self, value):
        with self._lock:
            self._return_code = value

    def update(self, state: ConnectionState, return_code=None):
        """Sets the state and, when given, the return code in one step."""
        with self._lock:
            self._state = state
            if return_code is not None:
                self._return_code = return_code

    def snapshot(self) -> tuple:
        with self._lock:
            return self._state, self._return_code

    def __str__(self) -> str:
        state, return_code = self.snapshot()
        return (
            f"Connection status is {state.value} with return code of "
            f"{_return_code_name(return_code)}"
        )

    def __repr__(self) -> str:
        state, return_code = self.snapshot()
        return f"ConnectionStatus(state={state.name}, return_code={_return_code_name(return_code)})"


class NoConnectionError(ConnectionError):
    """
    Raised when a connection to the broker could not be established.

    Attributes:
        message (str): The failure description, without the error prefix.
        return_code: The broker's CONNACK return code, or
                     ConnectReturnCode.NONE_SPECIFIED if the broker never answered.
        max_attempts (Optional[int]): The attempt bound that was exhausted, if any.
    """

    def __init__(
        self,
        message: str,
        return_code=ConnectReturnCode.NONE_SPECIFIED,
        max_attempts: int | None = None,
    ):
        self.message = message
        self.return_code = return_code
        self.max_attempts = max_attempts
        super().__init__(f"aiomqttlive::NoConnectionError: {message}")

    @property
    def broker_responded(self) -> bool:
        return self.return_code != ConnectReturnCode.NONE_SPECIFIED


class EventBus:
    """
    Publish/subscribe channel scoped to one client instance.

    Handlers are invoked synchronously in registration order by `fire`.
    Coroutine handlers are scheduled on the running loop.
    """

    def __init__(self):
        self._handlers = {}

    def on(self, name: str, handler):
        self._handlers.setdefault(name, []).append(handler)

    def off(self, name: str, handler):
        handlers = self._handlers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def fire(self, name: str, *args):
        for handler in list(self._handlers.get(name, ())):
            _invoke_callback(handler, *args)


class Timer:
    """
    A one-shot callback scheduled on the asyncio loop.

    The timer is active from construction until it fires or is cancelled;
    after that it is idle and stays idle.

    Attributes:
        period_ms (int): Delay before the callback runs, in milliseconds.
        fired (bool): True once the callback has been invoked.
        cancelled (bool): True if the timer was cancelled while still active.
    """

    def __init__(self, period_ms: int, callback, loop: asyncio.AbstractEventLoop | None = None):
        self.period_ms = period_ms
        self.fired = False
        self.cancelled = False
        self._callback = callback
        self._loop = loop or asyncio.get_running_loop()
        self._handle = self._loop.call_later(period_ms / 1000, self._fire)

    @property
    def is_active(self) -> bool:
        return not self.fired and not self.cancelled

    def _fire(self):
        self.fired = True
        self._handle = None
        self._callback()

    def cancel(self):
        """Cancels the timer. Safe to call on an idle timer."""
        if not self.is_active:
            return
        self.cancelled = True
        self._handle.cancel()
        self._handle = None


class CancellableSleep:
    """
    A timed wait that can be cut short.

    `sleep()` returns True if the full period elapsed and False if `cancel()`
    ended it early. Cancelling while no sleep is pending does nothing.
    """

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        self._wakeup = None

    @property
    def is_running(self) -> bool:
        return self._wakeup is not None

    async def sleep(self) -> bool:
        self._wakeup = asyncio.Event()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.timeout_ms / 1000)
            return False
        except asyncio.TimeoutError:
            return True
        finally:
            self._wakeup = None

    def cancel(self):
        if self._wakeup is not None:
            self._wakeup.set()


class MqttMessage:
    """
    An MQTT control packet: the fixed header byte and its payload.

    Only the packet kinds the connection core works with get dedicated
    helpers; any other packet is carried as an opaque payload.

    Attributes:
        packet_type (int): The full first header byte (type nibble and flags).
        payload (bytes): Variable header and payload, without the fixed header.
    """

    CONNECT = 0x10
    CONNACK = 0x20
    PUBLISH = 0x30
    PUBACK = 0x40
    PUBREC = 0x50
    PUBREL = 0x60
    PUBCOMP = 0x70
    SUBSCRIBE = 0x80
    SUBACK = 0x90
    UNSUBSCRIBE = 0xA0
    UNSUBACK = 0xB0
    PINGREQ = 0xC0
    PINGRESP = 0xD0
    DISCONNECT = 0xE0

    NAMES = {
        CONNECT: "CONNECT",
        CONNACK: "CONNACK",
        PUBLISH: "PUBLISH",
        PUBACK: "PUBACK",
        PUBREC: "PUBREC",
        PUBREL: "PUBREL",
        PUBCOMP: "PUBCOMP",
        SUBSCRIBE: "SUBSCRIBE",
        SUBACK: "SUBACK",
        UNSUBSCRIBE: "UNSUBSCRIBE",
        UNSUBACK: "UNSUBACK",
        PINGREQ: "PINGREQ",
        PINGRESP: "PINGRESP",
        DISCONNECT: "DISCONNECT",
    }

    def __init__(self, packet_type: int, payload: bytes = b""):
        self.packet_type = packet_type
        self.payload = bytes(payload)

    @property
    def message_type(self) -> int:
        return self.packet_type & 0xF0

    @property
    def return_code(self):
        """The CONNACK return code, NONE_SPECIFIED if the packet carries none."""
        if self.message_type != self.CONNACK or len(self.payload) < 2:
            return ConnectReturnCode.NONE_SPECIFIED
        return ConnectReturnCode.from_byte(self.payload[1])

    @classmethod
    def ping_request(cls) -> "MqttMessage":
        return cls(cls.PINGREQ)

    @classmethod
    def ping_response(cls) -> "MqttMessage":
        return cls(cls.PINGRESP)

    @classmethod
    def disconnect(cls) -> "MqttMessage":
        return cls(cls.DISCONNECT)

    def encode(self) -> bytes:
        """
        Encodes the fixed header and payload for transmission.

        Returns:
            The packet bytes, with the remaining length written as an MQTT
            variable byte integer.
        """
        remaining_length = len(self.payload)
        remaining_bytes = bytearray()
        while True:
            byte = remaining_length % 128
            remaining_length //= 128
            if remaining_length > 0:
                byte |= 0x80  # Set continuation bit
            remaining_bytes.append(byte)
            if remaining_length == 0:
                break
        return bytes(bytearray([self.packet_type]) + remaining_bytes + self.payload)

    def __repr__(self) -> str:
        name = self.NAMES.get(self.message_type, f"{self.message_type:#04x}")
        return f"MqttMessage({name}, {len(self.payload)} bytes)"


class ConnectMessage(MqttMessage):
    """The MQTT v3.1.1 CONNECT packet sent to start a session."""

    def __init__(
        self,
        client_id: str,
        user: str | None = None,
        password: str | None = None,
        keepalive: int = 60,
        clean_session: bool = True,
        will_topic: str | None = None,
        will_message: bytes | str | None = None,
        will_qos: int = 0,
        will_retain: bool = False,
    ):
        self.client_id = client_id
        self.keepalive = keepalive
        payload = self._build(
            client_id,
            user,
            password,
            keepalive,
            clean_session,
            will_topic,
            will_message,
            will_qos,
            will_retain,
        )
        super().__init__(self.CONNECT, payload)

    @staticmethod
    def _build(
        client_id,
        user,
        password,
        keepalive,
        clean_session,
        will_topic,
        will_message,
        will_qos,
        will_retain,
    ) -> bytes:
        packet = bytearray()
        packet.extend(encode_string("MQTT"))  # Protocol name
        packet.append(4)  # Protocol level 4 (MQTT v3.1.1)

        flags = 0
        if clean_session:
            flags |= 0x02
        if user:
            flags |= 0x80
        if user and password:
            flags |= 0x40
        has_will = will_topic and will_message is not None
        if has_will:
            flags |= 0x04
            flags |= will_qos << 3
            if will_retain:
                flags |= 0x20

        packet.append(flags)
        packet.extend(struct.pack("!H", keepalive))

        packet.extend(encode_string(client_id))
        if has_will:
            packet.extend(encode_string(will_topic))
            packet.extend(encode_string(will_message))
        if user:
            packet.extend(encode_string(user))
            if password:
                packet.extend(encode_string(password))
        return bytes(packet)


def encode_string(s: str | bytes) -> bytes:
    """Encodes a string or bytes into the MQTT length-prefixed format."""
    if isinstance(s, str):
        s = s.encode("utf-8")
    return struct.pack("!H", len(s)) + s


class MessageBuffer:
    """Splits an inbound byte stream into MQTT messages."""

    def __init__(self):
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list:
        """
        Appends received bytes and returns every message now complete.

        Raises:
            ValueError: If a remaining length field is longer than four bytes.
        """
        self._buffer.extend(data)
        messages = []
        while True:
            message = self._next_message()
            if message is None:
                return messages
            messages.append(message)

    def _next_message(self):
        if len(self._buffer) < 2:
            return None
        remaining_length = 0
        multiplier = 1
        index = 1
        while True:
            if index > 4:
                raise ValueError("Malformed remaining length (exceeds 4 bytes)")
            if index >= len(self._buffer):
                return None
            byte = self._buffer[index]
            index += 1
            remaining_length += (byte & 0x7F) * multiplier
            if not byte & 0x80:
                break
            multiplier *= 128
        end = index + remaining_length
        if len(self._buffer) < end:
            return None
        message = MqttMessage(self._buffer[0], bytes(self._buffer[index:end]))
        del self._buffer[:end]
        return message


class MqttConnection:
    """
    Base class for a broker transport.

    A transport opens a byte stream to the broker, decodes inbound messages
    on a background reader task and hands each one to `on_message`. Writes
    are synchronous. When the stream drops without `close()` having been
    called, `on_disconnected` is invoked.

    Attributes:
        event_bus (Optional[EventBus]): The owning client's event bus.
        socket_timeout (Optional[float]): Timeout in seconds for opening the stream.
        verbose (int): Verbosity level for logging.
        on_message (Optional[Callable]): Called with each decoded MqttMessage.
        on_disconnected (Optional[Callable]): Called when the broker drops the stream.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        socket_timeout: float | None = None,
        verbose: int = 0,
    ):
        self.event_bus = event_bus
        self.socket_timeout = socket_timeout
        self.verbose = verbose
        self.on_message = None
        self.on_disconnected = None
        self._buffer = MessageBuffer()
        self._reader_task = None
        self._open = False
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self, host: str, port: int):
        """
        Opens the stream to the broker and starts the reader task.

        Any stream this transport already holds is closed first.

        Raises:
            NoConnectionError: If the stream could not be opened.
        """
        if self._open or self._reader_task is not None:
            await self.close()
        name = type(self).__name__
        if self.verbose:
            log(f"{name}:connect - connecting to {host}:{port}")
        try:
            if self.socket_timeout:
                await asyncio.wait_for(self._open_stream(host, port), timeout=self.socket_timeout)
            else:
                await self._open_stream(host, port)
        except NoConnectionError:
            raise
        except Exception as e:
            raise NoConnectionError(f"{name}:connect - failed to connect to {host}:{port}: {e}") from e
        self._buffer = MessageBuffer()
        self._closing = False
        self._open = True
        self._reader_task = asyncio.create_task(self._read_loop())

    async def connect_auto(self, host: str, port: int):
        """Reopens the stream after a connection loss."""
        if self.verbose:
            log(f"{type(self).__name__}:connect_auto - reopening {host}:{port}")
        await self.close()
        await self.connect(host, port)

    def send(self, data: bytes):
        """
        Writes an encoded message to the broker.

        Raises:
            ConnectionError: If the stream is not open.
        """
        if not self._open:
            raise ConnectionError(f"{type(self).__name__}:send - connection is not open")
        if self.verbose == 2:
            dump_array(data, header="Sending")
        self._write(data)

    async def close(self):
        """Closes the stream. Does not invoke `on_disconnected`."""
        self._closing = True
        self._open = False
        task = self._reader_task
        self._reader_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_stream()

    async def _read_loop(self):
        name = type(self).__name__
        try:
            while True:
                data = await self._read()
                if not data:
                    break
                if self.verbose == 2:
                    dump_array(data, header="Received")
                for message in self._buffer.feed(data):
                    if self.on_message is not None:
                        self.on_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            console.print_exception()
            log(f"{name}:_read_loop - {type(e).__name__}: {e}")
        self._open = False
        if not self._closing:
            log(f"{name}:_read_loop - connection closed by broker")
            _invoke_callback(self.on_disconnected)

    async def _open_stream(self, host: str, port: int):
        raise NotImplementedError

    async def _read(self) -> bytes:
        raise NotImplementedError

    def _write(self, data: bytes):
        raise NotImplementedError

    async def _close_stream(self):
        raise NotImplementedError


class MqttNormalConnection(MqttConnection):
    """Plain TCP transport."""

    def __init__(self, event_bus=None, socket_timeout=None, verbose: int = 0):
        super().__init__(event_bus, socket_timeout, verbose)
        self._reader = None
        self._writer = None

    async def _open_stream(self, host, port):
        self._reader, self._writer = await asyncio.open_connection(host, port)

    async def _read(self) -> bytes:
        return await self._reader.read(4096)

    def _write(self, data: bytes):
        if self._writer is None or self._writer.is_closing():
            raise ConnectionError(f"{type(self).__name__}:send - stream is closing")
        self._writer.write(data)

    async def _close_stream(self):
        if self._writer is not None:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except Exception as e:
                log(f"{type(self).__name__}:close error: {e}")
        self._reader = None
        self._writer = None


class MqttSecureConnection(MqttNormalConnection):
    """
    TLS transport.

    Attributes:
        security_context (Optional[ssl.SSLContext]): Context used for the
            handshake. A default verifying context is used when None.
        on_bad_certificate (Optional[Callable]): Called with the verification
            error when the broker's certificate is rejected. Returning True
            retries the handshake once without verification.
    """

    def __init__(
        self,
        security_context: ssl.SSLContext | None = None,
        event_bus=None,
        on_bad_certificate=None,
        socket_timeout=None,
        verbose: int = 0,
    ):
        super().__init__(event_bus, socket_timeout, verbose)
        self.security_context = security_context
        self.on_bad_certificate = on_bad_certificate

    async def _open_stream(self, host, port):
        context = self.security_context or ssl.create_default_context()
        try:
            self._reader, self._writer = await asyncio.open_connection(host, port, ssl=context)
        except ssl.SSLCertVerificationError as e:
            if self.on_bad_certificate is None or not self.on_bad_certificate(e):
                raise
            log(f"{type(self).__name__}:connect - bad certificate accepted, retrying without verification")
            insecure = ssl.create_default_context()
            insecure.check_hostname = False
            insecure.verify_mode = ssl.CERT_NONE
            self._reader, self._writer = await asyncio.open_connection(host, port, ssl=insecure)


class MqttWsConnection(MqttConnection):
    """
    WebSocket transport backed by the `websockets` library.

    MQTT packets travel in binary frames. Outbound frames are queued and
    written in order by a writer task.

    Attributes:
        websocket_path (str): Path appended to bare hostnames.
        protocols (list[str]): WebSocket subprotocols offered to the broker.
        headers (Optional[dict]): Extra HTTP headers for the upgrade request.
        security_context (Optional[ssl.SSLContext]): TLS context for wss URIs.
    """

    DEFAULT_PROTOCOLS = ["mqtt", "mqttv3.1", "mqttv3.11"]
    DEFAULT_PATH = "/mqtt"

    def __init__(
        self,
        event_bus=None,
        socket_timeout=None,
        websocket_path: str | None = None,
        security_context: ssl.SSLContext | None = None,
        verbose: int = 0,
    ):
        super().__init__(event_bus, socket_timeout, verbose)
        self.websocket_path = websocket_path or self.DEFAULT_PATH
        self.protocols = list(self.DEFAULT_PROTOCOLS)
        self.headers = None
        self.security_context = security_context
        self._ws = None
        self._outbox = None
        self._writer_task = None

    def build_uri(self, host: str, port: int) -> str:
        """
        Builds the WebSocket URI for a broker.

        A host carrying a ws:// or wss:// scheme keeps it; a bare host gets
        wss:// when a security context is configured and ws:// otherwise.

        Raises:
            NoConnectionError: If the host carries any other scheme.
        """
        if "://" not in host:
            scheme = "wss" if self.security_context is not None else "ws"
            return f"{scheme}://{host}:{port}{self._normalise_path(self.websocket_path)}"
        scheme, _, rest = host.partition("://")
        if scheme not in ("ws", "wss"):
            raise NoConnectionError(
                f"{type(self).__name__}:build_uri - unsupported scheme '{scheme}', use ws:// or wss://"
            )
        hostname, slash, path = rest.partition("/")
        path = f"{slash}{path}" if path else self.websocket_path
        if ":" in hostname:
            hostname = hostname.rsplit(":", 1)[0]
        return f"{scheme}://{hostname}:{port}{self._normalise_path(path)}"

    @staticmethod
    def _normalise_path(path: str) -> str:
        return path if path.startswith("/") else f"/{path}"

    async def _open_stream(self, host, port):
        uri = self.build_uri(host, port)
        if self.verbose:
            log(f"{type(self).__name__}:connect - opening {uri}")
        self._ws = await websockets.connect(
            uri,
            subprotocols=self.protocols,
            additional_headers=self.headers,
            ssl=self.security_context if uri.startswith("wss") else None,
            ping_interval=None,
        )
        self._start_writer()

    def _start_writer(self):
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop())

    async def _read(self) -> bytes:
        try:
            data = await self._ws.recv()
        except websockets.ConnectionClosed:
            return b""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return data

    def _write(self, data: bytes):
        if self._outbox is None:
            raise ConnectionError(f"{type(self).__name__}:send - websocket is not open")
        self._outbox.put_nowait(bytes(data))

    async def _write_loop(self):
        outbox = self._outbox
        while True:
            data = await outbox.get()
            try:
                await self._send_frame(data)
            except Exception as e:
                log(f"{type(self).__name__}:_write_loop - send failed: {type(e).__name__}: {e}")
                return
            finally:
                outbox.task_done()

    async def _send_frame(self, data: bytes):
        await self._ws.send(data)

    async def _stop_writer(self):
        """Flushes the queued frames, then stops the writer task."""
        task = self._writer_task
        outbox = self._outbox
        self._writer_task = None
        self._outbox = None
        if task is not None and not task.done() and outbox is not None:
            try:
                await asyncio.wait_for(outbox.join(), timeout=self.socket_timeout or 1.0)
            except asyncio.TimeoutError:
                log(f"{type(self).__name__}:_stop_writer - {outbox.qsize()} frames not sent")
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _close_stream(self):
        await self._stop_writer()
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                log(f"{type(self).__name__}:close error: {e}")
        self._ws = None


class MqttWs2Connection(MqttWsConnection):
    """Alternate WebSocket transport backed by an aiohttp client session."""

    def __init__(
        self,
        security_context: ssl.SSLContext | None = None,
        event_bus=None,
        socket_timeout=None,
        websocket_path: str | None = None,
        verbose: int = 0,
    ):
        super().__init__(event_bus, socket_timeout, websocket_path, security_context, verbose)
        self._session = None

    async def _open_stream(self, host, port):
        uri = self.build_uri(host, port)
        if self.verbose:
            log(f"{type(self).__name__}:connect - opening {uri}")
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                uri,
                protocols=self.protocols,
                headers=self.headers,
                ssl=self.security_context or True,
                autoping=True,
            )
        except Exception:
            await self._session.close()
            self._session = None
            raise
        self._start_writer()

    async def _read(self) -> bytes:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data.encode("utf-8")
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                return b""

    async def _send_frame(self, data: bytes):
        await self._ws.send_bytes(data)

    async def _close_stream(self):
        await super()._close_stream()
        if self._session is not None:
            await self._session.close()
        self._session = None


class MqttConnectionHandler:
    """
    Drives the connection to a broker.

    The handler owns the transport and the ConnectionStatus. It runs the
    synchronous connect sequence (transport open, CONNECT, wait for CONNACK,
    bounded retries), keeps the per-message-type dispatch registry for inbound
    packets and notifies observers of every sent message.

    Attributes:
        event_bus (Optional[EventBus]): The owning client's event bus.
        connection_status (ConnectionStatus): Current state and return code.
        connection (Optional[MqttConnection]): The active transport.
        max_connection_attempts (int): Handshake attempts per connect call.
        connect_timer (CancellableSleep): Wait for the broker's CONNACK; its
            period is the reconnect retry period in milliseconds.
        auto_reconnect_in_progress (bool): True while re-establishing a lost
            connection on the existing transport.
        initial_connection_complete (bool): True once a connect sequence has run.
        secure (bool): Use TLS for plain socket connections.
        use_websocket (bool): Use a WebSocket transport.
        use_alternate_websocket_implementation (bool): Use the aiohttp based
            WebSocket transport instead of the websockets based one.
        on_failed_connection_attempt (Optional[Callable]): Called with the
            attempt number after each failed handshake of an initial connect.
            When set, exhausting the attempts faults the connection instead
            of raising.
        on_disconnected (Optional[Callable]): Called when the broker drops an
            established connection.
    """

    def __init__(
        self,
        event_bus: EventBus | None,
        max_connection_attempts: int = 3,
        reconnect_time_period: int = 5000,
        socket_timeout: float | None = None,
        websocket_path: str | None = None,
        verbose: int = 0,
    ):
        self.event_bus = event_bus
        self.max_connection_attempts = max_connection_attempts
        self.socket_timeout = socket_timeout
        self.websocket_path = websocket_path
        self.verbose = verbose
        self.connection_status = ConnectionStatus()
        self.connection: MqttConnection | None = None
        self.connect_timer = CancellableSleep(reconnect_time_period)
        self.auto_reconnect_in_progress = False
        self.initial_connection_complete = False
        self._disconnect_requested = False

        self.secure = False
        self.security_context: ssl.SSLContext | None = None
        self.on_bad_certificate = None
        self.use_websocket = False
        self.use_alternate_websocket_implementation = False
        self.websocket_protocols: list | None = None
        self.websocket_headers: dict | None = None

        self.on_failed_connection_attempt = None
        self.on_disconnected = None

        self._message_callbacks = {}
        self._sent_callbacks = []
        self.register_for_message(MqttMessage.CONNACK, self._connect_ack_received)

    def register_for_message(self, message_type: int, callback):
        """Registers the handler for an inbound message type, replacing any previous one."""
        self._message_callbacks[message_type] = callback

    def unregister_for_message(self, message_type: int):
        self._message_callbacks.pop(message_type, None)

    def register_for_all_sent_messages(self, callback):
        self._sent_callbacks.append(callback)

    def unregister_for_all_sent_messages(self, callback):
        if callback in self._sent_callbacks:
            self._sent_callbacks.remove(callback)

    def send_message(self, message: MqttMessage):
        """
        Sends a message on the active connection and notifies sent observers.

        Raises:
            ConnectionError: If there is no connection or the transport
                             refuses the write.
        """
        if self.connection is None:
            raise ConnectionError("MqttConnectionHandler:send_message - no connection")
        if self.verbose:
            log(f"MqttConnectionHandler:send_message - {message!r}")
        self.connection.send(message.encode())
        for callback in list(self._sent_callbacks):
            callback(message)

    def _message_received(self, message: MqttMessage):
        callback = self._message_callbacks.get(message.message_type)
        if callback is None:
            if self.verbose:
                log(f"MqttConnectionHandler:_message_received - no handler for {message!r}")
            return
        try:
            callback(message)
        except Exception as e:
            console.print_exception()
            log(f"MqttConnectionHandler:_message_received - handler for {message!r} failed: {e}")

    def _connect_ack_received(self, message: MqttMessage) -> bool:
        return_code = message.return_code
        if return_code == ConnectReturnCode.ACCEPTED:
            self.connection_status.update(ConnectionState.CONNECTED, return_code)
            log("MqttConnectionHandler:_connect_ack_received - connection accepted")
        else:
            self.connection_status.return_code = return_code
            log(
                "MqttConnectionHandler:_connect_ack_received - connection refused, "
                f"return code {_return_code_name(return_code)}"
            )
        # The connect sequence no longer needs to wait
        self.connect_timer.cancel()
        return True

    def _on_connection_lost(self):
        if self.connection_status.state != ConnectionState.CONNECTED:
            return
        log("MqttConnectionHandler:_on_connection_lost - broker closed the connection")
        self.connection_status.state = ConnectionState.DISCONNECTED
        _invoke_callback(self.on_disconnected)

    def _create_connection(self) -> MqttConnection:
        """Allocates a transport according to the transport selection flags."""
        if self.use_websocket:
            if self.use_alternate_websocket_implementation:
                if self.verbose:
                    log("MqttConnectionHandler:internal_connect - alternate websocket implementation selected")
                connection = MqttWs2Connection(
                    self.security_context,
                    self.event_bus,
                    self.socket_timeout,
                    self.websocket_path,
                    self.verbose,
                )
            else:
                if self.verbose:
                    log("MqttConnectionHandler:internal_connect - websocket selected")
                connection = MqttWsConnection(
                    self.event_bus,
                    self.socket_timeout,
                    self.websocket_path,
                    self.security_context,
                    self.verbose,
                )
            if self.websocket_protocols is not None:
                connection.protocols = list(self.websocket_protocols)
            if self.websocket_headers is not None:
                connection.headers = dict(self.websocket_headers)
            return connection
        if self.secure:
            if self.verbose:
                log("MqttConnectionHandler:internal_connect - secure selected")
            return MqttSecureConnection(
                self.security_context,
                self.event_bus,
                self.on_bad_certificate,
                self.socket_timeout,
                self.verbose,
            )
        if self.verbose:
            log("MqttConnectionHandler:internal_connect - insecure TCP selected")
        return MqttNormalConnection(self.event_bus, self.socket_timeout, self.verbose)

    async def connect(self, hostname: str, port: int, connect_message: ConnectMessage) -> ConnectionStatus:
        """
        Connects to the broker, faulting the connection on any error.

        The transport is closed whenever the sequence ends without a
        connection.

        Raises:
            NoConnectionError: If the transport could not be opened or the
                               broker never accepted the connection.
        """
        try:
            status = await self.internal_connect(hostname, port, connect_message)
        except Exception:
            self.connection_status.state = ConnectionState.FAULTED
            await self._close_connection()
            raise
        if status.state != ConnectionState.CONNECTED:
            await self._close_connection()
        return status

    async def _close_connection(self):
        if self.connection is None:
            return
        try:
            await self.connection.close()
        except Exception as e:
            log(f"MqttConnectionHandler:_close_connection - close failed: {type(e).__name__}: {e}")

    async def internal_connect(self, hostname: str, port: int, connect_message: ConnectMessage) -> ConnectionStatus:
        """
        Runs the synchronous connect sequence.

        Each attempt opens the transport, sends CONNECT and sleeps for the
        reconnect period, or until the CONNACK arrives. The sequence stops
        once connected or after `max_connection_attempts` attempts.

        An initial connect allocates a fresh transport, which is then kept
        for every retry of this call, and transport errors abort the
        sequence. During an auto reconnect the existing transport is reopened
        and its errors are ignored.
        A `disconnect()` during the sequence ends it without a further attempt.

        Args:
            hostname: The broker hostname, or a ws:// / wss:// URI.
            port: The broker port.
            connect_message: The CONNECT packet to send on each attempt.

        Returns:
            The final ConnectionStatus.

        Raises:
            NoConnectionError: On an initial connect whose transport fails, or
                               whose attempts are exhausted while no
                               `on_failed_connection_attempt` callback is set.
        """
        connection_attempts = 0
        auto_reconnect = self.auto_reconnect_in_progress
        self._disconnect_requested = False
        if self.verbose:
            log("MqttConnectionHandler:internal_connect entered")
        if not auto_reconnect:
            await self._close_connection()
            self.connection = self._create_connection()
            self.connection.on_message = self._message_received
            self.connection.on_disconnected = self._on_connection_lost
        while True:
            if self.verbose:
                log(
                    f"MqttConnectionHandler:internal_connect - initiating connection try "
                    f"{connection_attempts}, auto reconnect in progress {auto_reconnect}"
                )
            self.connection_status.update(ConnectionState.CONNECTING, ConnectReturnCode.NONE_SPECIFIED)

            transport_open = True
            try:
                if not auto_reconnect:
                    await self.connection.connect(hostname, port)
                else:
                    await self.connection.connect_auto(hostname, port)
            except Exception as e:
                if not auto_reconnect:
                    raise
                transport_open = False
                log(f"MqttConnectionHandler:internal_connect - exception during auto reconnect, ignoring: {e}")

            if transport_open:
                if self.verbose:
                    log("MqttConnectionHandler:internal_connect - sending connect message")
                try:
                    self.send_message(connect_message)
                except ConnectionError as e:
                    if not auto_reconnect:
                        raise
                    log(f"MqttConnectionHandler:internal_connect - connect message not sent during auto reconnect: {e}")

            if self.verbose:
                log(f"MqttConnectionHandler:internal_connect - pre sleep, {self.connection_status}")
            if not self._disconnect_requested:
                await self.connect_timer.sleep()
            if self._disconnect_requested:
                log("MqttConnectionHandler:internal_connect - disconnect requested, abandoning the connect sequence")
                return self.connection_status
            connection_attempts += 1
            if self.verbose:
                log(f"MqttConnectionHandler:internal_connect - post sleep, {self.connection_status}")

            if self.connection_status.state != ConnectionState.CONNECTED and not auto_reconnect:
                log(f"MqttConnectionHandler:internal_connect - failed, attempt {connection_attempts}")
                if self.on_failed_connection_attempt is not None:
                    self.on_failed_connection_attempt(connection_attempts)

            if (
                self.connection_status.state == ConnectionState.CONNECTED
                or connection_attempts >= self.max_connection_attempts
            ):
                break

        if self.connection_status.state != ConnectionState.CONNECTED and not auto_reconnect:
            log("MqttConnectionHandler:internal_connect - failed")
            if self.on_failed_connection_attempt is None:
                return_code = self.connection_status.return_code
                if return_code == ConnectReturnCode.NONE_SPECIFIED:
                    raise NoConnectionError(
                        f"The maximum allowed connection attempts ({self.max_connection_attempts}) were exceeded. "
                        "The broker is not responding to the connection request message "
                        "(Missing Connection Acknowledgement?)",
                        return_code,
                        self.max_connection_attempts,
                    )
                raise NoConnectionError(
                    f"The maximum allowed connection attempts ({self.max_connection_attempts}) were exceeded. "
                    "The broker is not responding to the connection request message correctly. "
                    f"The return code is {_return_code_name(return_code)}",
                    return_code,
                    self.max_connection_attempts,
                )
            self.connection_status.state = ConnectionState.FAULTED

        log(f"MqttConnectionHandler:internal_connect - exited with {self.connection_status}")
        self.initial_connection_complete = True
        return self.connection_status

    async def auto_reconnect(self, hostname: str, port: int, connect_message: ConnectMessage) -> ConnectionStatus:
        """
        Re-establishes a lost connection on the existing transport.

        Fires AUTO_RECONNECT before and AUTO_RECONNECTED after a successful
        sequence. A call made while another reconnect runs, or before any
        initial connection, returns the current status untouched.
        """
        if self.auto_reconnect_in_progress:
            log("MqttConnectionHandler:auto_reconnect - already in progress")
            return self.connection_status
        if not self.initial_connection_complete or self.connection is None:
            log("MqttConnectionHandler:auto_reconnect - no initial connection, not reconnecting")
            return self.connection_status
        self.auto_reconnect_in_progress = True
        try:
            if self.event_bus is not None:
                self.event_bus.fire(AUTO_RECONNECT)
            status = await self.internal_connect(hostname, port, connect_message)
            if status.state == ConnectionState.CONNECTED and self.event_bus is not None:
                self.event_bus.fire(AUTO_RECONNECTED)
        finally:
            self.auto_reconnect_in_progress = False
        return status

    async def disconnect(self) -> ConnectionStatus:
        """Sends DISCONNECT if connected, then closes the transport."""
        self._disconnect_requested = True
        self.connect_timer.cancel()
        if self.connection is not None:
            if self.connection_status.state == ConnectionState.CONNECTED:
                self.connection_status.state = ConnectionState.DISCONNECTING
                try:
                    self.send_message(MqttMessage.disconnect())
                except ConnectionError as e:
                    log(f"MqttConnectionHandler:disconnect - could not send disconnect: {e}")
            await self.connection.close()
        self.connection_status.state = ConnectionState.DISCONNECTED
        return self.connection_status


class MqttConnectionKeepAlive:
    """
    Keeps the broker connection alive.

    A ping request is sent every keep alive period while connected, and
    broker ping requests are answered. Ping responses update the round trip
    latency statistics. If a disconnect on no response period is set, a
    watchdog timer is armed after each ping; when it expires before the
    response arrives, NO_PING_RESPONSE is fired on the event bus. A ping that
    cannot be sent fires NO_MESSAGE_SENT instead.

    Sending a ping and answering a broker ping are serialised by a
    non-blocking lock: a firing that finds it held is dropped.

    Attributes:
        keep_alive_period (int): Ping interval in milliseconds.
        disconnect_on_no_response_period (int): Watchdog period in
            milliseconds, 0 disables the watchdog.
        ping_timer (Optional[Timer]): The heartbeat timer.
        disconnect_timer (Optional[Timer]): The watchdog timer.
        ping_callback (Optional[Callable]): Called after each ping request sent.
        pong_callback (Optional[Callable]): Called after each ping response received.
        last_cycle_latency (int): Latency of the last ping/pong cycle in ms.
        average_cycle_latency (int): Running mean of the cycle latencies in ms.
        last_ping_time (int): `ticks_ms()` of the last ping request sent.
    """

    def __init__(
        self,
        connection_handler: MqttConnectionHandler,
        event_bus: EventBus | None,
        keep_alive_seconds: int,
        disconnect_on_no_response_period: int = 0,
        verbose: int = 0,
    ):
        if keep_alive_seconds <= 0:
            raise ValueError("keep_alive_seconds must be positive")
        if disconnect_on_no_response_period < 0:
            raise ValueError("disconnect_on_no_response_period must not be negative")
        self._connection_handler = connection_handler
        self._event_bus = event_bus
        self.verbose = verbose
        self.keep_alive_period = keep_alive_seconds * 1000
        self.disconnect_on_no_response_period = disconnect_on_no_response_period * 1000
        self.ping_timer: Timer | None = None
        self.disconnect_timer: Timer | None = None
        self.ping_callback = None
        self.pong_callback = None
        self.last_cycle_latency = 0
        self.average_cycle_latency = 0
        self.last_ping_time = 0
        self._cycle_count = 0
        self._cycle_lock = threading.Lock()
        self._latency_lock = threading.Lock()

        connection_handler.register_for_message(MqttMessage.PINGREQ, self.ping_request_received)
        connection_handler.register_for_message(MqttMessage.PINGRESP, self.ping_response_received)
        connection_handler.register_for_all_sent_messages(self.message_sent)
        self.ping_timer = Timer(self.keep_alive_period, self.ping_required)

        log(f"KeepAlive: initialised with a keep alive value of {keep_alive_seconds} seconds")
        if disconnect_on_no_response_period == 0:
            log("KeepAlive: disconnect on no ping response is disabled")
        else:
            log(
                "KeepAlive: disconnect on no ping response is enabled with a value of "
                f"{disconnect_on_no_response_period} seconds"
            )

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def _connected(self) -> bool:
        return self._connection_handler.connection_status.state == ConnectionState.CONNECTED

    def ping_required(self) -> bool:
        """
        Heartbeat: pings the broker and re-arms the timers.

        Returns:
            True if a ping request was sent, False otherwise. A firing that
            overlaps another cycle returns False without touching any timer.
        """
        if not self._cycle_lock.acquire(blocking=False):
            if self.verbose:
                log("KeepAlive:ping_required - cycle in progress, skipping")
            return False
        try:
            pinged = False
            if self._connected():
                if self.verbose:
                    log("KeepAlive:ping_required - sending ping request")
                try:
                    self._connection_handler.send_message(MqttMessage.ping_request())
                except Exception as e:
                    log(f"KeepAlive:ping_required - exception occurred sending ping request: {e}")
                else:
                    pinged = True
                    self.last_ping_time = ticks_ms()
                    _invoke_callback(self.ping_callback)
            elif self.verbose:
                log("KeepAlive:ping_required - NOT sending ping, not connected")

            if self.ping_timer is not None:
                self.ping_timer.cancel()
            self.ping_timer = Timer(self.keep_alive_period, self.ping_required)

            if self.disconnect_on_no_response_period != 0:
                if self.disconnect_timer is None or not self.disconnect_timer.is_active:
                    if pinged:
                        if self.verbose:
                            log("KeepAlive:ping_required - starting disconnect timer")
                        self.disconnect_timer = Timer(
                            self.disconnect_on_no_response_period,
                            self.no_ping_response_received,
                        )
                    else:
                        self.no_message_sent()
                elif self.verbose:
                    log("KeepAlive:ping_required - disconnect timer is active, not restarting")
            return pinged
        finally:
            self._cycle_lock.release()

    def ping_request_received(self, message: MqttMessage | None = None) -> bool:
        """Answers a broker ping request with a ping response."""
        if self.verbose:
            log("KeepAlive:ping_request_received")
        if not self._cycle_lock.acquire(blocking=False):
            return False
        try:
            self._connection_handler.send_message(MqttMessage.ping_response())
        except Exception as e:
            log(f"KeepAlive:ping_request_received - could not send ping response: {e}")
            return False
        finally:
            self._cycle_lock.release()
        return True

    def ping_response_received(self, message: MqttMessage | None = None) -> bool:
        """Records the cycle latency and cancels the watchdog."""
        if self.verbose:
            log("KeepAlive:ping_response_received")
        with self._latency_lock:
            self.last_cycle_latency = ticks_diff(ticks_ms(), self.last_ping_time)
            self._cycle_count += 1
            # avg' = avg + (sample - avg) / n, truncated
            self.average_cycle_latency += _truncating_div(
                self.last_cycle_latency - self.average_cycle_latency, self._cycle_count
            )
        _invoke_callback(self.pong_callback)
        if self.disconnect_timer is not None:
            self.disconnect_timer.cancel()
        return True

    def message_sent(self, message: MqttMessage | None = None) -> bool:
        return True

    def stop(self):
        """Cancels both timers and resets the latency statistics."""
        log("KeepAlive:stop - stopping keep alive")
        if self.ping_timer is not None:
            self.ping_timer.cancel()
        if self.disconnect_timer is not None:
            self.disconnect_timer.cancel()
        with self._latency_lock:
            self.last_cycle_latency = 0
            self.average_cycle_latency = 0
            self._cycle_count = 0

    def no_ping_response_received(self):
        """Watchdog expiry: the broker did not answer the last ping in time."""
        self._signal_disconnect(NO_PING_RESPONSE, "no_ping_response_received")

    def no_message_sent(self):
        """A ping could not be sent."""
        self._signal_disconnect(NO_MESSAGE_SENT, "no_message_sent")

    def _signal_disconnect(self, signal: str, source: str):
        if not self._connected():
            log(f"KeepAlive:{source} - not disconnecting, not connected")
            return
        log(f"KeepAlive:{source} - connected, attempting to disconnect")
        if self._event_bus is None:
            log(f"KeepAlive:{source} - ERROR - disconnect event not fired, no event bus")
            return
        self._event_bus.fire(signal)
        if self.verbose:
            log(f"KeepAlive:{source} - OK - disconnect event fired")


class MqttStats:
    """
    Collects connection and keep-alive statistics.

    Attributes:
        max_list_size (int): Maximum number of RTT samples kept.
        connections_sent (int): Number of connect calls.
        connections_failed (int): Number of connect calls that did not connect.
        auto_reconnect_count (int): Number of auto reconnect sequences started.
        ping_sent_count (int): Number of PINGREQ packets sent.
        ping_received_count (int): Number of PINGRESP packets received.
        ping_rtt_ms_list (list[int]): Most recent ping round-trip times.
    """

    def __init__(self):
        self.max_list_size = 10
        self.connections_sent = 0
        self.connections_failed = 0
        self.auto_reconnect_count = 0
        self.ping_sent_count = 0
        self.ping_received_count = 0
        self.ping_rtt_ms_list = []

    def connect(self):
        self.connections_sent += 1

    def connect_fail(self):
        self.connections_failed += 1

    def auto_reconnect(self):
        self.auto_reconnect_count += 1

    def ping_sent(self):
        self.ping_sent_count += 1

    def ping_received(self, rtt_ms: int):
        self.ping_received_count += 1
        if len(self.ping_rtt_ms_list) >= self.max_list_size:
            self.ping_rtt_ms_list.pop(0)
        self.ping_rtt_ms_list.append(rtt_ms)

    def reset(self):
        self.connections_sent = 0
        self.connections_failed = 0
        self.auto_reconnect_count = 0
        self.ping_sent_count = 0
        self.ping_received_count = 0
        self.ping_rtt_ms_list.clear()

    def get_stats(self) -> dict:
        ping_rtt_ms = (
            sum(self.ping_rtt_ms_list) / len(self.ping_rtt_ms_list)
            if self.ping_rtt_ms_list
            else 0
        )
        return {
            "connections_sent": self.connections_sent,
            "connections_failed": self.connections_failed,
            "auto_reconnect_count": self.auto_reconnect_count,
            "ping_sent_count": self.ping_sent_count,
            "ping_received_count": self.ping_received_count,
            "ping_rtt_ms": int(ping_rtt_ms),
        }


class MqttClient:
    """
    An asynchronous MQTT client connection.

    The client connects to one broker, keeps the connection alive and
    reacts to keep-alive failures by disconnecting, or by reconnecting when
    `auto_reconnect` is set.

    Attributes:
        client_id (str): The client ID for the MQTT connection.
        server (str): The broker hostname, or a ws:// / wss:// URI.
        port (int): The broker port.
        keepalive (int): Keep-alive interval in seconds, 0 disables pings.
        disconnect_on_no_response_period (int): Seconds to wait for a ping
            response before treating the broker as gone, 0 disables.
        auto_reconnect (bool): Reconnect automatically after a connection loss.
        verbose (int): Verbosity level for logging (0: off, 1: info, 2: debug).
        stats (MqttStats): Connection and ping statistics.
        event_bus (EventBus): Signals between the keep-alive and the client.
        connection_handler (MqttConnectionHandler): Runs the connect sequence.
        keep_alive (Optional[MqttConnectionKeepAlive]): Active while connected.
        on_connected (Optional[Callable]): Called after a successful connect.
        on_disconnected (Optional[Callable]): Called after the client disconnected.
        on_auto_reconnect (Optional[Callable]): Called when an auto reconnect starts.
        on_auto_reconnected (Optional[Callable]): Called when an auto reconnect succeeded.
        ping_callback (Optional[Callable]): Called after each ping request sent.
        pong_callback (Optional[Callable]): Called with the latency of each ping cycle.
    """

    def __init__(
        self,
        server: str,
        port: int = 1883,
        client_id: str | None = None,
        user: str | None = None,
        password: str | None = None,
        keepalive: int = 60,
        disconnect_on_no_response_period: int = 0,
        max_connection_attempts: int = 3,
        reconnect_time_period: int = 5000,
        secure: bool = False,
        security_context: ssl.SSLContext | None = None,
        on_bad_certificate=None,
        use_websocket: bool = False,
        use_alternate_websocket_implementation: bool = False,
        websocket_path: str | None = None,
        websocket_protocols: list | None = None,
        websocket_headers: dict | None = None,
        socket_timeout: float | None = None,
        auto_reconnect: bool = False,
        clean_session: bool = True,
        will_topic: str | None = None,
        will_message: str | bytes | None = None,
        will_qos: int = 0,
        will_retain: bool = False,
        verbose: int = 0,
        stats: MqttStats | None = None,
    ):
        self.client_id = (
            client_id if client_id and len(client_id) >= 2 else generate_client_id()
        )
        self.server = server
        self.port = port
        self.user = user
        self.password = password
        self.keepalive = keepalive
        self.disconnect_on_no_response_period = disconnect_on_no_response_period
        self.auto_reconnect = auto_reconnect
        self.clean_session = clean_session
        self.will_topic = will_topic
        self.will_message = will_message
        self.will_qos = will_qos
        self.will_retain = will_retain
        self.verbose = verbose
        self.stats: MqttStats = stats or MqttStats()

        self.event_bus = EventBus()
        handler = MqttConnectionHandler(
            self.event_bus,
            max_connection_attempts=max_connection_attempts,
            reconnect_time_period=reconnect_time_period,
            socket_timeout=socket_timeout,
            websocket_path=websocket_path,
            verbose=verbose,
        )
        handler.secure = secure
        handler.security_context = security_context
        handler.on_bad_certificate = on_bad_certificate
        handler.use_websocket = use_websocket
        handler.use_alternate_websocket_implementation = use_alternate_websocket_implementation
        handler.websocket_protocols = websocket_protocols
        handler.websocket_headers = websocket_headers
        handler.on_disconnected = self._connection_lost
        self.connection_handler = handler
        self.keep_alive: MqttConnectionKeepAlive | None = None

        self.on_connected = None
        self.on_disconnected = None
        self.on_auto_reconnect = None
        self.on_auto_reconnected = None
        self.ping_callback = None
        self.pong_callback = None

        self._recovery_task = None
        self._disconnect_requested = False

        self.event_bus.on(NO_PING_RESPONSE, self._no_ping_response)
        self.event_bus.on(NO_MESSAGE_SENT, self._no_message_sent)
        self.event_bus.on(AUTO_RECONNECT, self._auto_reconnect_started)
        self.event_bus.on(AUTO_RECONNECTED, self._auto_reconnect_done)

    def __repr__(self) -> str:
        return f"MqttClient(client_id='{self.client_id}', server='{self.server}', port={self.port})"

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.connection_handler.connection_status

    @property
    def connected(self) -> bool:
        return self.connection_status.state == ConnectionState.CONNECTED

    @property
    def on_failed_connection_attempt(self):
        return self.connection_handler.on_failed_connection_attempt

    @on_failed_connection_attempt.setter
    def on_failed_connection_attempt(self, callback):
        self.connection_handler.on_failed_connection_attempt = callback

    @property
    def last_cycle_latency(self) -> int:
        return self.keep_alive.last_cycle_latency if self.keep_alive else 0

    @property
    def average_cycle_latency(self) -> int:
        return self.keep_alive.average_cycle_latency if self.keep_alive else 0

    def _connect_message(self) -> ConnectMessage:
        return ConnectMessage(
            self.client_id,
            self.user,
            self.password,
            self.keepalive,
            self.clean_session,
            self.will_topic,
            self.will_message,
            self.will_qos,
            self.will_retain,
        )

    async def connect(self) -> ConnectionStatus:
        """
        Connects to the broker and starts the keep-alive.

        Returns:
            The resulting ConnectionStatus. Its state is CONNECTED on success
            and FAULTED when the attempts ran out while an
            `on_failed_connection_attempt` callback is set.

        Raises:
            NoConnectionError: If the transport failed, or the broker never
                               accepted the connection and no
                               `on_failed_connection_attempt` callback is set.
        """
        if self.connected:
            return self.connection_status
        self._disconnect_requested = False
        log(f"MqttClient:connect - connecting to {self.server}:{self.port}")
        self.stats.connect()
        try:
            status = await self.connection_handler.connect(self.server, self.port, self._connect_message())
        except Exception as e:
            self.stats.connect_fail()
            log(f"MqttClient:connect failed: {type(e).__name__}: {e}")
            raise
        if status.state != ConnectionState.CONNECTED:
            self.stats.connect_fail()
            log(f"MqttClient:connect failed, {status}")
            return status
        self._start_keep_alive()
        _invoke_callback(self.on_connected)
        return status

    async def disconnect(self) -> ConnectionStatus:
        """Stops the keep-alive and any reconnect in progress, then disconnects."""
        log("MqttClient:disconnect - disconnecting")
        self._disconnect_requested = True
        task = self._recovery_task
        self._recovery_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._stop_keep_alive()
        status = await self.connection_handler.disconnect()
        _invoke_callback(self.on_disconnected)
        return status

    def _start_keep_alive(self):
        self._stop_keep_alive()
        if self.keepalive <= 0:
            return
        keep_alive = MqttConnectionKeepAlive(
            self.connection_handler,
            self.event_bus,
            self.keepalive,
            self.disconnect_on_no_response_period,
            self.verbose,
        )
        keep_alive.ping_callback = self._ping_sent
        keep_alive.pong_callback = self._pong_received
        self.keep_alive = keep_alive

    def _stop_keep_alive(self):
        if self.keep_alive is None:
            return
        self.keep_alive.stop()
        self.connection_handler.unregister_for_message(MqttMessage.PINGREQ)
        self.connection_handler.unregister_for_message(MqttMessage.PINGRESP)
        self.connection_handler.unregister_for_all_sent_messages(self.keep_alive.message_sent)
        self.keep_alive = None

    def _ping_sent(self):
        self.stats.ping_sent()
        _invoke_callback(self.ping_callback)

    def _pong_received(self):
        latency = self.keep_alive.last_cycle_latency if self.keep_alive else 0
        self.stats.ping_received(latency)
        _invoke_callback(self.pong_callback, latency)

    def _no_ping_response(self):
        self._schedule_recovery("no ping response")

    def _no_message_sent(self):
        self._schedule_recovery("no message sent")

    def _connection_lost(self):
        self._schedule_recovery("connection closed by broker")

    def _auto_reconnect_started(self):
        _invoke_callback(self.on_auto_reconnect)

    def _auto_reconnect_done(self):
        _invoke_callback(self.on_auto_reconnected)

    def _schedule_recovery(self, reason: str):
        if self._recovery_task is not None and not self._recovery_task.done():
            if self.verbose:
                log(f"MqttClient: recovery already in progress, ignoring {reason}")
            return
        self._recovery_task = _spawn(self._recover(reason))

    async def _recover(self, reason: str):
        log(f"MqttClient: connection lost ({reason})")
        self._stop_keep_alive()
        if self.auto_reconnect and not self._disconnect_requested:
            await self._auto_reconnect()
        else:
            await self.disconnect()

    async def _auto_reconnect(self):
        connect_message = self._connect_message()
        while not self._disconnect_requested:
            self.stats.auto_reconnect()
            status = await self.connection_handler.auto_reconnect(self.server, self.port, connect_message)
            if status.state == ConnectionState.CONNECTED:
                log("MqttClient: auto reconnect successful")
                self._start_keep_alive()
                return
            if not self.connection_handler.initial_connection_complete:
                return
            log("MqttClient: auto reconnect failed, retrying")
