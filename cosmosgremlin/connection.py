"""Websocket connection used to talk to a Gremlin server."""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Mapping, Optional, Protocol

import websocket as _websocket

# Websocket message types (frame opcodes).
TEXT_MESSAGE = 1
BINARY_MESSAGE = 2
CLOSE_MESSAGE = 8
PING_MESSAGE = 9
PONG_MESSAGE = 10

CLOSE_NORMAL_CLOSURE = 1000

ORIGIN_HEADER = "Origin"


class ConnectivityError(Exception):
    """The connection to the peer failed or could not be established.

    ``response`` holds the server's handshake response when one was received.
    """

    def __init__(self, message: str, response: Any = None) -> None:
        super().__init__(message)
        self.response = response


class NoConnectionError(ConnectivityError):
    """An operation needs an open connection, but there is none."""

    def __init__(self, message: str = "no connection") -> None:
        super().__init__(message)


class WebsocketConnection(Protocol):
    """The operations needed from an open websocket."""

    def settimeout(self, timeout: Optional[float]) -> None: ...

    def send_binary(self, payload: bytes) -> Any: ...

    def recv_data(self) -> tuple[int, bytes]: ...

    def ping(self, payload: bytes) -> Any: ...

    def send_close(self, status: int, reason: bytes) -> Any: ...

    def shutdown(self) -> Any: ...


Dial = Callable[[str, Mapping[str, str]], WebsocketConnection]
DialerFactory = Callable[[int, int, float], Dial]


@dataclass(frozen=True)
class _HandshakeResponse:
    status: str
    body: Optional[bytes]


def extract_connection_error(response: Any) -> Optional[str]:
    """Describe a failed handshake response, or return None without one.

    ``response`` needs a ``status`` text and may carry a ``body`` given as
    bytes, text or a readable object.
    """
    if response is None:
        return None
    status = str(response.status)
    body = getattr(response, "body", None)
    if body is None:
        return status
    if hasattr(body, "read"):
        try:
            body = body.read()
        except OSError:
            return status
    text = body.decode("utf-8", errors="replace") if isinstance(body, (bytes, bytearray)) else str(body)
    if not text:
        return status
    return f"{status}: {text}"


def _status_line(code: int) -> str:
    try:
        return f"{code} {HTTPStatus(code).phrase}"
    except ValueError:
        return str(code)


def default_dialer_factory(write_buffer_size: int, read_buffer_size: int, handshake_timeout: float) -> Dial:
    """Create a dial function backed by the websocket-client library."""
    sockopt = (
        (socket.SOL_SOCKET, socket.SO_SNDBUF, write_buffer_size),
        (socket.SOL_SOCKET, socket.SO_RCVBUF, read_buffer_size),
    )

    def dial(url: str, headers: Mapping[str, str]) -> WebsocketConnection:
        try:
            return _websocket.create_connection(
                url,
                timeout=handshake_timeout,
                header=dict(headers),
                sockopt=sockopt,
            )
        except _websocket.WebSocketBadStatusException as err:
            body = getattr(err, "resp_body", None)
            response = _HandshakeResponse(_status_line(err.status_code), body)
            raise ConnectivityError(str(err), response=response) from err

    return dial


class WebsocketDialer:
    """Opens and uses one websocket connection to a Gremlin server.

    Reads and writes may run on different threads; only one reader and one
    writer use the connection at a time.
    """

    def __init__(
        self,
        host: str,
        timeout: float = 5.0,
        writing_wait: float = 15.0,
        reading_wait: float = 15.0,
        read_buffer_size: int = 8192,
        write_buffer_size: int = 8192,
        dialer_factory: Optional[DialerFactory] = default_dialer_factory,
    ) -> None:
        if not host.startswith(("ws://", "wss://")):
            raise ValueError(f"host '{host}' is invalid, expected protocol 'ws://' or 'wss://' missing")
        if read_buffer_size <= 0:
            raise ValueError(f"invalid size for read buffer: {read_buffer_size}")
        if write_buffer_size <= 0:
            raise ValueError(f"invalid size for write buffer: {write_buffer_size}")
        if dialer_factory is None:
            raise ValueError("the factory for websocket dialers is None")

        self.host = host
        self.timeout = timeout
        self.writing_wait = writing_wait
        self.reading_wait = reading_wait
        self.read_buffer_size = read_buffer_size
        self.write_buffer_size = write_buffer_size
        self.dialer_factory = dialer_factory

        self._conn: Optional[WebsocketConnection] = None
        self._connected = False
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def connect(self) -> None:
        """Open the connection; must be called before reading or writing."""
        dial = self.dialer_factory(self.write_buffer_size, self.read_buffer_size, self.timeout)
        try:
            conn = dial(self.host, {})
        except Exception as err:
            self._set_connection(None)
            message = (
                f"dialing '{self.host}' failed with {err}. "
                "Probably '/gremlin' has to be added to the used hostname."
            )
            detail = extract_connection_error(getattr(err, "response", None))
            if detail is not None:
                message += f" Details: {detail}"
            raise ConnectivityError(message) from err
        self._set_connection(conn)

    def _set_connection(self, conn: Optional[WebsocketConnection]) -> None:
        with self._write_lock, self._read_lock:
            self._conn = conn
            self._connected = conn is not None

    def is_connected(self) -> bool:
        """Whether the websocket is connected."""
        return self._connected

    def write(self, msg: bytes) -> None:
        """Send one binary message."""
        if not self.is_connected():
            raise NoConnectionError()
        with self._write_lock:
            conn = self._conn
            if conn is None:
                raise NoConnectionError()
            conn.settimeout(self.writing_wait)
            conn.send_binary(msg)

    def read(self) -> tuple[int, bytes]:
        """Receive one message and return its type and data."""
        if not self.is_connected():
            raise NoConnectionError()
        with self._read_lock:
            conn = self._conn
            if conn is None:
                raise NoConnectionError()
            conn.settimeout(self.reading_wait)
            return conn.recv_data()

    def close(self) -> None:
        """Close the connection cleanly; does nothing when not connected."""
        with self._write_lock:
            if not self.is_connected() or self._conn is None:
                return
            conn = self._conn
            try:
                conn.send_close(CLOSE_NORMAL_CLOSURE, b"")
            finally:
                conn.shutdown()
                self._connected = False

    def ping(self) -> None:
        """Send a ping frame; a failure marks the websocket as disconnected."""
        if not self.is_connected():
            raise NoConnectionError()
        failure: Optional[Exception] = None
        with self._write_lock:
            conn = self._conn
            if conn is None:
                raise NoConnectionError()
            try:
                conn.settimeout(self.writing_wait)
                conn.ping(b"")
            except Exception as err:
                failure = err
        if failure is not None:
            self._set_connection(None)
            raise ConnectivityError(f"ping failed: {failure}") from failure