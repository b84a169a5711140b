import io
import threading
import time
from types import SimpleNamespace

import pytest

from cosmosgremlin.connection import (
    BINARY_MESSAGE,
    CLOSE_NORMAL_CLOSURE,
    ConnectivityError,
    NoConnectionError,
    WebsocketDialer,
    extract_connection_error,
)


class FakeConnection:
    def __init__(self, fail_ping=False, write_delay=0.0, close_delay=0.0):
        self.calls = []
        self.fail_ping = fail_ping
        self.write_delay = write_delay
        self.close_delay = close_delay
        self.sending = False
        self.overlap = False
        self.incoming = (BINARY_MESSAGE, b"")

    def _busy(self, delay):
        if self.sending:
            self.overlap = True
        self.sending = True
        time.sleep(delay)
        self.sending = False

    def settimeout(self, timeout):
        self.calls.append(("settimeout", timeout))

    def send_binary(self, payload):
        self.calls.append(("send_binary", payload))
        self._busy(self.write_delay)

    def recv_data(self):
        self.calls.append(("recv_data",))
        return self.incoming

    def ping(self, payload):
        self.calls.append(("ping", payload))
        if self.fail_ping:
            raise OSError("ERROR")

    def send_close(self, status, reason):
        self.calls.append(("send_close", status, reason))

    def shutdown(self):
        self.calls.append(("shutdown",))
        self._busy(self.close_delay)


def factory_for(conn, fail=False, response=None):
    def factory(write_size, read_size, timeout):
        def dial(url, headers):
            if fail:
                err = OSError("Timeout")
                err.response = response
                raise err
            return conn

        return dial

    return factory


def connected_dialer(conn):
    dialer = WebsocketDialer("ws://localhost", dialer_factory=factory_for(conn))
    dialer.connect()
    return dialer


def test_new_websocket_defaults():
    dialer = WebsocketDialer("ws://localhost")
    assert dialer.host == "ws://localhost"
    assert dialer.read_buffer_size == 8192
    assert dialer.write_buffer_size == 8192
    assert dialer.timeout == 5.0
    assert dialer.is_connected() is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"host": "invalid host"},
        {"host": "ws://host", "read_buffer_size": 0, "write_buffer_size": 10},
        {"host": "ws://host", "read_buffer_size": 10, "write_buffer_size": 0},
        {"host": "ws://host", "dialer_factory": None},
    ],
)
def test_new_websocket_fail(kwargs):
    with pytest.raises(ValueError):
        WebsocketDialer(**kwargs)


def test_connect():
    dialer = connected_dialer(FakeConnection())
    assert dialer.is_connected() is True


def test_connect_fail():
    dialer = WebsocketDialer("ws://localhost", dialer_factory=factory_for(None, fail=True))
    with pytest.raises(ConnectivityError) as info:
        dialer.connect()
    assert "ws://localhost" in str(info.value)
    assert "/gremlin" in str(info.value)
    assert dialer.is_connected() is False


def test_connect_fail_with_response_details():
    response = SimpleNamespace(status="401 Unauthorized", body=b"bad credentials")
    dialer = WebsocketDialer(
        "ws://localhost", dialer_factory=factory_for(None, fail=True, response=response)
    )
    with pytest.raises(ConnectivityError) as info:
        dialer.connect()
    assert "Details: 401 Unauthorized: bad credentials" in str(info.value)


def test_connect_reconnect():
    conn = FakeConnection()
    dialer = connected_dialer(conn)
    assert dialer.is_connected() is True

    dialer.dialer_factory = factory_for(conn, fail=True)
    with pytest.raises(ConnectivityError):
        dialer.connect()
    assert dialer.is_connected() is False


def test_connect_close():
    conn = FakeConnection()
    dialer = connected_dialer(conn)
    dialer.close()
    assert ("send_close", CLOSE_NORMAL_CLOSURE, b"") in conn.calls
    assert conn.calls[-1] == ("shutdown",)


def test_close_on_not_connected_websocket():
    conn = FakeConnection()
    dialer = WebsocketDialer("ws://localhost", dialer_factory=factory_for(conn))
    dialer.close()
    assert conn.calls == []


def test_ping():
    conn = FakeConnection()
    dialer = connected_dialer(conn)
    dialer.ping()
    assert ("ping", b"") in conn.calls
    assert dialer.is_connected() is True


def test_ping_fail():
    conn = FakeConnection(fail_ping=True)
    dialer = connected_dialer(conn)
    with pytest.raises(ConnectivityError):
        dialer.ping()
    assert dialer.is_connected() is False


def test_ping_fail_when_not_connected():
    dialer = WebsocketDialer("ws://localhost")
    with pytest.raises(NoConnectionError):
        dialer.ping()
    assert dialer.is_connected() is False


def test_write():
    conn = FakeConnection()
    dialer = connected_dialer(conn)
    dialer.write(b"hello")
    assert conn.calls == [("settimeout", 15.0), ("send_binary", b"hello")]


def test_read():
    conn = FakeConnection()
    conn.incoming = (5, b"hello")
    dialer = connected_dialer(conn)
    assert dialer.read() == (5, b"hello")
    assert conn.calls[0] == ("settimeout", 15.0)


def test_write_and_read_not_connected():
    dialer = WebsocketDialer("ws://localhost")
    with pytest.raises(NoConnectionError):
        dialer.write(b"hello")
    with pytest.raises(NoConnectionError):
        dialer.read()


def test_multi_reconnect_and_parallel_read():
    conn = FakeConnection()
    dialer = WebsocketDialer("ws://localhost", dialer_factory=factory_for(conn))
    stop = threading.Event()
    unexpected = []

    def worker():
        while not stop.is_set():
            try:
                dialer.ping()
                dialer.read()
                dialer.write(b"HUHU")
            except NoConnectionError:
                pass
            except Exception as err:  # noqa: BLE001
                unexpected.append(err)

    thread = threading.Thread(target=worker)
    thread.start()
    try:
        for _ in range(100):
            dialer.connect()
            assert dialer.is_connected() is True
    finally:
        stop.set()
        thread.join()
    assert unexpected == []


def test_extract_connection_error():
    assert extract_connection_error(None) is None
    assert extract_connection_error(SimpleNamespace(status="500 Internal Server Error")) == (
        "500 Internal Server Error"
    )
    assert extract_connection_error(SimpleNamespace(status="404 Not Found", body=io.BytesIO(b""))) == (
        "404 Not Found"
    )
    assert extract_connection_error(
        SimpleNamespace(status="404 Not Found", body=io.BytesIO(b"hello"))
    ) == "404 Not Found: hello"


def test_concurrent_write_and_close_on_connection():
    conn = FakeConnection(write_delay=0.3, close_delay=0.001)
    dialer = connected_dialer(conn)

    writer = threading.Thread(target=dialer.write, args=(b"HUHU",))
    writer.start()
    time.sleep(0.05)
    dialer.close()
    writer.join()

    assert conn.overlap is False
    names = [call[0] for call in conn.calls]
    assert names.index("send_binary") < names.index("shutdown")