import logging
import socket
import threading
import time

import pytest

from ntrip_request import ConnectionParameters
from rtcm_parser import RTCM3Parser


class FakeSocket:
    """Scripted stand-in for a connected, non-blocking caster socket"""

    def __init__(self, recv_script=()):
        self.recv_script = list(recv_script)
        self.recv_calls = 0
        self.sent = []
        self.options = {}
        self.blocking = True
        self.close_count = 0
        self.shutdown_count = 0
        self.send_error = None
        self.recv_error = None
        self.peer_closed = False

    def setblocking(self, flag):
        self.blocking = flag

    def setsockopt(self, level, option, value):
        self.options[(level, option)] = value

    def sendall(self, data):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(bytes(data))

    def recv(self, size):
        self.recv_calls += 1
        if self.recv_script:
            item = self.recv_script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        if self.recv_error is not None:
            raise self.recv_error
        if self.peer_closed:
            return b""
        raise BlockingIOError()

    def shutdown(self, how):
        self.shutdown_count += 1

    def close(self):
        self.close_count += 1


class MockCaster:
    """Single-connection NTRIP caster listening on localhost"""

    def __init__(self, response=b"ICY 200 OK\r\n", close_on_accept=False):
        self.response = response
        self.close_on_accept = close_on_accept
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server.bind(('127.0.0.1', 0))
        self.server.listen(1)
        self.port = self.server.getsockname()[1]

        self.request = b""
        self.received = bytearray()
        self.request_received = threading.Event()
        self.peer_closed = threading.Event()
        self._drop = threading.Event()
        self._stop = threading.Event()
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        self.server.settimeout(0.1)
        conn = None
        while conn is None and not self._stop.is_set():
            try:
                conn, _ = self.server.accept()
            except socket.timeout:
                continue
        if conn is None:
            return

        if self.close_on_accept:
            conn.close()
            return

        conn.settimeout(0.05)
        buffer = b""
        try:
            while not self._stop.is_set() and not self._drop.is_set():
                try:
                    data = conn.recv(4096)
                except socket.timeout:
                    continue
                if not data:
                    self.peer_closed.set()
                    break

                if self.request_received.is_set():
                    self.received.extend(data)
                    continue

                buffer += data
                if b"\r\n\r\n" in buffer:
                    self.request, rest = buffer.split(b"\r\n\r\n", 1)
                    self.request += b"\r\n\r\n"
                    self.received.extend(rest)
                    self.request_received.set()
                    if self.response:
                        conn.sendall(self.response)
        finally:
            conn.close()

    def drop(self):
        """Close the caster side of the connection"""
        self._drop.set()

    def close(self):
        self._stop.set()
        self.thread.join(timeout=2.0)
        self.server.close()


def _wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def params():
    return ConnectionParameters(
        caster_host='127.0.0.1',
        caster_port=2101,
        mountpoint='BASE',
        username='user',
        password='secret',
        ntrip_str='STR;BASE;Base;RTCM 3.3;1005(10);2;GPS;FKA;USA;0.00;0.00;0;0;LC29H;none;B;N;9600',
        user_agent='NTRIP Test/1.0'
    )


@pytest.fixture
def mock_caster():
    casters = []

    def factory(**kwargs):
        caster = MockCaster(**kwargs)
        casters.append(caster)
        return caster

    yield factory
    for caster in casters:
        caster.close()


@pytest.fixture
def fake_socket():
    return FakeSocket


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def _make_frame(msg_type, body=b'\x00' * 8):
    payload = bytes([msg_type >> 4, (msg_type & 0x0F) << 4]) + body
    header = bytes([0xD3, (len(payload) >> 8) & 0x03, len(payload) & 0xFF])
    crc = RTCM3Parser.crc24q(header + payload)
    return header + payload + crc.to_bytes(3, 'big')


@pytest.fixture
def rtcm_frame():
    """Build a valid RTCM3 frame: rtcm_frame(msg_type, body=...)"""
    return _make_frame
