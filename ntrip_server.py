#!/usr/bin/env python3
"""
NTRIP Server for RTK Base Station
Uploads RTCM3 corrections from the base receiver to an NTRIP v2 caster
"""

import socket
import threading
import logging
import time
from enum import Enum
from typing import Callable, Optional
from datetime import datetime

from ntrip_request import ConnectionParameters, build_handshake, encode_chunk, END_CHUNK
from outbound_queue import OutboundQueue

logger = logging.getLogger(__name__)

ACCEPT_LINE = b"ICY 200 OK\r\n"
HANDSHAKE_ATTEMPTS = 3
HANDSHAKE_INTERVAL = 1.0
RECV_SIZE = 1024

# TCP keepalive: probe after 30s idle, every 5s, give up after 3 misses
KEEPALIVE_IDLE = 30
KEEPALIVE_INTERVAL = 5
KEEPALIVE_COUNT = 3


class NTRIPError(Exception):
    """Base class for caster connection failures"""


class ConnectFailure(NTRIPError):
    """Socket could not be created or connected"""


class SendFailure(NTRIPError):
    """Handshake or correction data could not be written"""


class AuthRejected(NTRIPError):
    """Caster did not answer with the acceptance line"""


class PeerClosed(NTRIPError):
    """Caster closed the connection"""


class SocketFailure(NTRIPError):
    """Non-transient socket error while reading"""


class RunState(Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'


class NTRIPSession:
    """Owns the caster socket from connect through handshake to close"""

    def __init__(self, params: ConnectionParameters, connect_timeout: float = 10.0,
                 handshake_attempts: int = HANDSHAKE_ATTEMPTS,
                 handshake_interval: float = HANDSHAKE_INTERVAL,
                 socket_factory: Callable = socket.create_connection,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize caster session

        Args:
            params: Caster connection parameters
            connect_timeout: Seconds allowed for the TCP connect
            handshake_attempts: Reads made while waiting for acceptance
            handshake_interval: Seconds slept after each unanswered read
            socket_factory: Called as factory((host, port), timeout)
            sleep: Sleep function used while waiting for acceptance
        """
        self.params = params
        self.connect_timeout = connect_timeout
        self.handshake_attempts = handshake_attempts
        self.handshake_interval = handshake_interval
        self._socket_factory = socket_factory
        self._sleep = sleep
        self._lock = threading.Lock()
        self.sock: Optional[socket.socket] = None
        self.is_connected = False
        self.is_authenticated = False

    def open(self):
        """
        Connect, send the handshake and wait for the caster to accept

        Raises:
            NTRIPError: Any failure; the socket is closed before raising
        """
        request = build_handshake(self.params)
        self._connect()
        try:
            self._send_handshake(request)
            self._await_acceptance()
        except NTRIPError:
            self.close()
            raise

        self._configure_keepalive()
        self.is_authenticated = True

    def _connect(self):
        host, port = self.params.caster_host, self.params.caster_port
        logger.info(f"Connecting to caster {host}:{port}...")
        try:
            sock = self._socket_factory((host, port), self.connect_timeout)
        except OSError as e:
            raise ConnectFailure(f"Connect to {host}:{port} failed: {e}") from e

        with self._lock:
            self.sock = sock
            self.is_connected = True

    def _send_handshake(self, request: bytes):
        try:
            self.sock.setblocking(False)
            self.sock.sendall(request)
        except OSError as e:
            raise SendFailure(f"Send authentication request failed: {e}") from e

    def _await_acceptance(self):
        response = b""
        for attempt in range(1, self.handshake_attempts + 1):
            try:
                data = self.sock.recv(RECV_SIZE)
            except (BlockingIOError, InterruptedError):
                data = None
            except OSError as e:
                raise SocketFailure(f"Socket error during handshake: {e}") from e

            if data == b"":
                raise PeerClosed("Caster closed the connection during handshake")

            if data:
                response += data
                if response.startswith(ACCEPT_LINE):
                    logger.info(f"Caster accepted upload to /{self.params.mountpoint}")
                    return
                # Keep reading only while the reply could still become the acceptance line
                if not ACCEPT_LINE.startswith(response):
                    status = response.split(b"\r\n", 1)[0].decode('ascii', errors='replace')
                    raise AuthRejected(f"Caster rejected upload: {status}")

            logger.debug(f"Waiting for caster response ({attempt}/{self.handshake_attempts})")
            self._sleep(self.handshake_interval)

        raise AuthRejected(f"No response from caster after {self.handshake_attempts} attempts")

    def _configure_keepalive(self):
        try:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            for name, value in (('TCP_KEEPIDLE', KEEPALIVE_IDLE),
                                ('TCP_KEEPINTVL', KEEPALIVE_INTERVAL),
                                ('TCP_KEEPCNT', KEEPALIVE_COUNT)):
                option = getattr(socket, name, None)
                if option is not None:
                    self.sock.setsockopt(socket.IPPROTO_TCP, option, value)
        except OSError as e:
            logger.warning(f"Could not configure TCP keepalive: {e}")

    def recv(self) -> Optional[bytes]:
        """
        Non-blocking read from the caster

        Returns:
            Received bytes, or None if nothing is available yet

        Raises:
            PeerClosed: Caster closed the connection
            SocketFailure: Any other socket error
        """
        sock = self.sock
        if sock is None:
            raise SocketFailure("Socket is closed")
        try:
            data = sock.recv(RECV_SIZE)
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as e:
            raise SocketFailure(f"Remote socket error: {e}") from e

        if not data:
            raise PeerClosed("Remote socket closed")
        return data

    def send(self, data: bytes):
        """Write all of data to the caster, raising SendFailure on any error"""
        sock = self.sock
        if sock is None:
            raise SendFailure("Socket is closed")
        try:
            sock.sendall(data)
        except OSError as e:
            raise SendFailure(f"Send to caster failed: {e}") from e

    def shutdown(self):
        """Shut the socket down so pending reads and writes return"""
        with self._lock:
            if self.sock is None:
                return
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Socket shutdown: {e}")

    def close(self):
        """Close the socket; closing an already closed session does nothing"""
        with self._lock:
            sock = self.sock
            self.sock = None
            self.is_connected = False
            self.is_authenticated = False
        if sock is not None:
            sock.close()
            logger.debug("Caster socket closed")


class NTRIPServer:
    """NTRIP server uploading RTK corrections to a caster mountpoint"""

    def __init__(self, params: Optional[ConnectionParameters] = None,
                 queue: Optional[OutboundQueue] = None,
                 poll_interval: float = 0.01, join_timeout: float = 2.0,
                 on_disconnect: Optional[Callable[[NTRIPError], None]] = None,
                 session_factory: Callable[[ConnectionParameters], NTRIPSession] = NTRIPSession):
        """
        Initialize NTRIP server

        Args:
            params: Caster connection parameters (or call configure() later)
            queue: Outbound correction queue (default: 1024 chunks, drop oldest)
            poll_interval: Sleep between monitor loop iterations in seconds
            join_timeout: How long stop() waits for the monitor thread
            on_disconnect: Called with the failure when the connection dies
            session_factory: Builds the session for each run()
        """
        self.params = params
        self.queue = queue if queue is not None else OutboundQueue()
        self.poll_interval = poll_interval
        self.join_timeout = join_timeout
        self.on_disconnect = on_disconnect
        self._session_factory = session_factory

        self._state_lock = threading.Lock()
        self._state = RunState.STOPPED
        self._session: Optional[NTRIPSession] = None
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._thread_active = threading.Event()

        self.last_error: Optional[str] = None
        self.connected_at: Optional[datetime] = None
        self.bytes_sent = 0
        self.chunks_sent = 0

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    def is_running(self) -> bool:
        """True while a session is streaming to the caster"""
        return self.state == RunState.RUNNING

    @property
    def thread_active(self) -> bool:
        return self._thread_active.is_set()

    def configure(self, params: ConnectionParameters):
        """Set caster connection parameters for the next run()"""
        with self._state_lock:
            if self._state != RunState.STOPPED:
                raise RuntimeError("Cannot reconfigure a running NTRIP server")
            self.params = params

    def run(self, params: Optional[ConnectionParameters] = None) -> bool:
        """
        Connect to the caster and start uploading corrections

        Args:
            params: Optional parameters replacing the configured ones

        Returns:
            True if the caster accepted the upload and the monitor thread
            started; False on any connection or handshake failure

        Raises:
            RuntimeError: Already starting or running, or never configured
        """
        with self._state_lock:
            if self._state != RunState.STOPPED:
                raise RuntimeError("NTRIP server is already running")
            if params is not None:
                self.params = params
            if self.params is None:
                raise RuntimeError("NTRIP server has no connection parameters")
            self._state = RunState.STARTING
            stop_event = self._stop_event = threading.Event()
            previous_thread = self._monitor_thread
            params = self.params
            self.queue.clear()

        # A monitor that died on its own may still be finishing up
        if previous_thread is not None and previous_thread is not threading.current_thread():
            previous_thread.join(timeout=self.join_timeout)

        session = self._session_factory(params)
        try:
            session.open()
        except NTRIPError as e:
            logger.error(f"Failed to start NTRIP server: {e}")
            with self._state_lock:
                # A newer run() may own the controller after stop() cancelled this one
                if self._stop_event is stop_event:
                    self._state = RunState.STOPPED
                    self.last_error = str(e)
            return False

        with self._state_lock:
            cancelled = stop_event.is_set()
            if cancelled:
                logger.info("NTRIP server start cancelled during handshake")
                if self._stop_event is stop_event:
                    self._state = RunState.STOPPED
            else:
                self._session = session
                self._state = RunState.RUNNING
                self.last_error = None
                self.connected_at = datetime.now()
                self.bytes_sent = 0
                self.chunks_sent = 0
                thread_active = self._thread_active = threading.Event()
                self._monitor_thread = threading.Thread(
                    target=self._monitor_loop,
                    args=(session, stop_event, thread_active),
                    name="ntrip-monitor",
                    daemon=True
                )
                self._monitor_thread.start()

        if cancelled:
            session.close()
            return False

        logger.info(f"NTRIP server streaming to {params.caster_host}:{params.caster_port}/{params.mountpoint}")
        return True

    start = run

    def stop(self):
        """Stop uploading, close the caster connection and discard queued data"""
        with self._state_lock:
            was_stopped = self._state == RunState.STOPPED and self._session is None
            session = self._session
            thread = self._monitor_thread
            self._stop_event.set()

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.join_timeout)
            if thread.is_alive() and session is not None:
                session.shutdown()
                thread.join(timeout=self.join_timeout)
            if thread.is_alive():
                logger.warning("NTRIP monitor thread did not exit, it will close the connection when it does")

        # The monitor ends the upload and closes the session on its way out
        if session is not None and (thread is None or thread is threading.current_thread()):
            self._finish_session(session)

        self.queue.clear()

        with self._state_lock:
            if self._session is session:
                self._session = None
            if self._monitor_thread is thread and (thread is None or not thread.is_alive()):
                self._monitor_thread = None
            self._state = RunState.STOPPED

        if not was_stopped:
            logger.info("NTRIP server stopped")

    def _finish_session(self, session: NTRIPSession):
        """Send the terminating chunk best-effort, then close"""
        if session.is_connected:
            try:
                session.send(END_CHUNK)
            except NTRIPError as e:
                logger.debug(f"Could not end chunked upload: {e}")
        session.close()

    def __del__(self):
        if getattr(self, '_state', RunState.STOPPED) != RunState.STOPPED:
            self.stop()

    def send_rtcm(self, rtcm_data: bytes) -> bool:
        """
        Queue RTCM data for upload

        Args:
            rtcm_data: Complete RTCM3 message bytes; not modified afterwards

        Returns:
            True if queued, False if not running or dropped

        Raises:
            QueueFullError: Queue is full and configured with the 'error' policy
        """
        if not rtcm_data or not self.is_running():
            return False
        return self.queue.put(rtcm_data)

    def _monitor_loop(self, session: NTRIPSession, stop_event: threading.Event,
                      thread_active: threading.Event):
        """Watch the caster connection and upload queued corrections"""
        thread_active.set()
        failure: Optional[NTRIPError] = None

        try:
            while not stop_event.is_set():
                data = session.recv()
                if data:
                    logger.debug(f"Ignoring {len(data)} bytes from caster")

                # Queued data belongs to the next session once stop() is called
                if stop_event.is_set():
                    break

                for chunk in self.queue.drain():
                    session.send(encode_chunk(chunk))
                    self.bytes_sent += len(chunk)
                    self.chunks_sent += 1

                stop_event.wait(self.poll_interval)

        except NTRIPError as e:
            if not stop_event.is_set():
                failure = e
        except Exception as e:
            logger.exception(f"Unexpected error in NTRIP monitor loop: {e}")
            failure = SocketFailure(str(e))

        if failure is None:
            self._finish_session(session)
        else:
            logger.error(f"NTRIP connection lost: {failure}")
            session.close()
            self.queue.clear()
            with self._state_lock:
                if self._session is session:
                    self._session = None
                    self._state = RunState.STOPPED
                    self.last_error = str(failure)

        thread_active.clear()

        if failure is not None and self.on_disconnect is not None:
            try:
                self.on_disconnect(failure)
            except Exception as e:
                logger.error(f"Disconnect handler failed: {e}")

    def get_stats(self) -> dict:
        """Get server statistics"""
        with self._state_lock:
            state = self._state
            params = self.params
        return {
            'state': state.value,
            'thread_active': self.thread_active,
            'caster': f"{params.caster_host}:{params.caster_port}" if params else None,
            'mountpoint': params.mountpoint if params else None,
            'connected_at': self.connected_at.isoformat() if self.connected_at else None,
            'bytes_sent': self.bytes_sent,
            'chunks_sent': self.chunks_sent,
            'queued_chunks': len(self.queue),
            'dropped_chunks': self.queue.dropped,
            'last_error': self.last_error
        }
