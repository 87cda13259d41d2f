"""TCP server that owns connection lifecycles and delegates each exchange to a handler.

A server moves from IDLE to RUNNING when :meth:`Server.start` succeeds, and
to STOPPED when :meth:`Server.stop` is called. A stopped server cannot be
started again.

A handler is a callable ``handler(shutdown, connection)`` that runs once for
each request/response exchange on a connection. ``shutdown`` is a
:class:`threading.Event` that is set when the server stops accepting
connections. If the handler raises, the session ends and the socket is closed.
"""

from __future__ import annotations

import enum
import select
import socket
import threading
import time
from typing import Any, Callable, Optional, Protocol

from murakami.connection import Connection

__all__ = [
    "DEFAULT_MAX_ACCEPT_DELAY",
    "ServerState",
    "ServerError",
    "AlreadyStartedError",
    "AlreadyStoppedError",
    "ExponentialAcceptDelayer",
    "TcpListener",
    "Server",
]

# Longest pause, in seconds, between accept attempts after timeouts.
DEFAULT_MAX_ACCEPT_DELAY = 1.0

_ACCEPT_POLL_INTERVAL = 0.1

Handler = Callable[[threading.Event, Connection], Any]


class ServerState(enum.Enum):
    """Lifecycle state of a :class:`Server`."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class ServerError(Exception):
    """Base class for errors reported by the server."""


class AlreadyStartedError(ServerError):
    """Raised when starting a server that is already running."""

    def __init__(self, message: str = "TCP server already started") -> None:
        super().__init__(message)


class AlreadyStoppedError(ServerError):
    """Raised when starting or stopping a server that has been stopped."""

    def __init__(self, message: str = "TCP server already stopped") -> None:
        super().__init__(message)


class _ConnectionProvider(Protocol):
    def get(self) -> Connection: ...

    def put(self, connection: Connection) -> None: ...


class _NetListener(Protocol):
    def accept(self) -> Any: ...

    def close(self) -> None: ...


class _Listener(Protocol):
    def listen(self, address: str) -> _NetListener: ...


class _AcceptDelayer(Protocol):
    def backoff(self) -> None: ...

    def reset(self) -> None: ...


class ExponentialAcceptDelayer:
    """Backoff that starts at ``initial`` seconds and doubles up to ``maximum``."""

    def __init__(
        self,
        initial: float,
        maximum: float = DEFAULT_MAX_ACCEPT_DELAY,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.delay = 0.0
        self.initial = initial
        self.maximum = maximum
        self._sleep = sleep

    def backoff(self) -> None:
        """Grow the delay and sleep for it."""
        self.delay = self.initial if self.delay == 0 else self.delay * 2
        if self.delay > self.maximum:
            self.delay = self.maximum
        self._sleep(self.delay)

    def reset(self) -> None:
        """Return the delay to zero, typically after a successful accept."""
        self.delay = 0.0


class _SocketListener:
    """Listening socket whose blocking accept can be interrupted by close."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._closed = threading.Event()
        self.address = sock.getsockname()

    def accept(self) -> socket.socket:
        while True:
            if self._closed.is_set():
                raise OSError("listener closed")
            try:
                ready, _, _ = select.select([self._sock], [], [], _ACCEPT_POLL_INTERVAL)
            except (OSError, ValueError):
                if self._closed.is_set():
                    raise OSError("listener closed") from None
                raise
            if ready:
                conn, _ = self._sock.accept()
                return conn

    def close(self) -> None:
        self._closed.set()
        self._sock.close()


class TcpListener:
    """Creates TCP listening sockets from ``host:port`` addresses."""

    def listen(self, address: str) -> _SocketListener:
        """Bind and listen on ``address``; an empty host means all interfaces."""
        host, sep, port = address.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"invalid address {address!r}")
        sock = socket.create_server((host, int(port)))
        return _SocketListener(sock)


class Server:
    """TCP server that serves each accepted socket on its own thread."""

    def __init__(
        self,
        connection_provider: _ConnectionProvider,
        listener: _Listener,
        accept_delayer: _AcceptDelayer,
        address: str,
    ) -> None:
        if connection_provider is None:
            raise ValueError("connection provider is required")
        if listener is None:
            raise ValueError("listener is required")
        if accept_delayer is None:
            raise ValueError("accept delayer is required")
        self.address = address
        self._connection_provider = connection_provider
        self._listener = listener
        self._accept_delayer = accept_delayer
        self._state = ServerState.IDLE
        self._net_listener: Optional[_NetListener] = None
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._active = 0
        self._stop_event = threading.Event()

    @property
    def state(self) -> ServerState:
        """The current lifecycle state."""
        return self._state

    def start(self, handler: Handler) -> None:
        """Listen and accept connections until stopped or accept fails.

        Returns normally after a graceful stop. Raises
        :class:`AlreadyStartedError` or :class:`AlreadyStoppedError` if the
        server is not idle, :class:`ServerError` if it cannot listen, and
        re-raises any accept error other than a timeout.
        """
        if handler is None:
            raise ValueError("handler is required")
        with self._lock:
            if self._state is ServerState.STOPPED:
                raise AlreadyStoppedError()
            if self._state is ServerState.RUNNING:
                raise AlreadyStartedError()
            try:
                net_listener = self._listener.listen(self.address)
            except Exception as err:
                raise ServerError(f"unable to listen on {self.address}: {err}") from err
            self._net_listener = net_listener
            self._state = ServerState.RUNNING
        self._accept_loop(net_listener, handler)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop accepting connections and wait for active sessions to end.

        Raises :class:`AlreadyStoppedError` if already stopped and
        :class:`TimeoutError` if sessions are still active after ``timeout``
        seconds.
        """
        with self._lock:
            if self._state is ServerState.STOPPED:
                raise AlreadyStoppedError()
            was_running = self._state is ServerState.RUNNING
            self._stop_event.set()
            self._state = ServerState.STOPPED
            if not was_running:
                return
            net_listener = self._net_listener

        assert net_listener is not None
        net_listener.close()

        with self._idle:
            if not self._idle.wait_for(lambda: self._active == 0, timeout):
                raise TimeoutError("connections still active after stop timeout")

    def _accept_loop(self, net_listener: _NetListener, handler: Handler) -> None:
        shutdown = threading.Event()
        try:
            while not self._stop_event.is_set():
                try:
                    sock = net_listener.accept()
                except TimeoutError:
                    self._accept_delayer.backoff()
                    continue
                except Exception:
                    if self._stop_event.is_set():
                        return
                    raise

                self._accept_delayer.reset()

                with self._lock:
                    if self._state is ServerState.STOPPED:
                        _close_quietly(sock)
                        return
                    self._active += 1

                threading.Thread(
                    target=self._handle, args=(sock, handler, shutdown), daemon=True
                ).start()
        finally:
            shutdown.set()

    def _handle(self, sock: Any, handler: Handler, shutdown: threading.Event) -> None:
        try:
            connection = self._connection_provider.get()
            try:
                connection.attach(sock)
                try:
                    _serve(connection, handler, shutdown)
                finally:
                    connection.detach()
            finally:
                self._connection_provider.put(connection)
        finally:
            _close_quietly(sock)
            with self._idle:
                self._active -= 1
                self._idle.notify_all()


def _serve(connection: Connection, handler: Handler, shutdown: threading.Event) -> None:
    while not shutdown.is_set():
        connection.reset_limits()
        try:
            handler(shutdown, connection)
            failed = False
        except Exception:
            failed = True
        try:
            connection.flush()
        except (OSError, EOFError):
            return
        if failed:
            return


def _close_quietly(sock: Any) -> None:
    try:
        sock.close()
    except OSError:
        pass