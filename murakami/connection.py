"""Buffered, limit-enforcing wrapper around a TCP socket, and a pool of them.

A :class:`Connection` owns fixed-size read and write buffers and serves one
socket at a time. It is attached to a socket for a session and detached
afterwards, so it can be pooled and reused across many sessions.
"""

from __future__ import annotations

import queue
import socket
import time
from typing import Optional

__all__ = [
    "BYTE",
    "KIB",
    "MIB",
    "GIB",
    "DEFAULT_MAX_PAYLOAD_SIZE",
    "DEFAULT_POOL_SIZE",
    "DEFAULT_READ_BUFFER_SIZE",
    "DEFAULT_WRITE_BUFFER_SIZE",
    "READ_DEADLINE",
    "WRITE_DEADLINE",
    "Connection",
    "ConnectionPool",
]

BYTE = 1
KIB = 1024 * BYTE
MIB = 1024 * KIB
GIB = 1024 * MIB

DEFAULT_MAX_PAYLOAD_SIZE = 1 * MIB
DEFAULT_POOL_SIZE = 1024
DEFAULT_READ_BUFFER_SIZE = 4 * KIB
DEFAULT_WRITE_BUFFER_SIZE = 4 * KIB

# Seconds allowed for reading and writing within one exchange.
READ_DEADLINE = 10.0
WRITE_DEADLINE = 15.0


class Connection:
    """Buffered reader and writer over an attachable socket.

    Each exchange may read at most ``max_payload_size + read_buffer_size``
    bytes from the socket; once that is used up, reads report end of stream
    until :meth:`reset_limits` is called.
    """

    def __init__(
        self,
        read_buffer_size: int = DEFAULT_READ_BUFFER_SIZE,
        write_buffer_size: int = DEFAULT_WRITE_BUFFER_SIZE,
        max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE,
    ) -> None:
        if read_buffer_size <= 0 or write_buffer_size <= 0:
            raise ValueError("buffer sizes must be positive")
        if max_payload_size < 0:
            raise ValueError("max_payload_size must not be negative")
        self.read_buffer_size = read_buffer_size
        self.write_buffer_size = write_buffer_size
        self.max_payload_size = max_payload_size
        self.remaining = max_payload_size + read_buffer_size
        self._sock: Optional[socket.socket] = None
        self._rbuf = bytearray()
        self._wbuf = bytearray()
        self._read_deadline: Optional[float] = None
        self._write_deadline: Optional[float] = None

    @property
    def sock(self) -> Optional[socket.socket]:
        """The attached socket, or None when detached."""
        return self._sock

    def attach(self, sock: socket.socket) -> None:
        """Start a session on ``sock``, discarding any previously buffered data."""
        self._sock = sock
        self._rbuf.clear()
        self._wbuf.clear()
        self._read_deadline = None
        self._write_deadline = None

    def detach(self) -> None:
        """End the session; the socket itself is left for the caller to close."""
        self._sock = None

    def reset_limits(self) -> None:
        """Renew the read limit and the read and write deadlines for a new exchange."""
        if self._sock is None:
            raise RuntimeError("no socket attached")
        self.remaining = self.max_payload_size + self.read_buffer_size
        now = time.monotonic()
        self._read_deadline = now + READ_DEADLINE
        self._write_deadline = now + WRITE_DEADLINE

    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes, reading the socket at most once.

        Returns ``b""`` at end of stream, when the read limit is used up,
        or when no socket is attached.
        """
        if self._sock is None or size <= 0:
            return b""
        if not self._rbuf:
            if size >= self.read_buffer_size:
                return self._recv(size)
            self._rbuf += self._recv(self.read_buffer_size)
        chunk = bytes(self._rbuf[:size])
        del self._rbuf[:size]
        return chunk

    def readline(self) -> bytes:
        """Return bytes up to and including the next newline.

        At end of stream whatever was read is returned, possibly ``b""``.
        """
        if self._sock is None:
            return b""
        start = 0
        while True:
            index = self._rbuf.find(b"\n", start)
            if index >= 0:
                line = bytes(self._rbuf[: index + 1])
                del self._rbuf[: index + 1]
                return line
            start = len(self._rbuf)
            chunk = self._recv(self.read_buffer_size)
            if not chunk:
                line = bytes(self._rbuf)
                self._rbuf.clear()
                return line
            self._rbuf += chunk

    def write(self, data: bytes) -> int:
        """Buffer ``data`` for sending and return its length.

        Raises :class:`EOFError` when no socket is attached.
        """
        if self._sock is None:
            raise EOFError("no socket attached")
        data = bytes(data)
        if len(self._wbuf) + len(data) > self.write_buffer_size:
            self.flush()
            if len(data) >= self.write_buffer_size:
                self._send(data)
                return len(data)
        self._wbuf += data
        return len(data)

    def flush(self) -> None:
        """Send everything buffered by :meth:`write`."""
        if not self._wbuf:
            return
        if self._sock is None:
            raise EOFError("no socket attached")
        self._send(bytes(self._wbuf))
        self._wbuf.clear()

    def _recv(self, size: int) -> bytes:
        size = min(size, self.remaining)
        if size <= 0:
            return b""
        assert self._sock is not None
        self._sock.settimeout(self._time_left(self._read_deadline, "read"))
        data = self._sock.recv(size)
        self.remaining -= len(data)
        return data

    def _send(self, data: bytes) -> None:
        assert self._sock is not None
        self._sock.settimeout(self._time_left(self._write_deadline, "write"))
        self._sock.sendall(data)

    @staticmethod
    def _time_left(deadline: Optional[float], operation: str) -> Optional[float]:
        if deadline is None:
            return None
        left = deadline - time.monotonic()
        if left <= 0:
            raise TimeoutError(f"{operation} deadline exceeded")
        return left


class ConnectionPool:
    """Fixed pool of pre-allocated connections.

    :meth:`get` blocks while the pool is empty; :meth:`put` silently drops a
    connection when the pool is already full.
    """

    def __init__(
        self,
        size: int = DEFAULT_POOL_SIZE,
        read_buffer_size: int = DEFAULT_READ_BUFFER_SIZE,
        write_buffer_size: int = DEFAULT_WRITE_BUFFER_SIZE,
        max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE,
    ) -> None:
        if size <= 0:
            raise ValueError("pool size must be positive")
        self._pool: "queue.Queue[Connection]" = queue.Queue(maxsize=size)
        for _ in range(size):
            self._pool.put_nowait(
                Connection(read_buffer_size, write_buffer_size, max_payload_size)
            )

    def get(self) -> Connection:
        """Take a connection, waiting until one is available."""
        return self._pool.get()

    def put(self, connection: Connection) -> None:
        """Return a connection; it is discarded if the pool is full."""
        try:
            self._pool.put_nowait(connection)
        except queue.Full:
            pass