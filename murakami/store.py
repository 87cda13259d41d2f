"""Thread-safe in-memory stream store built on top of :class:`LogTree`.

Records in a stream are addressed by IDs of the form ``<millis>-<seq>``.
Readers may block until new records arrive, a timeout expires, the stream
is deleted or the read is cancelled.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from murakami.logtree import LogTree

__all__ = [
    "Record",
    "StoreError",
    "StreamExistsError",
    "UnknownStreamError",
    "NonMonotonicIDError",
    "InMemoryStreamStore",
    "timestamp_key_generator",
    "pad_key",
]

KeyGenerator = Callable[[], str]

_KEY_WIDTH = 20
_CANCEL_POLL_INTERVAL = 0.01


@dataclass(frozen=True)
class Record:
    """A stored record: its ID and its raw value."""

    id: str
    value: bytes


class StoreError(Exception):
    """Base class for errors reported by the stream store."""


class StreamExistsError(StoreError):
    """Raised when creating a stream whose name is already taken."""


class UnknownStreamError(StoreError):
    """Raised when operating on a stream that does not exist."""


class NonMonotonicIDError(StoreError):
    """Raised when an append would place a record before the last one."""


@dataclass
class _Stream:
    log: LogTree = field(default_factory=LogTree)
    watches: List[threading.Event] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def notify_watches(self) -> None:
        for watch in self.watches:
            watch.set()
        self.watches = []


def timestamp_key_generator() -> KeyGenerator:
    """Return a key generator yielding the current Unix time in milliseconds."""

    def generate() -> str:
        return str(time.time_ns() // 1_000_000)

    return generate


def pad_key(key: str) -> str:
    """Left-pad ``key`` with zeros to 20 characters so it sorts numerically."""
    if len(key) > _KEY_WIDTH:
        raise ValueError(f"key length must be at most {_KEY_WIDTH}: {key!r}")
    return key.rjust(_KEY_WIDTH, "0")


def _is_valid_millis(millis: str) -> bool:
    return 0 < len(millis) <= _KEY_WIDTH and millis.isascii() and millis.isdigit()


def _parse_id(record_id: str) -> Tuple[str, int]:
    """Split ``<millis>-<seq>`` into the padded key and the sequence number."""
    millis, sep, seq = record_id.partition("-")
    if not sep or not _is_valid_millis(millis) or not (seq.isascii() and seq.isdigit()):
        raise ValueError(f"id {record_id!r} is not valid")
    return pad_key(millis), int(seq)


def _wait_for(
    watch: threading.Event, deadline: float, cancel: Optional[threading.Event]
) -> bool:
    """Wait until ``watch`` fires (True) or ``deadline`` passes (False).

    Raises :class:`CancelledError` if ``cancel`` is set first.
    """
    while True:
        if cancel is not None and cancel.is_set():
            raise CancelledError("read cancelled")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        step = remaining if cancel is None else min(remaining, _CANCEL_POLL_INTERVAL)
        if watch.wait(step):
            return True


class InMemoryStreamStore:
    """In-memory store of named streams, safe for concurrent use.

    ``key_generator`` supplies the millisecond part of record IDs when the
    caller does not provide one.
    """

    def __init__(self, key_generator: KeyGenerator) -> None:
        self._key_generator = key_generator
        self._streams: Dict[str, _Stream] = {}
        self._lock = threading.Lock()

    def create_stream(self, name: str) -> None:
        """Create an empty stream called ``name``."""
        if not name:
            raise ValueError("stream name can't be empty")
        with self._lock:
            if name in self._streams:
                raise StreamExistsError(f"stream {name} already exists")
            self._streams[name] = _Stream()

    def append_records(
        self, name: str, records: Iterable[bytes], millis_id: Optional[str] = None
    ) -> str:
        """Append ``records`` to the stream and return the ID of the last one."""
        values = list(records)
        if not name:
            raise ValueError("stream name can't be empty")
        if not values:
            raise ValueError("at least one record is required")
        if millis_id and not _is_valid_millis(millis_id):
            raise ValueError(f"id {millis_id!r} is not valid for append")

        with self._lock:
            stream = self._streams.get(name)
            if stream is None:
                raise UnknownStreamError(f"stream {name} not found")
            stream.lock.acquire()

        try:
            key = millis_id or self._key_generator()
            padded = pad_key(key)

            last_key, last_seq_num = stream.log.last_position()
            if padded < last_key:
                raise NonMonotonicIDError(
                    f"id {key} is less than the last id {last_key}"
                )
            next_seq_num = last_seq_num + 1 if padded == last_key else 0

            new_records = [
                Record(id=f"{key}-{next_seq_num + offset}", value=value)
                for offset, value in enumerate(values)
            ]
            stream.log.append(padded, new_records)
            stream.notify_watches()
            return new_records[-1].id
        finally:
            stream.lock.release()

    def _lookup(self, name: str) -> Optional[_Stream]:
        with self._lock:
            return self._streams.get(name)

    def read_records(
        self,
        name: str,
        min_id: str = "0-0",
        count: int = 1,
        block: float = 0.0,
        cancel: Optional[threading.Event] = None,
    ) -> List[Record]:
        """Read up to ``count`` records with IDs at or after ``min_id``.

        With a positive ``block`` (seconds) and nothing to return, waits for
        an append for up to that long. Returns whatever was read if the
        stream is deleted meanwhile; raises :class:`CancelledError` if
        ``cancel`` is set while waiting.
        """
        key, seq_num = _parse_id(min_id)
        if block < 0:
            raise ValueError("block must be greater than or equal to 0")
        if count <= 0:
            raise ValueError("count must be greater than 0")

        with self._lock:
            stream = self._streams.get(name)
            if stream is None:
                raise UnknownStreamError(f"stream {name} not found")
            stream.lock.acquire()
        try:
            records = stream.log.read(key, seq_num, count)
        finally:
            stream.lock.release()

        if block == 0 or records:
            return records

        deadline = time.monotonic() + block
        watch = threading.Event()

        # The stream may have been deleted since the lock was released.
        with self._lock:
            stream = self._streams.get(name)
            if stream is None:
                return records
            stream.lock.acquire()
        try:
            # An append may have happened since the lock was released.
            records = stream.log.read(key, seq_num, count)
            if records:
                return records
            stream.watches.append(watch)
        finally:
            stream.lock.release()

        if not _wait_for(watch, deadline, cancel):
            return records

        # The watch may have been fired by a delete rather than an append.
        with self._lock:
            stream = self._streams.get(name)
            if stream is None:
                return records
            stream.lock.acquire()
        try:
            return stream.log.read(key, seq_num, count)
        finally:
            stream.lock.release()

    def trim_stream(self, name: str, min_id: str) -> None:
        """Remove every record with an ID strictly less than ``min_id``."""
        key, seq_num = _parse_id(min_id)
        with self._lock:
            stream = self._streams.get(name)
            if stream is None:
                raise UnknownStreamError(f"stream {name} not found")
            stream.lock.acquire()
        try:
            stream.log.trim(key, seq_num)
        finally:
            stream.lock.release()

    def delete_stream(self, name: str) -> None:
        """Delete the stream, waking every reader blocked on it."""
        with self._lock:
            stream = self._streams.get(name)
            if stream is None:
                raise UnknownStreamError(f"stream {name} not found")
            with stream.lock:
                del self._streams[name]
                stream.notify_watches()