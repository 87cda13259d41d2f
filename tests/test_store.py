import threading
import time
from concurrent.futures import CancelledError, ThreadPoolExecutor

import pytest

from murakami.store import (
    InMemoryStreamStore,
    NonMonotonicIDError,
    Record,
    StreamExistsError,
    UnknownStreamError,
    pad_key,
    timestamp_key_generator,
)

TEN_KEYS = ["1000", "2000", "3000", "4000", "5000", "6000", "7000", "8000", "9000", "10000"]


def mock_key_generator(*keys):
    lock = threading.Lock()
    iterator = iter(keys)

    def generate():
        with lock:
            try:
                return next(iterator)
            except StopIteration:
                raise RuntimeError("mock key generator ran out of keys") from None

    return generate


def new_store(*keys, streams=("test",), batches=()):
    store = InMemoryStreamStore(mock_key_generator(*keys))
    for name in streams:
        store.create_stream(name)
    for batch in batches:
        store.append_records(streams[0], batch)
    return store


def store_with_three_batches():
    return new_store(
        "1000",
        "2000",
        "3000",
        batches=[[b"record1", b"record2"], [b"record3", b"record4"], [b"record5", b"record6"]],
    )


def read_all(store, name="test", count=100):
    return store.read_records(name, min_id="0-0", count=count)


def ids(records):
    return [record.id for record in records]


def wait_for_watches(store, name, expected, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        with store._lock:
            stream = store._streams.get(name)
            if stream is None:
                return
            with stream.lock:
                if len(stream.watches) >= expected:
                    return
        time.sleep(0.001)
    raise AssertionError("watches were not registered in time")


def run_blocking_readers(store, action, *, readers=1, min_id="0-0", count=10, cancel=None):
    with ThreadPoolExecutor(max_workers=readers) as pool:
        futures = [
            pool.submit(store.read_records, "test", min_id, count, 30, cancel)
            for _ in range(readers)
        ]
        wait_for_watches(store, "test", readers)
        action()
        return [future.result(timeout=5) for future in futures]


def count_outcomes(operation, error, threads=10):
    outcomes = []
    lock = threading.Lock()

    def worker():
        try:
            operation()
            outcome = True
        except error:
            outcome = False
        with lock:
            outcomes.append(outcome)

    workers = [threading.Thread(target=worker) for _ in range(threads)]
    for thread in workers:
        thread.start()
    for thread in workers:
        thread.join()
    return outcomes.count(True), outcomes.count(False)


def install_watches(store):
    watches = [threading.Event() for _ in range(3)]
    stream = store._streams["test"]
    with stream.lock:
        stream.watches = list(watches)
    return stream, watches


def test_pad_key():
    assert pad_key("1000") == "00000000000000001000"
    assert pad_key("1" * 20) == "1" * 20
    with pytest.raises(ValueError):
        pad_key("1" * 21)


def test_timestamp_key_generator_returns_current_millis():
    generate = timestamp_key_generator()
    before = time.time_ns() // 1_000_000
    key = generate()
    after = time.time_ns() // 1_000_000
    assert key.isdigit()
    assert before <= int(key) <= after


def test_create_stream():
    store = new_store("1000")
    with pytest.raises(StreamExistsError):
        store.create_stream("test")


def test_create_stream_empty_name():
    with pytest.raises(ValueError):
        new_store(streams=())
        InMemoryStreamStore(mock_key_generator()).create_stream("")


def test_create_stream_concurrent():
    store = new_store("1000", "2000", "3000", streams=())
    names = ["test1", "test2", "test3"]

    successes, failures = 0, 0
    outcome_lock = threading.Lock()

    def worker():
        nonlocal successes, failures
        for name in names:
            try:
                store.create_stream(name)
                ok = True
            except StreamExistsError:
                ok = False
            with outcome_lock:
                if ok:
                    successes += 1
                else:
                    failures += 1

    count_outcomes(worker, StreamExistsError)

    assert (successes, failures) == (3, 27)
    for name in names:
        assert read_all(store, name, count=10) == []
        with pytest.raises(StreamExistsError):
            store.create_stream(name)

    assert store.append_records("test1", [b"record"]) == "1000-0"
    assert ids(read_all(store, "test1", count=10)) == ["1000-0"]
    assert read_all(store, "test2", count=10) == []


def test_append_records_no_millis_id():
    store = new_store("1000", "2000")

    assert store.append_records("test", [b"record1", b"record2", b"record3"]) == "1000-2"
    assert store.append_records("test", [b"record4", b"record5"]) == "2000-1"

    assert read_all(store) == [
        Record("1000-0", b"record1"),
        Record("1000-1", b"record2"),
        Record("1000-2", b"record3"),
        Record("2000-0", b"record4"),
        Record("2000-1", b"record5"),
    ]


@pytest.mark.parametrize(
    "appends, expected_ids",
    [
        (
            [([b"record1", b"record2"], "5000", "5000-1"), ([b"record3"], "6000", "6000-0")],
            ["5000-0", "5000-1", "6000-0"],
        ),
        (
            [
                ([b"record1", b"record2"], "5000", "5000-1"),
                ([b"record3", b"record4"], "5000", "5000-3"),
            ],
            ["5000-0", "5000-1", "5000-2", "5000-3"],
        ),
    ],
)
def test_append_records_with_millis_id(appends, expected_ids):
    store = new_store()
    for records, millis_id, last_id in appends:
        assert store.append_records("test", records, millis_id=millis_id) == last_id
    assert ids(read_all(store)) == expected_ids


@pytest.mark.parametrize("records, millis_id", [([], None), ([b"x"], "12a")])
def test_append_records_invalid_arguments(records, millis_id):
    with pytest.raises(ValueError):
        new_store().append_records("test", records, millis_id=millis_id)


def test_append_records_non_monotonic_id():
    store = new_store()
    store.append_records("test", [b"record1"], millis_id="5000")
    with pytest.raises(NonMonotonicIDError):
        store.append_records("test", [b"record2"], millis_id="3000")


@pytest.mark.parametrize(
    "operation",
    [
        lambda store: store.append_records("nonexistent", [b"record1"]),
        lambda store: store.read_records("nonexistent", min_id="0-0", count=10),
        lambda store: store.trim_stream("nonexistent", min_id="1000-0"),
        lambda store: store.delete_stream("nonexistent"),
    ],
)
def test_unknown_stream(operation):
    with pytest.raises(UnknownStreamError):
        operation(new_store("1000", streams=()))


def test_append_records_fires_watches():
    store = new_store("1000")
    stream, watches = install_watches(store)

    store.append_records("test", [b"record1"])

    assert all(watch.is_set() for watch in watches)
    assert stream.watches == []


def test_delete_stream_fires_watches():
    store = new_store()
    _, watches = install_watches(store)

    store.delete_stream("test")

    assert all(watch.is_set() for watch in watches)


def test_append_records_concurrent_same_stream():
    store = new_store(*TEN_KEYS)

    with ThreadPoolExecutor(max_workers=10) as pool:
        phase1 = [pool.submit(store.append_records, "test", [b"record"] * 3) for _ in range(10)]
        phase2 = [
            pool.submit(store.append_records, "test", [b"seq-record"] * 3, "20000")
            for _ in range(5)
        ]
        last_ids = [future.result() for future in phase1 + phase2]
    assert all(last_ids)

    records = read_all(store, count=1000)
    assert len(records) == 45

    parsed = [tuple(int(part) for part in record.id.split("-")) for record in records]
    for previous, current in zip(parsed, parsed[1:]):
        assert current > previous

    seqs = [seq for millis, seq in parsed if millis == 20000]
    assert len(seqs) == 15
    assert min(seqs) == 0
    assert max(seqs) == 14


def test_append_records_concurrent_different_streams():
    names = ("stream1", "stream2", "stream3")
    store = new_store(*TEN_KEYS, streams=names)

    with ThreadPoolExecutor(max_workers=9) as pool:
        futures = [
            pool.submit(store.append_records, name, [b"record", b"record"])
            for name in names
            for _ in range(3)
        ]
        last_ids = [future.result() for future in futures]
    assert len(last_ids) == 9
    assert all(last_ids)

    for name in names:
        assert len(read_all(store, name)) == 6


@pytest.mark.parametrize(
    "min_id, count, expected_ids",
    [
        ("0-0", 100, ["1000-0", "1000-1", "2000-0", "2000-1", "3000-0", "3000-1"]),
        ("2000-0", 100, ["2000-0", "2000-1", "3000-0", "3000-1"]),
        ("1000-1", 3, ["1000-1", "2000-0", "2000-1"]),
        ("2000-1", 100, ["2000-1", "3000-0", "3000-1"]),
        ("5000-0", 100, []),
    ],
)
def test_read_records(min_id, count, expected_ids):
    store = store_with_three_batches()
    records = store.read_records("test", min_id=min_id, count=count, block=0)
    assert ids(records) == expected_ids


@pytest.mark.parametrize(
    "min_id, count, block", [("bad", 1, 0), ("0-0", 0, 0), ("0-0", 1, -1)]
)
def test_read_records_invalid_arguments(min_id, count, block):
    with pytest.raises(ValueError):
        store_with_three_batches().read_records("test", min_id=min_id, count=count, block=block)


@pytest.mark.parametrize(
    "count, appended, expected_ids",
    [
        (3, [b"record1", b"record2"], ["1000-0", "1000-1"]),
        (2, [b"record1", b"record2", b"record3"], ["1000-0", "1000-1"]),
    ],
)
def test_read_records_blocking(count, appended, expected_ids):
    store = new_store("1000")
    (records,) = run_blocking_readers(
        store, lambda: store.append_records("test", appended), count=count
    )
    assert ids(records) == expected_ids


@pytest.mark.parametrize("block, limit_check", [(0.2, "at_least"), (0, "immediate")])
def test_read_records_empty_stream_timing(block, limit_check):
    store = new_store()
    start = time.monotonic()
    records = store.read_records("test", min_id="0-0", count=10, block=block)
    duration = time.monotonic() - start
    assert records == []
    if limit_check == "at_least":
        assert duration >= 0.2
    else:
        assert duration < 0.1


def test_read_records_cancellation():
    store = new_store("1000")
    cancel = threading.Event()

    def cancel_later():
        time.sleep(0.05)
        cancel.set()

    with pytest.raises(CancelledError):
        run_blocking_readers(store, cancel_later, cancel=cancel)

    assert read_all(store, count=10) == []
    assert store.append_records("test", [b"record1"]) == "1000-0"
    assert ids(read_all(store, count=10)) == ["1000-0"]


@pytest.mark.parametrize("readers", [1, 2])
def test_read_records_stream_deleted_while_blocking(readers):
    store = new_store()
    results = run_blocking_readers(
        store, lambda: store.delete_stream("test"), readers=readers
    )
    assert results == [[]] * readers


def test_read_records_multiple_concurrent_readers():
    store = new_store("1000")
    results = run_blocking_readers(
        store, lambda: store.append_records("test", [b"record1", b"record2"]), readers=3
    )
    assert [ids(records) for records in results] == [["1000-0", "1000-1"]] * 3


def test_read_records_all_records_before_min_id_blocking():
    store = new_store("1000", "2000", batches=[[b"record1", b"record2"]])
    (records,) = run_blocking_readers(
        store, lambda: store.append_records("test", [b"record3", b"record4"]), min_id="1500-0"
    )
    assert ids(records) == ["2000-0", "2000-1"]


@pytest.mark.parametrize(
    "keys, batches, min_id, expected_ids",
    [
        (
            ("1000", "2000", "3000"),
            [[b"record1", b"record2"], [b"record3", b"record4"], [b"record5", b"record6"]],
            "2000-1",
            ["2000-1", "3000-0", "3000-1"],
        ),
        (
            ("1000", "2000"),
            [[b"record1", b"record2"], [b"record3", b"record4"]],
            "5000-0",
            [],
        ),
        (
            ("2000", "3000"),
            [[b"record1", b"record2"], [b"record3", b"record4"]],
            "1000-0",
            ["2000-0", "2000-1", "3000-0", "3000-1"],
        ),
        (
            ("1000",),
            [[b"r1", b"r2", b"r3", b"r4", b"r5"]],
            "1000-2",
            ["1000-2", "1000-3", "1000-4"],
        ),
        ((), [], "1000-0", []),
    ],
)
def test_trim_stream(keys, batches, min_id, expected_ids):
    store = new_store(*keys, batches=batches)
    store.trim_stream("test", min_id=min_id)
    assert ids(read_all(store)) == expected_ids


@pytest.mark.parametrize("batches", [[[b"record1", b"record2"]], []])
def test_delete_stream(batches):
    store = new_store("1000", batches=batches)
    store.delete_stream("test")
    with pytest.raises(UnknownStreamError):
        read_all(store, count=10)

    store.create_stream("test")
    assert read_all(store, count=10) == []
    assert store.append_records("test", [b"fresh"], millis_id="7000") == "7000-0"
    assert read_all(store, count=10) == [Record("7000-0", b"fresh")]


def test_delete_stream_concurrent_deletes():
    store = new_store()
    store.append_records("test", [b"record"], millis_id="1000")

    outcomes = count_outcomes(lambda: store.delete_stream("test"), UnknownStreamError, threads=5)

    assert outcomes == (1, 4)
    with pytest.raises(UnknownStreamError):
        read_all(store, count=10)
    with pytest.raises(UnknownStreamError):
        store.delete_stream("test")

    store.create_stream("test")
    assert read_all(store, count=10) == []


def test_read_after_trim_logical_sequence_numbers():
    store = new_store(streams=("test-stream",))
    last_id = store.append_records(
        "test-stream",
        [b"record0", b"record1", b"record2", b"record3", b"record4"],
        millis_id="1000",
    )
    assert last_id == "1000-4"

    store.trim_stream("test-stream", min_id="1000-2")
    records = store.read_records("test-stream", min_id="1000-2", count=10)
    assert ids(records) == ["1000-2", "1000-3", "1000-4"]