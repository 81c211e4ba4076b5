"""Tests for the content-hash index and its append-only log."""

import errno
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from filedrop.errors import IndexCorruptionError, NameInUseError
from filedrop.files import hash_store
from filedrop.files.hash_store import (
    LOG_FILENAME,
    HashIndex,
    InsertResult,
    compute_hash,
    parse_log,
)

HASH_A = compute_hash(b"alpha")
HASH_B = compute_hash(b"beta")


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / LOG_FILENAME


@pytest.fixture
def index(log_path):
    idx = HashIndex.load(log_path)
    yield idx
    idx.close()


def test_compute_hash_is_sha256_hex() -> None:
    """Known SHA-256 of empty input; identical bytes give identical hashes."""
    assert compute_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert compute_hash(b"same") == compute_hash(b"same")
    assert compute_hash(b"same") != compute_hash(b"other")


def test_load_creates_missing_log(log_path) -> None:
    """A missing log is created empty."""
    idx = HashIndex.load(log_path)
    try:
        assert log_path.exists()
        assert len(idx) == 0
    finally:
        idx.close()


def test_insert_if_absent_then_lookup(index) -> None:
    """First insert wins; lookup sees it."""
    assert index.lookup(HASH_A) is None
    assert index.insert_if_absent(HASH_A, "abc123") == InsertResult("abc123", True)
    assert index.lookup(HASH_A) == "abc123"
    assert HASH_A in index
    assert index.name_in_use("abc123")


def test_insert_if_absent_existing_returns_existing_name(index) -> None:
    """Second insert for the same hash returns the first name and discards the candidate."""
    index.insert_if_absent(HASH_A, "abc123")
    result = index.insert_if_absent(HASH_A, "zzz999")
    assert result == InsertResult("abc123", False)
    assert not index.name_in_use("zzz999")
    assert len(index) == 1


def test_insert_if_absent_rejects_name_of_other_hash(index) -> None:
    """A candidate already assigned to different content raises NameInUseError."""
    index.insert_if_absent(HASH_A, "abc123")
    with pytest.raises(NameInUseError):
        index.insert_if_absent(HASH_B, "abc123")
    assert index.lookup(HASH_B) is None


def test_persist_appends_record(index, log_path) -> None:
    """persist writes one '<hash>:<name>' line per entry."""
    index.insert_if_absent(HASH_A, "abc123")
    index.persist(HASH_A, "abc123")
    index.insert_if_absent(HASH_B, "def456")
    index.persist(HASH_B, "def456")
    assert log_path.read_bytes() == f"{HASH_A}:abc123\n{HASH_B}:def456\n".encode()


def test_persist_unknown_entry_raises(index) -> None:
    """Only inserted mappings can be persisted."""
    with pytest.raises(ValueError):
        index.persist(HASH_A, "abc123")


def test_log_replay_restores_entries(log_path) -> None:
    """Reloading the log reconstructs exactly the persisted entries, then appends after them."""
    first = HashIndex.load(log_path)
    for i, h in enumerate((HASH_A, HASH_B)):
        first.insert_if_absent(h, f"name0{i}")
        first.persist(h, f"name0{i}")
    first.close()

    second = HashIndex.load(log_path)
    try:
        assert len(second) == 2
        assert second.lookup(HASH_A) == "name00"
        assert second.lookup(HASH_B) == "name01"
        assert second.insert_if_absent(HASH_A, "other1") == InsertResult("name00", False)
        h3 = compute_hash(b"gamma")
        second.insert_if_absent(h3, "name02")
        second.persist(h3, "name02")
    finally:
        second.close()
    assert len(log_path.read_bytes().splitlines()) == 3


def test_forget_rolls_back_unpersisted_entry(index) -> None:
    """forget drops an entry whose file was never written, but never a durable one."""
    index.insert_if_absent(HASH_A, "abc123")
    assert index.forget(HASH_A, "abc123") is True
    assert index.lookup(HASH_A) is None
    assert not index.name_in_use("abc123")

    index.insert_if_absent(HASH_B, "def456")
    index.persist(HASH_B, "def456")
    assert index.forget(HASH_B, "def456") is False
    assert index.lookup(HASH_B) == "def456"


def test_concurrent_inserts_single_winner(index) -> None:
    """Many threads racing on one hash: exactly one insert, everyone gets the same name."""
    workers = 32
    barrier = threading.Barrier(workers)

    def race(i: int) -> InsertResult:
        barrier.wait()
        return index.insert_if_absent(HASH_A, f"cand{i:02d}")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(race, range(workers)))
    assert sum(r.inserted for r in results) == 1
    assert len({r.name for r in results}) == 1
    assert len(index) == 1


def test_concurrent_persist_does_not_interleave(index, log_path) -> None:
    """Parallel persists produce whole, parseable records."""
    entries = [(compute_hash(str(i).encode()), f"par{i:03d}") for i in range(100)]
    for h, name in entries:
        index.insert_if_absent(h, name)
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda e: index.persist(*e), entries))
    replayed = parse_log(log_path.read_bytes().splitlines(keepends=True))
    assert replayed == dict(entries)


@pytest.mark.parametrize(
    "content",
    [
        b"not-a-hash:abc123\n",
        (HASH_A[:-1] + "g").encode() + b":abc123\n",
        HASH_A.encode() + b"\n",
        HASH_A.encode() + b":\n",
        HASH_A.encode() + b":abc123",
        HASH_A.encode() + b":ab/../x\n",
        b"\n",
        f"{HASH_A}:abc123\n{HASH_A}:def456\n".encode(),
        f"{HASH_A}:abc123\n{HASH_B}:abc123\n".encode(),
    ],
    ids=[
        "bad-hash",
        "non-hex-hash",
        "no-separator",
        "empty-filename",
        "no-trailing-newline",
        "unsafe-filename",
        "blank-line",
        "duplicate-hash",
        "duplicate-filename",
    ],
)
def test_load_malformed_log_is_fatal(log_path, content: bytes) -> None:
    """Any malformed record aborts loading; nothing is skipped."""
    log_path.write_bytes(content)
    with pytest.raises(IndexCorruptionError):
        HashIndex.load(log_path)


def test_malformed_record_after_valid_ones_is_fatal(log_path) -> None:
    """A bad record in the middle still aborts, with its line number in the message."""
    log_path.write_bytes(f"{HASH_A}:abc123\ngarbage\n{HASH_B}:def456\n".encode())
    with pytest.raises(IndexCorruptionError, match=":2:"):
        HashIndex.load(log_path)


def test_parse_log_normalizes_uppercase_hex() -> None:
    """Uppercase hex decodes to the same key compute_hash produces."""
    entries = parse_log([HASH_A.upper().encode() + b":abc123\n"])
    assert entries == {HASH_A: "abc123"}


class _ShortWriteLog:
    """Log handle whose first write lands only partially and then fails (disk full)."""

    def __init__(self, raw):
        self._raw = raw
        self.failures = 1

    def write(self, data):
        if self.failures:
            self.failures -= 1
            self._raw.write(bytes(data[:10]))
            raise OSError(errno.ENOSPC, "No space left on device")
        return self._raw.write(data)

    def __getattr__(self, name):
        return getattr(self._raw, name)


def test_failed_persist_leaves_no_partial_record(log_path) -> None:
    """A write that fails halfway is cut back, so later records and a reload stay valid."""
    idx = HashIndex(_ShortWriteLog(open(log_path, "a+b", buffering=0)))
    idx.insert_if_absent(HASH_A, "abc123")
    with pytest.raises(OSError):
        idx.persist(HASH_A, "abc123")
    assert log_path.read_bytes() == b""

    idx.insert_if_absent(HASH_B, "def456")
    idx.persist(HASH_B, "def456")
    idx.close()

    reloaded = HashIndex.load(log_path)
    try:
        assert len(reloaded) == 1
        assert reloaded.lookup(HASH_B) == "def456"
        assert reloaded.lookup(HASH_A) is None
    finally:
        reloaded.close()


def test_failed_fsync_truncates_and_retry_succeeds(index, log_path, monkeypatch) -> None:
    """If fsync fails the written record is removed; persisting again writes it once."""
    real_fsync = hash_store.os.fsync
    calls = []

    def flaky_fsync(fd):
        calls.append(fd)
        if len(calls) == 1:
            raise OSError(errno.EIO, "Input/output error")
        real_fsync(fd)

    monkeypatch.setattr(hash_store.os, "fsync", flaky_fsync)
    index.insert_if_absent(HASH_A, "abc123")
    with pytest.raises(OSError):
        index.persist(HASH_A, "abc123")
    assert log_path.read_bytes() == b""
    index.persist(HASH_A, "abc123")
    assert log_path.read_bytes() == f"{HASH_A}:abc123\n".encode()
