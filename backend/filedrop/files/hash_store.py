"""Content-hash index: SHA-256 of upload body -> assigned filename.

The mapping lives in memory behind a lock and is mirrored on disk as an
append-only log of ``<hex-hash>:<filename>\\n`` records, replayed on startup.
"""

import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, NamedTuple, Optional, Set

from filedrop.errors import IndexCorruptionError, NameInUseError
from filedrop.files.storage import is_valid_name

LOG_FILENAME = "hashes.kv"
HASH_HEX_LENGTH = 64  # SHA-256

log = logging.getLogger(__name__)


class InsertResult(NamedTuple):
    """Outcome of insert_if_absent: the name to use and whether this call recorded it."""

    name: str
    inserted: bool


def compute_hash(body: bytes) -> str:
    """SHA-256 hex digest of file body."""
    return hashlib.sha256(body).hexdigest()


def _decode_hash(raw: bytes) -> Optional[str]:
    """Return normalized lowercase hex hash, or None if raw is not a SHA-256 hex digest."""
    if len(raw) != HASH_HEX_LENGTH:
        return None
    try:
        return bytes.fromhex(raw.decode("ascii")).hex()
    except (UnicodeDecodeError, ValueError):
        return None


def parse_log(lines: Iterable[bytes], source: str = "hash log") -> Dict[str, str]:
    """
    Replay log records in order and return hash -> filename.
    Any malformed record raises IndexCorruptionError; nothing is skipped.
    """
    entries: Dict[str, str] = {}
    names: Set[str] = set()
    for lineno, raw in enumerate(lines, start=1):
        where = f"{source}:{lineno}"
        if not raw.endswith(b"\n"):
            raise IndexCorruptionError(f"{where}: truncated record (no trailing newline)")
        hash_part, sep, name_part = raw[:-1].partition(b":")
        if not sep:
            raise IndexCorruptionError(f"{where}: missing ':' separator")
        content_hash = _decode_hash(hash_part)
        if content_hash is None:
            raise IndexCorruptionError(f"{where}: could not parse hash {hash_part[:80]!r}")
        try:
            name = name_part.decode("ascii")
        except UnicodeDecodeError:
            raise IndexCorruptionError(f"{where}: filename is not ASCII") from None
        if not is_valid_name(name):
            raise IndexCorruptionError(f"{where}: invalid filename {name!r}")
        if content_hash in entries:
            raise IndexCorruptionError(f"{where}: duplicate hash {content_hash}")
        if name in names:
            raise IndexCorruptionError(f"{where}: duplicate filename {name}")
        entries[content_hash] = name
        names.add(name)
    return entries


class HashIndex:
    """
    Shared dedup index. insert_if_absent is the single decision point: for a given
    hash exactly one caller ever sees inserted=True. Log appends are serialized by
    their own lock so the map is never held during disk I/O.
    """

    def __init__(self, log_file: BinaryIO, entries: Optional[Dict[str, str]] = None) -> None:
        self._map: Dict[str, str] = dict(entries or {})
        self._names: Set[str] = set(self._map.values())
        # Hashes inserted in memory whose record is not yet in the log
        self._pending: Set[str] = set()
        self._lock = threading.Lock()
        self._log = log_file
        self._log_lock = threading.Lock()

    @classmethod
    def load(cls, path: Path) -> "HashIndex":
        """
        Open (or create) the log at path, replay it, and keep it open for appending.
        Raises IndexCorruptionError on any malformed record.
        """
        # Unbuffered so a failed append never leaves bytes queued for a later flush
        log_file = open(path, "a+b", buffering=0)
        try:
            with open(path, "rb") as reader:
                entries = parse_log(reader, source=str(path))
        except BaseException:
            log_file.close()
            raise
        log.info("Loaded %d hashes from %s", len(entries), path)
        return cls(log_file, entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._map)

    def __contains__(self, content_hash: object) -> bool:
        with self._lock:
            return content_hash in self._map

    def lookup(self, content_hash: str) -> Optional[str]:
        """Return the assigned filename for content_hash, or None."""
        with self._lock:
            return self._map.get(content_hash)

    def name_in_use(self, name: str) -> bool:
        """True if name is already assigned to some hash."""
        with self._lock:
            return name in self._names

    def insert_if_absent(self, content_hash: str, candidate: str) -> InsertResult:
        """
        Record (content_hash, candidate) unless content_hash is already known.
        Returns the existing name with inserted=False when another upload got there first.
        Raises NameInUseError if candidate is already assigned to different content.
        """
        with self._lock:
            existing = self._map.get(content_hash)
            if existing is not None:
                return InsertResult(existing, False)
            if candidate in self._names:
                raise NameInUseError(candidate)
            self._map[content_hash] = candidate
            self._names.add(candidate)
            self._pending.add(content_hash)
        return InsertResult(candidate, True)

    def forget(self, content_hash: str, name: str) -> bool:
        """
        Drop an entry that was inserted but never persisted (its file could not be
        written). Durable entries are never removed. Returns True if dropped.
        """
        with self._lock:
            if content_hash not in self._pending or self._map.get(content_hash) != name:
                return False
            del self._map[content_hash]
            self._names.discard(name)
            self._pending.discard(content_hash)
        log.warning("Rolled back unpersisted hash entry for %s", name)
        return True

    def persist(self, content_hash: str, name: str) -> None:
        """Append the record for an inserted entry to the log and fsync it."""
        if self.lookup(content_hash) != name:
            raise ValueError(f"No index entry {content_hash}:{name} to persist")
        record = f"{content_hash}:{name}\n".encode("ascii")
        with self._log_lock:
            offset = self._log.seek(0, os.SEEK_END)
            try:
                view = memoryview(record)
                while view:
                    written = self._log.write(view)
                    view = view[written:]
                os.fsync(self._log.fileno())
            except OSError:
                # Drop any partial record so the next append starts on a fresh line
                self._log.truncate(offset)
                raise
        with self._lock:
            self._pending.discard(content_hash)
        log.debug("Wrote hash entry for %s", name)

    def close(self) -> None:
        """Close the log file."""
        with self._log_lock:
            self._log.close()
