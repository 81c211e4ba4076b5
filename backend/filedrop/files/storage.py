"""Stored file naming and access under the uploads folder (no directory traversal)."""

import logging
import re
import secrets
import string
from pathlib import Path
from typing import Iterator, Optional, Protocol

import filetype

FILENAME_LENGTH = 6
_ALPHABET = string.ascii_letters + string.digits
_SAFE_NAME = re.compile(rf"^[A-Za-z0-9]{{{FILENAME_LENGTH}}}$")

# filetype only inspects the leading bytes
SNIFF_BYTES = 8192
CHUNK_SIZE = 64 * 1024

log = logging.getLogger(__name__)


class NameRegistry(Protocol):
    def name_in_use(self, name: str) -> bool: ...


def generate_filename() -> str:
    """Random alphanumeric name of FILENAME_LENGTH characters. Not checked for uniqueness."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(FILENAME_LENGTH))


def is_valid_name(name: str) -> bool:
    """True if name has the shape of an assigned filename."""
    return bool(_SAFE_NAME.match(name))


def unused_filename(folder: Path, registry: Optional[NameRegistry] = None) -> str:
    """Draw names until one is neither on disk nor already assigned in registry."""
    while True:
        name = generate_filename()
        if (folder / name).exists() or (registry is not None and registry.name_in_use(name)):
            log.debug("File %s already exists, regenerating", name)
            continue
        return name


def base_name(requested: str) -> str:
    """Strip any extension the client appended: 'aB3dE9.png' -> 'aB3dE9'."""
    return requested.split(".", 1)[0]


def resolve_stored_file(folder: Path, requested: str) -> Path:
    """
    Return the path of the stored file for a requested name (extension ignored).
    Raises FileNotFoundError if the name is not a valid assigned name or no such file exists.
    """
    name = base_name(requested)
    if not is_valid_name(name):
        raise FileNotFoundError(f"File not found: {requested}")
    path = folder / name
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {requested}")
    return path


def write_new_file(path: Path, body: bytes) -> None:
    """Write body to a file that must not exist yet. Raises FileExistsError / OSError."""
    with open(path, "xb") as f:
        f.write(body)


def sniff_content_type(path: Path) -> Optional[str]:
    """MIME type guessed from the file's leading bytes, or None if unrecognised."""
    with open(path, "rb") as f:
        head = f.read(SNIFF_BYTES)
    if not head:
        return None
    kind = filetype.guess(head)
    return kind.mime if kind is not None else None


def iter_file(path: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield the file's bytes in chunks."""
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk
