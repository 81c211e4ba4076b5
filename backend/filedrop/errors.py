"""Error kinds surfaced by request handlers, and startup failures."""

from enum import Enum
from typing import Dict, Optional


class ErrorKind(Enum):
    """Per-request failure kinds. The value is the HTTP status code."""

    IO_FAILURE = 500
    NOT_FOUND = 404
    BAD_REQUEST = 400
    AUTH_FAILURE = 401
    LENGTH_REQUIRED = 411
    PAYLOAD_TOO_LARGE = 413

    @property
    def status_code(self) -> int:
        return self.value


class DropError(Exception):
    """Raised by handlers; converted to a JSON error response at the request boundary."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.headers = headers

    @classmethod
    def not_found(cls) -> "DropError":
        return cls(ErrorKind.NOT_FOUND, "File not found")

    @classmethod
    def bad_request(cls, message: str) -> "DropError":
        return cls(ErrorKind.BAD_REQUEST, f"Bad request: {message}")

    @classmethod
    def io_failure(cls) -> "DropError":
        return cls(ErrorKind.IO_FAILURE, "IO error")


class IndexCorruptionError(Exception):
    """The hash log contains a record that cannot be replayed. Fatal at startup."""


class StorageFolderMissingError(Exception):
    """Configured uploads folder does not exist. Fatal at startup."""


class NameInUseError(Exception):
    """Candidate filename is already assigned to different content."""
