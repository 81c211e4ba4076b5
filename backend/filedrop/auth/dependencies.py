"""FastAPI dependencies for auth: HTTP Basic gate in front of uploads."""

import base64
import binascii
import logging
import secrets
from enum import Enum
from typing import Annotated, Optional, Tuple

from fastapi import Depends, Header, Request

from filedrop.config import AuthConfig
from filedrop.errors import DropError, ErrorKind

log = logging.getLogger(__name__)

CHALLENGE_HEADERS = {"WWW-Authenticate": "Basic"}


class AuthRejection(Enum):
    """Why the gate rejected a request. Value is the client-facing message."""

    MISSING_CREDENTIALS = "Auth not provided"
    MALFORMED_CREDENTIALS = "Malformed credentials"
    INVALID_CREDENTIALS = "Invalid username or password"


class AuthRejectedError(Exception):
    def __init__(self, reason: AuthRejection) -> None:
        super().__init__(reason.value)
        self.reason = reason


def parse_basic_credentials(authorization: Optional[str]) -> Tuple[str, str]:
    """Decode 'Basic <b64(user:pass)>' into (user, pass). Raises AuthRejectedError."""
    if not authorization:
        raise AuthRejectedError(AuthRejection.MISSING_CREDENTIALS)
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic":
        raise AuthRejectedError(AuthRejection.MISSING_CREDENTIALS)
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise AuthRejectedError(AuthRejection.MALFORMED_CREDENTIALS) from None
    username, sep, password = decoded.partition(":")
    if not sep:
        raise AuthRejectedError(AuthRejection.MALFORMED_CREDENTIALS)
    return username.strip(), password.strip()


def check_credentials(config: AuthConfig, authorization: Optional[str]) -> Optional[AuthRejection]:
    """Return None if the request may proceed, else the rejection reason."""
    if not config.enabled:
        return None
    try:
        username, password = parse_basic_credentials(authorization)
    except AuthRejectedError as e:
        return e.reason
    user_ok = secrets.compare_digest(username.encode("utf-8"), (config.username or "").encode("utf-8"))
    pass_ok = secrets.compare_digest(password.encode("utf-8"), (config.password or "").encode("utf-8"))
    if user_ok and pass_ok:
        return None
    return AuthRejection.INVALID_CREDENTIALS


def get_auth_config(request: Request) -> AuthConfig:
    return request.app.state.auth_config


async def require_uploader(
    config: Annotated[AuthConfig, Depends(get_auth_config)],
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    """Reject with 401 and a Basic challenge unless auth is disabled or credentials match."""
    reason = check_credentials(config, authorization)
    if reason is None:
        return
    log.warning("Upload rejected: %s", reason.name.lower())
    raise DropError(ErrorKind.AUTH_FAILURE, reason.value, headers=CHALLENGE_HEADERS)
