"""Configuration from environment (no hardcoded secrets)."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict

# 2 GiB
DEFAULT_MAX_UPLOAD_BYTES = 2048 * 1024 * 1024


@dataclass(frozen=True)
class AuthConfig:
    """Credential pair guarding uploads. username None means auth is disabled."""

    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return self.username is not None


AUTH_DISABLED = AuthConfig()


class Settings(BaseSettings):
    """Service settings from env."""

    model_config = SettingsConfigDict(env_prefix="FILEDROP_", extra="ignore")

    # Server
    listen_address: str = "0.0.0.0:8989"
    # Base URL advertised in upload responses (e.g. https://drop.example.com).
    # Empty = derive from the request's Host header.
    public_url: str = ""

    # Storage (folder must already exist)
    uploads_folder: Path = Path("./uploads")
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    # Basic auth for uploads
    enable_auth: bool = False
    basic_auth_username: str = ""
    basic_auth_password: str = ""

    # Logging (empty log_file = stderr only; level DEBUG|INFO|WARNING|ERROR)
    log_level: str = "INFO"
    log_file: str = ""

    @property
    def auth_config(self) -> AuthConfig:
        """Credential pair for the upload gate, or AUTH_DISABLED."""
        if not self.enable_auth:
            return AUTH_DISABLED
        return AuthConfig(
            username=self.basic_auth_username,
            password=self.basic_auth_password,
        )

    def bind_host_port(self) -> Tuple[str, int]:
        """Split listen_address into (host, port). Raises ValueError if invalid."""
        host, sep, port = self.listen_address.strip().rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"Invalid listen address: {self.listen_address!r}")
        port_num = int(port)
        if not 0 < port_num < 65536:
            raise ValueError(f"Invalid listen port: {port_num}")
        return host.strip("[]") or "0.0.0.0", port_num


def get_settings() -> Settings:
    """Return application settings."""
    return Settings()
