"""Host configuration resolution."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import tomllib

from pydantic import BaseModel, ValidationError

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "hubrunner"
CONFIG_FILE_NAME = "daemon_config.toml"
EXAMPLE_FILE_NAME = "daemon_config_example.toml"
DEFAULT_SOURCE_FOLDER = Path.home() / ".hubrunner"

ADDON_TOKEN_VARS = ("SUPERVISOR_TOKEN", "HASSIO_TOKEN")
ADDON_HOST = "supervisor"
ADDON_PORT = 80
ADDON_WEBSOCKET_PATH = "/core/websocket"


class HostConfig(BaseModel):
    """Connection target and app location for the daemon."""

    host: str = "localhost"
    port: int = 8123
    ssl: bool = False
    token: str = ""
    source_folder: Path | None = None
    websocket_path: str = "/api/websocket"

    @property
    def app_folder(self) -> Path:
        return self._require_source_folder() / "apps"

    @property
    def storage_folder(self) -> Path:
        return self._require_source_folder() / ".storage"

    def _require_source_folder(self) -> Path:
        if self.source_folder is None:
            raise ValueError("source_folder is not set; call ensure_app_directory first")
        return self.source_folder


def resolve_config() -> HostConfig | None:
    """Resolve configuration from add-on env, config file, then HASS_* env.

    Writes an example config file and returns None when nothing resolves.
    """

    addon_token = _addon_token()
    if addon_token is not None:
        LOG.info("Using add-on configuration")
        return HostConfig(
            host=ADDON_HOST,
            port=ADDON_PORT,
            token=addon_token,
            source_folder=_env_path("HASS_DAEMONAPPFOLDER"),
            websocket_path=ADDON_WEBSOCKET_PATH,
        )

    config = load_config_file(CONFIG_DIR / CONFIG_FILE_NAME)
    if config is not None:
        return config

    token = os.environ.get("HASS_TOKEN")
    if token is not None:
        LOG.info("Using configuration from HASS_* environment variables")
        config = HostConfig(token=token)
        host = os.environ.get("HASS_HOST")
        if host:
            config.host = host
        config.port = _env_port(config.port)
        config.source_folder = _env_path("HASS_DAEMONAPPFOLDER") or CONFIG_DIR / "daemonapp"
        return config

    write_example_config(CONFIG_DIR / EXAMPLE_FILE_NAME)
    return None


def load_config_file(path: Path) -> HostConfig | None:
    """Parse a TOML config file; None if it is missing or malformed."""

    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return None
    except (tomllib.TOMLDecodeError, OSError):
        LOG.exception("Failed to read configuration", extra={"path": str(path)})
        return None
    try:
        config = HostConfig.model_validate(raw)
    except ValidationError:
        LOG.exception("Invalid configuration", extra={"path": str(path)})
        return None
    LOG.info("Using configuration file %s", path)
    return config


def write_example_config(path: Path) -> None:
    """Write a commented example config unless one already exists."""

    if path.exists():
        return
    defaults = HostConfig()
    lines: list[str] = [
        "# Copy to daemon_config.toml and fill in your long-lived access token.",
        f'host = "{defaults.host}"',
        f"port = {defaults.port}",
        f"ssl = {str(defaults.ssl).lower()}",
        f'token = "{defaults.token}"',
        f'websocket_path = "{defaults.websocket_path}"',
        f'# source_folder = "{DEFAULT_SOURCE_FOLDER}"',
    ]
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n")
    except OSError:
        LOG.exception("Failed to write example configuration", extra={"path": str(path)})
        return
    LOG.info("Wrote example configuration to %s", path)


def ensure_app_directory(config: HostConfig) -> Path:
    """Default the source folder and create its apps directory."""

    if config.source_folder is None:
        config.source_folder = DEFAULT_SOURCE_FOLDER
    app_folder = config.app_folder
    app_folder.mkdir(parents=True, exist_ok=True)
    return app_folder


def _addon_token() -> str | None:
    for name in ADDON_TOKEN_VARS:
        value = os.environ.get(name)
        if value is not None:
            return value
    return None


def _env_path(name: str) -> Path | None:
    value = os.environ.get(name)
    return Path(value) if value else None


def _env_port(default: int) -> int:
    value = os.environ.get("HASS_PORT")
    if value is None:
        return default
    try:
        port = int(value)
    except ValueError:
        LOG.warning("Ignoring invalid HASS_PORT", extra={"value": value})
        return default
    if not 0 < port < 65536:
        LOG.warning("Ignoring out of range HASS_PORT", extra={"value": value})
        return default
    return port


__all__ = [
    "CONFIG_DIR",
    "HostConfig",
    "ensure_app_directory",
    "load_config_file",
    "resolve_config",
    "write_example_config",
]
