from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}
_LOG_FORMATS = {"text", "json"}

DEFAULT_CONFIG_PATH = "./config.json"

# Keys accepted in the optional config file, mapped to the env var that overrides them.
_FILE_KEYS = {
    "github_token": "DEVPET_GITHUB_TOKEN",
    "serial_port": "DEVPET_SERIAL_PORT",
    "spotify_client_id": "DEVPET_SPOTIFY_CLIENT_ID",
    "spotify_client_secret": "DEVPET_SPOTIFY_CLIENT_SECRET",
    "spotify_refresh_token": "DEVPET_SPOTIFY_REFRESH_TOKEN",
}


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    # Credentials / devices
    github_token: str | None
    serial_port: str | None
    serial_baud: int
    spotify_client_id: str | None
    spotify_client_secret: str | None
    spotify_refresh_token: str | None

    # State files
    github_state_path: Path
    spotify_state_path: Path

    # Scheduling
    github_poll_interval_s: float
    spotify_poll_interval_s: float
    token_refresh_interval_s: float
    max_events: int

    # Logging
    debug_channel: bool
    log_level: str
    log_format: str

    @property
    def spotify_enabled(self) -> bool:
        return bool(self.spotify_client_id and self.spotify_client_secret)

    def require_github_token(self) -> str:
        if not self.github_token:
            raise ConfigError("DEVPET_GITHUB_TOKEN (or github_token in the config file) is required")
        return self.github_token

    def require_serial_port(self) -> str:
        if not self.serial_port:
            raise ConfigError("DEVPET_SERIAL_PORT (or serial_port in the config file) is required")
        return self.serial_port

    def require_spotify_credentials(self) -> tuple[str, str]:
        if not self.spotify_enabled:
            raise ConfigError("DEVPET_SPOTIFY_CLIENT_ID and DEVPET_SPOTIFY_CLIENT_SECRET are required")
        return str(self.spotify_client_id), str(self.spotify_client_secret)


def _get_optional_str(env: Mapping[str, str], name: str) -> str | None:
    v = env.get(name)
    if v is None:
        return None
    vv = v.strip()
    return vv or None


def _get_positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer (got {raw!r})") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0 (got {raw!r})")
    return value


def _get_positive_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number (got {raw!r})") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0 (got {raw!r})")
    return value


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean (got {raw!r})")


def load_config_file(path: Path) -> dict[str, str]:
    """Load the optional YAML (or JSON) config file."""

    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse config file at {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"failed to read config file at {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ConfigError(f"config file at {path} must be an object")

    out: dict[str, str] = {}
    for key, value in loaded.items():
        if key not in _FILE_KEYS:
            continue
        if value is None:
            continue
        if not isinstance(value, (str, int)) or isinstance(value, bool):
            raise ConfigError(f"{path}: '{key}' must be a string")
        out[key] = str(value)
    return out


def _resolve_config_path(env: Mapping[str, str]) -> Optional[Path]:
    explicit = _get_optional_str(env, "DEVPET_CONFIG_PATH")
    if explicit is not None:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"DEVPET_CONFIG_PATH does not exist: {path}")
        return path
    default = Path(DEFAULT_CONFIG_PATH)
    return default if default.exists() else None


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the environment and the optional config file.

    Environment variables take precedence over config-file values.
    """

    source: Mapping[str, str] = os.environ if env is None else env

    config_path = _resolve_config_path(source)
    file_values: dict[str, Any] = load_config_file(config_path) if config_path is not None else {}

    def _credential(key: str) -> str | None:
        return _get_optional_str(source, _FILE_KEYS[key]) or file_values.get(key) or None

    log_format = (_get_optional_str(source, "DEVPET_LOG_FORMAT") or "text").lower()
    if log_format not in _LOG_FORMATS:
        raise ConfigError(f"DEVPET_LOG_FORMAT must be one of: {', '.join(sorted(_LOG_FORMATS))}")

    return Settings(
        github_token=_credential("github_token"),
        serial_port=_credential("serial_port"),
        serial_baud=_get_positive_int(source, "DEVPET_SERIAL_BAUD", 9600),
        spotify_client_id=_credential("spotify_client_id"),
        spotify_client_secret=_credential("spotify_client_secret"),
        spotify_refresh_token=_credential("spotify_refresh_token"),
        github_state_path=Path(_get_optional_str(source, "DEVPET_GITHUB_STATE_PATH") or "./github-state.json"),
        spotify_state_path=Path(_get_optional_str(source, "DEVPET_SPOTIFY_STATE_PATH") or "./spotify-state.json"),
        github_poll_interval_s=_get_positive_float(source, "DEVPET_GITHUB_POLL_INTERVAL_S", 60.0),
        spotify_poll_interval_s=_get_positive_float(source, "DEVPET_SPOTIFY_POLL_INTERVAL_S", 10.0),
        token_refresh_interval_s=_get_positive_float(source, "DEVPET_TOKEN_REFRESH_INTERVAL_S", 1800.0),
        max_events=_get_positive_int(source, "DEVPET_MAX_EVENTS", 20),
        debug_channel=_get_bool(source, "DEVPET_DEBUG_CHANNEL", False),
        log_level=(_get_optional_str(source, "DEVPET_LOG_LEVEL") or "INFO").upper(),
        log_format=log_format,
    )


def load_dotenv_files() -> None:
    # Load the working-directory .env (if present), then package-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")
