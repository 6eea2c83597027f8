"""Settings for the sync engine, read from TOML and the environment."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .errors import ConfigError

HOME_CONFIG_PATH = Path.home() / ".matrix-sync" / "matrix-sync.toml"


def _resolve_config_path(path: str | Path | None) -> Path:
    return Path(path).expanduser() if path else HOME_CONFIG_PATH


def _ensure_config_file(cfg_path: Path) -> None:
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.") from None
    if not cfg_path.exists():
        raise ConfigError(f"Missing config file {cfg_path}.") from None


class MatrixSyncSettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        env_prefix="MATRIX_SYNC__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    homeserver_url: str
    access_token: str
    user_id: str | None = None
    device_id: str | None = None

    sync_timeout_ms: int = 30000
    sync_presence: Literal["online", "offline", "unavailable"] | None = None
    sync_filter: dict[str, Any] | None = None

    storage_path: Path | None = None
    backoff_initial: float = 1.0
    backoff_maximum: float = 60.0

    enable_encryption: bool = False
    crypto_store_path: Path | None = None

    @field_validator("homeserver_url")
    @classmethod
    def normalize_homeserver_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("homeserver_url must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("sync_timeout_ms")
    @classmethod
    def check_sync_timeout(cls, value: int) -> int:
        if value < 0:
            raise ValueError("sync_timeout_ms must not be negative")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(
    path: str | Path | None = None,
) -> tuple[MatrixSyncSettings, Path]:
    """Load settings from a TOML config file, with env overrides."""
    cfg_path = _resolve_config_path(path)
    _ensure_config_file(cfg_path)

    cfg = dict(MatrixSyncSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "MatrixSyncSettingsBound",
        (MatrixSyncSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound(), cfg_path
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
    except Exception as exc:
        raise ConfigError(f"Failed to load config {cfg_path}: {exc}") from exc
