"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (CACHESYNC__ORIGIN__URL=http://localhost:3000)
  2. cachesync.yaml         (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("cachesync")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")


def _find_config_file() -> str | None:
    """Return the path of the first cachesync.yaml found, or None."""
    candidates = [
        Path("cachesync.yaml"),
        Path(platformdirs.user_config_dir("cachesync")) / "cachesync.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080
    auth_enabled: bool = False
    auth_key: str = ""


class OriginSettings(BaseModel):
    url: str = "http://localhost:3000"
    timeout_seconds: float = 30.0


class BuildSettings(BaseModel):
    # Local build artefact; ignored when url is set.
    path: str = "cachesync-build.json"
    url: str | None = None
    poll_interval_hours: float = 1.0


class CacheSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH
    # Must stay stable across releases so upgrades can find the previous manifest.
    staging_name: str = "cachesync-temp-cache"
    persistent_name: str = "cachesync-app-cache"
    manifest_name: str = "cachesync-app-manifest"


class AgentSettings(BaseModel):
    skip_waiting_on_install: bool = True


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: CACHESYNC__SERVER__PORT=9090
        env_prefix="CACHESYNC__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    origin: OriginSettings = OriginSettings()
    build: BuildSettings = BuildSettings()
    cache: CacheSettings = CacheSettings()
    agent: AgentSettings = AgentSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
