"""idstitch.core.config

Three config surfaces only:
1) `config/default.yaml` (checked in)
2) `config/local.yaml` (optional overlay, not checked in)
3) Environment variables (`IDSTITCH_` prefix, `__` for nesting)

Everything else is derived.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from idstitch.core.exceptions import ConfigError


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class StoreConfig(BaseModel):
    path: Path = Path("idstitch.db")
    timeout_seconds: float = 5.0

    @field_validator("timeout_seconds")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be > 0")
        return v


class IngestConfig(BaseModel):
    device_cookie: str = "mp_device_id"
    device_cookie_max_age_days: int = 30
    secure_cookie: bool = False
    # Client SDKs read the device id back from the cookie.
    httponly_cookie: bool = False


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 5060
    prefix: str = "/api/v1"
    auth_token: str = ""
    cors_origins: list[str] = []


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    data_dir: Path = Path("data")
    config_dir: Path = Path("config")

    store: StoreConfig = Field(default_factory=StoreConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = {"env_prefix": "IDSTITCH_", "env_nested_delimiter": "__"}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats YAML.
        return env_settings, init_settings, file_secret_settings

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}") from e

        local = path.parent / "local.yaml"
        if local.exists() and local != path:
            local_data = yaml.safe_load(local.read_text()) or {}
            raw = _deep_merge(raw, local_data)

        try:
            return cls(**raw)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid config in {path}: {e.error_count()} error(s)") from e

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")

    def resolved_store_path(self) -> Path:
        """Store path; relative paths live under `data_dir`."""

        p = self.store.path
        if p.is_absolute():
            return p
        return self.data_dir / p
