"""
Runtime settings.

Values come from (lowest to highest precedence) defaults,
``SPARKANYWHERE_*`` environment variables, a YAML file and CLI overrides.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DEFAULT_HOST, DEFAULT_LOG_DIR, DEFAULT_PORT, LOG_LEVELS, ProviderType
from .errors import ConfigurationError
from .utils import load_yaml_config


class EcsSettings(BaseModel):
    """Identifiers of pre-provisioned ECS resources"""
    cluster_name: str = ""
    subnet_id: str = ""
    security_group: str = ""
    region: Optional[str] = None


class Settings(BaseSettings):
    """Application settings"""
    model_config = SettingsConfigDict(
        env_prefix="SPARKANYWHERE_",
        env_nested_delimiter="__",
    )

    docker_enabled: bool = False
    ecs_enabled: bool = False
    ecs: EcsSettings = Field(default_factory=EcsSettings)

    control_plane_addr: str = ""
    instances: int = Field(default=1, ge=1)

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    log_dir: Path = Path(DEFAULT_LOG_DIR)

    # no deadline on the driver unless configured
    driver_timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LOG_LEVELS)}, got {value!r}")
        return level

    @classmethod
    def from_yaml(cls, path: Optional[str] = None, **overrides: Any) -> "Settings":
        """Load settings from an optional YAML file, then apply overrides"""
        data: Dict[str, Any] = {}
        if path:
            try:
                data = load_yaml_config(path) or {}
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
            if not isinstance(data, dict):
                raise ConfigurationError(f"Configuration file must hold a mapping: {path}")

        for key, value in overrides.items():
            if value is None:
                continue
            if key == "ecs" and isinstance(value, dict):
                merged = dict(data.get("ecs") or {})
                merged.update({k: v for k, v in value.items() if v is not None})
                data["ecs"] = merged
            else:
                data[key] = value
        return cls(**data)

    def provider_type(self) -> ProviderType:
        """Return the single enabled provider"""
        if self.docker_enabled and self.ecs_enabled:
            raise ConfigurationError("only one provider can be enabled")
        if self.ecs_enabled:
            return ProviderType.ECS
        if self.docker_enabled:
            return ProviderType.DOCKER
        raise ConfigurationError("no provider enabled, pass --docker or --ecs")
