# SPDX-License-Identifier: MIT
"""Layered configuration for the blue/green rollout controller.

Values are resolved from (highest priority first) explicit keyword
arguments, ``ROLLOUT_*`` environment variables, a ``.env`` file and finally
a YAML document. Defaults mirror the managed deployment the controller
replaces: ``/healthz`` probes every 30 seconds with a 5 second timeout, a
60 second deregistration delay, a 15 minute bake and a single
``post-test-traffic-shift`` lifecycle hook.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Literal

import yaml  # type: ignore[import-untyped]
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, SettingsConfigDict, SettingsError
from pydantic_settings.sources import PydanticBaseSettingsSource

DEFAULT_CONFIG_PATH = Path("configs/rollout.yaml")

ColorName = Literal["blue", "green"]


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


class HealthCheckConfig(BaseModel):
    """Liveness probe parameters shared by both target pools."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str = Field(default="/healthz", description="Liveness path probed on every member.")
    port: int | None = Field(
        default=None, gt=0, le=65535, description="Probe port override; defaults to the member port."
    )
    interval: float = Field(default=30.0, gt=0, description="Seconds between probes of one member.")
    timeout: float = Field(default=5.0, gt=0, description="Seconds before a probe counts as failed.")
    healthy_threshold: int = Field(default=5, ge=1, description="Consecutive successes to become healthy.")
    unhealthy_threshold: int = Field(default=2, ge=1, description="Consecutive failures to become unhealthy.")
    grace_period: float = Field(
        default=30.0, ge=0, description="Seconds after registration during which failures are ignored."
    )
    success_codes: tuple[int, int] = Field(
        default=(200, 399), description="Inclusive range of HTTP status codes treated as success."
    )

    @field_validator("path")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("health check path must start with '/'")
        return value

    @model_validator(mode="after")
    def _validate_timing(self) -> "HealthCheckConfig":
        if self.timeout >= self.interval:
            raise ValueError("timeout must be shorter than interval")
        low, high = self.success_codes
        if not 100 <= low <= high <= 599:
            raise ValueError("success_codes must be an ordered HTTP status range")
        return self


class PoolConfig(BaseModel):
    """Sizing of a target pool and the endpoints a static platform hands out."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    desired_count: int = Field(default=2, ge=1)
    container_port: int = Field(default=8080, gt=0, le=65535)
    deregistration_delay: float = Field(default=60.0, ge=0)
    endpoints: dict[ColorName, tuple[str, ...]] = Field(
        default_factory=dict,
        description="host[:port] members per colour for the static compute platform.",
    )


class RouterConfig(BaseModel):
    """Listener rule layout of the traffic router."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    entry_point: str = Field(default="localhost:80", description="Stable address of the listener.")
    total_weight: int = Field(default=100, gt=0)
    production_priority: int = Field(default=101, gt=0)
    production_path: str = "/*"
    test_priority: int = Field(default=10, gt=0)
    test_path: str = "/__test__/*"
    test_header: str | None = Field(
        default=None, description="Optional header that must be present for the test rule to match."
    )

    @model_validator(mode="after")
    def _validate_priorities(self) -> "RouterConfig":
        if self.test_priority >= self.production_priority:
            raise ValueError("test_priority must be evaluated before production_priority")
        return self


class HookConfig(BaseModel):
    """Lifecycle hook target for the post test traffic stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    stage: str = "post-test-traffic-shift"
    url: str | None = Field(
        default=None, description="HTTP endpoint receiving the hook payload; unset accepts every rollout."
    )
    timeout: float = Field(default=90.0, gt=0)


class TimingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    bake_time: float = Field(default=900.0, ge=0, description="Seconds the new pool must stay healthy.")
    provisioning_timeout: float = Field(default=600.0, gt=0)
    poll_interval: float = Field(default=5.0, gt=0)
    drain_timeout: float | None = Field(
        default=None, gt=0, description="Overrides the deregistration delay while draining."
    )


class RollbackConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=5, ge=1, description="Attempts per rollback round before escalating.")
    retry_interval: float = Field(default=1.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_interval: float = Field(default=30.0, gt=0)
    escalation_webhook: str | None = None


class RolloutSettings(BaseSettings):
    """Application-wide configuration powered by ``pydantic-settings``."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf8",
        extra="ignore",
    )

    config_file: Path | None = Field(
        default=DEFAULT_CONFIG_PATH,
        description="Primary YAML configuration file.",
        validation_alias=AliasChoices("config_file", "config"),
    )
    application: str = Field(default="app", min_length=1)
    image: str | None = Field(default=None, description="Image reference to roll out.")
    default_tag: str = "latest"
    active_color: ColorName = "blue"
    active_image: str | None = None
    store_path: Path | None = Field(
        default=None, description="SQLite file persisting rollout records; in-memory when unset."
    )
    log_level: str = "INFO"
    log_json: bool = True
    status_port: int | None = Field(default=None, ge=0, le=65535)
    metrics_port: int | None = Field(default=None, ge=1, le=65535)
    health: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    hook: HookConfig = Field(default_factory=HookConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level '{value}'")
        return normalized

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_source = YamlSettingsSource(
            settings_cls, init_settings, env_settings, dotenv_settings
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            yaml_source,
            file_secret_settings,
        )

    def resolve_image(self, image: str | None = None) -> str:
        """Return the image reference to deploy, applying the default tag."""

        candidate = (image or self.image or "").strip()
        if not candidate:
            raise ConfigError("an image reference is required")
        name = candidate.rsplit("/", 1)[-1]
        if ":" not in name and "@" not in name:
            candidate = f"{candidate}:{self.default_tag}"
        return candidate


class YamlSettingsSource(PydanticBaseSettingsSource):
    """Lowest-priority settings source reading a YAML mapping from disk."""

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        init_source: PydanticBaseSettingsSource | None = None,
        env_source: PydanticBaseSettingsSource | None = None,
        dotenv_source: PydanticBaseSettingsSource | None = None,
    ) -> None:
        super().__init__(settings_cls)
        self._sources = (init_source, env_source, dotenv_source)

    def __call__(self) -> dict[str, Any]:
        path = self._resolve_path()
        if path is None or not path.exists():
            return {}
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf8")) or {}
        except yaml.YAMLError as exc:
            raise SettingsError(f"failed to parse YAML configuration at {path}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise SettingsError(f"configuration file {path} must define a mapping")
        return dict(payload)

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def _resolve_path(self) -> Path | None:
        for source in self._sources:
            if source is None:
                continue
            data = source()
            candidate = data.get("config_file") or data.get("config")
            if candidate:
                return Path(candidate).expanduser()
        default = self.settings_cls.model_fields["config_file"].default
        return Path(default).expanduser() if default else None


def parse_cli_overrides(pairs: Sequence[str] | None) -> dict[str, Any]:
    """Convert ``a.b=value`` pairs into nested dictionaries of YAML scalars."""

    overrides: dict[str, Any] = {}
    for raw in pairs or ():
        if "=" not in raw:
            raise ConfigError(f"Invalid override '{raw}', expected format key=value")
        key, value = raw.split("=", 1)
        parts = [segment.strip() for segment in key.split(".") if segment.strip()]
        if not parts:
            raise ConfigError("Override keys cannot be empty")
        target = overrides
        for segment in parts[:-1]:
            target = target.setdefault(segment, {})
            if not isinstance(target, dict):
                raise ConfigError(f"Override path '{key}' collides with a scalar value")
        try:
            target[parts[-1]] = yaml.safe_load(value)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Unable to parse override '{raw}': {exc}") from exc
    return overrides


def load_rollout_settings(
    path: str | Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
) -> RolloutSettings:
    """Build :class:`RolloutSettings`, converting validation errors to :class:`ConfigError`."""

    kwargs = dict(overrides or {})
    if path is not None:
        kwargs.setdefault("config_file", Path(path))
    try:
        return RolloutSettings(**kwargs)
    except (ValidationError, SettingsError) as exc:
        if isinstance(exc, ValidationError):
            message = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            )
        else:
            message = str(exc)
        raise ConfigError(message) from exc


def export_settings_schema(destination: str | Path | None = None, *, indent: int = 2) -> dict[str, Any]:
    """Return the JSON schema of :class:`RolloutSettings`, optionally writing it."""

    schema = RolloutSettings.model_json_schema()
    if destination is not None:
        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(schema, indent=indent, sort_keys=True), encoding="utf8")
    return schema


__all__ = [
    "ColorName",
    "ConfigError",
    "DEFAULT_CONFIG_PATH",
    "HealthCheckConfig",
    "HookConfig",
    "PoolConfig",
    "RollbackConfig",
    "RolloutSettings",
    "RouterConfig",
    "TimingConfig",
    "YamlSettingsSource",
    "export_settings_schema",
    "load_rollout_settings",
    "parse_cli_overrides",
]
