"""Configuration helpers for the rollout controller."""

from .rollout import (
    DEFAULT_CONFIG_PATH,
    ColorName,
    ConfigError,
    HealthCheckConfig,
    HookConfig,
    PoolConfig,
    RollbackConfig,
    RolloutSettings,
    RouterConfig,
    TimingConfig,
    YamlSettingsSource,
    export_settings_schema,
    load_rollout_settings,
    parse_cli_overrides,
)

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
