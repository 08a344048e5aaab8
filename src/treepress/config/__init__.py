"""Configuration schema and loading."""

from treepress.config.loader import ConfigError, YamlConfigLoader, resolve_config_path
from treepress.config.models import (
    AppConfig,
    AuthSettings,
    ConfigLoadRequest,
    ContentSettings,
    GitSettings,
    LoggingSettings,
    ServerSettings,
    WebhookSettings,
    WebhookTargetSettings,
)

__all__ = [
    "AppConfig",
    "AuthSettings",
    "ConfigError",
    "ConfigLoadRequest",
    "ContentSettings",
    "GitSettings",
    "LoggingSettings",
    "ServerSettings",
    "WebhookSettings",
    "WebhookTargetSettings",
    "YamlConfigLoader",
    "resolve_config_path",
]
