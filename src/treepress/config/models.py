from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

MIB = 1024 * 1024


class ServerSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = "0.0.0.0"
    port: int = 8080
    cache_max_age: int = 60
    cache_stale_while_revalidate: int = 300


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    access_log: bool = True
    file: FileLoggingSettings = FileLoggingSettings()


class ContentSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    repo_path: str
    content_dir: str = "content"

    # Per-file and whole-load read limits
    max_file_bytes: int = Field(default=5 * MIB, gt=0)
    max_total_bytes: int = Field(default=256 * MIB, gt=0)


class GitSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Explicit path to git-http-backend; discovered when unset
    backend_path: Optional[str] = None
    max_body_bytes: int = Field(default=100 * MIB, gt=0)
    cgi_timeout_seconds: float = Field(default=300.0, gt=0)
    allow_anonymous_read: bool = False


class WebhookTargetSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str
    # Literal value or "env:NAME"; falls back to the section-wide secret
    secret: Optional[str] = None


class WebhookSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    targets: Sequence[WebhookTargetSettings] = ()
    secret: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)


class AuthSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Literal value or "env:NAME"
    api_token: Optional[str] = None
    git_token: Optional[str] = None


class AppConfig(BaseModel):
    """
    Effective runtime configuration after applying all precedence rules.

    Only `content` is required; every other section has working defaults.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    server: ServerSettings = ServerSettings()
    logging: LoggingSettings = LoggingSettings()
    content: ContentSettings
    git: GitSettings = GitSettings()
    webhooks: WebhookSettings = WebhookSettings()
    auth: AuthSettings = AuthSettings()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    `yaml_path=None` means the loader searches the standard locations.
    """

    yaml_path: Optional[str] = None
    env_prefix: str = "TREEPRESS__"
    dotenv_path: Optional[str] = ".env"
