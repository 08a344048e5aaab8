from __future__ import annotations

import os
from pathlib import Path
from typing import Any, MutableMapping, Optional, Sequence

from treepress.config.models import (
    AppConfig,
    ConfigLoadRequest,
)

CONFIG_ENV_VAR = "TREEPRESS_CONFIG"
CONFIG_FILENAME = "treepress.yaml"


class ConfigError(Exception):
    """Raised when no usable configuration file can be located or parsed."""


def _read_yaml_config(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore[import-not-found]
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "Missing dependency: PyYAML is required to load the YAML config file. Install 'PyYAML'."
        ) from e

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    raw = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {path}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping, got: {type(data).__name__}")
    return data


def _candidate_paths(cwd: Path) -> list[Path]:
    candidates: list[Path] = []
    env_path = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env_path:
        candidates.append(Path(env_path))
    for directory in [cwd, *cwd.parents]:
        candidates.append(directory / CONFIG_FILENAME)
    candidates.append(Path.home() / ".config" / "treepress" / "config.yaml")
    candidates.append(Path("/etc/treepress/config.yaml"))
    return candidates


def resolve_config_path(explicit_path: Optional[str] = None, *, cwd: Optional[Path] = None) -> Path:
    """
    Locate the config file.

    Order: explicit path, $TREEPRESS_CONFIG, treepress.yaml in the working directory
    and its ancestors, ~/.config/treepress/config.yaml, /etc/treepress/config.yaml.
    """
    if explicit_path:
        path = Path(explicit_path)
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        return path

    searched: list[Path] = []
    for path in _candidate_paths(cwd or Path.cwd()):
        if path.is_file():
            return path
        searched.append(path)

    joined = ", ".join(str(p) for p in searched)
    raise ConfigError(f"No config file found. searched={joined}")


def _load_dotenv_if_present(dotenv_path: Path) -> None:
    try:
        from dotenv import load_dotenv  # type: ignore[import-not-found]
    except ModuleNotFoundError as e:  # pragma: no cover
        raise ModuleNotFoundError(
            "Missing dependency: python-dotenv is required to load .env. Install 'python-dotenv'."
        ) from e

    if not dotenv_path.exists():
        return
    load_dotenv(dotenv_path=dotenv_path, override=False)


def _env_var_name_to_segments(env_var_name: str, prefix: str) -> Sequence[str]:
    remainder = env_var_name[len(prefix) :]
    parts = [p for p in remainder.split("__") if p]
    if not parts:
        raise ValueError(f"Invalid environment variable override name: {env_var_name}")
    return [p.lower() for p in parts]


def _get_parent_mapping(config: MutableMapping[str, Any], path: Sequence[str]) -> MutableMapping[str, Any]:
    cur: MutableMapping[str, Any] = config
    for segment in path[:-1]:
        if segment not in cur or cur[segment] is None:
            # Sections may be omitted from YAML; pydantic rejects unknown keys later.
            cur[segment] = {}
        next_value = cur[segment]
        if not isinstance(next_value, dict):
            dotted = ".".join(path)
            raise TypeError(f"Configuration key path does not point to a mapping: {dotted}")
        cur = next_value
    return cur


def _apply_env_overrides(config: MutableMapping[str, Any], env_prefix: str) -> None:
    for name, value in os.environ.items():
        if not name.startswith(env_prefix):
            continue

        segments = _env_var_name_to_segments(name, env_prefix)
        parent = _get_parent_mapping(config, segments)

        # We allow overriding any value; Pydantic will handle type coercion/validation later.
        parent[segments[-1]] = value


class YamlConfigLoader:
    async def load(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        return self.load_sync(request)

    def load_sync(self, request: ConfigLoadRequest = ConfigLoadRequest()) -> AppConfig:
        yaml_path = resolve_config_path(request.yaml_path)
        config = _read_yaml_config(yaml_path)

        if request.dotenv_path is not None:
            _load_dotenv_if_present(Path(request.dotenv_path))

        try:
            _apply_env_overrides(config, request.env_prefix)
            return AppConfig.model_validate(config)
        except (TypeError, ValueError) as e:
            # pydantic.ValidationError is a ValueError
            raise ConfigError(f"Invalid configuration in {yaml_path}: {e}") from e
