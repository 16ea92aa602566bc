# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
criage client configuration - single source of truth.
YAML is king. Env vars only select which file to read.

- ALL configuration in plain text (YAML)
- NO hidden state - everything inspectable via `cat`, `grep`
"""

import os
import tempfile
import yaml
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError, NotFoundError


DEFAULT_CONFIG_PATH = "~/.config/criage/config.yaml"
MANIFEST_FILENAME = "criage.yaml"
BUILD_MANIFEST_FILENAME = "build.json"

# Named compression levels accepted by `compression.level`
COMPRESSION_FAST = 1
COMPRESSION_NORMAL = 3
COMPRESSION_BEST = 9

COMPRESSION_LEVELS = {
    "fast": COMPRESSION_FAST,
    "normal": COMPRESSION_NORMAL,
    "best": COMPRESSION_BEST,
}

SUPPORTED_FORMATS = ["tar.zst", "tar.lz4", "tar.xz", "tar.gz", "zip"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================

@dataclass(frozen=True)
class RepositoryConfig:
    """Package repository the installer talks to"""
    name: str
    url: str
    type: str = "http"
    priority: int = 100
    enabled: bool = True
    auth_token: Optional[str] = None
    fingerprint: Optional[str] = None


def _default_repositories() -> List[RepositoryConfig]:
    return [RepositoryConfig(name="default", url="https://packages.criage.io", priority=100)]


@dataclass(frozen=True)
class Config:
    """
    Immutable client configuration.
    All values from YAML. No hidden state.
    """

    # -- Paths --
    global_path: str = "/usr/local/lib/criage"
    local_path: str = "./criage_modules"
    cache_path: str = str(Path("~/.cache/criage").expanduser())
    temp_path: str = str(Path(tempfile.gettempdir()) / "criage")

    # -- Repositories --
    repositories: List[RepositoryConfig] = field(default_factory=_default_repositories)

    # -- Archives --
    compression_format: str = "tar.zst"
    compression_level: int = COMPRESSION_NORMAL
    parallel: int = 4

    # -- Network --
    timeout: int = 60
    retry_count: int = 3

    # -- Behaviour --
    auto_update: bool = False
    verify_hashes: bool = True
    keyring_path: Optional[str] = None

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "text"
    log_file: Optional[str] = None

    settings: Dict[str, Any] = field(default_factory=dict)

    def to_yaml_dict(self) -> Dict[str, Any]:
        """Nested representation written back to config.yaml."""
        return {
            "global_path": self.global_path,
            "local_path": self.local_path,
            "cache_path": self.cache_path,
            "temp_path": self.temp_path,
            "repositories": [
                {k: v for k, v in asdict(repo).items() if v is not None}
                for repo in self.repositories
            ],
            "compression": {
                "format": self.compression_format,
                "level": self.compression_level,
            },
            "parallel": self.parallel,
            "timeout": self.timeout,
            "retry_count": self.retry_count,
            "auto_update": self.auto_update,
            "verify_hashes": self.verify_hashes,
            "keyring_path": self.keyring_path,
            "logging": {
                "level": self.log_level,
                "format": self.log_format,
                "file": self.log_file,
            },
            "settings": dict(self.settings),
        }


# =============================================================================
# LOADER
# =============================================================================

def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML.
    Returns defaults if file doesn't exist.
    """
    config_path = Path(os.path.expanduser(path or DEFAULT_CONFIG_PATH))
    if not config_path.exists():
        return Config()

    try:
        with open(config_path) as f:
            y = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config {config_path}: {e}")

    if not isinstance(y, dict):
        raise ConfigError(f"Config {config_path} must be a mapping")

    # Helper to safely navigate nested dicts
    def get(d: dict, *keys, default=None):
        for k in keys:
            if not isinstance(d, dict):
                return default
            d = d.get(k, {})
        return d if d != {} else default

    defaults = Config()
    repositories = defaults.repositories
    if "repositories" in y:
        try:
            repositories = [RepositoryConfig(**repo) for repo in (y["repositories"] or [])]
        except TypeError as e:
            raise ConfigError(f"Invalid repository entry in {config_path}: {e}", key="repositories")

    # Missing keys take the default; present keys go through the same
    # validation as `config set`, so 0 and false are kept as written.
    compression_level = get(y, "compression", "level")
    parallel = get(y, "parallel")
    timeout = get(y, "timeout")
    retry_count = get(y, "retry_count")
    auto_update = get(y, "auto_update")
    verify_hashes = get(y, "verify_hashes")

    return Config(
        global_path=get(y, "global_path") or defaults.global_path,
        local_path=get(y, "local_path") or defaults.local_path,
        cache_path=os.path.expanduser(get(y, "cache_path") or defaults.cache_path),
        temp_path=get(y, "temp_path") or defaults.temp_path,
        repositories=repositories,
        compression_format=_parse_format(get(y, "compression", "format", default=defaults.compression_format)),
        compression_level=defaults.compression_level if compression_level is None else _parse_level(compression_level),
        parallel=defaults.parallel if parallel is None else _parse_int("parallel", parallel, minimum=1, maximum=64),
        timeout=defaults.timeout if timeout is None else _parse_int("timeout", timeout),
        retry_count=defaults.retry_count if retry_count is None else _parse_int("retry_count", retry_count),
        auto_update=defaults.auto_update if auto_update is None else _parse_bool("auto_update", auto_update),
        verify_hashes=defaults.verify_hashes if verify_hashes is None else _parse_bool("verify_hashes", verify_hashes),
        keyring_path=get(y, "keyring_path"),
        log_level=_parse_log_level(get(y, "logging", "level", default=defaults.log_level)),
        log_format=_parse_log_format(get(y, "logging", "format", default=defaults.log_format)),
        log_file=get(y, "logging", "file"),
        settings=get(y, "settings") or {},
    )


def save_config(config: Config, path: Optional[str] = None) -> None:
    """Write configuration to YAML."""
    config_path = Path(os.path.expanduser(path or DEFAULT_CONFIG_PATH))
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(config.to_yaml_dict(), f, sort_keys=False)


# =============================================================================
# CONFIG MANAGER
# =============================================================================

def _parse_int(key: str, value: str, minimum: int = 0, maximum: Optional[int] = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid {key} value: {value}", key=key)
    if parsed < minimum or (maximum is not None and parsed > maximum):
        bounds = f"between {minimum} and {maximum}" if maximum is not None else f">= {minimum}"
        raise ConfigError(f"{key} must be {bounds}", key=key)
    return parsed


def _parse_bool(key: str, value: str) -> bool:
    lowered = str(value).strip().lower()
    if lowered in ("true", "1", "yes", "on"):
        return True
    if lowered in ("false", "0", "no", "off"):
        return False
    raise ConfigError(f"invalid {key} value: {value}", key=key)


def _parse_level(value: str) -> int:
    lowered = str(value).strip().lower()
    if lowered in COMPRESSION_LEVELS:
        return COMPRESSION_LEVELS[lowered]
    return _parse_int("compression.level", lowered, minimum=1, maximum=22)


def _parse_format(value: str) -> str:
    if value not in SUPPORTED_FORMATS:
        raise ConfigError(
            f"compression.format must be one of {', '.join(SUPPORTED_FORMATS)}",
            key="compression.format"
        )
    return value


def _parse_log_level(value: str) -> str:
    level = str(value).strip().upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}", key="logging.level")
    return level


def _parse_log_format(value: str) -> str:
    if value not in ("text", "json"):
        raise ConfigError("logging.format must be text or json", key="logging.format")
    return value


class ConfigManager:
    """
    Reads and mutates the client configuration.

    Every mutation builds a new frozen Config and persists it, so readers
    holding the previous instance never observe a half-applied change.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Config] = None):
        self.config_path = os.path.expanduser(
            config_path or os.getenv("CRIAGE_CONFIG_PATH", DEFAULT_CONFIG_PATH)
        )
        self.config = config if config is not None else load_config(self.config_path)

    def save(self) -> None:
        save_config(self.config, self.config_path)

    def get_value(self, key: str) -> str:
        """Return the string form of a config key."""
        values = self._known_values()
        if key in values:
            return values[key]
        if key in self.config.settings:
            return str(self.config.settings[key])
        raise NotFoundError("Config key", key)

    def set_value(self, key: str, value: str) -> Config:
        """Validate and persist a config value; returns the new Config."""
        if key in ("global_path", "local_path", "cache_path", "temp_path"):
            if not value:
                raise ConfigError(f"{key} cannot be empty", key=key)
            changes = {key: value}
        elif key == "compression.format":
            changes = {"compression_format": _parse_format(value)}
        elif key == "compression.level":
            changes = {"compression_level": _parse_level(value)}
        elif key == "parallel":
            changes = {"parallel": _parse_int(key, value, minimum=1, maximum=64)}
        elif key in ("timeout", "retry_count"):
            changes = {key: _parse_int(key, value)}
        elif key in ("auto_update", "verify_hashes"):
            changes = {key: _parse_bool(key, value)}
        else:
            settings = dict(self.config.settings)
            settings[key] = value
            changes = {"settings": settings}

        self.config = replace(self.config, **changes)
        self.save()
        return self.config

    def remove_settings(self, prefix: str) -> List[str]:
        """Drop every free-form setting whose key starts with prefix."""
        removed = [key for key in self.config.settings if key.startswith(prefix)]
        if not removed:
            return []
        settings = {k: v for k, v in self.config.settings.items() if k not in removed}
        self.config = replace(self.config, settings=settings)
        self.save()
        return removed

    def list_values(self) -> Dict[str, str]:
        values = self._known_values()
        for key, value in self.config.settings.items():
            values[key] = str(value)
        return values

    def _known_values(self) -> Dict[str, str]:
        c = self.config
        return {
            "global_path": c.global_path,
            "local_path": c.local_path,
            "cache_path": c.cache_path,
            "temp_path": c.temp_path,
            "compression.format": c.compression_format,
            "compression.level": str(c.compression_level),
            "parallel": str(c.parallel),
            "timeout": str(c.timeout),
            "retry_count": str(c.retry_count),
            "auto_update": str(c.auto_update).lower(),
            "verify_hashes": str(c.verify_hashes).lower(),
        }

    # -- Repositories --

    def get_repositories(self) -> List[RepositoryConfig]:
        return list(self.config.repositories)

    def add_repository(
        self,
        name: str,
        url: str,
        repo_type: str = "http",
        priority: int = 100,
        auth_token: Optional[str] = None,
        fingerprint: Optional[str] = None
    ) -> RepositoryConfig:
        """Add a repository, replacing an existing one with the same name."""
        if not name or not url:
            raise ConfigError("repository name and url are required", key="repositories")

        repo = RepositoryConfig(
            name=name,
            url=url.rstrip("/"),
            type=repo_type,
            priority=priority,
            enabled=True,
            auth_token=auth_token,
            fingerprint=fingerprint,
        )
        repositories = [r for r in self.config.repositories if r.name != name]
        if len(repositories) == len(self.config.repositories):
            repositories.append(repo)
        else:
            # Keep the replaced entry's position
            repositories = [repo if r.name == name else r for r in self.config.repositories]

        self.config = replace(self.config, repositories=repositories)
        self.save()
        return repo

    def remove_repository(self, name: str) -> None:
        repositories = [r for r in self.config.repositories if r.name != name]
        if len(repositories) == len(self.config.repositories):
            raise NotFoundError("Repository", name)
        self.config = replace(self.config, repositories=repositories)
        self.save()

    # -- Paths --

    def install_path(self, package_name: str, global_install: bool) -> Path:
        base = self.config.global_path if global_install else self.config.local_path
        return Path(base).expanduser().absolute() / package_name

    def cache_path(self, package_name: str, version: str) -> Path:
        return Path(self.config.cache_path).expanduser() / package_name / version

    def temp_path(self, suffix: str = "") -> Path:
        base = Path(self.config.temp_path).expanduser()
        return base / suffix if suffix else base

    def ensure_directories(self) -> None:
        for directory in (self.config.cache_path, self.config.temp_path, self.config.local_path):
            try:
                Path(directory).expanduser().mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"failed to create directory {directory}: {e}")

