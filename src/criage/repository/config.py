# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Repository server configuration.
YAML file selected by --config or CRIAGE_REPOSITORY_CONFIG; missing file means defaults.
"""

import os
import yaml
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

from criage.core.config import SUPPORTED_FORMATS
from criage.core.errors import ConfigError

DEFAULT_SERVER_CONFIG_PATH = "./repository.yaml"


@dataclass(frozen=True)
class ServerConfig:
    """Immutable repository server configuration"""
    port: int = 8080
    host: str = "0.0.0.0"
    storage_path: str = "./packages"
    index_path: str = "./index.json"
    upload_token: str = ""
    max_file_size: int = 100 * 1024 * 1024
    allowed_formats: List[str] = field(default_factory=lambda: list(SUPPORTED_FORMATS))
    enable_cors: bool = True
    log_level: str = "INFO"
    log_format: str = "json"


def load_server_config(path: Optional[str] = None) -> ServerConfig:
    """
    Load server configuration from YAML.

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    config_path = Path(os.path.expanduser(
        path or os.getenv("CRIAGE_REPOSITORY_CONFIG", DEFAULT_SERVER_CONFIG_PATH)
    ))
    if not config_path.exists():
        return ServerConfig()

    try:
        with open(config_path) as f:
            y = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse server config {config_path}: {e}")

    if not isinstance(y, dict):
        raise ConfigError(f"Server config {config_path} must be a mapping")

    known = {f.name for f in fields(ServerConfig)}
    unknown = sorted(set(y) - known)
    if unknown:
        raise ConfigError(f"Unknown server config keys: {', '.join(unknown)}", key=unknown[0])

    formats = y.get("allowed_formats")
    if formats is not None:
        invalid = [f for f in formats if f not in SUPPORTED_FORMATS]
        if invalid:
            raise ConfigError(f"Unsupported formats: {', '.join(invalid)}", key="allowed_formats")

    try:
        return ServerConfig(**y)
    except TypeError as e:
        raise ConfigError(f"Invalid server config {config_path}: {e}")
