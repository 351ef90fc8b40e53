"""
Configuration loading and machine profile detection.

The configuration declares export and import rules per profile:

    [[exports.shared]]
    source = "~/.ssh"
    endpoint = "ssh/$profile"
    files = ["id_ed25519", "id_ed25519.pub"]

    [[imports.shared]]
    source = "ssh/$profile"
    endpoint = "~/.ssh"
    files = ["id_ed25519", "id_ed25519.pub"]
    symlinks_to = "/root/.ssh"

TOML and YAML are both accepted, picked by file suffix. An optional
``settings`` table sets transfer policy defaults.
"""

from __future__ import annotations

import logging
import os
import socket
import tomllib
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from . import CONFIG_DIR, CONFIG_ENV, PROFILE_ENV
from .errors import ConfigError
from .models import SecretsConfig

logger = logging.getLogger("secrets_manager.config")

APP_NAME = "secrets-manager"
CONFIG_FILENAMES = (
    f"{APP_NAME}.toml",
    f"{APP_NAME}.yaml",
    f"{APP_NAME}.yml",
)


def config_search_path(cwd: Optional[Path] = None) -> list[Path]:
    """Candidate config files, in lookup order."""
    user_dir = Path(os.environ.get("XDG_CONFIG_HOME", CONFIG_DIR)).expanduser() / APP_NAME
    local_dir = cwd or Path.cwd()
    return [user_dir / name for name in CONFIG_FILENAMES] + [
        local_dir / name for name in CONFIG_FILENAMES
    ]


def find_config_file(explicit: Optional[Path] = None, cwd: Optional[Path] = None) -> Path:
    """Locate the configuration file.

    Order: explicit path, ``$SECRETS_MANAGER_CONFIG``, the user config
    directory, then the current directory.

    Args:
        explicit: Path given on the command line.
        cwd: Directory to use instead of the current one.

    Returns:
        Path to an existing config file.

    Raises:
        ConfigError: If nothing is found.
    """
    chosen = explicit or os.environ.get(CONFIG_ENV)
    if chosen:
        path = Path(chosen).expanduser()
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        return path

    for candidate in config_search_path(cwd):
        if candidate.is_file():
            return candidate

    raise ConfigError(
        "Could not find any config file. Add secrets-manager.toml in the "
        "current directory or in $XDG_CONFIG_HOME/secrets-manager/"
    )


def _parse(path: Path, text: str) -> dict:
    if path.suffix in (".yaml", ".yml"):
        try:
            return yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse config file at '{path}'\n{exc}") from exc
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse config file at '{path}'\n{exc}") from exc


def load_config(path: Path) -> SecretsConfig:
    """Read and validate a configuration file.

    Args:
        path: TOML or YAML config file.

    Returns:
        SecretsConfig: The validated rules and settings.

    Raises:
        ConfigError: If the file cannot be read, parsed, or validated.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config file at '{path}'\n{exc}") from exc

    data = _parse(path, text)
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file at '{path}': top level must be a table")

    try:
        config = SecretsConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file at '{path}'\n{exc}") from exc

    logger.info(
        "Loaded %s (%d export profiles, %d import profiles)",
        path, len(config.exports), len(config.imports),
    )
    return config


def detect_profile(explicit: Optional[str] = None) -> str:
    """Resolve the active profile name.

    Args:
        explicit: Profile given on the command line.

    Returns:
        The explicit profile, ``$SECRETS_MANAGER_PROFILE``, or the hostname.
    """
    profile = explicit or os.environ.get(PROFILE_ENV) or socket.gethostname()
    logger.debug("Active profile: %s", profile)
    return profile
