"""Configuration management for pwr-watcher.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments. It enforces a strict priority order. Supports XDG_CONFIG_HOME
(Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The configuration is aggregated into a :class:`Config` dataclass, which serves as the
single source of truth for application settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File (``[password_resets]`` section)
    4. Defaults

Supported Environment Variables:
    * ``PWR_WATCH_DIRECTORY``: Directory the identity service writes reset files into.
    * ``PWR_URL_BASE``: Base URL used to build reset links.
    * ``PWR_NOTIFICATIONS_ENABLED``: Set to false to turn reset notifications off.
    * ``PWR_TESTING``: Enable testing mode (in-memory collaborators).
    * ``PWR_HOST_FACTORY``: ``module:callable`` building the host collaborators.
    * ``PWR_LOG_FILE``: Path to the log file.
    * ``PWR_LOG_LEVEL``: Logging level.

A missing watch directory or URL base is not an error: the corresponding
capability is simply disabled.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "ConfigurationError", "load_config", "CONFIG_SECTION"]

CONFIG_SECTION = "password_resets"
APP_NAME = "pwr-watcher"

_TRUE_VALUES = ("true", "1", "yes", "on")


class ConfigurationError(ValueError):
    """Raised when a capability is used without the configuration it needs."""


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        watch_directory (Optional[str]): Absolute path of the directory to watch.
            None disables the watcher.
        url_base (Optional[str]): Base URL for reset links. None disables link generation.
        notifications_enabled (bool): Whether reset notifications are sent. Defaults to True.
        testing (bool): Whether to run with in-memory collaborators. Defaults to False.
        host_factory (Optional[str]): ``module:callable`` returning the host collaborators.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
    """

    watch_directory: Optional[str]
    url_base: Optional[str]
    notifications_enabled: bool
    testing: bool
    host_factory: Optional[str]
    log_file: Optional[str]
    log_level: str


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/pwr-watcher/config.ini` (Linux/macOS).
    3. `%APPDATA%\\pwr-watcher\\config.ini` (Windows).
    4. `~/.config/pwr-watcher/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), APP_NAME, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), APP_NAME, "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", APP_NAME, "config.ini"))
    return paths


def _validate_log_file(path_str: str) -> str:
    """Resolve the log file path and verify it can be written.

    Args:
        path_str (str): The raw path string (e.g., "~/pwr.log").

    Returns:
        str: The resolved absolute path.

    Raises:
        ValueError: If the path is a symlink, not a regular file, its parent
            directory does not exist, or it cannot be opened for appending.
    """
    path = Path(os.path.expanduser(path_str))
    if path.is_symlink():
        raise ValueError(f"Invalid path: Symlinks are not allowed (security): {path}")

    try:
        resolved = path.resolve(strict=True)
    except FileNotFoundError:
        try:
            resolved = path.parent.resolve(strict=True) / path.name
        except (FileNotFoundError, RuntimeError, OSError) as e:
            raise ValueError(f"Invalid path (parent directory not found): {path}") from e
    except (RuntimeError, OSError) as e:
        raise ValueError(f"Error resolving path {path}: {e}") from e

    if resolved.exists() and not resolved.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {resolved}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return bool(value)


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments from argparse.
            Keys should match Config attributes (e.g., 'watch_directory', 'url_base').
            Values of None are ignored to allow lower-priority sources to take effect.
            Typically obtained via ``vars(parser.parse_args())``.

    Returns:
        Config: The fully resolved configuration object.

    Raises:
        ValueError: If the log level is invalid or the log file cannot be written.

    Examples:
        >>> import os
        >>> os.environ["PWR_URL_BASE"] = "https://host/app"
        >>> load_config({}).url_base
        'https://host/app'
        >>> load_config({"url_base": "https://other"}).url_base
        'https://other'
        >>> del os.environ["PWR_URL_BASE"]
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "watch_directory": None,
        "url_base": None,
        "notifications_enabled": True,
        "testing": False,
        "host_factory": None,
        "log_file": None,
        "log_level": "INFO",
    }

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if CONFIG_SECTION in parser:
                    for key, value in parser[CONFIG_SECTION].items():
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "PWR_WATCH_DIRECTORY": "watch_directory",
        "PWR_URL_BASE": "url_base",
        "PWR_NOTIFICATIONS_ENABLED": "notifications_enabled",
        "PWR_TESTING": "testing",
        "PWR_HOST_FACTORY": "host_factory",
        "PWR_LOG_FILE": "log_file",
        "PWR_LOG_LEVEL": "log_level",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    if args.get("disable_notifications"):
        config_values["notifications_enabled"] = False

    config_values["notifications_enabled"] = _to_bool(config_values["notifications_enabled"])
    config_values["testing"] = _to_bool(config_values["testing"])

    # Existence is checked when the watcher starts, not here.
    if config_values["watch_directory"]:
        raw = os.path.expanduser(str(config_values["watch_directory"]).strip())
        config_values["watch_directory"] = str(Path(raw).absolute()) if raw else None
    else:
        config_values["watch_directory"] = None

    if config_values["url_base"]:
        config_values["url_base"] = str(config_values["url_base"]).strip() or None
    else:
        config_values["url_base"] = None

    if not config_values["host_factory"]:
        config_values["host_factory"] = None

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
