"""Configuration management for cflocal.

Values are resolved through a fixed fallback chain: environment variable,
then an options object handed over by the CLI via initialize(), then the
[engine] section of the INI file named by CFLOCAL_CONFIG, then the
built-in default.
"""

from __future__ import annotations

import configparser
import logging
import os
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_SECTION = "engine"

# Module-level config cache
_config: Optional[Dict[str, Any]] = None
_options: Optional[Any] = None  # Parsed CLI options object


def initialize(options: Any) -> None:
    """Initialize config module with the CLI's parsed options object.

    Attributes named ``cflocal_<key>`` on the object override the config
    file and defaults.
    """
    global _options
    _options = options
    logger.debug("Config module initialized with options object")


def _parse_config_file(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Parse the [engine] section of an INI config file.

    Returns:
        Dict of raw string values; empty if the file or section is missing.
    """
    if not config_file:
        return {}
    parser = configparser.ConfigParser()
    try:
        read = parser.read(config_file)
    except configparser.Error as exc:
        logger.warning("Failed to parse config file %s: %s", config_file, exc)
        return {}
    if not read:
        logger.debug("Config file %s not found, using defaults", config_file)
        return {}
    if not parser.has_section(CONFIG_SECTION):
        return {}
    return dict(parser.items(CONFIG_SECTION))


def _get_config() -> Dict[str, Any]:
    global _config
    if _config is None:
        _config = _parse_config_file(os.environ.get("CFLOCAL_CONFIG"))
    return _config


def _get_config_value(
    key: str,
    default: Any,
    converter: Optional[Callable[[Any], Any]] = None,
) -> Any:
    """Get config value with fallback chain: env var -> options -> config file -> default.

    Args:
        key: Config key name (in [engine] section)
        default: Default value if not found
        converter: Optional function to convert string value (e.g., int, bool)
    """
    env_var = f"CFLOCAL_{key.upper()}"
    env_value = os.environ.get(env_var)
    if env_value is not None:
        if converter:
            try:
                return converter(env_value)
            except (ValueError, TypeError):
                logger.warning("Invalid value for %s: %s, using default", env_var, env_value)
                return default
        return env_value

    if _options is not None:
        option_key = f"cflocal_{key}"
        value = getattr(_options, option_key, None)
        if value is not None:
            if converter and isinstance(value, str):
                try:
                    return converter(value)
                except (ValueError, TypeError):
                    logger.warning("Invalid value for %s: %s, using default", key, value)
                    return default
            return value

    value = _get_config().get(key)
    if value is not None:
        if converter:
            try:
                return converter(value)
            except (ValueError, TypeError):
                logger.warning(
                    "Invalid value for config key %s: %s, using default", key, value
                )
                return default
        return value

    return default


def _parse_bool(value: Any) -> bool:
    """Parse boolean value from config (string or bool).

    Accepts: True, "true", "1", "yes", "on" -> True; anything else -> False
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ("true", "1", "yes", "on")
    return bool(value)


def _parse_mode(value: Any) -> int:
    """Parse a file mode; strings are read as octal ("755", "0o755")."""
    if isinstance(value, int):
        return value
    return int(str(value), 8)


def podman_socket() -> str:
    """Podman socket URI handed to podman-py PodmanClient."""
    return _get_config_value("podman_socket", "unix:///run/podman/podman.sock")


def commit_author() -> str:
    """Author recorded on images produced by Container.commit()."""
    return _get_config_value("commit_author", "CF Local")


def restart_grace() -> int:
    """Seconds the runtime waits for the process to stop during a restart."""
    return _get_config_value("restart_grace", 1, converter=int)


def log_since_backoff_ms() -> int:
    """How far before a restart's start time the new log source begins."""
    return _get_config_value("log_since_backoff_ms", 10, converter=int)


def copy_file_mode() -> int:
    """Permission bits for files written by Container.copy_to()."""
    return _get_config_value("copy_file_mode", 0o755, converter=_parse_mode)


def restart_poll_interval() -> float:
    """Seconds between checks of the exit signal while waiting for a restart trigger."""
    return _get_config_value("restart_poll_interval", 0.1, converter=float)


def log_drain_timeout() -> float:
    """Seconds start() waits for buffered output after the process exits."""
    return _get_config_value("log_drain_timeout", 1.0, converter=float)


def bold_stderr() -> bool:
    """Render stderr frames in bold on the log sink."""
    return _get_config_value("bold_stderr", False, converter=_parse_bool)


def reset_config() -> None:
    """Reset config cache (useful for testing)."""
    global _config, _options
    _config = None
    _options = None
