# Copyright 2025 icecake0141
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# This file was created or modified with the assistance of an AI (Large Language Model).
# Review required for correctness, security, and licensing.

"""
Config file support for LatProbe.

This module handles loading and saving persistent settings in ~/.latprobe.conf.
Supports both YAML and INI formats; settings live in a ``default`` section.

Priority order: CLI args > ~/.latprobe.conf > hardcoded defaults
"""

import configparser
import logging
import os
from typing import Any, Dict, NamedTuple, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.latprobe.conf")
DEFAULT_HOST = "1.1.1.1"
DEFAULT_INTERVAL = 1.0
MIN_INTERVAL = 0.1
MAX_INTERVAL = 60.0
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Mapping of config field names to their expected Python types
_CONFIG_FIELD_TYPES: Dict[str, type] = {
    "host": str,
    "interval": float,
    "probe_binary": str,
    "probe_deadline_ms": int,
    "hard_timeout": float,
    "grace_period": float,
    "history_size": int,
    "log_level": str,
    "log_file": str,
}

# Fields written back by ConfigStore.save()
_PERSISTED_FIELDS = ("host", "interval")


class ProbeConfig(NamedTuple):
    """Probe target and engine settings with their defaults."""

    host: str = DEFAULT_HOST
    interval: float = DEFAULT_INTERVAL
    probe_binary: str = "ping"
    probe_deadline_ms: int = 1000
    hard_timeout: float = 3.0
    grace_period: float = 0.5
    history_size: int = 120
    log_level: str = "INFO"
    log_file: Optional[str] = None


def validate_host(host: Any) -> str:
    """
    Normalize and check a probe target.

    Raises:
        ValueError: If the host is empty, contains whitespace or control characters, or looks like an option
    """
    if not isinstance(host, str):
        raise ValueError(f"Host must be a string, got {type(host).__name__}.")
    host = host.strip()
    if not host:
        raise ValueError("Host must not be empty.")
    if host.startswith("-") or any(ch.isspace() or not ch.isprintable() for ch in host):
        raise ValueError(f"Invalid host {host!r}.")
    return host


def validate_interval(interval: Any) -> float:
    """
    Check a probe interval in seconds.

    Raises:
        ValueError: If the interval is outside 0.1-60.0 seconds
    """
    try:
        value = float(interval)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Interval must be a number of seconds, got {interval!r}.") from exc
    if not MIN_INTERVAL <= value <= MAX_INTERVAL:
        raise ValueError(f"Interval must be between {MIN_INTERVAL} and {MAX_INTERVAL} seconds.")
    return value


def validate_config(config: ProbeConfig) -> ProbeConfig:
    """
    Validate every field of a ProbeConfig.

    Returns:
        The config with host and interval normalized

    Raises:
        ValueError: On the first invalid field
    """
    if config.probe_deadline_ms <= 0:
        raise ValueError("probe_deadline_ms must be a positive integer.")
    if config.hard_timeout <= 0:
        raise ValueError("hard_timeout must be positive.")
    if config.grace_period < 0:
        raise ValueError("grace_period must not be negative.")
    if config.history_size < 1:
        raise ValueError("history_size must be at least 1.")
    if not config.probe_binary:
        raise ValueError("probe_binary must not be empty.")
    log_level = config.log_level.upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}.")
    return config._replace(
        host=validate_host(config.host),
        interval=validate_interval(config.interval),
        log_level=log_level,
    )


def _coerce_field(key: str, raw_value: Any) -> Any:
    """Coerce a raw config value to the expected type for the given field name."""
    if key not in _CONFIG_FIELD_TYPES:
        return raw_value
    field_type = _CONFIG_FIELD_TYPES[key]
    if isinstance(raw_value, bool):
        raise ValueError(f"Invalid value for config field '{key}': expected {field_type.__name__}, got {raw_value!r}")
    if isinstance(raw_value, field_type):
        return raw_value
    try:
        return field_type(raw_value)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid value for config field '{key}': expected {field_type.__name__}, got {raw_value!r}") from exc


def load_ini_config(path: str) -> Dict[str, Any]:
    """
    Load and parse an INI-format config file.

    Supports ``=`` and ``:`` as key-value delimiters.

    Args:
        path: Path to the INI config file.

    Returns:
        Dictionary of config values.

    Raises:
        ValueError: On parse errors or invalid field values.
    """
    parser = configparser.ConfigParser(allow_no_value=True, delimiters=("=", ":"), interpolation=None)
    try:
        read_files = parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        raise ValueError(f"Invalid config file '{path}': {exc}") from exc

    if not read_files:
        raise ValueError(f"Config file '{path}' could not be read.")

    result: Dict[str, Any] = {}

    if parser.has_section("default"):
        for key, raw_value in parser.items("default"):
            if key not in _CONFIG_FIELD_TYPES:
                logger.warning("Unknown config key '%s' in [default] section of '%s'; ignoring.", key, path)
                continue
            if raw_value is None:
                logger.warning("Config key '%s' has no value in '%s'; ignoring.", key, path)
                continue
            result[key] = _coerce_field(key, raw_value)

    return result


def load_yaml_config(path: str) -> Dict[str, Any]:
    """
    Load and parse a YAML-format config file.

    Uses ``yaml.safe_load`` to prevent arbitrary code execution.

    Args:
        path: Path to the YAML config file.

    Returns:
        Dictionary of config values.

    Raises:
        ValueError: On parse errors or invalid file content.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file '{path}': {exc}") from exc
    except OSError as exc:
        raise ValueError(f"Cannot read config file '{path}': {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file '{path}' must contain a YAML mapping at the top level, got {type(data).__name__}.")

    result: Dict[str, Any] = {}

    default_section = data.get("default") or {}
    if not isinstance(default_section, dict):
        raise ValueError(f"The 'default' section in '{path}' must be a YAML mapping.")
    for key, value in default_section.items():
        if key not in _CONFIG_FIELD_TYPES:
            logger.warning("Unknown config key '%s' in 'default' section of '%s'; ignoring.", key, path)
            continue
        if value is None:
            continue
        result[key] = _coerce_field(key, value)

    return result


def _is_yaml_file(path: str) -> bool:
    """
    Heuristically determine whether a config file uses YAML or INI format.

    INI files begin with a ``[section]`` header on the first non-blank,
    non-comment line.  Anything else is treated as YAML.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            for line in fh:
                stripped = line.strip()
                if stripped and not stripped.startswith("#"):
                    return not stripped.startswith("[")
    except OSError:
        pass
    return False


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load persistent settings from a config file.

    Auto-detects whether the file uses YAML or INI format.
    Returns an empty dict if the config file does not exist.

    Args:
        path: Path to the config file.  Defaults to ``~/.latprobe.conf``.

    Returns:
        Dictionary of config values.

    Raises:
        ValueError: If the file exists but cannot be parsed.
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH

    if not os.path.exists(path):
        return {}

    if _is_yaml_file(path):
        logger.debug("Loading YAML config from '%s'.", path)
        return load_yaml_config(path)

    logger.debug("Loading INI config from '%s'.", path)
    return load_ini_config(path)


def build_config(values: Dict[str, Any]) -> ProbeConfig:
    """
    Build a validated ProbeConfig from a mapping, ignoring unknown keys and None values.

    Raises:
        ValueError: If any value is invalid
    """
    fields = {key: _coerce_field(key, value) for key, value in values.items() if key in ProbeConfig._fields and value is not None}
    return validate_config(ProbeConfig(**fields))


class ConfigStore:
    """
    Key-value persistence for the probe target and interval.

    The file format (INI or YAML) is preserved on save; new files are written as INI.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path if path is not None else DEFAULT_CONFIG_PATH

    def load(self) -> ProbeConfig:
        """
        Load the stored configuration merged over the defaults.

        Raises:
            ValueError: If the file exists but is invalid
        """
        return build_config(load_config(self.path))

    def save(self, config: ProbeConfig) -> None:
        """
        Persist host and interval, keeping any other keys already in the file.

        Raises:
            OSError: If the file cannot be written
            ValueError: If the existing file cannot be parsed
        """
        values = load_config(self.path)
        for key in _PERSISTED_FIELDS:
            values[key] = getattr(config, key)

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        if os.path.exists(self.path) and _is_yaml_file(self.path):
            with open(self.path, "w", encoding="utf-8") as fh:
                yaml.safe_dump({"default": values}, fh, default_flow_style=False, sort_keys=True)
        else:
            parser = configparser.ConfigParser(interpolation=None)
            parser["default"] = {key: str(value) for key, value in values.items()}
            with open(self.path, "w", encoding="utf-8") as fh:
                parser.write(fh)
        logger.debug("Saved config to '%s' (host=%s, interval=%s).", self.path, config.host, config.interval)
