"""Configuration management for buildlink.

Loads user settings from ~/.config/buildlink/config.cfg, overlaid with the
project's own <root>/.buildlinkconfig (KEY=VALUE lines).
Provides ClientSettings (retry/heartbeat timing) and ServerSettings.
"""

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values

# Default location for user configuration.
CONFIG_PATH = Path.home() / ".config" / "buildlink" / "config.cfg"
PROJECT_CONFIG_NAME = ".buildlinkconfig"

# 800s sits above the historical p95 of server startup times.
DEFAULT_BUILD_RETRIES = 800


@dataclass(frozen=True)
class ClientSettings:
    retries: int = DEFAULT_BUILD_RETRIES
    retry_delay: float = 1.0
    stale_retry_delay: float = 2.0
    heartbeat_interval: float = 1.0


@dataclass(frozen=True)
class ServerSettings:
    build_command: str = ""
    idle_timeout: float = 3600.0


def load_raw_config(path: Path = CONFIG_PATH, root: Optional[Path] = None) -> Dict[str, str]:
    """
    Load configuration values from the user config and the project file.
    Values are returned with lowercase keys; project values win.
    """
    cfg = configparser.ConfigParser()
    data: Dict[str, str] = {}

    if path.exists():
        cfg.read(path)
        if "DEFAULT" in cfg:
            data.update({k.lower(): v for k, v in cfg["DEFAULT"].items()})

    if root is not None:
        project_file = Path(root) / PROJECT_CONFIG_NAME
        if project_file.exists():
            values = dotenv_values(project_file)
            data.update({k.lower(): v for k, v in values.items() if v is not None})

    return data


def _get_int(raw: Dict[str, str], key: str, default: int) -> int:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid integer for '{key}': {value!r}") from None


def _get_float(raw: Dict[str, str], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid number for '{key}': {value!r}") from None


def get_client_settings(raw: Optional[Dict[str, str]] = None) -> ClientSettings:
    """
    Build ClientSettings from raw configuration values.
    BUILDLINK_BUILD_RETRIES in the environment overrides the file.
    Raises ValueError on malformed numbers.
    """
    raw = dict(raw if raw is not None else load_raw_config())

    retries_env = os.environ.get("BUILDLINK_BUILD_RETRIES")
    if retries_env is not None and retries_env.strip() != "":
        raw["build_retries"] = retries_env

    retries = _get_int(raw, "build_retries", DEFAULT_BUILD_RETRIES)
    if retries < 0:
        raise ValueError(f"build_retries must be >= 0, got {retries}")

    return ClientSettings(
        retries=retries,
        retry_delay=_get_float(raw, "retry_delay", 1.0),
        stale_retry_delay=_get_float(raw, "stale_retry_delay", 2.0),
        heartbeat_interval=_get_float(raw, "heartbeat_interval", 1.0),
    )


def get_server_settings(raw: Optional[Dict[str, str]] = None) -> ServerSettings:
    """Extract server settings from the raw config."""
    raw = raw if raw is not None else load_raw_config()
    return ServerSettings(
        build_command=raw.get("build_command", "").strip(),
        idle_timeout=_get_float(raw, "idle_timeout", 3600.0),
    )
