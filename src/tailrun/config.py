"""Configuration loader for tailrun."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_COMMAND = "echo Hello from $HOST"


@dataclass
class Config:
    """Settings for one dispatch round."""

    user: str = "root"
    command: str = DEFAULT_COMMAND
    tag: str = ""
    port: int = 22
    ssh_key: Path | None = None  # None lets asyncssh use its default keys and agent
    timeout: int = 30
    connect_timeout: int = 10
    max_concurrency: int = 0  # 0 means one task per peer, no cap
    fail_on_error: bool = False
    log_dir: Path | None = None
    inventory: Path | None = None
    tailscale: str = "tailscale"
    source_path: Path | None = None  # Path to the original config file


def load_config(config_path: str | Path) -> Config:
    """Load and validate configuration from a YAML file."""
    config_path = Path(config_path).expanduser().resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError("Configuration must be a mapping")

    config = _parse_config(raw)
    config.source_path = config_path
    return config


def _parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw YAML data into Config object."""
    defaults = Config()

    user = raw.get("user", defaults.user)
    if not user:
        raise ValueError("'user' must not be empty")

    command = raw.get("command", defaults.command)
    if not command:
        raise ValueError("'command' must not be empty")

    return Config(
        user=str(user),
        command=str(command),
        tag=str(raw.get("tag") or ""),
        port=_parse_int(raw, "port", defaults.port, minimum=1),
        ssh_key=_parse_path(raw.get("ssh_key")),
        timeout=_parse_int(raw, "timeout", defaults.timeout, minimum=1),
        connect_timeout=_parse_int(
            raw, "connect_timeout", defaults.connect_timeout, minimum=1
        ),
        max_concurrency=_parse_int(
            raw, "max_concurrency", defaults.max_concurrency, minimum=0
        ),
        fail_on_error=_parse_bool(raw, "fail_on_error", defaults.fail_on_error),
        log_dir=_parse_path(raw.get("log_dir")),
        inventory=_parse_path(raw.get("inventory")),
        tailscale=str(raw.get("tailscale", defaults.tailscale)),
    )


def _parse_int(raw: dict[str, Any], name: str, default: int, minimum: int) -> int:
    value = raw.get(name, default)
    # bool is an int subclass; "yes" in YAML should not become a port of 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{name}' must be an integer")
    if value < minimum:
        raise ValueError(f"'{name}' must be >= {minimum}")
    return value


def _parse_bool(raw: dict[str, Any], name: str, default: bool) -> bool:
    value = raw.get(name, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{name}' must be true or false")
    return value


def _parse_path(value: Any) -> Path | None:
    if value is None or value == "":
        return None
    return Path(str(value)).expanduser()
