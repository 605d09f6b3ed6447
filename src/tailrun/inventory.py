"""Peer discovery from Tailscale status output or a static inventory file."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import DiscoveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Peer:
    """One fleet member as reported by the inventory."""

    hostname: str
    addresses: tuple[str, ...] = ()
    online: bool = False
    tags: frozenset[str] = frozenset()
    key: str = ""


def parse_status(raw: Any) -> list[Peer]:
    """Convert a ``tailscale status --json`` document into peers.

    Only the ``Peer`` map is read; ``Self`` is never a dispatch target.
    Unknown fields are ignored. Peers keep the order of the map.
    """
    if not isinstance(raw, dict):
        raise DiscoveryError("Inventory must be a JSON object")

    peers_raw = raw.get("Peer") or {}
    if not isinstance(peers_raw, dict):
        raise DiscoveryError("Inventory 'Peer' field must be an object")

    return [_parse_peer(key, peer_raw) for key, peer_raw in peers_raw.items()]


def _parse_peer(key: str, peer_raw: Any) -> Peer:
    if not isinstance(peer_raw, dict):
        raise DiscoveryError(f"Peer '{key}' must be an object")

    # tailscale emits "HostName"; accept the spelling used by older tooling too
    hostname = peer_raw.get("HostName") or peer_raw.get("Hostname") or key
    addresses = peer_raw.get("TailscaleIPs") or []
    tags = peer_raw.get("Tags") or []

    if not isinstance(addresses, list) or not isinstance(tags, list):
        raise DiscoveryError(f"Peer '{hostname}' has malformed addresses or tags")

    return Peer(
        hostname=str(hostname),
        addresses=tuple(str(addr) for addr in addresses),
        online=bool(peer_raw.get("Online", False)),
        tags=frozenset(str(tag) for tag in tags),
        key=str(key),
    )


def load_tailscale_status(binary: str = "tailscale") -> list[Peer]:
    """Query the local tailscale daemon for its peers."""
    cmd = [binary, "status", "--json"]
    logger.debug("Running %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except FileNotFoundError as e:
        raise DiscoveryError(f"{binary} not found: {e}") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip()
        raise DiscoveryError(
            f"'{' '.join(cmd)}' exited with status {e.returncode}: {stderr}"
        ) from e

    try:
        raw = json.loads(proc.stdout)
    except json.JSONDecodeError as e:
        raise DiscoveryError(f"Could not parse tailscale status: {e}") from e

    return parse_status(raw)


def load_inventory_file(path: str | Path) -> list[Peer]:
    """Load peers from a static JSON or YAML file in tailscale status shape."""
    path = Path(path).expanduser()
    if not path.exists():
        raise DiscoveryError(f"Inventory file not found: {path}")

    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DiscoveryError(f"Could not parse inventory file {path}: {e}") from e

    return parse_status(raw)


def discover(inventory: Path | None = None, binary: str = "tailscale") -> list[Peer]:
    """Return the current peer list from a file, or from tailscale."""
    if inventory is not None:
        peers = load_inventory_file(inventory)
        source = str(inventory)
    else:
        peers = load_tailscale_status(binary)
        source = binary
    logger.debug("Discovered %d peers from %s", len(peers), source)
    return peers
