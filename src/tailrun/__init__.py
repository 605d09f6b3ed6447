"""tailrun: Run a command on every online tailnet peer concurrently."""

import logging

from .config import Config, load_config
from .errors import DiscoveryError, NoAddressError, RemoteExecutionError, TailrunError
from .executor import Dispatcher, PeerState, PeerStatus
from .inventory import Peer, discover, parse_status
from .remote import CommandResult, SSHTransport, execute
from .selector import matches, select_peers

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Config",
    "load_config",
    "DiscoveryError",
    "NoAddressError",
    "RemoteExecutionError",
    "TailrunError",
    "Dispatcher",
    "PeerState",
    "PeerStatus",
    "Peer",
    "discover",
    "parse_status",
    "CommandResult",
    "SSHTransport",
    "execute",
    "matches",
    "select_peers",
]
