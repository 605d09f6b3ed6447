"""Error types for tailrun."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .inventory import Peer


class TailrunError(Exception):
    """Base class for all tailrun errors."""


class DiscoveryError(TailrunError):
    """The peer inventory could not be retrieved or parsed.

    Fatal: raised before any command is dispatched.
    """


class NoAddressError(TailrunError):
    """A selected peer has no address to connect to."""

    def __init__(self, peer: Peer):
        super().__init__(f"Peer {peer.hostname} has no addresses")
        self.peer = peer


class RemoteExecutionError(TailrunError):
    """The transport failed to run the command on a peer.

    Covers connection and authentication failures, transport timeouts and
    non-zero remote exit statuses. ``detail`` holds the transport's
    diagnostic text (or the command output, for a non-zero exit).
    """

    def __init__(
        self,
        peer: Peer,
        target: str,
        detail: str,
        exit_status: int | None = None,
    ):
        if exit_status is not None:
            message = f"Command on {target} exited with status {exit_status}"
        else:
            message = f"Command on {target} failed: {detail}"
        super().__init__(message)
        self.peer = peer
        self.target = target
        self.detail = detail
        self.exit_status = exit_status
