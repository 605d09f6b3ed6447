"""Peer selection by tag and liveness."""

from __future__ import annotations

from typing import Iterable

from .inventory import Peer


def matches(peer: Peer, tag_filter: str) -> bool:
    """Return True if the peer carries ``tag_filter`` exactly.

    An empty filter matches every peer.
    """
    if not tag_filter:
        return True
    return tag_filter in peer.tags


def select_peers(peers: Iterable[Peer], tag_filter: str = "") -> list[Peer]:
    """Online peers matching ``tag_filter``, in inventory order."""
    return [peer for peer in peers if peer.online and matches(peer, tag_filter)]
