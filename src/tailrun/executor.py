"""Concurrent dispatch engine for tailrun."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from .config import Config
from .errors import NoAddressError, RemoteExecutionError
from .inventory import Peer
from .remote import Transport, execute
from .selector import select_peers

logger = logging.getLogger(__name__)


class PeerStatus(Enum):
    """Status of a peer's execution."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class PeerState:
    """Runtime state for a dispatched peer."""

    peer: Peer
    status: PeerStatus = PeerStatus.PENDING
    output_lines: list[str] = field(default_factory=list)
    error_message: str = ""
    log_file: Path | None = None


# Type alias for output callback
OutputCallback = Callable[[Peer, str], None]  # (peer, line) -> None
StatusCallback = Callable[[Peer, PeerStatus], None]  # (peer, status) -> None


def _unique(name: str, taken: set[str], sep: str) -> str:
    """Return ``name``, or ``name<sep>2``, ``name<sep>3``... if already taken."""
    candidate = name
    n = 2
    while candidate in taken:
        candidate = f"{name}{sep}{n}"
        n += 1
    taken.add(candidate)
    return candidate


def log_file_stem(peer: Peer) -> str:
    """A filesystem-safe file name stem for a peer's log."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", peer.hostname).lstrip(".") or "peer"


class Dispatcher:
    """Runs one command on every selected peer concurrently."""

    def __init__(
        self,
        config: Config,
        transport: Transport,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        enable_logging: bool = True,
    ):
        self.config = config
        self.transport = transport
        self.on_output = on_output
        self.on_status = on_status
        self.enable_logging = enable_logging
        self.states: dict[str, PeerState] = {}
        self.started = 0
        self.completed = 0
        self._log_dir: Path | None = None

    def _setup_logging(self) -> None:
        """Set up per-peer log directory with timestamp."""
        if not self.enable_logging or self.config.log_dir is None:
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._log_dir = self.config.log_dir / timestamp
        self._log_dir.mkdir(parents=True, exist_ok=True)

        # Copy the source config file to the log directory
        if self.config.source_path and self.config.source_path.exists():
            shutil.copy(self.config.source_path, self._log_dir / "config.yaml")

    def _write_log(self, state: PeerState, line: str) -> None:
        if not state.log_file:
            return
        try:
            with open(state.log_file, "a") as f:
                f.write(line + "\n")
        except OSError as e:
            # Stop writing this peer's file; the run itself carries on
            logger.warning(
                "Cannot write log file %s: %s",
                state.log_file,
                e,
                extra={"peer": state.peer.hostname},
            )
            state.log_file = None

    def _emit_output(self, state: PeerState, line: str) -> None:
        """Record an output line for a peer."""
        state.output_lines.append(line)
        self._write_log(state, line)
        if self.on_output:
            self.on_output(state.peer, line)

    def _emit_status(self, state: PeerState, status: PeerStatus) -> None:
        state.status = status
        if self.on_status:
            self.on_status(state.peer, status)

    def _fail(self, state: PeerState, message: str) -> None:
        state.error_message = message
        self._emit_output(state, f"ERROR: {message}")
        self._emit_status(state, PeerStatus.FAILED)

    def _prepare(self, selected: list[Peer]) -> list[PeerState]:
        """Create one state per selected peer, with collision-free keys."""
        keys: set[str] = set()
        stems: set[str] = set()
        states = []
        for peer in selected:
            log_file = None
            if self._log_dir:
                stem = _unique(log_file_stem(peer), stems, "-")
                log_file = self._log_dir / f"{stem}.log"
            state = PeerState(peer=peer, log_file=log_file)
            self.states[_unique(peer.key or peer.hostname, keys, "#")] = state
            states.append(state)
        return states

    async def run_all(self, peers: Iterable[Peer]) -> dict[str, PeerState]:
        """Dispatch the command to every online peer matching the tag filter.

        Returns once every started task has finished, whatever its outcome.
        Per-peer failures are reported, never raised. The returned map is
        keyed by inventory key (or hostname), suffixed ``#2``, ``#3``... on
        collisions.
        """
        self.states = {}
        self.started = 0
        self.completed = 0

        selected = select_peers(peers, self.config.tag)
        if not selected:
            logger.info("No online peers matched tag filter %r", self.config.tag)
            return self.states

        self._setup_logging()
        states = self._prepare(selected)

        semaphore = None
        if self.config.max_concurrency > 0:
            semaphore = asyncio.Semaphore(self.config.max_concurrency)

        results = await asyncio.gather(
            *(self._run_peer(state, semaphore) for state in states),
            return_exceptions=True,
        )

        for state, result in zip(states, results):
            if isinstance(result, BaseException):
                self._record_unexpected(state, result)

        return self.states

    def _record_unexpected(self, state: PeerState, error: BaseException) -> None:
        """Mark a peer failed after an error escaped its task."""
        extra = {"peer": state.peer.hostname}
        logger.error(
            "Unexpected error on peer %s: %r",
            state.peer.hostname,
            error,
            exc_info=error,
            extra=extra,
        )
        try:
            self._fail(state, f"Unexpected error: {error!r}")
        except Exception:
            # A failing callback must not take down the rest of the round
            state.status = PeerStatus.FAILED
            logger.exception("Could not report failure", extra=extra)

    async def _run_peer(
        self, state: PeerState, semaphore: asyncio.Semaphore | None
    ) -> None:
        """Run the command on a single peer and report the outcome."""
        self.started += 1
        try:
            async with AsyncExitStack() as stack:
                if semaphore is not None:
                    await stack.enter_async_context(semaphore)
                await self._execute(state)
        finally:
            self.completed += 1

    async def _execute(self, state: PeerState) -> None:
        peer = state.peer
        extra = {"peer": peer.hostname}

        if peer.addresses:
            address = peer.addresses[0]
            self._emit_status(state, PeerStatus.CONNECTING)
            self._emit_output(state, f"$ {self.config.command}")
            logger.info(
                "Running command on peer %s (%s)", peer.hostname, address, extra=extra
            )

        try:
            output = await execute(
                peer,
                self.config.user,
                self.config.command,
                self.transport,
                on_connect=lambda: self._emit_status(state, PeerStatus.RUNNING),
            )
        except NoAddressError as e:
            logger.warning("%s", e, extra=extra)
            self._fail(state, str(e))
            return
        except RemoteExecutionError as e:
            if e.exit_status is not None and e.detail.strip():
                logger.error("%s, output:\n%s", e, e.detail.rstrip(), extra=extra)
            else:
                logger.error("%s", e, extra=extra)
            if e.exit_status is not None:
                for line in e.detail.splitlines():
                    self._emit_output(state, line)
            self._fail(state, str(e))
            return

        for line in output.splitlines():
            self._emit_output(state, line)
        logger.info("Command output:\n%s", output.rstrip("\n"), extra=extra)
        self._emit_status(state, PeerStatus.SUCCESS)
