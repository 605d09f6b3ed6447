"""Remote command execution on a single peer over SSH."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

import asyncssh

from .errors import NoAddressError, RemoteExecutionError
from .inventory import Peer


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command as seen by the transport."""

    target: str
    output: str
    exit_status: int | None


class Transport(Protocol):
    """Anything that can run a command on ``user@address``.

    ``on_connect`` is called once the session is established, before the
    command starts.
    """

    async def run(
        self,
        target: str,
        command: str,
        on_connect: Callable[[], None] | None = None,
    ) -> CommandResult: ...


class SSHTransport:
    """Runs commands over asyncssh, one connection per call."""

    def __init__(
        self,
        port: int = 22,
        ssh_key: Path | None = None,
        timeout: int | None = 30,
        connect_timeout: int | None = 10,
    ):
        self.port = port
        self.ssh_key = ssh_key
        self.timeout = timeout
        self.connect_timeout = connect_timeout

    async def run(
        self,
        target: str,
        command: str,
        on_connect: Callable[[], None] | None = None,
    ) -> CommandResult:
        user, _, host = target.rpartition("@")

        options = {}
        if self.ssh_key is not None:
            options["client_keys"] = [str(self.ssh_key)]

        async with asyncssh.connect(
            host,
            port=self.port,
            username=user or None,
            known_hosts=None,  # Host key trust is left to the operator
            connect_timeout=self.connect_timeout,
            **options,
        ) as conn:
            if on_connect:
                on_connect()
            result = await conn.run(
                command,
                check=False,
                stderr=asyncssh.STDOUT,
                timeout=self.timeout,
                encoding="utf-8",
                errors="replace",
            )

        return CommandResult(
            target=target,
            output=result.stdout or "",
            exit_status=result.exit_status,
        )


async def execute(
    peer: Peer,
    user: str,
    command: str,
    transport: Transport,
    on_connect: Callable[[], None] | None = None,
) -> str:
    """Run ``command`` on the first address of ``peer`` and return its output.

    Only the first address is tried. The command is sent verbatim, so any
    quoting is the caller's job.

    Raises:
        NoAddressError: the peer has no addresses; the transport is not used.
        RemoteExecutionError: the transport failed (including an unusable
            client key) or the command exited non-zero.
    """
    if not peer.addresses:
        raise NoAddressError(peer)

    target = f"{user}@{peer.addresses[0]}"

    try:
        result = await transport.run(target, command, on_connect=on_connect)
    except (
        asyncssh.Error,
        asyncssh.KeyImportError,
        OSError,
        asyncio.TimeoutError,
    ) as e:
        raise RemoteExecutionError(peer, target, str(e) or type(e).__name__) from e

    if result.exit_status != 0:
        raise RemoteExecutionError(
            peer, target, result.output, exit_status=result.exit_status
        )

    return result.output
