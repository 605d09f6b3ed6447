import asyncio
import logging

import pytest

from tailrun.inventory import Peer
from tailrun.remote import CommandResult


class FakeTransport:
    """Records every call; behavior per address is configurable."""

    def __init__(self, delays=None, outputs=None, exit_statuses=None, errors=None):
        self.delays = delays or {}
        self.outputs = outputs or {}
        self.exit_statuses = exit_statuses or {}
        self.errors = errors or {}
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def run(self, target: str, command: str, on_connect=None) -> CommandResult:
        self.calls.append((target, command))
        address = target.rpartition("@")[2]
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(address, 0))
            if address in self.errors:
                raise self.errors[address]
            if on_connect:
                on_connect()
            return CommandResult(
                target=target,
                output=self.outputs.get(address, f"hello from {address}\n"),
                exit_status=self.exit_statuses.get(address, 0),
            )
        finally:
            self.active -= 1


def make_peer(name, addresses=("10.0.0.1",), online=True, tags=()):
    return Peer(
        hostname=name,
        addresses=tuple(addresses),
        online=online,
        tags=frozenset(tags),
        key=f"nodekey:{name}",
    )


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture(autouse=True)
def reset_tailrun_logger():
    yield
    logger = logging.getLogger("tailrun")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
