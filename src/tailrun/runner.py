#!/usr/bin/env python3
"""Main entry point for tailrun."""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .config import Config, load_config
from .errors import DiscoveryError
from .executor import Dispatcher, PeerState, PeerStatus
from .inventory import discover
from .logs import setup_logging
from .remote import SSHTransport, Transport
from .selector import select_peers

logger = logging.getLogger("tailrun")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tailrun",
        description="Run a command over SSH on every online tailnet peer",
    )
    parser.add_argument("--sshuser", help="SSH user (default: root)")
    parser.add_argument(
        "--sshcommand", help="SSH command to run (default: 'echo Hello from $HOST')"
    )
    parser.add_argument("--tag", help="Filter peers by tag (e.g., tag:example)")
    parser.add_argument("--config", type=Path, help="Path to YAML configuration file")
    parser.add_argument(
        "--inventory",
        type=Path,
        help="Read peers from a JSON/YAML file instead of 'tailscale status --json'",
    )
    parser.add_argument("--key", type=Path, help="SSH private key to use")
    parser.add_argument("--port", type=int, help="SSH port (default: 22)")
    parser.add_argument(
        "--timeout", type=int, help="Per-command timeout in seconds (default: 30)"
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        help="Limit concurrent SSH sessions (default: 0, unlimited)",
    )
    parser.add_argument(
        "--fail-on-error",
        action="store_true",
        default=None,
        help="Exit with status 1 if the command failed on any peer",
    )
    parser.add_argument(
        "--log-dir", type=Path, help="Write per-peer output logs under this directory"
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Layer command-line flags over the loaded configuration."""
    overrides = {
        "user": args.sshuser,
        "command": args.sshcommand,
        "tag": args.tag,
        "inventory": args.inventory,
        "ssh_key": args.key.expanduser() if args.key else None,
        "port": args.port,
        "timeout": args.timeout,
        "max_concurrency": args.max_concurrency,
        "fail_on_error": args.fail_on_error,
        "log_dir": args.log_dir,
    }
    return replace(
        config, **{name: value for name, value in overrides.items() if value is not None}
    )


def make_transport(config: Config) -> Transport:
    return SSHTransport(
        port=config.port,
        ssh_key=config.ssh_key,
        timeout=config.timeout,
        connect_timeout=config.connect_timeout,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if not args.dashboard:
        setup_logging(verbose=args.verbose)

    # Load configuration
    try:
        config = load_config(args.config) if args.config else Config()
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    config = apply_overrides(config, args)

    if config.max_concurrency < 0:
        print("Configuration error: --max-concurrency must be >= 0", file=sys.stderr)
        return 1

    if config.ssh_key is not None and not config.ssh_key.exists():
        print(f"Error: SSH key not found: {config.ssh_key}", file=sys.stderr)
        return 1

    # Get the list of peer devices; nothing is dispatched if this fails
    try:
        peers = discover(config.inventory, config.tailscale)
    except DiscoveryError as e:
        if args.dashboard:
            setup_logging(verbose=args.verbose)
        logger.critical("Error getting peers: %s", e)
        return 1

    transport = make_transport(config)

    if not args.dashboard:
        # Run without TUI dashboard (default)
        states = _run_headless(config, transport, peers)
    else:
        states, finished = _run_dashboard(config, transport, peers)
        setup_logging(verbose=args.verbose)
        if not finished:
            logger.warning("Dashboard closed before all commands completed.")
            return 1

    logger.info("All commands completed.")
    return _exit_status(config, states)


def _run_headless(config: Config, transport: Transport, peers) -> dict[str, PeerState]:
    """Run the dispatcher without the TUI dashboard."""
    dispatcher = Dispatcher(config, transport)
    return asyncio.run(dispatcher.run_all(peers))


def _run_dashboard(
    config: Config, transport: Transport, peers
) -> tuple[dict[str, PeerState], bool]:
    """Run the dispatcher inside the TUI; report whether the round finished."""
    # Imported here so headless runs do not pay for loading textual
    from .dashboard import Dashboard

    app = Dashboard(config, transport, select_peers(peers, config.tag))
    app.run()
    states = app.dispatcher.states if app.dispatcher else {}
    return states, app.finished


def _exit_status(config: Config, states: dict[str, PeerState]) -> int:
    failed = [
        state.peer.hostname
        for state in states.values()
        if state.status == PeerStatus.FAILED
    ]
    if failed and config.fail_on_error:
        print(f"\nFailed peers: {', '.join(failed)}", file=sys.stderr)
        return 1
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
