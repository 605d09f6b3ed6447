"""Console logging setup for tailrun."""

from __future__ import annotations

import logging
import sys

# ANSI colors for different peers
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"

_FORMAT = "%(asctime)s %(levelname)-8s %(peer_prefix)s%(message)s"
_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


class PeerFormatter(logging.Formatter):
    """Prefixes records logged with ``extra={"peer": name}`` by ``[name]``.

    Each peer name keeps the same color for the life of the formatter.
    """

    def __init__(self, fmt: str = _FORMAT, datefmt: str = _DATE_FORMAT,
                 colorize: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._colorize = colorize
        self._peer_colors: dict[str, str] = {}

    def _color_for(self, peer: str) -> str:
        if peer not in self._peer_colors:
            self._peer_colors[peer] = COLORS[len(self._peer_colors) % len(COLORS)]
        return self._peer_colors[peer]

    def format(self, record: logging.LogRecord) -> str:
        peer = getattr(record, "peer", None)
        if peer is None:
            prefix = ""
        elif self._colorize:
            prefix = f"{self._color_for(peer)}[{peer}]{RESET} "
        else:
            prefix = f"[{peer}] "
        record.peer_prefix = prefix
        return super().format(record)


def setup_logging(verbose: bool = False, stream=None) -> logging.Logger:
    """Attach a console handler to the ``tailrun`` logger."""
    stream = stream if stream is not None else sys.stderr
    logger = logging.getLogger("tailrun")

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handler = logging.StreamHandler(stream)
    handler.setFormatter(PeerFormatter(colorize=stream.isatty()))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return logger
