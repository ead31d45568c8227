"""Logging utilities with Rich integration."""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(verbose: bool = False, logger_name: Optional[str] = None) -> logging.Logger:
    """Configure process-wide logging with a Rich handler and return a scoped logger."""

    level = logging.DEBUG if verbose else logging.INFO
    handler = RichHandler(console=Console(stderr=True), show_time=True, show_path=False)
    logging.basicConfig(level=level, handlers=[handler], format="%(message)s", force=True)
    # The SDK's HTTP chatter drowns the run trace at DEBUG.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logger = get_logger(logger_name or "productflow_agent")
    logger.debug("Logging configured with level %s", logging.getLevelName(level))
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a configured logger."""

    return logging.getLogger(name or "productflow_agent")


__all__ = ["configure_logging", "get_logger"]
