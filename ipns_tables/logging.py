"""Package logger setup on top of FastMCP's log handler."""

from __future__ import annotations

import logging

from fastmcp.utilities.logging import configure_logging as _fastmcp_configure_logging

PACKAGE_LOGGER = "ipns_tables"
_configured = False


def configure_logging(level: str | int = "INFO") -> None:
    """Route ``ipns_tables`` logs to stderr; stdout stays reserved for stdio frames."""

    global _configured
    _fastmcp_configure_logging(level=level, logger=logging.getLogger(PACKAGE_LOGGER))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
