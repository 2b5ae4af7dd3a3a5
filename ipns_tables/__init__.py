"""Mutable named tables stored as IPFS snapshots behind IPNS names."""

from .config import Config, load_config
from .directory import TableDirectory
from .logging import configure_logging
from .server import SERVER, main
from .storage import TableStorage

__all__ = [
    "Config",
    "load_config",
    "configure_logging",
    "TableDirectory",
    "TableStorage",
    "SERVER",
    "main",
]
