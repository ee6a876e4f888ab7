"""Connections to the target server."""

from .base import BaseConnection
from .dry_run import DryRunConnection
from .sqlserver import SqlServerConnection

__all__ = [
    "BaseConnection",
    "DryRunConnection",
    "SqlServerConnection",
]
