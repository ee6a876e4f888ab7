"""Base connection interface to the target server."""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)

Row = Sequence[Any]


class BaseConnection(ABC):
    """
    Base class for target-server connections.

    One connection is bound to one database and shared by every stage of an
    import run. It is never used by two operations at once.
    """

    def __init__(self, database: str, command_timeout: int = 0):
        """
        Initialize the connection.

        Args:
            database: Target database name
            command_timeout: Per-batch timeout in seconds (0 = no limit)
        """
        self.database = database
        self.command_timeout = command_timeout
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @abstractmethod
    def connect(self) -> None:
        """Open the session. Raises on failure."""
        pass

    @abstractmethod
    def execute_batch(self, sql: str) -> None:
        """
        Execute one batch.

        Each batch is autonomous: a later batch's failure never rolls back an
        earlier one.
        """
        pass

    @abstractmethod
    def query(self, sql: str) -> List[Row]:
        """Run a query and return all rows."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close the session. Safe to call when not connected."""
        pass

    def database_exists(self) -> bool:
        """Check whether the target database exists on the server."""
        rows = self.query(
            "SELECT 1 FROM sys.databases WHERE name = N'"
            + self.database.replace("'", "''")
            + "'"
        )
        return bool(rows)

    def create_database(self) -> None:
        """Create the target database with server defaults."""
        name = "[" + self.database.replace("]", "]]") + "]"
        self.execute_batch(f"CREATE DATABASE {name}")

    def use_database(self) -> None:
        """Switch the session to the target database."""
        name = "[" + self.database.replace("]", "]]") + "]"
        self.execute_batch(f"USE {name}")

    def default_data_path(self) -> Optional[str]:
        """Default data directory of the server instance."""
        rows = self.query("SELECT CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(4000))")
        if rows and rows[0] and rows[0][0]:
            return str(rows[0][0])
        return None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()
        return False
