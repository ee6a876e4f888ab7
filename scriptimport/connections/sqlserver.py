"""SQL Server connection over pyodbc."""

import logging
from typing import List, Optional

from .base import BaseConnection, Row
from ..errors import ConnectionFailedError

logger = logging.getLogger(__name__)


class SqlServerConnection(BaseConnection):
    """
    Autocommit pyodbc session bound to one database.

    There is no wrapping transaction: each batch commits on its own, which
    gives the per-batch autonomy the import relies on.
    """

    def __init__(
        self,
        server: str,
        database: str,
        driver: str = "ODBC Driver 18 for SQL Server",
        username: Optional[str] = None,
        password: Optional[str] = None,
        trusted_connection: bool = False,
        encrypt: bool = True,
        trust_server_certificate: bool = False,
        connect_timeout: int = 15,
        command_timeout: int = 0,
        initial_database: Optional[str] = None
    ):
        """
        Initialize the connection.

        Args:
            server: Server name, optionally with ",port"
            database: Target database name
            driver: Installed ODBC driver name
            username: SQL login (omit for trusted connections)
            password: SQL login password
            trusted_connection: Use integrated authentication
            encrypt: Request an encrypted channel
            trust_server_certificate: Skip certificate validation
            connect_timeout: Login timeout in seconds
            command_timeout: Per-batch timeout in seconds (0 = no limit)
            initial_database: Database to open instead of ``database``
                (``master`` while the target may not exist yet)
        """
        super().__init__(database, command_timeout)
        self.server = server
        self.driver = driver
        self.username = username
        self._password = password
        self.trusted_connection = trusted_connection
        self.encrypt = encrypt
        self.trust_server_certificate = trust_server_certificate
        self.connect_timeout = connect_timeout
        self.initial_database = initial_database
        self._connection = None

    @property
    def pyodbc(self):
        """The pyodbc module, imported on first use."""
        try:
            import pyodbc
        except ImportError:
            raise ImportError("pyodbc package required for SQL Server connections")
        return pyodbc

    def _connection_string(self) -> str:
        parts = [
            f"DRIVER={{{self.driver}}}",
            f"SERVER={self.server}",
            f"DATABASE={self.initial_database or self.database}",
            f"Encrypt={'yes' if self.encrypt else 'no'}",
            f"TrustServerCertificate={'yes' if self.trust_server_certificate else 'no'}",
        ]
        if self.trusted_connection:
            parts.append("Trusted_Connection=yes")
        else:
            parts.append(f"UID={self.username or ''}")
            parts.append(f"PWD={{{(self._password or '').replace('}', '}}')}}}")
        return ";".join(parts) + ";"

    def connect(self) -> None:
        """Open the session."""
        if self._connected:
            return
        self._connection = self.pyodbc.connect(
            self._connection_string(),
            autocommit=True,
            timeout=self.connect_timeout,
        )
        if self.command_timeout:
            self._connection.timeout = self.command_timeout
        self._connected = True
        logger.info(f"Connected to {self.server}/{self.initial_database or self.database}")

    def _cursor(self):
        if not self._connected or self._connection is None:
            raise ConnectionFailedError(f"Not connected to {self.server}")
        return self._connection.cursor()

    def execute_batch(self, sql: str) -> None:
        cursor = self._cursor()
        try:
            cursor.execute(sql)
            # Drain every result set so errors raised by later statements surface
            while cursor.nextset():
                pass
        finally:
            cursor.close()

    def query(self, sql: str) -> List[Row]:
        cursor = self._cursor()
        try:
            cursor.execute(sql)
            return [tuple(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def disconnect(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
                logger.info("Database connection closed")
            except self.pyodbc.Error as e:
                logger.warning(f"Error closing connection: {e}")
        self._connection = None
        self._connected = False
