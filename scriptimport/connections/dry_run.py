"""Connection that records batches without executing them."""

import logging
from typing import List

from .base import BaseConnection, Row

logger = logging.getLogger(__name__)


class DryRunConnection(BaseConnection):
    """Simulates a target server; every batch succeeds and queries return nothing."""

    def __init__(self, database: str, command_timeout: int = 0):
        super().__init__(database, command_timeout)
        self.batches: List[str] = []

    def connect(self) -> None:
        self._connected = True
        logger.info(f"Dry run: simulating connection to {self.database}")

    def execute_batch(self, sql: str) -> None:
        self.batches.append(sql)
        logger.debug(f"Dry run batch ({len(sql)} chars): {sql[:100]}")

    def query(self, sql: str) -> List[Row]:
        return []

    def database_exists(self) -> bool:
        return True

    def disconnect(self) -> None:
        self._connected = False
