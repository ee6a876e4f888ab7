"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from scriptimport.connections.base import BaseConnection
from scriptimport.models.config import FileGroupStrategy, TransformContext


class FakeDriverError(Exception):
    """Stands in for a driver exception."""


class FakeConnection(BaseConnection):
    """
    Scripted connection.

    Records every batch and answers catalog queries from configured rows.
    Rules decide whether a batch fails: a rule returns an error message to
    raise, or None to let the batch through.
    """

    def __init__(
        self,
        database: str = "TestDb",
        foreign_keys: Optional[List[tuple]] = None,
        data_path: Optional[str] = None
    ):
        super().__init__(database)
        self.foreign_keys = list(foreign_keys or [])
        self.data_path = data_path
        self.executed: List[str] = []
        self.queries: List[str] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self._rules: List[Callable[[str, List[str]], Optional[str]]] = []

    def fail_when(self, fragment: str, message: str, times: Optional[int] = None) -> None:
        """Fail batches containing ``fragment``; only the first ``times`` matches when given."""
        remaining = {"count": times}

        def rule(sql, executed):
            if fragment not in sql:
                return None
            if remaining["count"] is None:
                return message
            if remaining["count"] > 0:
                remaining["count"] -= 1
                return message
            return None

        self._rules.append(rule)

    def require(self, fragment: str, prerequisite: str, message: str) -> None:
        """Fail batches containing ``fragment`` until a batch containing ``prerequisite`` ran."""
        def rule(sql, executed):
            if fragment in sql and not any(prerequisite in done for done in executed):
                return message
            return None

        self._rules.append(rule)

    def connect(self) -> None:
        self.connect_calls += 1
        self._connected = True

    def execute_batch(self, sql: str) -> None:
        for rule in self._rules:
            message = rule(sql, self.executed)
            if message:
                raise FakeDriverError(message)
        self.executed.append(sql)

    def query(self, sql: str):
        self.queries.append(sql)
        if "sys.foreign_keys" in sql:
            return list(self.foreign_keys)
        if "InstanceDefaultDataPath" in sql:
            return [(self.data_path,)] if self.data_path else []
        if "sys.databases" in sql:
            return [(1,)]
        return []

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    def executed_matching(self, fragment: str) -> List[str]:
        return [sql for sql in self.executed if fragment in sql]


def write_tree(root: Path, files: Dict[str, str]) -> Path:
    """Write ``relative path -> content`` pairs under ``root``."""
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


SAMPLE_TREE = {
    "00_FileGroups/001_FileGroups.sql": (
        "-- FileGroup: FG_DATA\n"
        "ALTER DATABASE CURRENT ADD FILEGROUP [FG_DATA];\n"
        "GO\n"
        "ALTER DATABASE CURRENT ADD FILE (\n"
        "    NAME = N'TestDb_Data',\n"
        "    FILENAME = N'$(FG_DATA_PATH_FILE)',\n"
        "    SIZE = $(FG_DATA_SIZE)\n"
        "    , FILEGROWTH = $(FG_DATA_GROWTH)\n"
        ") TO FILEGROUP [FG_DATA];\n"
        "GO\n"
    ),
    "01_Security/AppReader.role.sql": "CREATE ROLE [AppReader];\nGO\n",
    "01_Security/app_user.user.sql": "CREATE USER [app_user] WITHOUT LOGIN;\nGO\n",
    "01_Security/CORP_jdoe.user.sql": "CREATE USER [CORP\\jdoe] FOR LOGIN [CORP\\jdoe];\nGO\n",
    "02_Schemas/Sales.sql": "CREATE SCHEMA [Sales];\nGO\n",
    "08_Tables_PrimaryKey/dbo.Customers.sql": (
        "CREATE TABLE [dbo].[Customers](\n"
        "    [CustomerId] [int] NOT NULL,\n"
        "    CONSTRAINT [PK_Customers] PRIMARY KEY CLUSTERED ([CustomerId] ASC)\n"
        ") ON [FG_DATA];\n"
        "GO\n"
    ),
    "08_Tables_PrimaryKey/Sales.Orders.sql": (
        "CREATE TABLE [Sales].[Orders](\n"
        "    [OrderId] [int] NOT NULL,\n"
        "    [CustomerId] [int] NOT NULL\n"
        ") ON [PRIMARY];\n"
        "GO\n"
    ),
    "13_Programmability/02_Functions/dbo.fn_OrderCount.sql": (
        "CREATE FUNCTION [dbo].[fn_OrderCount]() RETURNS int AS\n"
        "BEGIN RETURN (SELECT COUNT(*) FROM [dbo].[vw_Orders]) END\n"
        "GO\n"
    ),
    "13_Programmability/05_Views/dbo.vw_Orders.sql": (
        "CREATE VIEW [dbo].[vw_Orders] AS SELECT * FROM [Sales].[Orders]\n"
        "GO\n"
    ),
    "19_Security/Sales.TenantPolicy.securitypolicy.sql": (
        "CREATE SECURITY POLICY [Sales].[TenantPolicy] WITH (STATE = ON);\nGO\n"
    ),
    "20_Data/Sales.Orders.data.sql": "INSERT INTO [Sales].[Orders] VALUES (1, 1);\nGO\n",
    "20_Data/dbo.Customers.data.sql": "INSERT INTO [dbo].[Customers] VALUES (1);\nGO\n",
    "99_Notes/readme.sql": "-- not part of the import\n",
}

# Sales.Orders references dbo.Customers
ORDERS_CUSTOMERS_FK = ("Sales", "Orders", "FK_Orders_Customers", "dbo", "Customers", False)

# Security, three tables with one foreign key, and two data files
END_TO_END_TREE = {
    "01_Security/AppReader.role.sql": "CREATE ROLE [AppReader];\nGO\n",
    "08_Tables_PrimaryKey/dbo.Customers.sql": (
        "CREATE TABLE [dbo].[Customers]([CustomerId] [int] NOT NULL PRIMARY KEY)\nGO\n"
    ),
    "08_Tables_PrimaryKey/dbo.Products.sql": (
        "CREATE TABLE [dbo].[Products]([ProductId] [int] NOT NULL PRIMARY KEY)\nGO\n"
    ),
    "08_Tables_PrimaryKey/Sales.Orders.sql": (
        "CREATE TABLE [Sales].[Orders]([OrderId] [int] NOT NULL, [CustomerId] [int] NOT NULL)\nGO\n"
    ),
    "09_Tables_ForeignKeys/Sales.Orders.FK_Orders_Customers.sql": (
        "ALTER TABLE [Sales].[Orders] ADD CONSTRAINT [FK_Orders_Customers]\n"
        "    FOREIGN KEY ([CustomerId]) REFERENCES [dbo].[Customers] ([CustomerId])\nGO\n"
    ),
    "20_Data/Sales.Orders.data.sql": "INSERT INTO [Sales].[Orders] VALUES (1, 1)\nGO\n",
    "20_Data/dbo.Customers.data.sql": "INSERT INTO [dbo].[Customers] VALUES (1)\nGO\n",
}


@pytest.fixture
def source_tree(tmp_path):
    """A generated script tree covering every stage."""
    return write_tree(tmp_path / "export", SAMPLE_TREE)


@pytest.fixture
def fake_connection():
    """Connection with one foreign key from Sales.Orders to dbo.Customers."""
    return FakeConnection(foreign_keys=[ORDERS_CUSTOMERS_FK])


@pytest.fixture
def context():
    """Transform context that leaves filegroup placement untouched."""
    return TransformContext(
        database="TestDb",
        file_group_strategy=FileGroupStrategy.EXPLICIT_MAPPING,
    )


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays: List[float] = []

    def sleep(seconds: float) -> None:
        delays.append(seconds)

    sleep.delays = delays
    return sleep
