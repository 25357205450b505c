"""
SQL dialect strategies for the row store and the relational family.

One adapter body (relational.SqlAdapter) renders every statement through
a dialect object that knows the engine's identifier quoting, parameter
placeholders, upsert syntax and catalog queries.

Invariants:
    - Every table has exactly the columns (id, data), id is the primary key
    - Identifiers are validated before quoting, values are always parameters
    - upsert() takes parameters in (id, data) order on every engine
"""

from __future__ import annotations

from ..config import StorageKind
from ..errors import ConfigurationError
from ..registry import IDENTIFIER_RE

GENERIC_TABLE = "storage_kv"


class SqlDialect:
    """Base dialect (SQLite / ANSI flavoured).

    Subclasses override the pieces that differ per engine.
    """

    name = "sqlite"
    id_type = "TEXT"
    data_type = "TEXT"

    def quote_ident(self, name: str) -> str:
        """Quote a table identifier.

        Raises:
            ConfigurationError: If the identifier is not a plain lowercase name
        """
        if not IDENTIFIER_RE.match(name):
            raise ConfigurationError(f"Invalid SQL identifier: {name!r}")
        return f'"{name}"'

    def placeholder(self, index: int) -> str:
        """Parameter placeholder for the 1-based parameter index."""
        return "?"

    def create_table(self, table: str) -> str:
        return (
            f"CREATE TABLE IF NOT EXISTS {self.quote_ident(table)} "
            f"(id {self.id_type} PRIMARY KEY, data {self.data_type} NOT NULL)"
        )

    def upsert(self, table: str) -> str:
        p1, p2 = self.placeholder(1), self.placeholder(2)
        return (
            f"INSERT INTO {self.quote_ident(table)} (id, data) VALUES ({p1}, {p2}) "
            f"ON CONFLICT (id) DO UPDATE SET data = excluded.data"
        )

    def select_all(self, table: str) -> str:
        return f"SELECT id, data FROM {self.quote_ident(table)}"

    def select_ids(self, table: str) -> str:
        return f"SELECT id FROM {self.quote_ident(table)}"

    def select_one(self, table: str) -> str:
        return f"SELECT data FROM {self.quote_ident(table)} WHERE id = {self.placeholder(1)}"

    def delete_row(self, table: str) -> str:
        return f"DELETE FROM {self.quote_ident(table)} WHERE id = {self.placeholder(1)}"

    def table_exists(self) -> str:
        """Catalog query taking the table name as its only parameter."""
        return f"SELECT name FROM sqlite_master WHERE type = 'table' AND name = {self.placeholder(1)}"

    def ping(self) -> str:
        return "SELECT 1"


class SqliteDialect(SqlDialect):
    """Embedded row store."""


class MysqlDialect(SqlDialect):
    """MySQL and MariaDB (aiomysql, pyformat parameters)."""

    name = "mysql"
    # TEXT columns cannot be primary keys without a prefix length; ids are case-sensitive
    id_type = "VARCHAR(191) CHARACTER SET utf8mb4 COLLATE utf8mb4_bin"
    data_type = "LONGTEXT"

    def quote_ident(self, name: str) -> str:
        return "`" + super().quote_ident(name)[1:-1] + "`"

    def placeholder(self, index: int) -> str:
        return "%s"

    def upsert(self, table: str) -> str:
        return (
            f"INSERT INTO {self.quote_ident(table)} (id, data) VALUES (%s, %s) "
            f"ON DUPLICATE KEY UPDATE data = VALUES(data)"
        )

    def table_exists(self) -> str:
        return (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = DATABASE() AND table_name = %s"
        )


class PostgresDialect(SqlDialect):
    """PostgreSQL and CockroachDB (asyncpg, numbered parameters)."""

    name = "postgres"

    def placeholder(self, index: int) -> str:
        return f"${index}"

    def upsert(self, table: str) -> str:
        return (
            f"INSERT INTO {self.quote_ident(table)} (id, data) VALUES ($1, $2) "
            f"ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data"
        )

    def table_exists(self) -> str:
        return (
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = $1"
        )


class SqlServerDialect(SqlDialect):
    """SQL Server (aioodbc, qmark parameters, MERGE upsert)."""

    name = "sql_server"
    id_type = "NVARCHAR(255)"
    data_type = "NVARCHAR(MAX)"

    def quote_ident(self, name: str) -> str:
        return "[" + super().quote_ident(name)[1:-1] + "]"

    def create_table(self, table: str) -> str:
        return (
            f"IF OBJECT_ID(N'dbo.{table}', N'U') IS NULL "
            f"CREATE TABLE {self.quote_ident(table)} "
            f"(id {self.id_type} PRIMARY KEY, data {self.data_type} NOT NULL)"
        )

    def upsert(self, table: str) -> str:
        return (
            f"MERGE INTO {self.quote_ident(table)} WITH (HOLDLOCK) AS target "
            f"USING (SELECT ? AS id, ? AS data) AS source ON target.id = source.id "
            f"WHEN MATCHED THEN UPDATE SET data = source.data "
            f"WHEN NOT MATCHED THEN INSERT (id, data) VALUES (source.id, source.data);"
        )

    def table_exists(self) -> str:
        return (
            "SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_TYPE = 'BASE TABLE' AND TABLE_NAME = ?"
        )


_DIALECTS: dict[StorageKind, type[SqlDialect]] = {
    StorageKind.ROW_STORE: SqliteDialect,
    StorageKind.MYSQL: MysqlDialect,
    StorageKind.MARIADB: MysqlDialect,
    StorageKind.POSTGRES: PostgresDialect,
    StorageKind.COCKROACH: PostgresDialect,
    StorageKind.SQL_SERVER: SqlServerDialect,
}


def dialect_for(kind: StorageKind) -> SqlDialect:
    """Get the dialect for an SQL kind.

    Raises:
        ConfigurationError: If the kind is not an SQL back-end
    """
    try:
        return _DIALECTS[kind]()
    except KeyError:
        raise ConfigurationError(f"{kind.value} is not an SQL back-end")
