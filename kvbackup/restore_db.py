"""Create databases and tables through a SQL session."""

from __future__ import annotations

import logging
from typing import Protocol

from .schema import DBInfo, Table, TableInfo, enclose_name

log = logging.getLogger(__name__)

# Known collations: name -> (charset, whether it is the charset's default).
_COLLATIONS = {
    "utf8mb4_bin": ("utf8mb4", True),
    "utf8mb4_general_ci": ("utf8mb4", False),
    "utf8mb4_unicode_ci": ("utf8mb4", False),
    "utf8_bin": ("utf8", True),
    "utf8_general_ci": ("utf8", False),
    "utf8_unicode_ci": ("utf8", False),
    "latin1_bin": ("latin1", True),
    "ascii_bin": ("ascii", True),
    "binary": ("binary", True),
}
_DEFAULT_COLLATIONS = {cs: name for name, (cs, default) in _COLLATIONS.items() if default}


class Session(Protocol):
    """A SQL session that can also render a table's CREATE statement."""

    def execute(self, sql: str) -> object: ...

    def show_create_table(self, table: TableInfo, auto_inc_id: int) -> str: ...

    def close(self) -> object: ...


def _create_database_sql(schema: DBInfo) -> str:
    sql = f"CREATE DATABASE /*!32312 IF NOT EXISTS*/ {enclose_name(schema.name)}"
    if schema.charset:
        default = _DEFAULT_COLLATIONS.get(schema.charset.lower())
        if default is None:
            raise ValueError(f"Unknown charset {schema.charset}")
        sql += f" /*!40100 DEFAULT CHARACTER SET {schema.charset} "
        if schema.collate and schema.collate.lower() != default:
            sql += f"COLLATE {schema.collate} "
        return sql + "*/"
    if schema.collate:
        known = _COLLATIONS.get(schema.collate.lower())
        if known is None:
            raise ValueError(f"Unknown collation: '{schema.collate}'")
        charset, is_default = known
        sql += f" /*!40100 DEFAULT CHARACTER SET {charset} "
        if not is_default:
            sql += f"COLLATE {schema.collate} "
        return sql + "*/"
    return sql


class DB:
    """A SQL session used to recreate schemas; not thread-safe."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def create_database(self, schema: DBInfo) -> None:
        """Create the database if it does not exist."""
        try:
            sql = _create_database_sql(schema)
        except ValueError as exc:
            log.error("build create database SQL failed, db=%s: %s", schema.name, exc)
            raise
        try:
            self.session.execute(sql)
        except Exception as exc:
            log.error("create database failed, SQL=%s: %s", sql, exc)
            raise

    def create_table(self, table: Table) -> None:
        """Create the table in its database, keeping its auto increment id."""
        schema = table.schema
        create_sql = self.session.show_create_table(schema, schema.auto_inc_id)
        switch_sql = f"use {table.db.name};"
        try:
            self.session.execute(switch_sql)
        except Exception as exc:
            log.error("switch db failed, SQL=%s db=%s: %s", switch_sql, table.db.name, exc)
            raise
        try:
            self.session.execute(create_sql)
        except Exception as exc:
            log.error(
                "create table failed, SQL=%s db=%s table=%s: %s",
                create_sql, table.db.name, schema.name, exc,
            )
            raise

    def close(self) -> None:
        """Close the session."""
        self.session.close()


def new_db(session: Session) -> DB:
    """Wrap a session, clearing the SQL mode to avoid compatibility problems."""
    session.execute("set @@sql_mode=''")
    return DB(session)