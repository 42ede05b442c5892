"""Deterministic SQL validation: parse plus a non-executing dry run.

Two validators share one contract. ``ShadowSchemaValidator`` rebuilds the
snapshot as empty tables in an in-memory SQLite database, so validation
needs nothing but the snapshot. ``DatasourceDryRunValidator`` runs EXPLAIN
against the real datasource inside a transaction that is always rolled
back; it also catches type errors SQLite cannot see.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
)
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from app.catalog.types import SchemaSnapshot
from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_LEADING_KEYWORD = re.compile(r"^\s*(\w+)", re.IGNORECASE)

# PostgreSQL SQLSTATE codes worth naming in the error text
_SQLSTATE_LABELS = {
    "42601": "syntax error",
    "42703": "column does not exist",
    "42P01": "relation does not exist",
    "42883": "function does not exist",
    "42804": "datatype mismatch",
    "22P02": "invalid input syntax for type",
}


@dataclass
class ValidationOutcome:
    ok: bool
    error: str | None = None
    output_columns: list[str] = field(default_factory=list)


class SqlValidator(ABC):
    @abstractmethod
    async def validate(self, sql: str) -> ValidationOutcome:
        ...

    def close(self) -> None:
        """Release resources. Default: nothing to release."""


def normalize_statement(sql: str) -> str:
    """Strip whitespace, markdown fences and one trailing semicolon."""
    text = sql.strip()
    if text.startswith("```"):
        text = re.sub(r"^```\w*\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text.strip().rstrip(";").strip()


def check_read_only(sql: str) -> str | None:
    """Return an error message unless ``sql`` is a single SELECT/WITH statement."""
    if not sql:
        return "syntax error: empty statement"
    if ";" in sql:
        return "syntax error: multiple statements are not allowed"
    match = _LEADING_KEYWORD.match(sql)
    if not match or match.group(1).upper() not in ("SELECT", "WITH"):
        return "syntax error: only SELECT statements can be validated"
    return None


def _sqlalchemy_type(data_type: str):
    t = data_type.lower()
    if "int" in t or t == "serial":
        return Integer
    if any(k in t for k in ("numeric", "decimal", "money")):
        return Numeric
    if any(k in t for k in ("float", "double", "real")):
        return Float
    if "bool" in t:
        return Boolean
    if "timestamp" in t or "datetime" in t:
        return DateTime
    if t == "date":
        return Date
    return String


class ShadowSchemaValidator(SqlValidator):
    """Validates against empty copies of the snapshot tables in SQLite.

    The replica lives on one in-memory connection, so checks run one at a
    time in a worker thread.
    """

    def __init__(self, snapshot: SchemaSnapshot):
        self.snapshot = snapshot
        self._lock = threading.Lock()
        self._engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        self._build()

    def _build(self) -> None:
        metadata = MetaData()
        schemas = sorted({t.schema for t in self.snapshot.tables if t.schema and t.schema != "main"})
        for table in self.snapshot.tables:
            Table(
                table.name,
                metadata,
                *[Column(c.name, _sqlalchemy_type(c.data_type)) for c in table.columns],
                schema=table.schema if table.schema != "main" else None,
            )
        with self._engine.begin() as conn:
            for schema in schemas:
                conn.exec_driver_sql(f"ATTACH DATABASE ':memory:' AS \"{schema}\"")
            metadata.create_all(conn)
        logger.debug("Shadow schema built: %d tables", len(self.snapshot.tables))

    async def validate(self, sql: str) -> ValidationOutcome:
        statement = normalize_statement(sql)
        problem = check_read_only(statement)
        if problem:
            return ValidationOutcome(ok=False, error=problem)
        return await asyncio.to_thread(self._validate_sync, statement)

    def _validate_sync(self, statement: str) -> ValidationOutcome:
        try:
            with self._lock, self._engine.connect() as conn:
                conn.exec_driver_sql(f"EXPLAIN {statement}")
                result = conn.exec_driver_sql(f"SELECT * FROM ({statement}) LIMIT 0")
                columns = list(result.keys())
        except DBAPIError as exc:
            return ValidationOutcome(ok=False, error=str(exc.orig))
        except SQLAlchemyError as exc:
            return ValidationOutcome(ok=False, error=str(exc))
        return ValidationOutcome(ok=True, output_columns=columns)

    def close(self) -> None:
        self._engine.dispose()


class DatasourceDryRunValidator(SqlValidator):
    """EXPLAINs the statement on the real datasource, never committing."""

    def __init__(self, url: str):
        if not url:
            raise ConfigurationError("Datasource URL is not configured")
        self._engine = create_engine(url, pool_pre_ping=True)

    async def validate(self, sql: str) -> ValidationOutcome:
        statement = normalize_statement(sql)
        problem = check_read_only(statement)
        if problem:
            return ValidationOutcome(ok=False, error=problem)
        return await asyncio.to_thread(self._validate_sync, statement)

    def _validate_sync(self, statement: str) -> ValidationOutcome:
        try:
            with self._engine.connect() as conn:
                trans = conn.begin()
                try:
                    conn.exec_driver_sql(f"EXPLAIN {statement}")
                    result = conn.exec_driver_sql(f"SELECT * FROM ({statement}) AS _q LIMIT 0")
                    columns = list(result.keys())
                finally:
                    trans.rollback()
        except DBAPIError as exc:
            return ValidationOutcome(ok=False, error=_describe_db_error(exc))
        except SQLAlchemyError as exc:
            return ValidationOutcome(ok=False, error=str(exc))
        return ValidationOutcome(ok=True, output_columns=columns)

    def close(self) -> None:
        self._engine.dispose()


def _describe_db_error(exc: DBAPIError) -> str:
    orig = exc.orig
    message = str(orig).strip()
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    label = _SQLSTATE_LABELS.get(code or "")
    if label and label not in message.lower():
        return f"{label}: {message} (SQLSTATE {code})"
    if code:
        return f"{message} (SQLSTATE {code})"
    return message
