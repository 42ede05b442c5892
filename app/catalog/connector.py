"""Schema connectors: capture a SchemaSnapshot from a datasource."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import SQLAlchemyError

from app.catalog.types import ColumnInfo, ForeignKeyInfo, SchemaSnapshot, TableInfo
from app.core.exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

_EXCLUDED_SCHEMAS = {"pg_catalog", "information_schema"}


class SchemaConnector(ABC):
    """Read-only source of table, column and foreign-key facts."""

    @abstractmethod
    async def capture(self) -> SchemaSnapshot:
        ...


class StaticSchemaConnector(SchemaConnector):
    """Serves a fixed snapshot, given as a SchemaSnapshot or its dict form."""

    def __init__(self, snapshot: SchemaSnapshot | dict[str, Any]):
        if isinstance(snapshot, dict):
            snapshot = SchemaSnapshot.from_dict(snapshot)
        self._snapshot = snapshot

    async def capture(self) -> SchemaSnapshot:
        return self._snapshot


class SqlAlchemySchemaConnector(SchemaConnector):
    """Introspects a live database through SQLAlchemy's inspector.

    Inspection is synchronous, so it runs in a worker thread.
    """

    def __init__(self, url: str, schemas: list[str] | None = None):
        if not url:
            raise ConfigurationError("Datasource URL is not configured")
        self.url = url
        self.schemas = schemas or []

    async def capture(self) -> SchemaSnapshot:
        return await asyncio.to_thread(self._capture_sync)

    def _capture_sync(self) -> SchemaSnapshot:
        engine = create_engine(self.url, pool_pre_ping=True)
        try:
            inspector = inspect(engine)
            schemas = self.schemas or [
                s for s in inspector.get_schema_names() if s not in _EXCLUDED_SCHEMAS and not s.startswith("pg_toast")
            ]
            tables: list[TableInfo] = []
            for schema in sorted(schemas):
                for table_name in sorted(inspector.get_table_names(schema=schema)):
                    tables.append(self._inspect_table(inspector, schema, table_name))
            logger.info("Captured schema snapshot: %d tables across %d schemas", len(tables), len(schemas))
            return SchemaSnapshot(tables=tables)
        except SQLAlchemyError as exc:
            raise ValidationError(f"Schema introspection failed: {exc}") from exc
        finally:
            engine.dispose()

    @staticmethod
    def _inspect_table(inspector, schema: str, table_name: str) -> TableInfo:
        pk = inspector.get_pk_constraint(table_name, schema=schema) or {}
        pk_columns = set(pk.get("constrained_columns") or [])

        columns = [
            ColumnInfo(
                name=col["name"],
                data_type=str(col["type"]).lower(),
                nullable=bool(col.get("nullable", True)),
                is_primary_key=col["name"] in pk_columns,
            )
            for col in inspector.get_columns(table_name, schema=schema)
        ]

        foreign_keys = [
            ForeignKeyInfo(
                columns=list(fk["constrained_columns"]),
                referred_schema=fk.get("referred_schema") or schema,
                referred_table=fk["referred_table"],
                referred_columns=list(fk["referred_columns"]),
                name=fk.get("name") or "",
            )
            for fk in inspector.get_foreign_keys(table_name, schema=schema)
        ]

        return TableInfo(schema=schema, name=table_name, columns=columns, foreign_keys=foreign_keys)
