"""Schema snapshot types.

A snapshot is a plain, JSON-serialisable description of the datasource.
It is captured once per run by the schema-capture node and stored on the
ontology row; every later node reads it from there.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(frozen=True)
class ColumnLocation:
    schema: str
    table: str
    column: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.table}.{self.column}"

    def to_dict(self) -> dict[str, str]:
        return {"schema": self.schema, "table": self.table, "column": self.column}


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool = True
    is_primary_key: bool = False


@dataclass
class ForeignKeyInfo:
    columns: list[str]
    referred_schema: str
    referred_table: str
    referred_columns: list[str]
    name: str = ""


@dataclass
class TableInfo:
    schema: str
    name: str
    columns: list[ColumnInfo] = field(default_factory=list)
    foreign_keys: list[ForeignKeyInfo] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def primary_key_columns(self) -> list[str]:
        return [c.name for c in self.columns if c.is_primary_key]

    def column(self, name: str) -> ColumnInfo | None:
        lowered = name.lower()
        for col in self.columns:
            if col.name.lower() == lowered:
                return col
        return None

    def location(self, column: str) -> ColumnLocation:
        return ColumnLocation(self.schema, self.name, column)


@dataclass
class SchemaSnapshot:
    tables: list[TableInfo] = field(default_factory=list)

    # -- lookups -------------------------------------------------------------

    def table(self, schema: str, name: str) -> TableInfo | None:
        for t in self.tables:
            if t.schema == schema and t.name == name:
                return t
        return None

    def find_table(self, name: str) -> TableInfo | None:
        """Resolve ``name`` or ``schema.name`` case-insensitively."""
        lowered = name.lower().strip('"')
        for t in self.tables:
            if t.name.lower() == lowered or t.qualified_name.lower() == lowered:
                return t
        return None

    def has_column(self, location: ColumnLocation) -> bool:
        table = self.table(location.schema, location.table)
        return table is not None and table.column(location.column) is not None

    def describe_tables(self, names: list[str]) -> str:
        """Render ``table(col type, ...)`` lines for the given tables."""
        lines = []
        for name in names:
            t = self.find_table(name)
            if t is None:
                continue
            cols = ", ".join(f"{c.name} {c.data_type}" for c in t.columns)
            lines.append(f"{t.qualified_name}({cols})")
        return "\n".join(lines)

    # -- serialisation -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {"tables": [asdict(t) for t in self.tables]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaSnapshot:
        tables = []
        for raw in data.get("tables", []):
            tables.append(
                TableInfo(
                    schema=raw["schema"],
                    name=raw["name"],
                    columns=[ColumnInfo(**c) for c in raw.get("columns", [])],
                    foreign_keys=[ForeignKeyInfo(**fk) for fk in raw.get("foreign_keys", [])],
                )
            )
        return cls(tables=tables)

    def fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
