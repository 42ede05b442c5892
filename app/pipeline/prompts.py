"""Prompt builders for every generation-backed node.

Builders take plain data (dicts and snapshot types), never ORM objects,
because prompts are rendered inside concurrent workers.
"""

from __future__ import annotations

from typing import Any

from app.catalog.types import SchemaSnapshot, TableInfo

ENTITY_SYSTEM = (
    "You are a data modelling expert. Given a database table that represents a business entity, "
    "describe the entity for business users. Respond with a JSON object only."
)

RELATIONSHIP_SYSTEM = (
    "You are a data modelling expert. You label ONE direction of a relationship between two entities "
    "with a short snake_case verb phrase read from the source entity to the target entity "
    '(e.g. an Order "placed_by" a User; a User "places" Orders). Respond with a JSON object only.'
)

COLUMN_SYSTEM = (
    "You are a data modelling expert. Annotate database columns with business meaning. "
    "role must be one of: identifier, dimension, measure, attribute. Respond with a JSON object only."
)

GLOSSARY_SYSTEM = (
    "You are a business analyst. Propose business glossary terms (metrics and KPIs) that can be "
    "computed from the described database. Respond with a JSON object only."
)

TERM_SQL_SYSTEM = (
    "You are a SQL expert. Produce a complete, executable SQL SELECT statement that computes the "
    "business term. Use only tables and columns from the provided schema, with exact names. "
    "Give every output column a meaningful alias. Respond with a JSON object only."
)

SUMMARY_SYSTEM = (
    "You are a data modelling expert. Summarise the business domain described by an ontology. "
    "Respond with a JSON object only."
)

_QUESTION_HINT = (
    'If something is genuinely ambiguous, put one short clarifying question for a human in "question"; '
    "otherwise leave it null."
)


def render_table(table: TableInfo) -> str:
    lines = [f"Table {table.qualified_name}:"]
    for col in table.columns:
        flags = []
        if col.is_primary_key:
            flags.append("PK")
        if not col.nullable:
            flags.append("NOT NULL")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines.append(f"  - {col.name} {col.data_type}{suffix}")
    for fk in table.foreign_keys:
        lines.append(
            f"  FK ({', '.join(fk.columns)}) -> {fk.referred_schema}.{fk.referred_table}"
            f"({', '.join(fk.referred_columns)})"
        )
    return "\n".join(lines)


def render_schema(snapshot: SchemaSnapshot) -> str:
    return snapshot.describe_tables([t.qualified_name for t in snapshot.tables])


def entity_prompt(entity: dict[str, Any], table: TableInfo | None) -> str:
    parts = [
        f"Entity: {entity['name']}",
        f"Anchored at: {entity['primary']}",
    ]
    if table is not None:
        parts.append(render_table(table))
    parts.append(
        "Respond with JSON: "
        '{"business_name": str, "description": str, "domain": str, "aliases": [str], '
        '"confidence": 0..1, "question": str|null}. '
        + _QUESTION_HINT
    )
    return "\n\n".join(parts)


def relationship_prompt(row: dict[str, Any]) -> str:
    return "\n\n".join(
        [
            f"Source entity: {row['source_entity']}",
            f"Target entity: {row['target_entity']}",
            f"Join: {row['source_location']} = {row['target_location']}",
            f"Cardinality (source:target): {row['cardinality']}",
            "Label only the direction from the source entity to the target entity.",
            'Respond with JSON: {"association": str, "description": str, "confidence": 0..1, "question": str|null}. '
            + _QUESTION_HINT,
        ]
    )


def column_prompt(table: TableInfo, column_names: list[str]) -> str:
    return "\n\n".join(
        [
            render_table(table),
            f"Annotate these columns: {', '.join(column_names)}",
            'Respond with JSON: {"columns": [{"name": str, "description": str, "semantic_type": str, '
            '"role": str, "question": str|null}]}. ' + _QUESTION_HINT,
        ]
    )


def glossary_prompt(entities: list[dict[str, Any]], snapshot: SchemaSnapshot, existing: list[str]) -> str:
    entity_lines = "\n".join(
        f"- {e['name']} ({e['primary_table']}): {e.get('description') or 'no description'}" for e in entities
    )
    parts = [
        "## Entities\n" + (entity_lines or "- none"),
        "## Schema\n" + render_schema(snapshot),
    ]
    if existing:
        parts.append("## Existing terms (do not repeat)\n" + "\n".join(f"- {t}" for t in existing))
    parts.append('Respond with JSON: {"terms": [{"term": str, "definition": str, "aliases": [str]}]}')
    return "\n\n".join(parts)


def term_sql_prompt(term: dict[str, Any], snapshot: SchemaSnapshot) -> str:
    parts = ["# Schema Context"]
    if term.get("domain"):
        parts.append(f"## Domain Overview\n{term['domain']}")
    parts.append("## Entities\n" + (term.get("entities") or "- none"))
    parts.append("## Tables\n" + render_schema(snapshot))
    parts.append(f"## Term to Enrich\n**Term:** {term['term']}\n**Definition:** {term['definition']}")
    parts.append('Respond with JSON: {"defining_sql": str, "base_table": str, "aliases": [str]}')
    return "\n\n".join(parts)


def term_sql_retry_prompt(
    term: dict[str, Any],
    previous_sql: str | None,
    previous_error: str,
    error_kind: str,
    hint: str,
    column_reference: str,
) -> str:
    parts = [
        "# Schema Context (Enhanced Detail)",
        "## Previous Attempt Failed\n"
        f"The previous attempt failed with the following error:\n```\n{previous_error}\n```\n"
        f"Error class: {error_kind}. {hint}",
    ]
    if previous_sql:
        parts.append(f"## Previous SQL\n```sql\n{previous_sql}\n```")
    parts.append("## Actual Columns\n" + (column_reference or "(no matching tables)"))
    if term.get("entities"):
        parts.append("## Entities\n" + term["entities"])
    parts.append(f"## Term to Enrich\n**Term:** {term['term']}\n**Definition:** {term['definition']}")
    parts.append('Respond with JSON: {"defining_sql": str, "base_table": str, "aliases": [str]}')
    return "\n\n".join(parts)


def summary_prompt(entities: list[dict[str, Any]], pair_count: int, terms: list[str]) -> str:
    entity_lines = "\n".join(
        f"- {e['name']} [{e.get('domain') or 'unassigned'}]: {e.get('description') or ''}" for e in entities
    )
    return "\n\n".join(
        [
            "## Entities\n" + (entity_lines or "- none"),
            f"## Relationship pairs: {pair_count}",
            "## Glossary terms\n" + ("\n".join(f"- {t}" for t in terms) or "- none"),
            'Respond with JSON: {"description": str, "primary_domains": [str]}',
        ]
    )
