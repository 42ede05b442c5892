"""Glossary SQL validate-and-retry loop.

The loop is an explicit state machine: ``RepairState`` accumulates the
attempt count, last SQL and last error; each iteration either validates
successfully (terminal) or records the failure and builds the next prompt
from it. After ``max_attempts`` failures the outcome is exhausted.

Error classification is a deterministic pattern match over the error text.
It selects the hint injected into the retry prompt and generates nothing.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from app.catalog.types import SchemaSnapshot
from app.catalog.validator import SqlValidator, normalize_statement
from app.core.exceptions import GenerationError
from app.core.metrics import GLOSSARY_ATTEMPTS
from app.generation.client import GenerationClient
from app.generation.parsing import parse_structured
from app.generation.types import GenerationRequest
from app.pipeline import prompts
from app.schemas.generation import TermSqlAnnotation

logger = logging.getLogger(__name__)


class SqlErrorKind(str, Enum):
    TYPE_MISMATCH = "type_mismatch"
    MISSING_COLUMN = "missing_column"
    MISSING_TABLE = "missing_table"
    MISSING_FUNCTION = "missing_function"
    SYNTAX_ERROR = "syntax_error"
    GENERATION = "generation"  # call failed or output unparseable
    UNKNOWN = "unknown"


# Checked in order: "operator does not exist" must win over the generic "does not exist" forms
_PATTERNS: list[tuple[SqlErrorKind, re.Pattern]] = [
    (
        SqlErrorKind.TYPE_MISMATCH,
        re.compile(
            r"operator does not exist|datatype mismatch|invalid input syntax for type|cannot be cast|"
            r"cannot cast|is of type .+ but expression is of type|argument of .+ must be type|"
            r"could not convert|conversion failed",
            re.IGNORECASE,
        ),
    ),
    (
        SqlErrorKind.MISSING_COLUMN,
        re.compile(r"column .+ does not exist|no such column|unknown column|invalid column name", re.IGNORECASE),
    ),
    (
        SqlErrorKind.MISSING_TABLE,
        re.compile(
            r"relation .+ does not exist|no such table|table .+ doesn't exist|invalid object name", re.IGNORECASE
        ),
    ),
    (
        SqlErrorKind.MISSING_FUNCTION,
        re.compile(r"function .+ does not exist|no such function|unknown function|is not a recognized", re.IGNORECASE),
    ),
    (
        SqlErrorKind.SYNTAX_ERROR,
        re.compile(r"syntax error|incomplete input|unterminated|unrecognized token|empty statement", re.IGNORECASE),
    ),
]

HINTS = {
    SqlErrorKind.TYPE_MISMATCH: (
        "A value or column was compared or combined with an incompatible type. Check the column types "
        "below and add explicit casts or compare against literals of the right type."
    ),
    SqlErrorKind.MISSING_COLUMN: (
        "A referenced column does not exist. Use only the column names listed below, qualified with the "
        "correct table alias."
    ),
    SqlErrorKind.MISSING_TABLE: "A referenced table does not exist. Use only the tables listed below.",
    SqlErrorKind.MISSING_FUNCTION: (
        "A function is not available. Rewrite it with standard SQL aggregates and expressions "
        "(COUNT, SUM, AVG, CASE WHEN, COALESCE, NULLIF)."
    ),
    SqlErrorKind.SYNTAX_ERROR: "The statement did not parse. Return a single complete SELECT statement.",
    SqlErrorKind.GENERATION: "The previous response could not be used. Return exactly the requested JSON object.",
    SqlErrorKind.UNKNOWN: "Review the statement against the schema below.",
}

SCHEMA_MISMATCH_KINDS = frozenset({SqlErrorKind.MISSING_COLUMN, SqlErrorKind.MISSING_TABLE})

_TABLE_REFERENCE = re.compile(r"\b(?:from|join)\s+([A-Za-z_][\w.\"]*)", re.IGNORECASE)


def classify_sql_error(error: str | None) -> SqlErrorKind:
    if not error:
        return SqlErrorKind.UNKNOWN
    for kind, pattern in _PATTERNS:
        if pattern.search(error):
            return kind
    return SqlErrorKind.UNKNOWN


def referenced_tables(sql: str | None, snapshot: SchemaSnapshot) -> list[str]:
    """Qualified names of snapshot tables named after FROM/JOIN in ``sql``."""
    if not sql:
        return []
    found: list[str] = []
    for raw in _TABLE_REFERENCE.findall(sql):
        table = snapshot.find_table(raw.replace('"', ""))
        if table is not None and table.qualified_name not in found:
            found.append(table.qualified_name)
    return found


def column_reference(sql: str | None, kind: SqlErrorKind, snapshot: SchemaSnapshot) -> str:
    """Actual columns/types for the tables in the failing statement.

    Falls back to the full schema when the statement names no known table
    (missing table, unparseable output).
    """
    tables = referenced_tables(sql, snapshot)
    if not tables or kind == SqlErrorKind.MISSING_TABLE:
        tables = [t.qualified_name for t in snapshot.tables]
    return snapshot.describe_tables(tables)


@dataclass
class RepairState:
    attempt: int = 0
    last_sql: str | None = None
    last_error: str | None = None
    last_kind: SqlErrorKind | None = None
    kinds: list[SqlErrorKind] = field(default_factory=list)

    def record_failure(self, sql: str | None, error: str, kind: SqlErrorKind) -> None:
        self.last_sql = sql or self.last_sql
        self.last_error = error
        self.last_kind = kind
        self.kinds.append(kind)


@dataclass
class RepairOutcome:
    ok: bool
    attempts: int
    sql: str | None = None
    base_table: str | None = None
    aliases: list[str] = field(default_factory=list)
    output_columns: list[str] = field(default_factory=list)
    last_error: str | None = None
    error_kinds: list[SqlErrorKind] = field(default_factory=list)

    @property
    def schema_mismatches(self) -> int:
        return sum(1 for k in self.error_kinds if k in SCHEMA_MISMATCH_KINDS)


def build_prompt(term: dict[str, Any], state: RepairState, snapshot: SchemaSnapshot) -> str:
    if state.attempt == 0 or state.last_error is None:
        return prompts.term_sql_prompt(term, snapshot)
    kind = state.last_kind or SqlErrorKind.UNKNOWN
    return prompts.term_sql_retry_prompt(
        term,
        previous_sql=state.last_sql,
        previous_error=state.last_error,
        error_kind=kind.value,
        hint=HINTS[kind],
        column_reference=column_reference(state.last_sql, kind, snapshot),
    )


async def generate_validated_sql(
    client: GenerationClient,
    validator: SqlValidator,
    term: dict[str, Any],
    snapshot: SchemaSnapshot,
    *,
    max_attempts: int = 3,
    call_timeout: float | None = 60.0,
    model: str = "",
    temperature: float = 0.0,
) -> RepairOutcome:
    """Generate SQL for ``term`` and validate it, retrying with feedback."""
    state = RepairState()

    while state.attempt < max_attempts:
        request = GenerationRequest(
            user_prompt=build_prompt(term, state, snapshot),
            system_prompt=prompts.TERM_SQL_SYSTEM,
            model=model,
            temperature=temperature,
            purpose="glossary_enrichment",
        )
        state.attempt += 1

        try:
            if call_timeout:
                result = await asyncio.wait_for(client.complete(request), timeout=call_timeout)
            else:
                result = await client.complete(request)
            annotation = parse_structured(result.text, TermSqlAnnotation)
        except asyncio.TimeoutError:
            state.record_failure(None, f"generation timed out after {call_timeout}s", SqlErrorKind.GENERATION)
            GLOSSARY_ATTEMPTS.labels(outcome=SqlErrorKind.GENERATION.value).inc()
            continue
        except GenerationError as exc:
            state.record_failure(None, exc.message, SqlErrorKind.GENERATION)
            GLOSSARY_ATTEMPTS.labels(outcome=SqlErrorKind.GENERATION.value).inc()
            continue

        sql = normalize_statement(annotation.defining_sql)
        validation = await validator.validate(sql)
        if validation.ok:
            GLOSSARY_ATTEMPTS.labels(outcome="valid").inc()
            logger.debug("Term %r validated on attempt %d", term["term"], state.attempt)
            return RepairOutcome(
                ok=True,
                attempts=state.attempt,
                sql=sql,
                base_table=annotation.base_table,
                aliases=annotation.aliases,
                output_columns=validation.output_columns,
                error_kinds=state.kinds,
            )

        error = validation.error or "validation failed"
        kind = classify_sql_error(error)
        state.record_failure(sql, error, kind)
        GLOSSARY_ATTEMPTS.labels(outcome=kind.value).inc()
        logger.info("Term %r attempt %d/%d failed (%s): %s", term["term"], state.attempt, max_attempts, kind.value, error)

    return RepairOutcome(
        ok=False,
        attempts=state.attempt,
        last_error=state.last_error,
        error_kinds=state.kinds,
    )
