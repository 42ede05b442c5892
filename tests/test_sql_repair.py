"""Tests for SQL validation and the glossary validate-and-retry loop."""

import asyncio
import json
import threading

import pytest

from app.catalog.validator import ShadowSchemaValidator, check_read_only, normalize_statement
from app.core.exceptions import GenerationError
from app.pipeline.sql_repair import (
    SqlErrorKind,
    classify_sql_error,
    column_reference,
    generate_validated_sql,
    referenced_tables,
)

TERM = {"term": "Total Revenue", "definition": "Sum of all order amounts"}


def _sql_reply(sql: str, base_table: str = "orders") -> str:
    return json.dumps({"defining_sql": sql, "base_table": base_table})


# ===========================================================================
# Statement checks
# ===========================================================================


class TestStatementChecks:
    def test_normalize_strips_fences_and_semicolon(self):
        assert normalize_statement("```sql\nSELECT 1;\n```") == "SELECT 1"

    def test_select_and_with_are_read_only(self):
        assert check_read_only("SELECT 1") is None
        assert check_read_only("WITH t AS (SELECT 1) SELECT * FROM t") is None

    def test_writes_are_rejected(self):
        assert check_read_only("DELETE FROM orders").startswith("syntax error:")

    def test_multiple_statements_rejected(self):
        assert check_read_only("SELECT 1; SELECT 2").startswith("syntax error:")

    def test_empty_rejected(self):
        assert check_read_only("") == "syntax error: empty statement"


# ===========================================================================
# Shadow validator
# ===========================================================================


class TestShadowSchemaValidator:
    @pytest.mark.asyncio
    async def test_valid_statement_reports_output_columns(self, snapshot):
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await validator.validate("SELECT SUM(o.amount) AS total_revenue FROM orders o")
        finally:
            validator.close()
        assert outcome.ok is True
        assert outcome.output_columns == ["total_revenue"]

    @pytest.mark.asyncio
    async def test_concurrent_checks_run_off_the_event_loop(self, snapshot):
        validator = ShadowSchemaValidator(snapshot)
        threads = []
        check = validator._validate_sync

        def recording(statement):
            threads.append(threading.get_ident())
            return check(statement)

        validator._validate_sync = recording
        try:
            outcomes = await asyncio.gather(
                validator.validate("SELECT COUNT(*) AS n FROM orders"),
                validator.validate("SELECT o.total FROM orders o"),
                validator.validate("SELECT u.email FROM users u"),
            )
        finally:
            validator.close()

        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[1].error == "no such column: o.total"
        assert len(threads) == 3
        assert threading.get_ident() not in threads

    @pytest.mark.asyncio
    async def test_schema_qualified_table(self, snapshot):
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await validator.validate("SELECT u.email FROM public.users u")
        finally:
            validator.close()
        assert outcome.ok is True

    @pytest.mark.asyncio
    async def test_missing_column(self, snapshot):
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await validator.validate("SELECT SUM(o.total) FROM orders o")
        finally:
            validator.close()
        assert outcome.ok is False
        assert classify_sql_error(outcome.error) == SqlErrorKind.MISSING_COLUMN

    @pytest.mark.asyncio
    async def test_missing_table(self, snapshot):
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await validator.validate("SELECT COUNT(*) FROM invoices")
        finally:
            validator.close()
        assert outcome.ok is False
        assert classify_sql_error(outcome.error) == SqlErrorKind.MISSING_TABLE

    @pytest.mark.asyncio
    async def test_non_select_never_runs(self, snapshot):
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await validator.validate("DROP TABLE orders")
        finally:
            validator.close()
        assert outcome.ok is False
        assert classify_sql_error(outcome.error) == SqlErrorKind.SYNTAX_ERROR


# ===========================================================================
# Error classification
# ===========================================================================


class TestClassifySqlError:
    @pytest.mark.parametrize(
        "error,kind",
        [
            ('operator does not exist: character varying = integer', SqlErrorKind.TYPE_MISMATCH),
            ('invalid input syntax for type integer: "abc"', SqlErrorKind.TYPE_MISMATCH),
            ('column o.total does not exist', SqlErrorKind.MISSING_COLUMN),
            ("no such column: o.total", SqlErrorKind.MISSING_COLUMN),
            ('relation "invoices" does not exist', SqlErrorKind.MISSING_TABLE),
            ("no such table: invoices", SqlErrorKind.MISSING_TABLE),
            ("function date_trunc(unknown, integer) does not exist", SqlErrorKind.MISSING_FUNCTION),
            ("no such function: DATE_TRUNC", SqlErrorKind.MISSING_FUNCTION),
            ('syntax error at or near "FORM"', SqlErrorKind.SYNTAX_ERROR),
            ("something unexpected happened", SqlErrorKind.UNKNOWN),
            (None, SqlErrorKind.UNKNOWN),
        ],
    )
    def test_kinds(self, error, kind):
        assert classify_sql_error(error) == kind

    def test_referenced_tables_resolves_aliases_and_joins(self, snapshot):
        sql = "SELECT COUNT(*) FROM orders o JOIN public.users u ON u.id = o.user_id"
        assert referenced_tables(sql, snapshot) == ["public.orders", "public.users"]

    def test_column_reference_lists_actual_columns(self, snapshot):
        text = column_reference("SELECT o.total FROM orders o", SqlErrorKind.MISSING_COLUMN, snapshot)
        assert text == "public.orders(id integer, user_id integer, amount numeric, created_at timestamp)"

    def test_column_reference_falls_back_to_all_tables(self, snapshot):
        text = column_reference("SELECT * FROM invoices", SqlErrorKind.MISSING_TABLE, snapshot)
        assert "public.orders(" in text
        assert "public.users(" in text


# ===========================================================================
# Validate-and-retry loop
# ===========================================================================


class TestGenerateValidatedSql:
    @pytest.mark.asyncio
    async def test_first_attempt_valid(self, snapshot, generation):
        client = generation
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await generate_validated_sql(client, validator, TERM, snapshot, max_attempts=3)
        finally:
            validator.close()

        assert outcome.ok is True
        assert outcome.attempts == 1
        assert outcome.sql == "SELECT SUM(o.amount) AS total_revenue FROM orders o"
        assert outcome.base_table == "orders"
        assert len(client.calls_for("glossary_enrichment")) == 1

    @pytest.mark.asyncio
    async def test_retry_prompt_carries_error_and_actual_columns(self, snapshot, generation):
        client = generation
        client.script.update(
            {
                "glossary_enrichment": [
                    _sql_reply("SELECT SUM(o.total) FROM orders o"),
                    _sql_reply("SELECT SUM(o.amount) AS total_revenue FROM orders o"),
                ]
            }
        )
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await generate_validated_sql(client, validator, TERM, snapshot, max_attempts=3)
        finally:
            validator.close()

        assert outcome.ok is True
        assert outcome.attempts == 2
        assert outcome.error_kinds == [SqlErrorKind.MISSING_COLUMN]
        assert outcome.schema_mismatches == 1

        first, second = client.calls_for("glossary_enrichment")
        assert "Previous Attempt Failed" not in first.user_prompt
        assert "Previous Attempt Failed" in second.user_prompt
        assert "no such column" in second.user_prompt
        assert "SELECT SUM(o.total) FROM orders o" in second.user_prompt
        assert "public.orders(id integer, user_id integer, amount numeric, created_at timestamp)" in second.user_prompt

    @pytest.mark.asyncio
    async def test_exhausted_keeps_last_error(self, snapshot, generation):
        client = generation
        client.script.update({"glossary_enrichment": _sql_reply("SELECT SUM(o.total) FROM orders o")})
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await generate_validated_sql(client, validator, TERM, snapshot, max_attempts=3)
        finally:
            validator.close()

        assert outcome.ok is False
        assert outcome.attempts == 3
        assert outcome.sql is None
        assert "no such column" in outcome.last_error
        assert outcome.schema_mismatches == 3
        assert len(client.calls) == 3

    @pytest.mark.asyncio
    async def test_generation_failure_counts_as_attempt(self, snapshot, generation):
        client = generation
        client.script.update(
            {
                "glossary_enrichment": [
                    GenerationError("Rate limited by OpenAI"),
                    "not json at all",
                    _sql_reply("SELECT SUM(o.amount) AS total_revenue FROM orders o"),
                ]
            }
        )
        validator = ShadowSchemaValidator(snapshot)
        try:
            outcome = await generate_validated_sql(client, validator, TERM, snapshot, max_attempts=3)
        finally:
            validator.close()

        assert outcome.ok is True
        assert outcome.attempts == 3
        assert outcome.error_kinds == [SqlErrorKind.GENERATION, SqlErrorKind.GENERATION]
        assert outcome.schema_mismatches == 0
