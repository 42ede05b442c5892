"""Glossary SQL enrichment.

Runs the validate-and-retry loop for every term still pending. Terms run
concurrently; each loop enforces its own per-call timeouts. Bookkeeping
(status, attempt count, last error) is written directly on the term.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from app.models.entity import OntologyEntity
from app.models.glossary_term import GlossaryTerm
from app.ontology import changes as change_service
from app.ontology.changes import ChangeAction
from app.ontology.questions import QuestionCategory, raise_question
from app.pipeline.nodes import Capability, DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.sql_repair import RepairOutcome, generate_validated_sql
from app.pipeline.stages.base import load_ontology, load_snapshot

logger = logging.getLogger(__name__)


class GlossaryEnrichmentExecutor(StageExecutor):
    node = DagNode.GLOSSARY_ENRICHMENT
    requires = frozenset({Capability.GENERATION, Capability.SQL_VALIDATOR})

    async def execute(self, ctx: NodeContext) -> NodeResult:
        async with ctx.session_factory() as db:
            ontology = await load_ontology(db, ctx.ontology_id)
            snapshot = await load_snapshot(db, ctx.ontology_id)
            domain = (ontology.domain_summary or {}).get("description")
            entity_rows = await db.execute(
                select(OntologyEntity).where(
                    OntologyEntity.ontology_id == ctx.ontology_id, OntologyEntity.is_deleted.is_(False)
                )
            )
            entities = "\n".join(
                f"- {e.name}: table {e.primary_schema}.{e.primary_table}"
                + (f" ({e.description})" if e.description else "")
                for e in entity_rows.scalars().all()
            )
            term_rows = await db.execute(
                select(GlossaryTerm)
                .where(GlossaryTerm.ontology_id == ctx.ontology_id, GlossaryTerm.enrichment_status == "pending")
                .order_by(GlossaryTerm.term)
            )
            batch = [
                {"id": t.id, "term": t.term, "definition": t.definition, "domain": domain, "entities": entities}
                for t in term_rows.scalars().all()
            ]

        if not batch:
            return NodeResult()

        validator = ctx.capabilities.validator_factory(snapshot)
        settings = ctx.settings

        async def enrich(item: dict[str, Any]) -> RepairOutcome:
            return await generate_validated_sql(
                ctx.generation,
                validator,
                item,
                snapshot,
                max_attempts=settings.glossary_max_attempts,
                call_timeout=ctx.pool.call_timeout,
                model=settings.generation_model,
                temperature=settings.generation_temperature,
            )

        await ctx.emit(self.node, 0, len(batch), "generating term SQL")
        try:
            outcomes = await ctx.pool.run(batch, enrich, timeout=0)
        finally:
            validator.close()

        result = NodeResult(processed=len(batch))
        mismatches = 0
        async with ctx.session_factory() as db:
            for outcome in outcomes:
                term = await db.get(GlossaryTerm, outcome.item["id"])
                if term is None:
                    continue
                repair = outcome.value
                if repair is None:
                    term.enrichment_status = "failed"
                    term.last_error = outcome.error
                    result.failed += 1
                    result.questions += await self._ask_about(ctx, db, term)
                    continue

                mismatches += repair.schema_mismatches
                term.attempt_count = repair.attempts
                if repair.ok:
                    await self._apply_sql(ctx, db, term, repair)
                    result.created += 1
                else:
                    term.enrichment_status = "failed"
                    term.last_error = repair.last_error
                    result.failed += 1
                    logger.warning(
                        "Term %r failed after %d attempts: %s", term.term, repair.attempts, repair.last_error
                    )
                    result.questions += await self._ask_about(ctx, db, term)

            if mismatches >= settings.schema_mismatch_refresh_threshold:
                _, created = await raise_question(
                    db,
                    ctx.ontology_id,
                    prompt=(
                        "Generated SQL repeatedly referenced tables or columns missing from the schema snapshot. "
                        "Has the datasource schema changed? If so, refresh the snapshot and re-run extraction."
                    ),
                    category=QuestionCategory.DATA_QUALITY,
                    source_stage=self.node.value,
                    priority=2,
                    is_required=True,
                )
                result.questions += int(created)
            await db.commit()

        result.details["schema_mismatches"] = mismatches
        await ctx.emit(self.node, len(batch), len(batch), f"{result.created} enriched, {result.failed} failed")
        return result

    async def _ask_about(self, ctx: NodeContext, db, term: GlossaryTerm) -> int:
        _, created = await raise_question(
            db,
            ctx.ontology_id,
            prompt=(
                f"No valid SQL could be generated for glossary term '{term.term}' "
                f"(last error: {term.last_error}). How should this term be calculated?"
            ),
            category=QuestionCategory.DATA_QUALITY,
            source_stage=self.node.value,
            source_ref=term.term,
            priority=2,
            is_required=True,
            affects={"tables": [term.base_table] if term.base_table else [], "columns": [], "terms": [term.term]},
        )
        return int(created)

    async def _apply_sql(self, ctx: NodeContext, db, term: GlossaryTerm, repair: RepairOutcome) -> None:
        term.enrichment_status = "enriched"
        term.last_error = None
        aliases = list(term.aliases or [])
        for alias in repair.aliases:
            if alias not in aliases:
                aliases.append(alias)

        if term.is_staged:
            term.sql_pattern = repair.sql
            term.base_table = term.base_table or repair.base_table
            term.output_columns = repair.output_columns
            term.aliases = aliases
            return

        values = {
            "sql_pattern": repair.sql,
            "base_table": term.base_table or repair.base_table,
            "output_columns": repair.output_columns,
            "aliases": aliases,
        }
        await change_service.record_change(
            db,
            ctx.ontology_id,
            ChangeAction.UPDATE_GLOSSARY_TERM,
            target_id=term.id,
            set_fields=values,
            before={key: getattr(term, key) for key in values},
            source_stage=self.node.value,
        )
