"""Generation-backed column annotation, one call per table."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from app.catalog.types import SchemaSnapshot
from app.generation.parsing import parse_structured
from app.generation.types import GenerationRequest
from app.models.column_metadata import ColumnMetadata
from app.ontology import changes as change_service
from app.ontology.changes import ChangeAction
from app.ontology.questions import QuestionCategory, raise_question
from app.pipeline import prompts
from app.pipeline.nodes import Capability, DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import load_snapshot, raise_for_failures
from app.schemas.generation import TableColumnAnnotations

logger = logging.getLogger(__name__)


class ColumnEnrichmentExecutor(StageExecutor):
    node = DagNode.COLUMN_ENRICHMENT
    requires = frozenset({Capability.GENERATION})

    async def execute(self, ctx: NodeContext) -> NodeResult:
        async with ctx.session_factory() as db:
            snapshot = await load_snapshot(db, ctx.ontology_id)
            rows = await db.execute(
                select(ColumnMetadata.schema_name, ColumnMetadata.table_name, ColumnMetadata.column_name).where(
                    ColumnMetadata.ontology_id == ctx.ontology_id
                )
            )
            annotated = {tuple(r) for r in rows.all()}

        batch = []
        for table in snapshot.tables:
            missing = [c.name for c in table.columns if (table.schema, table.name, c.name) not in annotated]
            if missing:
                batch.append({"schema": table.schema, "table": table.name, "columns": missing})

        await ctx.emit(self.node, 0, len(batch), "annotating columns")
        outcomes = await ctx.pool.run(batch, lambda item: self._annotate(ctx, snapshot, item))

        result = NodeResult(processed=len(batch))
        async with ctx.session_factory() as db:
            for outcome in outcomes:
                if not outcome.ok:
                    result.failed += 1
                    logger.warning("Column annotation for %s failed: %s", outcome.item["table"], outcome.error)
                    continue
                created, questions = await self._persist(ctx, db, outcome.item, outcome.value)
                result.created += created
                result.questions += questions
            await db.commit()

        await ctx.emit(self.node, len(batch), len(batch), f"{result.created} columns annotated")
        raise_for_failures(self.node.value, outcomes)
        return result

    async def _annotate(self, ctx: NodeContext, snapshot: SchemaSnapshot, item: dict[str, Any]) -> TableColumnAnnotations:
        table = snapshot.table(item["schema"], item["table"])
        response = await ctx.generation.complete(
            GenerationRequest(
                user_prompt=prompts.column_prompt(table, item["columns"]),
                system_prompt=prompts.COLUMN_SYSTEM,
                model=ctx.settings.generation_model,
                temperature=ctx.settings.generation_temperature,
                max_tokens=ctx.settings.generation_max_tokens,
                purpose=self.node.value,
            )
        )
        return parse_structured(response.text, TableColumnAnnotations)

    async def _persist(
        self, ctx: NodeContext, db, item: dict[str, Any], annotations: TableColumnAnnotations
    ) -> tuple[int, int]:
        wanted = {name.lower(): name for name in item["columns"]}
        created = questions = 0
        for annotation in annotations.columns:
            column_name = wanted.pop(annotation.name.lower(), None)
            if column_name is None:
                logger.warning("Ignoring annotation for unknown column %s.%s", item["table"], annotation.name)
                continue
            values = {
                "description": annotation.description,
                "semantic_type": annotation.semantic_type,
                "role": annotation.role,
            }
            column = ColumnMetadata(
                ontology_id=ctx.ontology_id,
                schema_name=item["schema"],
                table_name=item["table"],
                column_name=column_name,
                is_staged=True,
                source="inference",
                last_edit_source="inference",
                **values,
            )
            db.add(column)
            await db.flush()
            location = {"schema": item["schema"], "table": item["table"], "column": column_name}
            await change_service.record_change(
                db,
                ctx.ontology_id,
                ChangeAction.UPDATE_COLUMN,
                target_id=column.id,
                set_fields=values,
                location=location,
                source_stage=self.node.value,
            )
            created += 1

            if annotation.question:
                category = QuestionCategory.ENUMERATION if annotation.role == "dimension" else QuestionCategory.BUSINESS_RULES
                _, asked = await raise_question(
                    db,
                    ctx.ontology_id,
                    prompt=annotation.question,
                    category=category,
                    source_stage=self.node.value,
                    source_ref=f"{item['schema']}.{item['table']}.{column_name}",
                    priority=4,
                    affects={"tables": [f"{item['schema']}.{item['table']}"], "columns": [column_name]},
                )
                questions += int(asked)

        if wanted:
            logger.info("%d columns of %s left unannotated: %s", len(wanted), item["table"], ", ".join(wanted.values()))
        return created, questions
