"""Generation-backed entity annotation.

Batches entities that still lack a description and have no pending
annotation from this stage. Staged entities are annotated in place (their
create change is still under review); live entities get an
``update_entity`` pending change instead.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from app.catalog.types import SchemaSnapshot
from app.generation.parsing import parse_structured
from app.generation.types import GenerationRequest
from app.models.entity import OntologyEntity
from app.ontology import changes as change_service
from app.ontology.changes import ChangeAction
from app.ontology.questions import QuestionCategory, raise_question
from app.pipeline import prompts
from app.pipeline.nodes import Capability, DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import load_snapshot, raise_for_failures
from app.schemas.generation import EntityAnnotation

logger = logging.getLogger(__name__)


class EntityEnrichmentExecutor(StageExecutor):
    node = DagNode.ENTITY_ENRICHMENT
    requires = frozenset({Capability.GENERATION})

    async def execute(self, ctx: NodeContext) -> NodeResult:
        async with ctx.session_factory() as db:
            snapshot = await load_snapshot(db, ctx.ontology_id)
            pending = await change_service.pending_target_ids(
                db, ctx.ontology_id, ChangeAction.UPDATE_ENTITY, source_stage=self.node.value
            )
            rows = await db.execute(
                select(OntologyEntity).where(
                    OntologyEntity.ontology_id == ctx.ontology_id,
                    OntologyEntity.is_deleted.is_(False),
                    OntologyEntity.description.is_(None),
                )
            )
            batch = [
                {
                    "id": e.id,
                    "name": e.name,
                    "primary": f"{e.primary_schema}.{e.primary_table}.{e.primary_column}",
                    "schema": e.primary_schema,
                    "table": e.primary_table,
                }
                for e in rows.scalars().all()
                if e.id not in pending
            ]

        await ctx.emit(self.node, 0, len(batch), "annotating entities")
        outcomes = await ctx.pool.run(batch, lambda item: self._annotate(ctx, snapshot, item))

        result = NodeResult(processed=len(batch))
        async with ctx.session_factory() as db:
            for outcome in outcomes:
                if not outcome.ok:
                    result.failed += 1
                    logger.warning("Entity %s annotation failed: %s", outcome.item["name"], outcome.error)
                    continue
                result.questions += await self._persist(ctx, db, outcome.item, outcome.value)
                result.created += 1
            await db.commit()

        await ctx.emit(self.node, len(batch), len(batch), f"{result.created} annotated, {result.failed} failed")
        raise_for_failures(self.node.value, outcomes)
        return result

    async def _annotate(self, ctx: NodeContext, snapshot: SchemaSnapshot, item: dict[str, Any]) -> EntityAnnotation:
        table = snapshot.table(item["schema"], item["table"])
        response = await ctx.generation.complete(
            GenerationRequest(
                user_prompt=prompts.entity_prompt(item, table),
                system_prompt=prompts.ENTITY_SYSTEM,
                model=ctx.settings.generation_model,
                temperature=ctx.settings.generation_temperature,
                purpose=self.node.value,
            )
        )
        return parse_structured(response.text, EntityAnnotation)

    async def _persist(self, ctx: NodeContext, db, item: dict[str, Any], annotation: EntityAnnotation) -> int:
        entity = await db.get(OntologyEntity, item["id"])
        if entity is None or entity.is_deleted:
            return 0
        values = {
            "business_name": annotation.business_name,
            "description": annotation.description,
            "domain": annotation.domain,
            "aliases": annotation.aliases,
            "confidence": annotation.confidence,
        }
        if entity.is_staged:
            for key, value in values.items():
                setattr(entity, key, value)
        else:
            await change_service.record_change(
                db,
                ctx.ontology_id,
                ChangeAction.UPDATE_ENTITY,
                target_id=entity.id,
                set_fields=values,
                before={key: getattr(entity, key) for key in values},
                source_stage=self.node.value,
            )

        questions = 0
        if annotation.question or annotation.confidence < ctx.settings.question_confidence_threshold:
            prompt = annotation.question or f"What does the entity {entity.name} ({entity.primary_table}) represent?"
            _, created = await raise_question(
                db,
                ctx.ontology_id,
                prompt=prompt,
                category=QuestionCategory.TERMINOLOGY,
                source_stage=self.node.value,
                source_ref=f"{entity.primary_schema}.{entity.primary_table}",
                priority=3,
                affects={"tables": [f"{entity.primary_schema}.{entity.primary_table}"], "columns": []},
            )
            questions += int(created)
        return questions
