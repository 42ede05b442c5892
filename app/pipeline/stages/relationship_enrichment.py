"""Generation-backed relationship labelling.

Each direction of a pair is labelled by its own call, so the two rows may
receive asymmetric associations ("placed_by" vs "places").
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from app.generation.parsing import parse_structured
from app.generation.types import GenerationRequest
from app.models.entity import OntologyEntity
from app.models.relationship import EntityRelationship
from app.ontology import changes as change_service
from app.ontology.changes import ChangeAction
from app.ontology.questions import QuestionCategory, raise_question
from app.pipeline import prompts
from app.pipeline.nodes import Capability, DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import raise_for_failures
from app.schemas.generation import RelationshipAnnotation

logger = logging.getLogger(__name__)


class RelationshipEnrichmentExecutor(StageExecutor):
    node = DagNode.RELATIONSHIP_ENRICHMENT
    requires = frozenset({Capability.GENERATION})

    async def execute(self, ctx: NodeContext) -> NodeResult:
        async with ctx.session_factory() as db:
            pending = await change_service.pending_target_ids(
                db, ctx.ontology_id, ChangeAction.UPDATE_RELATIONSHIP, source_stage=self.node.value
            )
            names = await db.execute(
                select(OntologyEntity.id, OntologyEntity.name).where(OntologyEntity.ontology_id == ctx.ontology_id)
            )
            entity_names = dict(names.all())
            rows = await db.execute(
                select(EntityRelationship)
                .where(
                    EntityRelationship.ontology_id == ctx.ontology_id,
                    EntityRelationship.is_deleted.is_(False),
                    EntityRelationship.association.is_(None),
                )
                .order_by(EntityRelationship.created_at, EntityRelationship.direction)
            )
            batch = [
                {
                    "id": r.id,
                    "source_entity": entity_names.get(r.source_entity_id, "?"),
                    "target_entity": entity_names.get(r.target_entity_id, "?"),
                    "source_location": f"{r.source_schema}.{r.source_table}.{r.source_column}",
                    "target_location": f"{r.target_schema}.{r.target_table}.{r.target_column}",
                    "cardinality": r.cardinality,
                }
                for r in rows.scalars().all()
                if r.id not in pending
            ]

        await ctx.emit(self.node, 0, len(batch), "labelling relationship directions")
        outcomes = await ctx.pool.run(batch, lambda item: self._label(ctx, item))

        result = NodeResult(processed=len(batch))
        async with ctx.session_factory() as db:
            for outcome in outcomes:
                if not outcome.ok:
                    result.failed += 1
                    logger.warning(
                        "Relationship %s -> %s labelling failed: %s",
                        outcome.item["source_entity"],
                        outcome.item["target_entity"],
                        outcome.error,
                    )
                    continue
                result.questions += await self._persist(ctx, db, outcome.item, outcome.value)
                result.created += 1
            await db.commit()

        await ctx.emit(self.node, len(batch), len(batch), f"{result.created} labelled, {result.failed} failed")
        raise_for_failures(self.node.value, outcomes)
        return result

    async def _label(self, ctx: NodeContext, item: dict[str, Any]) -> RelationshipAnnotation:
        response = await ctx.generation.complete(
            GenerationRequest(
                user_prompt=prompts.relationship_prompt(item),
                system_prompt=prompts.RELATIONSHIP_SYSTEM,
                model=ctx.settings.generation_model,
                temperature=ctx.settings.generation_temperature,
                purpose=self.node.value,
            )
        )
        return parse_structured(response.text, RelationshipAnnotation)

    async def _persist(self, ctx: NodeContext, db, item: dict[str, Any], annotation: RelationshipAnnotation) -> int:
        row = await db.get(EntityRelationship, item["id"])
        if row is None or row.is_deleted:
            return 0
        values = {"association": annotation.association, "description": annotation.description}
        if row.is_staged:
            row.association = annotation.association
            row.description = annotation.description
            row.status = "enriched"
        else:
            await change_service.record_change(
                db,
                ctx.ontology_id,
                ChangeAction.UPDATE_RELATIONSHIP,
                target_id=row.id,
                set_fields=values,
                before={"association": row.association, "description": row.description},
                source_stage=self.node.value,
            )

        if annotation.question or annotation.confidence < ctx.settings.question_confidence_threshold:
            prompt = annotation.question or (
                f"How should the relationship from {item['source_entity']} to {item['target_entity']} "
                f"({item['source_location']} -> {item['target_location']}) be described? "
                f"Proposed: {annotation.association}"
            )
            _, created = await raise_question(
                db,
                ctx.ontology_id,
                prompt=prompt,
                category=QuestionCategory.RELATIONSHIP,
                source_stage=self.node.value,
                source_ref=item["source_location"],
                priority=3,
                affects={"columns": [item["source_location"], item["target_location"]]},
            )
            return int(created)
        return 0
