"""Domain summary: generated description plus aggregated entity domains."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone

from sqlalchemy import func, select

from app.core.exceptions import GenerationError
from app.generation.parsing import parse_structured
from app.generation.types import GenerationRequest
from app.models.entity import OntologyEntity
from app.models.glossary_term import GlossaryTerm
from app.models.question import OntologyQuestion
from app.models.relationship import EntityRelationship
from app.pipeline import prompts
from app.pipeline.nodes import Capability, DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import load_ontology
from app.schemas.generation import DomainSummaryAnnotation

logger = logging.getLogger(__name__)


class FinalizationExecutor(StageExecutor):
    node = DagNode.FINALIZATION
    requires = frozenset({Capability.GENERATION})

    async def execute(self, ctx: NodeContext) -> NodeResult:
        async with ctx.session_factory() as db:
            rows = await db.execute(
                select(OntologyEntity)
                .where(OntologyEntity.ontology_id == ctx.ontology_id, OntologyEntity.is_deleted.is_(False))
                .order_by(OntologyEntity.name)
            )
            entities = [
                {"name": e.name, "domain": e.domain, "description": e.description} for e in rows.scalars().all()
            ]
            pair_count = await db.scalar(
                select(func.count(func.distinct(EntityRelationship.pair_id))).where(
                    EntityRelationship.ontology_id == ctx.ontology_id, EntityRelationship.is_deleted.is_(False)
                )
            )
            term_rows = await db.execute(
                select(GlossaryTerm.term).where(GlossaryTerm.ontology_id == ctx.ontology_id).order_by(GlossaryTerm.term)
            )
            terms = list(term_rows.scalars().all())
            open_questions = await db.scalar(
                select(func.count())
                .select_from(OntologyQuestion)
                .where(OntologyQuestion.ontology_id == ctx.ontology_id, OntologyQuestion.status == "open")
            )

        async def summarise(_: object) -> DomainSummaryAnnotation:
            response = await ctx.generation.complete(
                GenerationRequest(
                    user_prompt=prompts.summary_prompt(entities, pair_count or 0, terms),
                    system_prompt=prompts.SUMMARY_SYSTEM,
                    model=ctx.settings.generation_model,
                    temperature=ctx.settings.generation_temperature,
                    purpose=self.node.value,
                )
            )
            return parse_structured(response.text, DomainSummaryAnnotation)

        [outcome] = await ctx.pool.run([self.node.value], summarise)
        if not outcome.ok:
            raise GenerationError(f"Domain summary failed: {outcome.error}", raw=outcome.error or "")

        domains: dict[str, list[str]] = defaultdict(list)
        for entity in entities:
            domains[entity["domain"] or "unassigned"].append(entity["name"])

        summary = {
            "description": outcome.value.description,
            "primary_domains": outcome.value.primary_domains,
            "domains": dict(domains),
            "entity_count": len(entities),
            "relationship_pair_count": pair_count or 0,
            "glossary_term_count": len(terms),
            "open_questions": open_questions or 0,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

        async with ctx.session_factory() as db:
            ontology = await load_ontology(db, ctx.ontology_id)
            ontology.domain_summary = summary
            await db.commit()

        await ctx.emit(self.node, 1, 1, "domain summary written")
        return NodeResult(processed=len(entities), details={"domains": len(domains)})
