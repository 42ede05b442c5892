"""Glossary term discovery.

One generation call proposes business terms for the modelled domain.
Proposals are deduplicated by name (case-insensitive) against existing
terms and each other; names that look like test or placeholder data are
dropped. New terms are staged with a ``create_glossary_term`` change.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import select

from app.core.exceptions import GenerationError
from app.generation.parsing import parse_structured
from app.generation.types import GenerationRequest
from app.models.entity import OntologyEntity
from app.models.glossary_term import GlossaryTerm
from app.ontology import changes as change_service
from app.ontology.changes import ChangeAction
from app.pipeline import prompts
from app.pipeline.nodes import Capability, DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import load_snapshot
from app.schemas.generation import GlossarySuggestions

logger = logging.getLogger(__name__)

_PLACEHOLDER_TERM = re.compile(
    r"^(test|uitest|debug|todo|fixme|dummy|sample|example)|test$|\d{4}$",
    re.IGNORECASE,
)


def is_placeholder_term(name: str) -> bool:
    return bool(_PLACEHOLDER_TERM.search(name.strip()))


class GlossaryDiscoveryExecutor(StageExecutor):
    node = DagNode.GLOSSARY_DISCOVERY
    requires = frozenset({Capability.GENERATION})

    async def execute(self, ctx: NodeContext) -> NodeResult:
        async with ctx.session_factory() as db:
            snapshot = await load_snapshot(db, ctx.ontology_id)
            rows = await db.execute(
                select(OntologyEntity).where(
                    OntologyEntity.ontology_id == ctx.ontology_id, OntologyEntity.is_deleted.is_(False)
                )
            )
            entities = [
                {"name": e.name, "primary_table": e.primary_table, "description": e.description}
                for e in rows.scalars().all()
            ]
            existing_rows = await db.execute(select(GlossaryTerm.term).where(GlossaryTerm.ontology_id == ctx.ontology_id))
            existing = list(existing_rows.scalars().all())

        if not entities:
            logger.info("No entities for ontology %s; skipping glossary discovery", ctx.ontology_id)
            return NodeResult(details={"skipped": "no entities"})

        async def suggest(_: object) -> GlossarySuggestions:
            response = await ctx.generation.complete(
                GenerationRequest(
                    user_prompt=prompts.glossary_prompt(entities, snapshot, existing),
                    system_prompt=prompts.GLOSSARY_SYSTEM,
                    model=ctx.settings.generation_model,
                    temperature=ctx.settings.generation_temperature,
                    max_tokens=ctx.settings.generation_max_tokens,
                    purpose=self.node.value,
                )
            )
            return parse_structured(response.text, GlossarySuggestions)

        [outcome] = await ctx.pool.run([self.node.value], suggest)
        if not outcome.ok:
            raise GenerationError(f"Glossary discovery failed: {outcome.error}", raw=outcome.error or "")

        seen = {name.lower() for name in existing}
        result = NodeResult(processed=len(outcome.value.terms))
        async with ctx.session_factory() as db:
            for suggestion in outcome.value.terms:
                name = suggestion.term.strip()
                if name.lower() in seen or is_placeholder_term(name):
                    continue
                seen.add(name.lower())
                term = GlossaryTerm(
                    ontology_id=ctx.ontology_id,
                    term=name,
                    definition=suggestion.definition.strip(),
                    aliases=[a for a in suggestion.aliases if a.strip()],
                    enrichment_status="pending",
                    is_staged=True,
                    source="inference",
                    last_edit_source="inference",
                )
                db.add(term)
                await db.flush()
                await change_service.record_change(
                    db,
                    ctx.ontology_id,
                    ChangeAction.CREATE_GLOSSARY_TERM,
                    target_id=term.id,
                    set_fields={"term": name, "definition": term.definition, "aliases": term.aliases},
                    source_stage=self.node.value,
                )
                result.created += 1
            await db.commit()

        await ctx.emit(self.node, result.processed, result.processed, f"{result.created} terms discovered")
        return result
