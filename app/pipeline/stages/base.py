"""Helpers shared by stage executors."""

from __future__ import annotations

import re
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.catalog.types import SchemaSnapshot
from app.core.exceptions import GenerationError, NotFoundError, ValidationError
from app.generation.types import CallOutcome
from app.models.ontology import Ontology

_IRREGULAR = {"people": "person", "children": "child", "men": "man", "women": "woman", "data": "data"}


def singularize(word: str) -> str:
    lowered = word.lower()
    if lowered in _IRREGULAR:
        return _IRREGULAR[lowered]
    if lowered.endswith("ies") and len(lowered) > 3:
        return word[:-3] + "y"
    if lowered.endswith(("sses", "xes", "ches", "shes", "zes")):
        return word[:-2]
    if lowered.endswith("s") and not lowered.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def entity_name_for_table(table_name: str) -> str:
    """``order_items`` -> ``OrderItem``; ``users`` -> ``User``."""
    parts = [p for p in re.split(r"[_\-\s]+", table_name) if p]
    if not parts:
        return table_name
    parts[-1] = singularize(parts[-1])
    return "".join(p[:1].upper() + p[1:].lower() for p in parts)


async def load_ontology(db: AsyncSession, ontology_id: uuid.UUID) -> Ontology:
    ontology = await db.get(Ontology, ontology_id)
    if ontology is None:
        raise NotFoundError(f"Ontology {ontology_id} not found")
    return ontology


async def load_snapshot(db: AsyncSession, ontology_id: uuid.UUID) -> SchemaSnapshot:
    ontology = await load_ontology(db, ontology_id)
    if not ontology.schema_snapshot:
        raise ValidationError("Schema snapshot has not been captured")
    return SchemaSnapshot.from_dict(ontology.schema_snapshot)


def raise_for_failures(node: str, outcomes: list[CallOutcome]) -> None:
    """Fail the node when any call failed; successes are already persisted."""
    failed = [o for o in outcomes if not o.ok]
    if failed:
        raise GenerationError(
            f"{node}: {len(failed)} of {len(outcomes)} generation calls failed; first error: {failed[0].error}",
            raw=failed[0].error or "",
        )
