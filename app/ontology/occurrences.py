"""Derived occurrence view.

Occurrences are computed at read time and never stored: the entity's
primary location, then one entry per non-deleted relationship row whose
target is the entity. Each such entry carries the row's source column
location, and the row's association as its role.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.catalog.types import ColumnLocation
from app.models.entity import OntologyEntity
from app.models.relationship import EntityRelationship
from app.ontology.entities import get_entity
from app.ontology.relationships import source_location

PRIMARY_ROLE = "primary"


@dataclass
class Occurrence:
    location: ColumnLocation
    role: str | None  # "primary" for the anchor; otherwise the inbound row's association (None before enrichment)
    is_primary: bool = False
    relationship_id: uuid.UUID | None = None
    source_entity_id: uuid.UUID | None = None


async def inbound_rows(db: AsyncSession, entity_id: uuid.UUID) -> list[EntityRelationship]:
    result = await db.execute(
        select(EntityRelationship)
        .where(EntityRelationship.target_entity_id == entity_id, EntityRelationship.is_deleted.is_(False))
        .order_by(EntityRelationship.created_at, EntityRelationship.id)
    )
    return list(result.scalars().all())


def build_occurrences(entity: OntologyEntity, rows: list[EntityRelationship]) -> list[Occurrence]:
    occurrences = [
        Occurrence(
            location=ColumnLocation(entity.primary_schema, entity.primary_table, entity.primary_column),
            role=PRIMARY_ROLE,
            is_primary=True,
        )
    ]
    for row in rows:
        occurrences.append(
            Occurrence(
                location=source_location(row),
                role=row.association,
                relationship_id=row.id,
                source_entity_id=row.source_entity_id,
            )
        )
    return occurrences


async def get_occurrences(db: AsyncSession, ontology_id: uuid.UUID, entity_id: uuid.UUID) -> list[Occurrence]:
    entity = await get_entity(db, ontology_id, entity_id)
    return build_occurrences(entity, await inbound_rows(db, entity.id))
