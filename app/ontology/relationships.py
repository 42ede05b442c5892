"""Bidirectional relationship pairs.

One logical foreign key is two rows sharing a ``pair_id``. The forward row
runs from the FK side to the referenced side; the reverse row swaps both
entities and both column locations. Each row is found by its full endpoint
key, so re-running discovery is safe and a pair whose reverse write was
lost is completed instead of duplicated.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.catalog.types import ColumnLocation
from app.core.exceptions import NotFoundError, ValidationError
from app.models.entity import OntologyEntity
from app.models.relationship import EntityRelationship

logger = logging.getLogger(__name__)

_INVERSE_CARDINALITY = {"N:1": "1:N", "1:N": "N:1", "1:1": "1:1", "N:M": "N:M", "unknown": "unknown"}

ANNOTATION_FIELDS = ("association", "description", "cardinality", "confidence")


@dataclass
class PairWrite:
    """Result of ``create_pair``."""

    pair_id: uuid.UUID
    forward: EntityRelationship
    reverse: EntityRelationship
    created_forward: bool
    created_reverse: bool

    @property
    def created(self) -> bool:
        return self.created_forward or self.created_reverse


@dataclass
class RelationshipPair:
    pair_id: uuid.UUID
    forward: EntityRelationship | None
    reverse: EntityRelationship | None

    @property
    def rows(self) -> list[EntityRelationship]:
        return [r for r in (self.forward, self.reverse) if r is not None]


def inverse_cardinality(cardinality: str) -> str:
    return _INVERSE_CARDINALITY.get(cardinality, "unknown")


def source_location(row: EntityRelationship) -> ColumnLocation:
    return ColumnLocation(row.source_schema, row.source_table, row.source_column)


def target_location(row: EntityRelationship) -> ColumnLocation:
    return ColumnLocation(row.target_schema, row.target_table, row.target_column)


async def find_row(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    source_entity_id: uuid.UUID,
    target_entity_id: uuid.UUID,
    source: ColumnLocation,
    target: ColumnLocation,
) -> EntityRelationship | None:
    """Look up a row by its full endpoint key, soft-deleted rows included."""
    result = await db.execute(
        select(EntityRelationship).where(
            EntityRelationship.ontology_id == ontology_id,
            EntityRelationship.source_entity_id == source_entity_id,
            EntityRelationship.target_entity_id == target_entity_id,
            EntityRelationship.source_schema == source.schema,
            EntityRelationship.source_table == source.table,
            EntityRelationship.source_column == source.column,
            EntityRelationship.target_schema == target.schema,
            EntityRelationship.target_table == target.table,
            EntityRelationship.target_column == target.column,
        )
    )
    return result.scalar_one_or_none()


async def create_pair(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    source_entity: OntologyEntity,
    target_entity: OntologyEntity,
    source: ColumnLocation,
    target: ColumnLocation,
    *,
    cardinality: str = "N:1",
    confidence: float = 1.0,
    detection_method: str = "foreign_key",
    staged: bool = True,
    edit_source: str = "inference",
) -> PairWrite:
    """Write the forward row, then the reverse row.

    Existing rows (including soft-deleted ones) are reused, never
    duplicated; a missing direction is created with the partner's pair id.
    """
    if source == target:
        raise ValidationError(f"Relationship endpoints must differ: {source}")

    forward = await find_row(db, ontology_id, source_entity.id, target_entity.id, source, target)
    reverse = await find_row(db, ontology_id, target_entity.id, source_entity.id, target, source)

    if forward is not None and reverse is not None:
        return PairWrite(forward.pair_id, forward, reverse, False, False)

    pair_id = forward.pair_id if forward is not None else reverse.pair_id if reverse is not None else uuid.uuid4()
    common = {
        "ontology_id": ontology_id,
        "pair_id": pair_id,
        "confidence": confidence,
        "detection_method": detection_method,
        "is_staged": staged,
        "source": edit_source,
        "last_edit_source": edit_source,
    }

    created_forward = created_reverse = False
    if forward is None:
        forward = EntityRelationship(
            direction="forward",
            source_entity_id=source_entity.id,
            target_entity_id=target_entity.id,
            source_schema=source.schema,
            source_table=source.table,
            source_column=source.column,
            target_schema=target.schema,
            target_table=target.table,
            target_column=target.column,
            cardinality=cardinality,
            **common,
        )
        db.add(forward)
        await db.flush()
        created_forward = True

    if reverse is None:
        reverse = EntityRelationship(
            direction="reverse",
            source_entity_id=target_entity.id,
            target_entity_id=source_entity.id,
            source_schema=target.schema,
            source_table=target.table,
            source_column=target.column,
            target_schema=source.schema,
            target_table=source.table,
            target_column=source.column,
            cardinality=inverse_cardinality(forward.cardinality),
            **common,
        )
        db.add(reverse)
        await db.flush()
        created_reverse = True
        if not created_forward:
            logger.warning("Completed missing reverse row for pair %s (%s -> %s)", pair_id, source, target)

    return PairWrite(pair_id, forward, reverse, created_forward, created_reverse)


async def get_relationship(db: AsyncSession, ontology_id: uuid.UUID, relationship_id: uuid.UUID) -> EntityRelationship:
    row = await db.get(EntityRelationship, relationship_id)
    if row is None or row.ontology_id != ontology_id:
        raise NotFoundError(f"Relationship {relationship_id} not found")
    return row


async def get_pair(db: AsyncSession, ontology_id: uuid.UUID, pair_or_row_id: uuid.UUID) -> RelationshipPair:
    """Both directions of a pair, addressed by pair id or by either row id."""
    rows = await _pair_rows(db, ontology_id, pair_or_row_id)
    if not rows:
        row = await db.get(EntityRelationship, pair_or_row_id)
        if row is None or row.ontology_id != ontology_id:
            raise NotFoundError(f"Relationship pair {pair_or_row_id} not found")
        rows = await _pair_rows(db, ontology_id, row.pair_id)

    forward = next((r for r in rows if r.direction == "forward"), None)
    reverse = next((r for r in rows if r.direction == "reverse"), None)
    return RelationshipPair(pair_id=rows[0].pair_id, forward=forward, reverse=reverse)


async def _pair_rows(db: AsyncSession, ontology_id: uuid.UUID, pair_id: uuid.UUID) -> list[EntityRelationship]:
    result = await db.execute(
        select(EntityRelationship).where(
            EntityRelationship.ontology_id == ontology_id, EntityRelationship.pair_id == pair_id
        )
    )
    return list(result.scalars().all())


async def list_relationships(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    entity_id: uuid.UUID | None = None,
    include_deleted: bool = False,
) -> list[EntityRelationship]:
    stmt = select(EntityRelationship).where(EntityRelationship.ontology_id == ontology_id)
    if entity_id is not None:
        stmt = stmt.where(
            or_(EntityRelationship.source_entity_id == entity_id, EntityRelationship.target_entity_id == entity_id)
        )
    if not include_deleted:
        stmt = stmt.where(EntityRelationship.is_deleted.is_(False))
    result = await db.execute(stmt.order_by(EntityRelationship.created_at, EntityRelationship.direction))
    return list(result.scalars().all())


async def delete_direction(
    db: AsyncSession, ontology_id: uuid.UUID, relationship_id: uuid.UUID, source: str = "manual"
) -> EntityRelationship:
    """Soft-delete one direction. The partner row is left untouched."""
    row = await get_relationship(db, ontology_id, relationship_id)
    if not row.is_deleted:
        row.is_deleted = True
        row.last_edit_source = source
        await db.flush()
    return row
