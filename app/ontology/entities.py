"""Entity persistence: upsert by name, lookup and soft delete."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.catalog.types import ColumnLocation
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.entity import OntologyEntity
from app.models.relationship import EntityRelationship

logger = logging.getLogger(__name__)

# Fields an update may touch; identity (name, primary location) changes go through recreate
ANNOTATION_FIELDS = ("description", "business_name", "domain", "aliases", "confidence")


async def get_entity(db: AsyncSession, ontology_id: uuid.UUID, entity_id: uuid.UUID) -> OntologyEntity:
    entity = await db.get(OntologyEntity, entity_id)
    if entity is None or entity.ontology_id != ontology_id:
        raise NotFoundError(f"Entity {entity_id} not found")
    return entity


async def get_entity_by_name(db: AsyncSession, ontology_id: uuid.UUID, name: str) -> OntologyEntity | None:
    result = await db.execute(
        select(OntologyEntity).where(OntologyEntity.ontology_id == ontology_id, OntologyEntity.name == name)
    )
    return result.scalar_one_or_none()


async def list_entities(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    include_deleted: bool = False,
    include_staged: bool = True,
) -> list[OntologyEntity]:
    stmt = select(OntologyEntity).where(OntologyEntity.ontology_id == ontology_id)
    if not include_deleted:
        stmt = stmt.where(OntologyEntity.is_deleted.is_(False))
    if not include_staged:
        stmt = stmt.where(OntologyEntity.is_staged.is_(False))
    result = await db.execute(stmt.order_by(OntologyEntity.name))
    return list(result.scalars().all())


async def upsert_entity(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    name: str,
    primary: ColumnLocation,
    *,
    staged: bool = True,
    source: str = "inference",
    **fields: Any,
) -> tuple[OntologyEntity, bool]:
    """Insert or update the entity keyed by ``name``. Returns ``(entity, created)``.

    An existing entity keeps its primary location; only annotation fields
    that are still empty are filled. A soft-deleted entity is not revived.
    """
    name = name.strip()
    if not name:
        raise ValidationError("Entity name is required")
    unknown = set(fields) - set(ANNOTATION_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown entity fields: {', '.join(sorted(unknown))}")

    existing = await get_entity_by_name(db, ontology_id, name)
    if existing is not None:
        for key, value in fields.items():
            if value is not None and getattr(existing, key) in (None, [], ""):
                setattr(existing, key, value)
        return existing, False

    aliases = fields.pop("aliases", None) or []
    entity = OntologyEntity(
        ontology_id=ontology_id,
        name=name,
        primary_schema=primary.schema,
        primary_table=primary.table,
        primary_column=primary.column,
        is_staged=staged,
        source=source,
        last_edit_source=source,
        aliases=aliases,
        **fields,
    )
    db.add(entity)
    await db.flush()
    logger.debug("Entity %s created at %s", name, primary)
    return entity, True


async def count_live_references(db: AsyncSession, entity_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(EntityRelationship)
        .where(
            EntityRelationship.is_deleted.is_(False),
            or_(
                EntityRelationship.source_entity_id == entity_id,
                EntityRelationship.target_entity_id == entity_id,
            ),
        )
    )
    return int(result.scalar_one())


async def soft_delete_entity(
    db: AsyncSession, ontology_id: uuid.UUID, entity_id: uuid.UUID, reason: str, source: str = "manual"
) -> OntologyEntity:
    """Mark the entity deleted. Refused while any non-deleted relationship references it."""
    entity = await get_entity(db, ontology_id, entity_id)
    if entity.is_deleted:
        return entity
    references = await count_live_references(db, entity_id)
    if references:
        raise ConflictError(f"Entity {entity.name} is referenced by {references} relationship rows; delete them first")
    entity.is_deleted = True
    entity.deletion_reason = reason or None
    entity.last_edit_source = source
    await db.flush()
    logger.info("Entity %s soft-deleted: %s", entity.name, reason)
    return entity
