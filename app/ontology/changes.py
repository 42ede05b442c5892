"""Pending-change governance ledger.

Every mutation that should not go live unreviewed is recorded as a
``PendingChange`` carrying a serialized diff::

    {"set": {field: new_value, ...}, "before": {field: old_value, ...}}

Approving applies the diff and marks the change approved as one step: the
apply runs inside a SAVEPOINT, and a failed apply rolls back only the
apply, leaving the change pending with the failure recorded in ``reason``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.catalog.types import ColumnLocation, SchemaSnapshot
from app.core.exceptions import ConflictError, NotFoundError, OntologyError, SchemaMismatchError, ValidationError
from app.core.metrics import CHANGE_REVIEWS
from app.models.column_metadata import ColumnMetadata
from app.models.entity import OntologyEntity
from app.models.glossary_term import GlossaryTerm
from app.models.ontology import Ontology
from app.models.pending_change import PendingChange
from app.ontology import entities as entity_service
from app.ontology import relationships as relationship_service
from app.ontology.provenance import can_modify

logger = logging.getLogger(__name__)


class ChangeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeAction(str, Enum):
    CREATE_ENTITY = "create_entity"
    UPDATE_ENTITY = "update_entity"
    DELETE_ENTITY = "delete_entity"
    CREATE_RELATIONSHIP = "create_relationship"
    UPDATE_RELATIONSHIP = "update_relationship"
    DELETE_RELATIONSHIP = "delete_relationship"
    UPDATE_COLUMN = "update_column"
    CREATE_GLOSSARY_TERM = "create_glossary_term"
    UPDATE_GLOSSARY_TERM = "update_glossary_term"


TARGET_TYPES = {
    ChangeAction.CREATE_ENTITY: "entity",
    ChangeAction.UPDATE_ENTITY: "entity",
    ChangeAction.DELETE_ENTITY: "entity",
    ChangeAction.CREATE_RELATIONSHIP: "relationship",
    ChangeAction.UPDATE_RELATIONSHIP: "relationship",
    ChangeAction.DELETE_RELATIONSHIP: "relationship",
    ChangeAction.UPDATE_COLUMN: "column",
    ChangeAction.CREATE_GLOSSARY_TERM: "glossary_term",
    ChangeAction.UPDATE_GLOSSARY_TERM: "glossary_term",
}

# approve_all order: creates before the changes that depend on them, deletes last
_APPLY_ORDER = {
    ChangeAction.CREATE_ENTITY: 0,
    ChangeAction.CREATE_RELATIONSHIP: 1,
    ChangeAction.CREATE_GLOSSARY_TERM: 2,
    ChangeAction.UPDATE_ENTITY: 3,
    ChangeAction.UPDATE_RELATIONSHIP: 3,
    ChangeAction.UPDATE_COLUMN: 3,
    ChangeAction.UPDATE_GLOSSARY_TERM: 3,
    ChangeAction.DELETE_RELATIONSHIP: 4,
    ChangeAction.DELETE_ENTITY: 5,
}

_COLUMN_FIELDS = ("description", "semantic_type", "role")
_GLOSSARY_FIELDS = ("definition", "sql_pattern", "base_table", "aliases", "output_columns")


@dataclass
class ApproveAllResult:
    applied_count: int = 0
    failed_count: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Recording and lookup
# ---------------------------------------------------------------------------


TARGETED_ACTIONS = frozenset(
    {
        ChangeAction.UPDATE_ENTITY,
        ChangeAction.DELETE_ENTITY,
        ChangeAction.UPDATE_RELATIONSHIP,
        ChangeAction.DELETE_RELATIONSHIP,
        ChangeAction.UPDATE_GLOSSARY_TERM,
    }
)


def coerce_action(action: ChangeAction | str) -> ChangeAction:
    try:
        return ChangeAction(action)
    except ValueError:
        raise ValidationError(f"Unknown change action '{action}'") from None


async def record_change(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    action: ChangeAction | str,
    *,
    target_id: uuid.UUID | None = None,
    set_fields: dict[str, Any] | None = None,
    before: dict[str, Any] | None = None,
    location: dict[str, str] | None = None,
    source_stage: str | None = None,
    source: str = "inference",
) -> PendingChange:
    action = coerce_action(action)
    diff: dict[str, Any] = {"set": set_fields or {}}
    if before:
        diff["before"] = before
    if location:
        diff["location"] = location

    change = PendingChange(
        ontology_id=ontology_id,
        target_type=TARGET_TYPES[action],
        target_id=target_id,
        action=action.value,
        diff=diff,
        source_stage=source_stage,
        source=source,
        status=ChangeStatus.PENDING.value,
    )
    db.add(change)
    await db.flush()
    return change


async def get_change(db: AsyncSession, ontology_id: uuid.UUID, change_id: uuid.UUID) -> PendingChange:
    change = await db.get(PendingChange, change_id)
    if change is None or change.ontology_id != ontology_id:
        raise NotFoundError(f"Pending change {change_id} not found")
    return change


async def list_changes(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    status: str | None = None,
    target_type: str | None = None,
) -> list[PendingChange]:
    stmt = select(PendingChange).where(PendingChange.ontology_id == ontology_id)
    if status:
        try:
            stmt = stmt.where(PendingChange.status == ChangeStatus(status).value)
        except ValueError:
            raise ValidationError(f"Unknown change status '{status}'") from None
    if target_type:
        stmt = stmt.where(PendingChange.target_type == target_type)
    result = await db.execute(stmt.order_by(PendingChange.created_at))
    return list(result.scalars().all())


async def pending_target_ids(
    db: AsyncSession, ontology_id: uuid.UUID, action: ChangeAction, source_stage: str | None = None
) -> set[uuid.UUID]:
    """Targets that already have a pending change of ``action`` (optionally from one stage)."""
    stmt = select(PendingChange.target_id).where(
        PendingChange.ontology_id == ontology_id,
        PendingChange.action == action.value,
        PendingChange.status == ChangeStatus.PENDING.value,
        PendingChange.target_id.is_not(None),
    )
    if source_stage:
        stmt = stmt.where(PendingChange.source_stage == source_stage)
    result = await db.execute(stmt)
    return set(result.scalars().all())


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


async def approve_change(
    db: AsyncSession, ontology_id: uuid.UUID, change_id: uuid.UUID, reviewer: str | None = None
) -> PendingChange:
    """Apply and approve. Re-approving an approved change is a no-op success."""
    change = await get_change(db, ontology_id, change_id)
    if change.status == ChangeStatus.APPROVED.value:
        CHANGE_REVIEWS.labels(action="approve", outcome="noop").inc()
        return change
    if change.status == ChangeStatus.REJECTED.value:
        raise ConflictError(f"Pending change {change_id} was rejected and cannot be approved")

    try:
        async with db.begin_nested():
            await _apply(db, change)
    except (OntologyError, SQLAlchemyError) as exc:
        message = exc.message if isinstance(exc, OntologyError) else str(exc)
        await db.refresh(change)
        change.reason = f"apply failed: {message}"
        await db.flush()
        CHANGE_REVIEWS.labels(action="approve", outcome="failed").inc()
        logger.warning("Pending change %s (%s) failed to apply: %s", change_id, change.action, message)
        if isinstance(exc, OntologyError):
            raise
        raise ConflictError(f"Pending change {change_id} could not be applied: {message}") from exc

    change.status = ChangeStatus.APPROVED.value
    change.reason = None
    change.reviewed_by = reviewer
    change.reviewed_at = datetime.now(timezone.utc)
    await db.flush()
    CHANGE_REVIEWS.labels(action="approve", outcome="applied").inc()
    logger.info("Pending change %s (%s) approved", change_id, change.action)
    return change


async def reject_change(
    db: AsyncSession,
    ontology_id: uuid.UUID,
    change_id: uuid.UUID,
    reason: str | None = None,
    reviewer: str | None = None,
) -> PendingChange:
    """Discard the diff. Staged rows the change would have promoted stay staged."""
    change = await get_change(db, ontology_id, change_id)
    if change.status == ChangeStatus.REJECTED.value:
        return change
    if change.status == ChangeStatus.APPROVED.value:
        raise ConflictError(f"Pending change {change_id} is already approved")

    change.status = ChangeStatus.REJECTED.value
    change.reason = reason
    change.reviewed_by = reviewer
    change.reviewed_at = datetime.now(timezone.utc)
    await db.flush()
    CHANGE_REVIEWS.labels(action="reject", outcome="rejected").inc()
    return change


async def approve_all(db: AsyncSession, ontology_id: uuid.UUID, reviewer: str | None = None) -> ApproveAllResult:
    """Approve every currently pending change, continuing past failures."""
    pending = await list_changes(db, ontology_id, status=ChangeStatus.PENDING.value)
    # list_changes returns creation order; the stable sort keeps it within each action group
    pending.sort(key=lambda c: _APPLY_ORDER.get(ChangeAction(c.action), 9))
    change_ids = [c.id for c in pending]

    result = ApproveAllResult()
    for change_id in change_ids:
        try:
            await approve_change(db, ontology_id, change_id, reviewer=reviewer)
            result.applied_count += 1
        except OntologyError as exc:
            result.failed_count += 1
            result.failures.append({"change_id": str(change_id), "code": exc.code, "message": exc.message})

    logger.info(
        "Approve-all on ontology %s: %d applied, %d failed", ontology_id, result.applied_count, result.failed_count
    )
    return result


# ---------------------------------------------------------------------------
# Apply handlers
# ---------------------------------------------------------------------------


def _guard(obj: Any, change: PendingChange) -> None:
    if not can_modify(obj.last_edit_source, change.source):
        raise ConflictError(
            f"{change.target_type} {obj.id} was last edited by {obj.last_edit_source}; "
            f"a {change.source} change cannot overwrite it"
        )


def _assign(obj: Any, values: dict[str, Any], allowed: tuple[str, ...]) -> None:
    unknown = set(values) - set(allowed)
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
    for key, value in values.items():
        setattr(obj, key, value)


async def _check_locations(db: AsyncSession, ontology_id: uuid.UUID, locations: list[ColumnLocation]) -> None:
    ontology = await db.get(Ontology, ontology_id)
    if ontology is None or not ontology.schema_snapshot:
        return
    snapshot = SchemaSnapshot.from_dict(ontology.schema_snapshot)
    missing = [str(loc) for loc in locations if not snapshot.has_column(loc)]
    if missing:
        raise SchemaMismatchError(f"Not in schema snapshot: {', '.join(missing)}", missing=missing)


def _location(raw: dict[str, Any] | None, what: str) -> ColumnLocation:
    if not raw or not all(raw.get(k) for k in ("schema", "table", "column")):
        raise ValidationError(f"{what} location requires schema, table and column")
    return ColumnLocation(raw["schema"], raw["table"], raw["column"])


async def _live_entity(db: AsyncSession, ontology_id: uuid.UUID, entity_id: uuid.UUID) -> OntologyEntity:
    entity = await entity_service.get_entity(db, ontology_id, entity_id)
    if entity.is_deleted:
        raise ConflictError(f"Entity {entity.name} is deleted")
    if entity.is_staged:
        raise ValidationError(f"Entity {entity.name} must be approved before relationships that use it")
    return entity


async def _apply_create_entity(db: AsyncSession, change: PendingChange) -> None:
    values = dict(change.diff.get("set", {}))
    if change.target_id is not None:
        entity = await entity_service.get_entity(db, change.ontology_id, change.target_id)
        if entity.is_deleted:
            raise ConflictError(f"Entity {entity.name} is deleted")
        entity.is_staged = False
        return

    primary = _location(values.pop("primary", None), "Primary")
    await _check_locations(db, change.ontology_id, [primary])
    name = values.pop("name", "")
    entity, created = await entity_service.upsert_entity(
        db, change.ontology_id, name, primary, staged=False, source=change.source, **values
    )
    if not created and not entity.is_staged:
        raise ConflictError(f"Entity {entity.name} already exists")
    entity.is_staged = False
    change.target_id = entity.id


async def _apply_update_entity(db: AsyncSession, change: PendingChange) -> None:
    entity = await entity_service.get_entity(db, change.ontology_id, change.target_id)
    _guard(entity, change)
    _assign(entity, change.diff.get("set", {}), entity_service.ANNOTATION_FIELDS)
    entity.last_edit_source = change.source


async def _apply_delete_entity(db: AsyncSession, change: PendingChange) -> None:
    entity = await entity_service.get_entity(db, change.ontology_id, change.target_id)
    _guard(entity, change)
    reason = change.diff.get("set", {}).get("reason") or "approved deletion"
    await entity_service.soft_delete_entity(db, change.ontology_id, entity.id, reason, source=change.source)


async def _apply_create_relationship(db: AsyncSession, change: PendingChange) -> None:
    values = change.diff.get("set", {})
    if change.target_id is not None:
        pair = await relationship_service.get_pair(db, change.ontology_id, change.target_id)
        for row in pair.rows:
            await _live_entity(db, change.ontology_id, row.source_entity_id)
            await _live_entity(db, change.ontology_id, row.target_entity_id)
        for row in pair.rows:
            row.is_staged = False
        return

    source_loc = _location(values.get("source"), "Source")
    target_loc = _location(values.get("target"), "Target")
    await _check_locations(db, change.ontology_id, [source_loc, target_loc])

    endpoints = []
    for key in ("source_entity", "target_entity"):
        entity = await entity_service.get_entity_by_name(db, change.ontology_id, values.get(key) or "")
        if entity is None:
            raise NotFoundError(f"Entity {values.get(key)!r} not found")
        endpoints.append(await _live_entity(db, change.ontology_id, entity.id))

    written = await relationship_service.create_pair(
        db,
        change.ontology_id,
        endpoints[0],
        endpoints[1],
        source_loc,
        target_loc,
        cardinality=values.get("cardinality", "N:1"),
        confidence=1.0,
        detection_method="manual",
        staged=False,
        edit_source=change.source,
    )
    for row, key in ((written.forward, "association"), (written.reverse, "reverse_association")):
        row.is_staged = False
        if values.get(key):
            row.association = values[key]
            row.status = "enriched"
    change.target_id = written.pair_id


async def _apply_update_relationship(db: AsyncSession, change: PendingChange) -> None:
    row = await relationship_service.get_relationship(db, change.ontology_id, change.target_id)
    if row.is_deleted:
        raise ConflictError(f"Relationship {row.id} is deleted")
    _guard(row, change)
    values = change.diff.get("set", {})
    _assign(row, values, relationship_service.ANNOTATION_FIELDS)
    if values.get("association"):
        row.status = "enriched"
    row.last_edit_source = change.source


async def _apply_delete_relationship(db: AsyncSession, change: PendingChange) -> None:
    row = await relationship_service.get_relationship(db, change.ontology_id, change.target_id)
    _guard(row, change)
    await relationship_service.delete_direction(db, change.ontology_id, row.id, source=change.source)


async def _apply_update_column(db: AsyncSession, change: PendingChange) -> None:
    if change.target_id is not None:
        column = await db.get(ColumnMetadata, change.target_id)
        if column is None or column.ontology_id != change.ontology_id:
            raise NotFoundError(f"Column metadata {change.target_id} not found")
    else:
        location = _location(change.diff.get("location"), "Column")
        await _check_locations(db, change.ontology_id, [location])
        result = await db.execute(
            select(ColumnMetadata).where(
                ColumnMetadata.ontology_id == change.ontology_id,
                ColumnMetadata.schema_name == location.schema,
                ColumnMetadata.table_name == location.table,
                ColumnMetadata.column_name == location.column,
            )
        )
        column = result.scalar_one_or_none()
        if column is None:
            column = ColumnMetadata(
                ontology_id=change.ontology_id,
                schema_name=location.schema,
                table_name=location.table,
                column_name=location.column,
                source=change.source,
            )
            db.add(column)
            await db.flush()
        change.target_id = column.id

    _guard(column, change)
    _assign(column, change.diff.get("set", {}), _COLUMN_FIELDS)
    column.is_staged = False
    column.last_edit_source = change.source


async def _apply_create_glossary_term(db: AsyncSession, change: PendingChange) -> None:
    if change.target_id is not None:
        term = await db.get(GlossaryTerm, change.target_id)
        if term is None or term.ontology_id != change.ontology_id:
            raise NotFoundError(f"Glossary term {change.target_id} not found")
        term.is_staged = False
        return

    values = dict(change.diff.get("set", {}))
    name = (values.pop("term", "") or "").strip()
    if not name:
        raise ValidationError("Glossary term name is required")
    result = await db.execute(
        select(GlossaryTerm).where(GlossaryTerm.ontology_id == change.ontology_id, GlossaryTerm.term == name)
    )
    if result.scalar_one_or_none() is not None:
        raise ConflictError(f"Glossary term {name!r} already exists")

    term = GlossaryTerm(ontology_id=change.ontology_id, term=name, is_staged=False, source=change.source)
    _assign(term, values, _GLOSSARY_FIELDS)
    term.last_edit_source = change.source
    if term.sql_pattern:
        term.enrichment_status = "enriched"
    db.add(term)
    await db.flush()
    change.target_id = term.id


async def _apply_update_glossary_term(db: AsyncSession, change: PendingChange) -> None:
    term = await db.get(GlossaryTerm, change.target_id)
    if term is None or term.ontology_id != change.ontology_id:
        raise NotFoundError(f"Glossary term {change.target_id} not found")
    _guard(term, change)
    values = change.diff.get("set", {})
    _assign(term, values, _GLOSSARY_FIELDS)
    if values.get("sql_pattern"):
        term.enrichment_status = "enriched"
        term.last_error = None
    term.last_edit_source = change.source


_HANDLERS = {
    ChangeAction.CREATE_ENTITY: _apply_create_entity,
    ChangeAction.UPDATE_ENTITY: _apply_update_entity,
    ChangeAction.DELETE_ENTITY: _apply_delete_entity,
    ChangeAction.CREATE_RELATIONSHIP: _apply_create_relationship,
    ChangeAction.UPDATE_RELATIONSHIP: _apply_update_relationship,
    ChangeAction.DELETE_RELATIONSHIP: _apply_delete_relationship,
    ChangeAction.UPDATE_COLUMN: _apply_update_column,
    ChangeAction.CREATE_GLOSSARY_TERM: _apply_create_glossary_term,
    ChangeAction.UPDATE_GLOSSARY_TERM: _apply_update_glossary_term,
}


async def _apply(db: AsyncSession, change: PendingChange) -> None:
    action = coerce_action(change.action)
    needs_target = action not in (
        ChangeAction.CREATE_ENTITY,
        ChangeAction.CREATE_RELATIONSHIP,
        ChangeAction.UPDATE_COLUMN,
        ChangeAction.CREATE_GLOSSARY_TERM,
    )
    if needs_target and change.target_id is None:
        raise ValidationError(f"{action.value} requires a target id")
    await _HANDLERS[action](db, change)
