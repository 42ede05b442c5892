"""Deterministic relationship discovery.

Candidates come from declared foreign keys (confidence 1.0) and from
``<name>_id`` columns whose stem names another table's single-column
primary key (confidence 0.7, with a question asking a human to confirm).
Each candidate is written as a pair: forward row, then reverse row.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import select

from app.catalog.types import ColumnLocation, SchemaSnapshot, TableInfo
from app.models.entity import OntologyEntity
from app.models.pending_change import PendingChange
from app.ontology import changes as change_service
from app.ontology import relationships as relationship_service
from app.ontology.changes import ChangeAction
from app.ontology.questions import QuestionCategory, raise_question
from app.pipeline.nodes import DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import load_snapshot, singularize

logger = logging.getLogger(__name__)

FK_CONFIDENCE = 1.0
PK_MATCH_CONFIDENCE = 0.7


def forward_cardinality(table: TableInfo, column: str) -> str:
    """A reference held in the table's own single-column key is one-to-one."""
    return "1:1" if table.primary_key_columns == [column] else "N:1"


def _pk_match_target(snapshot: SchemaSnapshot, table: TableInfo, column: str) -> TableInfo | None:
    if not column.lower().endswith("_id") or len(column) <= 3:
        return None
    stem = column[:-3].lower()
    for candidate in snapshot.tables:
        if len(candidate.primary_key_columns) != 1:
            continue
        if stem in (candidate.name.lower(), singularize(candidate.name).lower()):
            if candidate is table and candidate.primary_key_columns[0] == column:
                return None
            return candidate
    return None


class RelationshipDiscoveryExecutor(StageExecutor):
    node = DagNode.RELATIONSHIP_DISCOVERY

    async def execute(self, ctx: NodeContext) -> NodeResult:
        result = NodeResult()
        async with ctx.session_factory() as db:
            snapshot = await load_snapshot(db, ctx.ontology_id)
            rows = await db.execute(
                select(OntologyEntity).where(
                    OntologyEntity.ontology_id == ctx.ontology_id, OntologyEntity.is_deleted.is_(False)
                )
            )
            by_table = {(e.primary_schema, e.primary_table): e for e in rows.scalars().all()}
            recorded = await self._pairs_with_changes(db, ctx.ontology_id)

            async def write(
                source_loc: ColumnLocation, target_loc: ColumnLocation, method: str, confidence: float, cardinality: str
            ):
                source_entity = by_table.get((source_loc.schema, source_loc.table))
                target_entity = by_table.get((target_loc.schema, target_loc.table))
                if source_entity is None or target_entity is None:
                    logger.debug("Skipping %s -> %s: no entity on one side", source_loc, target_loc)
                    return None
                written = await relationship_service.create_pair(
                    db,
                    ctx.ontology_id,
                    source_entity,
                    target_entity,
                    source_loc,
                    target_loc,
                    cardinality=cardinality,
                    confidence=confidence,
                    detection_method=method,
                )
                result.processed += 1
                if written.created:
                    result.created += 1
                if written.pair_id not in recorded:
                    await change_service.record_change(
                        db,
                        ctx.ontology_id,
                        ChangeAction.CREATE_RELATIONSHIP,
                        target_id=written.pair_id,
                        set_fields={
                            "source_entity": source_entity.name,
                            "target_entity": target_entity.name,
                            "source": source_loc.to_dict(),
                            "target": target_loc.to_dict(),
                            "cardinality": cardinality,
                            "detection_method": method,
                        },
                        source_stage=self.node.value,
                    )
                    recorded.add(written.pair_id)
                return written

            for table in snapshot.tables:
                fk_columns: set[str] = set()
                for fk in table.foreign_keys:
                    fk_columns.update(fk.columns)
                    if len(fk.columns) != 1:
                        _, asked = await raise_question(
                            db,
                            ctx.ontology_id,
                            prompt=(
                                f"Composite foreign key {table.qualified_name}({', '.join(fk.columns)}) -> "
                                f"{fk.referred_schema}.{fk.referred_table}: which entity relationship does it express?"
                            ),
                            category=QuestionCategory.RELATIONSHIP,
                            source_stage=self.node.value,
                            source_ref=table.qualified_name,
                            priority=3,
                        )
                        result.questions += int(asked)
                        continue
                    await write(
                        table.location(fk.columns[0]),
                        ColumnLocation(fk.referred_schema, fk.referred_table, fk.referred_columns[0]),
                        "foreign_key",
                        FK_CONFIDENCE,
                        forward_cardinality(table, fk.columns[0]),
                    )

                for col in table.columns:
                    if col.name in fk_columns or col.is_primary_key:
                        continue
                    target = _pk_match_target(snapshot, table, col.name)
                    if target is None:
                        continue
                    target_loc = target.location(target.primary_key_columns[0])
                    written = await write(table.location(col.name), target_loc, "pk_match", PK_MATCH_CONFIDENCE, "N:1")
                    if written is not None and PK_MATCH_CONFIDENCE < ctx.settings.question_confidence_threshold:
                        _, asked = await raise_question(
                            db,
                            ctx.ontology_id,
                            prompt=(
                                f"Does {table.qualified_name}.{col.name} reference {target_loc}? "
                                "No foreign key constraint declares it."
                            ),
                            category=QuestionCategory.RELATIONSHIP,
                            source_stage=self.node.value,
                            source_ref=f"{table.qualified_name}.{col.name}",
                            priority=2,
                            affects={"tables": [table.qualified_name, target.qualified_name], "columns": [str(target_loc)]},
                        )
                        result.questions += int(asked)

            await db.commit()

        await ctx.emit(self.node, result.processed, result.processed, f"{result.created} pairs written")
        return result

    @staticmethod
    async def _pairs_with_changes(db, ontology_id: uuid.UUID) -> set[uuid.UUID]:
        rows = await db.execute(
            select(PendingChange.target_id).where(
                PendingChange.ontology_id == ontology_id,
                PendingChange.action == ChangeAction.CREATE_RELATIONSHIP.value,
                PendingChange.target_id.is_not(None),
            )
        )
        return set(rows.scalars().all())
