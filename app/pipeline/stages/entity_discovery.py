"""Deterministic entity discovery.

One entity per table with an identifier column: the single-column primary
key, or failing that a column named ``id`` / ``<singular>_id``. Tables with
a composite key (junction tables) produce no entity. Only the canonical
primary location is written; occurrences are derived later.
"""

from __future__ import annotations

import logging

from app.catalog.types import TableInfo
from app.ontology import changes as change_service
from app.ontology import entities as entity_service
from app.ontology.changes import ChangeAction
from app.ontology.questions import QuestionCategory, raise_question
from app.pipeline.nodes import DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import entity_name_for_table, load_snapshot, singularize

logger = logging.getLogger(__name__)


def identifier_column(table: TableInfo) -> str | None:
    pk = table.primary_key_columns
    if len(pk) == 1:
        return pk[0]
    if len(pk) > 1:
        return None
    for candidate in ("id", f"{singularize(table.name)}_id"):
        col = table.column(candidate)
        if col is not None:
            return col.name
    return None


class EntityDiscoveryExecutor(StageExecutor):
    node = DagNode.ENTITY_DISCOVERY

    async def execute(self, ctx: NodeContext) -> NodeResult:
        result = NodeResult()
        async with ctx.session_factory() as db:
            snapshot = await load_snapshot(db, ctx.ontology_id)
            total = len(snapshot.tables)

            for index, table in enumerate(snapshot.tables, start=1):
                result.processed += 1
                column = identifier_column(table)
                if column is None:
                    if not table.primary_key_columns:
                        _, created = await raise_question(
                            db,
                            ctx.ontology_id,
                            prompt=f"Table {table.qualified_name} has no primary key. Which column identifies a row?",
                            category=QuestionCategory.DATA_QUALITY,
                            source_stage=self.node.value,
                            source_ref=table.qualified_name,
                            priority=3,
                            affects={"tables": [table.qualified_name], "columns": []},
                        )
                        result.questions += int(created)
                    continue

                location = table.location(column)
                name = entity_name_for_table(table.name)
                entity, created = await entity_service.upsert_entity(db, ctx.ontology_id, name, location)
                if created:
                    result.created += 1
                    await change_service.record_change(
                        db,
                        ctx.ontology_id,
                        ChangeAction.CREATE_ENTITY,
                        target_id=entity.id,
                        set_fields={"name": name, "primary": location.to_dict()},
                        source_stage=self.node.value,
                    )
                elif (entity.primary_schema, entity.primary_table) != (table.schema, table.name):
                    # Same concept name from two tables, e.g. sales.orders and archive.orders
                    _, asked = await raise_question(
                        db,
                        ctx.ontology_id,
                        prompt=(
                            f"Tables {entity.primary_schema}.{entity.primary_table} and {table.qualified_name} "
                            f"both map to entity {name}. Which one is canonical?"
                        ),
                        category=QuestionCategory.TERMINOLOGY,
                        source_stage=self.node.value,
                        source_ref=table.qualified_name,
                        priority=2,
                        affects={"tables": [f"{entity.primary_schema}.{entity.primary_table}", table.qualified_name]},
                    )
                    result.questions += int(asked)

                if index % 50 == 0:
                    await ctx.emit(self.node, index, total)

            await db.commit()

        await ctx.emit(self.node, result.processed, result.processed, f"{result.created} entities created")
        return result
