from __future__ import annotations

import logging

from app.core.exceptions import ValidationError
from app.pipeline.nodes import Capability, DagNode, NodeContext, NodeResult, StageExecutor
from app.pipeline.stages.base import load_ontology

logger = logging.getLogger(__name__)


class SchemaCaptureExecutor(StageExecutor):
    """Captures the datasource schema and stores it on the ontology."""

    node = DagNode.SCHEMA_CAPTURE
    requires = frozenset({Capability.SCHEMA})

    async def execute(self, ctx: NodeContext) -> NodeResult:
        snapshot = await ctx.capabilities.schema.capture()
        if not snapshot.tables:
            raise ValidationError("Schema snapshot has no tables")
        fingerprint = snapshot.fingerprint()

        async with ctx.session_factory() as db:
            ontology = await load_ontology(db, ctx.ontology_id)
            refreshed = ontology.schema_fingerprint != fingerprint
            if refreshed:
                if ontology.schema_fingerprint:
                    logger.info("Schema changed for ontology %s; snapshot refreshed", ctx.ontology_id)
                ontology.schema_snapshot = snapshot.to_dict()
                ontology.schema_fingerprint = fingerprint
            await db.commit()

        await ctx.emit(self.node, len(snapshot.tables), len(snapshot.tables), "snapshot captured")
        return NodeResult(processed=len(snapshot.tables), details={"fingerprint": fingerprint, "refreshed": refreshed})
