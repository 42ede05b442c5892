"""Stage executors, one per pipeline node."""

from app.pipeline.nodes import DagNode, StageExecutor
from app.pipeline.stages.column_enrichment import ColumnEnrichmentExecutor
from app.pipeline.stages.entity_discovery import EntityDiscoveryExecutor
from app.pipeline.stages.entity_enrichment import EntityEnrichmentExecutor
from app.pipeline.stages.finalization import FinalizationExecutor
from app.pipeline.stages.glossary_discovery import GlossaryDiscoveryExecutor
from app.pipeline.stages.glossary_enrichment import GlossaryEnrichmentExecutor
from app.pipeline.stages.relationship_discovery import RelationshipDiscoveryExecutor
from app.pipeline.stages.relationship_enrichment import RelationshipEnrichmentExecutor
from app.pipeline.stages.schema_capture import SchemaCaptureExecutor


def default_executors() -> dict[DagNode, StageExecutor]:
    executors: list[StageExecutor] = [
        SchemaCaptureExecutor(),
        EntityDiscoveryExecutor(),
        EntityEnrichmentExecutor(),
        RelationshipDiscoveryExecutor(),
        RelationshipEnrichmentExecutor(),
        ColumnEnrichmentExecutor(),
        GlossaryDiscoveryExecutor(),
        GlossaryEnrichmentExecutor(),
        FinalizationExecutor(),
    ]
    return {e.node: e for e in executors}


__all__ = ["default_executors"]
