from app.models.column_metadata import ColumnMetadata
from app.models.dag_node_status import DagNodeStatus
from app.models.entity import OntologyEntity
from app.models.glossary_term import GlossaryTerm
from app.models.ontology import Ontology
from app.models.pending_change import PendingChange
from app.models.question import OntologyQuestion
from app.models.relationship import EntityRelationship

__all__ = [
    "ColumnMetadata",
    "DagNodeStatus",
    "EntityRelationship",
    "GlossaryTerm",
    "Ontology",
    "OntologyEntity",
    "OntologyQuestion",
    "PendingChange",
]
