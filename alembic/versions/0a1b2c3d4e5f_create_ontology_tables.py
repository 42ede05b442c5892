"""create ontology tables

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision = "0a1b2c3d4e5f"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False))
    return columns


def _ontology_fk() -> sa.Column:
    return sa.Column(
        "ontology_id", UUID(as_uuid=True), sa.ForeignKey("ontologies.id", ondelete="CASCADE"), nullable=False
    )


def _provenance() -> list[sa.Column]:
    return [
        sa.Column("is_staged", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("source", sa.String(20), server_default="inference", nullable=False),
        sa.Column("last_edit_source", sa.String(20), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "ontologies",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("schema_snapshot", JSONB(), nullable=True),
        sa.Column("schema_fingerprint", sa.String(64), nullable=True),
        sa.Column("domain_summary", JSONB(), nullable=True),
        sa.Column("active_run_id", UUID(as_uuid=True), nullable=True),
        sa.Column("run_claimed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "ontology_entities",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _ontology_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("business_name", sa.String(255), nullable=True),
        sa.Column("domain", sa.String(100), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("primary_schema", sa.String(255), nullable=False),
        sa.Column("primary_table", sa.String(255), nullable=False),
        sa.Column("primary_column", sa.String(255), nullable=False),
        sa.Column("aliases", JSONB(), server_default="[]", nullable=False),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("deletion_reason", sa.Text(), nullable=True),
        *_provenance(),
        *_timestamps(),
        sa.UniqueConstraint("ontology_id", "name", name="uq_ontology_entity_name"),
    )
    op.create_index("ix_ontology_entities_ontology_id", "ontology_entities", ["ontology_id"])
    op.create_index(
        "ix_ontology_entity_location", "ontology_entities", ["ontology_id", "primary_schema", "primary_table"]
    )

    op.create_table(
        "entity_relationships",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _ontology_fk(),
        sa.Column("pair_id", UUID(as_uuid=True), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column(
            "source_entity_id",
            UUID(as_uuid=True),
            sa.ForeignKey("ontology_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "target_entity_id",
            UUID(as_uuid=True),
            sa.ForeignKey("ontology_entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_schema", sa.String(255), nullable=False),
        sa.Column("source_table", sa.String(255), nullable=False),
        sa.Column("source_column", sa.String(255), nullable=False),
        sa.Column("target_schema", sa.String(255), nullable=False),
        sa.Column("target_table", sa.String(255), nullable=False),
        sa.Column("target_column", sa.String(255), nullable=False),
        sa.Column("cardinality", sa.String(10), server_default="unknown", nullable=False),
        sa.Column("association", sa.String(100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), server_default="1.0", nullable=False),
        sa.Column("detection_method", sa.String(20), server_default="foreign_key", nullable=False),
        sa.Column("status", sa.String(20), server_default="discovered", nullable=False),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.false(), nullable=False),
        *_provenance(),
        *_timestamps(),
        sa.UniqueConstraint(
            "ontology_id",
            "source_entity_id",
            "target_entity_id",
            "source_schema",
            "source_table",
            "source_column",
            "target_schema",
            "target_table",
            "target_column",
            name="uq_relationship_endpoints",
        ),
    )
    op.create_index("ix_entity_relationships_ontology_id", "entity_relationships", ["ontology_id"])
    op.create_index("ix_relationship_target", "entity_relationships", ["ontology_id", "target_entity_id"])
    op.create_index("ix_relationship_pair", "entity_relationships", ["pair_id"])

    op.create_table(
        "column_metadata",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _ontology_fk(),
        sa.Column("schema_name", sa.String(255), nullable=False),
        sa.Column("table_name", sa.String(255), nullable=False),
        sa.Column("column_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("semantic_type", sa.String(50), nullable=True),
        sa.Column("role", sa.String(20), nullable=True),
        *_provenance(),
        *_timestamps(),
        sa.UniqueConstraint(
            "ontology_id", "schema_name", "table_name", "column_name", name="uq_column_metadata_location"
        ),
    )
    op.create_index("ix_column_metadata_ontology_id", "column_metadata", ["ontology_id"])

    op.create_table(
        "glossary_terms",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _ontology_fk(),
        sa.Column("term", sa.String(255), nullable=False),
        sa.Column("definition", sa.Text(), server_default="", nullable=False),
        sa.Column("base_table", sa.String(255), nullable=True),
        sa.Column("aliases", JSONB(), server_default="[]", nullable=False),
        sa.Column("sql_pattern", sa.Text(), nullable=True),
        sa.Column("output_columns", JSONB(), nullable=True),
        sa.Column("enrichment_status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_provenance(),
        *_timestamps(),
        sa.UniqueConstraint("ontology_id", "term", name="uq_glossary_term"),
    )
    op.create_index("ix_glossary_terms_ontology_id", "glossary_terms", ["ontology_id"])

    op.create_table(
        "ontology_questions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _ontology_fk(),
        sa.Column("source_stage", sa.String(50), nullable=False),
        sa.Column("source_ref", sa.String(500), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("priority", sa.Integer(), server_default="3", nullable=False),
        sa.Column("is_required", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("affects", JSONB(), nullable=True),
        sa.Column("content_hash", sa.String(16), nullable=False),
        sa.Column("status", sa.String(20), server_default="open", nullable=False),
        sa.Column("answer", sa.Text(), nullable=True),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("answered_by", sa.String(100), nullable=True),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("ontology_id", "content_hash", name="uq_question_content"),
    )
    op.create_index("ix_ontology_questions_ontology_id", "ontology_questions", ["ontology_id"])
    op.create_index("ix_question_status", "ontology_questions", ["ontology_id", "status"])

    op.create_table(
        "pending_changes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _ontology_fk(),
        sa.Column("target_type", sa.String(30), nullable=False),
        sa.Column("target_id", UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("diff", JSONB(), server_default="{}", nullable=False),
        sa.Column("source_stage", sa.String(50), nullable=True),
        sa.Column("source", sa.String(20), server_default="inference", nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(100), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_pending_changes_ontology_id", "pending_changes", ["ontology_id"])
    op.create_index("ix_pending_change_status", "pending_changes", ["ontology_id", "status"])
    op.create_index("ix_pending_change_target", "pending_changes", ["target_type", "target_id"])

    op.create_table(
        "dag_node_statuses",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _ontology_fk(),
        sa.Column("node_name", sa.String(50), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("run_id", UUID(as_uuid=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("progress", JSONB(), nullable=True),
        sa.UniqueConstraint("ontology_id", "node_name", name="uq_dag_node"),
    )
    op.create_index("ix_dag_node_statuses_ontology_id", "dag_node_statuses", ["ontology_id"])


def downgrade() -> None:
    op.drop_table("dag_node_statuses")
    op.drop_table("pending_changes")
    op.drop_table("ontology_questions")
    op.drop_table("glossary_terms")
    op.drop_table("column_metadata")
    op.drop_table("entity_relationships")
    op.drop_table("ontology_entities")
    op.drop_table("ontologies")
