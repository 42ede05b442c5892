import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class EntityRelationship(Base):
    """One direction of a relationship pair.

    A logical foreign key is stored as two rows sharing ``pair_id``: the
    forward row (FK side -> referenced side) and the reverse row with
    entities and column locations swapped. Rows are keyed on both entities
    plus both full column locations, so several relationships between the
    same two tables never collide.
    """

    __tablename__ = "entity_relationships"
    __table_args__ = (
        UniqueConstraint(
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
        Index("ix_relationship_target", "ontology_id", "target_entity_id"),
        Index("ix_relationship_pair", "pair_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ontology_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("ontologies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pair_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # forward | reverse

    source_entity_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("ontology_entities.id", ondelete="CASCADE"), nullable=False
    )
    target_entity_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("ontology_entities.id", ondelete="CASCADE"), nullable=False
    )

    source_schema: Mapped[str] = mapped_column(String(255), nullable=False)
    source_table: Mapped[str] = mapped_column(String(255), nullable=False)
    source_column: Mapped[str] = mapped_column(String(255), nullable=False)
    target_schema: Mapped[str] = mapped_column(String(255), nullable=False)
    target_table: Mapped[str] = mapped_column(String(255), nullable=False)
    target_column: Mapped[str] = mapped_column(String(255), nullable=False)

    cardinality: Mapped[str] = mapped_column(String(10), default="unknown")  # N:1 | 1:N | 1:1 | N:M | unknown
    association: Mapped[str | None] = mapped_column(String(100), nullable=True)  # e.g. "placed_by"
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    detection_method: Mapped[str] = mapped_column(String(20), default="foreign_key")  # foreign_key | pk_match | manual
    status: Mapped[str] = mapped_column(String(20), default="discovered")  # discovered | enriched

    is_staged: Mapped[bool] = mapped_column(Boolean, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    source: Mapped[str] = mapped_column(String(20), default="inference")
    last_edit_source: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
