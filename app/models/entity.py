import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType


class OntologyEntity(Base):
    """A domain concept anchored to exactly one primary column."""

    __tablename__ = "ontology_entities"
    __table_args__ = (
        UniqueConstraint("ontology_id", "name", name="uq_ontology_entity_name"),
        Index("ix_ontology_entity_location", "ontology_id", "primary_schema", "primary_table"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ontology_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("ontologies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(100), nullable=True)  # e.g. "sales", "billing"
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    primary_schema: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_table: Mapped[str] = mapped_column(String(255), nullable=False)
    primary_column: Mapped[str] = mapped_column(String(255), nullable=False)

    aliases: Mapped[list] = mapped_column(JSONType, default=list)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deletion_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_staged: Mapped[bool] = mapped_column(Boolean, default=True)

    source: Mapped[str] = mapped_column(String(20), default="inference")  # inference | agent | manual
    last_edit_source: Mapped[str | None] = mapped_column(String(20), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
