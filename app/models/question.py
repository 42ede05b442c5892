import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType


class OntologyQuestion(Base):
    """Clarifying question raised when discovery or enrichment is unsure."""

    __tablename__ = "ontology_questions"
    __table_args__ = (
        UniqueConstraint("ontology_id", "content_hash", name="uq_question_content"),
        Index("ix_question_status", "ontology_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ontology_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("ontologies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    source_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)  # e.g. "public.orders.user_id"
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # business_rules | relationship | terminology | enumeration | temporal | data_quality
    priority: Mapped[int] = mapped_column(Integer, default=3)  # 1 = highest
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    affects: Mapped[dict | None] = mapped_column(JSONType, nullable=True)  # {"tables": [...], "columns": [...]}
    content_hash: Mapped[str] = mapped_column(String(16), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="open")  # open | resolved | skipped | dismissed | escalated
    answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    answered_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
