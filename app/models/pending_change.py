import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType


class PendingChange(Base):
    """A staged mutation that becomes live only on approval."""

    __tablename__ = "pending_changes"
    __table_args__ = (
        Index("ix_pending_change_status", "ontology_id", "status"),
        Index("ix_pending_change_target", "target_type", "target_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ontology_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("ontologies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    target_type: Mapped[str] = mapped_column(String(30), nullable=False)  # entity | relationship | column | glossary_term
    target_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)  # relationship changes use the pair id
    action: Mapped[str] = mapped_column(String(40), nullable=False)  # e.g. "create_entity", "update_relationship"
    diff: Mapped[dict] = mapped_column(JSONType, default=dict)  # {"set": {...}, "before": {...}}

    source_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source: Mapped[str] = mapped_column(String(20), default="inference")  # inference | agent | manual

    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | approved | rejected
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
