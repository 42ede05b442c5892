import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, JSONType


class Ontology(Base):
    """One modelled datasource. Every other ontology table hangs off this row."""

    __tablename__ = "ontologies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    schema_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    schema_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    domain_summary: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Single-active-run claim; taken over only after run_lease_seconds without heartbeat
    active_run_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    run_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
