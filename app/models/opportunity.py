"""
Swapmatch — SwapOpportunity and OpportunityDismissal models.

Opportunities are derived, speculative views over item state.  They reference
items and users by id only; the ordered participant list lives in JSONB while
``item_ids`` / ``user_ids`` arrays back the containment queries.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class SwapOpportunity(Base):
    __tablename__ = "swap_opportunities"
    __table_args__ = (
        # At most one *active* row per unordered participant item set.
        Index(
            "uq_opportunity_active_set",
            "participant_key",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_opportunity_user_ids", "user_ids", postgresql_using="gin"),
        Index("ix_opportunity_status_expires", "status", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    cycle_type: Mapped[str] = mapped_column(
        String, nullable=False, comment="2-way / 3-way"
    )
    participants: Mapped[list] = mapped_column(
        JSONB, nullable=False, comment="Ordered [{user_id, item_id}]"
    )
    participant_key: Mapped[str] = mapped_column(
        String, nullable=False, comment="Sorted item ids joined with ':'"
    )
    item_ids: Mapped[list[uuid.UUID]] = mapped_column(
        ARRAY(PgUUID(as_uuid=True)), nullable=False
    )
    user_ids: Mapped[list[uuid.UUID]] = mapped_column(
        ARRAY(PgUUID(as_uuid=True)), nullable=False
    )
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    score_breakdown: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        server_default="active",
        comment="active / dismissed / expired / converted",
    )
    closed_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<SwapOpportunity {self.cycle_type} {self.participant_key} "
            f"status={self.status!r} confidence={self.confidence_score:.3f}>"
        )


class OpportunityDismissal(Base):
    __tablename__ = "opportunity_dismissals"
    __table_args__ = (
        UniqueConstraint("opportunity_id", "user_id", name="uq_dismissal_user"),
        Index("ix_dismissal_key_created", "participant_key", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    opportunity_id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True),
        ForeignKey("swap_opportunities.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(PgUUID(as_uuid=True), nullable=False)
    participant_key: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<OpportunityDismissal {self.opportunity_id} by {self.user_id}>"
