"""
Swapmatch — Match and Swipe models.

A Match row always stores its item pair in canonical order
(``item_a_id < item_b_id``) so that the unique constraint acts as the natural
dedup key for the unordered pair.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("item_a_id", "item_b_id", name="uq_match_pair"),
        CheckConstraint("item_a_id < item_b_id", name="ck_match_pair_ordered"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    item_a_id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    item_b_id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    is_completed: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="false", nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    item_a: Mapped["Item"] = relationship(
        "Item", foreign_keys=[item_a_id], lazy="selectin"
    )
    item_b: Mapped["Item"] = relationship(
        "Item", foreign_keys=[item_b_id], lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<Match {self.item_a_id} <-> {self.item_b_id} "
            f"completed={self.is_completed}>"
        )


class Swipe(Base):
    __tablename__ = "swipes"
    __table_args__ = (
        UniqueConstraint("swiper_item_id", "swiped_item_id", name="uq_swipe_pair"),
        Index("ix_swipes_swiped_item", "swiped_item_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    swiper_item_id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    swiped_item_id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("items.id", ondelete="CASCADE"), nullable=False
    )
    liked: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<Swipe {self.swiper_item_id} -> {self.swiped_item_id} "
            f"liked={self.liked}>"
        )
