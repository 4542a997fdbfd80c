"""
Swapmatch — Item model (a listing offered for exchange).

Items are soft-deactivated (``is_active = False``) rather than deleted once a
Match or SwapOpportunity references them.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID as PgUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class ItemCategory(str, enum.Enum):
    GAMES = "games"
    ELECTRONICS = "electronics"
    CLOTHES = "clothes"
    BOOKS = "books"
    HOME_GARDEN = "home_garden"
    SPORTS = "sports"
    OTHER = "other"


class ItemCondition(str, enum.Enum):
    NEW = "new"
    LIKE_NEW = "like_new"
    GOOD = "good"
    FAIR = "fair"


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        Index("ix_items_user_active", "user_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        PgUUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(
        String, nullable=False, comment="games / electronics / clothes / books / ..."
    )
    condition: Mapped[str] = mapped_column(
        String, nullable=False, comment="new / like_new / good / fair"
    )
    photos: Mapped[list | None] = mapped_column(
        JSONB, nullable=True, comment="Array of photo URLs"
    )
    value_min: Mapped[float | None] = mapped_column(Float, nullable=True)
    value_max: Mapped[float | None] = mapped_column(Float, nullable=True)
    desired_categories: Mapped[list[str]] = mapped_column(
        ARRAY(String), nullable=False, comment="Categories the owner would accept"
    )
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────
    owner: Mapped["User"] = relationship("User", back_populates="items")

    def __repr__(self) -> str:
        return (
            f"<Item {self.title!r} {self.category}/{self.condition} "
            f"owner={self.user_id} active={self.is_active}>"
        )
