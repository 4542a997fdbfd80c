"""Initial schema — users, items, swipes, matches, swap opportunities.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("display_name", sa.String, nullable=False),
        sa.Column("avatar_url", sa.String, nullable=True),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "is_active",
            sa.Boolean,
            server_default="true",
            nullable=False,
        ),
    )

    # ── 2. items ────────────────────────────────────────────────────
    op.create_table(
        "items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "category",
            sa.String,
            nullable=False,
            comment="games / electronics / clothes / books / ...",
        ),
        sa.Column(
            "condition",
            sa.String,
            nullable=False,
            comment="new / like_new / good / fair",
        ),
        sa.Column(
            "photos",
            postgresql.JSONB,
            nullable=True,
            comment="Array of photo URLs",
        ),
        sa.Column("value_min", sa.Float, nullable=True),
        sa.Column("value_max", sa.Float, nullable=True),
        sa.Column(
            "desired_categories",
            postgresql.ARRAY(sa.String),
            nullable=False,
            comment="Categories the owner would accept",
        ),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column(
            "is_active",
            sa.Boolean,
            server_default="true",
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_items_user_active", "items", ["user_id", "is_active"])

    # ── 3. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "item_a_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "item_b_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "is_completed",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("item_a_id", "item_b_id", name="uq_match_pair"),
        sa.CheckConstraint("item_a_id < item_b_id", name="ck_match_pair_ordered"),
    )

    # ── 4. swipes ───────────────────────────────────────────────────
    op.create_table(
        "swipes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "swiper_item_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "swiped_item_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("liked", sa.Boolean, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("swiper_item_id", "swiped_item_id", name="uq_swipe_pair"),
    )
    op.create_index("ix_swipes_swiped_item", "swipes", ["swiped_item_id"])

    # ── 5. swap_opportunities ───────────────────────────────────────
    op.create_table(
        "swap_opportunities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("cycle_type", sa.String, nullable=False, comment="2-way / 3-way"),
        sa.Column(
            "participants",
            postgresql.JSONB,
            nullable=False,
            comment="Ordered [{user_id, item_id}]",
        ),
        sa.Column(
            "participant_key",
            sa.String,
            nullable=False,
            comment="Sorted item ids joined with ':'",
        ),
        sa.Column("item_ids", postgresql.ARRAY(postgresql.UUID(as_uuid=True)), nullable=False),
        sa.Column("user_ids", postgresql.ARRAY(postgresql.UUID(as_uuid=True)), nullable=False),
        sa.Column("confidence_score", sa.Float, nullable=False),
        sa.Column("score_breakdown", postgresql.JSONB, nullable=True),
        sa.Column(
            "status",
            sa.String,
            server_default="active",
            nullable=False,
            comment="active / dismissed / expired / converted",
        ),
        sa.Column("closed_reason", sa.String, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    # At most one active row per unordered participant item set.
    op.create_index(
        "uq_opportunity_active_set",
        "swap_opportunities",
        ["participant_key"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        "ix_opportunity_user_ids",
        "swap_opportunities",
        ["user_ids"],
        postgresql_using="gin",
    )
    op.create_index(
        "ix_opportunity_status_expires",
        "swap_opportunities",
        ["status", "expires_at"],
    )

    # ── 6. opportunity_dismissals ───────────────────────────────────
    op.create_table(
        "opportunity_dismissals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "opportunity_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("swap_opportunities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("participant_key", sa.String, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("opportunity_id", "user_id", name="uq_dismissal_user"),
    )
    op.create_index(
        "ix_dismissal_key_created",
        "opportunity_dismissals",
        ["participant_key", "created_at"],
    )


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_index("ix_dismissal_key_created", table_name="opportunity_dismissals")
    op.drop_table("opportunity_dismissals")

    op.drop_index("ix_opportunity_status_expires", table_name="swap_opportunities")
    op.drop_index("ix_opportunity_user_ids", table_name="swap_opportunities")
    op.drop_index("uq_opportunity_active_set", table_name="swap_opportunities")
    op.drop_table("swap_opportunities")

    op.drop_index("ix_swipes_swiped_item", table_name="swipes")
    op.drop_table("swipes")
    op.drop_table("matches")

    op.drop_index("ix_items_user_active", table_name="items")
    op.drop_table("items")
    op.drop_table("users")
