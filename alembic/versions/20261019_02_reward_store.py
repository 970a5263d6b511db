"""Rewards store stock and redemptions.

Revision ID: 20261019_02
Revises: 20261019_01
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_02"
down_revision: Union[str, None] = "20261019_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UUID = postgresql.UUID(as_uuid=True)

reward_store_item_type = sa.Enum(
    "DISCOUNT",
    "FREE_DELIVERY",
    "GIFT_CARD",
    "PRODUCT",
    name="reward_store_item_type",
)
reward_redemption_status = sa.Enum("PENDING", "FULFILLED", name="reward_redemption_status")


def upgrade() -> None:
    op.create_table(
        "reward_store_stock",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("item_slug", sa.String(), nullable=False),
        sa.Column("remaining", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("item_slug", name="uq_reward_store_stock_item_slug"),
        sa.CheckConstraint("remaining >= 0", name="ck_reward_store_stock_non_negative"),
    )

    op.create_table(
        "reward_redemptions",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_slug", sa.String(), nullable=False),
        sa.Column("item_type", reward_store_item_type, nullable=False),
        sa.Column("points_spent", sa.BigInteger(), nullable=False),
        sa.Column("status", reward_redemption_status, nullable=False),
        sa.Column("code", sa.String(), nullable=True),
        sa.Column("credit_id", UUID, sa.ForeignKey("reward_credits.id", ondelete="SET NULL"), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("code", name="uq_reward_redemptions_code"),
    )
    op.create_index(
        "ix_reward_redemptions_user_created_at",
        "reward_redemptions",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_reward_redemptions_user_created_at", table_name="reward_redemptions")
    op.drop_table("reward_redemptions")
    op.drop_table("reward_store_stock")

    bind = op.get_bind()
    for enum_type in (reward_redemption_status, reward_store_item_type):
        enum_type.drop(bind, checkfirst=True)
