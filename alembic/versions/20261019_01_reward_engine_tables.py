"""Create reward engine tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


UUID = postgresql.UUID(as_uuid=True)

referral_link_status = sa.Enum("PENDING", "COMPLETED", name="referral_link_status")
spin_reward_type = sa.Enum("POINTS", "FREE_DELIVERY", "DISCOUNT", name="spin_reward_type")
reward_credit_type = sa.Enum("FREE_DELIVERY", "DISCOUNT", name="reward_credit_type")
reward_transaction_kind = sa.Enum(
    "BRACKET_BONUS",
    "BADGE_BONUS",
    "SPIN_WIN",
    "REFERRAL_BONUS",
    "REFERRAL_CAP_REACHED",
    "MILESTONE_BONUS",
    "REDEMPTION",
    name="reward_transaction_kind",
)


def _user_fk() -> sa.Column:
    return sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "reward_accounts",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("total_spend", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("purchase_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_earned", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("points_redeemed", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("current_cycle_spend", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("current_cycle_receipts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cycle_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_purchase_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_reward_accounts_user_id"),
        sa.CheckConstraint("points_earned >= points_redeemed", name="ck_reward_accounts_points_available"),
        sa.CheckConstraint("current_cycle_receipts >= 0", name="ck_reward_accounts_cycle_receipts"),
    )

    op.create_table(
        "reward_purchases",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", name="uq_reward_purchases_order_id"),
    )
    op.create_index("ix_reward_purchases_user_purchased_at", "reward_purchases", ["user_id", "purchased_at"])
    op.create_index("ix_reward_purchases_purchased_at", "reward_purchases", ["purchased_at"])

    op.create_table(
        "user_badge_awards",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("badge_slug", sa.String(), nullable=False),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "badge_slug", name="uq_user_badge_awards_user_badge"),
    )

    op.create_table(
        "referral_links",
        sa.Column("id", UUID, primary_key=True),
        sa.Column("referrer_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("referee_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", referral_link_status, nullable=False),
        sa.Column("reward_issued", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("referee_id", name="uq_referral_links_referee_id"),
    )
    op.create_index("ix_referral_links_referrer_status", "referral_links", ["referrer_id", "status"])

    op.create_table(
        "user_spin_allowances",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("spins_available", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spins_granted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_spins_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_winnings_value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_spin_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", name="uq_user_spin_allowances_user_id"),
        sa.CheckConstraint("spins_available >= 0", name="ck_user_spin_allowances_non_negative"),
    )

    op.create_table(
        "spin_history",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("reward_slug", sa.String(), nullable=False),
        sa.Column("reward_name", sa.String(), nullable=False),
        sa.Column("reward_type", spin_reward_type, nullable=False),
        sa.Column("reward_value", sa.BigInteger(), nullable=False),
        sa.Column("draw", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_spin_history_user_created_at", "spin_history", ["user_id", "created_at"])

    op.create_table(
        "reward_credits",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("credit_type", reward_credit_type, nullable=False),
        sa.Column("value", sa.BigInteger(), nullable=True),
        sa.Column("quantity_remaining", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity_remaining >= 0", name="ck_reward_credits_quantity"),
    )
    op.create_index("ix_reward_credits_user_type", "reward_credits", ["user_id", "credit_type"])

    op.create_table(
        "user_milestone_awards",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("milestone_slug", sa.String(), nullable=False),
        sa.Column("awarded_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "milestone_slug", name="uq_user_milestone_awards_user_milestone"),
    )

    op.create_table(
        "reward_transaction_log",
        sa.Column("id", UUID, primary_key=True),
        _user_fk(),
        sa.Column("kind", reward_transaction_kind, nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("points_delta", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_reward_transaction_log_user_created_at",
        "reward_transaction_log",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_reward_transaction_log_user_created_at", table_name="reward_transaction_log")
    op.drop_table("reward_transaction_log")
    op.drop_table("user_milestone_awards")
    op.drop_index("ix_reward_credits_user_type", table_name="reward_credits")
    op.drop_table("reward_credits")
    op.drop_index("ix_spin_history_user_created_at", table_name="spin_history")
    op.drop_table("spin_history")
    op.drop_table("user_spin_allowances")
    op.drop_index("ix_referral_links_referrer_status", table_name="referral_links")
    op.drop_table("referral_links")
    op.drop_table("user_badge_awards")
    op.drop_index("ix_reward_purchases_purchased_at", table_name="reward_purchases")
    op.drop_index("ix_reward_purchases_user_purchased_at", table_name="reward_purchases")
    op.drop_table("reward_purchases")
    op.drop_table("reward_accounts")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in (reward_transaction_kind, reward_credit_type, spin_reward_type, referral_link_status):
        enum_type.drop(bind, checkfirst=True)
