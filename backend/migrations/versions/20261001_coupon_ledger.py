"""Add coupon ledger tables

Revision ID: 20261001_coupon_ledger
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261001_coupon_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "coupon_tokens",
        sa.Column("token", sa.String(12), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="issued"),
        sa.Column("issued_for", sa.String(128), nullable=True),
        sa.Column("kiosk_id", sa.String(64), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("token"),
    )

    with op.batch_alter_table("coupon_tokens", schema=None) as batch_op:
        batch_op.create_index("ix_coupon_tokens_phone", ["phone"], unique=False)
        batch_op.create_index("ix_coupon_tokens_status_expires", ["status", "expires_at"], unique=False)
        batch_op.create_index("ix_coupon_tokens_status_used", ["status", "used_at"], unique=False)

    op.create_table(
        "coupon_wallets",
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("coupon_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_redeemed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("opted_in_marketing", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint("coupon_count >= 0", name="ck_coupon_wallets_count_non_negative"),
        sa.PrimaryKeyConstraint("phone"),
    )

    op.create_table(
        "coupon_redemptions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("coupons_used", sa.Integer(), nullable=False),
        sa.Column("tier_id", sa.Integer(), nullable=True),
        sa.Column("reward_name", sa.String(128), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("notified_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("completed_by", sa.String(64), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_by", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    with op.batch_alter_table("coupon_redemptions", schema=None) as batch_op:
        batch_op.create_index("ix_coupon_redemptions_phone", ["phone"], unique=False)
        batch_op.create_index("ix_coupon_redemptions_phone_status", ["phone", "status"], unique=False)
        batch_op.create_index("ix_coupon_redemptions_status_created", ["status", "created_at"], unique=False)
        batch_op.create_index(
            "uq_coupon_redemptions_one_pending",
            ["phone"],
            unique=True,
            sqlite_where=sa.text("status = 'pending'"),
            postgresql_where=sa.text("status = 'pending'"),
        )

    op.create_table(
        "coupon_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("event", sa.String(32), nullable=False),
        sa.Column("token", sa.String(12), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("coupon_events", schema=None) as batch_op:
        batch_op.create_index("ix_coupon_events_token", ["token"], unique=False)
        batch_op.create_index("ix_coupon_events_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_coupon_events_phone_created", ["phone", "created_at"], unique=False)
        batch_op.create_index("ix_coupon_events_event_created", ["event", "created_at"], unique=False)

    op.create_table(
        "coupon_rate_limits",
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("endpoint", sa.String(16), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reset_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("phone", "endpoint"),
    )

    with op.batch_alter_table("coupon_rate_limits", schema=None) as batch_op:
        batch_op.create_index("ix_coupon_rate_limits_reset_at", ["reset_at"], unique=False)

    op.create_table(
        "coupon_settings",
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("value", sa.String(255), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "coupon_reward_tiers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("name_tr", sa.String(128), nullable=False),
        sa.Column("coupons_required", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("description_tr", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("coupon_reward_tiers", schema=None) as batch_op:
        batch_op.create_index("ix_coupon_reward_tiers_is_active", ["is_active"], unique=False)


def downgrade():
    with op.batch_alter_table("coupon_reward_tiers", schema=None) as batch_op:
        batch_op.drop_index("ix_coupon_reward_tiers_is_active")
    op.drop_table("coupon_reward_tiers")

    op.drop_table("coupon_settings")

    with op.batch_alter_table("coupon_rate_limits", schema=None) as batch_op:
        batch_op.drop_index("ix_coupon_rate_limits_reset_at")
    op.drop_table("coupon_rate_limits")

    with op.batch_alter_table("coupon_events", schema=None) as batch_op:
        batch_op.drop_index("ix_coupon_events_event_created")
        batch_op.drop_index("ix_coupon_events_phone_created")
        batch_op.drop_index("ix_coupon_events_created_at")
        batch_op.drop_index("ix_coupon_events_token")
    op.drop_table("coupon_events")

    with op.batch_alter_table("coupon_redemptions", schema=None) as batch_op:
        batch_op.drop_index("uq_coupon_redemptions_one_pending")
        batch_op.drop_index("ix_coupon_redemptions_status_created")
        batch_op.drop_index("ix_coupon_redemptions_phone_status")
        batch_op.drop_index("ix_coupon_redemptions_phone")
    op.drop_table("coupon_redemptions")

    op.drop_table("coupon_wallets")

    with op.batch_alter_table("coupon_tokens", schema=None) as batch_op:
        batch_op.drop_index("ix_coupon_tokens_status_used")
        batch_op.drop_index("ix_coupon_tokens_status_expires")
        batch_op.drop_index("ix_coupon_tokens_phone")
    op.drop_table("coupon_tokens")
