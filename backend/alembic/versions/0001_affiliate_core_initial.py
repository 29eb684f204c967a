"""affiliate core: users, products, tracking ledger, commissions

Revision ID: 0001_affiliate_core
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_affiliate_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # -----------------------------------------------------
    # 1) users / products
    # -----------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "products",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("commission_type", sa.String(length=20), nullable=False),
        sa.Column("commission_rate", sa.Numeric(10, 6), nullable=True),
        sa.Column("commission_flat_amount", sa.Numeric(14, 4), nullable=True),
        sa.Column("min_initial_spend", sa.Numeric(14, 4), nullable=False),
        sa.Column("tiered_rates", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_products_status", "products", ["status"])

    # -----------------------------------------------------
    # 2) referral links + click ledger
    # -----------------------------------------------------
    op.create_table(
        "referral_links",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("marketer_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tracking_code", sa.String(length=64), nullable=False),
        sa.Column("link_url", sa.String(length=512), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("click_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversion_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_referral_links_tracking_code", "referral_links", ["tracking_code"], unique=True)
    op.create_index("ix_referral_links_marketer_id", "referral_links", ["marketer_id"])
    op.create_index("ix_referral_links_product_id", "referral_links", ["product_id"])
    op.create_index("ix_referral_links_marketer_product", "referral_links", ["marketer_id", "product_id"])
    op.create_index("ix_referral_links_active_expires", "referral_links", ["is_active", "expires_at"])

    op.create_table(
        "click_events",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tracking_code", sa.String(length=64), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=False),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("session_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("device", sa.String(length=20), nullable=True),
        sa.Column("browser", sa.String(length=20), nullable=True),
        sa.Column("os", sa.String(length=20), nullable=True),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("city", sa.String(length=100), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_click_events_timestamp", "click_events", ["timestamp"])
    op.create_index("ix_click_events_tracking_ts", "click_events", ["tracking_code", "timestamp"])
    op.create_index("ix_click_events_session_ts", "click_events", ["session_id", "timestamp"])
    op.create_index("ix_click_events_fingerprint_ts", "click_events", ["fingerprint", "timestamp"])
    op.create_index("ix_click_events_ip_ts", "click_events", ["ip_address", "timestamp"])
    op.create_index("ix_click_events_customer_ts", "click_events", ["customer_id", "timestamp"])

    # -----------------------------------------------------
    # 3) conversion log (dedup key is the concurrency guard)
    # -----------------------------------------------------
    op.create_table(
        "conversion_events",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("tracking_code", sa.String(length=64), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("product_id", sa.Uuid(), nullable=False),
        sa.Column("initial_spend_amount", sa.Numeric(14, 4), nullable=False),
        sa.Column("conversion_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attribution_method", sa.String(length=10), nullable=False),
        sa.Column("commission_eligible", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("fingerprint", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("click_event_id", sa.Uuid(), nullable=True),
        sa.Column("attribution_window_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("deduplication_key", sa.String(length=64), nullable=False),
        sa.CheckConstraint("attribution_window_days BETWEEN 1 AND 90", name="ck_conversion_events_window"),
    )
    op.create_index("ix_conversion_events_deduplication_key", "conversion_events", ["deduplication_key"], unique=True)
    op.create_index("ix_conversion_events_customer_id", "conversion_events", ["customer_id"])
    op.create_index("ix_conversion_events_product_id", "conversion_events", ["product_id"])
    op.create_index("ix_conversion_events_conversion_timestamp", "conversion_events", ["conversion_timestamp"])
    op.create_index("ix_conversion_events_attribution_method", "conversion_events", ["attribution_method"])
    op.create_index("ix_conversion_events_commission_eligible", "conversion_events", ["commission_eligible"])
    op.create_index(
        "ix_conversion_events_customer_product_ts",
        "conversion_events",
        ["customer_id", "product_id", "conversion_timestamp"],
    )
    op.create_index("ix_conversion_events_tracking_ts", "conversion_events", ["tracking_code", "conversion_timestamp"])

    # -----------------------------------------------------
    # 4) commissions + adjustment ledger
    # -----------------------------------------------------
    op.create_table(
        "commissions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("marketer_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("product_id", sa.Uuid(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("tracking_code", sa.String(length=64), nullable=False),
        sa.Column("initial_spend_amount", sa.Numeric(14, 4), nullable=False),
        sa.Column("commission_rate", sa.Numeric(10, 6), nullable=False),
        sa.Column("commission_amount", sa.Numeric(14, 4), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("conversion_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("approval_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clearance_period_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("eligible_for_payout_date", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "customer_id", "product_id", "tracking_code", name="uq_commissions_customer_product_tracking"
        ),
    )
    op.create_index("ix_commissions_marketer_id", "commissions", ["marketer_id"])
    op.create_index("ix_commissions_customer_id", "commissions", ["customer_id"])
    op.create_index("ix_commissions_product_id", "commissions", ["product_id"])
    op.create_index("ix_commissions_tracking_code", "commissions", ["tracking_code"])
    op.create_index("ix_commissions_status", "commissions", ["status"])
    op.create_index("ix_commissions_eligible_for_payout_date", "commissions", ["eligible_for_payout_date"])
    op.create_index("ix_commissions_marketer_status", "commissions", ["marketer_id", "status"])
    op.create_index("ix_commissions_status_eligible", "commissions", ["status", "eligible_for_payout_date"])
    op.create_index("ix_commissions_marketer_conversion", "commissions", ["marketer_id", "conversion_date"])

    op.create_table(
        "commission_adjustments",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            "commission_id",
            sa.Uuid(),
            sa.ForeignKey("commissions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("adjustment_type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("clawback_type", sa.String(length=20), nullable=True),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("admin_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_commission_adjustments_commission_id", "commission_adjustments", ["commission_id"])
    op.create_index(
        "ix_commission_adjustments_commission_created",
        "commission_adjustments",
        ["commission_id", "created_at"],
    )
    op.create_index(
        "ix_commission_adjustments_type_created",
        "commission_adjustments",
        ["adjustment_type", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("commission_adjustments")
    op.drop_table("commissions")
    op.drop_table("conversion_events")
    op.drop_table("click_events")
    op.drop_table("referral_links")
    op.drop_table("products")
    op.drop_table("users")
