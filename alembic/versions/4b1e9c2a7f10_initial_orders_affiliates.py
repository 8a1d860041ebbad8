"""initial orders, promo codes and affiliate program

Revision ID: 4b1e9c2a7f10
Revises:
Create Date: 2026-10-17 10:12:31.402118
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4b1e9c2a7f10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# SQLAlchemy salva gli enum per NOME (PENDING, IN_PRODUCTION, ...)
package_type = sa.Enum("ESSENTIAL", "SIGNATURE", "MASTERPIECE", name="packagetype")
payment_status = sa.Enum("PENDING", "PAID", "FAILED", name="paymentstatus")
order_status = sa.Enum(
    "PENDING", "IN_PRODUCTION", "LYRICS_REVIEW", "SONG_PRODUCTION", "SONG_REVIEW", "COMPLETED",
    name="orderstatus",
)
affiliate_status = sa.Enum("PENDING", "APPROVED", "DENIED", "SUSPENDED", name="affiliatestatus")
promo_code_kind = sa.Enum("DISCOUNT", "AFFILIATE", name="promocodekind")
commission_status = sa.Enum("PENDING", "APPROVED", "PROCESSING", "PAID", name="commissionstatus")
payout_status = sa.Enum("PENDING", "PAID", "REJECTED", name="payoutstatus")
payout_method = sa.Enum("STRIPE", "BANK_TRANSFER", name="payoutmethod")
referral_event_type = sa.Enum("CLICK", "SIGNUP", "PURCHASE", name="referraleventtype")
revision_type = sa.Enum("LYRICS", "SONG", name="revisiontype")
revision_kind = sa.Enum(
    "NOTE", "LYRICS_APPROVED", "LYRICS_CHANGE_REQUEST", "SONG_APPROVED", "SONG_CHANGE_REQUEST",
    name="revisionkind",
)
revision_author = sa.Enum("ADMIN", "CUSTOMER", name="revisionauthor")

STAGES = (
    ("PENDING", 1),
    ("IN_PRODUCTION", 2),
    ("LYRICS_REVIEW", 3),
    ("SONG_PRODUCTION", 4),
    ("SONG_REVIEW", 5),
    ("COMPLETED", 6),
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
    )
    op.create_index(op.f("ix_users_id"), "users", ["id"], unique=False)
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "affiliates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("status", affiliate_status, nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), server_default=sa.text("10"), nullable=False),
        sa.Column("balance", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("total_paid", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("payout_threshold", sa.Numeric(10, 2), server_default=sa.text("10"), nullable=False),
        sa.Column("website", sa.String(length=255), nullable=True),
        sa.Column("promotion_plan", sa.String(length=1000), nullable=True),
        sa.Column("admin_notes", sa.String(length=1000), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.CheckConstraint("commission_rate >= 0 AND commission_rate <= 50", name="ck_affiliates_commission_rate"),
        sa.CheckConstraint("payout_threshold >= 10", name="ck_affiliates_payout_threshold"),
    )
    op.create_index(op.f("ix_affiliates_id"), "affiliates", ["id"], unique=False)

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=150), nullable=True),
        sa.Column("kind", promo_code_kind, nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("is_percentage", sa.Boolean(), nullable=False),
        sa.Column("min_order_value", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("max_uses", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_uses_per_user", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("current_uses", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.CheckConstraint("max_uses = 0 OR current_uses <= max_uses", name="ck_promo_codes_global_cap"),
        sa.CheckConstraint(
            "is_percentage = false OR (discount_value > 0 AND discount_value <= 100)",
            name="ck_promo_codes_percentage_range",
        ),
    )
    op.create_index(op.f("ix_promo_codes_id"), "promo_codes", ["id"], unique=False)
    op.create_index(op.f("ix_promo_codes_code"), "promo_codes", ["code"], unique=True)
    op.create_index(op.f("ix_promo_codes_affiliate_id"), "promo_codes", ["affiliate_id"], unique=False)

    stage_check = " OR ".join(f"(status = '{s}' AND workflow_stage = {n})" for s, n in STAGES)
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_number", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("package_type", package_type, nullable=False),
        sa.Column("original_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("payment_status", payment_status, nullable=False),
        sa.Column("payment_id", sa.String(length=255), nullable=True),
        sa.Column("status", order_status, nullable=False),
        sa.Column("workflow_stage", sa.Integer(), nullable=False),
        sa.Column("provide_lyrics", sa.Boolean(), nullable=False),
        sa.Column("lyrics", sa.Text(), nullable=True),
        sa.Column("system_generated_lyrics", sa.Text(), nullable=True),
        sa.Column("lyrics_approved", sa.Boolean(), nullable=False),
        sa.Column("lyrics_revisions", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("song_revisions", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("allow_more_revisions", sa.Boolean(), nullable=False),
        sa.Column("used_promo_code", sa.String(length=50), nullable=True),
        sa.Column("promo_discount_amount", sa.Numeric(10, 2), server_default=sa.text("0"), nullable=False),
        sa.Column("referring_affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=True),
        sa.Column("referral_code_id", sa.Integer(), sa.ForeignKey("promo_codes.id"), nullable=True),
        sa.Column("song_purpose", sa.String(length=255), nullable=True),
        sa.Column("recipient_name", sa.String(length=150), nullable=True),
        sa.Column("emotion", sa.String(length=100), nullable=True),
        sa.Column("music_style", sa.String(length=100), nullable=True),
        sa.Column("song_theme", sa.String(length=255), nullable=True),
        sa.Column("personal_story", sa.Text(), nullable=True),
        sa.Column("additional_notes", sa.Text(), nullable=True),
        sa.Column("show_in_gallery", sa.Boolean(), nullable=False),
        sa.Column("customer_name", sa.String(length=150), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_address", sa.String(length=255), nullable=True),
        sa.Column("customer_city", sa.String(length=100), nullable=True),
        sa.Column("customer_postcode", sa.String(length=20), nullable=True),
        sa.Column("customer_country", sa.String(length=2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.CheckConstraint(stage_check, name="ck_orders_status_stage"),
        sa.CheckConstraint("total_price >= 0", name="ck_orders_total_non_negative"),
    )
    op.create_index(op.f("ix_orders_id"), "orders", ["id"], unique=False)
    op.create_index(op.f("ix_orders_order_number"), "orders", ["order_number"], unique=True)
    op.create_index(op.f("ix_orders_user_id"), "orders", ["user_id"], unique=False)

    op.create_table(
        "order_addons",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("addon_type", sa.String(length=50), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
    )
    op.create_index(op.f("ix_order_addons_id"), "order_addons", ["id"], unique=False)
    op.create_index(op.f("ix_order_addons_order_id"), "order_addons", ["order_id"], unique=False)

    op.create_table(
        "promo_code_usage",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("code_id", sa.Integer(), sa.ForeignKey("promo_codes.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("discount_applied", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.UniqueConstraint("code_id", "order_id", name="uq_promo_code_usage_code_order"),
    )
    op.create_index(op.f("ix_promo_code_usage_id"), "promo_code_usage", ["id"], unique=False)
    op.create_index(op.f("ix_promo_code_usage_code_id"), "promo_code_usage", ["code_id"], unique=False)
    op.create_index(op.f("ix_promo_code_usage_user_id"), "promo_code_usage", ["user_id"], unique=False)

    op.create_table(
        "affiliate_payouts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", payout_status, nullable=False),
        sa.Column("payment_method", payout_method, nullable=False),
        sa.Column("payment_info", sa.JSON(), nullable=True),
        sa.Column("transaction_id", sa.String(length=255), nullable=True),
        sa.Column("processing_notes", sa.String(length=1000), nullable=True),
        sa.Column("processed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(op.f("ix_affiliate_payouts_id"), "affiliate_payouts", ["id"], unique=False)
    op.create_index(op.f("ix_affiliate_payouts_affiliate_id"), "affiliate_payouts", ["affiliate_id"], unique=False)

    op.create_table(
        "commissions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("affiliate_id", sa.Integer(), sa.ForeignKey("affiliates.id"), nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("code_id", sa.Integer(), sa.ForeignKey("promo_codes.id"), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("order_total", sa.Numeric(10, 2), nullable=False),
        sa.Column("status", commission_status, nullable=False),
        sa.Column("payout_id", sa.Integer(), sa.ForeignKey("affiliate_payouts.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        # chiave di idempotenza: una commissione per (affiliato, ordine)
        sa.UniqueConstraint("affiliate_id", "order_id", name="uq_commissions_affiliate_order"),
    )
    op.create_index(op.f("ix_commissions_id"), "commissions", ["id"], unique=False)
    op.create_index(op.f("ix_commissions_affiliate_id"), "commissions", ["affiliate_id"], unique=False)
    op.create_index(op.f("ix_commissions_order_id"), "commissions", ["order_id"], unique=False)

    op.create_table(
        "referral_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("code_id", sa.Integer(), sa.ForeignKey("promo_codes.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("event_type", referral_event_type, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=True),
        sa.Column("ip_hash", sa.String(length=32), nullable=True),
        sa.Column("user_agent_hash", sa.String(length=32), nullable=True),
        sa.Column("referrer_url", sa.String(length=500), nullable=True),
        sa.Column("conversion_value", sa.Numeric(10, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(op.f("ix_referral_events_id"), "referral_events", ["id"], unique=False)
    op.create_index(op.f("ix_referral_events_code_id"), "referral_events", ["code_id"], unique=False)
    op.create_index(op.f("ix_referral_events_user_id"), "referral_events", ["user_id"], unique=False)
    op.create_index(op.f("ix_referral_events_created_at"), "referral_events", ["created_at"], unique=False)

    op.create_table(
        "song_versions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.String(length=20), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("storage_path", sa.String(length=500), nullable=False),
        sa.Column("is_selected", sa.Boolean(), nullable=False),
        sa.Column("is_downloaded", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
    )
    op.create_index(op.f("ix_song_versions_id"), "song_versions", ["id"], unique=False)
    op.create_index(op.f("ix_song_versions_order_id"), "song_versions", ["order_id"], unique=False)

    op.create_table(
        "order_revisions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("revision_type", revision_type, nullable=False),
        sa.Column("kind", revision_kind, nullable=False),
        sa.Column("author", revision_author, nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(op.f("ix_order_revisions_id"), "order_revisions", ["id"], unique=False)
    op.create_index(op.f("ix_order_revisions_order_id"), "order_revisions", ["order_id"], unique=False)


def downgrade() -> None:
    for table in (
        "order_revisions",
        "song_versions",
        "referral_events",
        "commissions",
        "affiliate_payouts",
        "promo_code_usage",
        "order_addons",
        "orders",
        "promo_codes",
        "affiliates",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (
        revision_author, revision_kind, revision_type, referral_event_type, payout_method,
        payout_status, commission_status, promo_code_kind, affiliate_status, order_status,
        payment_status, package_type,
    ):
        enum_type.drop(bind, checkfirst=True)
