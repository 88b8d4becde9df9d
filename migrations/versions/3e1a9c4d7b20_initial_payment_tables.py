"""initial payment tables

Revision ID: 3e1a9c4d7b20
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "3e1a9c4d7b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "merchants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("business_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("telegram_chat_id", sa.BigInteger(), nullable=True),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("merchant_id", sa.String(36), sa.ForeignKey("merchants.id"), nullable=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("auto_resume_on_payment", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_cycles", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paused_at", sa.DateTime(), nullable=True),
        sa.Column("resumed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    op.create_table(
        "payment_links",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("merchant_id", sa.String(36), sa.ForeignKey("merchants.id"), nullable=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("source", sa.String(32), nullable=False, server_default="manual"),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_payment_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "subscription_invoices",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("payment_link_id", sa.String(36), sa.ForeignKey("payment_links.id"), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="sent"),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "ix_subscription_invoices_payment_link_id", "subscription_invoices", ["payment_link_id"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("nowpayments_payment_id", sa.String(64), nullable=True),
        sa.Column("order_id", sa.String(128), nullable=True),
        sa.Column("merchant_id", sa.String(36), sa.ForeignKey("merchants.id"), nullable=True),
        sa.Column("payment_link_id", sa.String(36), sa.ForeignKey("payment_links.id"), nullable=True),
        sa.Column("status", sa.String(64), nullable=False, server_default="pending"),
        sa.Column("raw_gateway_status", sa.String(64), nullable=True),
        sa.Column("amount", sa.Numeric(20, 8), nullable=True),
        sa.Column("currency", sa.String(16), nullable=True),
        sa.Column("pay_amount", sa.Numeric(20, 8), nullable=True),
        sa.Column("pay_currency", sa.String(16), nullable=True),
        sa.Column("pay_address", sa.String(128), nullable=True),
        sa.Column("payin_hash", sa.String(128), nullable=True),
        sa.Column("payout_hash", sa.String(128), nullable=True),
        sa.Column("tx_hash", sa.String(128), nullable=True),
        sa.Column("amount_received", sa.Numeric(20, 8), nullable=True),
        sa.Column("currency_received", sa.String(16), nullable=True),
        sa.Column("merchant_receives", sa.Numeric(20, 8), nullable=True),
        sa.Column("payout_currency", sa.String(16), nullable=True),
        sa.Column("gateway_fee", sa.Numeric(20, 8), nullable=False, server_default="0"),
        sa.Column("payment_data", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_transactions_nowpayments_payment_id", "transactions", ["nowpayments_payment_id"])
    op.create_index("ix_transactions_order_id", "transactions", ["order_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])

    op.create_table(
        "nowpayments_cache",
        sa.Column("cache_key", sa.String(255), primary_key=True),
        sa.Column("cache_data", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_nowpayments_cache_expires_at", "nowpayments_cache", ["expires_at"])

    op.create_table(
        "webhook_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("processed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_logs_provider_event"),
    )

    op.create_table(
        "email_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("email_logs")
    op.drop_table("webhook_logs")
    op.drop_index("ix_nowpayments_cache_expires_at", table_name="nowpayments_cache")
    op.drop_table("nowpayments_cache")
    op.drop_index("ix_transactions_status", table_name="transactions")
    op.drop_index("ix_transactions_order_id", table_name="transactions")
    op.drop_index("ix_transactions_nowpayments_payment_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_subscription_invoices_payment_link_id", table_name="subscription_invoices")
    op.drop_table("subscription_invoices")
    op.drop_table("payment_links")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("merchants")
