"""escrow core schema

Revision ID: b1a7e5c0d201
Revises:
Create Date: 2026-09-02 10:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "b1a7e5c0d201"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _create_users(bind):
    if _table_exists(bind, "users"):
        return
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
        sa.Column("available_balance_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("pending_balance_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("penalty_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warning_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_warning_at", sa.DateTime(), nullable=True),
        sa.Column("completed_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("suspended_until", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_phone", "users", ["phone"], unique=True)


def _create_products(bind):
    if _table_exists(bind, "products"):
        return
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("category", sa.String(length=64), nullable=False, server_default="OTHERS"),
        sa.Column("price_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_products_seller_id", "products", ["seller_id"])
    op.create_index("ix_products_category", "products", ["category"])


def _create_orders(bind):
    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_number", sa.String(length=64), nullable=False),
            sa.Column("checkout_reference", sa.String(length=80), nullable=True),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("rider_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("product_price_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("delivery_fee_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("platform_fee_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("platform_commission_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("seller_escrow_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("rider_payout_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("total_amount_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("fee_snapshot_json", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="PENDING"),
            sa.Column("escrow_status", sa.String(length=16), nullable=False, server_default="NONE"),
            sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("payment_method", sa.String(length=24), nullable=True),
            sa.Column("payment_reference", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("rider_assigned_at", sa.DateTime(), nullable=True),
            sa.Column("picked_up_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
        op.create_index("ix_orders_checkout_reference", "orders", ["checkout_reference"])
        op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
        op.create_index("ix_orders_seller_id", "orders", ["seller_id"])
        op.create_index("ix_orders_rider_id", "orders", ["rider_id"])
        op.create_index("ix_orders_status", "orders", ["status"])
        op.create_index("ix_orders_escrow_status", "orders", ["escrow_status"])
        op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"])
        op.create_index("ix_orders_created_at", "orders", ["created_at"])
        op.create_index("ix_orders_delivered_at", "orders", ["delivered_at"])

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("category", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("unit_price_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("line_total_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("fee_bps", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("fee_minor", sa.BigInteger(), nullable=False, server_default="0"),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
        op.create_index("ix_order_items_product_id", "order_items", ["product_id"])

    if not _table_exists(bind, "order_events"):
        op.create_table(
            "order_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("event", sa.String(length=64), nullable=False),
            sa.Column("from_status", sa.String(length=24), nullable=True),
            sa.Column("to_status", sa.String(length=24), nullable=True),
            sa.Column("note", sa.String(length=240), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=True, unique=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_order_events_order_id", "order_events", ["order_id"])
        op.create_index("ix_order_events_created_at", "order_events", ["created_at"])


def _create_money_tables(bind):
    if not _table_exists(bind, "escrow_transitions"):
        op.create_table(
            "escrow_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=16), nullable=False),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("order_id", "idempotency_key", name="uq_escrow_transition_order_key"),
        )
        op.create_index("ix_escrow_transitions_order_id", "escrow_transitions", ["order_id"])

    if not _table_exists(bind, "ledger_entries"):
        op.create_table(
            "ledger_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("type", sa.String(length=16), nullable=False),
            sa.Column("bucket", sa.String(length=16), nullable=False, server_default="available"),
            sa.Column("amount_minor", sa.BigInteger(), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("reference", sa.String(length=160), nullable=False),
            sa.Column("balance_before_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("balance_after_minor", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("amount_minor > 0", name="ck_ledger_amount_positive"),
        )
        op.create_index("ix_ledger_entries_user_id", "ledger_entries", ["user_id"])
        op.create_index("ix_ledger_entries_order_id", "ledger_entries", ["order_id"])
        op.create_index("ix_ledger_entries_type", "ledger_entries", ["type"])
        op.create_index("ix_ledger_entries_reference", "ledger_entries", ["reference"], unique=True)
        op.create_index("ix_ledger_entries_created_at", "ledger_entries", ["created_at"])

    if not _table_exists(bind, "category_fee_rates"):
        op.create_table(
            "category_fee_rates",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("category", sa.String(length=64), nullable=False),
            sa.Column("rate_bps", sa.Integer(), nullable=False, server_default="500"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_by_admin_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_category_fee_rates_category", "category_fee_rates", ["category"], unique=True)


def _create_dispute_tables(bind):
    if not _table_exists(bind, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="OPEN"),
            sa.Column("reason", sa.Text(), nullable=False, server_default=""),
            sa.Column("buyer_evidence_json", sa.Text(), nullable=True),
            sa.Column("seller_evidence_json", sa.Text(), nullable=True),
            sa.Column("resolution", sa.Text(), nullable=True),
            sa.Column("refund_amount_minor", sa.BigInteger(), nullable=True),
            sa.Column("resolved_by", sa.Integer(), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_disputes_order_id", "disputes", ["order_id"])
        op.create_index("ix_disputes_buyer_id", "disputes", ["buyer_id"])
        op.create_index("ix_disputes_seller_id", "disputes", ["seller_id"])
        op.create_index("ix_disputes_status", "disputes", ["status"])
        op.create_index("ix_disputes_created_at", "disputes", ["created_at"])

    if not _table_exists(bind, "dispute_messages"):
        op.create_table(
            "dispute_messages",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
            sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("sender_type", sa.String(length=16), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("attachments_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_dispute_messages_dispute_id", "dispute_messages", ["dispute_id"])
        op.create_index("ix_dispute_messages_sender_id", "dispute_messages", ["sender_id"])
        op.create_index("ix_dispute_messages_created_at", "dispute_messages", ["created_at"])

    if not _table_exists(bind, "penalties"):
        op.create_table(
            "penalties",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=True),
            sa.Column("action", sa.String(length=32), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("points_added", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("issued_by", sa.Integer(), nullable=True),
            sa.Column("banned_until", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_penalties_user_id", "penalties", ["user_id"])
        op.create_index("ix_penalties_dispute_id", "penalties", ["dispute_id"])


def _create_ops_tables(bind):
    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True, unique=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"])
        op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"])
        op.create_index("ix_platform_events_actor_user_id", "platform_events", ["actor_user_id"])
        op.create_index("ix_platform_events_subject_type", "platform_events", ["subject_type"])
        op.create_index("ix_platform_events_subject_id", "platform_events", ["subject_id"])

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("result_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])

    if not _table_exists(bind, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("scope", sa.String(length=64), nullable=False, server_default="ledger_replay"),
            sa.Column("users_checked", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"])


def upgrade():
    bind = op.get_bind()
    _create_users(bind)
    _create_products(bind)
    _create_orders(bind)
    _create_money_tables(bind)
    _create_dispute_tables(bind)
    _create_ops_tables(bind)


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "reconciliation_reports",
        "job_runs",
        "platform_events",
        "idempotency_keys",
        "penalties",
        "dispute_messages",
        "disputes",
        "category_fee_rates",
        "ledger_entries",
        "escrow_transitions",
        "order_events",
        "order_items",
        "orders",
        "products",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
