"""settlement schema

Revision ID: 20261016_01
Revises:
Create Date: 2026-10-16
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261016_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _ensure_party_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("display_name", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="member"),
            sa.Column("fee_tier", sa.String(length=32), nullable=False, server_default="default"),
            sa.Column("stripe_customer_id", sa.String(length=255), nullable=True, unique=True),
            sa.Column("preferred_currency", sa.String(length=3), nullable=False, server_default="GBP"),
            _created_at(),
        )
        op.create_index("ix_users_id", "users", ["id"], unique=False)
        op.create_index("ix_users_email", "users", ["email"], unique=True)

    if not _table_exists(inspector, "provider_profiles"):
        op.create_table(
            "provider_profiles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("display_name", sa.String(length=255), nullable=True),
            sa.Column("stripe_account_id", sa.String(length=255), nullable=True),
            sa.Column("payout_currency", sa.String(length=3), nullable=False, server_default="GBP"),
            _created_at(),
        )
        op.create_index("ix_provider_profiles_id", "provider_profiles", ["id"], unique=False)
        op.create_index("ix_provider_profiles_user_id", "provider_profiles", ["user_id"], unique=True)


def _ensure_order_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_number", sa.String(length=32), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("order_type", sa.String(length=32), nullable=False),
            sa.Column("total_amount", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="GBP"),
            sa.Column("fee_percent", sa.Numeric(5, 2), nullable=False),
            sa.Column("platform_fee_amount", sa.Integer(), nullable=False),
            sa.Column("vat_rate", sa.Numeric(5, 4), nullable=False),
            sa.Column("vat_amount", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("escrow_status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("awaiting_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("completion_submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("payment_source", sa.String(length=16), nullable=True),
            sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
            sa.Column("decline_reason", sa.Text(), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("progress_percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_nudged_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_orders_id", "orders", ["id"], unique=False)
        op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
        op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"], unique=False)
        op.create_index("ix_orders_seller_id", "orders", ["seller_id"], unique=False)
        op.create_index("ix_orders_status", "orders", ["status"], unique=False)
        op.create_index("ix_orders_stripe_payment_intent_id", "orders", ["stripe_payment_intent_id"], unique=False)

    if not _table_exists(inspector, "order_events"):
        op.create_table(
            "order_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("actor_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            _created_at(),
        )
        op.create_index("ix_order_events_id", "order_events", ["id"], unique=False)
        op.create_index("ix_order_events_order_id", "order_events", ["order_id"], unique=False)

    if not _table_exists(inspector, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("opened_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
            sa.Column("outcome", sa.String(length=16), nullable=True),
            sa.Column("refund_amount", sa.Integer(), nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            sa.Column("resolved_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            _created_at(),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_disputes_id", "disputes", ["id"], unique=False)
        op.create_index("ix_disputes_order_id", "disputes", ["order_id"], unique=False)
        op.create_index("ix_disputes_status", "disputes", ["status"], unique=False)


def _ensure_billing_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "platform_fee_config"):
        op.create_table(
            "platform_fee_config",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False),
            sa.Column("order_type", sa.String(length=32), nullable=False),
            sa.Column("fee_percent", sa.Numeric(5, 2), nullable=False),
            sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("effective_until", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            sa.UniqueConstraint("role", "order_type", "effective_from", name="uq_fee_config_role_type_from"),
        )
        op.create_index("ix_platform_fee_config_id", "platform_fee_config", ["id"], unique=False)

    if not _table_exists(inspector, "account_balances"):
        op.create_table(
            "account_balances",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("balance_amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="GBP"),
            sa.Column("last_topped_up_at", sa.DateTime(timezone=True), nullable=True),
            _created_at(),
            _updated_at(),
            sa.CheckConstraint("balance_amount >= 0", name="ck_account_balances_non_negative"),
        )
        op.create_index("ix_account_balances_id", "account_balances", ["id"], unique=False)
        op.create_index("ix_account_balances_user_id", "account_balances", ["user_id"], unique=True)

    if not _table_exists(inspector, "balance_transactions"):
        op.create_table(
            "balance_transactions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("transaction_type", sa.String(length=32), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("balance_before", sa.Integer(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("reference_type", sa.String(length=32), nullable=True),
            sa.Column("reference_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=255), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            _created_at(),
        )
        op.create_index("ix_balance_transactions_id", "balance_transactions", ["id"], unique=False)
        op.create_index("ix_balance_transactions_user_id", "balance_transactions", ["user_id"], unique=False)
        op.create_index(
            "ix_balance_transactions_idempotency_key",
            "balance_transactions",
            ["idempotency_key"],
            unique=True,
        )

    if not _table_exists(inspector, "failed_payments"):
        op.create_table(
            "failed_payments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("timesheet_id", sa.String(length=64), nullable=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True, unique=True),
            sa.Column("failure_code", sa.String(length=64), nullable=True),
            sa.Column("failure_message", sa.Text(), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="GBP"),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
            sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            _created_at(),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_failed_payments_id", "failed_payments", ["id"], unique=False)
        op.create_index("ix_failed_payments_order_id", "failed_payments", ["order_id"], unique=False)
        op.create_index("ix_failed_payments_user_id", "failed_payments", ["user_id"], unique=False)
        op.create_index("ix_failed_payments_status", "failed_payments", ["status"], unique=False)

    if not _table_exists(inspector, "saved_payment_methods"):
        op.create_table(
            "saved_payment_methods",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("stripe_payment_method_id", sa.String(length=255), nullable=False, unique=True),
            sa.Column("card_brand", sa.String(length=32), nullable=True),
            sa.Column("card_last_four", sa.String(length=4), nullable=True),
            sa.Column("card_exp_month", sa.Integer(), nullable=True),
            sa.Column("card_exp_year", sa.Integer(), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            _created_at(),
        )
        op.create_index("ix_saved_payment_methods_id", "saved_payment_methods", ["id"], unique=False)
        op.create_index("ix_saved_payment_methods_user_id", "saved_payment_methods", ["user_id"], unique=False)

    if not _table_exists(inspector, "currency_exchange_rates"):
        op.create_table(
            "currency_exchange_rates",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("base_currency", sa.String(length=3), nullable=False),
            sa.Column("target_currency", sa.String(length=3), nullable=False),
            sa.Column("rate", sa.Numeric(12, 6), nullable=False),
            sa.Column("fetched_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("base_currency", "target_currency", name="uq_exchange_rate_pair"),
        )
        op.create_index("ix_currency_exchange_rates_id", "currency_exchange_rates", ["id"], unique=False)


def _ensure_payout_tables(inspector: sa.Inspector) -> None:
    if not _table_exists(inspector, "payout_requests"):
        op.create_table(
            "payout_requests",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("provider_id", sa.Integer(), sa.ForeignKey("provider_profiles.id"), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="GBP"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("stripe_payout_id", sa.String(length=255), nullable=True, unique=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("requested_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_payout_requests_id", "payout_requests", ["id"], unique=False)
        op.create_index("ix_payout_requests_provider_id", "payout_requests", ["provider_id"], unique=False)
        op.create_index("ix_payout_requests_status", "payout_requests", ["status"], unique=False)

    if not _table_exists(inspector, "payout_preferences"):
        op.create_table(
            "payout_preferences",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "provider_id",
                sa.Integer(),
                sa.ForeignKey("provider_profiles.id"),
                nullable=False,
                unique=True,
            ),
            sa.Column("payout_schedule", sa.String(length=16), nullable=False, server_default="automatic"),
            sa.Column("minimum_payout_amount", sa.Integer(), nullable=False, server_default=sa.text("5000")),
            sa.Column("preferred_payout_day", sa.Integer(), nullable=True),
            sa.Column("instant_payout_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            _created_at(),
            _updated_at(),
        )
        op.create_index("ix_payout_preferences_id", "payout_preferences", ["id"], unique=False)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    _ensure_party_tables(inspector)
    inspector = sa.inspect(bind)
    _ensure_order_tables(inspector)
    inspector = sa.inspect(bind)
    _ensure_billing_tables(inspector)
    inspector = sa.inspect(bind)
    _ensure_payout_tables(inspector)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name in (
        "payout_preferences",
        "payout_requests",
        "currency_exchange_rates",
        "saved_payment_methods",
        "failed_payments",
        "balance_transactions",
        "account_balances",
        "platform_fee_config",
        "disputes",
        "order_events",
        "orders",
        "provider_profiles",
        "users",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
