"""initial settlement schema

Revision ID: 0001_initial_settlement_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial_settlement_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


owner_type_enum = sa.Enum("user", "system", name="owner_type_enum", native_enum=False, create_constraint=True)
ledger_ref_type_enum = sa.Enum(
    "mining_payout",
    "invite_commission",
    "withdrawal",
    name="ledger_ref_type_enum",
    native_enum=False,
    create_constraint=True,
)
batch_status_enum = sa.Enum(
    "processing",
    "settled",
    "empty",
    "skipped",
    "failed",
    name="batch_status_enum",
    native_enum=False,
    create_constraint=True,
)
reconcile_metric_enum = sa.Enum(
    "hashrate", "revenue", name="reconcile_metric_enum", native_enum=False, create_constraint=True
)
reconcile_status_enum = sa.Enum("ok", "warn", name="reconcile_status_enum", native_enum=False, create_constraint=True)
alert_kind_enum = sa.Enum(
    "reconcile_hashrate",
    "reconcile_revenue",
    "payhash_missing",
    "rate_missing",
    "conservation_violation",
    "hourly_earning_spike",
    "snapshot_missing",
    name="alert_kind_enum",
    native_enum=False,
    create_constraint=True,
)
alert_severity_enum = sa.Enum(
    "info", "warn", "critical", name="alert_severity_enum", native_enum=False, create_constraint=True
)
alert_status_enum = sa.Enum("open", "resolved", name="alert_status_enum", native_enum=False, create_constraint=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def _scope() -> list[sa.Column]:
    return [
        sa.Column("pool_source", sa.String(length=32), nullable=False),
        sa.Column("account", sa.String(length=128), nullable=False),
        sa.Column("coin", sa.String(length=16), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(length=128), nullable=True),
        sa.Column("inviter_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("worker_id"),
    )
    op.create_index("ix_users_inviter_id", "users", ["inviter_id"], unique=False)

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owner_type", owner_type_enum, nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=12), nullable=False),
        sa.Column("balance", sa.Numeric(precision=28, scale=8), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_type", "owner_id", "currency", name="uq_accounts_owner_currency"),
    )
    op.create_index("ix_accounts_owner_lookup", "accounts", ["owner_type", "owner_id"], unique=False)

    op.create_table(
        "asset_ledger",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("ref_type", ledger_ref_type_enum, nullable=False),
        sa.Column("ref_id", sa.String(length=255), nullable=False),
        sa.Column("currency", sa.String(length=12), nullable=False),
        sa.Column("amount", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("amount_native", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("amount_display", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("tx_hash", sa.String(length=255), nullable=True),
        sa.Column("remark", sa.String(length=255), nullable=True),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "ref_type", "ref_id", name="uq_asset_ledger_ref"),
    )
    op.create_index("ix_asset_ledger_user_id", "asset_ledger", ["user_id"], unique=False)
    op.create_index("ix_asset_ledger_tx_hash", "asset_ledger", ["tx_hash"], unique=False)

    op.create_table(
        "worker_payhash",
        sa.Column("id", sa.Integer(), nullable=False),
        *_scope(),
        sa.Column("bucket_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("worker_id", sa.String(length=255), nullable=False),
        sa.Column("hashrate_mhs", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("payhash", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "pool_source", "account", "coin", "bucket_time", "worker_id", name="uq_worker_payhash_bucket"
        ),
    )
    op.create_index(
        "ix_worker_payhash_scope_time",
        "worker_payhash",
        ["pool_source", "account", "coin", "bucket_time"],
        unique=False,
    )

    op.create_table(
        "pool_balance_snapshot",
        sa.Column("id", sa.Integer(), nullable=False),
        *_scope(),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("income_total", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("balance", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("paid_total", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("hashrate_mhs", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("active_workers", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pool_balance_snapshot_scope_time",
        "pool_balance_snapshot",
        ["pool_source", "account", "coin", "captured_at"],
        unique=False,
    )

    op.create_table(
        "pool_payout",
        sa.Column("id", sa.Integer(), nullable=False),
        *_scope(),
        sa.Column("payout_key", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pool_source", "account", "coin", "payout_key", name="uq_pool_payout_key"),
    )

    op.create_table(
        "exchange_rate",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("base_currency", sa.String(length=16), nullable=False),
        sa.Column("quote_currency", sa.String(length=16), nullable=False),
        sa.Column("rate", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_exchange_rate_pair_time",
        "exchange_rate",
        ["base_currency", "quote_currency", "observed_at"],
        unique=False,
    )

    op.create_table(
        "reconcile_report",
        sa.Column("id", sa.Integer(), nullable=False),
        *_scope(),
        sa.Column("metric", reconcile_metric_enum, nullable=False),
        sa.Column("ref_key", sa.String(length=255), nullable=False),
        sa.Column("baseline", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("observed", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("diff_ratio", sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column("threshold", sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column("status", reconcile_status_enum, nullable=False),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_reconcile_report_scope",
        "reconcile_report",
        ["pool_source", "account", "coin", "metric"],
        unique=False,
    )

    op.create_table(
        "settlement_batch",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_key", sa.String(length=255), nullable=False),
        *_scope(),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", batch_status_enum, nullable=False),
        sa.Column("gross_amount_native", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("gross_amount_accounting", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("accounting_unit", sa.String(length=12), nullable=True),
        sa.Column("coin_to_accounting_rate", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("accounting_to_display_rate", sa.Numeric(precision=28, scale=8), nullable=True),
        sa.Column("rate_source", sa.String(length=32), nullable=True),
        sa.Column("commission_rate", sa.Numeric(precision=10, scale=6), nullable=True),
        sa.Column("total_score", sa.BigInteger(), nullable=True),
        sa.Column("unclaimed_score", sa.BigInteger(), nullable=True),
        sa.Column("start_snapshot_id", sa.Integer(), nullable=True),
        sa.Column("end_snapshot_id", sa.Integer(), nullable=True),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.Column("remark", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["start_snapshot_id"], ["pool_balance_snapshot.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["end_snapshot_id"], ["pool_balance_snapshot.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_key"),
        sa.UniqueConstraint(
            "pool_source", "account", "coin", "window_start", "window_end", name="uq_settlement_batch_window"
        ),
    )
    op.create_index("ix_settlement_batch_status", "settlement_batch", ["status"], unique=False)
    op.create_index(
        "ix_settlement_batch_scope_end",
        "settlement_batch",
        ["pool_source", "account", "coin", "window_end"],
        unique=False,
    )

    op.create_table(
        "settlement_item",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("score", sa.BigInteger(), nullable=False),
        sa.Column("gross_share", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("commission_share", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("net_share", sa.Numeric(precision=28, scale=8), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["batch_id"], ["settlement_batch.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_id", "user_id", name="uq_settlement_item_batch_user"),
    )
    op.create_index("ix_settlement_item_user_id", "settlement_item", ["user_id"], unique=False)

    op.create_table(
        "commission_record",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("invitee_id", sa.Integer(), nullable=False),
        sa.Column("source_amount", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("commission_rate", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("commission_amount", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("currency", sa.String(length=12), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["batch_id"], ["settlement_batch.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_id", "invitee_id", name="uq_commission_record_batch_invitee"),
    )
    op.create_index("ix_commission_record_user_id", "commission_record", ["user_id"], unique=False)

    op.create_table(
        "platform_commission",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("original_amount", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("platform_rate", sa.Numeric(precision=10, scale=6), nullable=False),
        sa.Column("commission_amount", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("inviter_amount", sa.Numeric(precision=28, scale=8), nullable=False, server_default="0"),
        sa.Column("platform_amount", sa.Numeric(precision=28, scale=8), nullable=False),
        sa.Column("currency", sa.String(length=12), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["batch_id"], ["settlement_batch.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_id", "user_id", name="uq_platform_commission_batch_user"),
    )

    op.create_table(
        "risk_alert",
        sa.Column("id", sa.Integer(), nullable=False),
        *_scope(),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("kind", alert_kind_enum, nullable=False),
        sa.Column("severity", alert_severity_enum, nullable=False),
        sa.Column("status", alert_status_enum, nullable=False),
        sa.Column("ref_key", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pool_source", "account", "coin", "kind", "ref_key", name="uq_risk_alert_ref"),
    )
    op.create_index("ix_risk_alert_status", "risk_alert", ["status"], unique=False)
    op.create_index("ix_risk_alert_user_status", "risk_alert", ["user_id", "status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_risk_alert_user_status", table_name="risk_alert")
    op.drop_index("ix_risk_alert_status", table_name="risk_alert")
    op.drop_table("risk_alert")
    op.drop_table("platform_commission")
    op.drop_index("ix_commission_record_user_id", table_name="commission_record")
    op.drop_table("commission_record")
    op.drop_index("ix_settlement_item_user_id", table_name="settlement_item")
    op.drop_table("settlement_item")
    op.drop_index("ix_settlement_batch_scope_end", table_name="settlement_batch")
    op.drop_index("ix_settlement_batch_status", table_name="settlement_batch")
    op.drop_table("settlement_batch")
    op.drop_index("ix_reconcile_report_scope", table_name="reconcile_report")
    op.drop_table("reconcile_report")
    op.drop_index("ix_exchange_rate_pair_time", table_name="exchange_rate")
    op.drop_table("exchange_rate")
    op.drop_table("pool_payout")
    op.drop_index("ix_pool_balance_snapshot_scope_time", table_name="pool_balance_snapshot")
    op.drop_table("pool_balance_snapshot")
    op.drop_index("ix_worker_payhash_scope_time", table_name="worker_payhash")
    op.drop_table("worker_payhash")
    op.drop_index("ix_asset_ledger_tx_hash", table_name="asset_ledger")
    op.drop_index("ix_asset_ledger_user_id", table_name="asset_ledger")
    op.drop_table("asset_ledger")
    op.drop_index("ix_accounts_owner_lookup", table_name="accounts")
    op.drop_table("accounts")
    op.drop_index("ix_users_inviter_id", table_name="users")
    op.drop_table("users")
