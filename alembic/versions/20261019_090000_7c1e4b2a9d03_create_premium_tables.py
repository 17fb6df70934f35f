"""Create users and premium entitlement tables

Creates users (identity directory), premium_users (authoritative record),
premium_decision_logs (append-only audit), premium_client_snapshots
(client reports) and deleted_accounts (transfer restore registry).

Revision ID: 7c1e4b2a9d03
Revises:
Create Date: 2026-10-19 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "7c1e4b2a9d03"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name: str, nullable: bool = True, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kwargs)


def upgrade() -> None:
    # =========================================================================
    # Users
    # =========================================================================
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # =========================================================================
    # Premium record
    # =========================================================================
    op.create_table(
        "premium_users",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("premium", sa.Boolean(), nullable=False),
        sa.Column("premium_status", sa.String(32), nullable=True),
        _ts("premium_expires_at"),
        _ts("premium_started_at"),
        _ts("premium_last_renewed_at"),
        _ts("premium_ended_at"),
        sa.Column("entitlement_id", sa.String(100), nullable=True),
        sa.Column("entitlement_product_id", sa.String(255), nullable=True),
        sa.Column("entitlement_ids", JSONType, nullable=False),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("environment", sa.String(32), nullable=True),
        sa.Column("is_sandbox_only", sa.Boolean(), nullable=False),
        sa.Column("store", sa.String(32), nullable=True),
        sa.Column("is_cancelled", sa.Boolean(), nullable=False),
        sa.Column("will_cancel_at_period_end", sa.Boolean(), nullable=False),
        _ts("cancellation_effective_date"),
        sa.Column("billing_issue", sa.Boolean(), nullable=False),
        _ts("billing_issue_detected_at"),
        _ts("billing_recovered_at"),
        sa.Column("billing_issue_reason", sa.String(64), nullable=True),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("original_transaction_id", sa.String(255), nullable=True),
        sa.Column("transaction_id_hash", sa.String(64), nullable=True),
        sa.Column("receipt_hash", sa.String(64), nullable=True),
        sa.Column("original_app_user_id", sa.String(255), nullable=True),
        sa.Column("alias", sa.String(255), nullable=True),
        sa.Column("store_country", sa.String(8), nullable=True),
        sa.Column("last_premium_event_type", sa.String(64), nullable=True),
        sa.Column("last_premium_decision_id", sa.String(255), nullable=True),
        _ts("last_premium_decision_at"),
        sa.Column("last_premium_decision_request_id", sa.String(255), nullable=True),
        _ts("last_premium_verified_at"),
        _ts("last_premium_webhook_event_at"),
        sa.Column("last_sync_source", sa.String(64), nullable=True),
        sa.Column("last_sync_origin", sa.String(32), nullable=True),
        sa.Column("last_sync_platform", sa.String(32), nullable=True),
        sa.Column("last_sync_request_id", sa.String(255), nullable=True),
        sa.Column("last_raw_event", JSONType, nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )
    op.create_index("ix_premium_users_email", "premium_users", ["email"])
    op.create_index(
        "idx_premium_users_premium_expires",
        "premium_users",
        ["premium", "premium_expires_at"],
    )

    # =========================================================================
    # Append-only logs
    # =========================================================================
    op.create_table(
        "premium_decision_logs",
        sa.Column("log_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("premium_before", sa.Boolean(), nullable=False),
        sa.Column("premium_after", sa.Boolean(), nullable=False),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("origin", sa.String(32), nullable=False),
        sa.Column("decision_id", sa.String(255), nullable=True),
        sa.Column("request_id", sa.String(255), nullable=True),
        sa.Column("environment", sa.String(32), nullable=True),
        sa.Column("store", sa.String(32), nullable=True),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("raw_event", JSONType, nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("user_id", "decision_id", name="uq_premium_log_decision"),
    )
    op.create_index(
        "idx_premium_logs_user_created",
        "premium_decision_logs",
        ["user_id", "created_at"],
    )

    op.create_table(
        "premium_client_snapshots",
        sa.Column("snapshot_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("source", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(32), nullable=True),
        sa.Column("request_id", sa.String(255), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("payload_size", sa.Integer(), nullable=False),
        sa.Column("truncated", sa.Boolean(), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=False),
        _ts("created_at", nullable=False),
    )
    op.create_index(
        "ix_premium_client_snapshots_user_id",
        "premium_client_snapshots",
        ["user_id"],
    )

    # =========================================================================
    # Deleted accounts
    # =========================================================================
    op.create_table(
        "deleted_accounts",
        sa.Column("record_id", sa.String(128), primary_key=True),
        sa.Column("uid", sa.String(128), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("old_app_user_id", sa.String(255), nullable=True),
        _ts("deleted_at", nullable=False),
        _ts("restore_attempted_at"),
        sa.Column("last_restore_request_id", sa.String(255), nullable=True),
    )
    op.create_index("ix_deleted_accounts_email", "deleted_accounts", ["email"])


def downgrade() -> None:
    op.drop_index("ix_deleted_accounts_email", table_name="deleted_accounts")
    op.drop_table("deleted_accounts")
    op.drop_index(
        "ix_premium_client_snapshots_user_id", table_name="premium_client_snapshots"
    )
    op.drop_table("premium_client_snapshots")
    op.drop_index("idx_premium_logs_user_created", table_name="premium_decision_logs")
    op.drop_table("premium_decision_logs")
    op.drop_index("idx_premium_users_premium_expires", table_name="premium_users")
    op.drop_index("ix_premium_users_email", table_name="premium_users")
    op.drop_table("premium_users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
