"""credit ledger, search sessions and enrichment runs

Revision ID: 20261016_000001
Revises:
Create Date: 2026-10-16 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261016_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ACTION_TYPES = ("SEARCH_PAGE_CHARGE", "AI_ENRICH_CHARGE", "REFUND", "INITIAL_GRANT", "TOP_UP")
ENRICHMENT_STATUSES = ("PENDING", "CHARGED", "SKIPPED", "FAILED", "REFUNDED")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column(
            "action_type",
            sa.Enum(*ACTION_TYPES, name="credit_action_type", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("reference_entry_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["reference_entry_id"], ["credit_ledger.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"], unique=False)
    op.create_index("ix_credit_ledger_action_type", "credit_ledger", ["action_type"], unique=False)
    op.create_index("ix_credit_ledger_reference_entry_id", "credit_ledger", ["reference_entry_id"], unique=False)
    op.create_index("ix_credit_ledger_user_created", "credit_ledger", ["user_id", "created_at"], unique=False)

    op.create_table(
        "search_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("search_key", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_search_sessions_user_id", "search_sessions", ["user_id"], unique=False)
    op.create_index("ix_search_sessions_search_key", "search_sessions", ["search_key"], unique=False)
    op.create_index("ix_search_sessions_updated_at", "search_sessions", ["updated_at"], unique=False)
    op.create_index("ix_search_sessions_user_active", "search_sessions", ["user_id", "is_active"], unique=False)

    op.create_table(
        "search_charged_rows",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("row_fingerprint", sa.String(), nullable=False),
        sa.Column("ledger_entry_id", sa.String(), nullable=True),
        sa.Column("charged_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["ledger_entry_id"], ["credit_ledger.id"]),
        sa.ForeignKeyConstraint(["session_id"], ["search_sessions.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "row_fingerprint", name="uq_search_charged_rows_session_fingerprint"),
    )
    op.create_index("ix_search_charged_rows_session_id", "search_charged_rows", ["session_id"], unique=False)
    op.create_index("ix_search_charged_rows_user_id", "search_charged_rows", ["user_id"], unique=False)
    op.create_index(
        "ix_search_charged_rows_ledger_entry_id", "search_charged_rows", ["ledger_entry_id"], unique=False
    )

    op.create_table(
        "enrichment_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*ENRICHMENT_STATUSES, name="enrichment_status", native_enum=False, length=16),
            nullable=False,
        ),
        sa.Column("charged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("credit_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_entry_id", sa.String(), nullable=True),
        sa.Column("refund_entry_id", sa.String(), nullable=True),
        sa.Column("input_json", sa.JSON(), nullable=True),
        sa.Column("output_json", sa.JSON(), nullable=True),
        sa.Column("filled_fields", sa.JSON(), nullable=True),
        sa.Column("result_summary", sa.Text(), nullable=True),
        sa.Column("confidence_level", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["ledger_entry_id"], ["credit_ledger.id"]),
        sa.ForeignKeyConstraint(["refund_entry_id"], ["credit_ledger.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_enrichment_runs_user_id", "enrichment_runs", ["user_id"], unique=False)
    op.create_index("ix_enrichment_runs_target_id", "enrichment_runs", ["target_id"], unique=False)
    op.create_index("ix_enrichment_runs_status", "enrichment_runs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_enrichment_runs_status", table_name="enrichment_runs")
    op.drop_index("ix_enrichment_runs_target_id", table_name="enrichment_runs")
    op.drop_index("ix_enrichment_runs_user_id", table_name="enrichment_runs")
    op.drop_table("enrichment_runs")

    op.drop_index("ix_search_charged_rows_ledger_entry_id", table_name="search_charged_rows")
    op.drop_index("ix_search_charged_rows_user_id", table_name="search_charged_rows")
    op.drop_index("ix_search_charged_rows_session_id", table_name="search_charged_rows")
    op.drop_table("search_charged_rows")

    op.drop_index("ix_search_sessions_user_active", table_name="search_sessions")
    op.drop_index("ix_search_sessions_updated_at", table_name="search_sessions")
    op.drop_index("ix_search_sessions_search_key", table_name="search_sessions")
    op.drop_index("ix_search_sessions_user_id", table_name="search_sessions")
    op.drop_table("search_sessions")

    op.drop_index("ix_credit_ledger_user_created", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_reference_entry_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_action_type", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_table("credit_accounts")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
