"""create securities, balances, allowlist, transfers, snapshots, corporate actions, event log

Revision ID: 0001_create_cap_table_tables
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_create_cap_table_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "securities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("mint_address", sa.Text(), nullable=False, unique=True),
        sa.Column("symbol", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("decimals", sa.Integer(), nullable=False, server_default="9"),
        sa.Column("total_supply", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("current_supply", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("program_id", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("previous_mint", sa.Text(), nullable=True),
        sa.Column("replaced_by", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_securities_symbol", "securities", ["symbol"])

    op.create_table(
        "token_balances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("security_id", sa.Integer(), sa.ForeignKey("securities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("wallet_address", sa.Text(), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("slot", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("security_id", "wallet_address", name="uq_token_balances_security_wallet"),
    )
    op.create_index("ix_token_balances_security_balance", "token_balances", ["security_id", "balance"])

    op.create_table(
        "allowlist",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("security_id", sa.Integer(), sa.ForeignKey("securities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("wallet_address", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("approved_by", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("slot", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("event_index", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("security_id", "wallet_address", name="uq_allowlist_security_wallet"),
        sa.CheckConstraint("status IN ('pending', 'approved', 'revoked')", name="ck_allowlist_status"),
    )

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("security_id", sa.Integer(), sa.ForeignKey("securities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("transaction_signature", sa.Text(), nullable=False, unique=True),
        sa.Column("from_wallet", sa.Text(), nullable=False),
        sa.Column("to_wallet", sa.Text(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("slot", sa.BigInteger(), nullable=False),
        sa.Column("block_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="confirmed"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_transfers_security_slot", "transfers", ["security_id", "slot"])

    op.create_table(
        "cap_table_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("security_id", sa.Integer(), sa.ForeignKey("securities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("block_height", sa.BigInteger(), nullable=False),
        sa.Column("total_supply", sa.BigInteger(), nullable=False),
        sa.Column("holder_count", sa.Integer(), nullable=False),
        sa.Column("snapshot_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("security_id", "block_height", name="uq_cap_table_snapshots_security_height"),
    )

    op.create_table(
        "corporate_actions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("security_id", sa.Integer(), sa.ForeignKey("securities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("action_type", sa.Text(), nullable=False),
        sa.Column("parameters", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("current_step", sa.Text(), nullable=True),
        sa.Column("holders_migrated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("executed_by", sa.Text(), nullable=True),
        sa.Column("transaction_signature", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("action_type IN ('stock_split', 'symbol_change')", name="ck_corporate_actions_type"),
        sa.CheckConstraint("status IN ('in_progress', 'completed', 'failed')", name="ck_corporate_actions_status"),
    )
    op.create_index("ix_corporate_actions_security", "corporate_actions", ["security_id"])

    op.create_table(
        "event_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("program_id", sa.Text(), nullable=True),
        sa.Column("event_key", sa.Text(), nullable=False, unique=True),
        sa.Column("signature", sa.Text(), nullable=False),
        sa.Column("event_index", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("security_mint", sa.Text(), nullable=True),
        sa.Column("slot", sa.BigInteger(), nullable=False),
        sa.Column("block_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "ingest_time",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "payload_json",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
        ),
        sa.Column("content_hash", sa.Text(), nullable=False),
    )
    op.create_index("ix_event_log_slot", "event_log", ["slot"])
    op.create_index("ix_event_log_security_mint", "event_log", ["security_mint"])

    op.create_table(
        "projection_marks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("effect_key", sa.Text(), nullable=False, unique=True),
        sa.Column("signature", sa.Text(), nullable=False),
        sa.Column("slot", sa.BigInteger(), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )


def downgrade() -> None:
    op.drop_table("projection_marks")
    op.drop_index("ix_event_log_security_mint", table_name="event_log")
    op.drop_index("ix_event_log_slot", table_name="event_log")
    op.drop_table("event_log")
    op.drop_index("ix_corporate_actions_security", table_name="corporate_actions")
    op.drop_table("corporate_actions")
    op.drop_table("cap_table_snapshots")
    op.drop_index("ix_transfers_security_slot", table_name="transfers")
    op.drop_table("transfers")
    op.drop_table("allowlist")
    op.drop_index("ix_token_balances_security_balance", table_name="token_balances")
    op.drop_table("token_balances")
    op.drop_index("ix_securities_symbol", table_name="securities")
    op.drop_table("securities")
