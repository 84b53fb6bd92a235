"""offline queue and sync conflicts

Revision ID: 0001_offline_queue
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_offline_queue"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "offline_queue",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("processed_at", sa.BigInteger(), nullable=True),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("optimistic_id", sa.String(), nullable=False),
        sa.Column("server_response", sa.JSON(), nullable=True),
        sa.Column("conflict_data", sa.JSON(), nullable=True),
        sa.Column("base_version", sa.BigInteger(), nullable=True),
        sa.Column("local_changes", sa.JSON(), nullable=True),
    )
    op.create_index("ix_offline_queue_status", "offline_queue", ["status"])
    op.create_index("ix_offline_queue_created_at", "offline_queue", ["created_at"])
    op.create_index("ix_offline_queue_optimistic_id", "offline_queue", ["optimistic_id"])

    op.create_table(
        "sync_conflicts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("farm_id", sa.String(64), nullable=False),
        sa.Column("table_name", sa.String(100), nullable=False),
        sa.Column("record_id", sa.String(64), nullable=False),
        sa.Column("client_data", sa.JSON(), nullable=False),
        sa.Column("server_data", sa.JSON(), nullable=False),
        sa.Column("resolution", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("resolved_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_sync_conflicts_farm_id", "sync_conflicts", ["farm_id"])
    op.create_index("ix_sync_conflicts_resolution", "sync_conflicts", ["resolution"])


def downgrade():
    op.drop_index("ix_sync_conflicts_resolution", table_name="sync_conflicts")
    op.drop_index("ix_sync_conflicts_farm_id", table_name="sync_conflicts")
    op.drop_table("sync_conflicts")

    op.drop_index("ix_offline_queue_optimistic_id", table_name="offline_queue")
    op.drop_index("ix_offline_queue_created_at", table_name="offline_queue")
    op.drop_index("ix_offline_queue_status", table_name="offline_queue")
    op.drop_table("offline_queue")
