"""Append-only memory entries with tag index."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "memory_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value_json", sa.Text(), nullable=False),
        sa.Column("memory_type", sa.String(), nullable=False),
        sa.Column("relevance", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("agent", sa.String(), nullable=True),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entry_id", name="uq_memory_entries_entry_id"),
    )

    op.create_table(
        "memory_tags",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("memory_id", sa.Integer(), nullable=False),
        sa.Column("tag", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["memory_id"], ["memory_entries.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_memory_entries_key", "memory_entries", ["key"])
    op.create_index("ix_memory_entries_memory_type", "memory_entries", ["memory_type"])
    op.create_index("ix_memory_entries_agent", "memory_entries", ["agent"])
    op.create_index("ix_memory_entries_task_id", "memory_entries", ["task_id"])
    op.create_index("idx_memory_entries_relevance", "memory_entries", ["relevance", "id"])
    op.create_index("idx_memory_tags_tag", "memory_tags", ["tag", "memory_id"])


def downgrade() -> None:
    op.drop_index("idx_memory_tags_tag", table_name="memory_tags")
    op.drop_index("idx_memory_entries_relevance", table_name="memory_entries")
    op.drop_index("ix_memory_entries_task_id", table_name="memory_entries")
    op.drop_index("ix_memory_entries_agent", table_name="memory_entries")
    op.drop_index("ix_memory_entries_memory_type", table_name="memory_entries")
    op.drop_index("ix_memory_entries_key", table_name="memory_entries")
    op.drop_table("memory_tags")
    op.drop_table("memory_entries")
