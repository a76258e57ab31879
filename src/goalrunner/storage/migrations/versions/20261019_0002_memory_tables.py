"""Add agent memory entries and per-skill execution metrics."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "memories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(), nullable=False, server_default="general"),
        sa.Column("source", sa.String(), nullable=False, server_default="user"),
        sa.Column("tags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "category IN ('project','preference','fact','learned','general')",
            name="ck_memories_category",
        ),
        sa.CheckConstraint("source IN ('user','agent','auto')", name="ck_memories_source"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_memories_created", "memories", ["created_at"])

    op.create_table(
        "skill_metrics",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("skill_name", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_skill_metrics_skill_time", "skill_metrics", ["skill_name", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_skill_metrics_skill_time", table_name="skill_metrics")
    op.drop_table("skill_metrics")
    op.drop_index("idx_memories_created", table_name="memories")
    op.drop_table("memories")
