"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "stories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(160), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("style", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_stories_slug", "stories", ["slug"], unique=True)
    op.create_index("ix_stories_user_id", "stories", ["user_id"])

    op.create_table(
        "pages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "story_id", sa.String(36),
            sa.ForeignKey("stories.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("page_number", sa.Integer(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("character_image_urls", sa.JSON(), nullable=True),
        sa.Column("generated_image_url", sa.String(2048), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("story_id", "page_number", name="uq_page_story_number"),
    )
    op.create_index("ix_pages_story_id", "pages", ["story_id"])

    op.create_table(
        "quota_counters",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("used", sa.Integer(), nullable=False),
        sa.Column("window_started_at", sa.Float(), nullable=False),
        sa.Column("reset_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_quota_counters_reset_at", "quota_counters", ["reset_at"])

    op.create_table(
        "burst_windows",
        sa.Column("bucket", sa.String(512), primary_key=True),
        sa.Column("window_index", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("hits", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_burst_windows_expires_at", "burst_windows", ["expires_at"])

    op.create_table(
        "idempotency_leases",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("scope", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("holder", sa.String(36), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=False),
    )
    op.create_index("ix_idempotency_leases_user_id", "idempotency_leases", ["user_id"])
    op.create_index("ix_idempotency_leases_expires_at", "idempotency_leases", ["expires_at"])


def downgrade() -> None:
    op.drop_table("idempotency_leases")
    op.drop_table("burst_windows")
    op.drop_table("quota_counters")
    op.drop_table("pages")
    op.drop_table("stories")
