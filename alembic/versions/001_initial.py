"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    job_status = postgresql.ENUM("PROCESSING", "COMPLETED", "FAILED", name="jobstatus")
    job_status.create(op.get_bind())

    op.create_table(
        "guidance_videos",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("challenge_id", sa.String(128), nullable=False),
        sa.Column("quest_id", sa.String(128), nullable=False),
        sa.Column("status", postgresql.ENUM(name="jobstatus", create_type=False), nullable=False, server_default="PROCESSING"),
        sa.Column("raw_path", sa.String(512), nullable=False),
        sa.Column("processed_path", sa.String(512), nullable=True),
        sa.Column("timestamps", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("duration", sa.Float(), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "(status = 'PROCESSING' AND processed_path IS NULL AND error_message IS NULL"
            " AND duration IS NULL AND file_size IS NULL)"
            " OR (status = 'COMPLETED' AND processed_path IS NOT NULL AND error_message IS NULL"
            " AND duration IS NOT NULL AND file_size IS NOT NULL)"
            " OR (status = 'FAILED' AND processed_path IS NULL AND error_message IS NOT NULL"
            " AND duration IS NULL AND file_size IS NULL)",
            name="ck_guidance_videos_state",
        ),
    )
    op.create_index("idx_guidance_videos_challenge_id", "guidance_videos", ["challenge_id"])
    op.create_index("idx_guidance_videos_quest_id", "guidance_videos", ["quest_id"])
    op.create_index("idx_guidance_videos_status", "guidance_videos", ["status"])

    op.create_table(
        "guidance_video_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("old_status", postgresql.ENUM(name="jobstatus", create_type=False), nullable=True),
        sa.Column("new_status", postgresql.ENUM(name="jobstatus", create_type=False), nullable=True),
        sa.Column("event_data", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["job_id"], ["guidance_videos.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_guidance_video_events_job_id", "guidance_video_events", ["job_id"])


def downgrade() -> None:
    op.drop_table("guidance_video_events")
    op.drop_table("guidance_videos")
    postgresql.ENUM(name="jobstatus").drop(op.get_bind())
