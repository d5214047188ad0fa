"""add repository configs and pipeline records

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

revision = "1a2b3c4d5e6f"
down_revision = None
branch_labels = None
depends_on = None

repo_platform_enum = sa.Enum("github", "gitlab", name="repoplatform", create_type=True)
pipeline_status_enum = sa.Enum(
    "pending", "running", "success", "failed", "canceled", name="pipelinestatus", create_type=True
)
trigger_source_enum = sa.Enum("webhook", "auto", "manual", name="triggersource", create_type=True)


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    if is_postgres:
        repo_platform_enum.create(bind, checkfirst=True)
        pipeline_status_enum.create(bind, checkfirst=True)
        trigger_source_enum.create(bind, checkfirst=True)

    op.create_table(
        "repository_configs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("platform", repo_platform_enum, nullable=False),
        sa.Column("repo_url", sa.String(length=512), nullable=False),
        sa.Column("deploy_action", sa.String(length=512), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("webhook_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("repo_url", name="uq_repository_configs_repo_url"),
    )

    op.create_table(
        "pipeline_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("repo_config_id", sa.Integer(), nullable=False),
        sa.Column("external_id", sa.String(length=100), nullable=True),
        sa.Column("ref", sa.String(length=255), nullable=True),
        sa.Column("commit_sha", sa.String(length=64), nullable=True),
        sa.Column("commit_message", sa.Text(), nullable=True),
        sa.Column("author", sa.String(length=200), nullable=True),
        sa.Column("status", pipeline_status_enum, nullable=False),
        sa.Column("trigger_source", trigger_source_enum, nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_records_repo_config_id", "pipeline_records", ["repo_config_id"])
    op.create_index("ix_pipeline_records_external_id", "pipeline_records", ["external_id"])
    op.create_index("ix_pipeline_records_created_at", "pipeline_records", ["created_at"])


def downgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"

    op.drop_index("ix_pipeline_records_created_at", table_name="pipeline_records")
    op.drop_index("ix_pipeline_records_external_id", table_name="pipeline_records")
    op.drop_index("ix_pipeline_records_repo_config_id", table_name="pipeline_records")
    op.drop_table("pipeline_records")
    op.drop_table("repository_configs")

    if is_postgres:
        trigger_source_enum.drop(bind, checkfirst=True)
        pipeline_status_enum.drop(bind, checkfirst=True)
        repo_platform_enum.drop(bind, checkfirst=True)
