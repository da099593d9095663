"""create tenant etl metadata schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "tenant_namespaces",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id"),
        sa.UniqueConstraint("namespace"),
    )

    op.create_table(
        "user_tables",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("namespace", sa.String(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("row_count", sa.BigInteger(), nullable=False),
        sa.Column("size_mb", sa.Float(), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "table_name", name="uq_user_tables_tenant_table"),
    )
    op.create_index(op.f("ix_user_tables_tenant_id"), "user_tables", ["tenant_id"], unique=False)

    op.create_table(
        "storage_quota",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("total_tables", sa.Integer(), nullable=False),
        sa.Column("total_size_mb", sa.Float(), nullable=False),
        sa.Column("table_limit", sa.Integer(), nullable=False),
        sa.Column("limit_mb", sa.Integer(), nullable=False),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id"),
    )

    op.create_table(
        "upload_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column("file_size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("operation_type", sa.String(), nullable=False),
        sa.Column("conflict_columns", sa.JSON(), nullable=True),
        sa.Column("sheet", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress_pct", sa.Integer(), nullable=False),
        sa.Column("rows_committed", sa.BigInteger(), nullable=False),
        sa.Column("rows_affected", sa.BigInteger(), nullable=True),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(op.f("ix_upload_sessions_tenant_id"), "upload_sessions", ["tenant_id"], unique=False)
    op.create_index(op.f("ix_upload_sessions_status"), "upload_sessions", ["status"], unique=False)
    op.create_index(op.f("ix_upload_sessions_created_at"), "upload_sessions", ["created_at"], unique=False)

    op.create_table(
        "etl_operations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("operation_type", sa.String(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("rows_affected", sa.BigInteger(), nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_etl_operations_tenant_id"), "etl_operations", ["tenant_id"], unique=False)
    op.create_index(op.f("ix_etl_operations_created_at"), "etl_operations", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_etl_operations_created_at"), table_name="etl_operations")
    op.drop_index(op.f("ix_etl_operations_tenant_id"), table_name="etl_operations")
    op.drop_table("etl_operations")
    op.drop_index(op.f("ix_upload_sessions_created_at"), table_name="upload_sessions")
    op.drop_index(op.f("ix_upload_sessions_status"), table_name="upload_sessions")
    op.drop_index(op.f("ix_upload_sessions_tenant_id"), table_name="upload_sessions")
    op.drop_table("upload_sessions")
    op.drop_table("storage_quota")
    op.drop_index(op.f("ix_user_tables_tenant_id"), table_name="user_tables")
    op.drop_table("user_tables")
    op.drop_table("tenant_namespaces")
