"""create vault scan tables

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "vault_items",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("mime_type", sa.String(length=255), nullable=True),
        sa.Column("size", sa.BigInteger(), nullable=True),
        sa.Column("storage_provider", sa.String(length=20), nullable=False, server_default="r2_staging"),
        sa.Column("r2_staging_bucket", sa.String(length=255), nullable=True),
        sa.Column("r2_staging_key", sa.String(length=1024), nullable=True),
        sa.Column("b2_bucket", sa.String(length=255), nullable=True),
        sa.Column("b2_key", sa.String(length=1024), nullable=True),
        sa.Column("r2_bucket", sa.String(length=255), nullable=True),
        sa.Column("r2_key", sa.String(length=1024), nullable=True),
        sa.Column("scan_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("scan_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scan_results", _json(), nullable=True),
        sa.Column("quarantine_info", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_vault_items_user_id"), "vault_items", ["user_id"], unique=False)
    op.create_index(op.f("ix_vault_items_storage_provider"), "vault_items", ["storage_provider"], unique=False)
    op.create_index(op.f("ix_vault_items_scan_status"), "vault_items", ["scan_status"], unique=False)
    op.create_index(op.f("ix_vault_items_created_at"), "vault_items", ["created_at"], unique=False)

    op.create_table(
        "quarantined_files",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("vault_item_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("file_name", sa.String(length=512), nullable=False),
        sa.Column("original_size", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("quarantined_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("threats", _json(), nullable=False),
        sa.Column("scan_provider", sa.String(length=64), nullable=False),
        sa.Column("staging_path", sa.String(length=1024), nullable=False),
        sa.Column("quarantine_path", sa.String(length=1024), nullable=False),
        sa.Column("retention_expiry", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_quarantined_files_id"), "quarantined_files", ["id"], unique=False)
    op.create_index(op.f("ix_quarantined_files_vault_item_id"), "quarantined_files", ["vault_item_id"], unique=False)
    op.create_index(op.f("ix_quarantined_files_user_id"), "quarantined_files", ["user_id"], unique=False)
    op.create_index(op.f("ix_quarantined_files_retention_expiry"), "quarantined_files", ["retention_expiry"], unique=False)

    op.create_table(
        "file_scan_cache",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("file_hash", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.String(length=512), nullable=True),
        sa.Column("mime_type", sa.String(length=255), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("scan_result", _json(), nullable=False),
        sa.Column("scanned_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_file_scan_cache_id"), "file_scan_cache", ["id"], unique=False)
    op.create_index(op.f("ix_file_scan_cache_file_hash"), "file_scan_cache", ["file_hash"], unique=False)
    op.create_index(op.f("ix_file_scan_cache_expires_at"), "file_scan_cache", ["expires_at"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("data", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_notifications_id"), "notifications", ["id"], unique=False)
    op.create_index(op.f("ix_notifications_user_id"), "notifications", ["user_id"], unique=False)
    op.create_index(op.f("ix_notifications_type"), "notifications", ["type"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_notifications_type"), table_name="notifications")
    op.drop_index(op.f("ix_notifications_user_id"), table_name="notifications")
    op.drop_index(op.f("ix_notifications_id"), table_name="notifications")
    op.drop_table("notifications")

    op.drop_index(op.f("ix_file_scan_cache_expires_at"), table_name="file_scan_cache")
    op.drop_index(op.f("ix_file_scan_cache_file_hash"), table_name="file_scan_cache")
    op.drop_index(op.f("ix_file_scan_cache_id"), table_name="file_scan_cache")
    op.drop_table("file_scan_cache")

    op.drop_index(op.f("ix_quarantined_files_retention_expiry"), table_name="quarantined_files")
    op.drop_index(op.f("ix_quarantined_files_user_id"), table_name="quarantined_files")
    op.drop_index(op.f("ix_quarantined_files_vault_item_id"), table_name="quarantined_files")
    op.drop_index(op.f("ix_quarantined_files_id"), table_name="quarantined_files")
    op.drop_table("quarantined_files")

    op.drop_index(op.f("ix_vault_items_created_at"), table_name="vault_items")
    op.drop_index(op.f("ix_vault_items_scan_status"), table_name="vault_items")
    op.drop_index(op.f("ix_vault_items_storage_provider"), table_name="vault_items")
    op.drop_index(op.f("ix_vault_items_user_id"), table_name="vault_items")
    op.drop_table("vault_items")
