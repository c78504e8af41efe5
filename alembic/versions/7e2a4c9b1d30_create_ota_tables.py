"""create ota tables

Revision ID: 7e2a4c9b1d30
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

revision = "7e2a4c9b1d30"
down_revision = None
branch_labels = None
depends_on = None

release_channel = sa.Enum("production", "staging", "development", name="releasechannel")


def upgrade() -> None:
    op.create_table(
        "apps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("app_key", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_key", name="uq_apps_app_key"),
    )
    op.create_index("ix_apps_slug", "apps", ["slug"], unique=True)
    op.create_index("ix_apps_owner_id", "apps", ["owner_id"])

    op.create_table(
        "bundles",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=True),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("storage_type", sa.String(length=20), nullable=False),
        sa.Column("storage_key", sa.String(length=512), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["apps.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("hash", name="uq_bundles_hash"),
    )
    op.create_index("ix_bundles_app_id", "bundles", ["app_id"])

    op.create_table(
        "manifests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("version", sa.String(length=50), nullable=False),
        sa.Column("channel", release_channel, nullable=False),
        sa.Column("runtime_version", sa.String(length=50), nullable=False),
        sa.Column("platforms", sa.JSON(), nullable=False),
        sa.Column("content", sa.JSON(), nullable=False),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["apps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_manifests_app_id", "manifests", ["app_id"])

    op.create_table(
        "updates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("version", sa.String(length=50), nullable=False),
        sa.Column("channel", release_channel, nullable=False),
        sa.Column("runtime_version", sa.String(length=50), nullable=False),
        sa.Column("target_version_range", sa.String(length=255), nullable=True),
        sa.Column("platforms", sa.JSON(), nullable=False),
        sa.Column("is_rollback", sa.Boolean(), nullable=True, server_default=sa.false()),
        sa.Column("bundle_id", sa.Integer(), nullable=False),
        sa.Column("manifest_id", sa.Integer(), nullable=True),
        sa.Column("published_by", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["app_id"], ["apps.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["bundle_id"], ["bundles.id"]),
        sa.ForeignKeyConstraint(["manifest_id"], ["manifests.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("app_id", "version", "channel", name="uq_updates_app_version_channel"),
    )
    op.create_index("ix_updates_app_id", "updates", ["app_id"])
    op.create_index("ix_updates_bundle_id", "updates", ["bundle_id"])

    op.create_table(
        "assets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("update_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("storage_type", sa.String(length=20), nullable=False),
        sa.Column("storage_key", sa.String(length=512), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["update_id"], ["updates.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_assets_update_id", "assets", ["update_id"])
    op.create_index("ix_assets_hash", "assets", ["hash"])


def downgrade() -> None:
    op.drop_index("ix_assets_hash", table_name="assets")
    op.drop_index("ix_assets_update_id", table_name="assets")
    op.drop_table("assets")
    op.drop_index("ix_updates_bundle_id", table_name="updates")
    op.drop_index("ix_updates_app_id", table_name="updates")
    op.drop_table("updates")
    op.drop_index("ix_manifests_app_id", table_name="manifests")
    op.drop_table("manifests")
    op.drop_index("ix_bundles_app_id", table_name="bundles")
    op.drop_table("bundles")
    op.drop_index("ix_apps_owner_id", table_name="apps")
    op.drop_index("ix_apps_slug", table_name="apps")
    op.drop_table("apps")
    release_channel.drop(op.get_bind(), checkfirst=True)
