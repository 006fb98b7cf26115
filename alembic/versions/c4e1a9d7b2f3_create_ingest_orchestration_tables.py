"""Create ingest orchestration tables.

Revision ID: c4e1a9d7b2f3
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID


revision = "c4e1a9d7b2f3"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("metrics_uuid", sa.String(length=64), nullable=False),
        sa.Column("weekly_de_quota", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "studies",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("accession", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("bucket_id", sa.String(length=255), nullable=False),
        sa.Column("queued_for_deletion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("detached", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("default_options", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_studies_accession", "studies", ["accession"], unique=True)

    op.create_table(
        "study_shares",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("study_id", UUID(as_uuid=True), sa.ForeignKey("studies.id"), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
    )
    op.create_index("ix_study_shares_study_id", "study_shares", ["study_id"])

    op.create_table(
        "study_files",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("study_id", UUID(as_uuid=True), sa.ForeignKey("studies.id"), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("upload_file_name", sa.String(length=500), nullable=True),
        sa.Column("file_type", sa.String(length=64), nullable=False),
        sa.Column("parse_status", sa.String(length=32), nullable=False),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("bundle_id", UUID(as_uuid=True), nullable=True),
        sa.Column("queued_for_deletion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("upload_file_size", sa.BigInteger(), nullable=True),
        sa.Column("local_path", sa.String(length=1000), nullable=True),
        sa.Column("bucket_location", sa.String(length=1000), nullable=True),
        sa.Column("remote_pushed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("use_metadata_convention", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_raw_counts", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cell_names", sa.JSON(), nullable=True),
        sa.Column("parse_started_at", sa.DateTime(), nullable=True),
        sa.Column("remote_job_name", sa.String(length=500), nullable=True),
        sa.Column("remote_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_study_files_study_id", "study_files", ["study_id"])
    op.create_index("ix_study_files_file_type", "study_files", ["file_type"])
    op.create_index("ix_study_files_parse_status", "study_files", ["parse_status"])
    op.create_index("ix_study_files_bundle_id", "study_files", ["bundle_id"])

    op.create_table(
        "study_file_bundles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("study_id", UUID(as_uuid=True), sa.ForeignKey("studies.id"), nullable=False),
        sa.Column(
            "parent_id",
            UUID(as_uuid=True),
            sa.ForeignKey("study_files.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("bundle_type", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("parent_id", name="uq_study_file_bundles_parent_id"),
    )
    op.create_index("ix_study_file_bundles_study_id", "study_file_bundles", ["study_id"])
    op.create_foreign_key(
        "fk_study_files_bundle_id", "study_files", "study_file_bundles", ["bundle_id"], ["id"]
    )

    op.create_table(
        "bundle_staging_entries",
        sa.Column("child_file_id", UUID(as_uuid=True), sa.ForeignKey("study_files.id"), primary_key=True),
        sa.Column("study_id", UUID(as_uuid=True), sa.ForeignKey("studies.id"), nullable=False),
        sa.Column("parent_file_type", sa.String(length=64), nullable=False),
        sa.Column("staging_key", sa.String(length=32), nullable=False),
        sa.Column("parent_file_id", UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_bundle_staging_entries_study_id", "bundle_staging_entries", ["study_id"])
    op.create_index("ix_bundle_staging_entries_parent_file_id", "bundle_staging_entries", ["parent_file_id"])

    op.create_table(
        "ann_data_file_infos",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("study_file_id", UUID(as_uuid=True), sa.ForeignKey("study_files.id"), nullable=False),
        sa.Column("reference_file", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("raw_location", sa.String(length=255), nullable=True),
        sa.Column("data_fragments", sa.JSON(), nullable=True),
        sa.Column("has_clusters", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_metadata", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_expression", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("has_raw_counts", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint("study_file_id", name="uq_ann_data_file_infos_study_file_id"),
    )

    op.create_table(
        "cluster_groups",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("study_id", UUID(as_uuid=True), sa.ForeignKey("studies.id"), nullable=False),
        sa.Column("study_file_id", UUID(as_uuid=True), sa.ForeignKey("study_files.id"), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("cell_names", sa.JSON(), nullable=True),
        sa.Column("cell_annotations", sa.JSON(), nullable=True),
        sa.Column("annotation_values", sa.JSON(), nullable=True),
    )
    op.create_index("ix_cluster_groups_study_id", "cluster_groups", ["study_id"])

    op.create_table(
        "cell_metadata",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("study_id", UUID(as_uuid=True), sa.ForeignKey("studies.id"), nullable=False),
        sa.Column("study_file_id", UUID(as_uuid=True), sa.ForeignKey("study_files.id"), nullable=False),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("annotation_type", sa.String(length=32), nullable=False),
        sa.Column("values", sa.JSON(), nullable=True),
        sa.Column("cell_values", sa.JSON(), nullable=True),
    )
    op.create_index("ix_cell_metadata_study_id", "cell_metadata", ["study_id"])

    op.create_table(
        "differential_expression_results",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("study_id", UUID(as_uuid=True), sa.ForeignKey("studies.id"), nullable=False),
        sa.Column("cluster_group_id", UUID(as_uuid=True), sa.ForeignKey("cluster_groups.id"), nullable=False),
        sa.Column("study_file_id", UUID(as_uuid=True), sa.ForeignKey("study_files.id"), nullable=True),
        sa.Column("annotation_name", sa.String(length=500), nullable=False),
        sa.Column("annotation_scope", sa.String(length=16), nullable=False),
        sa.Column("cluster_name", sa.String(length=500), nullable=True),
        sa.Column("one_vs_rest_comparisons", sa.JSON(), nullable=True),
        sa.Column("pairwise_comparisons", sa.JSON(), nullable=True),
        sa.Column("matrix_file_id", UUID(as_uuid=True), nullable=True),
        sa.Column("computational_method", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "study_id",
            "cluster_group_id",
            "annotation_name",
            "annotation_scope",
            name="uq_de_result_cluster_annotation",
        ),
    )
    op.create_index("ix_differential_expression_results_study_id", "differential_expression_results", ["study_id"])


def downgrade() -> None:
    op.drop_table("differential_expression_results")
    op.drop_table("cell_metadata")
    op.drop_table("cluster_groups")
    op.drop_table("ann_data_file_infos")
    op.drop_table("bundle_staging_entries")
    op.drop_constraint("fk_study_files_bundle_id", "study_files", type_="foreignkey")
    op.drop_table("study_file_bundles")
    op.drop_table("study_files")
    op.drop_table("study_shares")
    op.drop_table("studies")
    op.drop_table("users")
