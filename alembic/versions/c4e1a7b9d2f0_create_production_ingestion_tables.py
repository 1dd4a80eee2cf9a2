"""create production ingestion tables

Revision ID: c4e1a7b9d2f0
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "c4e1a7b9d2f0"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "shipment",
        sa.Column("id", sa.String(length=120), primary_key=True),
        sa.Column(
            "production_uploaded",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )

    op.create_table(
        "production_case",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "shipment_id",
            sa.String(length=120),
            sa.ForeignKey("shipment.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("case_number", sa.String(length=120), nullable=False),
        sa.Column("critical_parts", sa.Float(), nullable=False),
        sa.Column("total_lines", sa.Float(), nullable=False),
        sa.Column("domestic_lines", sa.Float(), nullable=False),
        sa.Column("bulk_lines", sa.Float(), nullable=False),
        sa.Column("consumed_lines", sa.Float(), nullable=False, server_default="0"),
        sa.Column("source_row", sa.Integer(), nullable=True),
        sa.Column(
            "uploaded_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("uploaded_by", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("shipment_id", "case_number", name="uq_production_case_shipment_case"),
    )
    op.create_index(
        "ix_production_case_shipment_id",
        "production_case",
        ["shipment_id"],
        unique=False,
    )

    op.create_table(
        "production_meta",
        sa.Column(
            "shipment_id",
            sa.String(length=120),
            sa.ForeignKey("shipment.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("case_numbers", sa.JSON(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=True),
        sa.Column("file_url", sa.Text(), nullable=True),
        sa.Column("storage_path", sa.String(length=512), nullable=True),
        sa.Column(
            "uploaded_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("uploaded_by", sa.String(length=255), nullable=False),
    )

    op.create_table(
        "file_upload",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("processed_count", sa.Integer(), nullable=False),
        sa.Column("user_email", sa.String(length=255), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        sa.Column("shipment_ids", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_file_upload_status",
        "file_upload",
        ["status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_file_upload_status", table_name="file_upload")
    op.drop_table("file_upload")
    op.drop_table("production_meta")
    op.drop_index("ix_production_case_shipment_id", table_name="production_case")
    op.drop_table("production_case")
    op.drop_table("shipment")
