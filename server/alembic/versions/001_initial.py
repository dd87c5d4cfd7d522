"""Initial schema: objects, import_jobs, import_errors, import_warnings."""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

import_job_status = sa.Enum(
    "pending",
    "queued",
    "processing",
    "paused",
    "completed",
    "failed",
    "cancelled",
    name="import_job_status",
)
import_control_request = sa.Enum("pause", "cancel", name="import_control_request")
import_error_category = sa.Enum(
    "file_format",
    "validation",
    "duplicate",
    "persistence",
    "system",
    name="import_error_category",
)


def upgrade() -> None:
    op.create_table(
        "objects",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("object_code", sa.Text(), nullable=False),
        sa.Column("rfid_tag_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("object_type", sa.Text(), nullable=False, server_default="docket"),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("priority_level", sa.Text(), nullable=False, server_default="normal"),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("assigned_to", sa.Text(), nullable=True),
        sa.Column("date_collected", sa.Date(), nullable=True),
        sa.Column("metadata", JSON, nullable=False),
        sa.Column("import_job_id", sa.Uuid(), nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("object_code", name="uq_objects_object_code"),
        sa.UniqueConstraint("rfid_tag_id", name="uq_objects_rfid_tag_id"),
    )
    op.create_index("idx_objects_type_status", "objects", ["object_type", "status"])
    op.create_index("idx_objects_import_job", "objects", ["import_job_id"])

    op.create_table(
        "import_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("filename", sa.Text(), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("object_type", sa.Text(), nullable=False, server_default="docket"),
        sa.Column("status", import_job_status, nullable=False, server_default="pending"),
        sa.Column("total_records", sa.Integer(), nullable=True),
        sa.Column("processed_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("successful_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warnings_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resume_from_row", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("control_request", import_control_request, nullable=True),
        sa.Column("resumable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("column_mapping", JSON, nullable=True),
        sa.Column("options", JSON, nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        sa.Column("processing_time_ms", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_import_jobs_status", "import_jobs", ["status"])
    op.create_index("idx_import_jobs_created", "import_jobs", ["created_at"])

    op.create_table(
        "import_errors",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("row_number", sa.Integer(), nullable=False),
        sa.Column("category", import_error_category, nullable=False),
        sa.Column("field_name", sa.Text(), nullable=True),
        sa.Column("field_value", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("row_data", JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_import_errors_job_row", "import_errors", ["job_id", "row_number"])

    op.create_table(
        "import_warnings",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("row_number", sa.Integer(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("field_name", sa.Text(), nullable=True),
        sa.Column("field_value", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("idx_import_warnings_job_row", "import_warnings", ["job_id", "row_number"])


def downgrade() -> None:
    op.drop_index("idx_import_warnings_job_row", table_name="import_warnings")
    op.drop_table("import_warnings")
    op.drop_index("idx_import_errors_job_row", table_name="import_errors")
    op.drop_table("import_errors")
    op.drop_index("idx_import_jobs_created", table_name="import_jobs")
    op.drop_index("idx_import_jobs_status", table_name="import_jobs")
    op.drop_table("import_jobs")
    op.drop_index("idx_objects_import_job", table_name="objects")
    op.drop_index("idx_objects_type_status", table_name="objects")
    op.drop_table("objects")

    bind = op.get_bind()
    import_error_category.drop(bind, checkfirst=True)
    import_control_request.drop(bind, checkfirst=True)
    import_job_status.drop(bind, checkfirst=True)
