"""Customer history tables

Revision ID: 0001_history_tables
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_history_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    history_operation_enum = sa.Enum("create", "update", "delete", name="history_operation")

    op.create_table(
        "history_subject_heads",
        sa.Column("subject_id", sa.String(length=255), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("last_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_entry_hash", sa.String(length=64), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("subject_id"),
    )

    op.create_table(
        "history_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("subject_id", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("operation", history_operation_enum, nullable=False),
        sa.Column("previous_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("new_snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "changed_fields",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            comment='Sorted field names, or ["*"] for create/delete',
        ),
        sa.Column(
            "actor_id",
            sa.String(length=255),
            nullable=True,
            comment="Verified caller id (NULL for system processes)",
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("prev_entry_hash", sa.String(length=64), nullable=False),
        sa.Column("entry_hash", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subject_id", "version", name="uq_history_entries_subject_version"),
    )
    op.create_index(
        "ix_history_entries_tenant_occurred_at",
        "history_entries",
        ["tenant_id", "occurred_at"],
        unique=False,
    )
    op.create_index("ix_history_entries_actor_id", "history_entries", ["actor_id"], unique=False)

    op.create_table(
        "access_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column(
            "data_type",
            sa.String(length=255),
            nullable=False,
            comment="Field name or data type that was accessed",
        ),
        sa.Column("subject_id", sa.String(length=255), nullable=True),
        sa.Column(
            "action",
            sa.String(length=20),
            nullable=False,
            comment="view, decrypt or export",
        ),
        sa.Column(
            "outcome",
            sa.String(length=50),
            nullable=True,
            comment="Internal outcome (masked, decrypted, decryption_failed, ...)",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_access_events_timestamp", "access_events", ["timestamp"], unique=False)
    op.create_index("ix_access_events_user_id", "access_events", ["user_id"], unique=False)
    op.create_index("ix_access_events_subject_id", "access_events", ["subject_id"], unique=False)

    op.create_table(
        "audit_configurations",
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("retention_days", sa.Integer(), nullable=False, server_default="365"),
        sa.Column("max_versions_per_subject", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("audited_fields", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "notify_on_change",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "notification_recipients",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
    )

    # Entries are append-only; retention deletes are the only permitted change.
    op.execute(
        """
CREATE OR REPLACE FUNCTION history_entries_forbid_update()
RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'history_entries rows are immutable';
END;
$$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
CREATE TRIGGER history_entries_no_update
BEFORE UPDATE ON history_entries
FOR EACH ROW EXECUTE FUNCTION history_entries_forbid_update();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS history_entries_no_update ON history_entries;")
    op.execute("DROP FUNCTION IF EXISTS history_entries_forbid_update();")

    op.drop_table("audit_configurations")

    op.drop_index("ix_access_events_subject_id", table_name="access_events")
    op.drop_index("ix_access_events_user_id", table_name="access_events")
    op.drop_index("ix_access_events_timestamp", table_name="access_events")
    op.drop_table("access_events")

    op.drop_index("ix_history_entries_actor_id", table_name="history_entries")
    op.drop_index("ix_history_entries_tenant_occurred_at", table_name="history_entries")
    op.drop_table("history_entries")

    op.drop_table("history_subject_heads")

    sa.Enum(name="history_operation").drop(op.get_bind(), checkfirst=True)
