"""Baseline: encrypted notes, note audit ledger and compliance registries

Revision ID: 3f9c2a71b8d4
Revises:
Create Date: 2026-10-19 00:00:00.000000

Tables:
- notes: one encrypted row per clinical note (ciphertext, nonce, checksum,
  key identifier, plaintext content hash, compliance flags, sync state)
- audit_log: append-only, hash-chained access log for notes
- compliance_audit_logs: structured compliance events
- professionals: practitioner licence registry
- consent_records: consent registry used by note-creation validation
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3f9c2a71b8d4"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notes",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("patient_id", sa.Text, nullable=False),
        sa.Column("template_type", sa.Text, nullable=False),
        sa.Column("created_at", sa.Text, nullable=False),
        sa.Column("modified_at", sa.Text, nullable=False),
        sa.Column("consent_obtained", sa.Integer, nullable=False),
        sa.Column("encrypted", sa.Integer, nullable=False, server_default="1"),
        sa.Column("deidentified", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sync_status", sa.Text, nullable=False, server_default="local"),
        sa.Column("compliance_json", sa.Text, nullable=False),
        sa.Column("ciphertext", sa.LargeBinary, nullable=False),
        sa.Column("nonce", sa.LargeBinary, nullable=False),
        sa.Column("checksum", sa.Text, nullable=False),
        sa.Column("key_id", sa.Text, nullable=False),
        sa.Column("content_hash", sa.Text, nullable=False),
        sa.Column("encryption_version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("synced_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("synced_at", sa.Text, nullable=True),
    )
    op.create_index("idx_notes_patient_id", "notes", ["patient_id"])
    op.create_index("idx_notes_created_at", "notes", ["created_at"])
    op.create_index("idx_notes_sync_status", "notes", ["sync_status"])

    # note_id carries no foreign key: delete rows must outlive the note.
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("timestamp", sa.Text, nullable=False),
        sa.Column("note_id", sa.Text, nullable=True),
        sa.Column("action", sa.Text, nullable=False),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("phi_accessed", sa.Integer, nullable=False),
        sa.Column("ip_address", sa.Text, nullable=True),
        sa.Column("session_id", sa.Text, nullable=True),
        sa.Column("details", sa.Text, nullable=True),
        sa.Column("retention_period_days", sa.Integer, nullable=False),
        sa.Column("prev_entry_hash", sa.Text, nullable=True),
        sa.Column("entry_hash", sa.Text, nullable=False),
    )
    op.create_index("idx_audit_log_note_id", "audit_log", ["note_id"])
    op.create_index("idx_audit_log_timestamp", "audit_log", ["timestamp"])

    op.create_table(
        "compliance_audit_logs",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("timestamp", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("event_data", sa.Text, nullable=False),
        sa.Column("practitioner_id", sa.Text, nullable=True),
        sa.Column("client_id", sa.Text, nullable=True),
        sa.Column("resource_type", sa.Text, nullable=False),
        sa.Column("resource_id", sa.Text, nullable=False),
        sa.Column("action", sa.Text, nullable=False),
        sa.Column("ip_address", sa.Text, nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("session_id", sa.Text, nullable=True),
        sa.Column("compliant", sa.Integer, nullable=False, server_default="1"),
        sa.Column("phi_accessed", sa.Integer, nullable=False),
        sa.Column("retention_period_days", sa.Integer, nullable=False),
    )
    op.create_index(
        "idx_compliance_audit_resource",
        "compliance_audit_logs",
        ["resource_type", "resource_id"],
    )
    op.create_index(
        "idx_compliance_audit_timestamp", "compliance_audit_logs", ["timestamp"]
    )

    op.create_table(
        "professionals",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("full_name", sa.Text, nullable=True),
        sa.Column("professional_order", sa.Text, nullable=True),
        sa.Column("license_number", sa.Text, nullable=True),
        sa.Column("license_expiry", sa.Text, nullable=True),
        sa.Column("created_at", sa.Text, nullable=False),
    )

    op.create_table(
        "consent_records",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, nullable=False),
        sa.Column("consent_type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("granted_at", sa.Text, nullable=False),
        sa.Column("expiry_date", sa.Text, nullable=True),
        sa.Column("withdrawn_at", sa.Text, nullable=True),
    )
    op.create_index("idx_consent_records_client", "consent_records", ["client_id"])


def downgrade() -> None:
    op.drop_table("consent_records")
    op.drop_table("professionals")
    op.drop_table("compliance_audit_logs")
    op.drop_table("audit_log")
    op.drop_table("notes")
