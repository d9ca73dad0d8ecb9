"""Data-subject requests and security incidents

Revision ID: 8c41d0e6a2f7
Revises: 3f9c2a71b8d4
Create Date: 2026-10-20 00:00:00.000000

Tables:
- data_subject_requests: client rights requests with a 30-day response due date
- security_incidents: reported breaches, severity and affected client IDs
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "8c41d0e6a2f7"
down_revision = "3f9c2a71b8d4"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "data_subject_requests",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("client_id", sa.Text, nullable=False),
        sa.Column("request_type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("requested_at", sa.Text, nullable=False),
        sa.Column("due_date", sa.Text, nullable=False),
        sa.Column("completed_at", sa.Text, nullable=True),
    )
    op.create_index("idx_dsr_client", "data_subject_requests", ["client_id"])

    op.create_table(
        "security_incidents",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("breach_type", sa.Text, nullable=False),
        sa.Column("severity", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("affected_clients", sa.Text, nullable=False, server_default="[]"),
        sa.Column("detected_at", sa.Text, nullable=False),
        sa.Column("incident_status", sa.Text, nullable=False, server_default="detected"),
        sa.Column("regulator_notification_required", sa.Integer, nullable=False),
    )
    op.create_index("idx_security_incidents_detected", "security_incidents", ["detected_at"])


def downgrade() -> None:
    op.drop_table("security_incidents")
    op.drop_table("data_subject_requests")
