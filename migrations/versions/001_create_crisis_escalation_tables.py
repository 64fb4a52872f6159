"""Create crisis escalation tables.

Creates support_network_members, crisis_alerts, notification_attempts and
supporter_responses. Enum-valued columns are stored as VARCHAR holding the
enum value.

Revision ID: 001_crisis_escalation
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_crisis_escalation"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=None if nullable else sa.func.now(),
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "support_network_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column(
            "relationship",
            sa.String(32),
            nullable=False,
            server_default="supporter",
        ),
        sa.Column("priority_tier", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_active",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("true"),
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_support_network_members_patient_id",
        "support_network_members",
        ["patient_id"],
    )
    op.create_index(
        "ix_support_network_members_patient_tier",
        "support_network_members",
        ["patient_id", "priority_tier", "position"],
    )

    op.create_table(
        "crisis_alerts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("severity", sa.String(32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("location_lat", sa.Float(), nullable=True),
        sa.Column("location_lng", sa.Float(), nullable=True),
        sa.Column("location_address", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column(
            "escalation_state",
            sa.String(32),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("current_tier", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("next_deadline_at", nullable=True),
        sa.Column(
            "first_responder_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("support_network_members.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("first_response_at", nullable=True),
        _timestamp("exhausted_at", nullable=True),
        _timestamp("resolved_at", nullable=True),
        sa.Column("resolved_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_crisis_alerts_patient_id", "crisis_alerts", ["patient_id"])
    op.create_index(
        "ix_crisis_alerts_patient_created",
        "crisis_alerts",
        ["patient_id", "created_at"],
    )
    # Deadline sweep
    op.create_index(
        "ix_crisis_alerts_next_deadline_at",
        "crisis_alerts",
        ["next_deadline_at"],
    )

    op.create_table(
        "notification_attempts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "alert_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crisis_alerts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "responder_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("support_network_members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tier", sa.Integer(), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=False),
        _timestamp("sent_at"),
        _timestamp("updated_at"),
        sa.Column("delivery_status", sa.String(32), nullable=False),
        sa.Column("transport_message_id", sa.String(64), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("send_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index(
        "ix_notification_attempts_alert_id",
        "notification_attempts",
        ["alert_id"],
    )
    op.create_index(
        "ix_notification_attempts_phone_number",
        "notification_attempts",
        ["phone_number"],
    )
    op.create_index(
        "ix_notification_attempts_transport_message_id",
        "notification_attempts",
        ["transport_message_id"],
    )
    # One row per responder per tier; crash resume relies on it
    op.create_unique_constraint(
        "uq_notification_attempts_alert_responder_tier",
        "notification_attempts",
        ["alert_id", "responder_id", "tier"],
    )

    op.create_table(
        "supporter_responses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "alert_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("crisis_alerts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "responder_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("support_network_members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("response_type", sa.String(32), nullable=False),
        sa.Column("eta_minutes", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("channel", sa.String(32), nullable=False, server_default="api"),
        _timestamp("responded_at"),
    )
    op.create_index(
        "ix_supporter_responses_alert_id",
        "supporter_responses",
        ["alert_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_supporter_responses_alert_id")
    op.drop_table("supporter_responses")
    op.drop_constraint(
        "uq_notification_attempts_alert_responder_tier", "notification_attempts"
    )
    op.drop_index("ix_notification_attempts_transport_message_id")
    op.drop_index("ix_notification_attempts_phone_number")
    op.drop_index("ix_notification_attempts_alert_id")
    op.drop_table("notification_attempts")
    op.drop_index("ix_crisis_alerts_next_deadline_at")
    op.drop_index("ix_crisis_alerts_patient_created")
    op.drop_index("ix_crisis_alerts_patient_id")
    op.drop_table("crisis_alerts")
    op.drop_index("ix_support_network_members_patient_tier")
    op.drop_index("ix_support_network_members_patient_id")
    op.drop_table("support_network_members")
