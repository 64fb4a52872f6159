"""Crisis alert model.

One row per reported crisis. The row is the single source of truth for the
escalation state machine: current tier, state, and the persisted deadline
that any worker can pick up after a restart.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Float, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from serenity_crisis.models.base import Base, TimestampMixin, UTCDateTime, str_enum


class CrisisSeverity(str, enum.Enum):
    """Severity reported with the crisis."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class AlertStatus(str, enum.Enum):
    """Durable alert status. Only ever moves forward (see STATUS_RANK)."""

    ACTIVE = "active"
    ESCALATED = "escalated"  # Ran out of tiers; needs a human operator
    RESPONDED = "responded"
    RESOLVED = "resolved"


# active -> {escalated | responded}* -> resolved
STATUS_RANK: dict[AlertStatus, int] = {
    AlertStatus.ACTIVE: 0,
    AlertStatus.ESCALATED: 1,
    AlertStatus.RESPONDED: 2,
    AlertStatus.RESOLVED: 3,
}


class EscalationState(str, enum.Enum):
    """Escalation state machine states."""

    PENDING = "pending"
    NOTIFYING = "notifying"
    AWAITING_RESPONSE = "awaiting_response"
    RESPONDED = "responded"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


class CrisisAlert(Base, TimestampMixin):
    """A reported crisis and its escalation progress.

    ``version`` is the optimistic-concurrency counter; every state-changing
    flush is issued as ``UPDATE ... WHERE version = :seen`` and a concurrent
    writer surfaces as StaleDataError.
    """

    __tablename__ = "crisis_alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
    )

    severity: Mapped[CrisisSeverity] = mapped_column(
        str_enum(CrisisSeverity, "crisisseverity"),
        nullable=False,
    )

    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )

    # Optional geolocation
    location_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[AlertStatus] = mapped_column(
        str_enum(AlertStatus, "alertstatus"),
        nullable=False,
        default=AlertStatus.ACTIVE,
    )

    escalation_state: Mapped[EscalationState] = mapped_column(
        str_enum(EscalationState, "escalationstate"),
        nullable=False,
        default=EscalationState.PENDING,
    )

    # Ordinal position in the patient's resolved tier list, starting at 1
    current_tier: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    # Response window deadline while awaiting a response, notification
    # lease while pending/notifying, null otherwise
    next_deadline_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    first_responder_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("support_network_members.id", ondelete="SET NULL"),
        nullable=True,
    )

    first_response_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    exhausted_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    resolved_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
    )

    resolution_notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # Sweep query: due deadlines
        Index("ix_crisis_alerts_next_deadline_at", "next_deadline_at"),
        Index("ix_crisis_alerts_patient_created", "patient_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CrisisAlert(id={self.id}, severity={self.severity.value}, "
            f"state={self.escalation_state.value}, tier={self.current_tier})>"
        )


# Short id used in SMS bodies so responders can tell alerts apart
def short_alert_id(alert_id: uuid.UUID) -> str:
    return alert_id.hex[:8].upper()

