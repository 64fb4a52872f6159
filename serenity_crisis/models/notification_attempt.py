"""Notification attempt model.

One row per (alert, responder, tier): the durable record of an SMS sent
for an escalation tier. Re-sends update the row in place, and the unique
constraint makes a crashed notifier's resume idempotent.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from serenity_crisis.models.base import Base, UTCDateTime, str_enum


class DeliveryStatus(str, enum.Enum):
    """Delivery status of an outbound SMS."""

    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    SIMULATED = "simulated"  # No SMS provider configured


# Statuses that count as "this responder was reached"
REACHED_STATUSES = frozenset(
    {DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.SIMULATED}
)


class NotificationAttempt(Base):
    """Records the notification of one responder for one alert tier."""

    __tablename__ = "notification_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    alert_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("crisis_alerts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    responder_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("support_network_members.id", ondelete="CASCADE"),
        nullable=False,
    )

    tier: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    # Number the SMS went to; inbound replies are routed back by it
    phone_number: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
    )

    sent_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        str_enum(DeliveryStatus, "deliverystatus"),
        nullable=False,
    )

    transport_message_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    error_detail: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Transport calls made for this row, retries included
    send_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    __table_args__ = (
        UniqueConstraint(
            "alert_id",
            "responder_id",
            "tier",
            name="uq_notification_attempts_alert_responder_tier",
        ),
    )

    @property
    def reached(self) -> bool:
        return self.delivery_status in REACHED_STATUSES

    def __repr__(self) -> str:
        return (
            f"<NotificationAttempt(alert={self.alert_id}, tier={self.tier}, "
            f"status={self.delivery_status.value})>"
        )
