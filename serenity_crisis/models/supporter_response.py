"""Supporter response model.

Append-only audit trail of every response to a crisis alert. The first
qualifying response closes the alert's escalation; later ones are kept
for the record.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from serenity_crisis.models.base import Base, UTCDateTime, str_enum


class ResponseType(str, enum.Enum):
    """What the responder said they will do."""

    IMMEDIATE = "immediate"
    ON_MY_WAY = "on_my_way"
    CANT_HELP = "cant_help"
    DELEGATED = "delegated"


# Response types that satisfy a tier and stop escalation
QUALIFYING_RESPONSE_TYPES = frozenset({ResponseType.IMMEDIATE, ResponseType.ON_MY_WAY})


class ResponseChannel(str, enum.Enum):
    """How the response reached us."""

    API = "api"
    SMS = "sms"


class SupporterResponse(Base):
    """A single response from a responder to an alert."""

    __tablename__ = "supporter_responses"

    # Client-supplied or derived from the SMS provider's message id, so a
    # redelivered webhook maps onto the same row
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

    response_type: Mapped[ResponseType] = mapped_column(
        str_enum(ResponseType, "responsetype"),
        nullable=False,
    )

    eta_minutes: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    channel: Mapped[ResponseChannel] = mapped_column(
        str_enum(ResponseChannel, "responsechannel"),
        nullable=False,
        default=ResponseChannel.API,
    )

    responded_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def is_qualifying(self) -> bool:
        return self.response_type in QUALIFYING_RESPONSE_TYPES

    def __repr__(self) -> str:
        return (
            f"<SupporterResponse(alert={self.alert_id}, "
            f"type={self.response_type.value})>"
        )
