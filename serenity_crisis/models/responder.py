"""Support network member model.

The people the engine may contact for a patient: supporters, providers
and emergency contacts, grouped into priority tiers. Maintained by the
support-network management surface; the escalation engine only reads it.
"""

import enum
import uuid

from sqlalchemy import Boolean, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from serenity_crisis.models.base import Base, TimestampMixin, str_enum


class ResponderRole(str, enum.Enum):
    """Relationship of the responder to the patient."""

    SUPPORTER = "supporter"
    PROVIDER = "provider"
    EMERGENCY_CONTACT = "emergency_contact"


class Responder(Base, TimestampMixin):
    """A member of a patient's support network.

    Responders are contacted tier by tier (lower ``priority_tier`` first);
    within a tier they are ordered by ``position`` and then creation time.
    """

    __tablename__ = "support_network_members"

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

    display_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # E.164, e.g. +15551234567
    phone_number: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    relationship: Mapped[ResponderRole] = mapped_column(
        str_enum(ResponderRole, "responderrole"),
        nullable=False,
        default=ResponderRole.SUPPORTER,
    )

    priority_tier: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    __table_args__ = (
        Index(
            "ix_support_network_members_patient_tier",
            "patient_id",
            "priority_tier",
            "position",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Responder(name={self.display_name!r}, "
            f"tier={self.priority_tier}, role={self.relationship.value})>"
        )
