# Database Models
from serenity_crisis.models.base import Base, TimestampMixin, UTCDateTime
from serenity_crisis.models.crisis_alert import (
    STATUS_RANK,
    AlertStatus,
    CrisisAlert,
    CrisisSeverity,
    EscalationState,
)
from serenity_crisis.models.notification_attempt import (
    REACHED_STATUSES,
    DeliveryStatus,
    NotificationAttempt,
)
from serenity_crisis.models.responder import Responder, ResponderRole
from serenity_crisis.models.supporter_response import (
    QUALIFYING_RESPONSE_TYPES,
    ResponseChannel,
    ResponseType,
    SupporterResponse,
)

__all__ = [
    "AlertStatus",
    "Base",
    "CrisisAlert",
    "CrisisSeverity",
    "DeliveryStatus",
    "EscalationState",
    "NotificationAttempt",
    "QUALIFYING_RESPONSE_TYPES",
    "REACHED_STATUSES",
    "Responder",
    "ResponderRole",
    "ResponseChannel",
    "ResponseType",
    "STATUS_RANK",
    "SupporterResponse",
    "TimestampMixin",
    "UTCDateTime",
]
