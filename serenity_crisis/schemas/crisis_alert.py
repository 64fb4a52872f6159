"""Crisis alert API schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from serenity_crisis.models.crisis_alert import (
    AlertStatus,
    CrisisSeverity,
    EscalationState,
)
from serenity_crisis.models.notification_attempt import DeliveryStatus
from serenity_crisis.models.supporter_response import ResponseChannel, ResponseType
from serenity_crisis.services.response_collector import (
    MAX_ETA_MINUTES,
    MAX_NOTES_LENGTH,
    ResponseOutcome,
)

MAX_MESSAGE_LENGTH = 2000


class CrisisLocation(BaseModel):
    """Where the patient is, if they shared it."""

    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    address: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_coordinates(self) -> "CrisisLocation":
        if (self.lat is None) != (self.lng is None):
            msg = "lat and lng must be provided together"
            raise ValueError(msg)
        return self


class CrisisAlertCreate(BaseModel):
    """Request schema for reporting a crisis."""

    patient_id: uuid.UUID
    severity: CrisisSeverity = Field(
        ...,
        description="low, medium, high, critical or emergency.",
    )
    message: str = Field(
        default="",
        max_length=MAX_MESSAGE_LENGTH,
        description="What the patient wants their support network to know.",
    )
    location: CrisisLocation | None = None
    alert_id: uuid.UUID | None = Field(
        default=None,
        description="Client-generated id; resubmitting it never re-notifies anyone.",
    )

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: str) -> str:
        return v.strip()


class CrisisAlertResponse(BaseModel):
    """A crisis alert and its escalation progress."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    patient_id: uuid.UUID
    severity: CrisisSeverity
    message: str
    location_lat: float | None
    location_lng: float | None
    location_address: str | None
    status: AlertStatus
    escalation_state: EscalationState
    current_tier: int = Field(
        description="Tier being notified; once escalated, the last tier that was notified."
    )
    next_deadline_at: datetime | None
    first_responder_id: uuid.UUID | None
    first_response_at: datetime | None
    exhausted_at: datetime | None
    resolved_at: datetime | None
    resolved_by: uuid.UUID | None
    resolution_notes: str | None
    created_at: datetime
    updated_at: datetime


class NotificationAttemptResponse(BaseModel):
    """One responder notified for one tier."""

    model_config = ConfigDict(from_attributes=True)

    responder_id: uuid.UUID
    tier: int
    delivery_status: DeliveryStatus
    sent_at: datetime
    send_count: int
    error_detail: str | None


class SupporterResponseSchema(BaseModel):
    """A stored responder reply."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    responder_id: uuid.UUID
    response_type: ResponseType
    eta_minutes: int | None
    notes: str | None
    channel: ResponseChannel
    responded_at: datetime


class CrisisResourceResponse(BaseModel):
    """A crisis line the patient can reach directly."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    contact: str
    description: str
    url: str | None = None


class CrisisResourcesResponse(BaseModel):
    resources: list[CrisisResourceResponse]


class CrisisAlertCreateResponse(BaseModel):
    """Response to reporting a crisis."""

    alert: CrisisAlertResponse
    created: bool = Field(description="False when the alert id was seen before.")
    contacted_responder_ids: list[uuid.UUID]
    resources: list[CrisisResourceResponse]


class CrisisAlertDetailResponse(BaseModel):
    """Full status of an alert: attempts and responses included."""

    alert: CrisisAlertResponse
    attempts: list[NotificationAttemptResponse]
    responses: list[SupporterResponseSchema]


class CrisisAlertListResponse(BaseModel):
    alerts: list[CrisisAlertResponse]
    count: int


class SupporterResponseCreate(BaseModel):
    """Request schema for a responder's reply."""

    responder_id: uuid.UUID
    response_type: ResponseType = Field(
        ...,
        description="immediate, on_my_way, cant_help or delegated.",
    )
    eta_minutes: int | None = Field(default=None, ge=0, le=MAX_ETA_MINUTES)
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)
    response_id: uuid.UUID | None = Field(
        default=None,
        description="Client-generated id; a retried submission is not recorded twice.",
    )


class SupporterResponseResult(BaseModel):
    """Outcome of a responder's reply."""

    outcome: ResponseOutcome
    response: SupporterResponseSchema
    alert: CrisisAlertResponse


class CrisisAlertResolve(BaseModel):
    """Request schema for resolving an alert."""

    resolver_id: uuid.UUID | None = None
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)


class CrisisAlertResolveResponse(BaseModel):
    alert: CrisisAlertResponse
    changed: bool = Field(description="False when the alert was already resolved.")
