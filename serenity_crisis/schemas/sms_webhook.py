"""SMS gateway webhook schemas."""

import re

from pydantic import BaseModel, Field, field_validator

E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")
_PHONE_FORMATTING = re.compile(r"[\s\-().]")


class SmsStatusCallback(BaseModel):
    """Delivery status update for an outbound message."""

    message_id: str = Field(..., min_length=1, max_length=64)
    status: str = Field(..., min_length=1, max_length=32)


class SmsInboundMessage(BaseModel):
    """A reply texted back by a responder."""

    from_number: str = Field(..., description="Sender in E.164 format.")
    body: str = Field(..., max_length=1600)
    message_id: str = Field(..., min_length=1, max_length=64)

    @field_validator("from_number")
    @classmethod
    def validate_from_number(cls, v: str) -> str:
        v = _PHONE_FORMATTING.sub("", v)
        if not E164_RE.match(v):
            msg = "from_number must be an E.164 phone number"
            raise ValueError(msg)
        return v


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway.

    Webhooks always acknowledge what they could not act on so the gateway
    does not keep redelivering it.
    """

    status: str
    detail: str | None = None
