"""SMS gateway webhooks.

Delivery-status callbacks and inbound replies relayed from the SMS
gateway. Both are safe to receive more than once.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from serenity_crisis.core.exceptions import AlertNotFoundError, InvalidResponseError
from serenity_crisis.database import get_db
from serenity_crisis.logging_config import get_logger
from serenity_crisis.schemas.sms_webhook import (
    SmsInboundMessage,
    SmsStatusCallback,
    WebhookAck,
)
from serenity_crisis.services import crisis_engine

logger = get_logger(__name__)

router = APIRouter(prefix="/api/webhooks/sms", tags=["webhooks"])


@router.post("/status", response_model=WebhookAck)
async def sms_status_callback(
    request: SmsStatusCallback,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    """Apply a delivery-status update for an outbound message."""
    changed = await crisis_engine.handle_delivery_status(
        db, request.message_id, request.status
    )
    return WebhookAck(status="applied" if changed else "ignored")


@router.post("/inbound", response_model=WebhookAck)
async def sms_inbound_message(
    request: SmsInboundMessage,
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    """Record a responder's texted reply against the alert it answers."""
    try:
        result = await crisis_engine.handle_inbound_reply(
            db,
            from_number=request.from_number,
            body=request.body,
            provider_message_id=request.message_id,
        )
    except (InvalidResponseError, AlertNotFoundError) as e:
        logger.info(
            "Inbound SMS not applied",
            provider_message_id=request.message_id,
            reason=str(e),
        )
        return WebhookAck(status="ignored", detail=str(e))

    if result is None:
        return WebhookAck(status="ignored", detail="No open alert for this number")

    return WebhookAck(status=result.outcome.value)
