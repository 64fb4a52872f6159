"""SMS gateway client.

Sends SMS through a Twilio-compatible REST API and maps the provider's
delivery statuses onto ours. When no account is configured the gateway
runs in simulated mode so development and demo environments exercise the
full escalation path without sending real messages.
"""

import uuid
from dataclasses import dataclass

import httpx

from serenity_crisis.config import settings
from serenity_crisis.logging_config import get_logger
from serenity_crisis.models.notification_attempt import DeliveryStatus

logger = get_logger(__name__)

# Provider status -> our delivery status
PROVIDER_STATUS_MAP: dict[str, DeliveryStatus] = {
    "accepted": DeliveryStatus.SENT,
    "queued": DeliveryStatus.SENT,
    "sending": DeliveryStatus.SENT,
    "sent": DeliveryStatus.SENT,
    "delivered": DeliveryStatus.DELIVERED,
    "read": DeliveryStatus.DELIVERED,
    "failed": DeliveryStatus.FAILED,
    "undelivered": DeliveryStatus.FAILED,
}

# HTTP statuses worth retrying
_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class SmsGatewayError(Exception):
    """Permanent error sending an SMS (bad number, rejected request)."""


class TransientTransportError(SmsGatewayError):
    """Retryable SMS send failure (timeout, connection error, 429/5xx)."""


@dataclass(frozen=True)
class SmsReceipt:
    """Provider acknowledgement of an outbound SMS."""

    delivery_id: str
    status: DeliveryStatus


def is_simulated() -> bool:
    """True when no SMS provider account is configured."""
    return not settings.sms_account_sid


def map_provider_status(provider_status: str) -> DeliveryStatus | None:
    """Map a provider status string to a DeliveryStatus, None if unknown."""
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


def _messages_url() -> str:
    return f"{settings.sms_api_base}/Accounts/{settings.sms_account_sid}/Messages.json"


async def send_sms(phone_number: str, body: str) -> SmsReceipt:
    """Send one SMS.

    Each call is a single attempt bounded by ``sms_send_timeout_seconds``;
    retrying is the caller's job.

    Args:
        phone_number: Destination in E.164 format.
        body: Message text.

    Returns:
        SmsReceipt with the provider's message id and initial status.

    Raises:
        TransientTransportError: Timeout, connection failure, 429 or 5xx.
        SmsGatewayError: Any other rejection.
    """
    if is_simulated():
        receipt = SmsReceipt(
            delivery_id=f"SIM{uuid.uuid4().hex}",
            status=DeliveryStatus.SIMULATED,
        )
        logger.info(
            "Simulated SMS send",
            to=phone_number,
            delivery_id=receipt.delivery_id,
        )
        return receipt

    data = {
        "To": phone_number,
        "From": settings.sms_from_number,
        "Body": body,
    }
    if settings.sms_status_callback_url:
        data["StatusCallback"] = settings.sms_status_callback_url

    try:
        async with httpx.AsyncClient(timeout=settings.sms_send_timeout_seconds) as client:
            response = await client.post(
                _messages_url(),
                data=data,
                auth=(settings.sms_account_sid, settings.sms_auth_token),
            )
    except httpx.TimeoutException as e:
        raise TransientTransportError(f"SMS send timed out: {e}") from e
    except httpx.TransportError as e:
        raise TransientTransportError(f"SMS transport error: {e}") from e

    if response.status_code in _RETRYABLE_STATUS_CODES:
        raise TransientTransportError(
            f"SMS gateway unavailable: {response.status_code} {response.text}"
        )

    if response.status_code not in (200, 201):
        raise SmsGatewayError(
            f"SMS rejected: {response.status_code} {response.text}"
        )

    payload = response.json()
    delivery_id = payload.get("sid")
    if not delivery_id:
        raise SmsGatewayError("SMS gateway response missing message sid")

    status = map_provider_status(payload.get("status", "")) or DeliveryStatus.SENT
    if status == DeliveryStatus.FAILED:
        raise SmsGatewayError(
            f"SMS failed at submission: {payload.get('error_message', 'unknown')}"
        )

    return SmsReceipt(delivery_id=delivery_id, status=status)
