"""Notification dispatcher.

Fans a crisis alert out to every responder of one escalation tier over
SMS, retrying transient transport failures with exponential backoff, and
keeps one NotificationAttempt row per (alert, responder, tier).

Also owns the two webhook-facing lookups: delivery-status updates keyed
by the provider's message id, and the phone number -> (alert, responder)
routing used for inbound SMS replies.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from serenity_crisis.config import settings
from serenity_crisis.core.exceptions import TierUnreachableError
from serenity_crisis.logging_config import get_logger
from serenity_crisis.models.crisis_alert import (
    AlertStatus,
    CrisisAlert,
    CrisisSeverity,
    short_alert_id,
)
from serenity_crisis.models.notification_attempt import (
    REACHED_STATUSES,
    DeliveryStatus,
    NotificationAttempt,
)
from serenity_crisis.services.sms_gateway import (
    SmsGatewayError,
    TransientTransportError,
    map_provider_status,
    send_sms,
)
from serenity_crisis.services.support_directory import ResponderInfo, ResponderTier

logger = get_logger(__name__)

SEVERITY_LABEL: dict[CrisisSeverity, str] = {
    CrisisSeverity.LOW: "LOW",
    CrisisSeverity.MEDIUM: "MEDIUM",
    CrisisSeverity.HIGH: "HIGH",
    CrisisSeverity.CRITICAL: "CRITICAL",
    CrisisSeverity.EMERGENCY: "EMERGENCY",
}

REPLY_INSTRUCTIONS = (
    "Reply 1 = I'm reaching them now, 2 = on my way (add ETA in minutes, "
    "e.g. 2 15), 3 = can't help, 4 = passing to someone else."
)

# Allowed forward moves for delivery-status callbacks
_STATUS_UPGRADES: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.SENT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
    DeliveryStatus.SIMULATED: frozenset(),
}

_NON_DIGITS = re.compile(r"[^\d+]")


@dataclass
class ResponderOutcome:
    """Result of notifying one responder."""

    responder_id: uuid.UUID
    status: DeliveryStatus
    transport_message_id: str | None = None
    error: str | None = None
    send_count: int = 0
    already_notified: bool = False

    @property
    def reached(self) -> bool:
        return self.status in REACHED_STATUSES


@dataclass
class TierDispatchResult:
    """Per-responder outcomes of notifying one tier."""

    alert_id: uuid.UUID
    tier: int
    outcomes: list[ResponderOutcome] = field(default_factory=list)

    @property
    def reached_count(self) -> int:
        return sum(1 for o in self.outcomes if o.reached)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.reached)

    @property
    def unreachable(self) -> bool:
        return self.reached_count == 0

    def raise_if_unreachable(self) -> None:
        """Raise TierUnreachableError when nobody in the tier was reached."""
        if self.unreachable:
            raise TierUnreachableError(self.alert_id, self.tier)


def normalize_phone_number(phone_number: str) -> str:
    """Strip formatting so '+1 (555) 010-0000' matches '+15550100000'."""
    return _NON_DIGITS.sub("", phone_number)


def build_crisis_message(
    alert: CrisisAlert,
    tier: int,
    responder: ResponderInfo,
) -> str:
    """Build the SMS body sent to a responder.

    The header line is identical for every send of the same alert so a
    duplicate delivery is recognizable as the same crisis.
    """
    lines = [
        f"[Serenity] CRISIS ALERT #{short_alert_id(alert.id)}",
        f"{responder.display_name}, someone in your care needs support now. "
        f"Severity: {SEVERITY_LABEL.get(alert.severity, 'HIGH')}.",
    ]

    if alert.message:
        lines.append(f'Message: "{alert.message.strip()[:280]}"')

    if alert.location_address:
        lines.append(f"Location: {alert.location_address}")
    elif alert.location_lat is not None and alert.location_lng is not None:
        lines.append(f"Location: {alert.location_lat:.5f},{alert.location_lng:.5f}")

    if tier > 1:
        lines.append("Earlier contacts have not responded.")

    lines.append(REPLY_INSTRUCTIONS)
    lines.append("If life is in danger call 911.")

    return "\n".join(lines)


async def deliver_with_retry(phone_number: str, body: str) -> ResponderOutcome:
    """Send one SMS, retrying transient failures with exponential backoff.

    Up to ``sms_max_retries`` retries after the first attempt, waiting
    ``base * multiplier**n`` seconds before retry n+1. Permanent gateway
    errors are not retried.

    Returns:
        ResponderOutcome with a placeholder responder id; the caller
        fills it in.
    """
    send_count = 0
    last_error: str | None = None

    for attempt in range(settings.sms_max_retries + 1):
        send_count += 1
        try:
            receipt = await send_sms(phone_number, body)
            return ResponderOutcome(
                responder_id=uuid.UUID(int=0),
                status=receipt.status,
                transport_message_id=receipt.delivery_id,
                send_count=send_count,
            )
        except TransientTransportError as e:
            last_error = str(e)
            if attempt < settings.sms_max_retries:
                delay = settings.sms_retry_base_delay_seconds * (
                    settings.sms_retry_multiplier**attempt
                )
                logger.warning(
                    "Transient SMS failure, retrying",
                    attempt=send_count,
                    retry_in_seconds=delay,
                    error=last_error,
                )
                await asyncio.sleep(delay)
        except SmsGatewayError as e:
            last_error = str(e)
            break

    return ResponderOutcome(
        responder_id=uuid.UUID(int=0),
        status=DeliveryStatus.FAILED,
        error=last_error,
        send_count=send_count,
    )


async def get_attempts_for_tier(
    db: AsyncSession,
    alert_id: uuid.UUID,
    tier: int,
) -> list[NotificationAttempt]:
    """Get the notification attempts recorded for one tier of an alert."""
    result = await db.execute(
        select(NotificationAttempt)
        .where(
            NotificationAttempt.alert_id == alert_id,
            NotificationAttempt.tier == tier,
        )
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_attempts_for_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
) -> list[NotificationAttempt]:
    """Get every notification attempt of an alert, in tier then send order."""
    result = await db.execute(
        select(NotificationAttempt)
        .where(NotificationAttempt.alert_id == alert_id)
        .order_by(NotificationAttempt.tier, NotificationAttempt.sent_at)
    )
    return list(result.scalars().all())


def _apply_outcome(
    attempt: NotificationAttempt,
    outcome: ResponderOutcome,
    now: datetime,
) -> None:
    attempt.delivery_status = outcome.status
    attempt.transport_message_id = outcome.transport_message_id
    attempt.error_detail = outcome.error
    attempt.send_count = (attempt.send_count or 0) + outcome.send_count
    attempt.sent_at = now


async def _record_outcomes(
    db: AsyncSession,
    alert_id: uuid.UUID,
    tier: int,
    sent: list[tuple[ResponderInfo, ResponderOutcome]],
) -> None:
    """Upsert one attempt row per responder and commit."""
    now = datetime.now(UTC)
    existing = {a.responder_id: a for a in await get_attempts_for_tier(db, alert_id, tier)}

    for responder, outcome in sent:
        attempt = existing.get(responder.id)
        if attempt is not None and attempt.reached and not outcome.reached:
            # Reached by a concurrent worker; a failed resend doesn't undo that
            continue
        if attempt is None:
            attempt = NotificationAttempt(
                alert_id=alert_id,
                responder_id=responder.id,
                tier=tier,
                phone_number=normalize_phone_number(responder.phone_number),
                send_count=0,
            )
            db.add(attempt)
        _apply_outcome(attempt, outcome, now)

    await db.commit()


async def notify_tier(
    db: AsyncSession,
    alert: CrisisAlert,
    tier_number: int,
    tier: ResponderTier,
) -> TierDispatchResult:
    """Notify every responder of a tier.

    Responders that already have a reached attempt for this tier are not
    re-sent, so resuming a crashed notification never double-notifies.
    Sends run concurrently; one responder's failure never blocks the rest.

    Args:
        db: Database session.
        alert: The alert being escalated.
        tier_number: 1-based tier ordinal.
        tier: The tier's responders.

    Returns:
        TierDispatchResult; ``unreachable`` is True if nobody was reached.
    """
    # A rollback below expires the alert, so its id is read once up front
    alert_id = alert.id
    result = TierDispatchResult(alert_id=alert_id, tier=tier_number)
    existing = {
        a.responder_id: a for a in await get_attempts_for_tier(db, alert_id, tier_number)
    }

    to_send: list[ResponderInfo] = []
    for responder in tier.responders:
        attempt = existing.get(responder.id)
        if attempt is not None and attempt.reached:
            result.outcomes.append(
                ResponderOutcome(
                    responder_id=responder.id,
                    status=attempt.delivery_status,
                    transport_message_id=attempt.transport_message_id,
                    already_notified=True,
                )
            )
        else:
            to_send.append(responder)

    if to_send:
        raw = await asyncio.gather(
            *(
                deliver_with_retry(
                    r.phone_number, build_crisis_message(alert, tier_number, r)
                )
                for r in to_send
            ),
            return_exceptions=True,
        )

        sent: list[tuple[ResponderInfo, ResponderOutcome]] = []
        for responder, outcome in zip(to_send, raw):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Unexpected error notifying responder",
                    responder_id=str(responder.id),
                    error=repr(outcome),
                )
                outcome = ResponderOutcome(
                    responder_id=responder.id,
                    status=DeliveryStatus.FAILED,
                    error=repr(outcome),
                    send_count=1,
                )
            outcome.responder_id = responder.id
            sent.append((responder, outcome))
            result.outcomes.append(outcome)

            if outcome.reached:
                logger.info(
                    "Responder notified",
                    tier=tier_number,
                    responder_id=str(responder.id),
                    status=outcome.status.value,
                    sends=outcome.send_count,
                )
            else:
                logger.warning(
                    "Responder could not be notified",
                    tier=tier_number,
                    responder_id=str(responder.id),
                    error=outcome.error,
                    sends=outcome.send_count,
                )

        try:
            await _record_outcomes(db, alert_id, tier_number, sent)
        except IntegrityError:
            # Another worker inserted rows for this tier first; merge into them
            await db.rollback()
            await _record_outcomes(db, alert_id, tier_number, sent)

    logger.info(
        "Tier notification completed",
        tier=tier_number,
        reached=result.reached_count,
        failed=result.failed_count,
    )

    return result


async def apply_delivery_status(
    db: AsyncSession,
    transport_message_id: str,
    provider_status: str,
) -> NotificationAttempt | None:
    """Apply an asynchronous delivery-status callback.

    Idempotent: repeated or out-of-order callbacks never move an attempt
    backwards (a delivered message stays delivered).

    Returns:
        The attempt if its status changed, None otherwise.
    """
    status = map_provider_status(provider_status)
    if status is None:
        logger.warning(
            "Ignoring unknown delivery status",
            transport_message_id=transport_message_id,
            provider_status=provider_status,
        )
        return None

    result = await db.execute(
        select(NotificationAttempt).where(
            NotificationAttempt.transport_message_id == transport_message_id
        )
    )
    attempt = result.scalar_one_or_none()

    if attempt is None:
        logger.debug(
            "Delivery status for unknown message",
            transport_message_id=transport_message_id,
        )
        return None

    if status == attempt.delivery_status or status not in _STATUS_UPGRADES.get(
        attempt.delivery_status, frozenset()
    ):
        return None

    attempt.delivery_status = status
    if status == DeliveryStatus.FAILED:
        attempt.error_detail = f"Carrier reported {provider_status}"
    await db.commit()

    logger.info(
        "Delivery status updated",
        alert_id=str(attempt.alert_id),
        tier=attempt.tier,
        status=status.value,
    )

    return attempt


async def tier_is_unreachable(
    db: AsyncSession,
    alert_id: uuid.UUID,
    tier: int,
) -> bool:
    """True if a tier has attempts and every one of them failed."""
    attempts = await get_attempts_for_tier(db, alert_id, tier)
    return bool(attempts) and all(
        a.delivery_status == DeliveryStatus.FAILED for a in attempts
    )


async def find_reply_target(
    db: AsyncSession,
    phone_number: str,
) -> NotificationAttempt | None:
    """Route an inbound SMS reply to the alert it answers.

    Picks the most recent attempt sent to the number whose alert is not
    yet resolved.
    """
    result = await db.execute(
        select(NotificationAttempt)
        .join(CrisisAlert, CrisisAlert.id == NotificationAttempt.alert_id)
        .where(
            NotificationAttempt.phone_number == normalize_phone_number(phone_number),
            CrisisAlert.status != AlertStatus.RESOLVED,
        )
        .order_by(NotificationAttempt.sent_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def notify_operator(alert: CrisisAlert, reason: Exception | str) -> bool:
    """Surface an alert to the human operator channel.

    Always writes an error-level log line; also texts the on-call operator
    when ``operator_phone_number`` is configured.

    Returns:
        True if an operator SMS was delivered.
    """
    logger.error(
        "Operator escalation required",
        alert_id=str(alert.id),
        patient_id=str(alert.patient_id),
        severity=alert.severity.value,
        reason=str(reason),
    )

    if not settings.operator_phone_number:
        return False

    body = (
        f"[Serenity] OPERATOR ACTION NEEDED #{short_alert_id(alert.id)}\n"
        f"Severity: {SEVERITY_LABEL.get(alert.severity, 'HIGH')}. {reason}"
    )
    outcome = await deliver_with_retry(settings.operator_phone_number, body)
    if not outcome.reached:
        logger.error(
            "Operator notification failed",
            alert_id=str(alert.id),
            error=outcome.error,
        )
    return outcome.reached
