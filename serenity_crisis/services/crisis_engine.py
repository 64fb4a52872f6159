"""Crisis alert engine.

Orchestrates a crisis from report to resolution: creates the alert,
kicks off tiered escalation, routes responses and carrier callbacks, and
exposes the alert's status. Holds no state of its own; everything lives
in the database, so any instance can continue any alert.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from serenity_crisis.core.exceptions import (
    AlertIdConflictError,
    AlertNotFoundError,
    NoRespondersError,
)
from serenity_crisis.logging_config import alert_context, get_logger
from serenity_crisis.models.crisis_alert import (
    AlertStatus,
    CrisisAlert,
    CrisisSeverity,
    EscalationState,
)
from serenity_crisis.models.notification_attempt import (
    DeliveryStatus,
    NotificationAttempt,
)
from serenity_crisis.models.supporter_response import (
    ResponseChannel,
    ResponseType,
    SupporterResponse,
)
from serenity_crisis.services import response_collector
from serenity_crisis.services.escalation_scheduler import (
    expedite_alert,
    handle_deadline,
    lease_deadline,
    load_alert,
    mark_resolved,
    run_escalation,
)
from serenity_crisis.services.notification_dispatcher import (
    apply_delivery_status,
    find_reply_target,
    get_attempts_for_alert,
    tier_is_unreachable,
)
from serenity_crisis.services.response_collector import (
    MAX_NOTES_LENGTH,
    ResponseResult,
    parse_sms_reply,
)
from serenity_crisis.services.support_directory import resolve_tiers

logger = get_logger(__name__)

# Inbound SMS replies get a response id derived from the provider's
# message id, so a redelivered webhook is recognized as a duplicate
SMS_REPLY_NAMESPACE = uuid.UUID("6f1c2a4e-9b57-4c1e-8d3a-2f6b0c9e7a15")


@dataclass(frozen=True)
class CrisisResource:
    """A crisis line shown alongside every alert."""

    name: str
    contact: str
    description: str
    url: str | None = None


CRISIS_RESOURCES: tuple[CrisisResource, ...] = (
    CrisisResource(
        name="988 Suicide & Crisis Lifeline",
        contact="988",
        description="Call or text 988, available 24/7",
        url="https://988lifeline.org",
    ),
    CrisisResource(
        name="Crisis Text Line",
        contact="741741",
        description="Text HOME to 741741",
        url="https://www.crisistextline.org",
    ),
    CrisisResource(
        name="Emergency Services",
        contact="911",
        description="Call 911 if anyone is in immediate danger",
    ),
    CrisisResource(
        name="SAMHSA National Helpline",
        contact="1-800-662-4357",
        description="Free, confidential treatment referral, 24/7",
        url="https://www.samhsa.gov/find-help/national-helpline",
    ),
)


@dataclass(frozen=True)
class AlertLocation:
    lat: float | None = None
    lng: float | None = None
    address: str | None = None


@dataclass
class CreateAlertResult:
    """Outcome of reporting a crisis."""

    alert: CrisisAlert
    created: bool
    attempts: list[NotificationAttempt] = field(default_factory=list)
    resources: tuple[CrisisResource, ...] = CRISIS_RESOURCES

    @property
    def contacted_responder_ids(self) -> list[uuid.UUID]:
        return [a.responder_id for a in self.attempts if a.reached]


@dataclass
class AlertStatusSnapshot:
    """Everything known about one alert."""

    alert: CrisisAlert
    attempts: list[NotificationAttempt]
    responses: list[SupporterResponse]


async def _existing_alert_result(
    db: AsyncSession,
    alert: CrisisAlert,
    patient_id: uuid.UUID,
) -> CreateAlertResult:
    if alert.patient_id != patient_id:
        raise AlertIdConflictError(alert.id)
    return CreateAlertResult(
        alert=alert,
        created=False,
        attempts=await get_attempts_for_alert(db, alert.id),
    )


async def create_alert(
    db: AsyncSession,
    patient_id: uuid.UUID,
    severity: CrisisSeverity,
    message: str,
    location: AlertLocation | None = None,
    alert_id: uuid.UUID | None = None,
) -> CreateAlertResult:
    """Report a crisis and start escalating it.

    Idempotent on ``alert_id``: reporting the same id again returns the
    existing alert without notifying anyone a second time.

    The alert is committed with a notification lease before any SMS goes
    out, so a crash between the two is picked up by the sweep.

    Args:
        db: Database session.
        patient_id: Patient in crisis.
        severity: Reported severity.
        message: Free-text message from the patient.
        location: Optional location.
        alert_id: Optional caller-supplied id (idempotency key).

    Returns:
        CreateAlertResult with the alert, the notification attempts made,
        and the crisis resources to show the patient.

    Raises:
        NoRespondersError: The patient has no active responders. The alert
            is still recorded (as exhausted) and the operator notified;
            the error carries its id.
        AlertIdConflictError: ``alert_id`` belongs to another patient.
    """
    if alert_id is not None:
        existing = await load_alert(db, alert_id)
        if existing is not None:
            logger.info("Duplicate crisis report ignored", alert_id=str(alert_id))
            return await _existing_alert_result(db, existing, patient_id)

    location = location or AlertLocation()
    alert = CrisisAlert(
        id=alert_id or uuid.uuid4(),
        patient_id=patient_id,
        severity=severity,
        message=message,
        location_lat=location.lat,
        location_lng=location.lng,
        location_address=location.address,
        status=AlertStatus.ACTIVE,
        escalation_state=EscalationState.PENDING,
        current_tier=1,
        next_deadline_at=lease_deadline(datetime.now(UTC)),
    )
    db.add(alert)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await load_alert(db, alert_id) if alert_id else None
        if existing is None:
            raise
        return await _existing_alert_result(db, existing, patient_id)

    alert_uuid = alert.id
    with alert_context(alert_uuid):
        logger.info(
            "Crisis alert created",
            patient_id=str(patient_id),
            severity=severity.value,
        )

        try:
            await resolve_tiers(db, patient_id)
        except NoRespondersError as e:
            # Record the exhaustion and page the operator before reporting it
            await run_escalation(db, alert_uuid)
            raise NoRespondersError(patient_id, alert_uuid) from e

        alert = await run_escalation(db, alert_uuid)

    return CreateAlertResult(
        alert=alert,
        created=True,
        attempts=await get_attempts_for_alert(db, alert_uuid),
    )


async def submit_response(
    db: AsyncSession,
    alert_id: uuid.UUID,
    responder_id: uuid.UUID,
    response_type: ResponseType | str,
    eta_minutes: int | None = None,
    notes: str | None = None,
    response_id: uuid.UUID | None = None,
    channel: ResponseChannel = ResponseChannel.API,
) -> ResponseResult:
    """Record a responder's reply. See ``response_collector.submit_response``."""
    with alert_context(alert_id):
        return await response_collector.submit_response(
            db,
            alert_id,
            responder_id,
            response_type,
            eta_minutes=eta_minutes,
            notes=notes,
            response_id=response_id,
            channel=channel,
        )


async def handle_inbound_reply(
    db: AsyncSession,
    from_number: str,
    body: str,
    provider_message_id: str,
) -> ResponseResult | None:
    """Turn an inbound SMS into a response to the alert it answers.

    The reply is routed to the newest unresolved alert the number was
    notified for.

    Returns:
        The ResponseResult, or None if the number has no open alert.

    Raises:
        InvalidResponseError: If the reply text can't be understood.
    """
    attempt = await find_reply_target(db, from_number)
    if attempt is None:
        logger.warning(
            "Inbound SMS does not match an open alert",
            provider_message_id=provider_message_id,
        )
        return None

    response_type, eta_minutes = parse_sms_reply(body)

    return await submit_response(
        db,
        attempt.alert_id,
        attempt.responder_id,
        response_type,
        eta_minutes=eta_minutes,
        notes=body.strip()[:MAX_NOTES_LENGTH],
        response_id=uuid.uuid5(SMS_REPLY_NAMESPACE, provider_message_id),
        channel=ResponseChannel.SMS,
    )


async def handle_delivery_status(
    db: AsyncSession,
    delivery_id: str,
    status: str,
) -> bool:
    """Apply a carrier delivery callback.

    When the callback leaves every responder of the alert's current tier
    failed, the response window is cut short and the next tier notified.

    Returns:
        True if the callback changed anything.
    """
    attempt = await apply_delivery_status(db, delivery_id, status)
    if attempt is None:
        return False

    if attempt.delivery_status == DeliveryStatus.FAILED and await tier_is_unreachable(
        db, attempt.alert_id, attempt.tier
    ):
        with alert_context(attempt.alert_id):
            if await expedite_alert(db, attempt.alert_id, attempt.tier):
                await handle_deadline(db, attempt.alert_id)

    return True


async def resolve_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    resolver_id: uuid.UUID | None = None,
    notes: str | None = None,
) -> tuple[CrisisAlert, bool]:
    """Resolve an alert. Idempotent.

    Returns:
        Tuple of (alert, changed); changed is False if already resolved.

    Raises:
        AlertNotFoundError: If the alert does not exist.
    """
    with alert_context(alert_id):
        alert, changed = await mark_resolved(db, alert_id, resolver_id, notes)
        if changed:
            logger.info(
                "Crisis alert resolved",
                resolved_by=str(resolver_id) if resolver_id else None,
            )
        return alert, changed


async def get_alert_status(
    db: AsyncSession,
    alert_id: uuid.UUID,
) -> AlertStatusSnapshot:
    """Get an alert with its notification attempts and responses.

    Raises:
        AlertNotFoundError: If the alert does not exist.
    """
    alert = await load_alert(db, alert_id)
    if alert is None:
        raise AlertNotFoundError(alert_id)

    return AlertStatusSnapshot(
        alert=alert,
        attempts=await get_attempts_for_alert(db, alert_id),
        responses=await response_collector.list_responses(db, alert_id),
    )


async def list_patient_alerts(
    db: AsyncSession,
    patient_id: uuid.UUID,
    limit: int = 50,
) -> list[CrisisAlert]:
    """Get a patient's alerts, newest first."""
    result = await db.execute(
        select(CrisisAlert)
        .where(CrisisAlert.patient_id == patient_id)
        .order_by(CrisisAlert.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
