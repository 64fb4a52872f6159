"""Escalation scheduler.

Owns the escalation state machine of a crisis alert: which tier is being
notified, how long to wait for a qualifying response, and when to move to
the next tier or give up.

All timers are durable. ``next_deadline_at`` on the alert row is the only
clock; the periodic sweep (see ``services.scheduler``) picks up any alert
whose deadline has passed, so an escalation survives a process restart
and can be resumed by any worker.

Every state change goes through ``transition_alert``: the alert is
re-read, the mutation is checked against the fresh state, and the write
is guarded by the row's version counter. A concurrent writer makes the
commit fail with StaleDataError and the mutation is re-evaluated.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from serenity_crisis.config import settings
from serenity_crisis.core.exceptions import (
    AlertNotFoundError,
    EscalationExhaustedError,
    InvalidTransitionError,
    NoRespondersError,
    TierUnreachableError,
    TransitionConflictError,
)
from serenity_crisis.logging_config import alert_context, get_logger
from serenity_crisis.models.crisis_alert import (
    STATUS_RANK,
    AlertStatus,
    CrisisAlert,
    CrisisSeverity,
    EscalationState,
)
from serenity_crisis.services.notification_dispatcher import (
    notify_operator,
    notify_tier,
    tier_is_unreachable,
)
from serenity_crisis.services.support_directory import ResponderTier, resolve_tiers

logger = get_logger(__name__)

# Legal escalation state transitions. NOTIFYING -> NOTIFYING is a tier advance.
TRANSITIONS: dict[EscalationState, frozenset[EscalationState]] = {
    EscalationState.PENDING: frozenset(
        {
            EscalationState.NOTIFYING,
            EscalationState.RESPONDED,
            EscalationState.EXHAUSTED,
            EscalationState.RESOLVED,
        }
    ),
    EscalationState.NOTIFYING: frozenset(
        {
            EscalationState.NOTIFYING,
            EscalationState.AWAITING_RESPONSE,
            EscalationState.RESPONDED,
            EscalationState.EXHAUSTED,
            EscalationState.RESOLVED,
        }
    ),
    EscalationState.AWAITING_RESPONSE: frozenset(
        {
            EscalationState.NOTIFYING,
            EscalationState.RESPONDED,
            EscalationState.RESOLVED,
        }
    ),
    EscalationState.EXHAUSTED: frozenset(
        {EscalationState.RESPONDED, EscalationState.RESOLVED}
    ),
    EscalationState.RESPONDED: frozenset({EscalationState.RESOLVED}),
    EscalationState.RESOLVED: frozenset(),
}

# Alert status implied by each escalation state
STATE_STATUS: dict[EscalationState, AlertStatus] = {
    EscalationState.PENDING: AlertStatus.ACTIVE,
    EscalationState.NOTIFYING: AlertStatus.ACTIVE,
    EscalationState.AWAITING_RESPONSE: AlertStatus.ACTIVE,
    EscalationState.EXHAUSTED: AlertStatus.ESCALATED,
    EscalationState.RESPONDED: AlertStatus.RESPONDED,
    EscalationState.RESOLVED: AlertStatus.RESOLVED,
}

# States with a live deadline the sweep must watch
TIMED_STATES = (
    EscalationState.PENDING,
    EscalationState.NOTIFYING,
    EscalationState.AWAITING_RESPONSE,
)

URGENT_SEVERITIES = frozenset({CrisisSeverity.CRITICAL, CrisisSeverity.EMERGENCY})

SWEEP_BATCH_SIZE = 100

AlertMutation = Callable[[CrisisAlert], bool]


def utcnow() -> datetime:
    return datetime.now(UTC)


def window_for(severity: CrisisSeverity) -> timedelta:
    """Response window for an alert of the given severity."""
    if severity in URGENT_SEVERITIES:
        return timedelta(seconds=settings.escalation_urgent_window_seconds)
    return timedelta(seconds=settings.escalation_window_seconds)


def lease_deadline(now: datetime) -> datetime:
    return now + timedelta(seconds=settings.notification_lease_seconds)


def cap_tiers(tiers: tuple[ResponderTier, ...]) -> tuple[ResponderTier, ...]:
    """Apply the configured maximum tier count (0 = no cap)."""
    if settings.escalation_max_tiers > 0:
        return tiers[: settings.escalation_max_tiers]
    return tiers


def apply_transition(
    alert: CrisisAlert,
    target: EscalationState,
    tier: int | None = None,
) -> bool:
    """Move an alert to ``target`` in memory, deriving its status.

    Re-applying the current state (and tier) is a no-op.

    Returns:
        True if anything changed.

    Raises:
        InvalidTransitionError: Transition not in the table, tier moving
            backwards, or status moving backwards.
    """
    current = alert.escalation_state
    tier_changes = tier is not None and tier != alert.current_tier

    if target == current and not tier_changes:
        return False

    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)

    if tier_changes:
        if tier < alert.current_tier or target != EscalationState.NOTIFYING:
            raise InvalidTransitionError(
                f"{current.value}@{alert.current_tier}", f"{target.value}@{tier}"
            )
        alert.current_tier = tier

    status = STATE_STATUS[target]
    if STATUS_RANK[status] < STATUS_RANK[alert.status]:
        raise InvalidTransitionError(alert.status.value, status.value)

    alert.escalation_state = target
    alert.status = status
    return True


async def load_alert(db: AsyncSession, alert_id: uuid.UUID) -> CrisisAlert | None:
    """Read an alert, refreshing any copy already in the session."""
    result = await db.execute(
        select(CrisisAlert)
        .where(CrisisAlert.id == alert_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def transition_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    mutate: AlertMutation,
) -> tuple[CrisisAlert, bool]:
    """Apply a guarded mutation to an alert with optimistic concurrency.

    ``mutate`` receives the freshly loaded alert and returns False when
    the current state makes the mutation moot (already responded, tier
    already advanced, ...). Mutations must only touch the alert when they
    return True.

    Args:
        db: Database session.
        alert_id: Alert to mutate.
        mutate: Guarded mutation.

    Returns:
        Tuple of (alert, changed).

    Raises:
        AlertNotFoundError: If the alert does not exist.
        TransitionConflictError: If every retry lost a race.
    """
    attempts = settings.transition_max_retries
    for attempt in range(1, attempts + 1):
        alert = await load_alert(db, alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)

        if not mutate(alert):
            return alert, False

        try:
            await db.commit()
            return alert, True
        except StaleDataError:
            await db.rollback()
            logger.info(
                "Alert changed concurrently, re-evaluating",
                alert_id=str(alert_id),
                attempt=attempt,
            )
        except OperationalError as e:
            await db.rollback()
            logger.warning(
                "Database busy applying transition",
                alert_id=str(alert_id),
                attempt=attempt,
                error=str(e),
            )
            await asyncio.sleep(0.05 * attempt)

    raise TransitionConflictError(alert_id, attempts)


# Guarded mutations. Each checks the fresh state first and returns False
# without touching the alert when it no longer applies.


def _begin_notifying(tier: int, now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if alert.escalation_state != EscalationState.PENDING or alert.current_tier != tier:
            return False
        apply_transition(alert, EscalationState.NOTIFYING)
        alert.next_deadline_at = lease_deadline(now)
        return True

    return mutate


def _advance_tier(from_tier: int, now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if alert.current_tier != from_tier or alert.escalation_state not in (
            EscalationState.NOTIFYING,
            EscalationState.AWAITING_RESPONSE,
        ):
            return False
        apply_transition(alert, EscalationState.NOTIFYING, tier=from_tier + 1)
        alert.next_deadline_at = lease_deadline(now)
        return True

    return mutate


def _await_response(tier: int, now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if alert.escalation_state != EscalationState.NOTIFYING or alert.current_tier != tier:
            return False
        apply_transition(alert, EscalationState.AWAITING_RESPONSE)
        alert.next_deadline_at = now + window_for(alert.severity)
        return True

    return mutate


def _expire_window(tier: int, now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if (
            alert.escalation_state != EscalationState.AWAITING_RESPONSE
            or alert.current_tier != tier
            or alert.next_deadline_at is None
            or alert.next_deadline_at > now
        ):
            return False
        return _advance_tier(tier, now)(alert)

    return mutate


def _reclaim_lease(now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if (
            alert.escalation_state not in (EscalationState.PENDING, EscalationState.NOTIFYING)
            or alert.next_deadline_at is None
            or alert.next_deadline_at > now
        ):
            return False
        # The version bump is what claims the lease
        alert.next_deadline_at = lease_deadline(now)
        return True

    return mutate


def _exhaust(tier: int, now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if alert.current_tier != tier or alert.escalation_state not in (
            EscalationState.PENDING,
            EscalationState.NOTIFYING,
        ):
            return False
        apply_transition(alert, EscalationState.EXHAUSTED)
        # Report the last tier actually notified, not the one past the end
        alert.current_tier = max(tier - 1, 1)
        alert.exhausted_at = now
        alert.next_deadline_at = None
        return True

    return mutate


def _expedite(tier: int, now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if (
            alert.escalation_state != EscalationState.AWAITING_RESPONSE
            or alert.current_tier != tier
            or (alert.next_deadline_at is not None and alert.next_deadline_at <= now)
        ):
            return False
        alert.next_deadline_at = now
        return True

    return mutate


def _respond(responder_id: uuid.UUID, responded_at: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if alert.escalation_state in (EscalationState.RESPONDED, EscalationState.RESOLVED):
            return False
        apply_transition(alert, EscalationState.RESPONDED)
        alert.first_responder_id = responder_id
        alert.first_response_at = responded_at
        alert.next_deadline_at = None
        return True

    return mutate


def _resolve(resolver_id: uuid.UUID | None, notes: str | None, now: datetime) -> AlertMutation:
    def mutate(alert: CrisisAlert) -> bool:
        if alert.escalation_state == EscalationState.RESOLVED:
            return False
        apply_transition(alert, EscalationState.RESOLVED)
        alert.resolved_at = now
        alert.resolved_by = resolver_id
        alert.resolution_notes = notes
        alert.next_deadline_at = None
        return True

    return mutate


async def _exhaust_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    tier: int,
    now: datetime,
) -> CrisisAlert:
    alert, changed = await transition_alert(db, alert_id, _exhaust(tier, now))
    if changed:
        reason: Exception = EscalationExhaustedError(alert_id, tiers_tried=tier - 1)
        if tier == 1:
            reason = NoRespondersError(alert.patient_id, alert_id)
        logger.error(
            "Escalation exhausted without a response",
            alert_id=str(alert_id),
            tiers_tried=tier - 1,
        )
        await notify_operator(alert, reason)
    return alert


async def run_escalation(
    db: AsyncSession,
    alert_id: uuid.UUID,
    now: datetime | None = None,
) -> CrisisAlert:
    """Drive an alert forward until it waits on a response or a terminal state.

    Notifies the alert's current tier, skipping past tiers whose every
    responder failed delivery, and arms the response window once at least
    one responder was reached. Runs out of tiers -> exhausted, and the
    operator is alerted.

    Safe to call repeatedly and concurrently: every step is a guarded
    transition, and a tier's reached responders are never re-sent.

    Args:
        db: Database session.
        alert_id: Alert to drive.
        now: Clock override, mainly for tests.

    Returns:
        The alert in its new state.
    """
    with alert_context(alert_id):
        while True:
            alert = await load_alert(db, alert_id)
            if alert is None:
                raise AlertNotFoundError(alert_id)

            if alert.escalation_state not in (
                EscalationState.PENDING,
                EscalationState.NOTIFYING,
            ):
                return alert

            tier_number = alert.current_tier
            try:
                tiers = cap_tiers(await resolve_tiers(db, alert.patient_id))
            except NoRespondersError:
                tiers = ()

            if tier_number > len(tiers):
                return await _exhaust_alert(db, alert_id, tier_number, now or utcnow())

            alert, _ = await transition_alert(
                db, alert_id, _begin_notifying(tier_number, now or utcnow())
            )
            if (
                alert.escalation_state != EscalationState.NOTIFYING
                or alert.current_tier != tier_number
            ):
                # Someone else moved the alert; re-evaluate from scratch
                continue

            logger.info(
                "Notifying escalation tier",
                tier=tier_number,
                responders=len(tiers[tier_number - 1].responders),
            )
            result = await notify_tier(db, alert, tier_number, tiers[tier_number - 1])

            try:
                result.raise_if_unreachable()
            except TierUnreachableError as e:
                logger.warning("Skipping unreachable tier", tier=e.tier)
                await transition_alert(
                    db, alert_id, _advance_tier(tier_number, now or utcnow())
                )
                continue

            alert, changed = await transition_alert(
                db, alert_id, _await_response(tier_number, now or utcnow())
            )
            if changed:
                logger.info(
                    "Awaiting response",
                    tier=tier_number,
                    deadline=alert.next_deadline_at.isoformat(),
                )
            if changed and await tier_is_unreachable(db, alert_id, tier_number):
                # Failure callbacks landed while the tier was still being sent
                logger.warning("Tier unreachable after delivery failures", tier=tier_number)
                await transition_alert(
                    db, alert_id, _advance_tier(tier_number, now or utcnow())
                )
                continue
            return alert


async def handle_deadline(
    db: AsyncSession,
    alert_id: uuid.UUID,
    now: datetime | None = None,
) -> bool:
    """Act on an alert whose deadline has passed.

    An expired response window escalates to the next tier. An expired
    notification lease means the worker notifying the alert went away; the
    lease is re-claimed and notification resumes. Deadlines that were
    already acted on (or pushed out) are ignored.

    Returns:
        True if the alert was moved forward.
    """
    now = now or utcnow()

    with alert_context(alert_id):
        alert = await load_alert(db, alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)

        if alert.next_deadline_at is None or alert.next_deadline_at > now:
            return False

        if alert.escalation_state == EscalationState.AWAITING_RESPONSE:
            tier = alert.current_tier
            _, changed = await transition_alert(db, alert_id, _expire_window(tier, now))
            if not changed:
                return False
            logger.info(
                "Response window expired, escalating",
                from_tier=tier,
                to_tier=tier + 1,
            )
            await run_escalation(db, alert_id, now)
            return True

        if alert.escalation_state in (EscalationState.PENDING, EscalationState.NOTIFYING):
            _, changed = await transition_alert(db, alert_id, _reclaim_lease(now))
            if not changed:
                return False
            logger.warning(
                "Resuming stalled notification",
                tier=alert.current_tier,
                state=alert.escalation_state.value,
            )
            await run_escalation(db, alert_id, now)
            return True

        return False


async def process_due_escalations(
    db: AsyncSession,
    now: datetime | None = None,
) -> int:
    """Handle every alert whose deadline has passed.

    One failing alert never stops the sweep.

    Returns:
        Number of alerts moved forward.
    """
    now = now or utcnow()

    result = await db.execute(
        select(CrisisAlert.id)
        .where(
            CrisisAlert.escalation_state.in_(TIMED_STATES),
            CrisisAlert.next_deadline_at.is_not(None),
            CrisisAlert.next_deadline_at <= now,
        )
        .order_by(CrisisAlert.next_deadline_at)
        .limit(SWEEP_BATCH_SIZE)
    )
    alert_ids = list(result.scalars().all())

    handled = 0
    for alert_id in alert_ids:
        with alert_context(alert_id):
            try:
                if await handle_deadline(db, alert_id, now):
                    handled += 1
            except Exception as e:
                await db.rollback()
                logger.error(
                    "Failed to process escalation deadline",
                    exc_info=True,
                    error=str(e),
                )

    if alert_ids:
        logger.info(
            "Escalation sweep completed",
            due=len(alert_ids),
            handled=handled,
        )

    return handled


async def expedite_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    tier: int,
    now: datetime | None = None,
) -> bool:
    """Pull the response deadline of ``tier`` forward to now.

    Used when carrier callbacks report that every responder of the tier
    failed delivery; the next sweep then escalates without waiting out the
    window.
    """
    _, changed = await transition_alert(db, alert_id, _expedite(tier, now or utcnow()))
    if changed:
        logger.info(
            "Tier unreachable after delivery failures, expediting",
            alert_id=str(alert_id),
            tier=tier,
        )
    return changed


async def mark_responded(
    db: AsyncSession,
    alert_id: uuid.UUID,
    responder_id: uuid.UUID,
    responded_at: datetime,
) -> tuple[CrisisAlert, bool]:
    """Close escalation on a qualifying response.

    Exactly one caller gets ``changed=True`` for an alert; everyone after
    that sees it already responded (or resolved).
    """
    return await transition_alert(db, alert_id, _respond(responder_id, responded_at))


async def mark_resolved(
    db: AsyncSession,
    alert_id: uuid.UUID,
    resolver_id: uuid.UUID | None,
    notes: str | None,
    now: datetime | None = None,
) -> tuple[CrisisAlert, bool]:
    """Resolve an alert from any non-resolved state."""
    return await transition_alert(db, alert_id, _resolve(resolver_id, notes, now or utcnow()))
