"""Support network directory.

Resolves a patient to the ordered tiers of responders the escalation
engine contacts. Read-only; results are cached briefly because the lookup
sits on the hot path of alert creation and every escalation step.
"""

import time
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from serenity_crisis.config import settings
from serenity_crisis.core.exceptions import NoRespondersError
from serenity_crisis.logging_config import get_logger
from serenity_crisis.models.responder import Responder, ResponderRole

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResponderInfo:
    """Immutable snapshot of a responder, safe to share across sessions."""

    id: uuid.UUID
    patient_id: uuid.UUID
    display_name: str
    phone_number: str
    relationship: ResponderRole
    priority_tier: int


@dataclass(frozen=True)
class ResponderTier:
    """Responders sharing a priority tier, in fan-out order."""

    priority: int
    responders: tuple[ResponderInfo, ...]


# patient_id -> (expires_at monotonic, tiers)
_cache: dict[uuid.UUID, tuple[float, tuple[ResponderTier, ...]]] = {}


def invalidate_directory_cache(patient_id: uuid.UUID | None = None) -> None:
    """Drop cached tiers for one patient, or for everyone."""
    if patient_id is None:
        _cache.clear()
    else:
        _cache.pop(patient_id, None)


def _prune_expired(now: float) -> None:
    for patient_id in [pid for pid, (expires_at, _) in _cache.items() if expires_at <= now]:
        del _cache[patient_id]


def _snapshot(responder: Responder) -> ResponderInfo:
    return ResponderInfo(
        id=responder.id,
        patient_id=responder.patient_id,
        display_name=responder.display_name,
        phone_number=responder.phone_number,
        relationship=responder.relationship,
        priority_tier=responder.priority_tier,
    )


def group_into_tiers(responders: list[Responder]) -> tuple[ResponderTier, ...]:
    """Group responders (already sorted) by priority tier."""
    tiers: list[ResponderTier] = []
    current: list[ResponderInfo] = []
    current_priority: int | None = None

    for responder in responders:
        if current_priority is not None and responder.priority_tier != current_priority:
            tiers.append(ResponderTier(priority=current_priority, responders=tuple(current)))
            current = []
        current_priority = responder.priority_tier
        current.append(_snapshot(responder))

    if current_priority is not None:
        tiers.append(ResponderTier(priority=current_priority, responders=tuple(current)))

    return tuple(tiers)


async def resolve_tiers(
    db: AsyncSession,
    patient_id: uuid.UUID,
) -> tuple[ResponderTier, ...]:
    """Resolve a patient's active responders into ordered tiers.

    Args:
        db: Database session.
        patient_id: Patient's UUID.

    Returns:
        Tiers ordered by priority; responders within a tier ordered by
        position, then insertion time.

    Raises:
        NoRespondersError: If the patient has no active responders.
    """
    now = time.monotonic()
    cached = _cache.get(patient_id)
    if cached is not None:
        if cached[0] > now:
            return cached[1]
        del _cache[patient_id]

    result = await db.execute(
        select(Responder)
        .where(
            Responder.patient_id == patient_id,
            Responder.is_active.is_(True),
        )
        .order_by(
            Responder.priority_tier,
            Responder.position,
            Responder.created_at,
            Responder.id,
        )
    )
    tiers = group_into_tiers(list(result.scalars().all()))

    if not tiers:
        _cache.pop(patient_id, None)
        logger.warning(
            "Patient has no active responders",
            patient_id=str(patient_id),
        )
        raise NoRespondersError(patient_id)

    if settings.directory_cache_ttl_seconds > 0:
        _prune_expired(now)
        _cache[patient_id] = (now + settings.directory_cache_ttl_seconds, tiers)

    return tiers


async def get_responder(
    db: AsyncSession,
    responder_id: uuid.UUID,
) -> Responder | None:
    """Get a single responder, active or not."""
    return await db.get(Responder, responder_id)


def tier_index_of(tiers: tuple[ResponderTier, ...], responder_id: uuid.UUID) -> int | None:
    """1-based ordinal of the tier containing the responder, None if absent."""
    for index, tier in enumerate(tiers, start=1):
        if any(r.id == responder_id for r in tier.responders):
            return index
    return None
