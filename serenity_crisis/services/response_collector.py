"""Response collector.

Accepts responder replies to a crisis alert, from the API or parsed out
of inbound SMS, and decides whether the reply closes the escalation.

Every valid response is written to the append-only audit trail first.
Only then is the escalation closed, through a versioned transition, so
when two responders answer at once both replies are kept and exactly one
of them is recorded as the first response.
"""

import enum
import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from serenity_crisis.core.exceptions import (
    AlertNotFoundError,
    InvalidResponseError,
    NoRespondersError,
)
from serenity_crisis.logging_config import get_logger
from serenity_crisis.models.crisis_alert import AlertStatus, CrisisAlert
from serenity_crisis.models.notification_attempt import NotificationAttempt
from serenity_crisis.models.supporter_response import (
    QUALIFYING_RESPONSE_TYPES,
    ResponseChannel,
    ResponseType,
    SupporterResponse,
)
from serenity_crisis.services.escalation_scheduler import load_alert, mark_responded
from serenity_crisis.services.support_directory import (
    get_responder,
    resolve_tiers,
    tier_index_of,
)

logger = get_logger(__name__)

MAX_ETA_MINUTES = 24 * 60
MAX_NOTES_LENGTH = 2000

# SMS reply keyword -> response type. Longest keywords are matched first.
REPLY_KEYWORDS: dict[str, ResponseType] = {
    "1": ResponseType.IMMEDIATE,
    "yes": ResponseType.IMMEDIATE,
    "y": ResponseType.IMMEDIATE,
    "calling": ResponseType.IMMEDIATE,
    "2": ResponseType.ON_MY_WAY,
    "omw": ResponseType.ON_MY_WAY,
    "on my way": ResponseType.ON_MY_WAY,
    "coming": ResponseType.ON_MY_WAY,
    "3": ResponseType.CANT_HELP,
    "no": ResponseType.CANT_HELP,
    "n": ResponseType.CANT_HELP,
    "cant": ResponseType.CANT_HELP,
    "can't": ResponseType.CANT_HELP,
    "4": ResponseType.DELEGATED,
    "delegate": ResponseType.DELEGATED,
    "delegated": ResponseType.DELEGATED,
}

# Optional "by"/"at" marks a clock time rather than a duration
_ETA_PATTERN = re.compile(
    r"(?:\b(by|at)\s+)?\b(\d{1,4})\s*(hours?|hrs?|h|minutes?|mins?|m)?\b"
)
_PUNCTUATION = re.compile(r"[^\w' ]+")

# A bare "no" is often a pleasantry ("no problem, on my way")
_SOFT_NEGATIVES = frozenset({"no", "n"})
_QUALIFYING_PHRASE = re.compile(r"\b(on my way|omw|calling|coming)\b")
_NEGATIONS = frozenset({"not", "cant", "can't", "cannot", "wont", "won't"})


class ResponseOutcome(str, enum.Enum):
    """What submitting a response did."""

    ACCEPTED = "accepted"  # First qualifying response; escalation closed
    RECORDED = "recorded"  # Valid but non-qualifying; escalation continues
    ALREADY_HANDLED = "already_handled"  # Duplicate, or alert already closed


@dataclass
class ResponseResult:
    outcome: ResponseOutcome
    response: SupporterResponse
    alert: CrisisAlert


def _match_keyword(text: str) -> str | None:
    for keyword in sorted(REPLY_KEYWORDS, key=len, reverse=True):
        if text == keyword or text.startswith(keyword + " "):
            return keyword
    return None


def parse_eta(text: str) -> int | None:
    """Pull an ETA in minutes out of free text like ``"10 mins"`` or ``"2 hours"``.

    Clock times (``"by 1930"``) and anything beyond MAX_ETA_MINUTES give
    None rather than an error; the reply still counts.
    """
    match = _ETA_PATTERN.search(text)
    if match is None or match.group(1):
        return None

    minutes = int(match.group(2))
    unit = match.group(3)
    if unit and unit.startswith("h"):
        minutes *= 60
    return minutes if minutes <= MAX_ETA_MINUTES else None


def parse_sms_reply(body: str) -> tuple[ResponseType, int | None]:
    """Parse an SMS reply like ``"2 15"`` or ``"on my way 10 mins"``.

    Returns:
        Tuple of (response type, ETA minutes or None).

    Raises:
        InvalidResponseError: If the reply doesn't start with a known key.
    """
    text = " ".join(_PUNCTUATION.sub(" ", body.lower()).split())

    keyword = _match_keyword(text)
    if keyword is None:
        raise InvalidResponseError(f"Unrecognized SMS reply: {body[:40]!r}")

    rest = text[len(keyword):]
    if keyword in _SOFT_NEGATIVES:
        phrase = _QUALIFYING_PHRASE.search(rest)
        if phrase is not None and not _NEGATIONS.intersection(rest.split()):
            keyword = phrase.group(1)
            rest = rest[phrase.end():]

    response_type = REPLY_KEYWORDS[keyword]
    eta_minutes = parse_eta(rest) if response_type == ResponseType.ON_MY_WAY else None
    return response_type, eta_minutes


def coerce_response_type(value: ResponseType | str) -> ResponseType:
    try:
        return ResponseType(value)
    except ValueError as e:
        raise InvalidResponseError(f"Unknown response type: {value!r}") from e


async def _validate_responder(
    db: AsyncSession,
    alert: CrisisAlert,
    responder_id: uuid.UUID,
) -> None:
    """Check the responder may answer this alert.

    They must belong to the alert's patient and either have been notified
    for it or sit in a tier that has already been activated.
    """
    responder = await get_responder(db, responder_id)
    if responder is None or responder.patient_id != alert.patient_id:
        raise InvalidResponseError(
            f"Responder {responder_id} is not in this patient's support network"
        )

    notified = await db.execute(
        select(NotificationAttempt.id)
        .where(
            NotificationAttempt.alert_id == alert.id,
            NotificationAttempt.responder_id == responder_id,
        )
        .limit(1)
    )
    if notified.scalar_one_or_none() is not None:
        return

    try:
        tiers = await resolve_tiers(db, alert.patient_id)
    except NoRespondersError:
        tiers = ()

    tier_index = tier_index_of(tiers, responder_id)
    if tier_index is None or tier_index > alert.current_tier:
        raise InvalidResponseError(
            f"Responder {responder_id} has not been asked to respond to this alert"
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
    now: datetime | None = None,
) -> ResponseResult:
    """Record a responder's reply and close escalation if it qualifies.

    Idempotent on ``response_id``: resubmitting the same id returns the
    stored response with ALREADY_HANDLED and changes nothing.

    Args:
        db: Database session.
        alert_id: Alert being answered.
        responder_id: Responder answering.
        response_type: immediate / on_my_way / cant_help / delegated.
        eta_minutes: Optional ETA, for on_my_way.
        notes: Optional free text.
        response_id: Caller-supplied idempotency key.
        channel: Where the response came from.
        now: Clock override.

    Returns:
        ResponseResult.

    Raises:
        AlertNotFoundError: If the alert does not exist.
        InvalidResponseError: Bad payload, alert already resolved, or a
            responder who was never asked.
    """
    response_type = coerce_response_type(response_type)

    if eta_minutes is not None and not 0 <= eta_minutes <= MAX_ETA_MINUTES:
        raise InvalidResponseError(f"ETA must be between 0 and {MAX_ETA_MINUTES} minutes")
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise InvalidResponseError(f"Notes exceed {MAX_NOTES_LENGTH} characters")

    if response_id is not None:
        duplicate = await _existing_response(db, alert_id, response_id)
        if duplicate is not None:
            return duplicate

    alert = await load_alert(db, alert_id)
    if alert is None:
        raise AlertNotFoundError(alert_id)

    if alert.status == AlertStatus.RESOLVED:
        raise InvalidResponseError(f"Alert {alert_id} is already resolved")

    await _validate_responder(db, alert, responder_id)

    response = SupporterResponse(
        id=response_id or uuid.uuid4(),
        alert_id=alert_id,
        responder_id=responder_id,
        response_type=response_type,
        eta_minutes=eta_minutes,
        notes=notes,
        channel=channel,
        responded_at=now or datetime.now(UTC),
    )
    db.add(response)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        # Same response id committed concurrently
        duplicate = (
            await _existing_response(db, alert_id, response_id) if response_id else None
        )
        if duplicate is None:
            raise
        return duplicate

    logger.info(
        "Response recorded",
        alert_id=str(alert_id),
        responder_id=str(responder_id),
        response_type=response_type.value,
        channel=channel.value,
    )

    if response_type not in QUALIFYING_RESPONSE_TYPES:
        return ResponseResult(ResponseOutcome.RECORDED, response, alert)

    alert, changed = await mark_responded(db, alert_id, responder_id, response.responded_at)

    if not changed:
        logger.info(
            "Alert already handled, response kept for the record",
            alert_id=str(alert_id),
            responder_id=str(responder_id),
        )
        return ResponseResult(ResponseOutcome.ALREADY_HANDLED, response, alert)

    logger.info(
        "Escalation closed by first response",
        alert_id=str(alert_id),
        responder_id=str(responder_id),
        tier=alert.current_tier,
    )
    return ResponseResult(ResponseOutcome.ACCEPTED, response, alert)


async def _existing_response(
    db: AsyncSession,
    alert_id: uuid.UUID,
    response_id: uuid.UUID,
) -> ResponseResult | None:
    existing = await db.get(SupporterResponse, response_id)
    if existing is None:
        return None

    if existing.alert_id != alert_id:
        raise InvalidResponseError(f"Response id {response_id} belongs to another alert")

    alert = await load_alert(db, alert_id)
    if alert is None:
        raise AlertNotFoundError(alert_id)

    return ResponseResult(ResponseOutcome.ALREADY_HANDLED, existing, alert)


async def list_responses(
    db: AsyncSession,
    alert_id: uuid.UUID,
) -> list[SupporterResponse]:
    """Get every response to an alert, oldest first."""
    result = await db.execute(
        select(SupporterResponse)
        .where(SupporterResponse.alert_id == alert_id)
        .order_by(SupporterResponse.responded_at)
    )
    return list(result.scalars().all())
