"""Crisis alert router.

Report a crisis, follow its escalation, record responder replies and
resolve it.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from serenity_crisis.core.exceptions import (
    AlertIdConflictError,
    AlertNotFoundError,
    InvalidResponseError,
    NoRespondersError,
    TransitionConflictError,
)
from serenity_crisis.database import get_db
from serenity_crisis.schemas.crisis_alert import (
    CrisisAlertCreate,
    CrisisAlertCreateResponse,
    CrisisAlertDetailResponse,
    CrisisAlertListResponse,
    CrisisAlertResolve,
    CrisisAlertResolveResponse,
    CrisisAlertResponse,
    CrisisResourceResponse,
    CrisisResourcesResponse,
    NotificationAttemptResponse,
    SupporterResponseCreate,
    SupporterResponseResult,
    SupporterResponseSchema,
)
from serenity_crisis.services import crisis_engine
from serenity_crisis.services.crisis_engine import CRISIS_RESOURCES, AlertLocation

router = APIRouter(prefix="/api/crisis", tags=["crisis"])


def _resources() -> list[CrisisResourceResponse]:
    return [CrisisResourceResponse.model_validate(r) for r in CRISIS_RESOURCES]


def _not_found(alert_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Crisis alert {alert_id} not found",
    )


def _conflict(e: TransitionConflictError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=str(e),
    )


@router.post(
    "/alerts",
    response_model=CrisisAlertCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_crisis_alert(
    request: CrisisAlertCreate,
    db: AsyncSession = Depends(get_db),
) -> CrisisAlertCreateResponse:
    """Report a crisis and start notifying the patient's support network.

    Returns the alert, who was contacted, and crisis lines the patient can
    call directly. Resubmitting the same ``alert_id`` returns the existing
    alert with ``created=false``.
    """
    location = None
    if request.location is not None:
        location = AlertLocation(
            lat=request.location.lat,
            lng=request.location.lng,
            address=request.location.address,
        )

    try:
        result = await crisis_engine.create_alert(
            db,
            patient_id=request.patient_id,
            severity=request.severity,
            message=request.message,
            location=location,
            alert_id=request.alert_id,
        )
    except NoRespondersError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": "No support network configured; operator has been notified",
                "alert_id": str(e.alert_id) if e.alert_id else None,
                "resources": [r.model_dump() for r in _resources()],
            },
        ) from e
    except AlertIdConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    except TransitionConflictError as e:
        raise _conflict(e) from e

    return CrisisAlertCreateResponse(
        alert=CrisisAlertResponse.model_validate(result.alert),
        created=result.created,
        contacted_responder_ids=result.contacted_responder_ids,
        resources=_resources(),
    )


@router.get(
    "/alerts/{alert_id}",
    response_model=CrisisAlertDetailResponse,
)
async def get_crisis_alert(
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> CrisisAlertDetailResponse:
    """Get an alert with its notification attempts and responses."""
    try:
        snapshot = await crisis_engine.get_alert_status(db, alert_id)
    except AlertNotFoundError as e:
        raise _not_found(alert_id) from e

    return CrisisAlertDetailResponse(
        alert=CrisisAlertResponse.model_validate(snapshot.alert),
        attempts=[
            NotificationAttemptResponse.model_validate(a) for a in snapshot.attempts
        ],
        responses=[
            SupporterResponseSchema.model_validate(r) for r in snapshot.responses
        ],
    )


@router.post(
    "/alerts/{alert_id}/responses",
    response_model=SupporterResponseResult,
)
async def submit_supporter_response(
    alert_id: uuid.UUID,
    request: SupporterResponseCreate,
    db: AsyncSession = Depends(get_db),
) -> SupporterResponseResult:
    """Record a responder's reply.

    ``outcome`` is ``accepted`` for the reply that closed the escalation,
    ``recorded`` for a reply that doesn't (can't help, delegated), and
    ``already_handled`` when someone else got there first or the reply
    was a retry.
    """
    try:
        result = await crisis_engine.submit_response(
            db,
            alert_id,
            request.responder_id,
            request.response_type,
            eta_minutes=request.eta_minutes,
            notes=request.notes,
            response_id=request.response_id,
        )
    except AlertNotFoundError as e:
        raise _not_found(alert_id) from e
    except InvalidResponseError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    except TransitionConflictError as e:
        raise _conflict(e) from e

    return SupporterResponseResult(
        outcome=result.outcome,
        response=SupporterResponseSchema.model_validate(result.response),
        alert=CrisisAlertResponse.model_validate(result.alert),
    )


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=CrisisAlertResolveResponse,
)
async def resolve_crisis_alert(
    alert_id: uuid.UUID,
    request: CrisisAlertResolve,
    db: AsyncSession = Depends(get_db),
) -> CrisisAlertResolveResponse:
    """Resolve an alert. Resolving twice is harmless."""
    try:
        alert, changed = await crisis_engine.resolve_alert(
            db,
            alert_id,
            resolver_id=request.resolver_id,
            notes=request.notes,
        )
    except AlertNotFoundError as e:
        raise _not_found(alert_id) from e
    except TransitionConflictError as e:
        raise _conflict(e) from e

    return CrisisAlertResolveResponse(
        alert=CrisisAlertResponse.model_validate(alert),
        changed=changed,
    )


@router.get(
    "/patients/{patient_id}/alerts",
    response_model=CrisisAlertListResponse,
)
async def list_patient_crisis_alerts(
    patient_id: uuid.UUID,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
) -> CrisisAlertListResponse:
    """List a patient's alerts, newest first."""
    limit = min(max(limit, 1), 200)
    alerts = await crisis_engine.list_patient_alerts(db, patient_id, limit=limit)
    return CrisisAlertListResponse(
        alerts=[CrisisAlertResponse.model_validate(a) for a in alerts],
        count=len(alerts),
    )


@router.get("/resources", response_model=CrisisResourcesResponse)
async def get_crisis_resources() -> CrisisResourcesResponse:
    """Crisis lines available to anyone, alert or not."""
    return CrisisResourcesResponse(resources=_resources())
