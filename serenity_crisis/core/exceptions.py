"""Crisis escalation exception hierarchy.

Transport errors live with the SMS gateway client
(``serenity_crisis.services.sms_gateway``).
"""

import uuid


class CrisisEngineError(Exception):
    """Base exception for all escalation engine errors."""


class AlertNotFoundError(CrisisEngineError):
    """No crisis alert with the given id."""

    def __init__(self, alert_id: uuid.UUID) -> None:
        self.alert_id = alert_id
        super().__init__(f"Crisis alert {alert_id} not found")


class NoRespondersError(CrisisEngineError):
    """The patient has no active responders to notify.

    ``alert_id`` is set when an alert was recorded before the condition
    was discovered, so the caller can still reference it.
    """

    def __init__(self, patient_id: uuid.UUID, alert_id: uuid.UUID | None = None) -> None:
        self.patient_id = patient_id
        self.alert_id = alert_id
        super().__init__(f"Patient {patient_id} has no active responders")


class TierUnreachableError(CrisisEngineError):
    """Every responder in a tier failed delivery."""

    def __init__(self, alert_id: uuid.UUID, tier: int) -> None:
        self.alert_id = alert_id
        self.tier = tier
        super().__init__(f"No responder in tier {tier} of alert {alert_id} was reachable")


class InvalidResponseError(CrisisEngineError):
    """Malformed or out-of-order response; rejected without state change."""


class EscalationExhaustedError(CrisisEngineError):
    """All tiers were tried without a qualifying response."""

    def __init__(self, alert_id: uuid.UUID, tiers_tried: int) -> None:
        self.alert_id = alert_id
        self.tiers_tried = tiers_tried
        super().__init__(
            f"Alert {alert_id} exhausted {tiers_tried} tier(s) without a response"
        )


class InvalidTransitionError(CrisisEngineError):
    """A state change not present in the escalation transition table."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal escalation transition {current} -> {target}")


class TransitionConflictError(CrisisEngineError):
    """A versioned alert write kept losing races and gave up."""

    def __init__(self, alert_id: uuid.UUID, attempts: int) -> None:
        self.alert_id = alert_id
        self.attempts = attempts
        super().__init__(
            f"Could not apply transition to alert {alert_id} after {attempts} attempts"
        )


class AlertIdConflictError(CrisisEngineError):
    """An alert id was reused for a different patient."""

    def __init__(self, alert_id: uuid.UUID) -> None:
        self.alert_id = alert_id
        super().__init__(f"Alert id {alert_id} already belongs to another patient")
