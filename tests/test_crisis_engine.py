"""End-to-end tests for the crisis alert engine.

SMS runs in simulated mode unless a test patches the transport; time is
advanced by passing ``now`` to the deadline sweep.
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from serenity_crisis.config import settings
from serenity_crisis.core.exceptions import (
    AlertIdConflictError,
    AlertNotFoundError,
    InvalidResponseError,
    NoRespondersError,
)
from serenity_crisis.models.crisis_alert import (
    AlertStatus,
    CrisisSeverity,
    EscalationState,
)
from serenity_crisis.models.notification_attempt import DeliveryStatus
from serenity_crisis.models.responder import ResponderRole
from serenity_crisis.models.supporter_response import ResponseChannel, ResponseType
from serenity_crisis.services.crisis_engine import (
    CRISIS_RESOURCES,
    AlertLocation,
    create_alert,
    get_alert_status,
    handle_delivery_status,
    handle_inbound_reply,
    list_patient_alerts,
    resolve_alert,
    submit_response,
)
from serenity_crisis.services.escalation_scheduler import process_due_escalations
from serenity_crisis.services.response_collector import ResponseOutcome
from serenity_crisis.services.sms_gateway import (
    SmsReceipt,
    TransientTransportError,
)

SEND_SMS = "serenity_crisis.services.notification_dispatcher.send_sms"
NOTIFY_OPERATOR = "serenity_crisis.services.escalation_scheduler.notify_operator"


def window_start(alert) -> object:
    """The moment the current response window opened."""
    return alert.next_deadline_at - timedelta(seconds=settings.escalation_window_seconds)


class TestTwoTierEscalation:
    @pytest.mark.asyncio
    async def test_timeout_then_late_tier_one_reply(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        a = await add_responder(patient_id, "A", position=0)
        b = await add_responder(patient_id, "B", position=1)
        c = await add_responder(
            patient_id, "C", priority_tier=2, relationship=ResponderRole.PROVIDER
        )

        result = await create_alert(
            db_session, patient_id, CrisisSeverity.HIGH, "Panic attack, alone"
        )
        alert = result.alert
        assert result.created is True
        assert set(result.contacted_responder_ids) == {a.id, b.id}
        assert alert.escalation_state == EscalationState.AWAITING_RESPONSE
        t0 = window_start(alert)

        # No response within 30s
        assert await process_due_escalations(db_session, t0 + timedelta(seconds=29)) == 0
        assert await process_due_escalations(db_session, t0 + timedelta(seconds=31)) == 1

        snapshot = await get_alert_status(db_session, alert.id)
        assert snapshot.alert.status == AlertStatus.ACTIVE
        assert snapshot.alert.current_tier == 2
        assert any(at.responder_id == c.id and at.tier == 2 for at in snapshot.attempts)

        # B answers at t=35s
        reply = await submit_response(
            db_session, alert.id, b.id, ResponseType.ON_MY_WAY, eta_minutes=10
        )

        assert reply.outcome == ResponseOutcome.ACCEPTED
        snapshot = await get_alert_status(db_session, alert.id)
        assert snapshot.alert.status == AlertStatus.RESPONDED
        assert snapshot.alert.first_responder_id == b.id
        assert snapshot.alert.next_deadline_at is None

        # Nothing further is ever notified
        assert await process_due_escalations(db_session, t0 + timedelta(minutes=10)) == 0
        snapshot = await get_alert_status(db_session, alert.id)
        assert {at.tier for at in snapshot.attempts} == {1, 2}
        assert len(snapshot.attempts) == 3


class TestSingleResponderUnreachable:
    @pytest.mark.asyncio
    async def test_failing_sends_exhaust_alert(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        responder = await add_responder(patient_id, "Only")
        mock_send = AsyncMock(side_effect=TransientTransportError("carrier timeout"))
        mock_operator = AsyncMock(return_value=False)

        with patch(SEND_SMS, new=mock_send), patch(NOTIFY_OPERATOR, new=mock_operator):
            result = await create_alert(
                db_session, patient_id, CrisisSeverity.CRITICAL, "Can't breathe"
            )

        assert mock_send.call_count == 1 + settings.sms_max_retries
        assert result.contacted_responder_ids == []
        mock_operator.assert_awaited_once()

        snapshot = await get_alert_status(db_session, result.alert.id)
        assert snapshot.alert.escalation_state == EscalationState.EXHAUSTED
        assert snapshot.alert.status == AlertStatus.ESCALATED
        assert snapshot.alert.exhausted_at is not None
        assert snapshot.alert.current_tier == 1
        assert snapshot.alert.next_deadline_at is None
        [attempt] = snapshot.attempts
        assert attempt.responder_id == responder.id
        assert attempt.delivery_status == DeliveryStatus.FAILED
        assert attempt.send_count == 1 + settings.sms_max_retries


class TestCreateAlert:
    @pytest.mark.asyncio
    async def test_returns_resources_and_location(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")

        result = await create_alert(
            db_session,
            patient_id,
            CrisisSeverity.MEDIUM,
            "Struggling tonight",
            location=AlertLocation(lat=40.7128, lng=-74.006, address="NYC"),
        )

        assert result.resources == CRISIS_RESOURCES
        assert {r.contact for r in result.resources} >= {"988", "741741", "911"}
        assert result.alert.location_lat == pytest.approx(40.7128)
        assert result.alert.location_address == "NYC"

    @pytest.mark.asyncio
    async def test_idempotent_on_alert_id(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")
        alert_id = uuid.uuid4()
        mock_send = AsyncMock()

        first = await create_alert(
            db_session, patient_id, CrisisSeverity.HIGH, "help", alert_id=alert_id
        )
        with patch(SEND_SMS, new=mock_send):
            second = await create_alert(
                db_session, patient_id, CrisisSeverity.HIGH, "help", alert_id=alert_id
            )

        mock_send.assert_not_called()
        assert first.created is True
        assert second.created is False
        assert second.alert.id == alert_id
        assert second.contacted_responder_ids == first.contacted_responder_ids

    @pytest.mark.asyncio
    async def test_alert_id_reused_for_other_patient(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")
        alert_id = uuid.uuid4()
        await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "", alert_id=alert_id)

        with pytest.raises(AlertIdConflictError):
            await create_alert(
                db_session, uuid.uuid4(), CrisisSeverity.HIGH, "", alert_id=alert_id
            )

    @pytest.mark.asyncio
    async def test_no_responders(self, db_session):
        patient_id = uuid.uuid4()
        mock_operator = AsyncMock(return_value=False)

        with patch(NOTIFY_OPERATOR, new=mock_operator):
            with pytest.raises(NoRespondersError) as exc_info:
                await create_alert(db_session, patient_id, CrisisSeverity.EMERGENCY, "help")

        alert_id = exc_info.value.alert_id
        assert alert_id is not None
        mock_operator.assert_awaited_once()
        snapshot = await get_alert_status(db_session, alert_id)
        assert snapshot.alert.escalation_state == EscalationState.EXHAUSTED
        assert snapshot.alert.status == AlertStatus.ESCALATED
        assert snapshot.attempts == []


class TestFastEscalation:
    @pytest.mark.asyncio
    async def test_delivery_failures_skip_the_window(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        a = await add_responder(patient_id, "A")
        c = await add_responder(patient_id, "C", priority_tier=2)
        mock_send = AsyncMock(
            return_value=SmsReceipt(delivery_id="SM-a", status=DeliveryStatus.SENT)
        )

        with patch(SEND_SMS, new=mock_send):
            result = await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "help")
        assert result.contacted_responder_ids == [a.id]

        # Carrier reports the only tier-1 message undeliverable
        changed = await handle_delivery_status(db_session, "SM-a", "undelivered")

        assert changed is True
        snapshot = await get_alert_status(db_session, result.alert.id)
        assert snapshot.alert.current_tier == 2
        assert snapshot.alert.escalation_state == EscalationState.AWAITING_RESPONSE
        assert any(at.responder_id == c.id for at in snapshot.attempts)

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_waiting(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A", position=0)
        await add_responder(patient_id, "B", position=1)
        await add_responder(patient_id, "C", priority_tier=2)
        receipts = iter(["SM-a", "SM-b"])

        async def fake_send(phone_number, body):
            return SmsReceipt(delivery_id=next(receipts), status=DeliveryStatus.SENT)

        with patch(SEND_SMS, new=AsyncMock(side_effect=fake_send)):
            result = await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "help")

        await handle_delivery_status(db_session, "SM-a", "failed")

        snapshot = await get_alert_status(db_session, result.alert.id)
        assert snapshot.alert.current_tier == 1

    @pytest.mark.asyncio
    async def test_unknown_message_id(self, db_session):
        assert await handle_delivery_status(db_session, "SM-unknown", "failed") is False


class TestResolveAlert:
    @pytest.mark.asyncio
    async def test_resolved_alert_never_escalates(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")
        await add_responder(patient_id, "C", priority_tier=2)
        result = await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "help")
        t0 = window_start(result.alert)
        resolver = uuid.uuid4()

        alert, changed = await resolve_alert(db_session, result.alert.id, resolver, "Safe")

        assert changed is True
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolution_notes == "Safe"
        assert await process_due_escalations(db_session, t0 + timedelta(hours=1)) == 0
        snapshot = await get_alert_status(db_session, alert.id)
        assert {at.tier for at in snapshot.attempts} == {1}

    @pytest.mark.asyncio
    async def test_resolve_twice(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")
        result = await create_alert(db_session, patient_id, CrisisSeverity.LOW, "")

        await resolve_alert(db_session, result.alert.id)
        alert, changed = await resolve_alert(db_session, result.alert.id)

        assert changed is False
        assert alert.status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_resolve_after_response(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        a = await add_responder(patient_id, "A")
        result = await create_alert(db_session, patient_id, CrisisSeverity.LOW, "")
        await submit_response(db_session, result.alert.id, a.id, ResponseType.IMMEDIATE)

        alert, changed = await resolve_alert(db_session, result.alert.id)

        assert changed is True
        assert alert.first_responder_id == a.id
        assert alert.status == AlertStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_unknown_alert(self, db_session):
        with pytest.raises(AlertNotFoundError):
            await resolve_alert(db_session, uuid.uuid4())


class TestInboundReplies:
    @pytest.mark.asyncio
    async def test_sms_reply_closes_alert(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        a = await add_responder(patient_id, "A", phone_number="+15557770001")
        result = await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "help")

        reply = await handle_inbound_reply(db_session, "+15557770001", "2 15", "SMin-1")

        assert reply.outcome == ResponseOutcome.ACCEPTED
        assert reply.response.responder_id == a.id
        assert reply.response.eta_minutes == 15
        assert reply.response.channel == ResponseChannel.SMS
        assert reply.alert.id == result.alert.id

    @pytest.mark.asyncio
    async def test_clock_time_eta_still_closes_alert(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A", phone_number="+15557770004")
        result = await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "help")

        reply = await handle_inbound_reply(
            db_session, "+15557770004", "omw be there by 1930", "SMin-5"
        )

        assert reply.outcome == ResponseOutcome.ACCEPTED
        assert reply.response.response_type == ResponseType.ON_MY_WAY
        assert reply.response.eta_minutes is None
        snapshot = await get_alert_status(db_session, result.alert.id)
        assert snapshot.alert.status == AlertStatus.RESPONDED

    @pytest.mark.asyncio
    async def test_redelivered_webhook_is_idempotent(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A", phone_number="+15557770002")
        result = await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "help")

        first = await handle_inbound_reply(db_session, "+15557770002", "3", "SMin-2")
        again = await handle_inbound_reply(db_session, "+15557770002", "3", "SMin-2")

        assert first.outcome == ResponseOutcome.RECORDED
        assert again.outcome == ResponseOutcome.ALREADY_HANDLED
        snapshot = await get_alert_status(db_session, result.alert.id)
        assert len(snapshot.responses) == 1

    @pytest.mark.asyncio
    async def test_unknown_number(self, db_session):
        assert await handle_inbound_reply(db_session, "+15550000000", "1", "SMin-3") is None

    @pytest.mark.asyncio
    async def test_unparseable_reply(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A", phone_number="+15557770003")
        await create_alert(db_session, patient_id, CrisisSeverity.HIGH, "help")

        with pytest.raises(InvalidResponseError):
            await handle_inbound_reply(db_session, "+15557770003", "who is this?", "SMin-4")


class TestListPatientAlerts:
    @pytest.mark.asyncio
    async def test_newest_first(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")
        first = await create_alert(db_session, patient_id, CrisisSeverity.LOW, "one")
        second = await create_alert(db_session, patient_id, CrisisSeverity.LOW, "two")
        other_patient = uuid.uuid4()
        await add_responder(other_patient, "B")
        await create_alert(db_session, other_patient, CrisisSeverity.LOW, "other")

        alerts = await list_patient_alerts(db_session, patient_id)

        assert [a.id for a in alerts] == [second.alert.id, first.alert.id]
