"""Tests for support network tier resolution."""

import uuid
from types import SimpleNamespace

import pytest

from serenity_crisis.config import settings
from serenity_crisis.core.exceptions import NoRespondersError
from serenity_crisis.models.responder import ResponderRole
from serenity_crisis.services import support_directory
from serenity_crisis.services.support_directory import (
    get_responder,
    invalidate_directory_cache,
    resolve_tiers,
    tier_index_of,
)


class TestResolveTiers:
    @pytest.mark.asyncio
    async def test_groups_and_orders_tiers(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        provider = await add_responder(
            patient_id, "Dr. Lee", priority_tier=2, relationship=ResponderRole.PROVIDER
        )
        second = await add_responder(patient_id, "Sam", priority_tier=1, position=1)
        first = await add_responder(patient_id, "Alex", priority_tier=1, position=0)

        tiers = await resolve_tiers(db_session, patient_id)

        assert [t.priority for t in tiers] == [1, 2]
        assert [r.id for r in tiers[0].responders] == [first.id, second.id]
        assert [r.id for r in tiers[1].responders] == [provider.id]
        assert tiers[1].responders[0].relationship == ResponderRole.PROVIDER

    @pytest.mark.asyncio
    async def test_sparse_priorities_are_ordinal(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A", priority_tier=5)
        c = await add_responder(patient_id, "C", priority_tier=20)

        tiers = await resolve_tiers(db_session, patient_id)

        assert [t.priority for t in tiers] == [5, 20]
        assert tier_index_of(tiers, c.id) == 2

    @pytest.mark.asyncio
    async def test_inactive_responders_excluded(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        active = await add_responder(patient_id, "Active")
        await add_responder(patient_id, "Gone", is_active=False)

        tiers = await resolve_tiers(db_session, patient_id)

        assert len(tiers) == 1
        assert [r.id for r in tiers[0].responders] == [active.id]

    @pytest.mark.asyncio
    async def test_no_responders(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "Gone", is_active=False)

        with pytest.raises(NoRespondersError) as exc_info:
            await resolve_tiers(db_session, patient_id)

        assert exc_info.value.patient_id == patient_id
        assert exc_info.value.alert_id is None

    @pytest.mark.asyncio
    async def test_other_patients_not_included(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(uuid.uuid4(), "Stranger")

        with pytest.raises(NoRespondersError):
            await resolve_tiers(db_session, patient_id)


class TestDirectoryCache:
    @pytest.mark.asyncio
    async def test_cached_until_invalidated(self, db_session, add_responder, monkeypatch):
        monkeypatch.setattr(settings, "directory_cache_ttl_seconds", 60.0)
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")

        first = await resolve_tiers(db_session, patient_id)
        await add_responder(patient_id, "B", priority_tier=2)

        assert await resolve_tiers(db_session, patient_id) is first

        invalidate_directory_cache(patient_id)
        refreshed = await resolve_tiers(db_session, patient_id)
        assert len(refreshed) == 2

    @pytest.mark.asyncio
    async def test_ttl_zero_disables_cache(self, db_session, add_responder):
        patient_id = uuid.uuid4()
        await add_responder(patient_id, "A")

        await resolve_tiers(db_session, patient_id)
        await add_responder(patient_id, "B", priority_tier=2)

        assert len(await resolve_tiers(db_session, patient_id)) == 2

    @pytest.mark.asyncio
    async def test_expired_entries_are_evicted(self, db_session, add_responder, monkeypatch):
        monkeypatch.setattr(settings, "directory_cache_ttl_seconds", 60.0)
        clock = [1000.0]
        monkeypatch.setattr(
            support_directory, "time", SimpleNamespace(monotonic=lambda: clock[0])
        )
        first_patient = uuid.uuid4()
        second_patient = uuid.uuid4()
        await add_responder(first_patient, "A")
        await add_responder(second_patient, "B")

        await resolve_tiers(db_session, first_patient)
        assert first_patient in support_directory._cache

        clock[0] += 61
        await resolve_tiers(db_session, second_patient)

        assert first_patient not in support_directory._cache
        assert second_patient in support_directory._cache


class TestGetResponder:
    @pytest.mark.asyncio
    async def test_includes_inactive(self, db_session, add_responder):
        responder = await add_responder(uuid.uuid4(), "Gone", is_active=False)

        found = await get_responder(db_session, responder.id)

        assert found is not None
        assert found.display_name == "Gone"

    @pytest.mark.asyncio
    async def test_unknown(self, db_session):
        assert await get_responder(db_session, uuid.uuid4()) is None


def test_tier_index_of_absent():
    assert tier_index_of((), uuid.uuid4()) is None
