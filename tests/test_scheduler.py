"""Tests for the background sweep job."""

from unittest.mock import AsyncMock, patch

import pytest

from serenity_crisis.config import settings
from serenity_crisis.services.scheduler import (
    get_scheduler,
    start_scheduler,
    stop_scheduler,
    sweep_due_escalations,
)

PROCESS_DUE = "serenity_crisis.services.scheduler.process_due_escalations"


class TestSchedulerLifecycle:
    @pytest.mark.asyncio
    async def test_registers_sweep_job(self, monkeypatch):
        monkeypatch.setattr(settings, "escalation_sweep_enabled", True)

        scheduler = start_scheduler()
        try:
            job = scheduler.get_job("escalation_sweep")
            assert job is not None
            assert job.max_instances == 1
            assert start_scheduler() is scheduler
        finally:
            stop_scheduler()

        assert get_scheduler() is None

    @pytest.mark.asyncio
    async def test_sweep_disabled(self, monkeypatch):
        monkeypatch.setattr(settings, "escalation_sweep_enabled", False)

        scheduler = start_scheduler()
        try:
            assert scheduler.get_job("escalation_sweep") is None
        finally:
            stop_scheduler()


class TestSweepDueEscalations:
    @pytest.mark.asyncio
    async def test_returns_handled_count(self, db_engine):
        with patch(PROCESS_DUE, new=AsyncMock(return_value=3)):
            assert await sweep_due_escalations() == 3

    @pytest.mark.asyncio
    async def test_errors_are_logged_not_raised(self, db_engine):
        with patch(PROCESS_DUE, new=AsyncMock(side_effect=RuntimeError("db down"))):
            assert await sweep_due_escalations() == 0
