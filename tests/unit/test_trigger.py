"""Tests for SyncTrigger: on-demand runs and the opportunistic cooldown."""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from fleetsync.scheduler.trigger import SYNC_TYPE_FULL, SyncTrigger


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0)

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now += timedelta(minutes=minutes)


def _result(name):
    result = MagicMock()
    result.as_dict.return_value = {"entity": name}
    return result


@pytest.fixture(name="sync_service")
def sync_service_fixture():
    service = AsyncMock()
    service.sync_work_items.return_value = _result("work_items")
    service.sync_assets.return_value = _result("assets")
    service.sync_flows.return_value = _result("flows")
    service.full_sync.return_value = _result("full")
    service.incremental_sync.return_value = _result("incremental")
    return service


@pytest.fixture(name="token_manager")
def token_manager_fixture():
    manager = MagicMock()
    manager.has_active_connection.return_value = True
    return manager


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="trigger")
def trigger_fixture(sync_service, token_manager, clock):
    return SyncTrigger(sync_service, token_manager, cooldown_minutes=5, clock=clock)


class TestTriggerSync:
    @pytest.mark.asyncio
    async def test_defaults_to_work_items(self, trigger, sync_service):
        result = await trigger.trigger_sync("u1")
        assert result == {"work_items": {"entity": "work_items"}}
        sync_service.sync_assets.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_selected_entities(self, trigger, sync_service):
        result = await trigger.trigger_sync("u1", entities=["assets", "flows"])
        assert set(result) == {"assets", "flows"}
        sync_service.sync_work_items.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_full(self, trigger, sync_service):
        assert await trigger.trigger_sync("u1", type=SYNC_TYPE_FULL) == {"entity": "full"}
        sync_service.full_sync.assert_awaited_once_with("u1")

    @pytest.mark.asyncio
    async def test_errors_propagate(self, trigger, sync_service):
        sync_service.sync_work_items.side_effect = RuntimeError("No valid access token")
        with pytest.raises(RuntimeError):
            await trigger.trigger_sync("u1")


class TestTriggerSyncAsync:
    @pytest.mark.asyncio
    async def test_runs_in_background(self, trigger, sync_service):
        task = trigger.trigger_sync_async("u1")
        await task
        sync_service.incremental_sync.assert_awaited_once_with("u1")

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, trigger, sync_service, caplog):
        sync_service.full_sync.side_effect = RuntimeError("boom")
        task = trigger.trigger_sync_async("u1", type=SYNC_TYPE_FULL)
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)  # let the done callback run
        assert "Background full sync failed for u1" in caplog.text


class TestMaybeTrigger:
    @pytest.mark.asyncio
    async def test_cooldown(self, trigger, sync_service, clock):
        assert trigger.maybe_trigger("u1") is True
        clock.advance(4)
        assert trigger.maybe_trigger("u1") is False
        clock.advance(2)
        assert trigger.maybe_trigger("u1") is True
        await asyncio.gather(*list(trigger._tasks))
        assert sync_service.incremental_sync.await_count == 2

    @pytest.mark.asyncio
    async def test_cooldown_is_per_user(self, trigger):
        assert trigger.maybe_trigger("u1") is True
        assert trigger.maybe_trigger("u2") is True
        await asyncio.gather(*list(trigger._tasks))

    @pytest.mark.asyncio
    async def test_no_connection_still_starts_cooldown(self, trigger, token_manager, sync_service):
        token_manager.has_active_connection.return_value = False
        assert trigger.maybe_trigger("u1") is False
        token_manager.has_active_connection.return_value = True
        # still cooling down: no connection lookup
        assert trigger.maybe_trigger("u1") is False
        assert token_manager.has_active_connection.call_count == 1
        sync_service.incremental_sync.assert_not_called()
