"""
Entry points that start sync runs.

  trigger_sync        awaits the run(s) and returns the result dict
  trigger_sync_async  fire-and-forget task, errors logged
  maybe_trigger       opportunistic, at most once per user per cooldown

maybe_trigger is called after every authenticated API request, so it must
stay cheap: one dict lookup, and one connection lookup when the cooldown has
elapsed.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Set

from fleetsync.models.sync import utc_now

logger = logging.getLogger(__name__)

SYNC_TYPE_FULL = "full"
SYNC_TYPE_INCREMENTAL = "incremental"

DEFAULT_ENTITIES = ("work_items",)


class SyncTrigger:
    """
    Args:
        sync_service: RiseXSyncService (or AsyncMock in tests).
        token_manager: TokenManager used to skip users with no connection.
        cooldown_minutes: Minimum gap between opportunistic triggers per user.
        clock: Returns the current naive-UTC time; injectable for tests.
    """

    def __init__(
        self,
        sync_service,
        token_manager,
        cooldown_minutes: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.sync_service = sync_service
        self.token_manager = token_manager
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self._clock = clock
        self._last_triggered: Dict[str, datetime] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def trigger_sync(
        self,
        user_id: str,
        type: str = SYNC_TYPE_INCREMENTAL,
        entities: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """Run a sync now and return its result as a dict."""
        if type == SYNC_TYPE_FULL:
            outcome = await self.sync_service.full_sync(user_id)
            return outcome.as_dict()

        wanted = set(entities or DEFAULT_ENTITIES)
        result = {}
        if "work_items" in wanted:
            result["work_items"] = (await self.sync_service.sync_work_items(user_id)).as_dict()
        if "assets" in wanted:
            result["assets"] = (await self.sync_service.sync_assets(user_id)).as_dict()
        if "flows" in wanted:
            result["flows"] = (await self.sync_service.sync_flows(user_id)).as_dict()
        return result

    def trigger_sync_async(
        self, user_id: str, type: str = SYNC_TYPE_INCREMENTAL
    ) -> asyncio.Task:
        """Start a sync in the background. Must be called inside a running loop."""
        if type == SYNC_TYPE_FULL:
            coro = self.sync_service.full_sync(user_id)
        else:
            coro = self.sync_service.incremental_sync(user_id)
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, user_id, type))
        return task

    def maybe_trigger(self, user_id: str) -> bool:
        """
        Start a background incremental sync unless one was triggered for this
        user within the cooldown or the user has no active connection.

        Returns:
            True if a sync task was started.
        """
        now = self._clock()
        last = self._last_triggered.get(user_id)
        if last is not None and now - last < self.cooldown:
            return False
        self._last_triggered[user_id] = now

        if not self.token_manager.has_active_connection(user_id):
            return False
        logger.debug("Opportunistic sync for %s", user_id)
        self.trigger_sync_async(user_id, SYNC_TYPE_INCREMENTAL)
        return True

    def _on_done(self, task: asyncio.Task, user_id: str, type: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background %s sync failed for %s: %s", type, user_id, exc)
