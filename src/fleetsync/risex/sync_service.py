"""
RiseXSyncService: mirrors Rise-X work items, assets and flows into the DB.

Every run follows the same discipline, per (entity_type, user_id):

  1. Guard: a run already active for the key returns
     SyncResult(skipped=True, reason="sync_in_progress") immediately.
  2. Append a SyncLog (status="started").
  3. Get a valid access token (none -> CredentialUnavailableError).
  4. SyncState -> in_progress.
  5. Fetch, merge, dedupe, upsert. One workflow / registry / window failing
     is recorded in SyncResult.partial_failures and the run carries on;
     one record failing to persist is counted in `failed`.
  6. SyncState -> completed (+count, +cursor), SyncLog -> completed.

On any other exception (including the run deadline) SyncState and SyncLog
are marked failed and the exception is re-raised. The guard is always
released.

Work item fetch paths and their merge order:

  per-workflow listings (configured order) -> catch-all listing
  -> dedupe by upstream id, first occurrence wins
  -> drop soft-deleted (REST paths only; the historic path keeps them)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from fleetsync.config import Settings
from fleetsync.db.store import LocalStore, SyncStats
from fleetsync.models.records import WorkItem
from fleetsync.models.sync import STATUS_COMPLETED, STATUS_FAILED, STATUS_IN_PROGRESS, utc_now
from fleetsync.risex.auth import CredentialUnavailableError, TokenManager
from fleetsync.risex.client import RiseXClient, UpstreamResponse, UpstreamUnavailableError
from fleetsync.risex.graphql import (
    build_work_query,
    merge_extracted_properties,
    month_windows,
    works_from_response,
)
from fleetsync.risex.normalizer import (
    build_assessments,
    extract_vessel,
    is_soft_deleted,
    newest_modified,
    normalize_asset,
    normalize_flow,
    normalize_work_item,
)

logger = logging.getLogger(__name__)

ENTITY_WORK_ITEMS = "work_items"
ENTITY_ASSETS = "assets"
ENTITY_FLOWS = "flows"

OP_FULL_SYNC = "full_sync"
OP_INCREMENTAL = "incremental"
OP_HISTORIC = "historic"

SYNC_IN_PROGRESS = "sync_in_progress"

_RECORD_ERRORS = (SQLAlchemyError, KeyError, TypeError, ValueError, ArithmeticError)


@dataclass
class SyncResult:
    """Outcome of one guarded run."""

    entity_type: str
    stats: SyncStats = field(default_factory=SyncStats)
    skipped: bool = False
    reason: Optional[str] = None
    partial_failures: List[str] = field(default_factory=list)
    cursor: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        if self.skipped:
            return {"entity_type": self.entity_type, "skipped": True, "reason": self.reason}
        return {
            "entity_type": self.entity_type,
            "skipped": False,
            "fetched": self.stats.fetched,
            "created": self.stats.created,
            "updated": self.stats.updated,
            "failed": self.stats.failed,
            "partial_failures": list(self.partial_failures),
        }


@dataclass
class FullSyncResult:
    """Per-entity outcome of full_sync(). An entity that raised has no result."""

    results: Dict[str, SyncResult] = field(default_factory=dict)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "results": {k: v.as_dict() for k, v in self.results.items()},
            "errors": list(self.errors),
        }


RunBody = Callable[[str, str, SyncResult], Awaitable[Optional[str]]]


class RiseXSyncService:
    """Orchestrates Rise-X -> DB sync for one user at a time."""

    def __init__(
        self,
        token_manager: TokenManager,
        client: RiseXClient,
        store: LocalStore,
        settings: Settings,
    ):
        """
        Args:
            token_manager: Source of access tokens; also told about finished syncs.
            client: RiseXClient instance (or AsyncMock in tests).
            store: LocalStore that every record is written through.
            settings: Workflow ids, registries and tuning knobs.
        """
        self.token_manager = token_manager
        self.client = client
        self.store = store
        self.settings = settings
        self._active_syncs = set()

    def is_syncing(self, user_id: str, entity_type: str = ENTITY_WORK_ITEMS) -> bool:
        return f"{entity_type}:{user_id}" in self._active_syncs

    # ─── Public operations ────────────────────────────────────────────────────

    async def sync_work_items(
        self,
        user_id: str,
        force_full: bool = False,
        flow_origin_ids: Optional[Sequence[str]] = None,
    ) -> SyncResult:
        """
        Re-list open work of every workflow plus the catch-all listing.

        force_full only changes the SyncLog operation label: every run
        re-lists fully.
        """
        ids = list(flow_origin_ids or self.settings.flow_origin_ids)

        async def body(uid: str, token: str, result: SyncResult) -> Optional[str]:
            works = await self._fetch_work_listings(token, ids, result)
            unique = self._dedupe(works, drop_deleted=True)
            result.stats.fetched = len(unique)
            logger.info("Processing %d unique work items for %s", len(unique), uid)
            self._ingest_work_items(uid, unique, result)
            return newest_modified(unique)

        operation = OP_FULL_SYNC if force_full else OP_INCREMENTAL
        return await self._run(ENTITY_WORK_ITEMS, user_id, operation, body)

    async def sync_assets(
        self, user_id: str, registries: Optional[Dict[str, str]] = None
    ) -> SyncResult:
        """List every registry (id -> name) and upsert its things as Assets."""
        registries = dict(registries or self.settings.asset_registries)

        async def body(uid: str, token: str, result: SyncResult) -> Optional[str]:
            semaphore = self._semaphore()

            async def fetch(registry_id: str) -> List[Dict[str, Any]]:
                async with semaphore:
                    return await self._fetch_list(
                        self.client.list_things(token, registry_id),
                        f"registry {registries[registry_id]}",
                        result,
                    )

            listings = await asyncio.gather(*(fetch(rid) for rid in registries))
            seen = set()
            for registry_id, things in zip(registries, listings):
                for thing in things:
                    thing_id = thing.get("id")
                    if not thing_id or str(thing_id) in seen:
                        continue
                    seen.add(str(thing_id))
                    result.stats.fetched += 1
                    try:
                        fields = normalize_asset(
                            thing, registry_id, registries[registry_id], user_id=uid
                        )
                        _, created = self.store.upsert_asset(fields)
                    except _RECORD_ERRORS as exc:
                        logger.warning("Failed to upsert asset %s: %s", thing_id, exc)
                        result.stats.failed += 1
                        continue
                    self._count(result, created)
            return None

        return await self._run(ENTITY_ASSETS, user_id, OP_FULL_SYNC, body)

    async def sync_flows(
        self, user_id: str, flow_origin_ids: Optional[Sequence[str]] = None
    ) -> SyncResult:
        """Fetch each workflow definition and replace its Flow row."""
        ids = list(flow_origin_ids or self.settings.flow_origin_ids)

        async def body(uid: str, token: str, result: SyncResult) -> Optional[str]:
            semaphore = self._semaphore()

            async def fetch(flow_id: str) -> Optional[Dict[str, Any]]:
                async with semaphore:
                    response = await self._call(
                        self.client.get_flow(token, flow_id), f"flow {flow_id}", result
                    )
                if response is None or not isinstance(response.body, dict):
                    return None
                return response.body

            flows = await asyncio.gather(*(fetch(fid) for fid in ids))
            for flow_id, flow in zip(ids, flows):
                if flow is None:
                    continue
                result.stats.fetched += 1
                try:
                    _, created = self.store.upsert_flow(normalize_flow(flow, flow_id))
                except _RECORD_ERRORS as exc:
                    logger.warning("Failed to upsert flow %s: %s", flow_id, exc)
                    result.stats.failed += 1
                    continue
                self._count(result, created)
            return None

        return await self._run(ENTITY_FLOWS, user_id, OP_FULL_SYNC, body)

    async def full_sync(self, user_id: str) -> FullSyncResult:
        """Work items, assets, flows in sequence; one failing never stops the rest."""
        outcome = FullSyncResult()
        steps = (
            (ENTITY_WORK_ITEMS, lambda: self.sync_work_items(user_id, force_full=True)),
            (ENTITY_ASSETS, lambda: self.sync_assets(user_id)),
            (ENTITY_FLOWS, lambda: self.sync_flows(user_id)),
        )
        for entity, step in steps:
            try:
                outcome.results[entity] = await step()
            except Exception as exc:
                logger.error("Full sync of %s failed for %s: %s", entity, user_id, exc)
                outcome.errors.append({"entity": entity, "error": str(exc) or type(exc).__name__})
        return outcome

    async def incremental_sync(self, user_id: str) -> SyncResult:
        return await self.sync_work_items(user_id)

    async def sync_historic_work_items(
        self,
        user_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        flow_origin_ids: Optional[Sequence[str]] = None,
    ) -> SyncResult:
        """
        Bulk-extract every work item of each workflow over [date_from, date_to)
        through the GraphQL works query, in fixed month windows.

        Defaults to the last `historic_default_years` years. Soft-deleted
        records are kept and stored with their deleted status.
        """
        date_to = date_to or utc_now()
        if date_from is None:
            date_from = date_to - timedelta(days=365 * self.settings.historic_default_years)
        ids = list(flow_origin_ids or self.settings.flow_origin_ids)
        windows = month_windows(date_from, date_to, self.settings.historic_chunk_months)

        async def body(uid: str, token: str, result: SyncResult) -> Optional[str]:
            semaphore = self._semaphore()

            async def fetch(flow_origin_id: str, window) -> List[Dict[str, Any]]:
                async with semaphore:
                    current = await self.token_manager.get_valid_access_token(uid) or token
                    return await self._query_window(current, flow_origin_id, window, result)

            logger.info(
                "Historic sync for %s: %d workflows x %d windows (%s to %s)",
                uid, len(ids), len(windows), date_from.date(), date_to.date(),
            )
            chunks = await asyncio.gather(*(fetch(fid, w) for fid in ids for w in windows))
            works = [merge_extracted_properties(w) for chunk in chunks for w in chunk]
            unique = self._dedupe(works, drop_deleted=False)
            result.stats.fetched = len(unique)
            self._ingest_work_items(uid, unique, result)
            return newest_modified(unique)

        return await self._run(
            ENTITY_WORK_ITEMS, user_id, OP_HISTORIC, body,
            timeout=self.settings.historic_run_timeout_seconds,
        )

    # ─── Run discipline ───────────────────────────────────────────────────────

    async def _run(
        self,
        entity_type: str,
        user_id: str,
        operation: str,
        body: RunBody,
        timeout: Optional[float] = None,
    ) -> SyncResult:
        key = f"{entity_type}:{user_id}"
        if key in self._active_syncs:
            logger.info("Sync of %s already in progress for %s", entity_type, user_id)
            return SyncResult(entity_type=entity_type, skipped=True, reason=SYNC_IN_PROGRESS)
        self._active_syncs.add(key)

        result = SyncResult(entity_type=entity_type)
        try:
            log = self.store.append_sync_log(user_id, entity_type, operation)
            try:
                token = await self.token_manager.get_valid_access_token(user_id)
                if not token:
                    raise CredentialUnavailableError(
                        f"No valid Rise-X token available for user {user_id}"
                    )
                self.store.write_sync_state(user_id, entity_type, STATUS_IN_PROGRESS)

                if timeout is None:
                    timeout = self.settings.sync_run_timeout_seconds
                try:
                    result.cursor = await asyncio.wait_for(
                        body(user_id, token, result), timeout=timeout
                    )
                except asyncio.TimeoutError as exc:
                    raise TimeoutError(f"Sync exceeded {timeout:g}s deadline") from exc

            except Exception as exc:
                error = str(exc) or type(exc).__name__
                logger.error("Sync of %s failed for %s: %s", entity_type, user_id, error)
                self.store.write_sync_state(user_id, entity_type, STATUS_FAILED, error=error)
                self.store.finish_sync_log(log, result.stats, error=error)
                raise

            self.store.write_sync_state(
                user_id,
                entity_type,
                STATUS_COMPLETED,
                cursor=result.cursor,
                count=result.stats.fetched,
            )
            self.store.finish_sync_log(log, result.stats)
            if entity_type == ENTITY_WORK_ITEMS:
                self.token_manager.update_last_sync(user_id)

            logger.info(
                "%s sync complete for %s: %d created, %d updated, %d failed",
                entity_type, user_id,
                result.stats.created, result.stats.updated, result.stats.failed,
            )
            return result
        finally:
            self._active_syncs.discard(key)

    # ─── Fetch helpers ────────────────────────────────────────────────────────

    def _semaphore(self) -> asyncio.Semaphore:
        return asyncio.Semaphore(max(1, self.settings.sync_fetch_concurrency))

    async def _call(
        self, request: Awaitable[UpstreamResponse], label: str, result: SyncResult
    ) -> Optional[UpstreamResponse]:
        """Await one upstream call; a failure becomes a partial failure."""
        try:
            response = await request
        except UpstreamUnavailableError as exc:
            self._partial(result, f"{label}: {exc}")
            return None
        if not response.ok:
            self._partial(result, f"{label}: HTTP {response.status}")
            return None
        return response

    async def _fetch_list(
        self, request: Awaitable[UpstreamResponse], label: str, result: SyncResult
    ) -> List[Dict[str, Any]]:
        response = await self._call(request, label, result)
        if response is None:
            return []
        if not isinstance(response.body, list):
            self._partial(result, f"{label}: expected a JSON array")
            return []
        records = [r for r in response.body if isinstance(r, dict)]
        logger.info("%s: %d records", label, len(records))
        return records

    async def _fetch_work_listings(
        self, token: str, flow_origin_ids: Sequence[str], result: SyncResult
    ) -> List[Dict[str, Any]]:
        semaphore = self._semaphore()

        async def fetch(request: Awaitable[UpstreamResponse], label: str):
            async with semaphore:
                return await self._fetch_list(request, label, result)

        listings = [
            fetch(self.client.list_open_work(token, fid), f"workflow {fid}")
            for fid in flow_origin_ids
        ]
        listings.append(fetch(self.client.list_work(token), "catch-all listing"))
        # gather keeps argument order: workflows first, catch-all last
        return [work for listing in await asyncio.gather(*listings) for work in listing]

    async def _query_window(
        self, token: str, flow_origin_id: str, window, result: SyncResult
    ) -> List[Dict[str, Any]]:
        """One (workflow, window) GraphQL query, retried once after a delay."""
        start, end = window
        query = build_work_query(flow_origin_id, start, end)
        label = f"workflow {flow_origin_id} {start:%Y-%m-%d}..{end:%Y-%m-%d}"
        problem = None
        for attempt in (1, 2):
            try:
                response = await self.client.query_works(token, query)
                if response.ok:
                    works = works_from_response(response.body)
                    logger.debug("%s: %d items", label, len(works))
                    return works
                problem = f"HTTP {response.status}"
            except UpstreamUnavailableError as exc:
                problem = str(exc)
            if attempt == 1:
                logger.warning("%s failed (%s), retrying", label, problem)
                await asyncio.sleep(self.settings.historic_retry_delay_seconds)
        self._partial(result, f"{label}: {problem}")
        return []

    @staticmethod
    def _partial(result: SyncResult, message: str) -> None:
        logger.warning("Partial sync failure: %s", message)
        result.partial_failures.append(message)

    # ─── Merge & persist ──────────────────────────────────────────────────────

    @staticmethod
    def _dedupe(works: Iterable[Dict[str, Any]], *, drop_deleted: bool) -> List[Dict[str, Any]]:
        """First occurrence of each upstream id wins; records without an id are dropped."""
        unique: Dict[str, Dict[str, Any]] = {}
        for work in works:
            work_id = work.get("id")
            if not work_id or str(work_id) in unique:
                continue
            if drop_deleted and is_soft_deleted(work):
                continue
            unique[str(work_id)] = work
        return list(unique.values())

    @staticmethod
    def _count(result: SyncResult, created: bool) -> None:
        if created:
            result.stats.created += 1
        else:
            result.stats.updated += 1

    def _ingest_work_items(
        self, user_id: str, works: Iterable[Dict[str, Any]], result: SyncResult
    ) -> None:
        for work in works:
            try:
                vessel = extract_vessel(work)
                fields = normalize_work_item(work, vessel, user_id=user_id)
                row, created = self.store.upsert_work_item(fields)
                if vessel and vessel["general_arrangement"]:
                    self._ingest_assessments(row, vessel)
            except _RECORD_ERRORS as exc:
                logger.warning("Failed to upsert work item %s: %s", work.get("id"), exc)
                result.stats.failed += 1
                continue
            self._count(result, created)

    def _ingest_assessments(self, row: WorkItem, vessel: Dict[str, Any]) -> None:
        keep = set()
        for fields in build_assessments(row.id, row.upstream_id, vessel):
            self.store.upsert_assessment(fields)
            keep.add((fields["component_index"], fields["rating_index"]))
        self.store.prune_assessments(row.id, keep)
