"""
LocalStore: the storage-engine-agnostic persistence seam for synced data.

Write side is used only by the sync service; read side backs the HTTP
routes. Every write is a natural-key upsert in its own short session, so
concurrent runs for different (user, entity) keys never conflict and a run
that fails halfway leaves every already-written record intact.

Merge rule for WorkItem and Asset: a non-null incoming value overwrites, a
null incoming value never clobbers an existing non-null one. Flows are
replaced wholesale.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import or_
from sqlmodel import Session, SQLModel, select

from fleetsync.models.records import Asset, BiofoulingAssessment, Flow, WorkItem
from fleetsync.models.sync import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    SyncLog,
    SyncState,
    utc_now,
)


@dataclass
class WorkItemFilters:
    limit: int = 100
    offset: int = 0
    status: Optional[str] = None
    vessel_id: Optional[str] = None
    search: Optional[str] = None  # matches vessel or flow name


@dataclass
class AssetFilters:
    limit: int = 100
    offset: int = 0
    registry_id: Optional[str] = None
    search: Optional[str] = None  # matches display name, name or MMSI


@dataclass
class SyncStats:
    """Per-run counters, mirrored into SyncLog."""
    fetched: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0


def _merge_non_null(row: SQLModel, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        if value is not None:
            setattr(row, key, value)


class LocalStore:
    """Natural-key upserts and read queries over the SQLModel tables."""

    def __init__(self, engine):
        self.engine = engine

    # ─── Records ──────────────────────────────────────────────────────────────

    def upsert_work_item(self, fields: Dict[str, Any]) -> Tuple[WorkItem, bool]:
        """Insert or merge a WorkItem keyed on upstream_id.

        Returns:
            (row, created) where created is True for a fresh insert.
        """
        return self._upsert_merging(WorkItem, fields)

    def upsert_asset(self, fields: Dict[str, Any]) -> Tuple[Asset, bool]:
        """Insert or merge an Asset keyed on upstream_id."""
        return self._upsert_merging(Asset, fields)

    def _upsert_merging(self, model, fields: Dict[str, Any]):
        with Session(self.engine) as s:
            existing = s.exec(
                select(model).where(model.upstream_id == fields["upstream_id"])
            ).first()
            created = existing is None
            if created:
                row = model(**{k: v for k, v in fields.items() if v is not None})
            else:
                row = existing
                _merge_non_null(row, fields)
                row.synced_at = utc_now()
            s.add(row)
            s.commit()
            s.refresh(row)
            return row, created

    def upsert_assessment(self, fields: Dict[str, Any]) -> BiofoulingAssessment:
        """Insert or replace one assessment keyed on
        (work_item_id, component_index, rating_index)."""
        with Session(self.engine) as s:
            existing = s.exec(
                select(BiofoulingAssessment).where(
                    BiofoulingAssessment.work_item_id == fields["work_item_id"],
                    BiofoulingAssessment.component_index == fields["component_index"],
                    BiofoulingAssessment.rating_index == fields["rating_index"],
                )
            ).first()
            if existing:
                for k, v in fields.items():
                    setattr(existing, k, v)
                existing.synced_at = utc_now()
                row = existing
            else:
                row = BiofoulingAssessment(**fields)
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    def prune_assessments(
        self, work_item_id: int, keep: Set[Tuple[int, int]]
    ) -> int:
        """Delete assessments of a work item whose (component, rating) index
        pair is not in `keep`. Returns the number deleted."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(BiofoulingAssessment).where(
                    BiofoulingAssessment.work_item_id == work_item_id
                )
            ).all()
            stale = [
                r for r in rows if (r.component_index, r.rating_index) not in keep
            ]
            for r in stale:
                s.delete(r)
            s.commit()
            return len(stale)

    def upsert_flow(self, fields: Dict[str, Any]) -> Tuple[Flow, bool]:
        """Replace a Flow wholesale, keyed on upstream_id."""
        with Session(self.engine) as s:
            existing = s.exec(
                select(Flow).where(Flow.upstream_id == fields["upstream_id"])
            ).first()
            created = existing is None
            row = existing or Flow(upstream_id=fields["upstream_id"])
            for k, v in fields.items():
                setattr(row, k, v)
            row.synced_at = utc_now()
            s.add(row)
            s.commit()
            s.refresh(row)
            return row, created

    # ─── Sync state ───────────────────────────────────────────────────────────

    def read_sync_state(self, user_id: str, entity_type: str) -> Optional[SyncState]:
        with Session(self.engine) as s:
            return s.exec(
                select(SyncState).where(
                    SyncState.user_id == user_id,
                    SyncState.entity_type == entity_type,
                )
            ).first()

    def write_sync_state(
        self,
        user_id: str,
        entity_type: str,
        status: str,
        *,
        cursor: Optional[str] = None,
        count: int = 0,
        error: Optional[str] = None,
    ) -> SyncState:
        """
        Upsert the (user, entity) SyncState.

        A None cursor keeps the stored one. `count` is the size of this run
        and is added to the running total. An error bumps error_count.
        """
        now = utc_now()
        with Session(self.engine) as s:
            state = s.exec(
                select(SyncState).where(
                    SyncState.user_id == user_id,
                    SyncState.entity_type == entity_type,
                )
            ).first()
            if state is None:
                state = SyncState(user_id=user_id, entity_type=entity_type)

            state.status = status
            state.error_message = error
            if cursor is not None:
                state.last_sync_cursor = cursor
            if status == STATUS_COMPLETED:
                state.last_sync_at = now
                state.last_sync_count = count
                state.total_synced += count
            if error is not None:
                state.error_count += 1
                state.last_error_at = now
            state.updated_at = now

            s.add(state)
            s.commit()
            s.refresh(state)
            return state

    def append_sync_log(self, user_id: str, entity_type: str, operation: str) -> SyncLog:
        log = SyncLog(user_id=user_id, entity_type=entity_type, operation=operation)
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def finish_sync_log(
        self, log: SyncLog, stats: SyncStats, error: Optional[str] = None
    ) -> SyncLog:
        now = utc_now()
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = STATUS_FAILED if error else STATUS_COMPLETED
            db_log.items_fetched = stats.fetched
            db_log.items_created = stats.created
            db_log.items_updated = stats.updated
            db_log.items_failed = stats.failed
            db_log.completed_at = now
            db_log.duration_ms = int((now - db_log.started_at).total_seconds() * 1000)
            db_log.error_message = error
            s.add(db_log)
            s.commit()
            s.refresh(db_log)
            return db_log

    # ─── Read side ────────────────────────────────────────────────────────────

    def get_work_items(self, filters: Optional[WorkItemFilters] = None) -> List[WorkItem]:
        """Synced work items, most recently modified upstream first."""
        f = filters or WorkItemFilters()
        query = select(WorkItem)
        if f.status:
            query = query.where(WorkItem.status == f.status)
        if f.vessel_id:
            query = query.where(WorkItem.vessel_upstream_id == f.vessel_id)
        if f.search:
            pattern = f"%{f.search}%"
            query = query.where(
                or_(WorkItem.vessel_name.ilike(pattern), WorkItem.flow_name.ilike(pattern))
            )
        query = (
            query.order_by(WorkItem.updated_at_upstream.desc().nulls_last(), WorkItem.id)
            .offset(f.offset)
            .limit(f.limit)
        )
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def get_assets(self, filters: Optional[AssetFilters] = None) -> List[Asset]:
        """Synced assets ordered by display name."""
        f = filters or AssetFilters()
        query = select(Asset)
        if f.registry_id:
            query = query.where(Asset.registry_id == f.registry_id)
        if f.search:
            pattern = f"%{f.search}%"
            query = query.where(
                or_(
                    Asset.display_name.ilike(pattern),
                    Asset.name.ilike(pattern),
                    Asset.mmsi.ilike(pattern),
                )
            )
        query = query.order_by(Asset.display_name).offset(f.offset).limit(f.limit)
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def get_sync_status(self, user_id: str) -> Dict[str, SyncState]:
        """SyncState rows for a user keyed by entity type."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(SyncState)
                .where(SyncState.user_id == user_id)
                .order_by(SyncState.entity_type)
            ).all()
        return {row.entity_type: row for row in rows}

    def get_biofouling_assessments(
        self, vessel_id: str, component: Optional[str] = None, limit: int = 50
    ) -> List[BiofoulingAssessment]:
        query = select(BiofoulingAssessment).where(
            BiofoulingAssessment.vessel_upstream_id == vessel_id
        )
        if component:
            query = query.where(BiofoulingAssessment.component_name == component)
        query = query.order_by(
            BiofoulingAssessment.synced_at.desc(),
            BiofoulingAssessment.component_index,
            BiofoulingAssessment.rating_index,
        ).limit(limit)
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def get_sync_logs(self, user_id: str, limit: int = 20) -> List[SyncLog]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncLog)
                    .where(SyncLog.user_id == user_id)
                    .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                    .limit(limit)
                ).all()
            )

