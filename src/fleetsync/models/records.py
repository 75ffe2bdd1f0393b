"""Cached upstream records: work items, registry assets, assessments, flows."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from fleetsync.models.sync import utc_now


class WorkItem(SQLModel, table=True):
    """One row per upstream job/inspection, keyed by the upstream id."""

    id: Optional[int] = Field(default=None, primary_key=True)
    upstream_id: str = Field(unique=True, index=True)

    flow_id: Optional[str] = Field(default=None, index=True)
    flow_name: Optional[str] = None
    flow_origin_id: Optional[str] = None
    # Fills in only on insert; a later record without status keeps the stored one
    status: Optional[str] = Field(default="Unknown", index=True)

    # Denormalized vessel reference from the work item's embedded data
    vessel_upstream_id: Optional[str] = Field(default=None, index=True)
    vessel_name: Optional[str] = None
    vessel_mmsi: Optional[str] = Field(default=None, index=True)
    vessel_imo: Optional[str] = None

    created_at_upstream: Optional[datetime] = None
    updated_at_upstream: Optional[datetime] = None

    # Derived from generalArrangement by analysis.fouling
    navigability_score: Optional[int] = None
    hull_performance: Optional[int] = None

    raw_payload_json: Optional[str] = None
    synced_by_user_id: Optional[str] = None
    synced_at: datetime = Field(default_factory=utc_now)


class Asset(SQLModel, table=True):
    """One row per registry "thing" (vessel or equipment)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    upstream_id: str = Field(unique=True, index=True)

    registry_id: Optional[str] = Field(default=None, index=True)
    registry_name: Optional[str] = None
    display_name: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = None

    mmsi: Optional[str] = Field(default=None, index=True)
    imo: Optional[str] = Field(default=None, index=True)
    pennant: Optional[str] = None

    vessel_class: Optional[str] = None
    vessel_type: Optional[str] = None
    flag: Optional[str] = None
    organization_name: Optional[str] = None

    raw_payload_json: Optional[str] = None
    synced_by_user_id: Optional[str] = None
    synced_at: datetime = Field(default_factory=utc_now)


class BiofoulingAssessment(SQLModel, table=True):
    """
    One row per general-arrangement component x rating entry of a work item.

    Only written while ingesting the parent WorkItem.
    """

    __table_args__ = (
        UniqueConstraint("work_item_id", "component_index", "rating_index"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    work_item_id: int = Field(foreign_key="workitem.id", index=True)
    upstream_work_id: str
    component_index: int
    rating_index: int

    vessel_upstream_id: Optional[str] = Field(default=None, index=True)
    vessel_name: Optional[str] = None
    vessel_mmsi: Optional[str] = None

    component_name: Optional[str] = Field(default=None, index=True)
    component_category: str = "other"  # "hull", "propeller", "rudder", "niche", "other"

    fouling_rating: Optional[str] = None  # e.g. "FR3"
    fouling_rating_numeric: Optional[int] = None
    fouling_coverage: Optional[float] = None  # percent
    pdr_rating: Optional[str] = None

    diver_comments: Optional[str] = None
    expert_comments: Optional[str] = None

    raw_rating_json: Optional[str] = None
    synced_at: datetime = Field(default_factory=utc_now)


class Flow(SQLModel, table=True):
    """Workflow definition metadata. Replaced wholesale on every sync."""

    id: Optional[int] = Field(default=None, primary_key=True)
    upstream_id: str = Field(unique=True, index=True)

    name: Optional[str] = None
    description: Optional[str] = None
    flow_type: Optional[str] = None
    origin_id: Optional[str] = Field(default=None, index=True)
    origin_name: Optional[str] = None
    is_active: bool = True

    raw_payload_json: Optional[str] = None
    synced_at: datetime = Field(default_factory=utc_now)
