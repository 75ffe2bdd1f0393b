"""
Upstream record normalizer.

Converts raw work/thing/flow dicts from the Diana API into plain field dicts
that map directly onto SQLModel columns. No DB access here; the sync service
handles persistence.

The upstream records are loosely typed. The same fact shows up under
different keys depending on the endpoint and the workflow version:

  REST listings (/work, /work/user/open):
    - status in currentState, status or workStateName
    - timestamps in createdAt/created and modifiedAt/lastModified/modified
    - vessel embedded as data.ranVessel (RAN flows) or data.vessel

  GraphQL works query:
    - createdDate / lastModified timestamps
    - data may arrive JSON-encoded, generalArrangement too

Every accessor below takes the first non-empty candidate.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from fleetsync.analysis.fouling import (
    categorize_component,
    hull_performance,
    navigability_score,
    parse_coverage,
    parse_fouling_rating,
    rating_entries,
)


def _first(*values: Any) -> Any:
    for v in values:
        if v is not None and v != "":
            return v
    return None


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def parse_upstream_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into naive UTC. None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # fromisoformat only accepts 3 or 6 fractional digits before 3.11
    if "." in s:
        head, _, tail = s.partition(".")
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        s = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


# ─── Work items ───────────────────────────────────────────────────────────────

def is_soft_deleted(work: Dict[str, Any]) -> bool:
    """True for records the upstream has flagged or marked as deleted."""
    if work.get("isDeleted"):
        return True
    for key in ("workState", "workStateName", "status"):
        value = work.get(key)
        if isinstance(value, str) and value.strip().lower() == "deleted":
            return True
    return False


def extract_vessel(work: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Pull the embedded vessel sub-record out of a work item.

    Returns None when the work item has no vessel. generalArrangement is
    always a list (possibly empty).
    """
    data = _as_dict(work.get("data"))
    vessel = data.get("ranVessel") or data.get("vessel")
    if not isinstance(vessel, dict):
        return None
    vdata = _as_dict(vessel.get("data"))

    ga = vdata.get("generalArrangement")
    if isinstance(ga, str):
        try:
            ga = json.loads(ga)
        except ValueError:
            ga = None
    if not isinstance(ga, list):
        ga = data.get("reconstructedGA") if isinstance(data.get("reconstructedGA"), list) else []

    return {
        "id": _as_str(vessel.get("id")),
        "name": _first(vessel.get("displayName"), vessel.get("name"), vdata.get("name")),
        "mmsi": _as_str(_first(vdata.get("mmsi"), vdata.get("MMSI"))),
        "imo": _as_str(_first(vdata.get("imo"), vdata.get("IMO"))),
        "type": _first(vdata.get("class"), vdata.get("vesselType")),
        "pennant": vdata.get("pennant"),
        "general_arrangement": [c for c in ga if isinstance(c, dict)],
    }


def _flow_name(work: Dict[str, Any]) -> Optional[str]:
    flow_type = work.get("flowType")
    if isinstance(flow_type, str) and flow_type:
        return flow_type.split("/")[-1]
    flow = work.get("flow")
    if isinstance(flow, dict):
        return flow.get("displayName")
    return None


def modified_at(work: Dict[str, Any]) -> Optional[datetime]:
    return parse_upstream_datetime(
        _first(work.get("modifiedAt"), work.get("lastModified"), work.get("modified"))
    )


def normalize_work_item(
    work: Dict[str, Any],
    vessel: Optional[Dict[str, Any]] = None,
    *,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Normalize a raw work record into WorkItem field dict.

    Args:
        work: Raw record from any of the work fetch paths.
        vessel: Result of extract_vessel(work), if already computed.
        user_id: Local user whose credential fetched the record.
    """
    if vessel is None:
        vessel = extract_vessel(work)
    flow = work.get("flow") if isinstance(work.get("flow"), dict) else {}
    components = vessel["general_arrangement"] if vessel else []

    return {
        "upstream_id": str(work["id"]),
        "flow_id": _as_str(_first(work.get("flowId"), flow.get("id"))),
        "flow_name": _flow_name(work),
        "flow_origin_id": _as_str(work.get("flowOriginId")),
        "status": _first(
            work.get("currentState"), work.get("status"), work.get("workStateName")
        ),
        "vessel_upstream_id": vessel["id"] if vessel else None,
        "vessel_name": vessel["name"] if vessel else None,
        "vessel_mmsi": vessel["mmsi"] if vessel else None,
        "vessel_imo": vessel["imo"] if vessel else None,
        "created_at_upstream": parse_upstream_datetime(
            _first(work.get("createdAt"), work.get("created"), work.get("createdDate"))
        ),
        "updated_at_upstream": modified_at(work),
        "navigability_score": navigability_score(components),
        "hull_performance": hull_performance(components),
        "raw_payload_json": json.dumps(work, default=str),
        "synced_by_user_id": user_id,
    }


def build_assessments(
    work_item_id: int, upstream_work_id: str, vessel: Dict[str, Any]
) -> List[Dict[str, Any]]:
    """
    One BiofoulingAssessment field dict per (component, rating entry).

    component_index / rating_index are positions in the payload and form the
    natural key together with the work item id.
    """
    rows = []
    for ci, component in enumerate(vessel.get("general_arrangement") or []):
        name = _first(component.get("name"), component.get("GAComponent"))
        for ri, rating in enumerate(rating_entries(component)):
            level = rating.get("foulingRatingType")
            coverage = rating.get("foulingCoverage")
            rows.append({
                "work_item_id": work_item_id,
                "component_index": ci,
                "rating_index": ri,
                "upstream_work_id": upstream_work_id,
                "vessel_upstream_id": vessel.get("id"),
                "vessel_name": vessel.get("name"),
                "vessel_mmsi": vessel.get("mmsi"),
                "component_name": _as_str(name),
                "component_category": categorize_component(name),
                "fouling_rating": _as_str(_first(level)),
                "fouling_rating_numeric": parse_fouling_rating(level),
                "fouling_coverage": parse_coverage(coverage),
                "pdr_rating": _as_str(_first(rating.get("pdrRating"))),
                "diver_comments": component.get("diverSupervisorComments") or None,
                "expert_comments": component.get("expertInspectorComments") or None,
                "raw_rating_json": json.dumps(rating, default=str),
            })
    return rows


def newest_modified(works: Iterable[Dict[str, Any]]) -> Optional[str]:
    """ISO timestamp of the most recently modified record, for the cursor."""
    stamps = [m for m in (modified_at(w) for w in works) if m is not None]
    return max(stamps).isoformat() if stamps else None


# ─── Assets & flows ───────────────────────────────────────────────────────────

def normalize_asset(
    thing: Dict[str, Any],
    registry_id: str,
    registry_name: Optional[str],
    *,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Normalize a registry thing into Asset field dict."""
    data = _as_dict(thing.get("data"))
    thing_type = thing.get("thingType") if isinstance(thing.get("thingType"), dict) else {}
    return {
        "upstream_id": str(thing["id"]),
        "registry_id": registry_id,
        "registry_name": registry_name,
        "display_name": _first(thing.get("displayName"), thing.get("name")),
        "name": _first(data.get("name"), thing.get("name")),
        "mmsi": _as_str(_first(data.get("mmsi"), data.get("MMSI"))),
        "imo": _as_str(_first(data.get("imo"), data.get("IMO"))),
        "pennant": _as_str(_first(data.get("pennant"))),
        "vessel_class": _first(data.get("class"), data.get("vesselClass")),
        "vessel_type": _first(data.get("vesselType"), thing_type.get("name")),
        "flag": _first(data.get("flag")),
        "organization_name": _first(data.get("organization"), data.get("owner")),
        "raw_payload_json": json.dumps(thing, default=str),
        "synced_by_user_id": user_id,
    }


def normalize_flow(flow: Dict[str, Any], flow_origin_id: Optional[str] = None) -> Dict[str, Any]:
    """Normalize a flow definition into Flow field dict (full replace).

    Rows are keyed on the requested flow-origin id when given, so a newly
    published version replaces the previous one. The body keeps its own id.
    """
    return {
        "upstream_id": str(flow_origin_id or flow["id"]),
        "name": _first(flow.get("displayName"), flow.get("name")),
        "description": flow.get("description"),
        "flow_type": flow.get("flowType"),
        "origin_id": _as_str(flow.get("originId")),
        "origin_name": flow.get("originName"),
        "is_active": True,
        "raw_payload_json": json.dumps(flow, default=str),
    }
