"""
Builder for the chunked historic works query, and the folding of its
flattened results back into nested work payloads.

The works GraphQL endpoint cannot return nested arrays selectively, so the
query asks the server to pull individual values out of each record via
JSONPath "additional properties". Array paths are expanded into one entry
per index, e.g.

    data.ranVessel.data.generalArrangement[].items[].foulingCoverage
      -> foulingCoverage_0_0 = $.data.ranVessel.data.generalArrangement[0].items[0].foulingCoverage
         foulingCoverage_0_1 = ...

reconstruct_general_arrangement() reverses that expansion so records from
this path look the same as records from the REST listings.
"""
import calendar
import itertools
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

QUERY_LIMIT = 9999
DEFAULT_LEVEL_LIMIT = 5

_RAN_GA = "data.ranVessel.data.generalArrangement[]"
_VESSEL_GA = "data.vessel.data.generalArrangement[]"


def _add_months(dt: datetime, months: int) -> datetime:
    """Calendar-month step. The day is clamped to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def month_windows(
    start: datetime, end: datetime, months: int = 2
) -> List[Tuple[datetime, datetime]]:
    """
    Split [start, end) into consecutive windows of `months` calendar months.

    The final window is clipped to `end`. An empty or inverted interval
    yields no windows.
    """
    if months < 1:
        raise ValueError("months must be >= 1")
    windows = []
    current = start
    while current < end:
        nxt = _add_months(current, months)
        windows.append((current, min(nxt, end)))
        current = nxt
    return windows


def expand_array_paths(
    base_path: str, key: str, max_elements: Sequence[int]
) -> List[Dict[str, Any]]:
    """
    Expand every "[]" marker in `base_path` into concrete indices.

    Args:
        base_path: Dotted path without the leading "$.", "[]" marks arrays.
        key: Property key prefix; indices are appended as "_i" / "_i_j".
        max_elements: Index limit per array level, outermost first. Levels
            beyond the sequence use DEFAULT_LEVEL_LIMIT.

    Returns:
        List of {"key": ..., "valuePaths": [...]} extraction entries.
    """
    parts = base_path.split("[]")
    if len(parts) == 1:
        return [{"key": key, "valuePaths": [f"$.{base_path}"]}]

    depth = len(parts) - 1
    limits = [
        max_elements[level] if level < len(max_elements) else DEFAULT_LEVEL_LIMIT
        for level in range(depth)
    ]
    entries = []
    for indices in itertools.product(*(range(limit) for limit in limits)):
        path = "$."
        for part, index in zip(parts, indices):
            path += f"{part}[{index}]"
        path += parts[-1]
        entries.append(
            {
                "key": f"{key}_{'_'.join(str(i) for i in indices)}",
                "valuePaths": [path],
            }
        )
    return entries


def _scalar_properties() -> List[Dict[str, Any]]:
    return [
        {"key": "name", "valuePaths": ["$.data.ranVessel.data.name", "$.data.vessel.data.name"]},
        {"key": "class", "valuePaths": ["$.data.ranVessel.data.class", "$.data.vessel.data.class"]},
        {"key": "pennant", "valuePaths": ["$.data.ranVessel.data.pennant", "$.data.vessel.data.pennant"]},
        {"key": "jobType", "valuePaths": ["$.data.jobType", "$.data.data.jobType"]},
        {"key": "inspectionType", "valuePaths": ["$.data.inspectionType", "$.data.data.inspectionType"]},
        {"key": "workInstruction", "valuePaths": ["$.data.workInstruction", "$.data.data.workInstruction"]},
        {
            "key": "actualDeliveryDate",
            "valuePaths": [
                "$.data.actualDelivery.startDateTime",
                "$.actualDelivery.startDateTime",
                "$.data.actualDateOfDelivery",
            ],
        },
        {
            "key": "forecastDeliveryDate",
            "valuePaths": [
                "$.data.forecastDelivery.startDateTime",
                "$.forecastDelivery.startDateTime",
                "$.data.forecastDateOfDelivery",
                "$.data.scheduledDate",
            ],
        },
        {"key": "majorContract", "valuePaths": ["$.data.majorContract"]},
        {"key": "berthAnchorageLocation", "valuePaths": ["$.data.berthAnchorageLocation"]},
    ]


def _general_arrangement_properties() -> List[Dict[str, Any]]:
    specs = [
        (f"{_RAN_GA}.GAComponent", "GAComponent", [15]),
        (f"{_RAN_GA}.name", "GAName", [15]),
        (f"{_RAN_GA}.items[].foulingRatingType", "foulingRatingType", [15, 10]),
        (f"{_RAN_GA}.items[].foulingCoverage", "foulingCoverage", [15, 10]),
        (f"{_RAN_GA}.items[].pdrRating", "pdrRating", [15, 10]),
        (f"{_RAN_GA}.items[].description", "itemDescription", [15, 10]),
        (f"{_RAN_GA}.frRatingData[].foulingRatingType", "frRatingType", [15, 10]),
        (f"{_RAN_GA}.frRatingData[].foulingCoverage", "frRatingCoverage", [15, 10]),
        (f"{_RAN_GA}.diverSupervisorComments", "diverComments", [15]),
        (f"{_RAN_GA}.expertInspectorComments", "expertComments", [15]),
        (f"{_VESSEL_GA}.items[].foulingRatingType", "vesselFoulingRatingType", [15, 10]),
        (f"{_VESSEL_GA}.items[].foulingCoverage", "vesselFoulingCoverage", [15, 10]),
    ]
    entries = []
    for path, key, limits in specs:
        entries.extend(expand_array_paths(path, key, limits))
    return entries


def extraction_properties() -> List[Dict[str, Any]]:
    """Every additional property requested by build_work_query()."""
    return _scalar_properties() + _general_arrangement_properties()


def _iso(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


def build_work_query(flow_origin_id: str, date_from: datetime, date_to: datetime) -> str:
    """
    getWorkPocoList query for every record of one workflow modified inside
    [date_from, date_to), completed, in-progress and soft-deleted included.
    """
    # Each property is a JSON document passed as a GraphQL string literal.
    props = ",\n    ".join(json.dumps(json.dumps(p)) for p in extraction_properties())
    return f"""{{
  getWorkPocoList(
    dateFrom: "{_iso(date_from)}"
    dateTo: "{_iso(date_to)}"
    flowOriginIds: ["{flow_origin_id}"]
    limit: {QUERY_LIMIT}
    skip: 0
    showCompleted: true
    showDeleted: true
    showInProgress: true
    additionalProperties: [{props}]
  ) {{
    id
    rowId
    displayName
    workCode
    currentState
    flowId
    flowOriginId
    flowType
    activeStepId
    activeStepName
    createdDate
    lastModified
    data
    additionalProperties {{
      key
      displayName
      value
    }}
  }}
}}"""


def works_from_response(body: Any) -> List[Dict[str, Any]]:
    """Pull the work list out of a query response body; [] when absent."""
    if not isinstance(body, dict):
        return []
    data = body.get("data") or {}
    works = data.get("getWorkPocoList") or []
    return [w for w in works if isinstance(w, dict)]


# ─── Folding extracted properties back ────────────────────────────────────────

_COMPONENT_KEY = re.compile(r"^(GAComponent|GAName|diverComments|expertComments)_(\d+)$")
_RATING_KEY = re.compile(
    r"^(foulingRatingType|foulingCoverage|pdrRating|itemDescription"
    r"|frRatingType|frRatingCoverage)_(\d+)_(\d+)$"
)

# flattened key -> (list on the component, field on the entry)
_RATING_TARGETS = {
    "foulingRatingType": ("items", "foulingRatingType"),
    "foulingCoverage": ("items", "foulingCoverage"),
    "pdrRating": ("items", "pdrRating"),
    "itemDescription": ("items", "description"),
    "frRatingType": ("frRatingData", "foulingRatingType"),
    "frRatingCoverage": ("frRatingData", "foulingCoverage"),
}


def _slot(entries: List[Dict[str, Any]], index: int) -> Dict[str, Any]:
    while len(entries) <= index:
        entries.append({})
    return entries[index]


def reconstruct_general_arrangement(flat: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Rebuild a generalArrangement list from indexed flattened properties.

    Empty values are ignored. Rating entries with neither a level, a coverage
    nor a PDR rating are dropped, as are components left with no name and no
    entries. Components come back in index order.
    """
    components: Dict[int, Dict[str, Any]] = {}

    def component(index: str) -> Dict[str, Any]:
        return components.setdefault(int(index), {"items": [], "frRatingData": []})

    for key, value in flat.items():
        if value is None or value == "":
            continue
        match = _COMPONENT_KEY.match(key)
        if match:
            prop, index = match.groups()
            comp = component(index)
            if prop in ("GAComponent", "GAName"):
                comp["name"] = value
                comp["GAComponent"] = value
            elif prop == "diverComments":
                comp["diverSupervisorComments"] = value
            else:
                comp["expertInspectorComments"] = value
            continue
        match = _RATING_KEY.match(key)
        if match:
            prop, index, entry_index = match.groups()
            list_name, field = _RATING_TARGETS[prop]
            entry = _slot(component(index)[list_name], int(entry_index))
            entry[field] = value

    result = []
    for index in sorted(components):
        comp = components[index]
        comp["items"] = [
            e for e in comp["items"]
            if any(k in e for k in ("foulingRatingType", "foulingCoverage", "pdrRating"))
        ]
        comp["frRatingData"] = [
            e for e in comp["frRatingData"]
            if any(k in e for k in ("foulingRatingType", "foulingCoverage"))
        ]
        if comp.get("name") or comp["items"] or comp["frRatingData"]:
            result.append(comp)
    return result


def _maybe_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _existing_general_arrangement(data: Dict[str, Any]) -> Optional[List[Any]]:
    vessel = data.get("ranVessel") or data.get("vessel") or {}
    vessel_data = vessel.get("data") if isinstance(vessel, dict) else None
    if not isinstance(vessel_data, dict):
        return None
    ga = _maybe_json(vessel_data.get("generalArrangement"))
    return ga if isinstance(ga, list) else None


def merge_extracted_properties(work: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of a query result with its additionalProperties folded
    into `data`.

    Every property value is JSON-decoded where possible and set on `data`
    by key. A general arrangement already present on the vessel wins over
    one reconstructed from indexed properties. The chosen list is attached
    to ranVessel.data, else vessel.data, else data.reconstructedGA.
    """
    converted = {}
    for prop in work.get("additionalProperties") or []:
        if prop.get("key") and prop.get("value") is not None:
            converted[prop["key"]] = _maybe_json(prop["value"])

    data = work.get("data")
    data = _maybe_json(data) if data is not None else {}
    if not isinstance(data, dict):
        data = {}

    existing = _existing_general_arrangement(data)
    reconstructed = reconstruct_general_arrangement(converted)
    final = existing or reconstructed or None

    merged_data = {**data, **converted}
    for vessel_key in ("ranVessel", "vessel"):
        vessel = merged_data.get(vessel_key)
        if isinstance(vessel, dict) and isinstance(vessel.get("data"), dict):
            merged_data[vessel_key] = {**vessel, "data": dict(vessel["data"])}

    if final:
        for vessel_key in ("ranVessel", "vessel"):
            vessel = merged_data.get(vessel_key)
            if isinstance(vessel, dict) and isinstance(vessel.get("data"), dict):
                vessel["data"]["generalArrangement"] = final
                break
        else:
            merged_data["reconstructedGA"] = final

    return {**work, "data": merged_data}
