"""Rise-X connection, sync trigger, status and synced-data routes."""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from fleetsync.api.deps import authenticated_user, get_services
from fleetsync.container import Services
from fleetsync.db.store import AssetFilters, WorkItemFilters
from fleetsync.models.sync import utc_now
from fleetsync.risex.auth import AuthorizationFailedError
from fleetsync.risex.client import UpstreamUnavailableError
from fleetsync.scheduler.trigger import SYNC_TYPE_FULL, SYNC_TYPE_INCREMENTAL

logger = logging.getLogger(__name__)

router = APIRouter()

NO_CONNECTION = {
    "code": "NO_CONNECTION",
    "message": "No active Rise-X connection. Please connect your account first.",
}


class ConnectionRequest(BaseModel):
    token_data: Dict[str, Any]
    user_info: Optional[Dict[str, Any]] = None


class AuthorizeRequest(BaseModel):
    code: str
    redirect_uri: str
    code_verifier: str


class SyncTriggerRequest(BaseModel):
    type: str = SYNC_TYPE_INCREMENTAL  # "incremental" or "full"
    entities: List[str] = ["work_items"]


async def _initial_sync(services: Services, user_id: str) -> None:
    """Background task: full sync right after a connection is stored."""
    try:
        outcome = await services.sync_service.full_sync(user_id)
    except Exception as exc:
        logger.error("Initial sync failed for %s: %s", user_id, exc)
        return
    if outcome.errors:
        logger.warning("Initial sync for %s finished with errors: %s", user_id, outcome.errors)


def _connection_payload(services: Services, user_id: str) -> Dict[str, Any]:
    conn = services.token_manager.get_connection(user_id)
    if conn is None:
        return {"connected": False, "message": "No Rise-X account connected"}
    return {
        "connected": conn.is_active,
        "upstream_email": conn.upstream_email,
        "connected_at": conn.connected_at,
        "last_sync_at": conn.last_sync_at,
        "scopes": conn.scope_list,
        "token_expires_at": conn.token_expires_at,
        "deactivated_reason": conn.deactivated_reason,
    }


# ─── Connection ───────────────────────────────────────────────────────────────

@router.get("/connection")
def get_connection(
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    return _connection_payload(services, user_id)


@router.post("/connection")
def store_connection(
    request: ConnectionRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    """Store tokens obtained by the front end's OAuth flow, then full sync."""
    try:
        services.token_manager.store_connection(user_id, request.token_data, request.user_info)
    except AuthorizationFailedError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    background_tasks.add_task(_initial_sync, services, user_id)
    return {"connected": True, "sync_started": True}


@router.post("/connection/authorize")
async def authorize_connection(
    request: AuthorizeRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    """Authorization-code callback: exchange the code and store the connection."""
    try:
        await services.token_manager.complete_authorization(
            user_id, request.code, request.redirect_uri, request.code_verifier
        )
    except AuthorizationFailedError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except UpstreamUnavailableError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    background_tasks.add_task(_initial_sync, services, user_id)
    return {"connected": True, "sync_started": True}


@router.delete("/connection")
async def delete_connection(
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    existed = await services.token_manager.disconnect(user_id)
    return {"connected": False, "disconnected": existed}


# ─── Triggers ─────────────────────────────────────────────────────────────────

@router.post("/trigger")
async def trigger_sync(
    request: SyncTriggerRequest,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    """Run a sync and wait for it."""
    if not services.token_manager.has_active_connection(user_id):
        raise HTTPException(status_code=400, detail=NO_CONNECTION)
    try:
        result = await services.trigger.trigger_sync(
            user_id, type=request.type, entities=request.entities
        )
    except Exception as exc:
        logger.error("Sync trigger failed for %s: %s", user_id, exc)
        raise HTTPException(status_code=500, detail=str(exc) or type(exc).__name__)
    return {"type": request.type, "result": result, "completed_at": utc_now()}


@router.post("/trigger/async")
async def trigger_sync_async(
    request: SyncTriggerRequest,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    """Start a sync in the background and return immediately."""
    if not services.token_manager.has_active_connection(user_id):
        raise HTTPException(status_code=400, detail=NO_CONNECTION)
    sync_type = SYNC_TYPE_FULL if request.type == SYNC_TYPE_FULL else SYNC_TYPE_INCREMENTAL
    services.trigger.trigger_sync_async(user_id, sync_type)
    return {"message": "Sync started in background", "type": sync_type, "started_at": utc_now()}


# ─── Status & synced data ─────────────────────────────────────────────────────

@router.get("/status")
def sync_status(
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    conn = services.token_manager.get_connection(user_id)
    states = services.store.get_sync_status(user_id)
    return {
        "connected": bool(conn and conn.is_active),
        "last_sync_at": conn.last_sync_at if conn else None,
        "entities": {
            entity: {
                "status": s.status,
                "last_sync_at": s.last_sync_at,
                "last_sync_count": s.last_sync_count,
                "total_synced": s.total_synced,
                "error_message": s.error_message,
                "error_count": s.error_count,
                "last_error_at": s.last_error_at,
            }
            for entity, s in states.items()
        },
    }


@router.get("/work-items")
def list_work_items(
    limit: int = 100,
    offset: int = 0,
    status: Optional[str] = None,
    vessel_id: Optional[str] = None,
    search: Optional[str] = None,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    rows = services.store.get_work_items(
        WorkItemFilters(limit=limit, offset=offset, status=status, vessel_id=vessel_id, search=search)
    )
    return {"data": rows, "meta": {"count": len(rows), "limit": limit, "offset": offset}}


@router.get("/assets")
def list_assets(
    limit: int = 100,
    offset: int = 0,
    registry_id: Optional[str] = None,
    search: Optional[str] = None,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    rows = services.store.get_assets(
        AssetFilters(limit=limit, offset=offset, registry_id=registry_id, search=search)
    )
    return {"data": rows, "meta": {"count": len(rows), "limit": limit, "offset": offset}}


@router.get("/vessels/{vessel_id}/assessments")
def vessel_assessments(
    vessel_id: str,
    limit: int = 50,
    component: Optional[str] = None,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    rows = services.store.get_biofouling_assessments(vessel_id, component=component, limit=limit)
    return {"data": rows, "meta": {"vessel_id": vessel_id, "count": len(rows)}}


@router.get("/logs")
def sync_logs(
    limit: int = 20,
    user_id: str = Depends(authenticated_user),
    services: Services = Depends(get_services),
):
    return {"data": services.store.get_sync_logs(user_id, limit=limit)}
