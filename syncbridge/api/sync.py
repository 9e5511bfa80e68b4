"""Sync management endpoints"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from syncbridge.services.organizations import ScheduledSyncConfig
from syncbridge.services.sync_service import SyncService, get_sync_service

router = APIRouter(prefix="/api/sync", tags=["sync"])


class BulkSyncRequest(BaseModel):
    org_id: Optional[str] = Field(None, alias="orgId")
    sync_missing_data: bool = Field(False, alias="syncMissingData")
    update_existing: bool = Field(False, alias="updateExisting")

    model_config = ConfigDict(populate_by_name=True)


@router.post("/issues/{issue_key}")
def force_sync_issue(issue_key: str, service: SyncService = Depends(get_sync_service)):
    """Manually re-sync one issue to every organization"""
    try:
        return service.force_sync(issue_key)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/issues/{issue_key}/mappings")
def get_issue_mappings(issue_key: str, service: SyncService = Depends(get_sync_service)):
    """Remote keys, pending links and sync flag for one issue"""
    return service.get_mappings(issue_key)


@router.post("/pending-links/retry")
def retry_pending_links(service: SyncService = Depends(get_sync_service)):
    try:
        return service.retry_pending_links()
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/scheduled/run")
def run_scheduled_sync(service: SyncService = Depends(get_sync_service)):
    """Run the scheduled sweep now, even if it is disabled"""
    try:
        return service.run_scheduled_sync(force=True)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/scheduled/config", response_model=ScheduledSyncConfig, response_model_by_alias=True)
def get_scheduled_config(service: SyncService = Depends(get_sync_service)):
    return service.organizations.get_scheduled_config()


@router.put("/scheduled/config", response_model=ScheduledSyncConfig, response_model_by_alias=True)
def save_scheduled_config(config: ScheduledSyncConfig, service: SyncService = Depends(get_sync_service)):
    service.organizations.save_scheduled_config(config)
    return config


@router.post("/bulk", status_code=202)
def start_bulk_sync(
    request: BulkSyncRequest,
    background_tasks: BackgroundTasks,
    service: SyncService = Depends(get_sync_service),
):
    """Queue a bulk sync; poll ``GET /api/sync/bulk`` for progress"""
    try:
        status = service.start_bulk_sync(request.org_id, request.sync_missing_data, request.update_existing)
    except ValueError as e:
        # Unknown organization, or a run is already in progress.
        code = 404 if "not found" in str(e) else 409
        raise HTTPException(status_code=code, detail=str(e))

    background_tasks.add_task(
        service.run_bulk_sync, request.org_id, request.sync_missing_data, request.update_existing
    )
    return status


@router.get("/bulk")
def get_bulk_status(service: SyncService = Depends(get_sync_service)):
    return service.get_bulk_status() or {"status": "idle"}


@router.post("/bulk/cancel")
def cancel_bulk_sync(service: SyncService = Depends(get_sync_service)):
    if not service.cancel_bulk_sync():
        raise HTTPException(status_code=409, detail="No bulk sync is running")
    return {"message": "Cancellation requested"}


@router.get("/diagnostics/{org_id}")
def run_health_check(org_id: str, service: SyncService = Depends(get_sync_service)):
    """Read-only credential and permission checks for one organization"""
    try:
        return service.run_health_check(org_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
