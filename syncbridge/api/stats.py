"""Statistics and audit endpoints"""

from typing import Optional

from fastapi import APIRouter, Depends

from syncbridge.services.sync_service import SyncService, get_sync_service

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("/api-usage")
def get_api_usage(service: SyncService = Depends(get_sync_service)):
    """Outbound call counts for the current hour plus recent history"""
    return service.stats.get_api_usage_stats()


@router.post("/api-usage/reset")
def reset_api_usage(service: SyncService = Depends(get_sync_service)):
    service.stats.reset_api_usage_stats()
    return {"message": "API usage stats reset"}


@router.get("/webhooks")
def get_webhook_stats(service: SyncService = Depends(get_sync_service)):
    return service.stats.get_webhook_sync_stats()


@router.post("/webhooks/clear-errors")
def clear_webhook_errors(service: SyncService = Depends(get_sync_service)):
    service.stats.clear_webhook_errors()
    return {"message": "Webhook errors cleared"}


@router.get("/scheduled")
def get_scheduled_stats(service: SyncService = Depends(get_sync_service)):
    return service.stats.get_scheduled_stats() or {}


@router.get("/audit")
def get_audit_log(limit: Optional[int] = None, service: SyncService = Depends(get_sync_service)):
    return service.stats.get_audit_log(limit)


@router.delete("/audit")
def clear_audit_log(service: SyncService = Depends(get_sync_service)):
    service.stats.clear_audit_log()
    return {"message": "Audit log cleared"}


@router.get("/summary")
def get_summary(service: SyncService = Depends(get_sync_service)):
    """Per-organization mapping counts and pending-link backlog"""
    orgs = service.organizations.list_organizations(include_archived=True)
    webhook_stats = service.stats.get_webhook_sync_stats()
    return {
        "organizations": [
            {
                "id": org.id,
                "name": org.name,
                "archived": org.archived,
                "bidirectional": org.is_bidirectional,
                "mappedIssues": len(service.mappings.all_mappings(org.namespace)),
            }
            for org in orgs
        ],
        "pendingLinkSources": len(service.pending_links.sources()),
        "totalSyncs": webhook_stats.get("totalSyncs", 0),
        "lastSync": webhook_stats.get("lastSync"),
        "scheduled": service.stats.get_scheduled_stats(),
    }
