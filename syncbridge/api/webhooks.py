"""Webhook endpoints: local tracker events and inbound remote webhooks"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Query
from fastapi.responses import JSONResponse

from syncbridge.services.sync_service import SyncService, get_sync_service

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/incoming")
def incoming_webhook(
    payload: Optional[Dict[str, Any]] = Body(None),
    secret: Optional[str] = Query(None),
    x_sync_secret: Optional[str] = Header(None),
    service: SyncService = Depends(get_sync_service),
):
    """Receive an issue or comment event from a bidirectional organization.

    The shared secret may arrive as ``?secret=`` or in the ``X-Sync-Secret`` header.
    """
    status_code, body = service.process_incoming_webhook(payload or {}, secret or x_sync_secret)
    return JSONResponse(status_code=status_code, content=body)


@router.get("/incoming")
def incoming_webhook_check(
    secret: Optional[str] = Query(None),
    x_sync_secret: Optional[str] = Header(None),
    service: SyncService = Depends(get_sync_service),
):
    """Lets a remote admin check the URL and secret before registering the webhook."""
    org = service.organizations.find_by_incoming_secret(secret or x_sync_secret)
    if org is None:
        return JSONResponse(status_code=401, content={"error": "Invalid secret"})
    return {"status": "ok", "organization": org.name, "bidirectional": org.is_bidirectional}


@router.post("/events")
def local_event(event: Dict[str, Any] = Body(...), service: SyncService = Depends(get_sync_service)):
    """Dispatch a local tracker event (issue, comment, attachment, link or tick)"""
    return service.handle_event(event)
