"""Organization management endpoints"""
import secrets
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from syncbridge.services.field_mapping import parse_mapping_table, table_to_raw
from syncbridge.services.organizations import PUSH, Organization, SyncOptions
from syncbridge.services.sync_service import SyncService, get_sync_service

router = APIRouter(prefix="/api/organizations", tags=["organizations"])

MAPPING_TABLES = {
    "users": "userMappings",
    "fields": "fieldMappings",
    "statuses": "statusMappings",
    "issue-types": "issueTypeMappings",
}


class OrganizationCreate(BaseModel):
    name: str
    remote_url: str = Field(..., alias="remoteUrl")
    remote_email: str = Field(..., alias="remoteEmail")
    remote_api_token: Optional[str] = Field(None, alias="remoteApiToken")
    remote_project_key: str = Field(..., alias="remoteProjectKey")
    allowed_projects: List[str] = Field(default_factory=list, alias="allowedProjects")
    jql_filter: Optional[str] = Field(None, alias="jqlFilter")
    sync_direction: str = Field(PUSH, alias="syncDirection")

    model_config = ConfigDict(populate_by_name=True)


class OrganizationResponse(BaseModel):
    id: str
    name: str
    remote_url: str = Field(..., serialization_alias="remoteUrl")
    remote_email: str = Field(..., serialization_alias="remoteEmail")
    remote_project_key: str = Field(..., serialization_alias="remoteProjectKey")
    allowed_projects: List[str] = Field(default_factory=list, serialization_alias="allowedProjects")
    jql_filter: Optional[str] = Field(None, serialization_alias="jqlFilter")
    sync_direction: str = Field(PUSH, serialization_alias="syncDirection")
    archived: bool = False
    has_token: bool = Field(False, serialization_alias="hasToken")

    model_config = ConfigDict(from_attributes=True)


def _to_response(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id,
        name=org.name,
        remote_url=org.remote_url,
        remote_email=org.remote_email,
        remote_project_key=org.remote_project_key,
        allowed_projects=org.allowed_projects,
        jql_filter=org.jql_filter,
        sync_direction=org.sync_direction,
        archived=org.archived,
        has_token=bool(org.remote_api_token),
    )


def _get_or_404(service: SyncService, org_id: str) -> Organization:
    org = service.organizations.get(org_id)
    if not org:
        raise HTTPException(status_code=404, detail="Organization not found")
    return org


def _table_name_or_404(table: str) -> str:
    name = MAPPING_TABLES.get(table)
    if not name:
        raise HTTPException(status_code=404, detail=f"Unknown mapping table: {table}")
    return name


@router.get("/", response_model=List[OrganizationResponse], response_model_by_alias=True)
def list_organizations(include_archived: bool = False, service: SyncService = Depends(get_sync_service)):
    """List organizations (tokens are never returned)"""
    return [_to_response(o) for o in service.organizations.list_organizations(include_archived=include_archived)]


@router.post("/", response_model=OrganizationResponse, response_model_by_alias=True)
def create_organization(payload: OrganizationCreate, service: SyncService = Depends(get_sync_service)):
    """Create a new organization"""
    existing = service.organizations.list_organizations(include_archived=True)
    if any(o.name == payload.name for o in existing):
        raise HTTPException(status_code=400, detail="Organization name already exists")

    data = payload.model_dump(exclude={"remote_api_token"})
    org = Organization(id=uuid.uuid4().hex, **data)
    service.organizations.save(org, api_token=payload.remote_api_token)
    return _to_response(_get_or_404(service, org.id))


@router.get("/{org_id}", response_model=OrganizationResponse, response_model_by_alias=True)
def get_organization(org_id: str, service: SyncService = Depends(get_sync_service)):
    return _to_response(_get_or_404(service, org_id))


@router.put("/{org_id}", response_model=OrganizationResponse, response_model_by_alias=True)
def update_organization(
    org_id: str, payload: OrganizationCreate, service: SyncService = Depends(get_sync_service)
):
    """Update an organization; an empty token keeps the stored one"""
    current = _get_or_404(service, org_id)
    data = payload.model_dump(exclude={"remote_api_token"})
    org = Organization(id=current.id, archived=current.archived, **data)
    service.organizations.save(org, api_token=payload.remote_api_token or None)
    return _to_response(_get_or_404(service, org_id))


@router.delete("/{org_id}")
def archive_organization(org_id: str, service: SyncService = Depends(get_sync_service)):
    """Archive an organization. Its mappings are kept."""
    if not service.organizations.archive(org_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    return {"message": "Organization archived"}


@router.post("/{org_id}/incoming-secret")
def rotate_incoming_secret(org_id: str, service: SyncService = Depends(get_sync_service)):
    """Generate a new inbound webhook secret. It is only shown once."""
    org = _get_or_404(service, org_id)
    secret = secrets.token_urlsafe(32)
    service.organizations.set_incoming_secret(org.id, secret)
    return {"orgId": org.id, "secret": secret, "webhookPath": "/webhooks/incoming"}


@router.get("/{org_id}/mappings/{table}")
def get_mapping_table(org_id: str, table: str, service: SyncService = Depends(get_sync_service)):
    org = _get_or_404(service, org_id)
    name = _table_name_or_404(table)
    config = service.organizations.load_config(org)
    tables = {
        "userMappings": config.user_mappings,
        "fieldMappings": config.field_mappings,
        "statusMappings": config.status_mappings,
        "issueTypeMappings": config.issue_type_mappings,
    }
    return table_to_raw(tables[name])


@router.put("/{org_id}/mappings/{table}")
def save_mapping_table(
    org_id: str,
    table: str,
    entries: Dict[str, Any] = Body(...),
    service: SyncService = Depends(get_sync_service),
):
    """Replace a ``{remoteId: localId | {localId, localName}}`` table"""
    org = _get_or_404(service, org_id)
    name = _table_name_or_404(table)
    parsed = parse_mapping_table(entries, name)
    service.organizations.save_table(org.id, name, parsed)
    return table_to_raw(parsed)


@router.get("/{org_id}/options", response_model=SyncOptions, response_model_by_alias=True)
def get_sync_options(org_id: str, service: SyncService = Depends(get_sync_service)):
    org = _get_or_404(service, org_id)
    return service.organizations.load_config(org).options


@router.put("/{org_id}/options", response_model=SyncOptions, response_model_by_alias=True)
def save_sync_options(org_id: str, options: SyncOptions, service: SyncService = Depends(get_sync_service)):
    org = _get_or_404(service, org_id)
    service.organizations.save_options(org.id, options)
    return options
