"""Services"""

from syncbridge.services.jira_client import JiraClient
from syncbridge.services.sync_service import SyncService

__all__ = ["JiraClient", "SyncService"]
