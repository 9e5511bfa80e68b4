"""Storage cleanup for deleted issues"""

import logging
from typing import Optional

from syncbridge.services.kvs import KeyValueStore
from syncbridge.services.mappings import MappingStore
from syncbridge.services.pending_links import PendingLinkQueue

logger = logging.getLogger(__name__)


def cleanup_issue_data(
    kv: KeyValueStore,
    mappings: MappingStore,
    pending_links: PendingLinkQueue,
    issue_key: str,
    remote_key: Optional[str],
    org_id: Optional[str] = None,
) -> bool:
    """Remove every key that refers to ``issue_key`` in ``org_id``'s namespace."""
    logger.info(f"Cleaning up storage for issue {issue_key}")
    try:
        mappings.remove(local_key=issue_key, remote_key=remote_key, org_id=org_id)
        pending_links.remove_for_org(issue_key, org_id)
        kv.delete(f"created-timestamp:{issue_key}")
        kv.delete(f"created-from-remote:{issue_key}")
        kv.delete(f"syncing:{issue_key}")
    except Exception as e:
        logger.error(f"Error during cleanup for {issue_key}: {e}")
        return False
    logger.info(f"Cleanup complete for {issue_key}")
    return True
