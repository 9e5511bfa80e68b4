"""Deferred links (and children) waiting for their counterpart to be synced"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from syncbridge.services.kvs import KeyValueStore

logger = logging.getLogger(__name__)

OUTWARD = "outward"
INWARD = "inward"


@dataclass
class PendingLink:
    linkId: str
    linkedIssueKey: str
    direction: str
    linkTypeName: str
    orgId: Optional[str] = None
    attempts: int = 0
    lastAttempt: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingLink":
        return cls(
            linkId=str(data.get("linkId")),
            linkedIssueKey=data.get("linkedIssueKey") or "",
            direction=data.get("direction") or OUTWARD,
            linkTypeName=data.get("linkTypeName") or "",
            orgId=data.get("orgId"),
            attempts=int(data.get("attempts") or 0),
            lastAttempt=data.get("lastAttempt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def same_link(self, link_id: str, org_id: Optional[str]) -> bool:
        return self.linkId == str(link_id) and self.orgId == org_id


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PendingLinkQueue:
    """Pending links keyed by their source issue.

    Three kinds of entries are kept:

    - ``pending-links:{source}``: the list of pending links for a source issue
    - ``pending-link-idx:{source}``: a queryable marker (same list) the sweep
      enumerates by prefix
    - ``pending-link-target:{target}``: reverse index of source keys waiting on
      ``target``, so creating ``target`` resolves its links without a scan
    """

    INDEX_PREFIX = "pending-link-idx:"

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def _save(self, source_key: str, links: List[PendingLink]) -> None:
        if links:
            payload = [link.to_dict() for link in links]
            self.kv.set(f"pending-links:{source_key}", payload)
            self.kv.set(f"{self.INDEX_PREFIX}{source_key}", payload)
        else:
            self.kv.delete(f"pending-links:{source_key}")
            self.kv.delete(f"{self.INDEX_PREFIX}{source_key}")

    def get(self, source_key: str) -> List[PendingLink]:
        raw = self.kv.get(f"pending-links:{source_key}") or []
        return [PendingLink.from_dict(item) for item in raw]

    def add(self, source_key: str, link: PendingLink) -> PendingLink:
        """Store or refresh a pending link; repeat sightings bump ``attempts``."""
        links = self.get(source_key)
        existing = next((l for l in links if l.same_link(link.linkId, link.orgId)), None)
        if existing is not None:
            existing.linkedIssueKey = link.linkedIssueKey
            existing.direction = link.direction
            existing.linkTypeName = link.linkTypeName
            existing.attempts += 1
            existing.lastAttempt = _now_iso()
            stored = existing
        else:
            stored = PendingLink(
                linkId=str(link.linkId),
                linkedIssueKey=link.linkedIssueKey,
                direction=link.direction,
                linkTypeName=link.linkTypeName,
                orgId=link.orgId,
                attempts=1,
                lastAttempt=_now_iso(),
            )
            links.append(stored)
        self._save(source_key, links)
        self._add_reverse(stored.linkedIssueKey, source_key)
        logger.info(f"Stored pending link: {source_key} -> {stored.linkedIssueKey} (attempt {stored.attempts})")
        return stored

    def record_attempt(self, source_key: str, link_id: str, org_id: Optional[str]) -> int:
        """Increment and return the attempt counter (0 if the link is gone)."""
        links = self.get(source_key)
        for link in links:
            if link.same_link(link_id, org_id):
                link.attempts += 1
                link.lastAttempt = _now_iso()
                self._save(source_key, links)
                return link.attempts
        return 0

    def remove(self, source_key: str, link_id: str, org_id: Optional[str] = None) -> None:
        links = self.get(source_key)
        removed = [l for l in links if l.same_link(link_id, org_id)]
        if not removed:
            return
        remaining = [l for l in links if not l.same_link(link_id, org_id)]
        self._save(source_key, remaining)
        for link in removed:
            if not any(l.linkedIssueKey == link.linkedIssueKey for l in remaining):
                self._remove_reverse(link.linkedIssueKey, source_key)

    def remove_for_org(self, source_key: str, org_id: Optional[str]) -> None:
        """Drop ``org_id``'s pending links from ``source_key``; other orgs keep theirs."""
        links = self.get(source_key)
        remaining = [l for l in links if l.orgId != org_id]
        if len(remaining) == len(links):
            return
        self._save(source_key, remaining)
        for link in links:
            if link.orgId == org_id and not any(l.linkedIssueKey == link.linkedIssueKey for l in remaining):
                self._remove_reverse(link.linkedIssueKey, source_key)

    def sources(self) -> List[str]:
        """Source keys that currently have pending links."""
        return [key[len(self.INDEX_PREFIX):] for key, _ in self.kv.query_prefix(self.INDEX_PREFIX)]

    def find_to(self, target_key: str, org_id: Optional[str] = None) -> List[Tuple[str, PendingLink]]:
        """Pending links (source key, link) that point at ``target_key`` for ``org_id``."""
        results = []
        for source_key in self.kv.get(f"pending-link-target:{target_key}") or []:
            for link in self.get(source_key):
                if link.linkedIssueKey == target_key and link.orgId == org_id:
                    results.append((source_key, link))
        return results

    def _add_reverse(self, target_key: str, source_key: str) -> None:
        key = f"pending-link-target:{target_key}"
        sources = self.kv.get(key) or []
        if source_key not in sources:
            sources.append(source_key)
            self.kv.set(key, sources)

    def _remove_reverse(self, target_key: str, source_key: str) -> None:
        key = f"pending-link-target:{target_key}"
        sources = self.kv.get(key) or []
        if source_key not in sources:
            return
        sources = [s for s in sources if s != source_key]
        if sources:
            self.kv.set(key, sources)
        else:
            self.kv.delete(key)


class PendingChildQueue:
    """Children created before their parent could be synced."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    @staticmethod
    def _key(parent_key: str, org_id: Optional[str]) -> str:
        return f"{org_id or 'legacy'}:pending-child:{parent_key}"

    def enqueue(self, parent_key: str, child_key: str, org_id: Optional[str]) -> None:
        if not parent_key or not child_key:
            return
        key = self._key(parent_key, org_id)
        children = self.kv.get(key) or []
        if child_key not in children:
            children.append(child_key)
            self.kv.set(key, children)

    def consume(self, parent_key: str, org_id: Optional[str]) -> List[str]:
        key = self._key(parent_key, org_id)
        children = self.kv.get(key) or []
        if children:
            self.kv.delete(key)
        return children
