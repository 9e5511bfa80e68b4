"""In-memory stand-ins for the tracker API used across the tests"""

import copy
import itertools
import re
import threading
import time
from typing import Any, Dict, List, Optional

from syncbridge.services.jira_client import ExistencePolicy, JiraApiError

DEFAULT_WORKFLOW = [
    {"id": "11", "name": "Start", "to": {"id": "1", "name": "To Do"}},
    {"id": "21", "name": "Begin", "to": {"id": "3", "name": "In Progress"}},
    {"id": "31", "name": "Finish", "to": {"id": "5", "name": "Done"}},
]


class FakeJira:
    """A tiny tracker: issues, links, attachments, comments and transitions.

    Every public method mirrors ``JiraClient``. ``failures`` maps a method name
    to an exception raised on the next calls to it.
    """

    def __init__(
        self,
        base_url: str = "https://remote.example.net",
        project_key: str = "REM",
        account_id: str = "bot-account",
        upload_delay: float = 0.0,
    ):
        self.base_url = base_url
        self.project_key = project_key
        self.account_id = account_id
        self.upload_delay = upload_delay
        self.issues: Dict[str, Dict[str, Any]] = {}
        self.comments: Dict[str, List[Dict[str, Any]]] = {}
        self.attachment_content: Dict[str, bytes] = {}
        self.workflow = copy.deepcopy(DEFAULT_WORKFLOW)
        self.failures: Dict[str, Exception] = {}
        self.filter_excluded: set = set()

        self.created: List[Dict[str, Any]] = []
        self.updates: List[tuple] = []
        self.deleted: List[str] = []
        self.uploads: List[tuple] = []
        self.created_links: List[tuple] = []
        self.deleted_links: List[str] = []
        self.transitions_done: List[tuple] = []
        self.searches: List[str] = []

        self._lock = threading.RLock()
        self._issue_seq = itertools.count(1)
        self._id_seq = itertools.count(10000)

    # --- helpers --------------------------------------------------------

    def _maybe_fail(self, name: str) -> None:
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def _require(self, issue_key: str) -> Dict[str, Any]:
        issue = self.issues.get(issue_key)
        if issue is None:
            raise JiraApiError(404, f"Issue {issue_key} does not exist")
        return issue

    def add_issue(self, key: str, **fields: Any) -> Dict[str, Any]:
        """Seed an issue directly (no create call is recorded)."""
        project_key = key.split("-")[0]
        base = {
            "summary": f"Summary of {key}",
            "description": None,
            "project": {"key": project_key},
            "issuetype": {"id": "10001", "name": "Task"},
            "status": {"id": "1", "name": "To Do"},
            "labels": [],
            "attachment": [],
            "issuelinks": [],
        }
        base.update(fields)
        with self._lock:
            issue = {"id": str(next(self._id_seq)), "key": key, "fields": base}
            self.issues[key] = issue
            self.comments.setdefault(key, [])
        return issue

    def add_attachment(self, issue_key: str, filename: str, content: bytes) -> Dict[str, Any]:
        with self._lock:
            attachment = {
                "id": str(next(self._id_seq)),
                "filename": filename,
                "size": len(content),
                "content": f"{self.base_url}/attachment/content/{filename}",
            }
            self._require(issue_key)["fields"]["attachment"].append(attachment)
            self.attachment_content[attachment["id"]] = content
            return copy.deepcopy(attachment)

    def add_local_comment(self, issue_key: str, text: str, author: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._lock:
            comment = {
                "id": str(next(self._id_seq)),
                "body": {
                    "type": "doc",
                    "version": 1,
                    "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
                },
                "author": author or {"accountId": "human-1", "displayName": "Alice"},
            }
            self.comments.setdefault(issue_key, []).append(comment)
            return copy.deepcopy(comment)

    def remove_issue(self, key: str) -> None:
        """Delete behind the engine's back."""
        with self._lock:
            self.issues.pop(key, None)

    # --- issues ---------------------------------------------------------

    def get_issue(self, issue_key: str, fields: Optional[List[str]] = None, expand: Optional[str] = None):
        self._maybe_fail("get_issue")
        with self._lock:
            return copy.deepcopy(self._require(issue_key))

    def issue_exists(self, issue_key: str, policy: ExistencePolicy = ExistencePolicy.FAIL_OPEN) -> bool:
        try:
            self.get_issue(issue_key, fields=["summary"])
            return True
        except JiraApiError as e:
            if e.status_code == 404:
                return False
            return policy == ExistencePolicy.FAIL_OPEN

    def create_issue(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("create_issue")
        with self._lock:
            project_key = (fields.get("project") or {}).get("key") or self.project_key
            key = f"{project_key}-{next(self._issue_seq)}"
            while key in self.issues:
                key = f"{project_key}-{next(self._issue_seq)}"
            stored = copy.deepcopy(fields)
            stored.setdefault("status", {"id": "1", "name": "To Do"})
            stored.setdefault("attachment", [])
            stored.setdefault("issuelinks", [])
            issue = {"id": str(next(self._id_seq)), "key": key, "fields": stored}
            self.issues[key] = issue
            self.comments.setdefault(key, [])
            self.created.append(copy.deepcopy(fields))
            return {"id": issue["id"], "key": key, "self": f"{self.base_url}/issue/{key}"}

    def update_issue(self, issue_key: str, fields: Dict[str, Any]) -> None:
        self._maybe_fail("update_issue")
        with self._lock:
            issue = self._require(issue_key)
            issue["fields"].update(copy.deepcopy(fields))
            self.updates.append((issue_key, copy.deepcopy(fields)))

    def delete_issue(self, issue_key: str) -> None:
        self._maybe_fail("delete_issue")
        with self._lock:
            self._require(issue_key)
            del self.issues[issue_key]
            self.deleted.append(issue_key)

    # --- search ---------------------------------------------------------

    def _matches(self, issue: Dict[str, Any], jql: str) -> bool:
        key_match = re.match(r"key = (\S+)", jql)
        if key_match:
            return issue["key"] == key_match.group(1) and issue["key"] not in self.filter_excluded
        project = re.search(r"project = (\S+)", jql)
        if project and (issue["fields"].get("project") or {}).get("key") != project.group(1):
            return False
        summary = re.search(r'summary ~ "(.*)"', jql)
        if summary and summary.group(1) not in (issue["fields"].get("summary") or ""):
            return False
        return True

    def search(self, jql: str, *, fields=None, max_results: int = 50, next_page_token: Optional[str] = None):
        self._maybe_fail("search")
        with self._lock:
            self.searches.append(jql)
            matched = [copy.deepcopy(i) for _, i in sorted(self.issues.items()) if self._matches(i, jql)]
        start = int(next_page_token or 0)
        page = matched[start : start + max_results]
        result: Dict[str, Any] = {"issues": page, "isLast": start + max_results >= len(matched)}
        if not result["isLast"]:
            result["nextPageToken"] = str(start + max_results)
        return result

    def iter_search_pages(self, jql: str, *, fields=None, page_size: int = 50):
        token = None
        while True:
            page = self.search(jql, fields=fields, max_results=page_size, next_page_token=token)
            yield page.get("issues") or []
            token = page.get("nextPageToken")
            if not token or page.get("isLast"):
                return

    # --- transitions ----------------------------------------------------

    def get_transitions(self, issue_key: str) -> List[Dict[str, Any]]:
        self._maybe_fail("get_transitions")
        self._require(issue_key)
        return copy.deepcopy(self.workflow)

    def transition_issue(self, issue_key: str, transition_id: str) -> None:
        with self._lock:
            issue = self._require(issue_key)
            transition = next(t for t in self.workflow if t["id"] == str(transition_id))
            issue["fields"]["status"] = copy.deepcopy(transition["to"])
            self.transitions_done.append((issue_key, transition["to"]["name"]))

    # --- links ----------------------------------------------------------

    def create_link(self, link_type_name: str, inward_key: str, outward_key: str) -> None:
        self._maybe_fail("create_link")
        with self._lock:
            inward = self._require(inward_key)
            outward = self._require(outward_key)
            link_id = str(next(self._id_seq))
            link_type = {"name": link_type_name}
            inward["fields"]["issuelinks"].append(
                {"id": link_id, "type": link_type, "outwardIssue": {"key": outward_key}}
            )
            outward["fields"]["issuelinks"].append(
                {"id": link_id, "type": link_type, "inwardIssue": {"key": inward_key}}
            )
            self.created_links.append((link_type_name, inward_key, outward_key))

    def delete_link(self, link_id: str) -> None:
        with self._lock:
            for issue in self.issues.values():
                issue["fields"]["issuelinks"] = [
                    l for l in issue["fields"].get("issuelinks") or [] if l.get("id") != str(link_id)
                ]
            self.deleted_links.append(str(link_id))

    def get_issue_links(self, issue_key: str) -> List[Dict[str, Any]]:
        return self.get_issue(issue_key)["fields"].get("issuelinks") or []

    # --- attachments ----------------------------------------------------

    def get_attachments(self, issue_key: str) -> List[Dict[str, Any]]:
        self._maybe_fail("get_attachments")
        return self.get_issue(issue_key)["fields"].get("attachment") or []

    def download_attachment(self, attachment: Dict[str, Any]) -> bytes:
        self._maybe_fail("download_attachment")
        return self.attachment_content.get(str(attachment.get("id")), b"")

    def upload_attachment(self, issue_key: str, filename: str, content: bytes) -> Dict[str, Any]:
        self._maybe_fail("upload_attachment")
        if self.upload_delay:
            time.sleep(self.upload_delay)
        with self._lock:
            self.uploads.append((issue_key, filename))
            return self.add_attachment(issue_key, filename, content)

    # --- comments -------------------------------------------------------

    def get_comment(self, issue_key: str, comment_id: str) -> Dict[str, Any]:
        for comment in self.comments.get(issue_key) or []:
            if comment["id"] == str(comment_id):
                return copy.deepcopy(comment)
        raise JiraApiError(404, f"Comment {comment_id} not found")

    def get_comments(self, issue_key: str, page_size: int = 100) -> List[Dict[str, Any]]:
        self._maybe_fail("get_comments")
        self._require(issue_key)
        return copy.deepcopy(self.comments.get(issue_key) or [])

    def add_comment(self, issue_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("add_comment")
        with self._lock:
            self._require(issue_key)
            comment = {
                "id": str(next(self._id_seq)),
                "body": copy.deepcopy(body),
                "author": {"accountId": self.account_id, "displayName": "Sync Bot"},
            }
            self.comments.setdefault(issue_key, []).append(comment)
            return copy.deepcopy(comment)

    # --- diagnostics ----------------------------------------------------

    def get_myself(self) -> Dict[str, Any]:
        self._maybe_fail("get_myself")
        return {"accountId": self.account_id, "displayName": "Sync Bot"}

    def get_permissions(self, project_key: str, permissions: List[str]) -> Dict[str, Any]:
        return {"permissions": {p: {"havePermission": True} for p in permissions}}

    def get_project(self, project_key: str) -> Dict[str, Any]:
        self._maybe_fail("get_project")
        return {"key": project_key, "name": project_key}

    def get_server_info(self) -> Dict[str, Any]:
        return {"serverTitle": "Fake Jira"}


def no_sleep(_seconds: float) -> None:
    return None


def make_settings(**overrides):
    from syncbridge.config import Settings

    values = dict(
        database_url="sqlite://",
        local_base_url="https://local.example.net",
        local_email="bot@example.com",
        local_api_token="local-token",
        local_site_name="Local",
        scheduled_sync_delay_seconds=0,
        pending_link_delay_seconds=0,
        attachment_lease_poll_interval_seconds=0.01,
        attachment_lease_poll_attempts=200,
        recent_creation_window_seconds=3.0,
    )
    values.update(overrides)
    return Settings(**values)


def add_org(
    service,
    org_id: str = "org1",
    name: str = "Acme",
    remote_project_key: str = "REM",
    token: Optional[str] = "remote-token",
    **fields: Any,
):
    from syncbridge.services.organizations import Organization

    org = Organization(
        id=org_id,
        name=name,
        remote_url=f"https://{org_id}.example.net",
        remote_email="sync@example.com",
        remote_project_key=remote_project_key,
        **fields,
    )
    service.organizations.save(org, api_token=token)
    return service.organizations.get(org_id)


def build_service(local: Optional[FakeJira] = None, remotes: Optional[Dict[str, FakeJira]] = None, **settings):
    """A SyncService over a memory store, wired to fake trackers."""
    from syncbridge.services.kvs import MemoryKeyValueStore
    from syncbridge.services.sync_service import SyncService

    local = local or FakeJira(base_url="https://local.example.net", project_key="LOC", account_id="local-bot")
    remotes = remotes if remotes is not None else {}

    def factory(org):
        return remotes.setdefault(org.id, FakeJira(base_url=org.remote_url, project_key=org.remote_project_key))

    return SyncService(
        MemoryKeyValueStore(),
        config=make_settings(**settings),
        local_client=local,
        client_factory=factory,
        sleep=no_sleep,
    )
