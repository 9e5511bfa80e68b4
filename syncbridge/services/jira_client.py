"""Issue tracker REST API client wrapper"""

import enum
import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests

from syncbridge.services.retry import RetryPolicy, with_retries
from syncbridge.services.stats import StatsRecorder

logger = logging.getLogger(__name__)

API = "/rest/api/3"


class JiraApiError(Exception):
    """Non-2xx response from the tracker API."""

    def __init__(self, status_code: int, message: str, response_text: str = ""):
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.response_text = response_text


class ExistencePolicy(str, enum.Enum):
    """What an existence check concludes when the answer is ambiguous.

    Only a 404 proves a record is gone. On 401/403/5xx/network errors,
    FAIL_OPEN assumes the record still exists (no recreation), FAIL_CLOSED
    assumes it is gone.
    """

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class JiraClient:
    """Wrapper for tracker API operations.

    The same client talks to the local instance and to every remote
    organization; only the base URL and credentials differ.
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        *,
        org_id: Optional[str] = None,
        stats: Optional[StatsRecorder] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize client"""
        self.base_url = (base_url or "").rstrip("/")
        self.org_id = org_id
        self.stats = stats
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.auth = (email, api_token)
        self.session.headers.update({"Accept": "application/json"})

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        files: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        def _call() -> requests.Response:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                files=files,
                headers=headers,
                timeout=self.timeout,
            )
            if not response.ok:
                raise JiraApiError(response.status_code, operation, response.text or "")
            return response

        return with_retries(
            _call,
            operation=operation,
            policy=self.retry_policy,
            endpoint=path,
            org_id=self.org_id,
            stats=self.stats,
            sleep=self._sleep,
        )

    @staticmethod
    def _json(response: requests.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # --- issues ---------------------------------------------------------

    def get_issue(
        self, issue_key: str, fields: Optional[List[str]] = None, expand: Optional[str] = None
    ) -> Dict[str, Any]:
        """Get an issue by key"""
        params: Dict[str, Any] = {}
        if fields:
            params["fields"] = ",".join(fields)
        if expand:
            params["expand"] = expand
        response = self._request(
            "GET", f"{API}/issue/{issue_key}", operation=f"Get issue {issue_key}", params=params or None
        )
        return self._json(response)

    def get_issue_optional(
        self, issue_key: str, fields: Optional[List[str]] = None
    ) -> Tuple[Optional[Dict[str, Any]], Optional[int]]:
        """Get issue by key, returning (issue, status_code_if_error)."""
        try:
            return self.get_issue(issue_key, fields=fields), None
        except JiraApiError as e:
            return None, e.status_code

    def issue_exists(self, issue_key: str, policy: ExistencePolicy = ExistencePolicy.FAIL_OPEN) -> bool:
        try:
            self.get_issue(issue_key, fields=["summary"])
            return True
        except JiraApiError as e:
            if e.status_code == 404:
                return False
            assumed = policy == ExistencePolicy.FAIL_OPEN
            logger.warning(
                f"Existence check for {issue_key} ambiguous (HTTP {e.status_code}); "
                f"{policy.value} assumes {'present' if assumed else 'absent'}"
            )
            return assumed
        except requests.exceptions.RequestException as e:
            assumed = policy == ExistencePolicy.FAIL_OPEN
            logger.warning(
                f"Existence check for {issue_key} failed ({e}); "
                f"{policy.value} assumes {'present' if assumed else 'absent'}"
            )
            return assumed

    def create_issue(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new issue; returns {id, key, self}"""
        response = self._request("POST", f"{API}/issue", operation="Create issue", json={"fields": fields})
        created = self._json(response)
        logger.info(f"Created issue {created.get('key')} on {self.base_url}")
        return created

    def update_issue(self, issue_key: str, fields: Dict[str, Any]) -> None:
        """Partial update of an existing issue"""
        self._request(
            "PUT", f"{API}/issue/{issue_key}", operation=f"Update issue {issue_key}", json={"fields": fields}
        )

    def delete_issue(self, issue_key: str) -> None:
        self._request(
            "DELETE",
            f"{API}/issue/{issue_key}",
            operation=f"Delete issue {issue_key}",
            params={"deleteSubtasks": "true"},
        )

    def search(
        self,
        jql: str,
        *,
        fields: Optional[List[str]] = None,
        max_results: int = 50,
        next_page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """One page of an issue search; the result carries ``nextPageToken`` when more remain."""
        body: Dict[str, Any] = {"jql": jql, "maxResults": max_results, "fields": fields or ["summary"]}
        if next_page_token:
            body["nextPageToken"] = next_page_token
        response = self._request("POST", f"{API}/search/jql", operation="Search issues", json=body)
        return self._json(response) or {}

    def iter_search_pages(
        self, jql: str, *, fields: Optional[List[str]] = None, page_size: int = 50
    ) -> Iterator[List[Dict[str, Any]]]:
        """Yield search results page by page."""
        token = None
        while True:
            page = self.search(jql, fields=fields, max_results=page_size, next_page_token=token)
            yield page.get("issues") or []
            token = page.get("nextPageToken")
            if not token or page.get("isLast"):
                return

    # --- transitions ----------------------------------------------------

    def get_transitions(self, issue_key: str) -> List[Dict[str, Any]]:
        response = self._request(
            "GET", f"{API}/issue/{issue_key}/transitions", operation=f"Get transitions {issue_key}"
        )
        return (self._json(response) or {}).get("transitions", [])

    def transition_issue(self, issue_key: str, transition_id: str) -> None:
        self._request(
            "POST",
            f"{API}/issue/{issue_key}/transitions",
            operation=f"Transition {issue_key}",
            json={"transition": {"id": str(transition_id)}},
        )

    # --- links ----------------------------------------------------------

    def create_link(self, link_type_name: str, inward_key: str, outward_key: str) -> None:
        self._request(
            "POST",
            f"{API}/issueLink",
            operation=f"Create link {link_type_name} {inward_key} -> {outward_key}",
            json={
                "type": {"name": link_type_name},
                "inwardIssue": {"key": inward_key},
                "outwardIssue": {"key": outward_key},
            },
        )

    def delete_link(self, link_id: str) -> None:
        self._request("DELETE", f"{API}/issueLink/{link_id}", operation=f"Delete link {link_id}")

    def get_issue_links(self, issue_key: str) -> List[Dict[str, Any]]:
        issue = self.get_issue(issue_key, fields=["issuelinks"])
        return (issue.get("fields") or {}).get("issuelinks") or []

    # --- attachments ----------------------------------------------------

    def get_attachments(self, issue_key: str) -> List[Dict[str, Any]]:
        issue = self.get_issue(issue_key, fields=["attachment"])
        return (issue.get("fields") or {}).get("attachment") or []

    def download_attachment(self, attachment: Dict[str, Any]) -> bytes:
        url = attachment.get("content") or f"{API}/attachment/content/{attachment.get('id')}"
        response = self._request(
            "GET", url, operation=f"Download attachment {attachment.get('filename')}"
        )
        return response.content

    def upload_attachment(self, issue_key: str, filename: str, content: bytes) -> Dict[str, Any]:
        """Upload a file (multipart); returns the created attachment"""
        response = self._request(
            "POST",
            f"{API}/issue/{issue_key}/attachments",
            operation=f"Upload {filename} to {issue_key}",
            files={"file": (filename, content)},
            headers={"X-Atlassian-Token": "no-check"},
        )
        created = self._json(response) or []
        return created[0] if isinstance(created, list) and created else (created or {})

    # --- comments -------------------------------------------------------

    def get_comment(self, issue_key: str, comment_id: str) -> Dict[str, Any]:
        response = self._request(
            "GET", f"{API}/issue/{issue_key}/comment/{comment_id}", operation=f"Get comment {comment_id}"
        )
        return self._json(response)

    def get_comments(self, issue_key: str, page_size: int = 100) -> List[Dict[str, Any]]:
        comments: List[Dict[str, Any]] = []
        start_at = 0
        while True:
            response = self._request(
                "GET",
                f"{API}/issue/{issue_key}/comment",
                operation=f"Get comments {issue_key}",
                params={"startAt": start_at, "maxResults": page_size, "orderBy": "created"},
            )
            page = self._json(response) or {}
            batch = page.get("comments") or []
            comments.extend(batch)
            start_at += len(batch)
            if not batch or start_at >= int(page.get("total", 0)):
                return comments

    def add_comment(self, issue_key: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = self._request(
            "POST", f"{API}/issue/{issue_key}/comment", operation=f"Add comment to {issue_key}", json={"body": body}
        )
        return self._json(response) or {}

    # --- diagnostics ----------------------------------------------------

    def get_myself(self) -> Dict[str, Any]:
        return self._json(self._request("GET", f"{API}/myself", operation="Get current user"))

    def get_permissions(self, project_key: str, permissions: List[str]) -> Dict[str, Any]:
        response = self._request(
            "GET",
            f"{API}/mypermissions",
            operation=f"Get permissions {project_key}",
            params={"projectKey": project_key, "permissions": ",".join(permissions)},
        )
        return self._json(response) or {}

    def get_project(self, project_key: str) -> Dict[str, Any]:
        return self._json(self._request("GET", f"{API}/project/{project_key}", operation=f"Get project {project_key}"))

    def get_server_info(self) -> Dict[str, Any]:
        return self._json(self._request("GET", f"{API}/serverInfo", operation="Get server info"))
