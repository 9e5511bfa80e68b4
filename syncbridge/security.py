"""Security-related helpers (built-in auth).

Optional HTTP Basic auth for the admin API. Endpoints that authenticate
by other means (the inbound webhook carries a per-organization secret)
are listed in ``allow_paths``.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


@dataclass(frozen=True)
class BasicAuthCredentials:
    username: str
    password: str


def parse_basic_auth_header(header_value: str) -> BasicAuthCredentials | None:
    """Decode ``Authorization: Basic ...``; None when absent or malformed."""
    scheme, _, param = (header_value or "").partition(" ")
    if scheme.lower() != "basic" or not param:
        return None

    try:
        decoded = base64.b64decode(param.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None

    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return BasicAuthCredentials(username=username, password=password)


def credentials_match(creds: BasicAuthCredentials, username: str, password: str) -> bool:
    # Both comparisons always run so timing doesn't reveal which one failed.
    ok_user = secrets.compare_digest(creds.username.encode("utf-8"), username.encode("utf-8"))
    ok_pass = secrets.compare_digest(creds.password.encode("utf-8"), password.encode("utf-8"))
    return ok_user and ok_pass


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Require HTTP Basic auth on every path outside ``allow_paths``."""

    def __init__(
        self,
        app,
        *,
        username: str,
        password: str,
        allow_paths: set[str] | None = None,
        realm: str = "SyncBridge",
    ):
        super().__init__(app)
        self._username = username
        self._password = password
        self._allow_paths = {p.rstrip("/") or "/" for p in (allow_paths or {"/health"})}
        self._realm = realm

    def is_open(self, path: str) -> bool:
        return (path.rstrip("/") or "/") in self._allow_paths

    def _unauthorized(self) -> Response:
        return Response(
            content="Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": f'Basic realm="{self._realm}", charset="UTF-8"'},
        )

    async def dispatch(self, request: Request, call_next):
        if self.is_open(request.url.path):
            return await call_next(request)

        creds = parse_basic_auth_header(request.headers.get("Authorization", ""))
        if creds is None or not credentials_match(creds, self._username, self._password):
            return self._unauthorized()
        return await call_next(request)
