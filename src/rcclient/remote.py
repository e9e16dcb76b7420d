"""REST+JSON client for the authoritative server.

Calls are blocking; the sync engine runs them off the event loop. HTTP
failures are mapped onto the error taxonomy in ``errors.py``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import requests
import structlog

from .errors import (
    ForbiddenError,
    RateLimitedError,
    RejectedError,
    StaleRecordError,
    TransientRemoteError,
    UnauthenticatedError,
)

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_AFTER = 60.0

# Keys a 409 body may carry besides the record itself
_STALE_META_KEYS = {"serverVersion", "error", "message", "conflict"}


@dataclass
class PullPage:
    """One page of server-side changes."""

    items: list[dict[str, Any]]
    next_cursor: str | None
    has_more: bool


@dataclass
class LoginResult:
    """Successful login response."""

    token: str
    expires_at: int | None
    principal: dict[str, Any] = field(default_factory=dict)


def parse_retry_after(value: str | None) -> float:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return DEFAULT_RETRY_AFTER
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _message(body: Any) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "")
    return ""


class RemoteApi:
    """Client for the ``/api`` endpoints consumed by the sync engine and session gate."""

    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        push_timeout: float = 15.0,
        pull_timeout: float = 30.0,
        verify: bool = True,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.push_timeout = push_timeout
        self.pull_timeout = pull_timeout
        self.verify = verify

    def close(self) -> None:
        self.session.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method, url, headers=headers, timeout=timeout, verify=self.verify, **kwargs
            )
        except requests.Timeout as exc:
            raise TransientRemoteError(f"{method} {path} timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise TransientRemoteError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            self._raise_for_status(method, path, response)
        return response

    @staticmethod
    def _raise_for_status(method: str, path: str, response: requests.Response) -> None:
        status = response.status_code
        body = _body(response)
        logger.debug("remote_error", method=method, path=path, status=status)

        if status == 401:
            raise UnauthenticatedError(_message(body) or "Authentication required")
        if status == 403:
            raise ForbiddenError(path, _message(body) or None)
        if status == 409:
            body = body if isinstance(body, dict) else {}
            record = body.get("record") or body.get("serverData")
            if record is None and set(body) - _STALE_META_KEYS:
                record = body
            server_version = body.get("serverVersion")
            if server_version is None and isinstance(record, dict):
                server_version = record.get("serverVersion")
            raise StaleRecordError(server_version, record, body)
        if status == 429:
            raise RateLimitedError(parse_retry_after(response.headers.get("Retry-After")), body)
        if status >= 500:
            raise TransientRemoteError(f"{method} {path} returned {status}", status, body)
        raise RejectedError(
            f"{method} {path} rejected with {status}: {_message(body)}".rstrip(": "),
            status,
            body,
        )

    def login(self, username: str, password: str) -> LoginResult:
        """Exchange credentials for a bearer token."""
        response = self._request(
            "POST",
            "/api/auth/login",
            timeout=self.push_timeout,
            json={"username": username, "password": password},
        )
        data = response.json()
        return LoginResult(
            token=data["token"],
            expires_at=data.get("expiresAt"),
            principal=data.get("principal") or {},
        )

    def pull(
        self,
        path: str,
        since: str | None,
        limit: int,
        headers: dict[str, str],
    ) -> PullPage:
        """Fetch changes to an entity after ``since`` (None for everything)."""
        params: dict[str, Any] = {"limit": limit}
        if since is not None:
            params["since"] = since
        response = self._request(
            "GET", f"/api/{path}", timeout=self.pull_timeout, headers=headers, params=params
        )
        data = response.json()
        return PullPage(
            items=list(data.get("items") or []),
            next_cursor=data.get("nextCursor"),
            has_more=bool(data.get("hasMore")),
        )

    def fetch(self, path: str, record_id: int, headers: dict[str, str]) -> dict[str, Any] | None:
        """Current server image of one record, None if it no longer exists."""
        try:
            response = self._request(
                "GET", f"/api/{path}/{record_id}", timeout=self.pull_timeout, headers=headers
            )
        except RejectedError as exc:
            if exc.status in (404, 410):
                return None
            raise
        return response.json()

    def create(self, path: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        response = self._request(
            "POST", f"/api/{path}", timeout=self.push_timeout, headers=headers, json=payload
        )
        return response.json()

    def update(
        self,
        path: str,
        record_id: int,
        payload: dict[str, Any],
        server_version: int | None,
        headers: dict[str, str],
    ) -> dict[str, Any]:
        response = self._request(
            "PUT",
            f"/api/{path}/{record_id}",
            timeout=self.push_timeout,
            headers=headers,
            json={**payload, "serverVersion": server_version},
        )
        return response.json()

    def delete(
        self,
        path: str,
        record_id: int,
        server_version: int | None,
        headers: dict[str, str],
    ) -> None:
        params = {"serverVersion": server_version} if server_version is not None else None
        self._request(
            "DELETE",
            f"/api/{path}/{record_id}",
            timeout=self.push_timeout,
            headers=headers,
            params=params,
        )

    def ping(self, timeout: float = 5.0) -> bool:
        """Liveness probe: True when the server answers at all without a 5xx."""
        try:
            response = self.session.get(
                f"{self.base_url}/api/health", timeout=timeout, verify=self.verify
            )
        except requests.RequestException:
            return False
        return response.status_code < 500
