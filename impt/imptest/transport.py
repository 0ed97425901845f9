"""
Transport layer for imptest.

Responsibilities:
    * Talk JSON-over-HTTPS to the Electric Imp Build API.
    * Upload code revisions and restart devices/models.
    * Fetch log batches, either from a timestamp or from a poll cursor.
    * Classify failures into the two recoverable log-stream signatures
      (expired log token, gateway timeout) and everything else.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import requests


logger = logging.getLogger(__name__)

# Far-future "since" value: yields an empty batch and a fresh poll cursor.
SENTINEL_SINCE = "3000-01-01T00:00:00.000+00:00"

DEFAULT_API_ENDPOINT = "https://build.electricimp.com/v4"

_VERSION_PREFIX_RE = re.compile(r"^/v\d+")


class TransportError(RuntimeError):
    """Raised when the Build API cannot complete an operation."""

    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code

    @property
    def is_invalid_token(self) -> bool:
        return "InvalidLogToken" in str(self) or self.code == "InvalidLogToken"

    @property
    def is_timeout(self) -> bool:
        return self.status == 504 or "HTTP/504" in str(self)


@dataclass
class TransportConfig:
    api_endpoint: str = DEFAULT_API_ENDPOINT
    api_key: Optional[str] = None
    request_timeout: float = 60.0
    user_agent: str = "impTest"


@dataclass(frozen=True)
class PollCursor:
    """Opaque continuation token for the device log stream."""

    path: str

    @classmethod
    def from_poll_url(cls, poll_url: str) -> "PollCursor":
        return cls(_VERSION_PREFIX_RE.sub("", poll_url))


@dataclass
class LogBatch:
    cursor: Optional[PollCursor]
    logs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BuildAPIClient:
    """Thin synchronous Build API client."""

    config: TransportConfig = field(default_factory=TransportConfig)
    session: requests.Session = field(default_factory=requests.Session)

    def _headers(self) -> Dict[str, str]:
        token = base64.b64encode((self.config.api_key or "").encode("utf-8")).decode("ascii")
        return {
            "User-agent": self.config.user_agent,
            "Content-type": "application/json",
            "Authorization": f"Basic {token}",
        }

    def request(self, method: str, path: str, query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a request and return the decoded ``{"success": true, ...}`` body."""
        method = method.upper()
        url = self.config.api_endpoint.rstrip("/") + path
        params = None
        body = None
        if query:
            query = {key: value for key, value in query.items() if value is not None}
            if method == "GET":
                params = query
            else:
                body = query
        logger.debug("%s %s params=%s", method, url, params)
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=body,
                headers=self._headers(),
                timeout=self.config.request_timeout,
            )
        except requests.Timeout as exc:
            raise TransportError(f"Build API error HTTP/504: {exc}", status=504) from exc
        except requests.RequestException as exc:
            raise TransportError(f"Build API request failed: {exc}") from exc
        logger.debug("response code: %s", response.status_code)
        try:
            result = response.json()
        except ValueError:
            result = None
        if not isinstance(result, dict) or not result.get("success"):
            raise self._error_from(response.status_code, result)
        return result

    @staticmethod
    def _error_from(status: int, result: Any) -> TransportError:
        if isinstance(result, dict) and isinstance(result.get("error"), dict):
            error = result["error"]
            code = str(error.get("code"))
            message = f'Build API error "{code}": {error.get("message_short")}'
        elif isinstance(result, dict) and result.get("code") and result.get("message"):
            code = str(result["code"])
            message = f'Build API error "{code}": {result["message"]}'
        else:
            code = None
            message = f"Build API error HTTP/{status}"
        logger.debug(message)
        return TransportError(message, status=status, code=code)

    #
    # Build API operations
    #
    def create_revision(
        self,
        model_id: str,
        device_code: Optional[str] = None,
        agent_code: Optional[str] = None,
        release_notes: Optional[str] = None,
    ) -> int:
        """Upload a new code revision and return its version number."""
        result = self.request(
            "POST",
            f"/models/{model_id}/revisions",
            {"device_code": device_code, "agent_code": agent_code, "release_notes": release_notes},
        )
        revision = result.get("revision") or {}
        try:
            return int(revision.get("version"))
        except (TypeError, ValueError) as exc:
            raise TransportError(f"revision upload response missing version: {result}") from exc

    def restart_device(self, device_id: str) -> None:
        self.request("POST", f"/devices/{device_id}/restart")

    def restart_model(self, model_id: str) -> None:
        self.request("POST", f"/models/{model_id}/restart")

    def fetch_logs(self, device_id: str, since: Union[str, PollCursor]) -> LogBatch:
        """Fetch the next log batch.

        ``since`` is either an ISO-8601 timestamp (use :data:`SENTINEL_SINCE`
        to obtain an empty batch with a fresh cursor) or the cursor returned by
        the previous fetch.
        """
        if isinstance(since, PollCursor):
            result = self.request("GET", since.path)
        else:
            result = self.request("GET", f"/devices/{device_id}/logs", {"since": since})
        poll_url = result.get("poll_url")
        cursor = PollCursor.from_poll_url(poll_url) if poll_url else None
        logs = result.get("logs") or []
        return LogBatch(cursor=cursor, logs=[entry for entry in logs if isinstance(entry, dict)])
