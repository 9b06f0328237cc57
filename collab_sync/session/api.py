"""
HTTP client for the collaboration session endpoint.

Wraps an aiohttp client session and maps transport outcomes onto the
exception types the polling backend classifies:
- non-2xx status: SessionApiError (with decoded body)
- no response: SessionConnectionError
- timeout: SessionConnectionError with ``aborted=True``
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from ..config import SessionApiConfig
from ..exceptions import InvalidResponseError, SessionApiError, SessionConnectionError
from ..protocol import OpenResponse
from .connection import Connection

logger = logging.getLogger(__name__)


class SessionApi:
    """Entry point for opening collaboration sessions.

    Example:
        >>> config = SessionApiConfig(base_url="https://cloud.example.com/apps/text")
        >>> async with SessionApi(config) as api:
        ...     connection = await api.open(file_id=42)
        ...     response = await connection.sync(version=0)
        ...     await connection.close()
    """

    def __init__(
        self,
        config: SessionApiConfig,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the session API client.

        Args:
            config: Endpoint configuration
            http_session: Optional externally managed aiohttp session. When
                omitted, one is created lazily and closed by ``close()``.
        """
        self.config = config
        self._http = http_session
        self._owns_http = http_session is None

    async def __aenter__(self) -> SessionApi:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        """Close the underlying HTTP session if this client created it."""
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    def endpoint_url(self, path: str, public: bool = False) -> str:
        """Build the URL of an endpoint; public sessions use the ``public/`` prefix."""
        prefix = "public/" if public else ""
        return f"{self.config.base_url}/{prefix}{path}"

    async def open(
        self,
        file_id: int | str | None = None,
        file_path: str | None = None,
        share_token: str | None = None,
        guest_name: str | None = None,
    ) -> Connection:
        """Negotiate a new collaboration session for a document.

        Args:
            file_id: Id of the document to open
            file_path: Optional path of the document, used by the server to resolve it
            share_token: Share token for link-shared documents (defaults to config)
            guest_name: Display name for guests on public documents

        Returns:
            Connection bound to the new session

        Raises:
            SessionApiError: 404 for an unknown file id, 412 for a missing identifier
            SessionConnectionError: If the endpoint could not be reached
        """
        share_token = share_token or self.config.share_token
        public = share_token is not None

        payload: dict[str, Any] = {"fileId": file_id, "filePath": file_path}
        if public:
            payload["token"] = share_token
            if guest_name:
                payload["guestName"] = guest_name

        data = await self.post(self.endpoint_url("session/create", public), payload)
        if not isinstance(data, dict):
            raise InvalidResponseError(self.endpoint_url("session/create", public), "expected an object")

        response = OpenResponse.from_dict(data)
        if public:
            response.is_public = True

        logger.info(f"Opened session {response.session.id} for document {response.document.id}")
        return Connection(self, response, file_path=file_path, share_token=share_token)

    async def post(
        self,
        url: str,
        payload: dict[str, Any] | None = None,
        form: aiohttp.FormData | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """POST to the session endpoint and decode the JSON answer.

        Returns:
            Decoded JSON body, or an empty dict for an empty body
        """
        http = self._get_http()
        query = {k: str(v) for k, v in (params or {}).items() if v is not None}

        try:
            async with http.post(url, json=payload if form is None else None, data=form, params=query) as resp:
                raw = await resp.read()
                status = resp.status
        except TimeoutError as e:
            raise SessionConnectionError(url, e, aborted=True) from e
        except aiohttp.ClientError as e:
            raise SessionConnectionError(url, e) from e

        body = _decode_body(raw)
        if status >= 400:
            raise SessionApiError(url, status, body if isinstance(body, dict) else {})
        if body is _UNDECODABLE:
            raise InvalidResponseError(url, "body is not valid JSON")
        return body


_UNDECODABLE = object()


def _decode_body(raw: bytes) -> Any:
    if not raw.strip():
        return {}
    try:
        return json.loads(raw.decode("utf-8"))
    except ValueError:
        # Includes UnicodeDecodeError
        return _UNDECODABLE
