"""
A negotiated collaboration session.

The connection owns the remote identity of the document (file id or
share token plus path) and the last known remote metadata. It is owned
by exactly one sync service and closed exactly once.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles
import aiohttp

from ..exceptions import ConnectionClosedError, InvalidResponseError
from ..protocol import (
    DocumentInfo,
    DocumentSnapshot,
    OpenResponse,
    SessionInfo,
    SyncResponse,
    encode_document_state,
)

if TYPE_CHECKING:
    from .api import SessionApi

logger = logging.getLogger(__name__)


class Connection:
    """Client side of one collaboration session.

    Every request carries the document id and the session credentials;
    public sessions additionally send the share token.
    """

    def __init__(
        self,
        api: SessionApi,
        response: OpenResponse,
        file_path: str | None = None,
        share_token: str | None = None,
    ) -> None:
        self._api = api
        self.document: DocumentInfo = response.document
        self.session: SessionInfo = response.session
        self.state: DocumentSnapshot = response.state
        self.is_public = response.is_public or share_token is not None
        self.read_only = response.read_only
        self.file_path = file_path
        self.share_token = share_token
        self._closed = False

    @classmethod
    def from_snapshot(
        cls,
        api: SessionApi,
        data: dict[str, Any],
        file_path: str | None = None,
        share_token: str | None = None,
    ) -> Connection:
        """Build a connection from a previously obtained open response."""
        return cls(api, OpenResponse.from_dict(data), file_path=file_path, share_token=share_token)

    @property
    def last_saved_version(self) -> int:
        return self.document.last_saved_version

    @property
    def closed(self) -> bool:
        return self._closed

    def _auth(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "documentId": self.document.id,
            "sessionId": self.session.id,
            "sessionToken": self.session.token,
        }
        if self.is_public:
            params["token"] = self.share_token
        return params

    def _url(self, path: str) -> str:
        return self._api.endpoint_url(path, self.is_public)

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise ConnectionClosedError(operation)

    async def push(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Send locally produced steps.

        Args:
            payload: Sendable produced by the editor, typically
                ``{"version": ..., "steps": [...], "awareness": ...}``

        Raises:
            SessionApiError: 403 when the session is invalid, read-only or
                behind the server; 409 on a collision
        """
        self._ensure_open("push")
        body = {**payload, **self._auth()}
        result = await self._api.post(self._url("session/push"), body)
        return result if isinstance(result, dict) else {}

    async def sync(
        self,
        version: int,
        autosave_content: str | None = None,
        document_state: str | bytes | None = None,
        force: bool = False,
        manual_save: bool = False,
    ) -> SyncResponse:
        """Fetch steps newer than ``version`` and optionally request a save.

        The held document metadata is replaced by the one returned.
        """
        self._ensure_open("sync")
        body: dict[str, Any] = {
            **self._auth(),
            "version": version,
            "force": force,
            "manualSave": manual_save,
        }
        if autosave_content is not None:
            body["autosaveContent"] = autosave_content
        if document_state is not None:
            body["documentState"] = encode_document_state(document_state)

        url = self._url("session/sync")
        data = await self._api.post(url, body)
        if not isinstance(data, dict) or "document" not in data:
            raise InvalidResponseError(url, "sync response lacks document metadata")

        response = SyncResponse.from_dict(data)
        self.document = response.document
        return response

    async def update(self, guest_name: str) -> SessionInfo:
        """Change the display name of a guest session."""
        self._ensure_open("update session")
        data = await self._api.post(self._url("session/session"), {**self._auth(), "guestName": guest_name})
        if isinstance(data, dict) and data:
            self.session = SessionInfo.from_dict({**self.session.to_dict(), **data, "token": self.session.token})
        return self.session

    async def close(self) -> None:
        """Close the session on the server. Only the first call has an effect."""
        if self._closed:
            return
        self._closed = True
        await self._api.post(self._url("session/close"), self._auth())
        logger.debug(f"Closed session {self.session.id}")

    async def upload_attachment(self, path: Path) -> dict[str, Any]:
        """Upload a local file as an attachment of the document."""
        self._ensure_open("upload attachment")
        async with aiofiles.open(path, "rb") as f:
            content = await f.read()

        form = aiohttp.FormData()
        form.add_field("file", content, filename=Path(path).name)
        result = await self._api.post(self._url("attachment/upload"), form=form, params=self._auth())
        return result if isinstance(result, dict) else {}

    async def insert_attachment_file(self, file_path: str) -> dict[str, Any]:
        """Attach a file that already exists on the server by its path."""
        self._ensure_open("insert attachment")
        result = await self._api.post(self._url("attachment/filepath"), {**self._auth(), "filePath": file_path})
        return result if isinstance(result, dict) else {}
