"""Thin aiohttp wrapper over the admin backend's messaging and notification endpoints.

Returns decoded JSON (dicts/lists) and leaves parsing into domain types to the callers.
Non-2xx answers raise ApiError; transport failures surface as aiohttp.ClientError
or asyncio.TimeoutError.
"""

import logging
from typing import BinaryIO

import aiohttp

from messaging.errors import ApiError

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30  # seconds per request
CHUNK_SIZE = 64 * 1024


def _unwrap(body, key: str = "data"):
    """The backend wraps payloads as {success, data}; tolerate bare payloads too."""
    if isinstance(body, dict) and key in body:
        return body[key]
    return body


class Api:
    def __init__(
        self, base_url: str, token: str,
        timeout: float = DEFAULT_TIMEOUT, session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token}"}

    async def _raise_for(self, resp: aiohttp.ClientResponse, method: str, path: str):
        try:
            body = await resp.json(content_type=None)
            message = body.get("message", "") if isinstance(body, dict) else ""
        except (ValueError, aiohttp.ContentTypeError):
            message = await resp.text()
        log.error("%s %s failed: %s %s", method, path, resp.status, message)
        raise ApiError(resp.status, message or resp.reason or "", path)

    async def _request(self, method: str, path: str, **kwargs):
        async with self._client().request(
            method, self.base_url + path, headers=self._headers(), **kwargs,
        ) as resp:
            if not 200 <= resp.status < 300:
                await self._raise_for(resp, method, path)
            if resp.status == 204:
                return {}
            return await resp.json(content_type=None) or {}

    async def list_users(self) -> list[dict]:
        return _unwrap(await self._request("GET", "/messages/users")) or []

    async def unread_count(self) -> int:
        body = await self._request("GET", "/messages/unread-count")
        return body.get("count") or 0

    async def unread_by_user(self) -> list[dict]:
        return _unwrap(await self._request("GET", "/messages/unread-by-user")) or []

    async def conversation(self, user_id: str) -> list[dict]:
        """Full history with one user. The server marks the thread read as a side effect."""
        return _unwrap(await self._request("GET", f"/messages/conversation/{user_id}")) or []

    async def send_message(self, form: aiohttp.FormData) -> dict:
        return _unwrap(await self._request("POST", "/messages", data=form))

    async def download_attachment(self, message_id: str, attachment_id: str, fp: BinaryIO) -> int:
        """Stream one attachment into fp. Returns the number of bytes written."""
        path = f"/messages/{message_id}/attachment/{attachment_id}"
        written = 0
        async with self._client().get(self.base_url + path, headers=self._headers()) as resp:
            if resp.status != 200:
                await self._raise_for(resp, "GET", path)
            async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                fp.write(chunk)
                written += len(chunk)
        return written

    async def notifications(self) -> list[dict]:
        return _unwrap(await self._request("GET", "/notifications")) or []

    async def notifications_unread_count(self) -> int:
        body = await self._request("GET", "/notifications/unread-count")
        return body.get("count") or 0

    async def mark_notification_read(self, notification_id: str):
        await self._request("PUT", f"/notifications/{notification_id}/read")

    async def mark_all_notifications_read(self):
        await self._request("PUT", "/notifications/read-all")

    async def delete_notification(self, notification_id: str):
        await self._request("DELETE", f"/notifications/{notification_id}")
