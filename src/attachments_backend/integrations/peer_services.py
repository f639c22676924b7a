"""HTTP clients for the peer services an attachment write depends on.

- read service: fetches the current attachment document by id
- authorization service: answers "can the caller do <what> in <context>?"

Both raise PeerServiceError on transport failures, unexpected statuses and
unparseable replies. A "no" from either service is a normal return value.
"""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx


class PeerServiceError(RuntimeError):
    pass


class AttachmentReader(Protocol):
    async def get_attachment(self, attachment_id: str) -> dict[str, Any] | None: ...


class ActionAuthorizer(Protocol):
    async def user_can(
        self, *, consumer_token: str | None, what: str, context: dict[str, Any]
    ) -> bool: ...


def _extract_document(data: object) -> dict[str, Any] | None:
    # {data: {...}} | {data: [{...}]} | {data: null} | {...}
    if isinstance(data, dict) and "errors" in data and "data" not in data:
        raise PeerServiceError(f"read service reported errors: {data['errors']!r}")
    payload = data.get("data", data) if isinstance(data, dict) else data
    if isinstance(payload, list):
        docs = [x for x in payload if isinstance(x, dict)]
        payload = docs[0] if docs else None
    if isinstance(payload, dict) and payload:
        return payload
    if payload is None or payload == {}:
        return None
    raise PeerServiceError(f"cannot parse attachment reply: {data!r}")


class _HttpxPeer:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, headers=headers, json=json)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise PeerServiceError(f"{method} {url} failed: {e!r}") from e


class HttpxAttachmentReader(_HttpxPeer):
    def __init__(
        self,
        *,
        base_url: str,
        endpoint: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds, client=client)
        self._endpoint = endpoint

    async def get_attachment(self, attachment_id: str) -> dict[str, Any] | None:
        # The id is always a single path segment.
        segment = quote(attachment_id, safe="")
        url = f"{self._base_url}{self._endpoint.replace('{attachment_id}', segment)}"
        resp = await self._request("GET", url)
        if resp.status_code == 404:
            return None
        if not 200 <= resp.status_code < 300:
            raise PeerServiceError(f"read attachment failed. {resp.status_code} {resp.text}")
        try:
            data = resp.json()
        except ValueError as e:
            raise PeerServiceError(f"read attachment returned non-JSON: {resp.text}") from e
        return _extract_document(data)


class HttpxActionAuthorizer(_HttpxPeer):
    def __init__(
        self,
        *,
        base_url: str,
        endpoint: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds, client=client)
        self._endpoint = endpoint

    async def user_can(
        self, *, consumer_token: str | None, what: str, context: dict[str, Any]
    ) -> bool:
        if not self._base_url:
            raise PeerServiceError("authorization service base url is empty")
        url = f"{self._base_url}{self._endpoint}"
        # The decision is about the caller, so forward the caller's own token.
        headers = {"Authorization": f"Bearer {consumer_token}"} if consumer_token else None
        resp = await self._request("POST", url, headers=headers, json={"what": what, "context": context})
        if not 200 <= resp.status_code < 300:
            raise PeerServiceError(f"authorize failed. {resp.status_code} {resp.text}")
        try:
            data = resp.json()
        except ValueError as e:
            raise PeerServiceError(f"authorize returned non-JSON: {resp.text}") from e
        if not isinstance(data, dict):
            raise PeerServiceError(f"cannot parse authorize reply: {data!r}")
        return data.get("can") is True
