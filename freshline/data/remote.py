"""Remote store seam and its HTTP implementation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote

import aiohttp

logger = logging.getLogger(__name__)


class RemoteStoreError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RemoteStore(Protocol):
    async def fetch(self, resource: str, filters: Mapping[str, Any]) -> Any: ...

    async def mutate(self, resource: str, patch: Mapping[str, Any]) -> Any: ...


def _query_params(filters: Mapping[str, Any]) -> List[Tuple[str, str]]:
    params: List[Tuple[str, str]] = []
    for name in sorted(filters):
        value = filters[name]
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
        for item in values:
            if isinstance(item, bool):
                item = "true" if item else "false"
            params.append((str(name), str(item)))
    return params


class HttpRemoteStore:
    """JSON-over-HTTP store.

    ``fetch`` is ``GET {base}/{resource}?filters``. ``mutate`` is
    ``PATCH {base}/{resource}/{id}`` when the patch carries an ``id``, otherwise
    ``POST {base}/{resource}``. Non-2xx responses raise ``RemoteStoreError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = (base_url or "").strip().rstrip("/")
        self._timeout = timeout
        self._headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self._headers)
            self._owns_session = True
        return self._session

    def _url(self, *parts: str) -> str:
        return "/".join([self._base_url, *(quote(str(p), safe="") for p in parts)])

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        if not self._base_url:
            raise RemoteStoreError("API base URL is not configured")
        session = self._get_session()
        try:
            async with session.request(method, url, **kwargs) as resp:
                status = resp.status
                if status == 204:
                    return None
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = {"raw": await resp.text()}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RemoteStoreError(str(exc) or exc.__class__.__name__) from exc

        if status >= 400:
            detail = data.get("detail") if isinstance(data, dict) else None
            raise RemoteStoreError(str(detail or f"{method} {url} failed"), status=status)
        return data

    async def fetch(self, resource: str, filters: Mapping[str, Any]) -> Any:
        url = self._url(resource)
        logger.debug("remote.fetch", extra={"resource": resource})
        return await self._request("GET", url, params=_query_params(filters))

    async def mutate(self, resource: str, patch: Mapping[str, Any]) -> Any:
        payload = dict(patch)
        record_id = payload.get("id")
        logger.debug("remote.mutate", extra={"resource": resource})
        if record_id is not None:
            return await self._request("PATCH", self._url(resource, record_id), json=payload)
        return await self._request("POST", self._url(resource), json=payload)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None


__all__ = ["HttpRemoteStore", "RemoteStore", "RemoteStoreError"]
