import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from .errors import SourceHTTPError, SourceShapeError


class RESTClient:
    """Minimal JSON-over-HTTP client sharing one aiohttp session per base URL."""

    def __init__(self, base_url: str, timeout_s: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        async with session.request(
            method.upper(),
            url,
            params=params,
            json=json_body,
        ) as resp:
            try:
                text = await resp.text()
            except UnicodeDecodeError as exc:
                raise SourceShapeError(f"Undecodable response body from {url}: {exc.reason}") from exc
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "application/json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                msg = None
                if isinstance(payload, dict):
                    msg = payload.get("msg") or payload.get("description")
                raise SourceHTTPError(resp.status, url, text, msg)

            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("POST", path, json_body=json_body)
