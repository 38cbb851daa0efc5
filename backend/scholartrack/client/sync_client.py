"""
HTTP client for the sync server.
"""

import asyncio
import logging
from typing import Dict, Any, Optional

import aiohttp

from scholartrack import __version__

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Sync request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ServerUnavailableError(SyncError):
    """The sync server could not be reached at all."""
    pass


class SyncClient:
    """
    Talks to the sync endpoints under ``base_url`` (for example
    ``http://localhost:5000/api``).

    Use as an async context manager to share one HTTP session across calls;
    otherwise each call opens a short-lived session. A session may also be
    injected.
    """

    def __init__(self, base_url: str, timeout: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_session = session
        self._owns_session = False

    async def __aenter__(self):
        if self._http_session is None:
            self._http_session = self._new_session()
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._http_session is not None and self._owns_session:
            await self._http_session.close()
            self._http_session = None
            self._owns_session = False

    async def health_check(self) -> bool:
        """Lightweight reachability check. Never raises."""
        try:
            body = await self._request("GET", "/health")
        except SyncError as e:
            logger.info(f"Sync server health check failed: {e}")
            return False
        return body.get("status") == "ok"

    async def up_sync(self, dataset: Dict[str, Any]) -> Dict[str, Any]:
        """Push the complete local dataset. Returns the server's response with ``synced`` counts."""
        response = await self._request("POST", "/sync/up", json=dataset)
        logger.info(f"Up-sync completed: {response.get('synced')}")
        return response

    async def down_sync(self) -> Dict[str, Any]:
        """
        Pull the server's complete dataset.

        Raises ``ServerUnavailableError`` when the health check fails, and
        ``SyncError`` when the server is up but the pull itself fails.
        """
        if not await self.health_check():
            raise ServerUnavailableError(f"Sync server at {self.base_url} is not available")
        response = await self._request("GET", "/sync/down")
        data = response.get("data")
        if data is None:
            raise SyncError("Down-sync response did not include a data payload")
        return data

    async def full_sync(self, dataset: Dict[str, Any]) -> Dict[str, Any]:
        """Push the dataset and receive the server's resulting state in one round trip."""
        response = await self._request("POST", "/sync/full", json=dataset)
        if response.get("data") is None:
            raise SyncError("Full-sync response did not include a data payload")
        logger.info(f"Full sync completed: {response.get('synced')}")
        return response

    def _new_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={
                'User-Agent': f'ScholarTrack/{__version__}',
                'Accept': 'application/json',
            }
        )

    async def _request(self, method: str, endpoint: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self._http_session is not None:
            return await self._send(self._http_session, method, endpoint, json)
        async with self._new_session() as session:
            return await self._send(session, method, endpoint, json)

    async def _send(self, session: aiohttp.ClientSession, method: str, endpoint: str,
                    json: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        try:
            async with session.request(method, url, json=json) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise SyncError(
                        f"Sync request {method} {endpoint} failed: {response.status} - {error_text}",
                        status_code=response.status,
                    )
                return await response.json()

        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise ServerUnavailableError(f"Sync server at {self.base_url} unreachable: {e}") from e
        except aiohttp.ClientError as e:
            raise SyncError(f"HTTP client error: {e}") from e
