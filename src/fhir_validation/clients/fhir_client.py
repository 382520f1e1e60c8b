# ============================================================================
# src/fhir_validation/clients/fhir_client.py
# ============================================================================
"""
aiohttp FHIR Client

REST adapter for a FHIR server:
- GET  {base}/metadata                       connection test
- GET  {base}/{type}?_count=N&_offset=M      search
- GET  {base}/{type}?_summary=count          resource count
- GET  {base}/{type}/{id}                    read (404 -> None)
- POST {base}/{type}/$validate[?profile=]    validate operation
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..config.server_config import server_settings
from ..utils.exceptions import FHIRServerError
from .base import ConnectionStatus, FHIRClient, SearchResult

FHIR_JSON = "application/fhir+json"


class AiohttpFHIRClient(FHIRClient):

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or server_settings.FHIR_SERVER_URL).rstrip("/")
        self.timeout = timeout or server_settings.FHIR_TIMEOUT_SECONDS
        self.max_retries = max(1, server_settings.MAX_RETRIES)
        self.logger = logging.getLogger(__name__)

        # HTTP session (created lazily, tied to event loop)
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_loop: Optional[asyncio.AbstractEventLoop] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session for current event loop."""
        current_loop = asyncio.get_running_loop()

        needs_new_session = (
            self._session is None
            or self._session.closed
            or self._session_loop is not current_loop
        )

        if needs_new_session:
            if self._session is not None and not self._session.closed:
                await self._session.close()

            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": FHIR_JSON},
            )
            self._session_loop = current_loop

        return self._session

    def configure(self, timeout: Optional[float] = None) -> None:
        """Apply a new request timeout; takes effect on the next request."""
        if timeout:
            self.timeout = timeout
            self.logger.info(f"FHIR client timeout set to {timeout:.1f}s")

    async def close(self):
        """Close HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._session_loop = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        session = await self._get_session()
        # Only reads are retried
        attempts = self.max_retries if method == "GET" else 1

        for attempt in range(1, attempts + 1):
            try:
                async with session.request(
                    method, url, params=params, json=json_body,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status == 404 and allow_not_found:
                        return None
                    if response.status >= 400:
                        text = await response.text()
                        raise FHIRServerError(
                            f"{method} {url} returned {response.status}: {text[:200]}",
                            url=url,
                            status=response.status,
                        )
                    return await response.json(content_type=None)

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt == attempts:
                    raise FHIRServerError(f"{method} {url} failed: {e}", url=url) from e
                self.logger.debug(f"{method} {url} attempt {attempt} failed: {e}")

    async def test_connection(self) -> ConnectionStatus:
        try:
            metadata = await self._request("GET", "metadata")
            return ConnectionStatus(connected=True, version=(metadata or {}).get("fhirVersion"))
        except FHIRServerError as e:
            self.logger.warning(f"FHIR server {self.base_url} unreachable: {e}")
            return ConnectionStatus(connected=False, error=str(e))

    async def search_resources(self, resource_type, params=None, page_size=100):
        query = {"_count": page_size}
        query.update(params or {})

        bundle = await self._request("GET", resource_type, params=query) or {}
        entries = [
            entry["resource"]
            for entry in bundle.get("entry", []) or []
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
        ]
        return SearchResult(entries=entries, total=bundle.get("total"))

    async def get_resource(self, resource_type, resource_id):
        return await self._request("GET", f"{resource_type}/{resource_id}", allow_not_found=True)

    async def get_resource_count(self, resource_type):
        try:
            bundle = await self._request("GET", resource_type, params={"_summary": "count"}) or {}
            return int(bundle.get("total") or 0)
        except (FHIRServerError, TypeError, ValueError) as e:
            self.logger.warning(f"Count for {resource_type} failed: {e}")
            return 0

    async def validate_resource(self, resource, profile_url=None):
        resource_type = resource.get("resourceType", "Resource")
        params = {"profile": profile_url} if profile_url else None
        outcome = await self._request("POST", f"{resource_type}/$validate", params=params, json_body=resource)
        return outcome or {"resourceType": "OperationOutcome", "issue": []}
