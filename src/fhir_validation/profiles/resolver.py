# ============================================================================
# src/fhir_validation/profiles/resolver.py
# ============================================================================
"""
Profile Resolver

Resolves a canonical profile URL to a StructureDefinition by trying the
enabled profile resolution servers in ascending priority.

Fetch strategies by server type:
- registry style (simplifier, fhir-registry, generic):
  GET {base}/StructureDefinition?url={profile}
- implementation guide style (fhir-ci): guess the published file name
  from several URL patterns, then fall back to "{profile}.json"

Server failures are logged and swallowed; None means "not resolved".
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import aiohttp

from ..config.server_config import server_settings
from ..settings.models import ServerConfig
from ..utils.exceptions import ProfileResolutionError

IG_SERVER_TYPES = {"fhir-ci", "ig"}


def is_structure_definition(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("resourceType") == "StructureDefinition"


def ig_candidate_urls(profile_url: str, server_url: str) -> List[str]:
    """
    Candidate download URLs for an IG-hosted profile.

    e.g. http://hl7.org/fhir/us/core/StructureDefinition/us-core-patient
    -> .../us/core/StructureDefinition-us-core-patient.json on the server
    """
    candidates = []
    if "/StructureDefinition/" in profile_url:
        ig_root, name = profile_url.rsplit("/StructureDefinition/", 1)
        ig_path = urlparse(ig_root).path.strip("/")
        if ig_path.startswith("fhir/"):
            ig_path = ig_path[len("fhir/"):]

        candidates.append(f"{ig_root}/StructureDefinition-{name}.json")
        if ig_path:
            candidates.append(f"{server_url}/{ig_path}/StructureDefinition-{name}.json")
            candidates.append(f"{server_url}/ig/{ig_path}/StructureDefinition-{name}.json")
    candidates.append(f"{profile_url}.json")

    # Keep order, drop duplicates
    return list(dict.fromkeys(candidates))


class ProfileResolver:

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session
        self._owns_session = session is None
        self.logger = logging.getLogger(__name__)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/fhir+json"})
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def resolve(
        self,
        profile_url: str,
        servers: Sequence[ServerConfig],
        timeout_seconds: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        First StructureDefinition found, or None.

        timeout_seconds caps every server attempt; each server's own
        timeout_ms applies when it is shorter.
        """
        limit = timeout_seconds or server_settings.PROFILE_TIMEOUT_SECONDS
        ordered = sorted((s for s in servers if s.enabled), key=lambda s: s.priority)
        if not ordered:
            self.logger.debug(f"No profile resolution servers configured for {profile_url}")
            return None

        for server in ordered:
            try:
                definition = await self._resolve_on(server, profile_url, limit)
                if definition is not None:
                    self.logger.info(f"Resolved {profile_url} from {server.id}")
                    return definition
            except ProfileResolutionError as e:
                self.logger.warning(f"Profile server {server.id} failed for {profile_url}: {e}")

        self.logger.warning(f"Could not resolve profile {profile_url} from {len(ordered)} server(s)")
        return None

    async def _resolve_on(
        self,
        server: ServerConfig,
        profile_url: str,
        limit: float,
    ) -> Optional[Dict[str, Any]]:
        if server.type in IG_SERVER_TYPES:
            for candidate in ig_candidate_urls(profile_url, server.url):
                try:
                    payload = await self._fetch(candidate, server, limit)
                except ProfileResolutionError as e:
                    self.logger.debug(f"Candidate {candidate} failed: {e}")
                    continue
                if is_structure_definition(payload):
                    return payload
            return None

        payload = await self._fetch(
            f"{server.url}/StructureDefinition", server, limit, params={"url": profile_url}
        )
        if is_structure_definition(payload):
            return payload
        if isinstance(payload, dict) and payload.get("resourceType") == "Bundle":
            for entry in payload.get("entry", []) or []:
                resource = entry.get("resource") if isinstance(entry, dict) else None
                if is_structure_definition(resource):
                    return resource
        return None

    async def _fetch(
        self,
        url: str,
        server: ServerConfig,
        limit: float,
        params: Optional[Dict[str, str]] = None,
    ) -> Optional[Any]:
        """GET JSON; 404 means "not here" and yields None."""
        session = await self._get_session()
        timeout_seconds = min(server.timeout_ms / 1000, limit) if server.timeout_ms else limit

        try:
            async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=timeout_seconds)) as response:
                if response.status == 404:
                    return None
                if response.status >= 400:
                    raise ProfileResolutionError(f"GET {url} returned {response.status}", url=url)
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ProfileResolutionError(f"GET {url} failed: {e}", url=url) from e
