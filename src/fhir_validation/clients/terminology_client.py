# ============================================================================
# src/fhir_validation/clients/terminology_client.py
# ============================================================================
"""
aiohttp Terminology Client

Validates codes with CodeSystem/$validate-code against a priority-ordered
list of terminology servers. Each server has a small circuit breaker:
after N consecutive failures it is skipped until the cool-down expires.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import aiohttp

from ..config.server_config import server_settings
from ..settings.models import ServerConfig
from ..utils.exceptions import TerminologyServerError
from .base import TerminologyClient


@dataclass
class CircuitState:
    failures: int = 0
    opened_at: Optional[float] = None

    def is_open(self, reset_seconds: float) -> bool:
        if self.opened_at is None:
            return False
        if time.monotonic() - self.opened_at >= reset_seconds:
            # Half-open: allow one more attempt
            self.opened_at = None
            self.failures = 0
            return False
        return True

    def record_success(self) -> None:
        self.failures = 0
        self.opened_at = None

    def record_failure(self, threshold: int) -> None:
        self.failures += 1
        if self.failures >= threshold:
            self.opened_at = time.monotonic()


class AiohttpTerminologyClient(TerminologyClient):

    def __init__(
        self,
        servers: Sequence[ServerConfig],
        failure_threshold: Optional[int] = None,
        reset_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.failure_threshold = failure_threshold or server_settings.CIRCUIT_FAILURE_THRESHOLD
        self.reset_seconds = reset_seconds if reset_seconds is not None else server_settings.CIRCUIT_RESET_SECONDS
        self.timeout_seconds = timeout_seconds or server_settings.TERMINOLOGY_TIMEOUT_SECONDS
        self.servers: List[ServerConfig] = []
        self.circuits: Dict[str, CircuitState] = {}
        self.logger = logging.getLogger(__name__)
        self.configure(servers)

        self._session: Optional[aiohttp.ClientSession] = None

    def configure(self, servers: Sequence[ServerConfig], timeout_seconds: Optional[float] = None) -> None:
        """Replace the server list; circuits of servers that stay are kept."""
        self.servers = sorted((s for s in servers if s.enabled), key=lambda s: s.priority)
        self.circuits = {s.id: self.circuits.get(s.id) or CircuitState() for s in self.servers}
        if timeout_seconds:
            self.timeout_seconds = timeout_seconds
        self.logger.info(
            f"Terminology client using {len(self.servers)} server(s), timeout {self.timeout_seconds:.1f}s"
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/fhir+json"})
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def validate_code(self, system: str, code: str) -> bool:
        errors = []
        # configure() may swap both while a lookup is in flight
        servers, circuits = self.servers, self.circuits

        for server in servers:
            circuit = circuits[server.id]
            if circuit.is_open(self.reset_seconds):
                errors.append(f"{server.id}: circuit open")
                continue

            try:
                result = await self._validate_on(server, system, code)
                circuit.record_success()
                return result
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                circuit.record_failure(self.failure_threshold)
                self.logger.warning(f"Terminology server {server.id} failed for {system}|{code}: {e}")
                errors.append(f"{server.id}: {e}")

        raise TerminologyServerError(
            f"No terminology server could validate {system}|{code}: {'; '.join(errors) or 'no servers configured'}"
        )

    async def _validate_on(self, server: ServerConfig, system: str, code: str) -> bool:
        session = await self._get_session()
        url = f"{server.url}/CodeSystem/$validate-code"
        timeout = aiohttp.ClientTimeout(total=min(server.timeout_ms / 1000, self.timeout_seconds))

        async with session.get(url, params={"url": system, "code": code}, timeout=timeout) as response:
            if response.status >= 400:
                raise ValueError(f"HTTP {response.status}")
            parameters = await response.json(content_type=None)

        if not isinstance(parameters, dict):
            raise ValueError("response is not a Parameters resource")
        entries = parameters.get("parameter")
        for parameter in entries if isinstance(entries, list) else []:
            if isinstance(parameter, dict) and parameter.get("name") == "result":
                return bool(parameter.get("valueBoolean"))
        raise ValueError("response has no result parameter")
