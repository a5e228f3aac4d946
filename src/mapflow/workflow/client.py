"""Async REST client for the external workflow engine.

WHY
───
Mappings are deployed to a flow-based workflow engine as process groups,
processors and connections. The client owns authentication, token expiry
and version detection so callers only deal with domain calls.

ARCHITECTURE
────────────
::

    WorkflowEngineClient
      ├── authenticate()      POST /access/token (form) → bearer token
      ├── _request()          token refresh, one re-auth on 401
      ├── VersionCompatibility → endpoint + payload per engine version
      └── domain calls        diagnostics, process groups, processors, ...

Every failure surfaces as :class:`~mapflow.core.errors.WorkflowEngineError`
carrying the HTTP status code when there is one.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

import httpx

from mapflow.config.settings import MapflowSettings, get_settings
from mapflow.core.errors import WorkflowEngineError
from mapflow.core.logging import get_logger
from mapflow.workflow.compat import (
    VersionCompatibility,
    normalize_cluster_summary,
    normalize_flow_status,
    normalize_system_diagnostics,
)

logger = get_logger(__name__)

TOKEN_LIFETIME = 11 * 60 * 60


class WorkflowEngineClient:
    """
    Client for one workflow engine endpoint.

    Example:
        >>> async with WorkflowEngineClient("https://nifi:8443/nifi-api", "admin", "secret") as client:
        ...     health = await client.health_check()
    """

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        *,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
        compatibility: VersionCompatibility | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self.compat = compatibility or VersionCompatibility()
        self.version: str | None = None
        self._token: str | None = None
        self._token_expiry: float | None = None
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(
        cls,
        settings: MapflowSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> WorkflowEngineClient:
        settings = settings or get_settings()
        return cls(
            settings.workflow_engine_url,
            settings.workflow_engine_username,
            settings.workflow_engine_password,
            timeout=settings.workflow_engine_timeout,
            verify=settings.workflow_engine_verify_ssl,
            transport=transport,
        )

    async def __aenter__(self) -> WorkflowEngineClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._token = None
        self._token_expiry = None
        self.version = None
        await self._http.aclose()
        logger.info("workflow.disconnected", base_url=self.base_url)

    # ── Authentication ───────────────────────────────────────────────

    @property
    def token_valid(self) -> bool:
        return self._token is not None and self._token_expiry is not None and time.monotonic() < self._token_expiry

    async def authenticate(self, force: bool = False) -> str | None:
        """Fetch a bearer token. Anonymous engines (no username) skip this."""
        if self.username is None:
            return None
        if not force and self.token_valid:
            return self._token
        logger.info("workflow.authenticating", base_url=self.base_url)
        try:
            response = await self._http.post(
                "/access/token",
                data={"username": self.username, "password": self.password or ""},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._token = self._token_expiry = None
            raise WorkflowEngineError(
                f"Workflow engine authentication failed: {e.response.status_code}",
                status_code=e.response.status_code,
                retryable=False,
                cause=e,
            ) from e
        except httpx.HTTPError as e:
            self._token = self._token_expiry = None
            raise WorkflowEngineError(f"Workflow engine authentication failed: {e}", retryable=True, cause=e) from e
        self._token = response.text.strip()
        self._token_expiry = time.monotonic() + TOKEN_LIFETIME
        logger.info("workflow.authenticated")
        return self._token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    async def _request(self, method: str, path: str, action: str, **kwargs: Any) -> Any:
        if not self.token_valid:
            await self.authenticate(force=True)
        try:
            logger.debug("workflow.request", method=method, path=path)
            response = await self._http.request(method, path, headers=self._headers(), **kwargs)
            if response.status_code == 401 and self.username is not None:
                await self.authenticate(force=True)
                response = await self._http.request(method, path, headers=self._headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("workflow.request_failed", method=method, path=path, status=status)
            raise WorkflowEngineError(f"Failed to {action}: HTTP {status}", status_code=status, cause=e) from e
        except httpx.HTTPError as e:
            logger.error("workflow.request_failed", method=method, path=path, error=str(e))
            raise WorkflowEngineError(f"Failed to {action}: {e}", retryable=True, cause=e) from e
        if not response.content:
            return None
        return response.json()

    # ── System ───────────────────────────────────────────────────────

    async def get_system_diagnostics(self) -> dict[str, Any]:
        """Normalized diagnostics. Also detects the engine version on first call."""
        data = await self._request(
            "GET", self.compat.endpoint("system-diagnostics", self.version), "get system diagnostics"
        )
        normalized = normalize_system_diagnostics(data or {})
        if self.version is None and normalized["version"] != "Unknown":
            self.version = normalized["version"]
            logger.info("workflow.version_detected", version=self.version)
        return normalized

    async def get_cluster_summary(self) -> dict[str, Any]:
        data = await self._request("GET", self.compat.endpoint("cluster-summary", self.version), "get cluster summary")
        return normalize_cluster_summary(data or {})

    async def get_flow_status(self) -> dict[str, Any]:
        data = await self._request("GET", self.compat.endpoint("flow-status", self.version), "get flow status")
        return normalize_flow_status(data or {})

    async def get_processor_types(self) -> list[dict[str, Any]]:
        data = await self._request(
            "GET", self.compat.endpoint("processor-types", self.version), "get processor types"
        )
        return (data or {}).get("processorTypes", [])

    # ── Process groups ───────────────────────────────────────────────

    async def get_root_process_group(self) -> dict[str, Any]:
        return await self._request(
            "GET", self.compat.endpoint("root-process-group", self.version), "get root process group"
        )

    async def create_process_group(
        self,
        parent_id: str,
        name: str,
        position: dict[str, float] | None = None,
        **options: Any,
    ) -> dict[str, Any]:
        payload = self.compat.payload(
            "process-groups", self.version, {"name": name, "position": position, **options}
        )
        result = await self._request(
            "POST",
            self.compat.endpoint("process-groups", self.version, id=parent_id),
            "create process group",
            json=payload,
        )
        logger.info("workflow.process_group_created", name=name, parent_id=parent_id)
        return result

    # ── Processors ───────────────────────────────────────────────────

    async def get_processor(self, processor_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", self.compat.endpoint("processor", self.version, id=processor_id), "get processor"
        )

    async def create_processor(
        self,
        process_group_id: str,
        type: str,
        name: str,
        position: dict[str, float] | None = None,
        config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = self.compat.payload(
            "processors",
            self.version,
            {"type": type, "name": name, "position": position, "config": config or {}},
        )
        result = await self._request(
            "POST",
            self.compat.endpoint("processors", self.version, id=process_group_id),
            "create processor",
            json=payload,
        )
        logger.info("workflow.processor_created", name=name, type=type)
        return result

    async def update_processor(self, processor_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Merge ``updates`` into the current component, using its revision."""
        current = await self.get_processor(processor_id)
        payload = {
            "revision": current.get("revision", {"version": 0}),
            "component": {**(current.get("component") or {}), **updates, "id": processor_id},
        }
        result = await self._request(
            "PUT",
            self.compat.endpoint("processor", self.version, id=processor_id),
            "update processor",
            json=payload,
        )
        logger.info("workflow.processor_updated", processor_id=processor_id)
        return result

    async def _set_run_status(self, processor_id: str, state: str) -> dict[str, Any]:
        current = await self.get_processor(processor_id)
        payload = {
            "revision": current.get("revision", {"version": 0}),
            "component": {"id": processor_id, "state": state},
        }
        result = await self._request(
            "PUT",
            self.compat.endpoint("processor-run-status", self.version, id=processor_id),
            f"set processor state {state}",
            json=payload,
        )
        logger.info("workflow.processor_state", processor_id=processor_id, state=state)
        return result

    async def start_processor(self, processor_id: str) -> dict[str, Any]:
        return await self._set_run_status(processor_id, "RUNNING")

    async def stop_processor(self, processor_id: str) -> dict[str, Any]:
        return await self._set_run_status(processor_id, "STOPPED")

    # ── Connections ──────────────────────────────────────────────────

    async def create_connection(
        self,
        source_id: str,
        destination_id: str,
        relationships: list[str],
        process_group_id: str,
        name: str = "",
    ) -> dict[str, Any]:
        payload = self.compat.payload(
            "connections",
            self.version,
            {
                "name": name,
                "sourceId": source_id,
                "destinationId": destination_id,
                "relationships": relationships,
                "processGroupId": process_group_id,
            },
        )
        result = await self._request(
            "POST",
            self.compat.endpoint("connections", self.version, id=process_group_id),
            "create connection",
            json=payload,
        )
        logger.info("workflow.connection_created", source=source_id, destination=destination_id)
        return result

    # ── Health / version ─────────────────────────────────────────────

    async def is_connected(self) -> bool:
        try:
            await self.get_system_diagnostics()
        except WorkflowEngineError as e:
            logger.warning("workflow.connection_check_failed", error=e.message)
            return False
        return True

    async def health_check(self) -> dict[str, Any]:
        started = time.perf_counter()
        try:
            diagnostics = await self.get_system_diagnostics()
        except WorkflowEngineError as e:
            return {
                "status": "unhealthy",
                "error": e.message,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        return {
            "status": "healthy",
            "responseTime": time.perf_counter() - started,
            "timestamp": datetime.now(UTC).isoformat(),
            "version": diagnostics["version"],
            "uptime": diagnostics["uptime"],
        }

    async def get_version(self) -> str | None:
        if self.version is None:
            await self.get_system_diagnostics()
        return self.version

    async def is_feature_supported(self, feature: str) -> bool:
        return self.compat.is_feature_supported(feature, await self.get_version())

    async def get_available_features(self) -> list[str]:
        return self.compat.available_features(await self.get_version())

    async def get_compatibility_report(self) -> dict[str, Any]:
        return self.compat.compatibility_report(await self.get_version())


__all__ = ["TOKEN_LIFETIME", "WorkflowEngineClient"]
