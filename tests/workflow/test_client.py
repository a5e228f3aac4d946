"""Tests for WorkflowEngineClient over a mocked transport."""

import json

import httpx
import pytest

from mapflow.config.settings import MapflowSettings
from mapflow.core.errors import WorkflowEngineError
from mapflow.workflow.client import WorkflowEngineClient

DIAGNOSTICS = {
    "systemDiagnostics": {
        "aggregateSnapshot": {"uptime": "2 hours", "versionInfo": {"niFiVersion": "1.16.3"}}
    }
}


class FakeEngine:
    """Minimal engine: token endpoint plus a few resources."""

    def __init__(self, expire_first=False, fail_auth=False):
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0
        self.expire_first = expire_first
        self.fail_auth = fail_auth

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/nifi-api")
        if path == "/access/token":
            if self.fail_auth:
                return httpx.Response(403)
            self.tokens_issued += 1
            return httpx.Response(200, text=f"token-{self.tokens_issued}\n")
        if self.expire_first and request.headers.get("Authorization") == "Bearer token-1":
            return httpx.Response(401)
        if path == "/system-diagnostics":
            return httpx.Response(200, json=DIAGNOSTICS)
        if path == "/processors/p1" and request.method == "GET":
            return httpx.Response(
                200, json={"revision": {"version": 4}, "component": {"id": "p1", "name": "old"}}
            )
        if path.startswith("/processors/p1"):
            return httpx.Response(200, json=json.loads(request.content))
        if path == "/process-groups/root/process-groups":
            return httpx.Response(201, json=json.loads(request.content))
        if path == "/flow/status":
            return httpx.Response(500)
        return httpx.Response(404)


def make_client(engine, username="admin"):
    return WorkflowEngineClient(
        "https://engine.local/nifi-api/",
        username,
        "secret",
        transport=httpx.MockTransport(engine),
    )


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_token_fetched_once(self):
        """The bearer token is requested once and reused."""
        engine = FakeEngine()
        async with make_client(engine) as client:
            await client.get_system_diagnostics()
            await client.get_system_diagnostics()
            assert client.token_valid
        assert engine.tokens_issued == 1
        auth = engine.requests[0]
        assert auth.method == "POST"
        assert auth.content == b"username=admin&password=secret"
        assert engine.requests[1].headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_reauthenticates_on_401(self):
        """A 401 triggers one re-authentication and a retry."""
        engine = FakeEngine(expire_first=True)
        async with make_client(engine) as client:
            diagnostics = await client.get_system_diagnostics()
        assert diagnostics["version"] == "1.16.3"
        assert engine.tokens_issued == 2
        assert engine.requests[-1].headers["Authorization"] == "Bearer token-2"

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        """Rejected credentials raise a non-retryable error."""
        async with make_client(FakeEngine(fail_auth=True)) as client:
            with pytest.raises(WorkflowEngineError) as exc_info:
                await client.authenticate()
        assert exc_info.value.status_code == 403
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_anonymous(self):
        """Without a username no token is requested."""
        engine = FakeEngine()
        async with make_client(engine, username=None) as client:
            assert await client.authenticate() is None
            await client.get_system_diagnostics()
        assert engine.tokens_issued == 0
        assert "Authorization" not in engine.requests[0].headers


class TestOperations:
    @pytest.mark.asyncio
    async def test_version_detection_and_features(self):
        """The engine version is read from diagnostics."""
        async with make_client(FakeEngine()) as client:
            assert await client.get_version() == "1.16.3"
            assert await client.is_feature_supported("python-processors")
            report = await client.get_compatibility_report()
        assert report["isSupported"]

    @pytest.mark.asyncio
    async def test_create_process_group_uses_versioned_payload(self):
        """Payloads follow the detected version."""
        engine = FakeEngine()
        async with make_client(engine) as client:
            await client.get_version()
            created = await client.create_process_group("root", "mappings")
        assert created["component"]["name"] == "mappings"
        assert created["component"]["flowfileConcurrency"] == "UNBOUNDED"

    @pytest.mark.asyncio
    async def test_update_and_start_processor(self):
        """Updates merge into the current component using its revision."""
        async with make_client(FakeEngine()) as client:
            updated = await client.update_processor("p1", {"name": "new"})
            started = await client.start_processor("p1")
        assert updated["revision"] == {"version": 4}
        assert updated["component"] == {"id": "p1", "name": "new"}
        assert started["component"] == {"id": "p1", "state": "RUNNING"}

    @pytest.mark.asyncio
    async def test_http_errors(self):
        """Server errors are retryable; client errors are not."""
        async with make_client(FakeEngine()) as client:
            with pytest.raises(WorkflowEngineError) as server:
                await client.get_flow_status()
            with pytest.raises(WorkflowEngineError) as missing:
                await client.get_processor("nope")
        assert server.value.status_code == 500
        assert server.value.retryable
        assert missing.value.status_code == 404
        assert not missing.value.retryable

    @pytest.mark.asyncio
    async def test_health(self):
        """Health reports status and version; failures become unhealthy."""
        async with make_client(FakeEngine()) as client:
            health = await client.health_check()
            assert await client.is_connected()
        assert health["status"] == "healthy"
        assert health["version"] == "1.16.3"

        async with make_client(FakeEngine(fail_auth=True)) as client:
            assert (await client.health_check())["status"] == "unhealthy"
            assert not await client.is_connected()

    def test_from_settings(self):
        """Connection details come from settings."""
        settings = MapflowSettings(workflow_engine_url="http://wf:8080/api", workflow_engine_username="ops")
        client = WorkflowEngineClient.from_settings(settings)
        assert client.base_url == "http://wf:8080/api"
        assert client.username == "ops"
