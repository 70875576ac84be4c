"""Tests for the HTTP control API."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from cloudfailover import __version__, constants
from cloudfailover.api.server import FailoverService, create_app
from cloudfailover.config.declaration import ConfigWorker, Declaration
from cloudfailover.config.settings import Settings
from cloudfailover.errors import DeviceError

DECLARATION = {
    "environment": "aws",
    "externalStorage": {"scopingTags": {"f5_cloud_failover_label": "mydeployment"}},
    "failoverAddresses": {"enabled": True, "scopingTags": {"f5_cloud_failover_label": "mydeployment"}},
}


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.execute = AsyncMock()
    orch.get_task_state_file = AsyncMock(return_value={"taskState": "SUCCEEDED", "message": "Failover Complete"})
    orch.reset_failover_state = AsyncMock(return_value={"message": constants.STATE_FILE_RESET_MESSAGE})
    orch.get_failover_status_and_objects = AsyncMock(return_value={
        "instance": "i-0abc", "addresses": [], "routes": [],
        "hostName": "hostA", "deviceStatus": "active", "trafficGroup": [{"name": "/Common/tg1"}],
    })
    return orch


@pytest.fixture
def factory(orchestrator):
    return AsyncMock(return_value=orchestrator)


def _service(tmp_path: Path, factory, token: str = "", declared: bool = True) -> FailoverService:
    settings = Settings(declaration_path=str(tmp_path / "declaration.json"), api_token=token)
    if declared:
        (tmp_path / "declaration.json").write_text(json.dumps(DECLARATION))
    return FailoverService(
        settings,
        config_worker=ConfigWorker(settings.declaration_path),
        device=MagicMock(),
        factory=factory,
    )


def _client(service: FailoverService) -> TestClient:
    app = create_app(service.settings, service=service)
    return TestClient(TestServer(app))


@pytest.fixture
def service(tmp_path, factory):
    return _service(tmp_path, factory)


@pytest_asyncio.fixture
async def client(service):
    async with _client(service) as c:
        yield c


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_info(client):
    resp = await client.get("/cloud-failover/info")
    assert resp.status == 200
    assert await resp.json() == {"message": "success", "version": __version__}


@pytest.mark.asyncio
async def test_get_declare_returns_saved_body(client):
    resp = await client.get("/cloud-failover/declare")
    assert resp.status == 200
    assert (await resp.json())["declaration"] == DECLARATION


@pytest.mark.asyncio
async def test_post_declare_saves_and_rebuilds_orchestrator(client, factory, tmp_path):
    body = dict(DECLARATION, failoverRoutes={"enabled": False})
    resp = await client.post("/cloud-failover/declare", json=body)

    assert resp.status == 200
    assert json.loads((tmp_path / "declaration.json").read_text()) == body
    declaration = factory.await_args.args[0]
    assert isinstance(declaration, Declaration)
    assert not declaration.failover_routes.enabled


@pytest.mark.asyncio
async def test_post_invalid_declare_is_rejected(client, factory, tmp_path):
    resp = await client.post("/cloud-failover/declare", json={"environment": "aws"})

    assert resp.status == 400
    assert "externalStorage" in (await resp.json())["message"]
    assert json.loads((tmp_path / "declaration.json").read_text()) == DECLARATION
    factory.assert_not_awaited()


@pytest.mark.asyncio
async def test_post_declare_with_malformed_json(client):
    resp = await client.post("/cloud-failover/declare", data="{not json",
                             headers={"Content-Type": "application/json"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_post_trigger_runs_failover_in_background(client, service, orchestrator):
    resp = await client.post("/cloud-failover/trigger")

    assert resp.status == 202
    assert (await resp.json())["taskState"] == "RUNNING"
    await service.wait()
    orchestrator.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_second_trigger_while_running_does_not_start_another(client, service, orchestrator):
    release = asyncio.Event()

    async def slow_execute():
        await release.wait()

    orchestrator.execute = AsyncMock(side_effect=slow_execute)

    first = await client.post("/cloud-failover/trigger")
    await asyncio.sleep(0)
    second = await client.post("/cloud-failover/trigger")
    release.set()
    await service.wait()

    assert (await first.json())["message"] == "Failover running"
    assert (await second.json())["message"] == "Failover already running"
    orchestrator.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_background_failure_is_contained(client, service, orchestrator):
    orchestrator.execute = AsyncMock(side_effect=DeviceError("device unreachable"))

    resp = await client.post("/cloud-failover/trigger")
    await service.wait()

    assert resp.status == 202
    assert not service.running


@pytest.mark.asyncio
async def test_get_trigger_returns_task_state(client):
    resp = await client.get("/cloud-failover/trigger")
    assert resp.status == 200
    assert (await resp.json())["taskState"] == "SUCCEEDED"


@pytest.mark.asyncio
async def test_reset(client, orchestrator):
    resp = await client.post("/cloud-failover/reset", json={"resetStateFile": True})

    assert resp.status == 200
    assert await resp.json() == {"message": constants.STATE_FILE_RESET_MESSAGE}
    orchestrator.reset_failover_state.assert_awaited_once_with({"resetStateFile": True})


@pytest.mark.asyncio
async def test_inspect(client):
    resp = await client.get("/cloud-failover/inspect")
    assert resp.status == 200
    data = await resp.json()
    assert data["deviceStatus"] == "active"
    assert data["hostName"] == "hostA"


@pytest.mark.asyncio
async def test_failover_errors_map_to_500(client, orchestrator):
    orchestrator.get_failover_status_and_objects = AsyncMock(side_effect=DeviceError("device unreachable"))

    resp = await client.get("/cloud-failover/inspect")

    assert resp.status == 500
    assert await resp.json() == {"message": "device unreachable"}


@pytest.mark.asyncio
async def test_missing_declaration_maps_to_400(tmp_path, factory):
    service = _service(tmp_path, factory, declared=False)
    async with _client(service) as c:
        resp = await c.get("/cloud-failover/trigger")
    assert resp.status == 400
    factory.assert_not_awaited()


@pytest.mark.asyncio
async def test_post_trigger_without_declaration_is_rejected(tmp_path, factory, orchestrator):
    service = _service(tmp_path, factory, declared=False)
    async with _client(service) as c:
        resp = await c.post("/cloud-failover/trigger")

    assert resp.status == 400
    assert "message" in await resp.json()
    assert not service.running
    factory.assert_not_awaited()
    orchestrator.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_concurrent_first_requests_build_one_orchestrator(tmp_path, orchestrator):
    async def slow_factory(declaration):
        await asyncio.sleep(0)
        return orchestrator

    factory = AsyncMock(side_effect=slow_factory)
    service = _service(tmp_path, factory)

    first, second = await asyncio.gather(service.orchestrator(), service.orchestrator())

    assert first is second is orchestrator
    factory.assert_awaited_once()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_token_required_when_configured(tmp_path, factory):
    service = _service(tmp_path, factory, token="s3cret")
    async with _client(service) as c:
        denied = await c.get("/cloud-failover/info")
        wrong = await c.get("/cloud-failover/info", headers={"Authorization": "Bearer nope"})
        allowed = await c.get("/cloud-failover/info", headers={"Authorization": "Bearer s3cret"})

    assert denied.status == 401
    assert wrong.status == 401
    assert allowed.status == 200
